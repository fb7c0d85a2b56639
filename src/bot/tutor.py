"""Question answering through the OpenAI Responses API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from openai import AsyncOpenAI

from src.bot.message_history import MessageHistoryService
from src.bot.openai_utils import extract_output_text


LOGGER = logging.getLogger(__name__)

ANSWER_MODES = ("quick", "detailed")

QUICK_SYSTEM_PROMPT = (
    "You are a helpful AI tutor. Provide a concise, accurate answer to the student's question. "
    "Keep it brief but clear and use simple language."
)
DETAILED_SYSTEM_PROMPT = (
    "You are an expert AI tutor. Provide a comprehensive, step-by-step explanation of the student's question. "
    "Include examples and analogies when helpful and break complex concepts into digestible parts. "
    "Use LaTeX notation for mathematical formulas (wrap in $ for inline, $$ for block). "
    "Format code with Markdown code blocks."
)

_MAX_OUTPUT_TOKENS = {"quick": 500, "detailed": 2000}

_SUBJECT_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("math", ("equation", "solve", "calculate", "derivative", "integral", "algebra", "geometry", "trigonometry")),
    (
        "science",
        ("atom", "molecule", "cell", "energy", "force", "reaction", "experiment", "biology", "chemistry", "physics"),
    ),
    ("programming", ("code", "function", "algorithm", "variable", "loop", "array", "class", "debug", "syntax")),
    ("history", ("year", "century", "war", "empire", "revolution", "ancient", "medieval")),
    ("language", ("grammar", "sentence", "verb", "noun", "literature", "essay", "poem")),
)
_HARD_KEYWORDS = ("prove", "derive", "analyze", "evaluate", "complex", "advanced")
_EASY_KEYWORDS = ("what is", "define", "list", "name", "basic")


def detect_subject(question: str) -> str:
    """Guess a coarse subject label from keywords in the question."""
    lowered = question.lower()
    for subject, keywords in _SUBJECT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return subject
    return "general"


def detect_difficulty(question: str) -> str:
    lowered = question.lower()
    if any(keyword in lowered for keyword in _HARD_KEYWORDS):
        return "hard"
    if any(keyword in lowered for keyword in _EASY_KEYWORDS):
        return "easy"
    return "medium"


@dataclass(slots=True)
class TutorAnswer:
    """Answer text plus the metadata used to file it."""

    text: str
    subject: str
    difficulty: str
    mode: str = "detailed"

    @property
    def has_code(self) -> bool:
        return "```" in self.text

    @property
    def has_formula(self) -> bool:
        return "$" in self.text


class Tutor:
    """Answer learner questions with short-term conversational memory."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        history_size: int = 5,
        default_mode: str = "detailed",
    ) -> None:
        if default_mode not in ANSWER_MODES:
            raise ValueError(f"Unknown answer mode {default_mode!r}.")
        self._client = client
        self._model = model
        self._default_mode = default_mode
        self._history = MessageHistoryService(history_size)
        self._prompts: Dict[str, str] = {"quick": QUICK_SYSTEM_PROMPT, "detailed": DETAILED_SYSTEM_PROMPT}

    @property
    def history(self) -> MessageHistoryService:
        return self._history

    async def answer(self, chat_id: int, question: str, mode: Optional[str] = None) -> TutorAnswer:
        """Ask the model and remember the exchange for follow-up questions."""
        mode = mode or self._default_mode
        if mode not in ANSWER_MODES:
            raise ValueError(f"Unknown answer mode {mode!r}.")

        response = await self._client.responses.create(
            model=self._model,
            input=self._history.build_messages(self._prompts[mode], chat_id, question),
            max_output_tokens=_MAX_OUTPUT_TOKENS[mode],
        )
        text = extract_output_text(response).strip()
        if not text:
            raise RuntimeError("The model returned an empty answer.")

        self._history.record(chat_id, question, text)
        return TutorAnswer(
            text=text,
            subject=detect_subject(question),
            difficulty=detect_difficulty(question),
            mode=mode,
        )
