"""Workflow for generating flashcards on a topic and storing them for a learner."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.bot.openai_utils import extract_output_text
from src.db.flashcards import FlashcardPayload, create_flashcard
from src.db.users import increment_user_statistics
from src.services.srs import DEFAULT_EASE_FACTOR


LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class GeneratedFlashcard:
    """Question/answer pair parsed from a model response."""

    front: str
    back: str

    def to_payload(self, subject: Optional[str]) -> FlashcardPayload:
        return FlashcardPayload(front=self.front, back=self.back, subject=subject)


@dataclass(slots=True)
class FlashcardSummary:
    """Stored flashcard details for acknowledgement messages."""

    card_id: int
    front: str
    back: str


@dataclass(slots=True)
class FlashcardWorkflowResult:
    """Outcome of running the generator for one request."""

    handled: bool
    summaries: List[FlashcardSummary] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.summaries)


def parse_flashcards(text: str) -> List[GeneratedFlashcard]:
    """Read ``Q:``/``A:`` line pairs; an answer without a pending question is ignored."""
    cards: List[GeneratedFlashcard] = []
    pending_question: Optional[str] = None
    for raw_line in text.splitlines():
        line = raw_line.strip().lstrip("-*").strip()
        if line.startswith("Q:"):
            pending_question = line[2:].strip() or None
        elif line.startswith("A:") and pending_question:
            answer = line[2:].strip()
            if answer:
                cards.append(GeneratedFlashcard(front=pending_question, back=answer))
            pending_question = None
    return cards


class FlashcardWorkflow:
    """Coordinates LLM generation and database persistence for flashcards."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        session_factory: Optional[async_sessionmaker[AsyncSession]],
        max_cards_per_request: int = 10,
        default_ease_factor: float = DEFAULT_EASE_FACTOR,
    ) -> None:
        self._client = client
        self._model = model
        self._session_factory = session_factory
        self._max_cards_per_request = max_cards_per_request
        self._default_ease_factor = default_ease_factor

    def _build_prompt(self, topic: str, count: int) -> str:
        return (
            f'Generate exactly {count} high-quality flashcards for studying "{topic}".\n'
            "Format each flashcard as:\n"
            "Q: [Question/Term]\n"
            "A: [Answer/Definition]\n\n"
            "Make them clear, concise, and educational. Cover key concepts. "
            "Do not add any other text."
        )

    async def _generate(self, topic: str, count: int) -> List[GeneratedFlashcard]:
        response = await self._client.responses.create(
            model=self._model,
            input=[{"role": "user", "content": self._build_prompt(topic, count)}],
            max_output_tokens=1000,
        )
        return parse_flashcards(extract_output_text(response))

    async def handle(
        self,
        chat_id: int,
        topic: str,
        count: Optional[int] = None,
    ) -> FlashcardWorkflowResult:
        """Generate up to ``count`` cards about ``topic`` and save them for ``chat_id``."""
        if self._session_factory is None:
            return FlashcardWorkflowResult(False, errors=["Flashcard storage is not configured."])

        topic = topic.strip()
        if not topic:
            return FlashcardWorkflowResult(False, errors=["Tell me which topic the flashcards should cover."])

        count = min(count or self._max_cards_per_request, self._max_cards_per_request)

        try:
            cards = await self._generate(topic, count)
        except Exception:
            LOGGER.exception("Flashcard generation failed for chat %s.", chat_id)
            return FlashcardWorkflowResult(
                False,
                errors=["Could not generate flashcards right now. Please try again later."],
            )

        if not cards:
            LOGGER.warning("Flashcard generation for chat %s returned no parsable cards.", chat_id)
            return FlashcardWorkflowResult(False, errors=["The generated flashcards could not be read."])

        now = datetime.now(timezone.utc)
        summaries: List[FlashcardSummary] = []
        async with self._session_factory() as session:
            async with session.begin():
                for card in cards[:count]:
                    stored = await create_flashcard(
                        session,
                        chat_id,
                        card.to_payload(topic),
                        ease_factor=self._default_ease_factor,
                        now=now,
                    )
                    summaries.append(FlashcardSummary(stored.id, stored.front, stored.back))
                await increment_user_statistics(session, chat_id, created=len(summaries))

        return FlashcardWorkflowResult(True, summaries=summaries)
