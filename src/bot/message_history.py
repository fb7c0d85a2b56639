"""Rolling per-chat memory of tutor exchanges."""

from __future__ import annotations

from collections import deque
from typing import Deque, Dict, List, Optional, Tuple


Exchange = Tuple[str, str]


class MessageHistoryService:
    """Keep the last few question/answer pairs for each chat."""

    def __init__(self, history_size: int) -> None:
        self._history_size = history_size
        self._history: Dict[int, Deque[Exchange]] = {}

    def get(self, chat_id: int) -> Deque[Exchange]:
        history = self._history.get(chat_id)
        if history is None:
            history = deque(maxlen=self._history_size)
            self._history[chat_id] = history
        return history

    def record(self, chat_id: int, question: str, answer: str) -> None:
        self.get(chat_id).append((question, answer))

    def clear(self, chat_id: int) -> None:
        self._history.pop(chat_id, None)

    def last_exchange(self, chat_id: int) -> Optional[Exchange]:
        history = self._history.get(chat_id)
        if not history:
            return None
        return history[-1]

    def build_messages(self, system_prompt: str, chat_id: int, question: str) -> List[Dict[str, str]]:
        """Compose a conversation payload compatible with the OpenAI Responses API."""
        messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        for previous_question, previous_answer in tuple(self.get(chat_id)):
            messages.append({"role": "user", "content": previous_question})
            messages.append({"role": "assistant", "content": previous_answer})
        messages.append({"role": "user", "content": question})
        return messages
