"""Review workflow tying the scheduler to the card store and clock."""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

from src.db import Flashcard
from src.db.flashcards import CardStore
from src.services.clock import Clock, SystemClock
from src.services.errors import FlashcardNotFoundError
from src.services.srs import ReviewOutcome, review, validate_quality


LOGGER = logging.getLogger(__name__)


class ReviewService:
    """Grade flashcards and pick the next card a learner should study."""

    def __init__(self, store: CardStore, clock: Optional[Clock] = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    async def review_card(
        self,
        card_id: int,
        quality: int,
        user_id: Optional[int] = None,
    ) -> Tuple[Flashcard, ReviewOutcome]:
        """Apply a graded review to a stored card and persist the new schedule.

        When ``user_id`` is given, cards owned by someone else are reported as
        missing. The store writes the schedule, the history entry and the
        learner's counters together, so a failed write leaves the card
        untouched and a retry recomputes the same fields.
        """
        validate_quality(quality)

        card = await self._store.get(card_id)
        if user_id is not None and card.user_id != user_id:
            raise FlashcardNotFoundError(card_id)

        outcome = review(card, quality, self._clock.now())
        updated = await self._store.apply_review(card_id, quality, outcome)

        LOGGER.debug(
            "Reviewed card %s with quality %s: repetitions=%s ease=%.2f interval=%sd.",
            card_id,
            quality,
            outcome.repetitions,
            outcome.ease_factor,
            outcome.interval_days,
        )
        return updated, outcome

    async def select_due(self, user_id: int) -> Sequence[Flashcard]:
        """Return the learner's due cards, longest overdue first."""
        return await self._store.list_due_for_user(user_id, self._clock.now())

    async def next_card(self, user_id: int) -> Optional[Flashcard]:
        """Pick the card to study next: due cards first, then never-reviewed ones."""
        due = await self.select_due(user_id)
        if due:
            return due[0]

        fresh = await self._store.list_new_for_user(user_id, limit=1)
        if fresh:
            return fresh[0]
        return None
