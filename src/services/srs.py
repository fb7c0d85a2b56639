"""Spaced-repetition scheduling for flashcard reviews.

The scheduler follows the SM-2 family of algorithms: every review is graded
from 0 to 5, grades below 3 count as a lapse and restart the repetition
sequence, and the ease factor stretches or shrinks future intervals.
Nothing here touches storage or reads the clock; callers pass ``now`` in and
persist the returned :class:`ReviewOutcome` themselves.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol

from src.services.clock import ensure_utc
from src.services.errors import InvalidArgumentError


DEFAULT_EASE_FACTOR = 2.5
MIN_EASE_FACTOR = 1.3
MIN_QUALITY = 0
MAX_QUALITY = 5
PASSING_QUALITY = 3
LAPSE_EASE_PENALTY = 0.2
LAPSE_INTERVAL_DAYS = 1
FIRST_INTERVAL_DAYS = 1
SECOND_INTERVAL_DAYS = 6


class SchedulableCard(Protocol):
    """Scheduling state the algorithm reads from a flashcard."""

    repetitions: int
    ease_factor: float


class DatedCard(Protocol):
    user_id: Any
    next_review: Optional[datetime]


@dataclass(frozen=True, slots=True)
class ReviewOutcome:
    """Updated scheduling fields for a flashcard after one review."""

    repetitions: int
    ease_factor: float
    interval_days: int
    last_reviewed: datetime
    next_review: datetime

    @property
    def is_lapse(self) -> bool:
        return self.repetitions == 0

    def as_fields(self) -> Dict[str, Any]:
        """Return the persisted columns as a partial-update mapping."""
        return {
            "repetitions": self.repetitions,
            "ease_factor": self.ease_factor,
            "last_reviewed": self.last_reviewed,
            "next_review": self.next_review,
        }


def validate_quality(quality: object) -> int:
    """Return ``quality`` unchanged or raise when it is not a 0-5 integer grade."""
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidArgumentError(f"Quality must be an integer grade, got {quality!r}.")
    if quality < MIN_QUALITY or quality > MAX_QUALITY:
        raise InvalidArgumentError(
            f"Quality must be between {MIN_QUALITY} and {MAX_QUALITY}, got {quality}."
        )
    return quality


def adjust_ease(ease_factor: float, quality: int) -> float:
    """Apply the SM-2 ease adjustment for a successful review."""
    distance = MAX_QUALITY - quality
    return ease_factor + (0.1 - distance * (0.08 + distance * 0.02))


def interval_for(repetitions: int, ease_factor: float) -> int:
    """Return the review interval in days for a repetition count.

    Half-way values round up, so ``(3, 2.25)`` yields 5 days rather than the
    4 that Python's banker's rounding would give.
    """
    if repetitions <= 0:
        return LAPSE_INTERVAL_DAYS
    if repetitions == 1:
        return FIRST_INTERVAL_DAYS
    if repetitions == 2:
        return SECOND_INTERVAL_DAYS
    return int(math.floor((repetitions - 1) * ease_factor + 0.5))


def review(card: SchedulableCard, quality: int, now: datetime) -> ReviewOutcome:
    """Grade ``card`` with ``quality`` at ``now`` and return its new schedule."""
    validate_quality(quality)

    repetitions = card.repetitions or 0
    if repetitions < 0:
        raise InvalidArgumentError(f"Repetitions cannot be negative, got {repetitions}.")
    ease_factor = card.ease_factor if card.ease_factor is not None else DEFAULT_EASE_FACTOR

    if quality >= PASSING_QUALITY:
        repetitions += 1
        ease_factor = adjust_ease(ease_factor, quality)
    else:
        repetitions = 0
        ease_factor -= LAPSE_EASE_PENALTY

    ease_factor = max(MIN_EASE_FACTOR, ease_factor)
    interval = interval_for(repetitions, ease_factor)

    return ReviewOutcome(
        repetitions=repetitions,
        ease_factor=ease_factor,
        interval_days=interval,
        last_reviewed=now,
        next_review=now + timedelta(days=interval),
    )


def is_due(card: DatedCard, now: datetime) -> bool:
    """Cards that were never scheduled are not due."""
    if card.next_review is None:
        return False
    return ensure_utc(card.next_review) <= ensure_utc(now)


def select_due(cards: Iterable[DatedCard], user_id: Any, now: datetime) -> List[DatedCard]:
    """Return ``user_id``'s due cards, longest overdue first."""
    due = [card for card in cards if card.user_id == user_id and is_due(card, now)]
    due.sort(key=lambda card: ensure_utc(card.next_review))
    return due
