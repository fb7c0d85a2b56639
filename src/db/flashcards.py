"""Helpers for working with flashcard persistence."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.services.errors import FlashcardNotFoundError, InvalidArgumentError
from src.services.srs import DEFAULT_EASE_FACTOR, MIN_EASE_FACTOR, ReviewOutcome

from . import DIFFICULTY_LEVELS, Flashcard, ReviewLog
from .users import increment_user_statistics


UPDATABLE_FIELDS = frozenset(
    {
        "front",
        "back",
        "subject",
        "difficulty",
        "repetitions",
        "ease_factor",
        "last_reviewed",
        "next_review",
    }
)


@dataclass(slots=True)
class FlashcardPayload:
    """User-supplied content for a new flashcard."""

    front: str
    back: str
    subject: Optional[str] = None
    difficulty: str = "medium"

    def normalized(self) -> "FlashcardPayload":
        """Return a payload with leading/trailing whitespace stripped."""
        subject = self.subject.strip() if isinstance(self.subject, str) else self.subject
        return FlashcardPayload(
            front=self.front.strip(),
            back=self.back.strip(),
            subject=subject or None,
            difficulty=(self.difficulty or "medium").strip().lower(),
        )


class CardStore(Protocol):
    """Persistence contract the review service depends on."""

    async def get(self, card_id: int) -> Flashcard: ...

    async def update(self, card_id: int, fields: Mapping[str, Any]) -> Flashcard: ...

    async def list_due_for_user(self, user_id: int, before_or_equal: datetime) -> Sequence[Flashcard]: ...

    async def list_new_for_user(self, user_id: int, limit: Optional[int] = None) -> Sequence[Flashcard]: ...

    async def apply_review(self, card_id: int, quality: int, outcome: ReviewOutcome) -> Flashcard:
        """Persist a review outcome atomically: schedule fields, history entry and counters."""
        ...


def _check_difficulty(difficulty: str) -> None:
    if difficulty not in DIFFICULTY_LEVELS:
        raise InvalidArgumentError(
            f"Difficulty must be one of {', '.join(DIFFICULTY_LEVELS)}, got {difficulty!r}."
        )


async def create_flashcard(
    session: AsyncSession,
    user_id: int,
    payload: FlashcardPayload,
    *,
    ease_factor: float = DEFAULT_EASE_FACTOR,
    now: Optional[datetime] = None,
) -> Flashcard:
    """Store a new, never-reviewed flashcard for ``user_id``."""
    if now is None:
        now = datetime.now(timezone.utc)

    normalized = payload.normalized()
    _check_difficulty(normalized.difficulty)
    if ease_factor < MIN_EASE_FACTOR:
        raise InvalidArgumentError(f"Ease factor cannot be below {MIN_EASE_FACTOR}, got {ease_factor}.")

    flashcard = Flashcard(
        user_id=user_id,
        front=normalized.front,
        back=normalized.back,
        subject=normalized.subject,
        difficulty=normalized.difficulty,
        repetitions=0,
        ease_factor=ease_factor,
        last_reviewed=None,
        next_review=None,
        created_at=now,
        updated_at=now,
    )
    session.add(flashcard)
    await session.flush()
    return flashcard


async def get_flashcard(
    session: AsyncSession,
    card_id: int,
    user_id: Optional[int] = None,
) -> Flashcard:
    """Load a flashcard, optionally requiring that ``user_id`` owns it."""
    flashcard = await session.get(Flashcard, card_id)
    if flashcard is None or (user_id is not None and flashcard.user_id != user_id):
        raise FlashcardNotFoundError(card_id)
    return flashcard


async def list_user_flashcards(
    session: AsyncSession,
    user_id: int,
    subject: Optional[str] = None,
) -> Sequence[Flashcard]:
    """Return a user's flashcards, newest first, optionally for one subject."""
    stmt = select(Flashcard).where(Flashcard.user_id == user_id)
    if subject:
        stmt = stmt.where(Flashcard.subject == subject)
    stmt = stmt.order_by(Flashcard.created_at.desc(), Flashcard.id.desc())
    result = await session.execute(stmt)
    return result.scalars().all()


def _due_query(user_id: int, now: datetime):
    return select(Flashcard).where(
        Flashcard.user_id == user_id,
        Flashcard.next_review.is_not(None),
        Flashcard.next_review <= now,
    )


async def list_due_flashcards(
    session: AsyncSession,
    user_id: int,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> Sequence[Flashcard]:
    """Return cards whose review time has passed, longest overdue first."""
    if now is None:
        now = datetime.now(timezone.utc)

    stmt = _due_query(user_id, now).order_by(Flashcard.next_review, Flashcard.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()


async def count_due_flashcards(
    session: AsyncSession,
    user_id: int,
    now: Optional[datetime] = None,
) -> int:
    if now is None:
        now = datetime.now(timezone.utc)

    stmt = select(func.count()).select_from(_due_query(user_id, now).subquery())
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def list_new_flashcards(
    session: AsyncSession,
    user_id: int,
    limit: Optional[int] = None,
) -> Sequence[Flashcard]:
    """Return never-reviewed cards in the order they were created."""
    stmt = (
        select(Flashcard)
        .where(Flashcard.user_id == user_id, Flashcard.next_review.is_(None))
        .order_by(Flashcard.created_at, Flashcard.id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()


async def update_flashcard(
    session: AsyncSession,
    card_id: int,
    fields: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> Flashcard:
    """Apply a partial update to a flashcard and return the refreshed record."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise InvalidArgumentError(f"Cannot update flashcard fields: {', '.join(sorted(unknown))}.")
    if "difficulty" in fields:
        _check_difficulty(fields["difficulty"])

    if now is None:
        now = datetime.now(timezone.utc)

    flashcard = await get_flashcard(session, card_id)
    for name, value in fields.items():
        setattr(flashcard, name, value)
    flashcard.updated_at = now
    await session.flush()
    return flashcard


async def delete_flashcard(
    session: AsyncSession,
    card_id: int,
    user_id: Optional[int] = None,
) -> Flashcard:
    """Delete a flashcard together with its review history."""
    flashcard = await get_flashcard(session, card_id, user_id)
    await session.delete(flashcard)
    await session.flush()
    return flashcard


async def record_review(
    session: AsyncSession,
    card_id: int,
    quality: int,
    interval_days: int,
    reviewed_at: datetime,
) -> ReviewLog:
    """Append an entry to a flashcard's review history."""
    entry = ReviewLog(
        flashcard_id=card_id,
        quality=quality,
        interval_days=interval_days,
        reviewed_at=reviewed_at,
    )
    session.add(entry)
    await session.flush()
    return entry


class SqlAlchemyCardStore:
    """Card store running each operation in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, card_id: int) -> Flashcard:
        async with self._session_factory() as session:
            return await get_flashcard(session, card_id)

    async def update(self, card_id: int, fields: Mapping[str, Any]) -> Flashcard:
        async with self._session_factory() as session:
            async with session.begin():
                return await update_flashcard(session, card_id, fields)

    async def list_due_for_user(self, user_id: int, before_or_equal: datetime) -> Sequence[Flashcard]:
        async with self._session_factory() as session:
            return await list_due_flashcards(session, user_id, now=before_or_equal)

    async def list_new_for_user(self, user_id: int, limit: Optional[int] = None) -> Sequence[Flashcard]:
        async with self._session_factory() as session:
            return await list_new_flashcards(session, user_id, limit=limit)

    async def apply_review(self, card_id: int, quality: int, outcome: ReviewOutcome) -> Flashcard:
        # One transaction: a failure leaves the card as it was, so a retry
        # recomputes from the same state.
        async with self._session_factory() as session:
            async with session.begin():
                flashcard = await update_flashcard(
                    session, card_id, outcome.as_fields(), now=outcome.last_reviewed
                )
                await record_review(
                    session,
                    card_id,
                    quality,
                    outcome.interval_days,
                    outcome.last_reviewed,
                )
                await increment_user_statistics(
                    session,
                    flashcard.user_id,
                    reviewed=1,
                    lapsed=1 if outcome.is_lapse else 0,
                )
        return flashcard
