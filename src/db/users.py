from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from . import User


@dataclass(slots=True)
class UserStatistics:
    """Study progress counters for a single learner."""

    chat_id: int
    first_name: Optional[str]
    last_name: Optional[str]
    created_at: datetime
    questions_asked: int
    flashcards_created: int
    flashcards_reviewed: int
    flashcards_lapsed: int
    notes_created: int = 0
    plans_created: int = 0

    @property
    def recall_rate(self) -> Optional[float]:
        """Share of reviews that were not lapses, or None before the first review."""
        if not self.flashcards_reviewed:
            return None
        return 1 - self.flashcards_lapsed / self.flashcards_reviewed


async def upsert_user(
    session: AsyncSession,
    chat_id: int,
    first_name: Optional[str],
    last_name: Optional[str],
) -> User:
    """Create or refresh a learner record from the latest Telegram profile."""
    user = await session.get(User, chat_id)

    if user is None:
        now = datetime.now(timezone.utc)
        user = User(
            chat_id=chat_id,
            first_name=first_name,
            last_name=last_name,
            questions_asked=0,
            flashcards_created=0,
            flashcards_reviewed=0,
            flashcards_lapsed=0,
            notes_created=0,
            plans_created=0,
            created_at=now,
            updated_at=now,
        )
        session.add(user)
        return user

    if user.first_name == first_name and user.last_name == last_name:
        return user

    user.first_name = first_name
    user.last_name = last_name
    user.updated_at = datetime.now(timezone.utc)
    await session.flush()
    return user


async def increment_user_statistics(
    session: AsyncSession,
    chat_id: int,
    *,
    questions: int = 0,
    created: int = 0,
    reviewed: int = 0,
    lapsed: int = 0,
    notes: int = 0,
    plans: int = 0,
) -> None:
    """Bump one or more progress counters in a single UPDATE."""
    values = {}
    if questions:
        values["questions_asked"] = User.questions_asked + questions
    if created:
        values["flashcards_created"] = User.flashcards_created + created
    if reviewed:
        values["flashcards_reviewed"] = User.flashcards_reviewed + reviewed
    if lapsed:
        values["flashcards_lapsed"] = User.flashcards_lapsed + lapsed
    if notes:
        values["notes_created"] = User.notes_created + notes
    if plans:
        values["plans_created"] = User.plans_created + plans

    if not values:
        return

    values["updated_at"] = datetime.now(timezone.utc)

    stmt = (
        update(User)
        .where(User.chat_id == chat_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def get_user_statistics(session: AsyncSession, chat_id: int) -> Optional[UserStatistics]:
    user = await session.get(User, chat_id)
    if user is None:
        return None
    return UserStatistics(
        chat_id=user.chat_id,
        first_name=user.first_name,
        last_name=user.last_name,
        created_at=user.created_at,
        questions_asked=user.questions_asked,
        flashcards_created=user.flashcards_created,
        flashcards_reviewed=user.flashcards_reviewed,
        flashcards_lapsed=user.flashcards_lapsed,
        notes_created=user.notes_created,
        plans_created=user.plans_created,
    )
