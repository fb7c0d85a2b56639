"""Persistence helpers for the tutor's question history."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.services.errors import InvalidArgumentError, QuestionNotFoundError

from . import DIFFICULTY_LEVELS, Question


async def save_question(
    session: AsyncSession,
    user_id: int,
    question: str,
    answer: str,
    *,
    subject: str = "general",
    difficulty: str = "medium",
    mode: str = "detailed",
    has_code: bool = False,
    has_formula: bool = False,
    now: Optional[datetime] = None,
) -> Question:
    """Store an answered question for ``user_id``."""
    if difficulty not in DIFFICULTY_LEVELS:
        raise InvalidArgumentError(f"Unknown difficulty {difficulty!r}.")
    if now is None:
        now = datetime.now(timezone.utc)

    record = Question(
        user_id=user_id,
        question=question.strip(),
        answer=answer.strip(),
        subject=subject,
        difficulty=difficulty,
        mode=mode,
        has_code=has_code,
        has_formula=has_formula,
        is_favorite=False,
        created_at=now,
    )
    session.add(record)
    await session.flush()
    return record


async def get_question(
    session: AsyncSession,
    question_id: int,
    user_id: Optional[int] = None,
) -> Question:
    record = await session.get(Question, question_id)
    if record is None or (user_id is not None and record.user_id != user_id):
        raise QuestionNotFoundError(question_id)
    return record


async def list_user_questions(
    session: AsyncSession,
    user_id: int,
    *,
    limit: int = 25,
    offset: int = 0,
    favorites_only: bool = False,
) -> Sequence[Question]:
    """Return a learner's questions, newest first."""
    stmt = select(Question).where(Question.user_id == user_id)
    if favorites_only:
        stmt = stmt.where(Question.is_favorite.is_(True))
    stmt = stmt.order_by(Question.created_at.desc(), Question.id.desc()).limit(limit).offset(offset)
    result = await session.execute(stmt)
    return result.scalars().all()


async def search_questions(
    session: AsyncSession,
    user_id: int,
    term: str,
    limit: int = 25,
) -> Sequence[Question]:
    """Case-insensitive substring search over the question text, newest first."""
    term = term.strip()
    if not term:
        return []

    stmt = (
        select(Question)
        .where(Question.user_id == user_id, Question.question.icontains(term, autoescape=True))
        .order_by(Question.created_at.desc(), Question.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return result.scalars().all()


async def toggle_question_favorite(
    session: AsyncSession,
    question_id: int,
    user_id: int,
) -> Question:
    """Flip the favourite flag and return the updated question."""
    record = await get_question(session, question_id, user_id)
    record.is_favorite = not record.is_favorite
    await session.flush()
    return record
