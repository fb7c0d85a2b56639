"""Persistence helpers for study notes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.services.errors import InvalidArgumentError, NoteNotFoundError

from . import Note


@dataclass(slots=True)
class NotePayload:
    title: str
    content: str
    subject: Optional[str] = None

    def normalized(self) -> "NotePayload":
        subject = self.subject.strip() if isinstance(self.subject, str) else self.subject
        return NotePayload(title=self.title.strip(), content=self.content.strip(), subject=subject or None)


async def create_note(
    session: AsyncSession,
    user_id: int,
    payload: NotePayload,
    now: Optional[datetime] = None,
) -> Note:
    normalized = payload.normalized()
    if not normalized.title or not normalized.content:
        raise InvalidArgumentError("A note needs both a title and some content.")
    if now is None:
        now = datetime.now(timezone.utc)

    note = Note(
        user_id=user_id,
        title=normalized.title,
        content=normalized.content,
        subject=normalized.subject,
        created_at=now,
        updated_at=now,
    )
    session.add(note)
    await session.flush()
    return note


async def list_user_notes(
    session: AsyncSession,
    user_id: int,
    subject: Optional[str] = None,
    limit: int = 50,
) -> Sequence[Note]:
    """Return a learner's notes, newest first; ``subject`` matches case-insensitively."""
    stmt = select(Note).where(Note.user_id == user_id)
    if subject:
        stmt = stmt.where(func.lower(Note.subject) == subject.strip().lower())
    stmt = stmt.order_by(Note.created_at.desc(), Note.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()


async def search_notes(
    session: AsyncSession,
    user_id: int,
    term: str,
    limit: int = 50,
) -> Sequence[Note]:
    """Find notes whose title or content contains ``term``, ignoring case."""
    term = term.strip()
    if not term:
        return []

    stmt = (
        select(Note)
        .where(
            Note.user_id == user_id,
            or_(
                Note.title.icontains(term, autoescape=True),
                Note.content.icontains(term, autoescape=True),
            ),
        )
        .order_by(Note.created_at.desc(), Note.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return result.scalars().all()


async def delete_note(session: AsyncSession, note_id: int, user_id: int) -> Note:
    note = await session.get(Note, note_id)
    if note is None or note.user_id != user_id:
        raise NoteNotFoundError(note_id)
    await session.delete(note)
    await session.flush()
    return note
