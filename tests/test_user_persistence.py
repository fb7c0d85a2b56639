import asyncio
from collections import deque
from typing import List, Tuple

import pytest

from src.db import run_migrations_if_needed
from src.db.users import get_user_statistics, increment_user_statistics, upsert_user


class _StubSession:
    def __init__(self) -> None:
        self._records: dict[int, object] = {}
        self.flush_calls = 0

    async def get(self, model: object, chat_id: int) -> object:
        return self._records.get(chat_id)

    def add(self, user: object) -> None:
        self._records[getattr(user, "chat_id")] = user

    async def flush(self) -> None:
        self.flush_calls += 1


async def _exercise_user_upsert() -> None:
    session = _StubSession()

    created = await upsert_user(session, chat_id=7, first_name="Grace", last_name="Hopper")
    assert session._records[7] is created
    assert created.questions_asked == 0
    assert created.flashcards_lapsed == 0
    assert created.notes_created == 0
    assert created.created_at.tzinfo is not None
    assert created.updated_at == created.created_at
    assert session.flush_calls == 0

    renamed = await upsert_user(session, chat_id=7, first_name="Grace B.", last_name="Hopper")
    assert renamed is created
    assert renamed.first_name == "Grace B."
    assert renamed.updated_at >= created.created_at
    assert session.flush_calls == 1

    unchanged = await upsert_user(session, chat_id=7, first_name="Grace B.", last_name="Hopper")
    assert unchanged is created
    assert session.flush_calls == 1


def test_upsert_user_creates_and_updates_names() -> None:
    asyncio.run(_exercise_user_upsert())


@pytest.mark.asyncio
async def test_statistics_counters_accumulate(session_factory) -> None:
    async with session_factory() as session:
        async with session.begin():
            await upsert_user(session, 8, "Alan", "Turing")

    async with session_factory() as session:
        async with session.begin():
            await increment_user_statistics(session, 8, questions=2, created=3)
            await increment_user_statistics(session, 8, reviewed=4, lapsed=1)
            await increment_user_statistics(session, 8, notes=2, plans=1)
            await increment_user_statistics(session, 8)

    async with session_factory() as session:
        stats = await get_user_statistics(session, 8)

    assert stats is not None
    assert stats.questions_asked == 2
    assert stats.flashcards_created == 3
    assert stats.flashcards_reviewed == 4
    assert stats.flashcards_lapsed == 1
    assert (stats.notes_created, stats.plans_created) == (2, 1)
    assert stats.recall_rate == pytest.approx(0.75)


@pytest.mark.asyncio
async def test_statistics_for_unknown_user_are_missing(session_factory) -> None:
    async with session_factory() as session:
        assert await get_user_statistics(session, 404) is None


def test_run_migrations_if_needed_invokes_upgrade(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[Tuple[object, str]] = []

    def fake_upgrade(config: object, target: str) -> None:
        calls.append((config, target))

    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("RUN_MIGRATIONS_ON_STARTUP", "true")
    monkeypatch.setattr("src.db.command.upgrade", fake_upgrade)

    run_migrations_if_needed()

    assert calls and calls[0][1] == "head"


def test_run_migrations_if_needed_skips_when_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("RUN_MIGRATIONS_ON_STARTUP", "false")

    calls: deque[str] = deque()

    def fake_upgrade(_: object, target: str) -> None:
        calls.append(target)

    monkeypatch.setattr("src.db.command.upgrade", fake_upgrade)

    run_migrations_if_needed()

    assert not calls
