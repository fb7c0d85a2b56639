from __future__ import annotations

import types
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError
from telegram import InlineKeyboardMarkup

import src.db.flashcards as flashcards_module
from src.db.flashcards import FlashcardPayload, create_flashcard, get_flashcard
from src.db.questions import list_user_questions
from src.db.users import get_user_statistics, upsert_user
from src.main import StudyAssistantAgent
from src.services.clock import ensure_utc


NOW = datetime(2026, 10, 19, 7, 45, tzinfo=timezone.utc)


class _StubResponses:
    def __init__(self, payload: str | None = None) -> None:
        self._payload = payload
        self.calls = 0

    async def create(self, *args, **kwargs):
        self.calls += 1
        if self._payload is None:  # pragma: no cover - network calls not expected in tests
            raise AssertionError("Unexpected OpenAI call during tests.")
        return types.SimpleNamespace(output_text=self._payload)


class _StubClient:
    def __init__(self, payload: str | None = None) -> None:
        self.responses = _StubResponses(payload)


class _StubBot:
    async def send_chat_action(self, **kwargs) -> None:
        return None


class _FixedClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current


class _StubMessage:
    def __init__(self, chat_id: int) -> None:
        self.chat = types.SimpleNamespace(id=chat_id)
        self.replies: list[tuple[str, dict]] = []

    async def reply_text(self, text: str, **kwargs) -> None:
        self.replies.append((text, kwargs))


class _StubCallbackQuery:
    def __init__(self, message: _StubMessage, data: str) -> None:
        self.message = message
        self.data = data
        self.answers: list[tuple[str | None, bool]] = []
        self.edited_text: str | None = None
        self.edited_markup = None
        self.markup_cleared = False

    async def answer(self, text: str | None = None, show_alert: bool = False) -> None:
        self.answers.append((text, show_alert))

    async def edit_message_reply_markup(self, reply_markup=None) -> None:
        self.markup_cleared = reply_markup is None

    async def edit_message_text(self, text: str, **kwargs) -> None:
        self.edited_text = text
        self.edited_markup = kwargs.get("reply_markup")


def _command_update(chat_id: int) -> tuple[types.SimpleNamespace, _StubMessage]:
    message = _StubMessage(chat_id)
    update = types.SimpleNamespace(
        message=message,
        effective_chat=types.SimpleNamespace(id=chat_id),
        effective_user=types.SimpleNamespace(first_name="Marie", last_name="Curie"),
        callback_query=None,
    )
    return update, message


def _callback_update(chat_id: int, data: str) -> tuple[types.SimpleNamespace, _StubCallbackQuery]:
    query = _StubCallbackQuery(_StubMessage(chat_id), data)
    return types.SimpleNamespace(callback_query=query), query


def _agent(
    session_factory,
    clock: _FixedClock | None = None,
    client: _StubClient | None = None,
) -> StudyAssistantAgent:
    return StudyAssistantAgent(
        client or _StubClient(),
        "test-model",
        session_factory=session_factory,
        clock=clock or _FixedClock(NOW),
    )


async def _seed_card(session_factory, chat_id: int, front: str = "Capital of France") -> int:
    async with session_factory() as session:
        async with session.begin():
            await upsert_user(session, chat_id, "Marie", "Curie")
            card = await create_flashcard(session, chat_id, FlashcardPayload(front=front, back="Paris"), now=NOW)
    return card.id


@pytest.mark.asyncio
async def test_add_command_creates_flashcard(session_factory) -> None:
    agent = _agent(session_factory)
    update, message = _command_update(501)
    context = types.SimpleNamespace(args="Capital of France | Paris | geography".split())

    await agent.handle_add(update, context)

    async with session_factory() as session:
        stats = await get_user_statistics(session, 501)
        card = await get_flashcard(session, 1, user_id=501)

    assert card.front == "Capital of France"
    assert card.back == "Paris"
    assert card.subject == "geography"
    assert stats is not None and stats.flashcards_created == 1
    assert "Saved flashcard #1" in message.replies[0][0]


@pytest.mark.asyncio
async def test_add_command_rejects_malformed_input(session_factory) -> None:
    agent = _agent(session_factory)
    update, message = _command_update(502)

    await agent.handle_add(update, types.SimpleNamespace(args=["only", "a", "front"]))

    assert message.replies[0][0].startswith("Usage: /add")


@pytest.mark.asyncio
async def test_review_command_offers_reveal_button(session_factory) -> None:
    card_id = await _seed_card(session_factory, 503)
    agent = _agent(session_factory)
    update, message = _command_update(503)

    await agent.handle_review(update, types.SimpleNamespace(args=[]))

    text, kwargs = message.replies[0]
    assert "Capital of France" in text
    markup = kwargs["reply_markup"]
    assert isinstance(markup, InlineKeyboardMarkup)
    assert markup.inline_keyboard[0][0].callback_data == f"fc_show:{card_id}"


@pytest.mark.asyncio
async def test_review_command_without_cards(session_factory) -> None:
    agent = _agent(session_factory)
    update, message = _command_update(504)

    await agent.handle_review(update, types.SimpleNamespace(args=[]))

    assert message.replies[0][0].startswith("Nothing to review right now.")


@pytest.mark.asyncio
async def test_show_reveals_answer_with_rating_keyboard(session_factory) -> None:
    card_id = await _seed_card(session_factory, 505)
    agent = _agent(session_factory)
    update, query = _callback_update(505, f"fc_show:{card_id}")

    await agent.handle_show_flashcard(update, None)

    assert query.edited_text is not None and "Paris" in query.edited_text
    callbacks = [button.callback_data for row in query.edited_markup.inline_keyboard for button in row]
    assert callbacks == [f"fc_rate:{card_id}:{quality}" for quality in range(6)]


@pytest.mark.asyncio
async def test_rating_persists_schedule_and_statistics(session_factory) -> None:
    card_id = await _seed_card(session_factory, 506)
    agent = _agent(session_factory)
    update, query = _callback_update(506, f"fc_rate:{card_id}:5")

    await agent.handle_rate_flashcard(update, None)

    async with session_factory() as session:
        card = await get_flashcard(session, card_id)
        stats = await get_user_statistics(session, 506)

    assert card.repetitions == 1
    assert ensure_utc(card.next_review) == NOW + timedelta(days=1)
    assert stats is not None and stats.flashcards_reviewed == 1
    assert stats.flashcards_lapsed == 0
    assert query.markup_cleared is True
    assert query.answers[-1] == ("Saved.", False)
    assert query.message.replies[0][0] == "Grade 5 saved. Next review tomorrow."


@pytest.mark.asyncio
async def test_lapse_is_counted(session_factory) -> None:
    card_id = await _seed_card(session_factory, 507)
    agent = _agent(session_factory)
    update, _ = _callback_update(507, f"fc_rate:{card_id}:1")

    await agent.handle_rate_flashcard(update, None)

    async with session_factory() as session:
        stats = await get_user_statistics(session, 507)

    assert stats is not None and stats.flashcards_lapsed == 1


@pytest.mark.asyncio
async def test_rating_rejects_out_of_range_grade(session_factory) -> None:
    card_id = await _seed_card(session_factory, 508)
    agent = _agent(session_factory)
    update, query = _callback_update(508, f"fc_rate:{card_id}:9")

    await agent.handle_rate_flashcard(update, None)

    assert query.answers == [("Grades go from 0 to 5.", True)]
    async with session_factory() as session:
        card = await get_flashcard(session, card_id)
    assert card.next_review is None


@pytest.mark.asyncio
async def test_rating_another_users_card_is_not_found(session_factory) -> None:
    card_id = await _seed_card(session_factory, 509)
    agent = _agent(session_factory)
    update, query = _callback_update(510, f"fc_rate:{card_id}:4")

    await agent.handle_rate_flashcard(update, None)

    assert query.answers == [("Card not found.", True)]


@pytest.mark.asyncio
async def test_delete_removes_card(session_factory) -> None:
    card_id = await _seed_card(session_factory, 511)
    agent = _agent(session_factory)
    update, query = _callback_update(511, f"fc_delete:{card_id}")

    await agent.handle_delete_flashcard(update, None)

    assert query.answers == [("Card deleted.", False)]
    assert query.edited_text is not None and "Capital of France" in query.edited_text


@pytest.mark.asyncio
async def test_due_command_lists_overdue_cards(session_factory) -> None:
    await _seed_card(session_factory, 512, front="Speed of light")
    second_id = await _seed_card(session_factory, 512, front="Planck constant")
    clock = _FixedClock(NOW)
    agent = _agent(session_factory, clock)

    update, query = _callback_update(512, f"fc_rate:{second_id}:4")
    await agent.handle_rate_flashcard(update, None)

    clock.current = NOW + timedelta(days=2)
    command, message = _command_update(512)
    await agent.handle_due(command, types.SimpleNamespace(args=[]))

    text = message.replies[0][0]
    assert text.startswith("<b>1 card(s) due:</b>")
    assert "Planck constant" in text
    assert "Speed of light" not in text


def test_parse_add_arguments() -> None:
    payload = StudyAssistantAgent._parse_add_arguments("H2O | water")
    assert payload is not None
    assert (payload.front, payload.back, payload.subject) == ("H2O", "water", None)
    assert StudyAssistantAgent._parse_add_arguments("front only") is None
    assert StudyAssistantAgent._parse_add_arguments(" | back") is None
    assert StudyAssistantAgent._parse_add_arguments("a | b | c | d") is None


def test_parse_generate_arguments() -> None:
    parse = StudyAssistantAgent._parse_generate_arguments
    assert parse(["3", "organic", "chemistry"], 10) == (3, "organic chemistry")
    assert parse(["calculus"], 10) == (None, "calculus")
    assert parse([], 10) == (None, "")
    assert parse(["4"], 10) == (4, "")


def test_parse_generate_arguments_keeps_large_numbers_in_the_topic() -> None:
    parse = StudyAssistantAgent._parse_generate_arguments
    assert parse(["2024", "elections"], 10) == (None, "2024 elections")
    assert parse(["11", "dimensions"], 10) == (None, "11 dimensions")
    assert parse(["0", "kelvin"], 10) == (None, "0 kelvin")


@pytest.mark.parametrize(
    ("days", "expected"),
    [(0, "right away"), (1, "tomorrow"), (6, "in 6 days"), (7, "in 1 week"), (21, "in 3 weeks"), (16, "in 16 days")],
)
def test_describe_interval(days: int, expected: str) -> None:
    assert StudyAssistantAgent._describe_interval(days) == expected


@pytest.mark.asyncio
async def test_answer_shows_subject_and_difficulty_and_is_saved(session_factory) -> None:
    client = _StubClient("The derivative of $x^2$ is $2x$.")
    agent = _agent(session_factory, client=client)
    update, message = _command_update(520)
    update.message.text = "Calculate the derivative of x^2"
    context = types.SimpleNamespace(args=[], bot=_StubBot())

    await agent.handle_message(update, context)

    text, kwargs = message.replies[0]
    assert text.startswith("The derivative of $x^2$ is $2x$.")
    assert text.endswith("<i>math · medium · formulas</i>")
    assert kwargs["parse_mode"] == "HTML"

    async with session_factory() as session:
        stored = await list_user_questions(session, 520)
        stats = await get_user_statistics(session, 520)

    assert len(stored) == 1
    assert (stored[0].subject, stored[0].difficulty, stored[0].has_formula) == ("math", "medium", True)
    assert stats is not None and stats.questions_asked == 1
    buttons = [button.callback_data for row in kwargs["reply_markup"].inline_keyboard for button in row]
    assert f"q_fav:{stored[0].id}" in buttons


@pytest.mark.asyncio
async def test_answer_text_is_html_escaped(session_factory) -> None:
    agent = _agent(session_factory, client=_StubClient("Use <b> tags & entities."))
    update, message = _command_update(521)
    await agent.handle_quick(update, types.SimpleNamespace(args=["What", "is", "HTML?"], bot=_StubBot()))

    text, _ = message.replies[0]
    assert text.startswith("Use &lt;b&gt; tags &amp; entities.")
    assert text.endswith("<i>general · easy</i>")


@pytest.mark.asyncio
async def test_star_button_toggles_favorite_and_history_lists_it(session_factory) -> None:
    agent = _agent(session_factory, client=_StubClient("Mitochondria make ATP."))
    update, message = _command_update(522)
    update.message.text = "What does the cell use for energy?"
    await agent.handle_message(update, types.SimpleNamespace(args=[], bot=_StubBot()))

    async with session_factory() as session:
        (stored,) = await list_user_questions(session, 522)

    callback, query = _callback_update(522, f"q_fav:{stored.id}")
    await agent.handle_favorite_question(callback, None)
    assert query.answers == [("Starred.", False)]

    command, listing = _command_update(522)
    await agent.handle_favorites(command, types.SimpleNamespace(args=[]))
    assert f"★ #{stored.id}" in listing.replies[0][0]

    command, search = _command_update(522)
    await agent.handle_history(command, types.SimpleNamespace(args=["CELL"]))
    assert "What does the cell use for energy?" in search.replies[0][0]

    command, empty = _command_update(522)
    await agent.handle_history(command, types.SimpleNamespace(args=["photosynthesis"]))
    assert empty.replies[0][0].startswith("No questions match")

    stranger, denied = _callback_update(523, f"q_fav:{stored.id}")
    await agent.handle_favorite_question(stranger, None)
    assert denied.answers == [("Question not found.", True)]


@pytest.mark.asyncio
async def test_reset_clears_conversation_memory(session_factory) -> None:
    agent = _agent(session_factory)
    agent._tutor.history.record(524, "What is entropy?", "A measure of disorder.")
    update, message = _command_update(524)

    await agent.handle_reset(update, types.SimpleNamespace(args=[]))

    assert agent._tutor.history.last_exchange(524) is None
    assert message.replies[0][0].startswith("Conversation memory cleared.")


@pytest.mark.asyncio
async def test_add_reports_storage_failure_instead_of_raising(session_factory, monkeypatch) -> None:
    agent = _agent(session_factory)

    async def _skip_profile(update) -> None:
        return None

    # Without a user row the insert violates the foreign key.
    monkeypatch.setattr(agent, "_store_user_profile", _skip_profile)
    update, message = _command_update(525)

    await agent.handle_add(update, types.SimpleNamespace(args="Capital of Peru | Lima".split()))

    assert message.replies == [("Flashcards are unavailable right now.", {})]
    async with session_factory() as session:
        assert await get_user_statistics(session, 525) is None


@pytest.mark.asyncio
async def test_note_commands_save_filter_search_and_delete(session_factory) -> None:
    agent = _agent(session_factory)

    for text in (
        "Photosynthesis | Light becomes sugar in chloroplasts | Biology",
        "French verbs | Être is irregular",
    ):
        update, message = _command_update(530)
        await agent.handle_note(update, types.SimpleNamespace(args=text.split()))
        assert message.replies[0][0].startswith("Saved note #")

    update, message = _command_update(530)
    await agent.handle_notes(update, types.SimpleNamespace(args=["biology"]))
    listing = message.replies[0][0]
    assert listing.startswith("<b>Notes about biology</b>")
    assert "Photosynthesis" in listing and "French verbs" not in listing

    update, message = _command_update(530)
    await agent.handle_find_note(update, types.SimpleNamespace(args=["irregular"]))
    assert "French verbs" in message.replies[0][0]

    async with session_factory() as session:
        stats = await get_user_statistics(session, 530)
    assert stats is not None and stats.notes_created == 2

    update, message = _command_update(531)
    await agent.handle_delete_note(update, types.SimpleNamespace(args=["#1"]))
    assert message.replies[0][0] == "Note not found."

    update, message = _command_update(530)
    await agent.handle_delete_note(update, types.SimpleNamespace(args=["#1"]))
    assert message.replies[0][0] == "Deleted note <b>Photosynthesis</b>."

    update, message = _command_update(530)
    await agent.handle_find_note(update, types.SimpleNamespace(args=["chloroplasts"]))
    assert message.replies[0][0] == "No notes mention “chloroplasts”."


@pytest.mark.asyncio
async def test_note_command_rejects_missing_content(session_factory) -> None:
    agent = _agent(session_factory)
    update, message = _command_update(532)

    await agent.handle_note(update, types.SimpleNamespace(args=["Just", "a", "title"]))

    assert message.replies[0][0].startswith("Usage: /note")


_PLAN_TEXT = """Title: Cell biology sprint
Description: Three short sessions.
Tasks:
- Day 1: Read about organelles
- Day 2: Draw a labelled cell
- Day 3: Quiz yourself
- Day 9: Outside the plan
"""


@pytest.mark.asyncio
async def test_plan_command_drafts_and_tracks_progress(session_factory) -> None:
    agent = _agent(session_factory, client=_StubClient(_PLAN_TEXT))
    update, message = _command_update(540)
    args = "3 Learn cell parts; Memorise organelles | beginner".split()

    await agent.handle_plan(update, types.SimpleNamespace(args=args, bot=_StubBot()))

    text, kwargs = message.replies[0]
    assert text.startswith("<b>Cell biology sprint</b>")
    assert "Progress: 0% (active)" in text
    assert "Goals: Learn cell parts; Memorise organelles" in text
    assert "Outside the plan" not in text
    buttons = [button.callback_data for row in kwargs["reply_markup"].inline_keyboard for button in row]
    task_buttons = [data for data in buttons if data.startswith("sp_task:")]
    assert len(task_buttons) == 3
    plan_id = int(buttons[-1].split(":")[1])
    assert buttons[-1] == f"sp_pause:{plan_id}"

    callback, query = _callback_update(540, task_buttons[0])
    await agent.handle_plan_task(callback, None)
    assert query.answers == [("Progress saved.", False)]
    assert "Progress: 33% (active)" in query.edited_text

    callback, query = _callback_update(540, f"sp_pause:{plan_id}")
    await agent.handle_plan_status(callback, None)
    assert query.answers == [("Plan paused.", False)]
    resume = [button.callback_data for row in query.edited_markup.inline_keyboard for button in row]
    assert resume[-1] == f"sp_resume:{plan_id}"

    for data in task_buttons[1:]:
        callback, query = _callback_update(540, data)
        await agent.handle_plan_task(callback, None)
    assert query.answers == [("Plan completed!", False)]
    assert "Progress: 100% (completed)" in query.edited_text

    update, message = _command_update(540)
    await agent.handle_plans(update, types.SimpleNamespace(args=[]))
    assert f"#{plan_id} Cell biology sprint: 100% (completed)" in message.replies[0][0]

    async with session_factory() as session:
        stats = await get_user_statistics(session, 540)
    assert stats is not None and stats.plans_created == 1


@pytest.mark.asyncio
async def test_plan_task_of_another_user_is_not_found(session_factory) -> None:
    agent = _agent(session_factory, client=_StubClient(_PLAN_TEXT))
    update, message = _command_update(541)
    await agent.handle_plan(update, types.SimpleNamespace(args=["Learn", "cells"], bot=_StubBot()))
    buttons = [button.callback_data for row in message.replies[0][1]["reply_markup"].inline_keyboard for button in row]

    callback, query = _callback_update(542, buttons[0])
    await agent.handle_plan_task(callback, None)

    assert query.answers == [("Task not found.", True)]


@pytest.mark.asyncio
async def test_plan_command_requires_goals(session_factory) -> None:
    client = _StubClient(_PLAN_TEXT)
    agent = _agent(session_factory, client=client)
    update, message = _command_update(543)

    await agent.handle_plan(update, types.SimpleNamespace(args=["5"], bot=_StubBot()))

    assert message.replies[0][0].startswith("Usage: /plan")
    assert client.responses.calls == 0


def test_parse_plan_arguments() -> None:
    parse = StudyAssistantAgent._parse_plan_arguments
    assert parse("14 Algebra; Geometry | advanced") == (14, ["Algebra", "Geometry"], "advanced")
    assert parse("Learn Spanish") == (7, ["Learn Spanish"], "intermediate")
    assert parse("90 days of Latin") == (7, ["90 days of Latin"], "intermediate")


@pytest.mark.asyncio
async def test_failed_rating_keeps_keyboard_and_retry_counts_once(session_factory, monkeypatch) -> None:
    card_id = await _seed_card(session_factory, 550)
    agent = _agent(session_factory)
    original_record_review = flashcards_module.record_review
    failures = [OperationalError("INSERT INTO review_logs", {}, Exception("database is locked"))]

    async def flaky_record_review(*args, **kwargs):
        if failures:
            raise failures.pop()
        return await original_record_review(*args, **kwargs)

    monkeypatch.setattr(flashcards_module, "record_review", flaky_record_review)

    update, query = _callback_update(550, f"fc_rate:{card_id}:4")
    await agent.handle_rate_flashcard(update, None)

    assert query.answers == [("Could not save your grade. Tap it again in a moment.", True)]
    assert query.markup_cleared is False
    async with session_factory() as session:
        assert (await get_flashcard(session, card_id)).repetitions == 0

    update, query = _callback_update(550, f"fc_rate:{card_id}:4")
    await agent.handle_rate_flashcard(update, None)

    async with session_factory() as session:
        card = await get_flashcard(session, card_id)
        stats = await get_user_statistics(session, 550)
    assert card.repetitions == 1
    assert stats is not None and stats.flashcards_reviewed == 1
    assert query.answers[-1] == ("Saved.", False)
