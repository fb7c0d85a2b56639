"""Telegram handlers for the Study Assistant bot."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from html import escape
from typing import List, Optional, Sequence, Tuple

from openai import AsyncOpenAI
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ChatAction, ParseMode
from telegram.ext import ContextTypes

from src.bot.flashcard_workflow import FlashcardWorkflow, FlashcardWorkflowResult
from src.bot.study_plan_workflow import DEFAULT_PLAN_DAYS, StudyPlanWorkflow
from src.bot.tutor import Tutor, TutorAnswer
from src.db import Flashcard, Note, Question, StudyPlan
from src.db.flashcards import (
    FlashcardPayload,
    SqlAlchemyCardStore,
    count_due_flashcards,
    create_flashcard,
    delete_flashcard,
    get_flashcard,
)
from src.db.notes import NotePayload, create_note, delete_note, list_user_notes, search_notes
from src.db.questions import list_user_questions, save_question, search_questions, toggle_question_favorite
from src.db.study_plans import (
    MAX_PLAN_DAYS,
    get_study_plan,
    list_user_study_plans,
    set_study_plan_status,
    set_task_completed,
)
from src.db.users import (
    UserStatistics,
    get_user_statistics,
    increment_user_statistics,
    upsert_user,
)
from src.services.clock import Clock, SystemClock, ensure_utc
from src.services.errors import (
    FlashcardNotFoundError,
    InvalidArgumentError,
    NoteNotFoundError,
    QuestionNotFoundError,
    StudyPlanNotFoundError,
)
from src.services.review_service import ReviewService
from src.services.srs import DEFAULT_EASE_FACTOR, MAX_QUALITY, MIN_QUALITY, PASSING_QUALITY


LOGGER = logging.getLogger(__name__)

_QUALITY_LABELS = {
    0: "0 · blank",
    1: "1 · wrong",
    2: "2 · almost",
    3: "3 · hard",
    4: "4 · good",
    5: "5 · easy",
}

_UNAVAILABLE = "Flashcards are unavailable right now."
_STORAGE_UNAVAILABLE = "Saving is unavailable right now. Please try again later."
_LIST_LIMIT = 10
_PREVIEW_LENGTH = 80


class StudyAssistantAgent:
    """Answers questions and runs spaced-repetition flashcard reviews."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        history_size: int = 5,
        answer_mode: str = "detailed",
        flashcard_model: Optional[str] = None,
        flashcard_max_cards: int = 10,
        default_ease_factor: float = DEFAULT_EASE_FACTOR,
        clock: Optional[Clock] = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._default_ease_factor = default_ease_factor
        self._tutor = Tutor(client, model, history_size=history_size, default_mode=answer_mode)
        self._review_service: Optional[ReviewService] = None
        self._flashcard_workflow: Optional[FlashcardWorkflow] = None
        self._study_plan_workflow: Optional[StudyPlanWorkflow] = None
        if session_factory is not None:
            self._review_service = ReviewService(SqlAlchemyCardStore(session_factory), self._clock)
            self._flashcard_workflow = FlashcardWorkflow(
                client=client,
                model=flashcard_model or model,
                session_factory=session_factory,
                max_cards_per_request=flashcard_max_cards,
                default_ease_factor=default_ease_factor,
            )
            self._study_plan_workflow = StudyPlanWorkflow(
                client=client,
                model=flashcard_model or model,
                session_factory=session_factory,
            )
        self._flashcard_max_cards = flashcard_max_cards

    async def _store_user_profile(self, update: Update) -> None:
        """Save the Telegram user's profile details into the database."""
        if self._session_factory is None:
            return

        chat = update.effective_chat
        user = update.effective_user
        if chat is None or user is None:
            return

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await upsert_user(
                        session,
                        chat.id,
                        getattr(user, "first_name", None),
                        getattr(user, "last_name", None),
                    )
        except Exception:  # pragma: no cover - guardrail against database issues
            LOGGER.exception("Failed to upsert Telegram user record for chat %s.", chat.id)

    async def _record_question(self, chat_id: int, question: str, answer: TutorAnswer) -> Optional[int]:
        """Save the answered question and bump the counter; returns the stored id."""
        if self._session_factory is None:
            return None

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    record = await save_question(
                        session,
                        chat_id,
                        question,
                        answer.text,
                        subject=answer.subject,
                        difficulty=answer.difficulty,
                        mode=answer.mode,
                        has_code=answer.has_code,
                        has_formula=answer.has_formula,
                        now=self._clock.now(),
                    )
                    await increment_user_statistics(session, chat_id, questions=1)
        except SQLAlchemyError:
            LOGGER.exception("Failed to save question history for chat %s.", chat_id)
            return None
        return record.id

    async def _fetch_user_statistics(self, chat_id: int) -> Tuple[Optional[UserStatistics], int]:
        if self._session_factory is None:
            return None, 0

        try:
            async with self._session_factory() as session:
                stats = await get_user_statistics(session, chat_id)
                due = await count_due_flashcards(session, chat_id, self._clock.now())
        except Exception:  # pragma: no cover - guardrail against database issues
            LOGGER.exception("Failed to load statistics for chat %s.", chat_id)
            return None, 0
        return stats, due

    async def _typing_indicator(self, chat_id: int, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Keep the typing action visible while the model is working."""
        try:
            while True:
                await context.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
                await asyncio.sleep(4)
        except asyncio.CancelledError:
            return

    async def _answer_question(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
        question: str,
        mode: Optional[str],
    ) -> None:
        chat = update.effective_chat
        if chat is None or update.message is None:
            return

        await self._store_user_profile(update)

        typing_task = asyncio.create_task(self._typing_indicator(chat.id, context))
        try:
            answer = await self._tutor.answer(chat.id, question, mode=mode)
        except Exception:  # pragma: no cover - network or API issues handled gracefully
            LOGGER.exception("Failed to generate an answer for chat %s.", chat.id)
            await update.message.reply_text(
                "I could not reach the tutor right now. Please try again in a moment."
            )
            return
        finally:
            typing_task.cancel()
            with suppress(asyncio.CancelledError):
                await typing_task

        question_id = await self._record_question(chat.id, question, answer)
        await update.message.reply_text(
            self._format_answer(answer),
            parse_mode=ParseMode.HTML,
            reply_markup=self._build_answer_markup(question_id),
        )

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Answer a free-form question in the configured mode."""
        if not update.message or not update.message.text:
            return

        question = update.message.text.strip()
        if not question:
            return
        await self._answer_question(update, context, question, mode=None)

    async def handle_quick(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Answer ``/quick <question>`` briefly."""
        if not update.message:
            return

        question = " ".join(context.args or []).strip()
        if not question:
            await update.message.reply_text("Usage: /quick <question>")
            return
        await self._answer_question(update, context, question, mode="quick")

    async def handle_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return

        await self._store_user_profile(update)

        greeting = (
            "Hi! I am your study assistant. Here is what I can do:\n"
            "- answer questions (send any message, or /quick <question> for a short answer);\n"
            "  /history lists or searches past questions, /favorites shows starred ones, /reset starts over;\n"
            "- keep flashcards: /add front | back | subject, or /generate <topic>;\n"
            "- schedule reviews with spaced repetition: /review, /due;\n"
            "- take notes: /note title | text | subject, /notes [subject], /findnote <words>;\n"
            "- plan your studies: /plan [days] goal; another goal | level, /plans;\n"
            "- show your progress: /stats."
        )
        await update.message.reply_text(greeting, reply_markup=self._build_take_card_markup())

    @staticmethod
    def _parse_add_arguments(text: str) -> Optional[FlashcardPayload]:
        """Parse ``front | back [| subject]`` into a payload."""
        parts = [part.strip() for part in text.split("|")]
        if len(parts) < 2 or len(parts) > 3 or not parts[0] or not parts[1]:
            return None
        subject = parts[2] if len(parts) == 3 and parts[2] else None
        return FlashcardPayload(front=parts[0], back=parts[1], subject=subject)

    async def handle_add(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Create a flashcard from ``/add front | back [| subject]``."""
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        if self._session_factory is None:
            await update.message.reply_text(_UNAVAILABLE)
            return

        payload = self._parse_add_arguments(" ".join(context.args or []))
        if payload is None:
            await update.message.reply_text("Usage: /add front | back | subject (subject is optional)")
            return

        await self._store_user_profile(update)

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    flashcard = await create_flashcard(
                        session,
                        chat.id,
                        payload,
                        ease_factor=self._default_ease_factor,
                        now=self._clock.now(),
                    )
                    await increment_user_statistics(session, chat.id, created=1)
        except SQLAlchemyError:
            LOGGER.exception("Failed to store flashcard for chat %s.", chat.id)
            await update.message.reply_text(_UNAVAILABLE)
            return

        await update.message.reply_text(
            f"Saved flashcard #{flashcard.id}: <b>{escape(flashcard.front)}</b>",
            parse_mode=ParseMode.HTML,
            reply_markup=self._build_take_card_markup(),
        )

    @staticmethod
    def _parse_generate_arguments(args: Sequence[str], max_count: int) -> Tuple[Optional[int], str]:
        """Split an optional leading card count from the topic words.

        Only a number between 1 and ``max_count`` counts as a card count, so
        "/generate 2024 elections" keeps the year in the topic.
        """
        words = list(args)
        count: Optional[int] = None
        if words and words[0].isdigit() and 1 <= int(words[0]) <= max_count:
            count = int(words.pop(0))
        return count, " ".join(words).strip()

    async def handle_generate(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Create flashcards with the model from ``/generate [count] <topic>``."""
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        if self._flashcard_workflow is None:
            await update.message.reply_text(_UNAVAILABLE)
            return

        count, topic = self._parse_generate_arguments(context.args or [], self._flashcard_max_cards)
        if not topic:
            last = self._tutor.history.last_exchange(chat.id)
            topic = last[0] if last else ""

        await self._store_user_profile(update)

        typing_task = asyncio.create_task(self._typing_indicator(chat.id, context))
        try:
            result = await self._flashcard_workflow.handle(chat.id, topic, count)
        finally:
            typing_task.cancel()
            with suppress(asyncio.CancelledError):
                await typing_task

        await update.message.reply_text(
            self._format_generation_result(topic, result),
            parse_mode=ParseMode.HTML,
            reply_markup=self._build_take_card_markup() if result.handled else None,
        )

    async def handle_review(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Show the next card to study in response to ``/review``."""
        chat = update.effective_chat
        if not update.message or chat is None:
            return
        await self._store_user_profile(update)
        await self._send_next_card(update.message, chat.id)

    async def handle_take_flashcard(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if query is None:
            return

        if self._review_service is None:
            await query.answer(_UNAVAILABLE, show_alert=True)
            return

        await query.answer()

        message = query.message
        if message is None or message.chat is None:
            return
        await self._send_next_card(message, message.chat.id)

    async def _send_next_card(self, message, chat_id: int) -> None:
        if self._review_service is None:
            await message.reply_text(_UNAVAILABLE)
            return

        card = await self._review_service.next_card(chat_id)
        if card is None:
            await message.reply_text(
                "Nothing to review right now. Add cards with /add or /generate, or come back later."
            )
            return

        await message.reply_text(
            self._format_card_question(card),
            parse_mode=ParseMode.HTML,
            reply_markup=self._build_reveal_keyboard(card.id),
        )

    @staticmethod
    def _parse_callback(data: Optional[str], prefix: str, size: int) -> Optional[List[int]]:
        if data is None:
            return None
        parts = data.split(":")
        if len(parts) != size or parts[0] != prefix:
            return None
        try:
            return [int(part) for part in parts[1:]]
        except ValueError:
            return None

    async def handle_show_flashcard(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Reveal the back of a card and offer the grading buttons."""
        query = update.callback_query
        if query is None:
            return

        if self._session_factory is None:
            await query.answer(_UNAVAILABLE, show_alert=True)
            return

        parsed = self._parse_callback(query.data, "fc_show", 2)
        message = query.message
        if parsed is None or message is None or message.chat is None:
            await query.answer()
            return

        (card_id,) = parsed
        try:
            async with self._session_factory() as session:
                card = await get_flashcard(session, card_id, message.chat.id)
        except FlashcardNotFoundError:
            await query.answer("Card not found.", show_alert=True)
            return

        prompt = self._format_card_answer(card)
        try:
            await query.edit_message_text(
                prompt,
                parse_mode=ParseMode.HTML,
                reply_markup=self._build_rating_keyboard(card.id),
            )
        except Exception:  # pragma: no cover - best effort update
            LOGGER.debug("Could not reveal flashcard text.", exc_info=True)
            await message.reply_text(
                prompt,
                parse_mode=ParseMode.HTML,
                reply_markup=self._build_rating_keyboard(card.id),
            )

        await query.answer()

    async def handle_rate_flashcard(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Grade a card, persist its new schedule, and report the next review."""
        query = update.callback_query
        if query is None:
            return

        if self._review_service is None:
            await query.answer(_UNAVAILABLE, show_alert=True)
            return

        parsed = self._parse_callback(query.data, "fc_rate", 3)
        message = query.message
        if parsed is None or message is None or message.chat is None:
            await query.answer("Invalid grade.", show_alert=True)
            return

        card_id, quality = parsed
        chat_id = message.chat.id

        try:
            _, outcome = await self._review_service.review_card(card_id, quality, user_id=chat_id)
        except InvalidArgumentError:
            await query.answer(f"Grades go from {MIN_QUALITY} to {MAX_QUALITY}.", show_alert=True)
            return
        except FlashcardNotFoundError:
            await query.answer("Card not found.", show_alert=True)
            return
        except SQLAlchemyError:
            LOGGER.exception("Failed to save review of card %s for chat %s.", card_id, chat_id)
            await query.answer("Could not save your grade. Tap it again in a moment.", show_alert=True)
            return

        try:
            await query.edit_message_reply_markup(reply_markup=None)
        except Exception:  # pragma: no cover - best effort cleanup
            LOGGER.debug("Could not clear flashcard rating markup.", exc_info=True)

        await query.answer("Saved.")
        await message.reply_text(
            f"Grade {quality} saved. Next review {self._describe_interval(outcome.interval_days)}.",
            reply_markup=self._build_take_card_markup(),
        )

    async def handle_delete_flashcard(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if query is None:
            return

        if self._session_factory is None:
            await query.answer(_UNAVAILABLE, show_alert=True)
            return

        parsed = self._parse_callback(query.data, "fc_delete", 2)
        message = query.message
        if parsed is None or message is None or message.chat is None:
            await query.answer()
            return

        (card_id,) = parsed
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    card = await delete_flashcard(session, card_id, message.chat.id)
        except FlashcardNotFoundError:
            await query.answer("Card not found.", show_alert=True)
            return

        await query.answer("Card deleted.")
        with suppress(Exception):
            await query.edit_message_text(
                f"Deleted flashcard <b>{escape(card.front)}</b>.",
                parse_mode=ParseMode.HTML,
                reply_markup=self._build_take_card_markup(),
            )

    async def handle_due(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """List the cards that are due, longest overdue first."""
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        if self._review_service is None:
            await update.message.reply_text(_UNAVAILABLE)
            return

        due = await self._review_service.select_due(chat.id)
        if not due:
            await update.message.reply_text("No cards are due. Nice work!")
            return

        lines = [f"<b>{len(due)} card(s) due:</b>"]
        for card in due[:10]:
            lines.append(f"• {escape(card.front)}")
        if len(due) > 10:
            lines.append(f"…and {len(due) - 10} more.")
        await update.message.reply_text(
            "\n".join(lines),
            parse_mode=ParseMode.HTML,
            reply_markup=self._build_take_card_markup(),
        )

    async def handle_stats(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        stats, due = await self._fetch_user_statistics(chat.id)
        if stats is None:
            await update.message.reply_text("No statistics yet. Ask a question or add a flashcard to start.")
            return

        await update.message.reply_text(self._format_statistics(stats, due), parse_mode=ParseMode.HTML)

    async def handle_reset(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Forget the tutor's conversation memory for this chat."""
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        self._tutor.history.clear(chat.id)
        await update.message.reply_text("Conversation memory cleared. Ask me anything!")

    async def handle_history(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """List recent questions, or search them with ``/history <words>``."""
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        if self._session_factory is None:
            await update.message.reply_text(_STORAGE_UNAVAILABLE)
            return

        term = " ".join(context.args or []).strip()
        async with self._session_factory() as session:
            if term:
                questions = await search_questions(session, chat.id, term, limit=_LIST_LIMIT)
            else:
                questions = await list_user_questions(session, chat.id, limit=_LIST_LIMIT)

        if not questions:
            text = f"No questions match “{term}”." if term else "You have not asked any questions yet."
            await update.message.reply_text(text)
            return

        title = f"Questions matching “{term}”" if term else "Your recent questions"
        await update.message.reply_text(
            self._format_question_list(title, questions),
            parse_mode=ParseMode.HTML,
        )

    async def handle_favorites(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        if self._session_factory is None:
            await update.message.reply_text(_STORAGE_UNAVAILABLE)
            return

        async with self._session_factory() as session:
            questions = await list_user_questions(session, chat.id, limit=_LIST_LIMIT, favorites_only=True)

        if not questions:
            await update.message.reply_text("No starred questions yet. Tap ☆ under an answer to keep it.")
            return

        await update.message.reply_text(
            self._format_question_list("Starred questions", questions),
            parse_mode=ParseMode.HTML,
        )

    async def handle_favorite_question(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Toggle the star on a stored question from the button under its answer."""
        query = update.callback_query
        if query is None:
            return

        if self._session_factory is None:
            await query.answer(_STORAGE_UNAVAILABLE, show_alert=True)
            return

        parsed = self._parse_callback(query.data, "q_fav", 2)
        message = query.message
        if parsed is None or message is None or message.chat is None:
            await query.answer()
            return

        (question_id,) = parsed
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    record = await toggle_question_favorite(session, question_id, message.chat.id)
        except QuestionNotFoundError:
            await query.answer("Question not found.", show_alert=True)
            return

        await query.answer("Starred." if record.is_favorite else "Star removed.")
        with suppress(Exception):
            await query.edit_message_reply_markup(
                reply_markup=self._build_answer_markup(record.id, record.is_favorite)
            )

    @staticmethod
    def _parse_note_arguments(text: str) -> Optional[NotePayload]:
        """Parse ``title | content [| subject]`` into a payload."""
        parts = [part.strip() for part in text.split("|")]
        if len(parts) < 2 or len(parts) > 3 or not parts[0] or not parts[1]:
            return None
        subject = parts[2] if len(parts) == 3 and parts[2] else None
        return NotePayload(title=parts[0], content=parts[1], subject=subject)

    async def handle_note(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Save a note from ``/note title | content [| subject]``."""
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        if self._session_factory is None:
            await update.message.reply_text(_STORAGE_UNAVAILABLE)
            return

        payload = self._parse_note_arguments(" ".join(context.args or []))
        if payload is None:
            await update.message.reply_text("Usage: /note title | text | subject (subject is optional)")
            return

        await self._store_user_profile(update)

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    note = await create_note(session, chat.id, payload, now=self._clock.now())
                    await increment_user_statistics(session, chat.id, notes=1)
        except SQLAlchemyError:
            LOGGER.exception("Failed to store note for chat %s.", chat.id)
            await update.message.reply_text(_STORAGE_UNAVAILABLE)
            return

        await update.message.reply_text(
            f"Saved note #{note.id}: <b>{escape(note.title)}</b>",
            parse_mode=ParseMode.HTML,
        )

    async def handle_notes(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """List notes, optionally only those filed under ``/notes <subject>``."""
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        if self._session_factory is None:
            await update.message.reply_text(_STORAGE_UNAVAILABLE)
            return

        subject = " ".join(context.args or []).strip() or None
        async with self._session_factory() as session:
            notes = await list_user_notes(session, chat.id, subject=subject, limit=_LIST_LIMIT)

        if not notes:
            text = f"No notes about {subject} yet." if subject else "No notes yet. Add one with /note."
            await update.message.reply_text(text)
            return

        title = f"Notes about {subject}" if subject else "Your notes"
        await update.message.reply_text(self._format_note_list(title, notes), parse_mode=ParseMode.HTML)

    async def handle_find_note(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        if self._session_factory is None:
            await update.message.reply_text(_STORAGE_UNAVAILABLE)
            return

        term = " ".join(context.args or []).strip()
        if not term:
            await update.message.reply_text("Usage: /findnote <words>")
            return

        async with self._session_factory() as session:
            notes = await search_notes(session, chat.id, term, limit=_LIST_LIMIT)

        if not notes:
            await update.message.reply_text(f"No notes mention “{term}”.")
            return

        await update.message.reply_text(
            self._format_note_list(f"Notes mentioning “{term}”", notes),
            parse_mode=ParseMode.HTML,
        )

    async def handle_delete_note(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        if self._session_factory is None:
            await update.message.reply_text(_STORAGE_UNAVAILABLE)
            return

        args = context.args or []
        if len(args) != 1 or not args[0].lstrip("#").isdigit():
            await update.message.reply_text("Usage: /delnote <note number>")
            return

        note_id = int(args[0].lstrip("#"))
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    note = await delete_note(session, note_id, chat.id)
        except NoteNotFoundError:
            await update.message.reply_text("Note not found.")
            return

        await update.message.reply_text(
            f"Deleted note <b>{escape(note.title)}</b>.",
            parse_mode=ParseMode.HTML,
        )

    @staticmethod
    def _parse_plan_arguments(text: str) -> Tuple[int, List[str], str]:
        """Parse ``[days] goal; another goal [| level]``."""
        goals_part, _, level = text.partition("|")
        words = goals_part.split()
        days = DEFAULT_PLAN_DAYS
        if words and words[0].isdigit() and 1 <= int(words[0]) <= MAX_PLAN_DAYS:
            days = int(words.pop(0))
        goals = [goal.strip() for goal in " ".join(words).split(";") if goal.strip()]
        return days, goals, level.strip() or "intermediate"

    async def handle_plan(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Draft and store a study plan from ``/plan [days] goal; goal [| level]``."""
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        if self._study_plan_workflow is None:
            await update.message.reply_text(_STORAGE_UNAVAILABLE)
            return

        days, goals, level = self._parse_plan_arguments(" ".join(context.args or []))
        if not goals:
            await update.message.reply_text(
                f"Usage: /plan [days, up to {MAX_PLAN_DAYS}] goal; another goal | level"
            )
            return

        await self._store_user_profile(update)

        typing_task = asyncio.create_task(self._typing_indicator(chat.id, context))
        try:
            result = await self._study_plan_workflow.handle(
                chat.id, goals, duration_days=days, level=level, now=self._clock.now()
            )
        finally:
            typing_task.cancel()
            with suppress(asyncio.CancelledError):
                await typing_task

        if not result.handled or result.plan is None:
            await update.message.reply_text("\n".join(result.errors) or "No plan was created.")
            return

        await update.message.reply_text(
            self._format_plan(result.plan),
            parse_mode=ParseMode.HTML,
            reply_markup=self._build_plan_keyboard(result.plan),
        )

    async def handle_plans(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if not update.message or chat is None:
            return

        if self._session_factory is None:
            await update.message.reply_text(_STORAGE_UNAVAILABLE)
            return

        async with self._session_factory() as session:
            plans = await list_user_study_plans(session, chat.id, limit=_LIST_LIMIT)

        if not plans:
            await update.message.reply_text("No study plans yet. Create one with /plan.")
            return

        lines = ["<b>Your study plans</b>"]
        for plan in plans:
            lines.append(f"#{plan.id} {escape(plan.title)}: {plan.progress}% ({plan.status})")
        keyboard = InlineKeyboardMarkup(
            [[InlineKeyboardButton(f"Open #{plan.id}", callback_data=f"sp_show:{plan.id}")] for plan in plans[:5]]
        )
        await update.message.reply_text("\n".join(lines), parse_mode=ParseMode.HTML, reply_markup=keyboard)

    async def handle_show_plan(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if query is None:
            return

        if self._session_factory is None:
            await query.answer(_STORAGE_UNAVAILABLE, show_alert=True)
            return

        parsed = self._parse_callback(query.data, "sp_show", 2)
        message = query.message
        if parsed is None or message is None or message.chat is None:
            await query.answer()
            return

        (plan_id,) = parsed
        try:
            async with self._session_factory() as session:
                plan = await get_study_plan(session, plan_id, message.chat.id)
        except StudyPlanNotFoundError:
            await query.answer("Plan not found.", show_alert=True)
            return

        await query.answer()
        await message.reply_text(
            self._format_plan(plan),
            parse_mode=ParseMode.HTML,
            reply_markup=self._build_plan_keyboard(plan),
        )

    async def handle_plan_task(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Mark a plan task done (``sp_task:<id>:1``) or not done (``sp_task:<id>:0``)."""
        query = update.callback_query
        if query is None:
            return

        if self._session_factory is None:
            await query.answer(_STORAGE_UNAVAILABLE, show_alert=True)
            return

        parsed = self._parse_callback(query.data, "sp_task", 3)
        message = query.message
        if parsed is None or message is None or message.chat is None:
            await query.answer()
            return

        task_id, flag = parsed
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    plan = await set_task_completed(
                        session, task_id, message.chat.id, completed=bool(flag), now=self._clock.now()
                    )
        except StudyPlanNotFoundError:
            await query.answer("Task not found.", show_alert=True)
            return

        await query.answer("Plan completed!" if plan.status == "completed" else "Progress saved.")
        await self._refresh_plan_message(query, plan)

    async def handle_plan_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Pause (``sp_pause:<id>``) or resume (``sp_resume:<id>``) a plan."""
        query = update.callback_query
        if query is None:
            return

        if self._session_factory is None:
            await query.answer(_STORAGE_UNAVAILABLE, show_alert=True)
            return

        message = query.message
        target = None
        for prefix, status in (("sp_pause", "paused"), ("sp_resume", "active")):
            parsed = self._parse_callback(query.data, prefix, 2)
            if parsed is not None:
                target = (parsed[0], status)
        if target is None or message is None or message.chat is None:
            await query.answer()
            return

        plan_id, status = target
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    plan = await set_study_plan_status(
                        session, plan_id, message.chat.id, status, now=self._clock.now()
                    )
        except StudyPlanNotFoundError:
            await query.answer("Plan not found.", show_alert=True)
            return

        await query.answer("Plan paused." if plan.status == "paused" else "Plan resumed.")
        await self._refresh_plan_message(query, plan)

    async def _refresh_plan_message(self, query, plan: StudyPlan) -> None:
        try:
            await query.edit_message_text(
                self._format_plan(plan),
                parse_mode=ParseMode.HTML,
                reply_markup=self._build_plan_keyboard(plan),
            )
        except Exception:  # pragma: no cover - best effort update
            LOGGER.debug("Could not refresh study plan message.", exc_info=True)

    @staticmethod
    def _build_take_card_markup() -> InlineKeyboardMarkup:
        return InlineKeyboardMarkup([[InlineKeyboardButton("Review a card", callback_data="fc_take")]])

    @staticmethod
    def _build_answer_markup(question_id: Optional[int], is_favorite: bool = False) -> InlineKeyboardMarkup:
        row = [InlineKeyboardButton("Review a card", callback_data="fc_take")]
        if question_id is not None:
            label = "★ Starred" if is_favorite else "☆ Star"
            row.append(InlineKeyboardButton(label, callback_data=f"q_fav:{question_id}"))
        return InlineKeyboardMarkup([row])

    @staticmethod
    def _build_plan_keyboard(plan: StudyPlan) -> InlineKeyboardMarkup:
        rows = []
        pending = [task for task in plan.tasks if not task.completed]
        for task in pending[:5]:
            rows.append([InlineKeyboardButton(f"✓ Day {task.day}", callback_data=f"sp_task:{task.id}:1")])
        if plan.status == "active":
            rows.append([InlineKeyboardButton("Pause plan", callback_data=f"sp_pause:{plan.id}")])
        elif plan.status == "paused":
            rows.append([InlineKeyboardButton("Resume plan", callback_data=f"sp_resume:{plan.id}")])
        return InlineKeyboardMarkup(rows)

    @staticmethod
    def _preview(text: str, limit: int = _PREVIEW_LENGTH) -> str:
        text = " ".join(text.split())
        return text if len(text) <= limit else text[: limit - 1].rstrip() + "…"

    @staticmethod
    def _format_answer(answer: TutorAnswer) -> str:
        tags = [answer.subject, answer.difficulty]
        if answer.has_code:
            tags.append("code")
        if answer.has_formula:
            tags.append("formulas")
        return f"{escape(answer.text)}\n\n<i>{escape(' · '.join(tags))}</i>"

    @classmethod
    def _format_question_list(cls, title: str, questions: Sequence[Question]) -> str:
        lines = [f"<b>{escape(title)}</b>"]
        for record in questions:
            star = "★ " if record.is_favorite else ""
            lines.append(
                f"{star}#{record.id} {escape(cls._preview(record.question))} "
                f"<i>({escape(record.subject)} · {record.difficulty})</i>"
            )
        return "\n".join(lines)

    @classmethod
    def _format_note_list(cls, title: str, notes: Sequence[Note]) -> str:
        lines = [f"<b>{escape(title)}</b>"]
        for note in notes:
            subject = f" <i>{escape(note.subject)}</i>" if note.subject else ""
            lines.append(f"#{note.id} <b>{escape(note.title)}</b>{subject}")
            lines.append(escape(cls._preview(note.content)))
        return "\n".join(lines)

    @staticmethod
    def _format_plan(plan: StudyPlan) -> str:
        lines = [f"<b>{escape(plan.title)}</b>"]
        if plan.description:
            lines.append(f"<i>{escape(plan.description)}</i>")
        lines.append(f"Progress: {plan.progress}% ({plan.status})")
        if plan.goals:
            lines.append("Goals: " + escape("; ".join(plan.goals)))
        lines.append("")
        for task in plan.tasks:
            mark = "✅" if task.completed else "▫️"
            due = ensure_utc(task.due_date).strftime("%b %d")
            lines.append(f"{mark} Day {task.day} ({due}): {escape(task.title)}")
        return "\n".join(lines)

    @staticmethod
    def _build_reveal_keyboard(card_id: int) -> InlineKeyboardMarkup:
        return InlineKeyboardMarkup(
            [
                [
                    InlineKeyboardButton("Show answer", callback_data=f"fc_show:{card_id}"),
                    InlineKeyboardButton("Delete", callback_data=f"fc_delete:{card_id}"),
                ]
            ]
        )

    @staticmethod
    def _build_rating_keyboard(card_id: int) -> InlineKeyboardMarkup:
        rows = []
        for start in (MIN_QUALITY, PASSING_QUALITY):
            rows.append(
                [
                    InlineKeyboardButton(_QUALITY_LABELS[quality], callback_data=f"fc_rate:{card_id}:{quality}")
                    for quality in range(start, start + 3)
                ]
            )
        return InlineKeyboardMarkup(rows)

    @staticmethod
    def _format_card_question(card: Flashcard) -> str:
        lines = ["<b>Flashcard</b>"]
        if card.subject:
            lines.append(f"<i>{escape(card.subject)}</i>")
        lines.extend(["", escape(card.front), "", "<i>Recall the answer, then tap «Show answer».</i>"])
        return "\n".join(lines)

    @staticmethod
    def _format_card_answer(card: Flashcard) -> str:
        return "\n".join(
            [
                f"<b>Question:</b> {escape(card.front)}",
                f"<b>Answer:</b> {escape(card.back)}",
                "",
                "<i>How well did you remember it? 0 is a blank, 5 is effortless.</i>",
            ]
        )

    @staticmethod
    def _format_generation_result(topic: str, result: FlashcardWorkflowResult) -> str:
        if not result.handled:
            return escape("\n".join(result.errors) or "No flashcards were created.")

        lines = [f"<b>Created {result.created_count} flashcard(s) about {escape(topic)}:</b>"]
        for summary in result.summaries:
            lines.append(f"• {escape(summary.front)}")
        return "\n".join(lines)

    @staticmethod
    def _format_statistics(stats: UserStatistics, due: int) -> str:
        lines = [
            "<b>Your progress</b>",
            f"Questions asked: {stats.questions_asked}",
            f"Flashcards created: {stats.flashcards_created}",
            f"Reviews: {stats.flashcards_reviewed}",
            f"Lapses: {stats.flashcards_lapsed}",
            f"Due now: {due}",
            f"Notes: {stats.notes_created}",
            f"Study plans: {stats.plans_created}",
        ]
        if stats.recall_rate is not None:
            lines.append(f"Recall rate: {stats.recall_rate:.0%}")
        return "\n".join(lines)

    @staticmethod
    def _describe_interval(interval_days: int) -> str:
        if interval_days <= 0:
            return "right away"
        if interval_days == 1:
            return "tomorrow"
        if interval_days % 7 == 0:
            weeks = interval_days // 7
            return "in 1 week" if weeks == 1 else f"in {weeks} weeks"
        return f"in {interval_days} days"
