import logging
import os
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


LOGGER = logging.getLogger(__name__)

DIFFICULTY_LEVELS = ("easy", "medium", "hard")
STUDY_PLAN_STATUSES = ("active", "paused", "completed")

_TRUTHY = {"1", "true", "yes", "on"}
_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""


def _counter_column():
    return mapped_column(Integer, nullable=False, default=0, server_default=text("0"))


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class User(TimestampMixin, Base):
    """A learner, identified by the Telegram chat they talk to the bot from."""

    __tablename__ = "users"

    chat_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    questions_asked: Mapped[int] = _counter_column()
    flashcards_created: Mapped[int] = _counter_column()
    flashcards_reviewed: Mapped[int] = _counter_column()
    flashcards_lapsed: Mapped[int] = _counter_column()
    notes_created: Mapped[int] = _counter_column()
    plans_created: Mapped[int] = _counter_column()
    flashcards: Mapped[list["Flashcard"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Flashcard(TimestampMixin, Base):
    """A question/answer card owned by one learner, with its review schedule.

    ``next_review`` stays NULL until the first graded review, so freshly
    created cards never show up in due queries.
    """

    __tablename__ = "flashcards"
    __table_args__ = (
        Index("ix_flashcards_user_id_next_review", "user_id", "next_review"),
        CheckConstraint("ease_factor >= 1.3", name="ck_flashcards_ease_factor_floor"),
        CheckConstraint("repetitions >= 0", name="ck_flashcards_repetitions_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.chat_id", ondelete="CASCADE"), nullable=False
    )
    front: Mapped[str] = mapped_column(Text, nullable=False)
    back: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    difficulty: Mapped[str] = mapped_column(
        Enum(*DIFFICULTY_LEVELS, name="flashcard_difficulty", native_enum=False),
        nullable=False,
        default="medium",
        server_default=text("'medium'"),
    )
    repetitions: Mapped[int] = _counter_column()
    ease_factor: Mapped[float] = mapped_column(
        Float, nullable=False, default=2.5, server_default=text("2.5")
    )
    last_reviewed: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_review: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    user: Mapped["User"] = relationship(back_populates="flashcards")
    reviews: Mapped[list["ReviewLog"]] = relationship(
        back_populates="flashcard",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ReviewLog(Base):
    """One graded review of a flashcard and the interval it produced."""

    __tablename__ = "review_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    flashcard_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("flashcards.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quality: Mapped[int] = mapped_column(Integer, nullable=False)
    interval_days: Mapped[int] = mapped_column(Integer, nullable=False)
    reviewed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    flashcard: Mapped["Flashcard"] = relationship(back_populates="reviews")


class Question(Base):
    """A question the tutor answered, kept so the learner can look it up later."""

    __tablename__ = "questions"
    __table_args__ = (Index("ix_questions_user_id_created_at", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.chat_id", ondelete="CASCADE"), nullable=False
    )
    question: Mapped[str] = mapped_column(Text, nullable=False)
    answer: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str] = mapped_column(String(64), nullable=False, default="general")
    difficulty: Mapped[str] = mapped_column(
        Enum(*DIFFICULTY_LEVELS, name="question_difficulty", native_enum=False),
        nullable=False,
        default="medium",
    )
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default="detailed")
    has_code: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_formula: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_favorite: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class Note(TimestampMixin, Base):
    """A free-form study note, optionally filed under a subject."""

    __tablename__ = "notes"
    __table_args__ = (Index("ix_notes_user_id_subject", "user_id", "subject"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.chat_id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class StudyPlan(TimestampMixin, Base):
    """A day-by-day plan towards a set of goals, with completion progress."""

    __tablename__ = "study_plans"
    __table_args__ = (
        Index("ix_study_plans_user_id_status", "user_id", "status"),
        CheckConstraint("progress BETWEEN 0 AND 100", name="ck_study_plans_progress_range"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.chat_id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    goals: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(*STUDY_PLAN_STATUSES, name="study_plan_status", native_enum=False),
        nullable=False,
        default="active",
        server_default=text("'active'"),
    )
    progress: Mapped[int] = _counter_column()
    tasks: Mapped[list["StudyPlanTask"]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: [StudyPlanTask.day, StudyPlanTask.id],
    )


class StudyPlanTask(Base):
    __tablename__ = "study_plan_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("study_plans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    plan: Mapped["StudyPlan"] = relationship(back_populates="tasks")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def get_database_url() -> str:
    """Return ``DATABASE_URL`` with ``$VARS`` expanded, or raise if it is unset."""
    raw_url = os.getenv("DATABASE_URL")
    if not raw_url:
        raise RuntimeError("DATABASE_URL environment variable is required to connect to the database.")
    return os.path.expandvars(raw_url)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Create (and cache) the async engine for the application's database."""
    url = make_url(get_database_url())
    options = {"echo": _env_flag("SQLALCHEMY_ECHO", False)}
    if url.get_backend_name() != "sqlite":
        options["pool_pre_ping"] = True
    LOGGER.debug("Creating database engine for backend %s.", url.get_backend_name())
    return create_async_engine(url, **options)


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return a cached session factory; loaded objects stay usable after commit."""
    return async_sessionmaker(get_engine(), expire_on_commit=False)


def should_run_migrations() -> bool:
    return _env_flag("RUN_MIGRATIONS_ON_STARTUP", True)


def _alembic_config() -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "migrations"))
    config.set_main_option("sqlalchemy.url", get_database_url())
    return config


def run_migrations(target: str = "head") -> None:
    """Upgrade the schema to ``target``."""
    command.upgrade(_alembic_config(), target)


def run_migrations_if_needed(target: str = "head") -> None:
    """Run migrations unless ``RUN_MIGRATIONS_ON_STARTUP`` turns them off."""
    if not should_run_migrations():
        LOGGER.info("RUN_MIGRATIONS_ON_STARTUP is off; leaving the schema as it is.")
        return

    LOGGER.info("Upgrading database schema to %s.", target)
    run_migrations(target)
    LOGGER.info("Database schema is at %s.", target)
