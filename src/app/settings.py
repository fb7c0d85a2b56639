"""Configuration helpers for the Study Assistant runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from src.bot.tutor import ANSWER_MODES
from src.services.srs import DEFAULT_EASE_FACTOR, MIN_EASE_FACTOR


DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_HISTORY_SIZE = 5
DEFAULT_FLASHCARD_MAX_CARDS = 5


def _read_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer.") from exc


def _read_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number.") from exc


@dataclass(frozen=True)
class AppSettings:
    """Strongly typed application settings loaded from environment variables."""

    app_name: str
    app_env: str
    log_level: str
    telegram_bot_token: str
    openai_api_key: str
    openai_model: str
    openai_timeout: Optional[float]
    history_size: int
    answer_mode: str
    flashcard_model: str
    flashcard_max_cards: int
    default_ease_factor: float

    @classmethod
    def from_env(cls) -> AppSettings:
        """Construct settings directly from environment variables."""
        app_name = os.getenv("APP_NAME", "Study Assistant")
        app_env = os.getenv("APP_ENV", "development")
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN")
        openai_api_key = os.getenv("OPENAI_API_KEY")
        openai_model = os.getenv("OPENAI_MODEL", DEFAULT_MODEL)

        if not telegram_bot_token:
            raise RuntimeError(
                "TELEGRAM_BOT_TOKEN environment variable is required to start the Telegram bot."
            )

        if not openai_api_key:
            raise RuntimeError("OPENAI_API_KEY environment variable is required to generate answers.")

        openai_timeout = _read_float("OPENAI_TIMEOUT", None)
        if openai_timeout is not None and openai_timeout <= 0:
            raise RuntimeError("OPENAI_TIMEOUT must be positive.")

        history_size = _read_int("TUTOR_HISTORY_SIZE", DEFAULT_HISTORY_SIZE)
        if history_size < 1:
            raise RuntimeError("TUTOR_HISTORY_SIZE must be a positive integer.")

        answer_mode = os.getenv("TUTOR_ANSWER_MODE", "detailed").strip().lower()
        if answer_mode not in ANSWER_MODES:
            raise RuntimeError("TUTOR_ANSWER_MODE must be either 'quick' or 'detailed'.")

        flashcard_model = os.getenv("FLASHCARD_MODEL", openai_model)

        flashcard_max_cards = _read_int("FLASHCARD_MAX_CARDS", DEFAULT_FLASHCARD_MAX_CARDS)
        if flashcard_max_cards < 1 or flashcard_max_cards > 20:
            raise RuntimeError("FLASHCARD_MAX_CARDS must be between 1 and 20.")

        default_ease_factor = _read_float("DEFAULT_EASE_FACTOR", DEFAULT_EASE_FACTOR)
        if default_ease_factor < MIN_EASE_FACTOR:
            raise RuntimeError(f"DEFAULT_EASE_FACTOR cannot be below {MIN_EASE_FACTOR}.")

        return cls(
            app_name=app_name,
            app_env=app_env,
            log_level=log_level,
            telegram_bot_token=telegram_bot_token,
            openai_api_key=openai_api_key,
            openai_model=openai_model,
            openai_timeout=openai_timeout,
            history_size=history_size,
            answer_mode=answer_mode,
            flashcard_model=flashcard_model,
            flashcard_max_cards=flashcard_max_cards,
            default_ease_factor=default_ease_factor,
        )
