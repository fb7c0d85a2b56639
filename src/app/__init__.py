"""Application bootstrap helpers for the Study Assistant project."""

from .runtime import run_bot
from .settings import AppSettings

__all__ = ["run_bot", "AppSettings"]
