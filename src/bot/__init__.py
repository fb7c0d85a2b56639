"""Telegram bot components for the Study Assistant."""

from .agent import StudyAssistantAgent
from .telegram import build_application

__all__ = ["StudyAssistantAgent", "build_application"]
