"""Service-layer helpers for the Study Assistant."""

from .openai_client import build_openai_client

__all__ = ["build_openai_client"]
