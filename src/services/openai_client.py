"""Helpers for configuring the OpenAI client used by the tutor."""

from typing import Optional

from openai import AsyncOpenAI


def build_openai_client(api_key: str, timeout: Optional[float] = None) -> AsyncOpenAI:
    """Create an AsyncOpenAI client, optionally overriding the request timeout."""
    if timeout is None:
        return AsyncOpenAI(api_key=api_key)
    return AsyncOpenAI(api_key=api_key, timeout=timeout)
