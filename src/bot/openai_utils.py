"""Utilities for working with OpenAI Responses API payloads."""

from __future__ import annotations

from typing import Iterable, List


def _iter_content_text(content: object) -> Iterable[str]:
    if isinstance(content, str):
        yield content
        return
    if not isinstance(content, list):
        return
    for part in content:
        if getattr(part, "type", "output_text") != "output_text":
            continue
        text = getattr(part, "text", None)
        if isinstance(text, str) and text:
            yield text


def extract_output_text(response: object) -> str:
    """Return the text of a Responses result, preferring ``output_text``."""
    output_text = getattr(response, "output_text", None)
    if isinstance(output_text, str) and output_text.strip():
        return output_text

    collected: List[str] = []
    for item in getattr(response, "output", None) or []:
        collected.extend(_iter_content_text(getattr(item, "content", None)))
    return "\n".join(collected)
