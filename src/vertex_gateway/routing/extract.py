"""Normalize provider success payloads into text or an image data URL."""
from __future__ import annotations
from typing import Any, Iterator

from vertex_gateway.common.errors import ExtractionError


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _parts(candidate: Any) -> Iterator[dict[str, Any]]:
    if not isinstance(candidate, dict):
        return
    content = candidate.get("content")
    if not isinstance(content, dict):
        return
    for part in _list(content.get("parts")):
        if isinstance(part, dict):
            yield part


def extract_text(response: Any) -> str:
    """Return the first candidate's first text part, or "" when there is none."""
    if not isinstance(response, dict):
        return ""
    candidates = _list(response.get("candidates"))
    if not candidates:
        return ""
    for part in _parts(candidates[0]):
        text = part.get("text")
        if isinstance(text, str):
            return text
    return ""


def extract_image(response: Any) -> str:
    """Return the first inline binary part across candidates as a data URL.

    Raises:
        ExtractionError: If no candidate carries an inline part.
    """
    candidates = _list(response.get("candidates")) if isinstance(response, dict) else []
    for candidate in candidates:
        for part in _parts(candidate):
            inline = part.get("inlineData")
            if isinstance(inline, dict) and inline.get("data"):
                mime = inline.get("mimeType") or "image/png"
                return f"data:{mime};base64,{inline['data']}"
    raise ExtractionError("No image generated from Vertex AI response")
