from __future__ import annotations

import json
import re
from typing import Any

_LEADING_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*[ \t]*\r?\n?")
_TRAILING_FENCE_RE = re.compile(r"\r?\n?```\s*$")


def strip_code_fence(text: str) -> str:
    """Remove one leading ```lang line and one trailing ``` if present."""
    t = (text or "").strip()
    t = _LEADING_FENCE_RE.sub("", t, count=1)
    t = _TRAILING_FENCE_RE.sub("", t, count=1)
    return t.strip()


def json_from_completion(text: str) -> Any:
    """Parse a completion as JSON; raise ValueError when it is empty or unparseable.

    Strategy:
    - Direct json.loads on the raw content.
    - Otherwise strip a Markdown code fence (```json ... ``` or ``` ... ```) and try once more.
    """
    t = (text or "").strip()
    if not t:
        raise ValueError("empty content")
    try:
        return json.loads(t)
    except json.JSONDecodeError:
        pass
    cleaned = strip_code_fence(t)
    if not cleaned:
        raise ValueError("empty content after fence strip")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ValueError(f"unparseable content: {exc.msg}") from exc


def text_from_completion(text: str) -> Any:
    """For free-form replies (Mermaid, HTML): JSON objects are decoded, anything else is fence-stripped text."""
    cleaned = strip_code_fence(text)
    if cleaned.startswith("{"):
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass
    return cleaned


def extract_html(value: Any) -> str:
    """Pull mockup markup out of whatever shape the model replied with."""
    if isinstance(value, str):
        html = value
    elif isinstance(value, dict) and isinstance(value.get("html"), str):
        html = value["html"]
    elif isinstance(value, dict) and isinstance(value.get("content"), str):
        html = value["content"]
    else:
        html = json.dumps(value, ensure_ascii=False)
    return strip_code_fence(html)
