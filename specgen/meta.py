from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from specgen.validators import SCHEMA_VERSION

DEFAULT_LOCALE = "en-US"


def now_iso(now: Optional[datetime] = None) -> str:
    """UTC timestamp with millisecond precision and a trailing Z."""
    ts = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _is_iso_timestamp(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        datetime.fromisoformat(text)
    except ValueError:
        return False
    return True


def stamp_meta(
    doc: Any,
    stage: str,
    locale: str = DEFAULT_LOCALE,
    now: Optional[datetime] = None,
) -> Any:
    """
    Return a copy of `doc` whose meta envelope reflects the caller's request.

    version, locale and stage are always overwritten so a model cannot pick
    its own stage identity; generatedAt survives only when it parses as ISO-8601.
    Non-object candidates are returned untouched for the validator to reject.
    """
    if not isinstance(doc, dict):
        return doc
    prior = doc.get("meta")
    meta: Dict[str, Any] = dict(prior) if isinstance(prior, dict) else {}
    meta["version"] = SCHEMA_VERSION
    meta["locale"] = locale or DEFAULT_LOCALE
    if not _is_iso_timestamp(meta.get("generatedAt")):
        meta["generatedAt"] = now_iso(now)
    meta["stage"] = stage
    out = dict(doc)
    out["meta"] = meta
    return out
