from __future__ import annotations

import math
import re
import secrets
from typing import Any, Dict, List

MAX_LABEL_LEN = 60
MAX_ID_LEN = 64
ELLIPSIS = "…"

_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify_id(value: Any) -> str:
    s = _NON_SLUG_RE.sub("-", str(value if value is not None else "").lower())
    s = s.strip("-")[:MAX_ID_LEN].strip("-")
    return s or "id"


def trim_label(value: Any, max_len: int = MAX_LABEL_LEN) -> str:
    t = str(value if value is not None else "").strip()
    if len(t) <= max_len:
        return t
    return t[: max_len - 1] + ELLIPSIS


def _number(value: Any) -> float:
    # json.loads happily yields ints far beyond float range
    try:
        n = float(value or 0)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    if not math.isfinite(n):
        return 0.0
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return n


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _node(raw: Any) -> Dict[str, str]:
    n = _as_dict(raw)
    ident = n.get("id") or n.get("label") or secrets.token_hex(8)
    return {"id": slugify_id(ident), "label": trim_label(n.get("label") or ident)}


def _edge(raw: Any) -> Dict[str, str]:
    e = _as_dict(raw)
    return {
        "from": slugify_id(e.get("from")),
        "to": slugify_id(e.get("to")),
        "label": trim_label(e.get("label") or ""),
    }


def _funnel_stage(raw: Any) -> Dict[str, Any]:
    sec = _as_dict(raw)
    steps: List[Dict[str, Any]] = []
    if isinstance(sec.get("steps"), list):
        for s in sec["steps"]:
            step = _as_dict(s)
            steps.append({
                "label": trim_label(step.get("label") or ""),
                "score": _number(step.get("score")),
                "actor": trim_label(step.get("actor") or "User"),
            })
    return {"section": trim_label(sec.get("section") or ""), "steps": steps}


def _slice(raw: Any) -> Dict[str, Any]:
    s = _as_dict(raw)
    return {"label": trim_label(s.get("label") or ""), "value": _number(s.get("value"))}


def sanitize_diagram(payload: Any) -> Any:
    """
    Bound ids and labels in diagram-shaped data before it reaches a renderer.

    Only nodes, edges, stages and slices lists are rewritten; everything else
    passes through. Never raises, and running it twice changes nothing further.
    """
    if not isinstance(payload, dict):
        return payload
    out = dict(payload)
    if isinstance(out.get("nodes"), list):
        out["nodes"] = [_node(n) for n in out["nodes"]]
    if isinstance(out.get("edges"), list):
        out["edges"] = [_edge(e) for e in out["edges"]]
    if isinstance(out.get("stages"), list):
        out["stages"] = [_funnel_stage(s) for s in out["stages"]]
    if isinstance(out.get("slices"), list):
        out["slices"] = [_slice(s) for s in out["slices"]]
    return out


def sanitize_diagrams_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    diagrams = doc.get("diagrams")
    if not isinstance(diagrams, list):
        return doc
    out = dict(doc)
    out["diagrams"] = [sanitize_diagram(d) for d in diagrams]
    return out
