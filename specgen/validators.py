from __future__ import annotations

import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from jsonschema import Draft202012Validator

SCHEMA_VERSION = "1.0"

STAGES: Tuple[str, ...] = ("overview", "technical", "market", "design", "diagrams", "rawText", "prompts")

REQUIRED_DIAGRAM_IDS: Tuple[str, ...] = (
    "user_flow",
    "system_architecture",
    "information_architecture",
    "data_schema",
    "sequence",
    "frontend_components",
)
DIAGRAM_COUNT = len(REQUIRED_DIAGRAM_IDS)

MIN_PROMPT_CHARS = 25000
MIN_PROMPT_STAGES = 10
STAGE_ONE_WINDOW = 2000

# Issue kinds. Callers dispatch on these, never on message text.
MISSING_FIELD = "MISSING_FIELD"
WRONG_TYPE = "WRONG_TYPE"
EMPTY_ARRAY = "EMPTY_ARRAY"
BAD_CARDINALITY = "BAD_CARDINALITY"
MISSING_ID = "MISSING_ID"
LENGTH_TOO_SHORT = "LENGTH_TOO_SHORT"
STAGE_COUNT_LOW = "STAGE_COUNT_LOW"
INCOMPLETE = "INCOMPLETE"
BAD_META = "BAD_META"
UNKNOWN_STAGE = "UNKNOWN_STAGE"
NOT_AN_OBJECT = "NOT_AN_OBJECT"
MODEL_OUTPUT = "MODEL_OUTPUT"

ISSUE_KINDS = frozenset({
    MISSING_FIELD, WRONG_TYPE, EMPTY_ARRAY, BAD_CARDINALITY, MISSING_ID,
    LENGTH_TOO_SHORT, STAGE_COUNT_LOW, INCOMPLETE, BAD_META, UNKNOWN_STAGE,
    NOT_AN_OBJECT, MODEL_OUTPUT,
})

Issue = Dict[str, str]

_STAGE_MARKER_RE = re.compile(r"STAGE \d+:")
_STAGE_ONE_RE = re.compile(r"STAGE 1(?!\d)")
_REQUIRED_MSG_RE = re.compile(r"^'(?P<field>.+)' is a required property$")

_TYPE_WORDS = {
    "object": "an object",
    "array": "an array",
    "string": "a string",
    "number": "a number",
    "boolean": "a boolean",
}


def make_issue(kind: str, path: str, message: str) -> Issue:
    return {"kind": kind, "path": path, "message": message}


def issue_messages(issues: Iterable[Issue]) -> List[str]:
    return [i.get("message", "") for i in issues]


# ---------- declarative stage contracts ----------

_OBJ: Dict[str, Any] = {"type": "object"}
_STR: Dict[str, Any] = {"type": "string"}
_ARR: Dict[str, Any] = {"type": "array"}
_NON_BLANK: Dict[str, Any] = {"type": "string", "pattern": r"\S"}


def _payload_schema(stage: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "required": [stage],
        "properties": {stage: payload},
    }


def _object_payload(fields: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "object", "required": list(fields), "properties": fields}


STAGE_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "overview": _payload_schema("overview", _object_payload({
        "ideaSummary": _STR,
        "targetAudience": _OBJ,
        "valueProposition": _STR,
        "coreFeaturesOverview": {"type": "array", "minItems": 1},
        "userJourneySummary": _STR,
    })),
    "technical": _payload_schema("technical", _object_payload({
        "techStack": _OBJ,
        "architectureOverview": _STR,
        "databaseSchema": _OBJ,
        "apiEndpoints": _ARR,
        "securityAuthentication": _OBJ,
        "integrationExternalApis": _OBJ,
    })),
    "market": _payload_schema("market", _object_payload({
        "industryOverview": _OBJ,
        "targetAudienceInsights": _OBJ,
        "competitiveLandscape": _ARR,
        "swotAnalysis": _OBJ,
        "monetizationModel": _OBJ,
        "marketingStrategy": _OBJ,
    })),
    "design": _payload_schema("design", _object_payload({
        "visualStyleGuide": _OBJ,
        "logoIconography": _OBJ,
        "uiLayout": _OBJ,
        "uxPrinciples": _OBJ,
    })),
    "diagrams": _payload_schema("diagrams", {
        "type": "array",
        "minItems": DIAGRAM_COUNT,
        "maxItems": DIAGRAM_COUNT,
        "items": {"type": "object", "properties": {"id": _STR}},
    }),
    "rawText": _payload_schema("rawText", _object_payload({
        "content": _STR,
        "paragraphs": _ARR,
        "summary": _STR,
    })),
    "prompts": _payload_schema("prompts", _object_payload({
        "fullPrompt": _NON_BLANK,
        "thirdPartyIntegrations": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["service", "description", "instructions"],
                "properties": {
                    "service": _NON_BLANK,
                    "description": _NON_BLANK,
                    "instructions": {"type": "array", "minItems": 1, "items": _NON_BLANK},
                },
            },
        },
    })),
}

_COMPILED: Dict[str, Draft202012Validator] = {
    stage: Draft202012Validator(schema) for stage, schema in STAGE_SCHEMAS.items()
}


def _dotted(parts: Iterable[Any]) -> str:
    out = ""
    for p in parts:
        if isinstance(p, int):
            out += f"[{p}]"
        else:
            out += f".{p}" if out else str(p)
    return out


def _translate(err: Any) -> Issue:
    """Turn one jsonschema error into an issue that names the offending field."""
    path = _dotted(err.absolute_path)
    kind = err.validator
    if kind == "required":
        m = _REQUIRED_MSG_RE.match(err.message)
        field = m.group("field") if m else "?"
        if not path:
            return make_issue(MISSING_FIELD, field, f"{field} missing")
        return make_issue(MISSING_FIELD, f"{path}.{field}", f"{path}.{field} required")
    if kind == "type":
        expected = err.validator_value if isinstance(err.validator_value, str) else "/".join(err.validator_value)
        word = _TYPE_WORDS.get(expected, expected)
        return make_issue(WRONG_TYPE, path or "(root)", f"{path or 'document'} must be {word}")
    if kind == "pattern":
        return make_issue(MISSING_FIELD, path, f"{path} required and must be a non-empty string")
    if kind == "minItems" and err.validator_value == 1:
        return make_issue(EMPTY_ARRAY, path, f"{path} must be a non-empty array")
    if kind in ("minItems", "maxItems"):
        return make_issue(BAD_CARDINALITY, path, f"{path} must be an array of {DIAGRAM_COUNT} diagram objects (got {len(err.instance)})")
    return make_issue(WRONG_TYPE, path or "(root)", f"{path or 'document'}: {err.message}")


def _schema_issues(stage: str, doc: Dict[str, Any]) -> List[Issue]:
    errors = sorted(_COMPILED[stage].iter_errors(doc), key=lambda e: [str(p) for p in e.absolute_path])
    return [_translate(e) for e in errors]


# ---------- per-stage validators ----------

def validate_meta(meta: Any, stage: str) -> List[Issue]:
    if not isinstance(meta, dict):
        return [make_issue(BAD_META, "meta", "meta must be object")]
    issues: List[Issue] = []
    if meta.get("version") != SCHEMA_VERSION:
        issues.append(make_issue(BAD_META, "meta.version", f'meta.version must be "{SCHEMA_VERSION}"'))
    if not isinstance(meta.get("locale"), str):
        issues.append(make_issue(BAD_META, "meta.locale", "meta.locale must be string"))
    if not isinstance(meta.get("generatedAt"), str):
        issues.append(make_issue(BAD_META, "meta.generatedAt", "meta.generatedAt must be ISO string"))
    if meta.get("stage") != stage:
        issues.append(make_issue(BAD_META, "meta.stage", f'meta.stage must be "{stage}"'))
    return issues


def validate_overview(doc: Dict[str, Any]) -> List[Issue]:
    return _schema_issues("overview", doc)


def validate_technical(doc: Dict[str, Any]) -> List[Issue]:
    return _schema_issues("technical", doc)


def validate_market(doc: Dict[str, Any]) -> List[Issue]:
    return _schema_issues("market", doc)


def validate_design(doc: Dict[str, Any]) -> List[Issue]:
    return _schema_issues("design", doc)


def validate_raw_text(doc: Dict[str, Any]) -> List[Issue]:
    return _schema_issues("rawText", doc)


def validate_diagrams(doc: Dict[str, Any]) -> List[Issue]:
    issues = _schema_issues("diagrams", doc)
    diagrams = doc.get("diagrams")
    if isinstance(diagrams, list):
        received = {
            d["id"] for d in diagrams
            if isinstance(d, dict) and isinstance(d.get("id"), str)
        }
        for required_id in REQUIRED_DIAGRAM_IDS:
            if required_id not in received:
                issues.append(make_issue(MISSING_ID, "diagrams", f"diagrams missing required id: {required_id}"))
    return issues


def validate_prompts(doc: Dict[str, Any]) -> List[Issue]:
    issues = _schema_issues("prompts", doc)
    prompts = doc.get("prompts")
    full = prompts.get("fullPrompt") if isinstance(prompts, dict) else None
    if not isinstance(full, str) or not full.strip():
        return issues

    length = len(full)
    if length < MIN_PROMPT_CHARS:
        issues.append(make_issue(
            LENGTH_TOO_SHORT,
            "prompts.fullPrompt",
            f"prompts.fullPrompt must be at least {MIN_PROMPT_CHARS} characters (currently {length}). "
            f"It must cover all {MIN_PROMPT_STAGES} development stages with detailed implementation instructions.",
        ))

    stage_count = len(_STAGE_MARKER_RE.findall(full))
    if stage_count < MIN_PROMPT_STAGES:
        issues.append(make_issue(
            STAGE_COUNT_LOW,
            "prompts.fullPrompt",
            f"prompts.fullPrompt must include all {MIN_PROMPT_STAGES} development stages (found only {stage_count}). "
            "Each stage needs numbered sub-steps (1.1, 1.2, ...).",
        ))

    head = full.lstrip()
    if len(head) < STAGE_ONE_WINDOW or not _STAGE_ONE_RE.search(head[:STAGE_ONE_WINDOW]):
        issues.append(make_issue(
            INCOMPLETE,
            "prompts.fullPrompt",
            "prompts.fullPrompt appears to be incomplete: it must open with 'STAGE 1: PROJECT SETUP & BASIC STRUCTURE' "
            f"within the first {STAGE_ONE_WINDOW} characters, not just a high-level overview.",
        ))
    return issues


STAGE_VALIDATORS: Dict[str, Callable[[Dict[str, Any]], List[Issue]]] = {
    "overview": validate_overview,
    "technical": validate_technical,
    "market": validate_market,
    "design": validate_design,
    "diagrams": validate_diagrams,
    "rawText": validate_raw_text,
    "prompts": validate_prompts,
}


def validate_stage(doc: Any, stage: str) -> Tuple[bool, List[Issue]]:
    """
    Validate a stamped candidate for `stage`.
    Returns (ok, issues); every violation found is reported, not just the first.
    """
    if not isinstance(doc, dict):
        return False, [make_issue(NOT_AN_OBJECT, "(root)", "document must be a JSON object")]
    meta_issues = validate_meta(doc.get("meta"), stage)
    if meta_issues:
        return False, meta_issues
    validator: Optional[Callable[[Dict[str, Any]], List[Issue]]] = STAGE_VALIDATORS.get(stage)
    if validator is None:
        return False, [make_issue(UNKNOWN_STAGE, "meta.stage", f'Unknown stage "{stage}"')]
    issues = validator(doc)
    return (len(issues) == 0), issues
