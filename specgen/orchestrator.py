from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from specgen import llm_client
from specgen.llm_client import UpstreamError
from specgen.llm_prompts import build_repair_prompt
from specgen.meta import DEFAULT_LOCALE, stamp_meta
from specgen.sanitize import sanitize_diagrams_doc
from specgen.validators import MODEL_OUTPUT, Issue, make_issue, validate_stage

log = logging.getLogger(__name__)

MAX_CALLS = 3
MODEL_CALL_FAILED = "model call failed or empty content"

# check(candidate, stage) -> (ok, value to return, issues)
CheckFn = Callable[[Any, str], Tuple[bool, Any, List[Issue]]]


class RepairOutcome(NamedTuple):
    ok: bool
    document: Any
    issues: List[Issue]
    attempts: int


def stage_check(locale: str = DEFAULT_LOCALE) -> CheckFn:
    """Stamp, validate and (for diagrams) sanitize a /generate candidate."""

    def check(candidate: Any, stage: str) -> Tuple[bool, Any, List[Issue]]:
        stamped = stamp_meta(candidate, stage, locale)
        ok, issues = validate_stage(stamped, stage)
        if ok and stage == "diagrams":
            stamped = sanitize_diagrams_doc(stamped)
        return ok, stamped, issues

    return check


def accept_any(candidate: Any, stage: str) -> Tuple[bool, Any, List[Issue]]:
    return True, candidate, []


def _failed_call_issues() -> List[Issue]:
    return [make_issue(MODEL_OUTPUT, "(root)", MODEL_CALL_FAILED)]


def _repair_instructions(instructions: Dict[str, Any], issues: List[Issue], candidate: Any) -> Dict[str, Any]:
    if isinstance(candidate, str):
        original = candidate
    else:
        original = json.dumps(candidate if candidate is not None else {}, ensure_ascii=False)
    return {
        "system": instructions.get("system", ""),
        "developer": instructions.get("developer", ""),
        "user": build_repair_prompt(issues, original),
    }


async def retry_with_repair(
    stage: str,
    instructions: Dict[str, Any],
    check: CheckFn,
    *,
    api_key: str,
    expect_json: bool = True,
    temperature: float = llm_client.TEMPERATURE,
) -> RepairOutcome:
    """
    Initial call, one repair call seeded with the issues found, then one fresh
    retry of the original instructions. Never more than MAX_CALLS model calls.

    UpstreamError aborts the loop at once and propagates to the caller.
    """
    issues: List[Issue] = []
    candidate: Any = None

    for attempt in range(1, MAX_CALLS + 1):
        if attempt == 2:
            request = _repair_instructions(instructions, issues, candidate)
        else:
            request = instructions

        try:
            reply = await llm_client.call_model(
                request, api_key=api_key, expect_json=expect_json, temperature=temperature
            )
        except UpstreamError:
            log.warning("stage=%s attempt=%d upstream error, not retrying", stage, attempt)
            raise
        except Exception as exc:
            log.warning("stage=%s attempt=%d model call raised %r", stage, attempt, exc)
            reply = None

        if reply is None or not reply.ok:
            candidate = None
            issues = _failed_call_issues()
            log.info("stage=%s attempt=%d no usable candidate", stage, attempt)
            continue

        candidate = reply.value
        ok, value, issues = check(candidate, stage)
        if ok:
            log.info("stage=%s attempt=%d valid", stage, attempt)
            return RepairOutcome(True, value, [], attempt)
        candidate = value
        log.info("stage=%s attempt=%d invalid issues=%d", stage, attempt, len(issues))

    return RepairOutcome(False, None, issues, MAX_CALLS)


def drawflow_check(candidate: Any, stage: str) -> Tuple[bool, Any, List[Issue]]:
    """Accept a mind map only when drawflow.Home.data is an object."""
    home: Optional[Any] = None
    if isinstance(candidate, dict) and isinstance(candidate.get("drawflow"), dict):
        home = candidate["drawflow"].get("Home")
    if isinstance(home, dict) and isinstance(home.get("data"), dict):
        return True, candidate, []
    return False, candidate, [make_issue(MODEL_OUTPUT, "drawflow.Home.data", "drawflow.Home.data must be an object")]
