from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, List, NamedTuple, Optional

import httpx

from specgen.llm_parsing import json_from_completion, text_from_completion
from specgen.meta import now_iso

log = logging.getLogger(__name__)

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip()
OPENAI_ENDPOINT = os.getenv("OPENAI_ENDPOINT", "https://api.openai.com/v1/chat/completions").strip()

# Structured documents favour reproducibility over variety
TEMPERATURE = 0.0

try:
    LLM_TIMEOUT_SECS = float(os.getenv("LLM_TIMEOUT_SECS", "120"))
except ValueError:
    LLM_TIMEOUT_SECS = 120.0
try:
    HEALTH_TIMEOUT_SECS = float(os.getenv("HEALTH_TIMEOUT_SECS", "10"))
except ValueError:
    HEALTH_TIMEOUT_SECS = 10.0

EMPTY_OR_UNPARSEABLE = "empty or unparseable content"


class UpstreamError(Exception):
    """The generation API answered with a non-2xx status. Never repaired, surfaced as 502."""

    def __init__(self, status: int, body: str):
        super().__init__(f"OPENAI_UPSTREAM_{status}: {body}")
        self.status = status
        self.body = body


class ModelReply(NamedTuple):
    ok: bool
    value: Any
    text: str
    error: Optional[str] = None


def resolve_api_key(env: Any = None) -> str:
    """Prefer the Worker binding injected into the ASGI scope, then the process environment."""
    if env is not None:
        key = env.get("OPENAI_API_KEY") if isinstance(env, dict) else getattr(env, "OPENAI_API_KEY", None)
        if isinstance(key, str) and key.strip():
            return key.strip()
    return OPENAI_API_KEY


def merge_instructions(instructions: Dict[str, Any]) -> List[Dict[str, str]]:
    # Chat completions has no developer role; fold it into the system message
    system = str(instructions.get("system") or "")
    developer = str(instructions.get("developer") or "")
    combined = f"{system}\n\nDEVELOPER INSTRUCTIONS:\n{developer}" if developer else system
    return [
        {"role": "system", "content": combined},
        {"role": "user", "content": str(instructions.get("user") or "")},
    ]


def _headers(api_key: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


async def _post(url: str, *, headers: Dict[str, str], payload: Dict[str, Any], timeout: float) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout) as client:
        return await client.post(url, headers=headers, json=payload)


def _completion_text(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else ""


async def call_model(
    instructions: Dict[str, Any],
    *,
    api_key: str,
    expect_json: bool = True,
    temperature: float = TEMPERATURE,
    max_tokens: Optional[int] = None,
    timeout: Optional[float] = None,
) -> ModelReply:
    """Send one {system, developer, user} request and decode the completion.

    Raises UpstreamError on a non-2xx answer. Unparseable or empty content is
    returned as ModelReply(ok=False) so callers can repair it like any other
    validation failure. Transport errors (httpx.HTTPError) propagate.
    """
    body: Dict[str, Any] = {
        "model": OPENAI_MODEL,
        "messages": merge_instructions(instructions),
        "temperature": temperature,
    }
    if max_tokens:
        body["max_tokens"] = max_tokens

    resp = await _post(OPENAI_ENDPOINT, headers=_headers(api_key), payload=body, timeout=timeout or LLM_TIMEOUT_SECS)
    if not resp.is_success:
        raw = resp.text
        log.warning("openai HTTP %s: %s", resp.status_code, raw[:400])
        raise UpstreamError(resp.status_code, raw)

    try:
        data = resp.json()
    except ValueError:
        log.warning("openai: non-JSON HTTP body")
        data = None
    content = _completion_text(data)
    if not content.strip():
        return ModelReply(False, None, content, EMPTY_OR_UNPARSEABLE)

    if not expect_json:
        value = text_from_completion(content)
        if isinstance(value, str) and not value:
            return ModelReply(False, None, content, EMPTY_OR_UNPARSEABLE)
        return ModelReply(True, value, content)

    try:
        value = json_from_completion(content)
    except ValueError as exc:
        log.info("openai: %s (%s)", EMPTY_OR_UNPARSEABLE, exc)
        return ModelReply(False, None, content, EMPTY_OR_UNPARSEABLE)
    return ModelReply(True, value, content)


def _ping_body(max_tokens: Optional[int]) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "model": OPENAI_MODEL,
        "messages": [{"role": "user", "content": "ping"}],
    }
    if max_tokens:
        body["max_tokens"] = max_tokens
        body["temperature"] = 0
    return body


def health_body(openai: str, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"cloudflare": "ok", "openai": openai}
    body.update(extra)
    body.setdefault("model", OPENAI_MODEL)
    body.setdefault("timestamp", now_iso())
    return body


def _upstream_error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict) and isinstance(err.get("message"), str) and err["message"]:
        return err["message"]
    return f"OpenAI API returned status {resp.status_code}: {resp.text[:200]}"


async def probe(api_key: str) -> Dict[str, Any]:
    """Minimal ping used by /health. Never raises: upstream trouble is reported, not propagated."""
    start = time.monotonic()
    try:
        resp = await _post(OPENAI_ENDPOINT, headers=_headers(api_key), payload=_ping_body(10), timeout=HEALTH_TIMEOUT_SECS)
    except httpx.TimeoutException:
        log.warning("health: openai ping timed out after %ss", HEALTH_TIMEOUT_SECS)
        return health_body("error", error=f"OpenAI API timeout ({HEALTH_TIMEOUT_SECS:g}s exceeded)")
    except httpx.HTTPError as exc:
        log.warning("health: openai ping failed: %r", exc)
        return health_body("error", error=f"OpenAI API connection failed: {exc}")

    elapsed = f"{int((time.monotonic() - start) * 1000)}ms"
    if resp.is_success:
        return health_body("ok", responseTime=elapsed)
    log.warning("health: openai ping HTTP %s", resp.status_code)
    return health_body(
        "error",
        error=_upstream_error_message(resp),
        httpStatus=resp.status_code,
        responseTime=elapsed,
    )


async def selftest(api_key: str) -> httpx.Response:
    """Raw upstream round-trip for manual debugging."""
    return await _post(OPENAI_ENDPOINT, headers=_headers(api_key), payload=_ping_body(None), timeout=LLM_TIMEOUT_SECS)
