from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

from specgen import llm_client
from specgen.llm_parsing import extract_html
from specgen.llm_prompts import analyze_screens_instructions, mockup_instructions

log = logging.getLogger(__name__)

try:
    MOCKUP_CONCURRENCY = max(1, int(os.getenv("MOCKUP_CONCURRENCY", "3")))
except ValueError:
    MOCKUP_CONCURRENCY = 3


class MockupError(Exception):
    """A mockup pipeline step failed; `code` is the error envelope code."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def _order_key(screen: Dict[str, Any]) -> float:
    order = screen.get("order")
    if isinstance(order, (int, float)) and not isinstance(order, bool):
        return order
    return 0


async def analyze_screens(overview: Any, design: Any, technical: Any = None, *, api_key: str) -> List[Dict[str, Any]]:
    """One model call listing the screens to mock up, sorted by `order`.

    Raises MockupError(ANALYSIS_FAILED) for anything short of a `screens` list.
    """
    try:
        reply = await llm_client.call_model(
            analyze_screens_instructions(overview, design, technical), api_key=api_key
        )
    except Exception as exc:
        log.warning("mockups.analyze: model call failed: %r", exc)
        raise MockupError("ANALYSIS_FAILED", f"Failed to analyze screens: {exc}") from exc

    screens = reply.value.get("screens") if reply.ok and isinstance(reply.value, dict) else None
    if not isinstance(screens, list):
        log.warning("mockups.analyze: invalid screens data structure")
        raise MockupError("ANALYSIS_FAILED", "Failed to analyze screens: Invalid screens data structure")
    screens = [s for s in screens if isinstance(s, dict)]
    return sorted(screens, key=_order_key)


async def generate_mockup(
    screen: Dict[str, Any],
    index: int,
    overview: Any,
    design: Any,
    technical: Any = None,
    use_mock_data: bool = False,
    *,
    api_key: str,
) -> Dict[str, Any]:
    """Generate the HTML for one screen. Errors propagate; the batch decides what to do with them."""
    reply = await llm_client.call_model(
        mockup_instructions(screen, overview, design, technical, use_mock_data),
        api_key=api_key,
        expect_json=False,
    )
    if not reply.ok:
        raise ValueError(reply.error or llm_client.EMPTY_OR_UNPARSEABLE)
    return {
        "id": screen.get("id") or f"screen-{index + 1}",
        "name": screen.get("name"),
        "description": screen.get("description"),
        "html": extract_html(reply.value),
        "deviceType": screen.get("deviceType") or "both",
        "order": screen.get("order") or index + 1,
        "interactive": True,
    }


async def generate_mockups(
    screens: List[Dict[str, Any]],
    overview: Any,
    design: Any,
    technical: Any = None,
    use_mock_data: bool = False,
    *,
    api_key: str,
    concurrency: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Generate every screen concurrently, at most `concurrency` calls in flight.

    A screen whose call fails is logged and left out; the result keeps the
    input order of the screens that succeeded.
    """
    sem = asyncio.Semaphore(concurrency or MOCKUP_CONCURRENCY)

    async def one(index: int, screen: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with sem:
            try:
                return await generate_mockup(
                    screen, index, overview, design, technical, use_mock_data, api_key=api_key
                )
            except Exception as exc:
                log.warning("mockups.generate: failed for screen %r: %r", screen.get("name"), exc)
                return None

    results = await asyncio.gather(*(one(i, s) for i, s in enumerate(screens)))
    mockups = [m for m in results if m is not None]
    if len(mockups) < len(screens):
        log.info("mockups.generate: %d of %d screens generated", len(mockups), len(screens))
    return mockups
