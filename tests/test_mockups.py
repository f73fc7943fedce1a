import asyncio
import json

import httpx
from fastapi.testclient import TestClient

from specgen import llm_client, mockups
from specgen.main import app

client = TestClient(app)

OVERVIEW = {"ideaSummary": "Habit tracker"}
DESIGN = {"design": {"visualStyleGuide": {"colors": {"primary": "#0055FF"}}}}

SCREENS = [
    {"id": "settings", "name": "Settings", "description": "Preferences", "deviceType": "mobile", "order": 3},
    {"id": "home", "name": "Home", "description": "Landing", "deviceType": "web", "order": 1},
    {"name": "Broken", "description": "Always fails", "order": 2},
]


def completion(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def routed_post(monkeypatch, screens=SCREENS):
    """Answer analysis and per-screen calls by looking at the prompt text."""
    calls = []

    async def _post(url, *, headers, payload, timeout):
        user = payload["messages"][1]["content"]
        calls.append(user)
        if "identify all screens" in user:
            return completion(json.dumps({"screens": screens}))
        if "SCREEN: Broken" in user:
            return httpx.Response(500, text="boom")
        name = user.split("SCREEN: ", 1)[1].split("\n", 1)[0]
        return completion(f"```html\n<html><body>{name}</body></html>\n```")

    monkeypatch.setattr(llm_client, "_post", _post)
    monkeypatch.setattr(llm_client, "OPENAI_API_KEY", "test-key")
    return calls


def test_batch_skips_failed_screens_and_reports_counts(monkeypatch):
    calls = routed_post(monkeypatch)
    r = client.post("/generate-mockups", json={"overview": OVERVIEW, "design": DESIGN, "useMockData": True})

    assert r.status_code == 200
    body = r.json()
    assert [m["id"] for m in body["mockups"]] == ["home", "settings"]
    home = body["mockups"][0]
    assert home["html"] == "<html><body>Home</body></html>"
    assert home["interactive"] is True
    assert home["deviceType"] == "web"
    assert home["order"] == 1
    meta = body["meta"]
    assert meta["totalScreens"] == 2
    assert meta["requestedScreens"] == 3
    assert meta["useMockData"] is True
    assert meta["version"] == "1.0"
    assert len(meta["correlationId"]) == 16
    # one analysis call plus one per screen
    assert len(calls) == 4
    screen_prompt = next(c for c in calls if "SCREEN: Home" in c)
    assert "#0055FF" in screen_prompt
    assert "realistic mock data" in screen_prompt


def test_defaults_fill_missing_screen_fields(monkeypatch):
    routed_post(monkeypatch, screens=[{"name": "Profile", "description": "Me"}])
    r = client.post("/generate-mockups", json={"overview": OVERVIEW, "design": DESIGN})
    item = r.json()["mockups"][0]
    assert item["id"] == "screen-1"
    assert item["deviceType"] == "both"
    assert item["order"] == 1
    assert r.json()["meta"]["useMockData"] is False


def test_analysis_without_screens_list_fails_batch(monkeypatch):
    async def _post(url, *, headers, payload, timeout):
        return completion(json.dumps({"pages": []}))

    monkeypatch.setattr(llm_client, "_post", _post)
    monkeypatch.setattr(llm_client, "OPENAI_API_KEY", "test-key")
    r = client.post("/generate-mockups", json={"overview": OVERVIEW, "design": DESIGN})
    assert r.status_code == 500
    err = r.json()["error"]
    assert err["code"] == "ANALYSIS_FAILED"
    assert err["message"].startswith("Failed to analyze screens:")


def test_analysis_upstream_error_is_analysis_failed(monkeypatch):
    async def _post(url, *, headers, payload, timeout):
        return httpx.Response(503, text="unavailable")

    monkeypatch.setattr(llm_client, "_post", _post)
    monkeypatch.setattr(llm_client, "OPENAI_API_KEY", "test-key")
    r = client.post("/analyze-screens", json={"overview": OVERVIEW, "design": DESIGN})
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "ANALYSIS_FAILED"
    assert "503" in r.json()["error"]["message"]


def test_analyze_screens_sorts_by_order(monkeypatch):
    routed_post(monkeypatch)
    r = client.post("/analyze-screens", json={"overview": OVERVIEW, "design": DESIGN, "technical": {"db": "x"}})
    assert r.status_code == 200
    body = r.json()
    assert [s["name"] for s in body["screens"]] == ["Home", "Broken", "Settings"]
    assert body["meta"]["totalScreens"] == 3


def test_single_mockup(monkeypatch):
    routed_post(monkeypatch)
    r = client.post(
        "/generate-single-mockup",
        json={"overview": OVERVIEW, "design": DESIGN, "screen": SCREENS[0]},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["mockup"]["id"] == "settings"
    assert body["mockup"]["html"] == "<html><body>Settings</body></html>"
    assert body["meta"]["useMockData"] is False


def test_single_mockup_failure(monkeypatch):
    routed_post(monkeypatch)
    r = client.post(
        "/generate-single-mockup",
        json={"overview": OVERVIEW, "design": DESIGN, "screen": SCREENS[2]},
    )
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "GENERATION_FAILED"


def test_mockup_bodies_are_validated(monkeypatch):
    calls = routed_post(monkeypatch)
    assert client.post("/generate-mockups", json={"overview": OVERVIEW}).status_code == 400
    assert client.post("/generate-mockups", json={"overview": "", "design": DESIGN}).status_code == 400
    assert client.post("/analyze-screens", json={"design": DESIGN}).status_code == 400
    assert client.post("/generate-single-mockup", json={"overview": OVERVIEW, "design": DESIGN}).status_code == 400
    assert calls == []


def test_generation_respects_concurrency_bound(monkeypatch):
    state = {"now": 0, "max": 0}

    async def fake_generate(screen, index, *args, api_key):
        state["now"] += 1
        state["max"] = max(state["max"], state["now"])
        await asyncio.sleep(0.01)
        state["now"] -= 1
        if screen["name"] == "bad":
            raise RuntimeError("nope")
        return {"id": screen["name"]}

    monkeypatch.setattr(mockups, "generate_mockup", fake_generate)
    screens = [{"name": n} for n in ("a", "b", "bad", "c", "d")]
    out = asyncio.run(mockups.generate_mockups(screens, OVERVIEW, DESIGN, api_key="k", concurrency=2))

    assert [m["id"] for m in out] == ["a", "b", "c", "d"]
    assert state["max"] == 2
