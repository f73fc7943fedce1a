import asyncio
import json

import httpx
import pytest

from specgen import llm_client
from specgen.llm_client import UpstreamError


def completion(content, status=200):
    return httpx.Response(status, json={"choices": [{"message": {"content": content}}]})


def fake_post(monkeypatch, *replies):
    calls = []
    queue = list(replies)

    async def _post(url, *, headers, payload, timeout):
        calls.append({"url": url, "headers": headers, "payload": payload, "timeout": timeout})
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(llm_client, "_post", _post)
    return calls


PROMPT = {"system": "S", "developer": "D", "user": "U"}


def test_developer_is_merged_into_system(monkeypatch):
    calls = fake_post(monkeypatch, completion('{"ok": true}'))
    reply = asyncio.run(llm_client.call_model(PROMPT, api_key="k"))

    assert reply.ok is True
    assert reply.value == {"ok": True}
    body = calls[0]["payload"]
    assert body["messages"] == [
        {"role": "system", "content": "S\n\nDEVELOPER INSTRUCTIONS:\nD"},
        {"role": "user", "content": "U"},
    ]
    assert body["temperature"] == 0.0
    assert body["model"] == llm_client.OPENAI_MODEL
    assert "max_tokens" not in body
    assert calls[0]["url"] == llm_client.OPENAI_ENDPOINT
    assert calls[0]["headers"]["Authorization"] == "Bearer k"


def test_merge_without_developer():
    msgs = llm_client.merge_instructions({"system": "S", "user": "U"})
    assert msgs[0]["content"] == "S"


def test_non_2xx_raises_upstream_error(monkeypatch):
    fake_post(monkeypatch, httpx.Response(429, text="Rate limit reached"))
    with pytest.raises(UpstreamError) as info:
        asyncio.run(llm_client.call_model(PROMPT, api_key="k"))
    assert info.value.status == 429
    assert str(info.value) == "OPENAI_UPSTREAM_429: Rate limit reached"


def test_fenced_json_is_parsed(monkeypatch):
    fake_post(monkeypatch, completion('```json\n{"overview": {}}\n```'))
    reply = asyncio.run(llm_client.call_model(PROMPT, api_key="k"))
    assert reply.ok is True
    assert reply.value == {"overview": {}}


@pytest.mark.parametrize("content", ["", "Sure! Here is your JSON:", "```json\n{oops\n```"])
def test_unparseable_content_is_a_result_not_an_exception(monkeypatch, content):
    fake_post(monkeypatch, completion(content))
    reply = asyncio.run(llm_client.call_model(PROMPT, api_key="k"))
    assert reply.ok is False
    assert reply.value is None
    assert reply.error == llm_client.EMPTY_OR_UNPARSEABLE


def test_missing_choices_is_unparseable(monkeypatch):
    fake_post(monkeypatch, httpx.Response(200, json={"choices": []}))
    reply = asyncio.run(llm_client.call_model(PROMPT, api_key="k"))
    assert reply.ok is False


def test_free_text_mode(monkeypatch):
    fake_post(monkeypatch, completion("```mermaid\ngraph TD\nA-->B\n```"))
    reply = asyncio.run(llm_client.call_model(PROMPT, api_key="k", expect_json=False, temperature=0.7))
    assert reply.ok is True
    assert reply.value == "graph TD\nA-->B"


def test_transport_errors_propagate(monkeypatch):
    fake_post(monkeypatch, httpx.ConnectError("connection refused"))
    with pytest.raises(httpx.ConnectError):
        asyncio.run(llm_client.call_model(PROMPT, api_key="k"))


def test_resolve_api_key_prefers_binding(monkeypatch):
    monkeypatch.setattr(llm_client, "OPENAI_API_KEY", "from-process")
    assert llm_client.resolve_api_key({"OPENAI_API_KEY": "from-binding"}) == "from-binding"
    assert llm_client.resolve_api_key(type("Env", (), {"OPENAI_API_KEY": "attr"})()) == "attr"
    assert llm_client.resolve_api_key({"OPENAI_API_KEY": ""}) == "from-process"
    assert llm_client.resolve_api_key(None) == "from-process"


def test_health_check_ok(monkeypatch):
    calls = fake_post(monkeypatch, completion("pong"))
    out = asyncio.run(llm_client.probe("k"))
    assert out["cloudflare"] == "ok"
    assert out["openai"] == "ok"
    assert out["responseTime"].endswith("ms")
    assert calls[0]["payload"]["max_tokens"] == 10
    assert calls[0]["timeout"] == llm_client.HEALTH_TIMEOUT_SECS


def test_health_check_upstream_status(monkeypatch):
    fake_post(monkeypatch, httpx.Response(401, text=json.dumps({"error": "bad key"})))
    out = asyncio.run(llm_client.probe("k"))
    assert out["openai"] == "error"
    assert out["httpStatus"] == 401
    assert out["error"].startswith("OpenAI API returned status 401")


def test_health_check_timeout(monkeypatch):
    monkeypatch.setattr(llm_client, "HEALTH_TIMEOUT_SECS", 10.0)
    fake_post(monkeypatch, httpx.ReadTimeout("too slow"))
    out = asyncio.run(llm_client.probe("k"))
    assert out["openai"] == "error"
    assert out["error"] == "OpenAI API timeout (10s exceeded)"
    assert out["model"] == llm_client.OPENAI_MODEL
    assert out["timestamp"].endswith("Z")


def test_health_check_connection_failure(monkeypatch):
    fake_post(monkeypatch, httpx.ConnectError("dns failure"))
    out = asyncio.run(llm_client.probe("k"))
    assert out["openai"] == "error"
    assert out["error"] == "OpenAI API connection failed: dns failure"


def test_health_check_prefers_upstream_error_message(monkeypatch):
    fake_post(monkeypatch, httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}}))
    out = asyncio.run(llm_client.probe("k"))
    assert out["error"] == "Incorrect API key provided"
    assert out["httpStatus"] == 401
    assert out["responseTime"].endswith("ms")


def test_health_check_ok_reports_model_and_timestamp(monkeypatch):
    fake_post(monkeypatch, completion("pong"))
    out = asyncio.run(llm_client.probe("k"))
    assert out["model"] == llm_client.OPENAI_MODEL
    assert out["timestamp"].endswith("Z")
