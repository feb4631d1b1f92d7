"""Unit tests for ChatCompletionsGenerator.

All HTTP goes through httpx.MockTransport — no real connections are made.
"""

from __future__ import annotations

import json

import httpx
import pytest

from ferret.errors import GenerationError
from ferret.tools.generator import ChatCompletionsGenerator, TextGenerator


def _generator(handler, **kwargs) -> ChatCompletionsGenerator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://generator.test")
    return ChatCompletionsGenerator(base_url="http://generator.test", model="qwen-test", _client=client, **kwargs)


def _completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}], "usage": {"total_tokens": 12}}


# ─────────────────────────────────────────────────────────────────────────────
# 1. Success
# ─────────────────────────────────────────────────────────────────────────────

async def test_generate_returns_message_text():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_completion("SUMMARY: ok"))

    gen = _generator(handler, system="Be brief.")
    text = await gen.generate("What is rate limiting?", max_tokens=256, temperature=0.1)

    assert text == "SUMMARY: ok"
    assert seen[0].url.path == "/v1/chat/completions"
    payload = json.loads(seen[0].content)
    assert payload["model"] == "qwen-test"
    assert payload["max_tokens"] == 256
    assert payload["temperature"] == 0.1
    assert payload["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "What is rate limiting?"},
    ]
    await gen.close()


async def test_no_system_prompt_sends_only_user_message():
    payloads = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        return httpx.Response(200, json=_completion("hi"))

    await _generator(handler).generate("hello")
    assert [m["role"] for m in payloads[0]["messages"]] == ["user"]


def test_satisfies_text_generator_protocol():
    assert isinstance(ChatCompletionsGenerator(base_url="http://x"), TextGenerator)


def test_trailing_slash_is_trimmed():
    assert ChatCompletionsGenerator(base_url="http://x:8080/").base_url == "http://x:8080"


# ─────────────────────────────────────────────────────────────────────────────
# 2. Failures always raise GenerationError
# ─────────────────────────────────────────────────────────────────────────────

async def test_http_error_status():
    gen = _generator(lambda request: httpx.Response(503, json={"error": "overloaded"}))
    with pytest.raises(GenerationError, match="HTTP 503"):
        await gen.generate("q")


async def test_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GenerationError, match="request failed"):
        await _generator(handler).generate("q")


async def test_non_json_body():
    gen = _generator(lambda request: httpx.Response(200, text="<html>proxy error</html>"))
    with pytest.raises(GenerationError):
        await gen.generate("q")


@pytest.mark.parametrize("body", [
    _completion(""),
    _completion("   \n"),
    _completion(None),
    {"choices": []},
    {"unexpected": True},
])
async def test_empty_or_malformed_completion(body):
    gen = _generator(lambda request: httpx.Response(200, json=body))
    with pytest.raises(GenerationError):
        await gen.generate("q")
