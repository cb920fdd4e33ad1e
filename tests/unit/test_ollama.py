"""Unit tests for the Ollama provider (HTTP mocked with httpx.MockTransport)."""

import json

import httpx
import pytest

from cadence.config import Settings
from cadence.core.exceptions import (
    ContentBlockedError,
    InvalidResponseError,
    ProviderConfigurationError,
    ProviderError,
    RateLimitedError,
)
from cadence.core.resilience import CircuitBreakerConfig
from cadence.providers import OllamaProvider, create_provider


def make_provider(handler, **kwargs):
    return OllamaProvider(
        "http://ollama:11434/",
        "llama3.2:3b",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


async def test_generate_text_payload():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"response": "  안녕\nㅋㅋ  ", "done": True})

    provider = make_provider(handler)
    assert await provider.generate_text("hello", temperature=0.7) == "안녕\nㅋㅋ"
    assert seen["url"] == "http://ollama:11434/api/generate"
    assert seen["body"]["model"] == "llama3.2:3b"
    assert seen["body"]["stream"] is False
    assert seen["body"]["options"]["temperature"] == 0.7
    assert "format" not in seen["body"]
    await provider.aclose()


async def test_generate_json_requests_json_format():
    formats = []

    def handler(request):
        formats.append(json.loads(request.content).get("format"))
        return httpx.Response(200, json={"response": '```json\n{"action": "wait"}\n```'})

    provider = make_provider(handler)
    assert await provider.generate_json("decide") == {"action": "wait"}
    assert formats == ["json"]


async def test_generate_json_unparseable_is_empty():
    provider = make_provider(lambda request: httpx.Response(200, json={"response": "no idea"}))
    assert await provider.generate_json("decide") == {}


async def test_rate_limited():
    provider = make_provider(lambda request: httpx.Response(429, headers={"Retry-After": "12"}))
    with pytest.raises(RateLimitedError) as info:
        await provider.generate_text("hello")
    assert info.value.retry_after == 12.0


async def test_safety_block():
    provider = make_provider(
        lambda request: httpx.Response(200, json={"response": "", "done_reason": "safety"})
    )
    with pytest.raises(ContentBlockedError):
        await provider.generate_text("hello")


async def test_empty_response():
    provider = make_provider(lambda request: httpx.Response(200, json={"response": "   "}))
    with pytest.raises(InvalidResponseError):
        await provider.generate_text("hello")


async def test_http_error():
    provider = make_provider(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(ProviderError):
        await provider.generate_text("hello")


async def test_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    provider = make_provider(handler)
    with pytest.raises(ProviderError):
        await provider.generate_text("hello")


async def test_breaker_opens_and_fails_fast():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    provider = make_provider(handler, breaker_config=CircuitBreakerConfig(name="ollama", failure_threshold=2))
    for _ in range(3):
        with pytest.raises(ProviderError):
            await provider.generate_text("hello")
    assert len(calls) == 2


async def test_blocked_content_does_not_open_breaker():
    provider = make_provider(
        lambda request: httpx.Response(200, json={"done_reason": "safety"}),
        breaker_config=CircuitBreakerConfig(name="ollama", failure_threshold=1),
    )
    for _ in range(3):
        with pytest.raises(ContentBlockedError):
            await provider.generate_text("hello")


def test_missing_configuration():
    with pytest.raises(ProviderConfigurationError):
        OllamaProvider("", "model")


def test_factory():
    provider = create_provider(Settings(_env_file=None, PROVIDER="ollama"))
    assert isinstance(provider, OllamaProvider)
    with pytest.raises(ProviderConfigurationError):
        create_provider(Settings(_env_file=None, PROVIDER="nope"))
