from __future__ import annotations

from http import HTTPStatus

import pytest

from chatdesk.core.exceptions import (
    ProviderAuthError,
    ProviderUnavailableError,
    UpstreamRateLimitError,
)
from chatdesk.providers import base
from chatdesk.providers.base import (
    ChatMessage,
    ImagePart,
    KeyLease,
    ProviderRequest,
    StreamDone,
    TextDelta,
    TextPart,
)
from chatdesk.providers import registry as registry_module
from chatdesk.providers.gemini import GeminiProvider
from chatdesk.providers.openai_compat import OpenAICompatibleProvider
from chatdesk.providers.registry import ProviderRegistry
from chatdesk.providers.utils import is_rate_limit_signal
from tests.helpers import app_config, provider_config
from tests.providers.stubs import FakeStreamResponse, sse, stub_async_client

LEASE = KeyLease(key_id=3, provider_name="openai", secret="sk-test")


@pytest.fixture
def demotions(monkeypatch):
    calls: list[int] = []
    monkeypatch.setattr(
        base.usage, "mark_rate_limited", lambda key_id, **kwargs: calls.append(key_id)
    )
    return calls


def _request(message: ChatMessage | None = None) -> ProviderRequest:
    return ProviderRequest(
        model="gpt-4o-mini",
        system_instruction="Be brief.",
        history=[ChatMessage.from_text("assistant", "Earlier answer")],
        message=message or ChatMessage.from_text("user", "Hello"),
    )


@pytest.mark.asyncio
async def test_streams_deltas_and_final_usage(monkeypatch):
    adapter = OpenAICompatibleProvider(provider_config("openai"))
    recorder: dict = {}
    lines = sse(
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}}]},
        {"choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 2, "total_tokens": 11}},
    ) + ["data: [DONE]"]
    monkeypatch.setattr(
        "chatdesk.providers.openai_compat.httpx.AsyncClient",
        stub_async_client(FakeStreamResponse(lines=lines), recorder),
    )

    events = [event async for event in adapter.stream_chat(_request(), LEASE)]

    assert [event.text for event in events if isinstance(event, TextDelta)] == ["Hel", "lo"]
    done = events[-1]
    assert isinstance(done, StreamDone)
    assert done.text == "Hello"
    assert done.usage.prompt_tokens == 9
    assert done.usage.total_tokens == 11

    assert recorder["url"] == "https://api.example.test/v1/chat/completions"
    assert recorder["headers"]["Authorization"] == "Bearer sk-test"
    payload = recorder["json"]
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "assistant", "content": "Earlier answer"},
        {"role": "user", "content": "Hello"},
    ]


@pytest.mark.asyncio
async def test_images_become_data_uri_parts(monkeypatch):
    adapter = OpenAICompatibleProvider(provider_config("openai"))
    recorder: dict = {}
    monkeypatch.setattr(
        "chatdesk.providers.openai_compat.httpx.AsyncClient",
        stub_async_client(FakeStreamResponse(lines=sse({"choices": [{"delta": {"content": "A cat"}}]})), recorder),
    )
    message = ChatMessage(
        role="user",
        parts=[ImagePart(mime_type="image/jpeg", data="Zm9v"), TextPart(text="What is this?")],
    )

    [event async for event in adapter.stream_chat(_request(message), LEASE)]

    content = recorder["json"]["messages"][-1]["content"]
    assert content == [
        {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,Zm9v"}},
        {"type": "text", "text": "What is this?"},
    ]


@pytest.mark.asyncio
async def test_custom_auth_header_for_anthropic(monkeypatch):
    adapter = OpenAICompatibleProvider(
        provider_config(
            "claude",
            base_url="https://api.anthropic.com/v1",
            auth_header="x-api-key",
            auth_prefix="",
            extra_headers={"anthropic-version": "2023-06-01"},
        )
    )
    recorder: dict = {}
    monkeypatch.setattr(
        "chatdesk.providers.openai_compat.httpx.AsyncClient",
        stub_async_client(FakeStreamResponse(lines=sse({"choices": [{"delta": {"content": "hi"}}]})), recorder),
    )

    [event async for event in adapter.stream_chat(_request(), LEASE)]

    assert recorder["headers"]["x-api-key"] == "sk-test"
    assert recorder["headers"]["anthropic-version"] == "2023-06-01"
    assert "Authorization" not in recorder["headers"]


@pytest.mark.asyncio
async def test_search_citations_are_collected(monkeypatch):
    adapter = OpenAICompatibleProvider(provider_config("grok"))
    lines = sse(
        {"choices": [{"delta": {"content": "News"}}]},
        {"choices": [], "citations": ["https://news.example/a", "https://news.example/b"]},
    )
    monkeypatch.setattr(
        "chatdesk.providers.openai_compat.httpx.AsyncClient",
        stub_async_client(FakeStreamResponse(lines=lines)),
    )

    done = [event async for event in adapter.stream_chat(_request(), LEASE)][-1]

    assert [citation.url for citation in done.citations] == [
        "https://news.example/a",
        "https://news.example/b",
    ]


@pytest.mark.asyncio
async def test_too_many_requests_demotes_key(monkeypatch, demotions):
    adapter = OpenAICompatibleProvider(provider_config("openai"))
    response = FakeStreamResponse(
        HTTPStatus.TOO_MANY_REQUESTS,
        payload={"error": {"message": "Rate limit reached for gpt-4o-mini", "type": "requests"}},
    )
    monkeypatch.setattr(
        "chatdesk.providers.openai_compat.httpx.AsyncClient", stub_async_client(response)
    )

    with pytest.raises(UpstreamRateLimitError):
        [event async for event in adapter.stream_chat(_request(), LEASE)]

    assert demotions == [LEASE.key_id]


@pytest.mark.asyncio
async def test_unauthorized_raises_auth_error_without_demotion(monkeypatch, demotions):
    adapter = OpenAICompatibleProvider(provider_config("openai"))
    response = FakeStreamResponse(
        HTTPStatus.UNAUTHORIZED, payload={"error": {"message": "Incorrect API key provided"}}
    )
    monkeypatch.setattr(
        "chatdesk.providers.openai_compat.httpx.AsyncClient", stub_async_client(response)
    )

    with pytest.raises(ProviderAuthError):
        [event async for event in adapter.stream_chat(_request(), LEASE)]

    assert demotions == []


@pytest.mark.asyncio
async def test_oversized_prompt_is_not_treated_as_throttling(monkeypatch, demotions):
    adapter = OpenAICompatibleProvider(provider_config("openai"))
    response = FakeStreamResponse(
        HTTPStatus.BAD_REQUEST,
        payload={
            "error": {
                "code": "context_length_exceeded",
                "message": "This model's maximum context length is 128000 tokens. "
                "However, you requested 142900 tokens.",
            }
        },
    )
    monkeypatch.setattr(
        "chatdesk.providers.openai_compat.httpx.AsyncClient", stub_async_client(response)
    )

    with pytest.raises(ProviderUnavailableError) as excinfo:
        [event async for event in adapter.stream_chat(_request(), LEASE)]

    assert not isinstance(excinfo.value, UpstreamRateLimitError)
    assert "context_length_exceeded" in excinfo.value.message
    assert demotions == []


@pytest.mark.parametrize(
    ("status", "detail", "expected"),
    [
        (HTTPStatus.TOO_MANY_REQUESTS, None, True),
        (None, "[429 Too Many Requests] quota exceeded", True),
        (HTTPStatus.BAD_REQUEST, "insufficient_quota - You exceeded your current quota", True),
        (HTTPStatus.BAD_REQUEST, "rate_limit_exceeded", True),
        (HTTPStatus.BAD_REQUEST, "RESOURCE_EXHAUSTED - Resource has been exhausted", True),
        (HTTPStatus.BAD_REQUEST, "you requested 142900 tokens", False),
        (HTTPStatus.BAD_REQUEST, "invalid request id req_4290abc", False),
        (HTTPStatus.INTERNAL_SERVER_ERROR, "upstream connect error", False),
    ],
)
def test_rate_limit_signal_classification(status, detail, expected):
    assert is_rate_limit_signal(status, detail) is expected


def test_registry_builds_adapter_by_kind(monkeypatch):
    config = app_config(
        provider_config("gemini", adapter="gemini"), provider_config("deepseek")
    )
    monkeypatch.setattr(registry_module, "load_config", lambda: config)
    providers = ProviderRegistry()

    assert isinstance(providers.get_adapter("gemini"), GeminiProvider)
    deepseek = providers.get_adapter("deepseek")
    assert isinstance(deepseek, OpenAICompatibleProvider)
    assert providers.get_adapter("deepseek") is deepseek
