"""Tests for the provider adapters."""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import openai
import pytest

from inference_router.contracts.models import (
    CompletionRequest,
    FinishReason,
    Message,
    ProviderCapabilities,
    ProviderKind,
    Role,
)
from inference_router.credentials import StaticSecretProvider
from inference_router.errors import (
    AuthenticationFailed,
    ProviderError,
    ProviderTimeout,
    RateLimited,
)
from inference_router.providers.anthropic_provider import AnthropicProvider
from inference_router.providers.mock_provider import MockProvider
from inference_router.providers.ollama_provider import OllamaProvider
from inference_router.providers.openai_provider import OpenAICompatibleProvider

OPENAI_URL = "https://api.openai.com/v1/chat/completions"


def _openai_completion(text="Hello there", finish="stop", model="gpt-4o-mini"):
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(content=text, tool_calls=None),
                finish_reason=finish,
            )
        ],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
        model=model,
    )


def _openai_event(content=None, finish=None, usage=None):
    choices = [] if content is None and finish is None else [
        SimpleNamespace(delta=SimpleNamespace(content=content), finish_reason=finish)
    ]
    return SimpleNamespace(model="gpt-4o-mini", choices=choices, usage=usage)


class FakeStream:
    """Async-iterable SDK stream with an awaitable close()."""

    def __init__(self, events):
        self._events = list(events)
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event

    async def close(self):
        self.closed = True


@pytest.fixture
def openai_client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_openai_completion())
    client.embeddings.create = AsyncMock()
    client.models.list = AsyncMock()
    return client


@pytest.fixture
def openai_provider(openai_client):
    return OpenAICompatibleProvider("openai-main", client=openai_client)


class TestMockProvider:

    @pytest.mark.asyncio
    async def test_deterministic_output(self, make_request):
        provider = MockProvider()
        first = await provider.complete(make_request())
        second = await provider.complete(make_request())
        assert first.text == second.text
        assert first.text.startswith("[MOCK] Deterministic response")
        assert first.provider_id == "mock"

    @pytest.mark.asyncio
    async def test_scripted_failure_tagged_with_provider(self, make_request):
        provider = MockProvider("m", failures=[ProviderError("boom")])
        with pytest.raises(ProviderError) as excinfo:
            await provider.complete(make_request())
        assert excinfo.value.provider_id == "m"
        assert (await provider.complete(make_request())).text

    @pytest.mark.asyncio
    async def test_stream_ends_with_finish_reason(self, make_request):
        chunks = [c async for c in MockProvider().stream(make_request(stream=True))]
        assert chunks[-1].finish_reason is FinishReason.STOP
        assert all(c.finish_reason is None for c in chunks[:-1])
        assert "".join(c.delta for c in chunks).startswith("[MOCK]")

    @pytest.mark.asyncio
    async def test_embeddings_stable_per_text(self):
        provider = MockProvider(embedding_dim=4)
        first = await provider.embed(["a", "b"])
        second = await provider.embed(["a"])
        assert [e.index for e in first] == [0, 1]
        assert len(first[0].vector) == 4
        assert first[0].vector == second[0].vector

    @pytest.mark.asyncio
    async def test_embeddings_unsupported(self):
        provider = MockProvider(capabilities=ProviderCapabilities())
        with pytest.raises(ProviderError) as excinfo:
            await provider.embed(["a"])
        assert excinfo.value.code == "unsupported"
        assert not excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_health_check(self):
        assert (await MockProvider().health_check()).available
        assert not (await MockProvider(healthy=False).health_check()).available


class TestOpenAICompatibleProvider:

    @pytest.mark.asyncio
    async def test_complete(self, openai_provider, openai_client, make_request):
        response = await openai_provider.complete(make_request())
        assert response.text == "Hello there"
        assert response.usage.total_tokens == 15
        assert response.provider_id == "openai-main"
        kwargs = openai_client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"][0] == {"role": "user", "content": make_request().messages[0].content}

    @pytest.mark.asyncio
    async def test_model_hint_is_soft(self, openai_client, make_request):
        provider = OpenAICompatibleProvider(
            "openai-main",
            client=openai_client,
            capabilities=ProviderCapabilities(models=frozenset({"gpt-4o", "gpt-4o-mini"})),
        )
        await provider.complete(make_request(model="gpt-4o"))
        assert openai_client.chat.completions.create.await_args.kwargs["model"] == "gpt-4o"
        await provider.complete(make_request(model="unknown-model"))
        assert openai_client.chat.completions.create.await_args.kwargs["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_images_become_content_parts(self, openai_provider, openai_client):
        request = CompletionRequest(
            messages=(Message(role=Role.USER, content="What is this?", images=("https://img/cat.png",)),)
        )
        await openai_provider.complete(request)
        content = openai_client.chat.completions.create.await_args.kwargs["messages"][0]["content"]
        assert content[1] == {"type": "image_url", "image_url": {"url": "https://img/cat.png"}}

    @pytest.mark.asyncio
    async def test_stream(self, openai_provider, openai_client, make_request):
        fake = FakeStream([
            _openai_event("Hel"),
            _openai_event("lo"),
            _openai_event(finish="stop"),
            _openai_event(usage=SimpleNamespace(prompt_tokens=4, completion_tokens=2)),
        ])
        openai_client.chat.completions.create = AsyncMock(return_value=fake)
        chunks = [c async for c in openai_provider.stream(make_request(stream=True))]
        assert [c.delta for c in chunks[:-1]] == ["Hel", "lo"]
        assert chunks[-1].finish_reason is FinishReason.STOP
        assert chunks[-1].usage.completion_tokens == 2
        assert fake.closed

    @pytest.mark.asyncio
    async def test_embed(self, openai_provider, openai_client):
        openai_client.embeddings.create.return_value = SimpleNamespace(
            data=[
                SimpleNamespace(index=0, embedding=[0.1, 0.2]),
                SimpleNamespace(index=1, embedding=[0.3, 0.4]),
            ],
            usage=SimpleNamespace(prompt_tokens=4),
        )
        embeddings = await openai_provider.embed(["a", "b"])
        assert [e.vector for e in embeddings] == [(0.1, 0.2), (0.3, 0.4)]

    @pytest.mark.asyncio
    async def test_rate_limit_translated(self, openai_provider, openai_client, make_request):
        response = httpx.Response(
            429, headers={"retry-after": "2"}, request=httpx.Request("POST", OPENAI_URL)
        )
        openai_client.chat.completions.create.side_effect = openai.RateLimitError(
            "rate limited", response=response, body=None
        )
        with pytest.raises(RateLimited) as excinfo:
            await openai_provider.complete(make_request())
        assert excinfo.value.retry_after_s == 2.0
        assert excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_timeout_translated(self, openai_provider, openai_client, make_request):
        openai_client.chat.completions.create.side_effect = openai.APITimeoutError(
            request=httpx.Request("POST", OPENAI_URL)
        )
        with pytest.raises(ProviderTimeout):
            await openai_provider.complete(make_request())

    @pytest.mark.asyncio
    async def test_auth_error_not_retryable(self, openai_provider, openai_client, make_request):
        response = httpx.Response(401, request=httpx.Request("POST", OPENAI_URL))
        openai_client.chat.completions.create.side_effect = openai.AuthenticationError(
            "bad key", response=response, body=None
        )
        with pytest.raises(AuthenticationFailed) as excinfo:
            await openai_provider.complete(make_request())
        assert not excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_server_error_retryable(self, openai_provider, openai_client, make_request):
        response = httpx.Response(503, request=httpx.Request("POST", OPENAI_URL))
        openai_client.chat.completions.create.side_effect = openai.InternalServerError(
            "unavailable", response=response, body=None
        )
        with pytest.raises(ProviderError) as excinfo:
            await openai_provider.complete(make_request())
        assert excinfo.value.retryable
        assert excinfo.value.code == "http_503"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, make_request):
        provider = OpenAICompatibleProvider(
            "openai-main", secrets=StaticSecretProvider(), credentials_ref="openai-key"
        )
        with pytest.raises(AuthenticationFailed):
            await provider.complete(make_request())

    @pytest.mark.asyncio
    async def test_health_check_reports_missing_credentials(self):
        status = await OpenAICompatibleProvider("openai-main").health_check()
        assert not status.available
        assert status.last_error == "AuthenticationFailed"

    def test_local_flavor_is_local(self):
        provider = OpenAICompatibleProvider("lmstudio", flavor="local")
        assert provider.kind is ProviderKind.LOCAL
        assert OpenAICompatibleProvider("groq", flavor="groq").kind is ProviderKind.CLOUD

    def test_default_capabilities(self):
        caps = OpenAICompatibleProvider("groq", flavor="groq").capabilities()
        assert caps.streaming and caps.function_calling
        assert not caps.vision


class TestAnthropicProvider:

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.messages.create = AsyncMock(
            return_value=SimpleNamespace(
                content=[
                    SimpleNamespace(type="text", text="Bonjour"),
                    SimpleNamespace(type="tool_use", id="t1", name="lookup", input={"q": "x"}),
                ],
                usage=SimpleNamespace(input_tokens=9, output_tokens=4),
                stop_reason="tool_use",
                model="claude-sonnet-4-20250514",
            )
        )
        return client

    @pytest.mark.asyncio
    async def test_system_lifted_and_tools_parsed(self, client):
        provider = AnthropicProvider("claude", client=client)
        request = CompletionRequest(
            messages=(
                Message(role=Role.SYSTEM, content="Answer in French."),
                Message(role=Role.USER, content="Hello"),
            )
        )
        response = await provider.complete(request)

        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["system"] == "Answer in French."
        assert kwargs["messages"] == [{"role": "user", "content": "Hello"}]
        assert response.text == "Bonjour"
        assert response.finish_reason is FinishReason.TOOL_CALLS
        assert response.tool_calls[0].name == "lookup"
        assert json.loads(response.tool_calls[0].arguments) == {"q": "x"}
        assert response.usage.prompt_tokens == 9

    @pytest.mark.asyncio
    async def test_overloaded_is_retryable(self, client, make_request):
        response = httpx.Response(529, request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))
        client.messages.create.side_effect = anthropic.APIStatusError(
            "overloaded", response=response, body=None
        )
        with pytest.raises(ProviderError) as excinfo:
            await AnthropicProvider("claude", client=client).complete(make_request())
        assert excinfo.value.retryable
        assert excinfo.value.code == "http_529"

    @pytest.mark.asyncio
    async def test_requires_credentials(self, make_request):
        with pytest.raises(AuthenticationFailed):
            await AnthropicProvider("claude").complete(make_request())

    @pytest.mark.asyncio
    async def test_no_embeddings(self):
        provider = AnthropicProvider("claude", client=MagicMock())
        assert not provider.capabilities().embeddings
        with pytest.raises(ProviderError):
            await provider.embed(["a"])


def _ollama(handler, **kwargs) -> OllamaProvider:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://ollama.test"
    )
    return OllamaProvider("ollama", client=client, **kwargs)


class TestOllamaProvider:

    @pytest.mark.asyncio
    async def test_chat(self, make_request):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/chat"
            body = json.loads(request.content)
            assert body["stream"] is False
            return httpx.Response(
                200,
                json={
                    "model": "llama3.1",
                    "message": {"role": "assistant", "content": "Hi!"},
                    "done": True,
                    "done_reason": "stop",
                    "prompt_eval_count": 7,
                    "eval_count": 2,
                },
            )

        provider = _ollama(handler)
        response = await provider.complete(make_request())
        assert response.text == "Hi!"
        assert response.usage.total_tokens == 9
        assert provider.kind is ProviderKind.LOCAL
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_embed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/embed"
            return httpx.Response(200, json={"embeddings": [[0.1, 0.2], [0.3, 0.4]]})

        embeddings = await _ollama(handler).embed(["a", "b"])
        assert [e.index for e in embeddings] == [0, 1]
        assert embeddings[1].vector == (0.3, 0.4)

    @pytest.mark.asyncio
    async def test_health_check(self):
        provider = _ollama(lambda request: httpx.Response(200, json={"models": []}))
        assert (await provider.health_check()).available
        provider = _ollama(lambda request: httpx.Response(500))
        assert not (await provider.health_check()).available

    @pytest.mark.asyncio
    async def test_server_error_retryable(self, make_request):
        provider = _ollama(lambda request: httpx.Response(503))
        with pytest.raises(ProviderError) as excinfo:
            await provider.complete(make_request())
        assert excinfo.value.retryable
        assert excinfo.value.code == "http_503"

    @pytest.mark.asyncio
    async def test_bad_request_not_retryable(self, make_request):
        provider = _ollama(lambda request: httpx.Response(400))
        with pytest.raises(ProviderError) as excinfo:
            await provider.complete(make_request())
        assert not excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_stream_ndjson(self, make_request):
        lines = [
            {"message": {"content": "Hel"}, "done": False},
            {"message": {"content": "lo"}, "done": False},
            {"message": {"content": ""}, "done": True, "done_reason": "stop",
             "prompt_eval_count": 3, "eval_count": 2},
        ]
        body = "\n".join(json.dumps(line) for line in lines).encode()
        provider = _ollama(lambda request: httpx.Response(200, content=body))
        chunks = [c async for c in provider.stream(make_request(stream=True))]
        assert [c.delta for c in chunks] == ["Hel", "lo", ""]
        assert chunks[-1].finish_reason is FinishReason.STOP
        assert chunks[-1].usage.prompt_tokens == 3

    @pytest.mark.asyncio
    async def test_truncated_stream(self, make_request):
        body = json.dumps({"message": {"content": "Hel"}, "done": False}).encode()
        provider = _ollama(lambda request: httpx.Response(200, content=body))
        with pytest.raises(ProviderError) as excinfo:
            async for _ in provider.stream(make_request(stream=True)):
                pass
        assert excinfo.value.code == "truncated_stream"
