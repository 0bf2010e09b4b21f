"""
OpenAI-compatible provider adapter.

Works with any API that speaks the OpenAI Chat Completions protocol:
  - OpenAI      (base_url=https://api.openai.com/v1)
  - Groq        (base_url=https://api.groq.com/openai/v1)
  - Google      (base_url=https://generativelanguage.googleapis.com/v1beta/openai)
  - OpenRouter  (base_url=https://openrouter.ai/api/v1)
  - local       Any OpenAI-compatible local server (LM Studio, vLLM, llama.cpp)

The API key is resolved through the SecretProvider on first use; the
client is created lazily and reused for every later call.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

import openai
from openai import AsyncOpenAI

from inference_router.contracts.models import (
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    Embedding,
    FinishReason,
    HealthStatus,
    Message,
    ProviderCapabilities,
    ProviderKind,
    ToolCall,
    Usage,
)
from inference_router.credentials import SecretNotFound, SecretProvider
from inference_router.errors import (
    AuthenticationFailed,
    ProviderError,
    ProviderTimeout,
    RateLimited,
)
from inference_router.providers.base import ProviderAdapter

_BASE_URLS: dict[str, str] = {
    "openai":     "https://api.openai.com/v1",
    "groq":       "https://api.groq.com/openai/v1",
    "gemini":     "https://generativelanguage.googleapis.com/v1beta/openai/",
    "openrouter": "https://openrouter.ai/api/v1",
    "local":      "http://localhost:1234/v1",
}

_DEFAULT_MODELS: dict[str, str] = {
    "openai":     "gpt-4o-mini",
    "groq":       "llama-3.3-70b-versatile",
    "gemini":     "gemini-2.0-flash",
    "openrouter": "meta-llama/llama-3.3-70b-instruct:free",
    "local":      "local-model",
}

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}

_LOCAL_PLACEHOLDER_KEY = "local-placeholder-key"


class OpenAICompatibleProvider(ProviderAdapter):
    """OpenAI Chat Completions adapter (cloud flavours and local servers)."""

    def __init__(
        self,
        provider_id: str,
        *,
        flavor: str = "openai",
        secrets: SecretProvider | None = None,
        credentials_ref: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        embedding_model: str | None = "text-embedding-3-small",
        capabilities: ProviderCapabilities | None = None,
        client: Any = None,
        **kwargs,
    ) -> None:
        kwargs.setdefault(
            "kind", ProviderKind.LOCAL if flavor == "local" else ProviderKind.CLOUD
        )
        super().__init__(provider_id, **kwargs)
        self._flavor = flavor
        self._secrets = secrets
        self._credentials_ref = credentials_ref
        self._base_url = base_url or _BASE_URLS.get(flavor, _BASE_URLS["openai"])
        self._model = model or _DEFAULT_MODELS.get(flavor, "gpt-4o-mini")
        self._embedding_model = embedding_model
        self._capabilities = capabilities or ProviderCapabilities(
            max_context_tokens=128000,
            streaming=True,
            embeddings=bool(embedding_model),
            vision=flavor in ("openai", "gemini"),
            function_calling=True,
            models=frozenset({self._model}),
        )
        self._client = client
        self._client_lock = asyncio.Lock()

    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        client = await self._get_client()
        started = time.monotonic()
        try:
            response = await client.chat.completions.create(
                **self._chat_params(request),
                timeout=request.timeout_s or self.timeout_s,
            )
        except openai.OpenAIError as exc:
            raise self._translate(exc) from exc

        choice = response.choices[0]
        usage = _usage(response.usage)
        self._record_usage(usage.prompt_tokens, usage.completion_tokens)
        tool_calls = tuple(
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}")
            for tc in (choice.message.tool_calls or [])
        )
        return CompletionResponse(
            text=choice.message.content or "",
            usage=usage,
            finish_reason=_FINISH_REASONS.get(choice.finish_reason or "stop", FinishReason.STOP),
            provider_id=self.identify(),
            model=response.model,
            latency_ms=self._observe("complete", started),
            tool_calls=tool_calls,
            correlation_id=request.correlation_id,
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        client = await self._get_client()
        started = time.monotonic()
        try:
            stream = await client.chat.completions.create(
                **self._chat_params(request),
                stream=True,
                stream_options={"include_usage": True},
                timeout=request.timeout_s or self.timeout_s,
            )
        except openai.OpenAIError as exc:
            raise self._translate(exc) from exc

        index = 0
        finish: FinishReason | None = None
        usage: Usage | None = None
        model = self._model
        try:
            async for event in stream:
                model = event.model or model
                if event.usage is not None:
                    usage = _usage(event.usage)
                if not event.choices:
                    continue
                choice = event.choices[0]
                if choice.finish_reason:
                    finish = _FINISH_REASONS.get(choice.finish_reason, FinishReason.STOP)
                delta = choice.delta.content if choice.delta else None
                if delta:
                    yield CompletionChunk(
                        index=index, delta=delta, provider_id=self.identify(), model=model
                    )
                    index += 1
        except openai.OpenAIError as exc:
            raise self._translate(exc) from exc
        finally:
            await stream.close()

        if usage is not None:
            self._record_usage(usage.prompt_tokens, usage.completion_tokens)
        self._observe("stream", started)
        yield CompletionChunk(
            index=index,
            finish_reason=finish or FinishReason.STOP,
            usage=usage,
            provider_id=self.identify(),
            model=model,
        )

    async def embed(self, texts: Sequence[str]) -> list[Embedding]:
        if not self._embedding_model:
            return await super().embed(texts)
        client = await self._get_client()
        started = time.monotonic()
        try:
            response = await client.embeddings.create(
                model=self._embedding_model,
                input=list(texts),
                timeout=self.timeout_s,
            )
        except openai.OpenAIError as exc:
            raise self._translate(exc) from exc

        self._observe("embed", started)
        if response.usage is not None:
            self._record_usage(response.usage.prompt_tokens, 0)
        return [
            Embedding(index=item.index, vector=tuple(item.embedding))
            for item in response.data
        ]

    async def health_check(self) -> HealthStatus:
        started = time.monotonic()
        try:
            client = await self._get_client()
            await client.models.list(timeout=self.timeout_s)
        except (ProviderError, openai.OpenAIError) as exc:
            return self._probe_result(False, None, type(exc).__name__)
        return self._probe_result(True, (time.monotonic() - started) * 1000)

    # -- internals ---------------------------------------------------------

    async def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        async with self._client_lock:
            if self._client is None:
                api_key = await self._resolve_api_key()
                self._client = AsyncOpenAI(
                    api_key=api_key,
                    base_url=self._base_url,
                    timeout=self.timeout_s,
                    max_retries=0,
                )
        return self._client

    async def _resolve_api_key(self) -> str:
        if self._secrets is not None and self._credentials_ref:
            try:
                return (await self._secrets.get(self._credentials_ref)).get_secret_value()
            except SecretNotFound:
                if self._flavor != "local":
                    raise AuthenticationFailed(
                        f"No credentials available for provider {self.identify()}",
                        provider_id=self.identify(),
                    ) from None
        if self._flavor == "local":
            # Local servers usually accept any key but the SDK insists on one.
            return _LOCAL_PLACEHOLDER_KEY
        raise AuthenticationFailed(
            f"Provider {self.identify()} has no credentials_ref configured",
            provider_id=self.identify(),
        )

    def _chat_params(self, request: CompletionRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self._model_for(request, self._model),
            "messages": [_to_openai_message(m) for m in request.messages],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.tools:
            params["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters or {"type": "object", "properties": {}},
                    },
                }
                for tool in request.tools
            ]
        return params

    def _translate(self, exc: openai.OpenAIError) -> ProviderError:
        pid = self.identify()
        status = getattr(exc, "status_code", None)
        if isinstance(exc, openai.APITimeoutError):
            return ProviderTimeout(str(exc), provider_id=pid)
        if isinstance(exc, openai.RateLimitError):
            retry_after = _retry_after(exc)
            return RateLimited(str(exc), provider_id=pid, status_code=status, retry_after_s=retry_after)
        if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return AuthenticationFailed(str(exc), provider_id=pid, status_code=status)
        if isinstance(exc, openai.APIConnectionError):
            return ProviderError(str(exc), provider_id=pid, code="connection_error", retryable=True)
        if isinstance(exc, openai.APIStatusError):
            retryable = exc.status_code >= 500 or exc.status_code in (408, 409)
            code = getattr(exc, "code", None) or f"http_{exc.status_code}"
            return ProviderError(str(exc), provider_id=pid, code=str(code), retryable=retryable, status_code=status)
        return ProviderError(str(exc), provider_id=pid, code="sdk_error", retryable=False)


def _to_openai_message(message: Message) -> dict[str, Any]:
    entry: dict[str, Any] = {"role": message.role.value}
    if message.images:
        parts: list[dict[str, Any]] = [{"type": "text", "text": message.content}]
        parts.extend(
            {"type": "image_url", "image_url": {"url": url}} for url in message.images
        )
        entry["content"] = parts
    else:
        entry["content"] = message.content
    if message.name:
        entry["name"] = message.name
    return entry


def _usage(raw: Any) -> Usage:
    if raw is None:
        return Usage()
    return Usage(
        prompt_tokens=getattr(raw, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(raw, "completion_tokens", 0) or 0,
    )


def _retry_after(exc: openai.APIStatusError) -> float | None:
    value = exc.response.headers.get("retry-after") if exc.response is not None else None
    try:
        return float(value) if value else None
    except ValueError:
        return None
