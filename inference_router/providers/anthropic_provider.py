"""
Anthropic Messages API adapter (cloud).

System messages are lifted into the top-level ``system`` parameter, images
become base64/url content blocks, and tools map to Anthropic tool
definitions. The Messages API has no embeddings endpoint.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from inference_router.contracts.models import (
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    FinishReason,
    HealthStatus,
    Message,
    ProviderCapabilities,
    ProviderKind,
    Role,
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

DEFAULT_MODEL = "claude-sonnet-4-20250514"

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.CONTENT_FILTER,
}


class AnthropicProvider(ProviderAdapter):

    kind = ProviderKind.CLOUD

    def __init__(
        self,
        provider_id: str,
        *,
        secrets: SecretProvider | None = None,
        credentials_ref: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        capabilities: ProviderCapabilities | None = None,
        client: Any = None,
        **kwargs,
    ) -> None:
        super().__init__(provider_id, **kwargs)
        self._secrets = secrets
        self._credentials_ref = credentials_ref
        self._base_url = base_url
        self._model = model or DEFAULT_MODEL
        self._capabilities = capabilities or ProviderCapabilities(
            max_context_tokens=200000,
            streaming=True,
            embeddings=False,
            vision=True,
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
            response = await client.messages.create(
                **self._message_params(request),
                timeout=request.timeout_s or self.timeout_s,
            )
        except anthropic.AnthropicError as exc:
            raise self._translate(exc) from exc

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(
                    ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input))
                )

        usage = Usage(
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
        )
        self._record_usage(usage.prompt_tokens, usage.completion_tokens)
        return CompletionResponse(
            text="".join(text_parts),
            usage=usage,
            finish_reason=_STOP_REASONS.get(response.stop_reason or "end_turn", FinishReason.STOP),
            provider_id=self.identify(),
            model=response.model,
            latency_ms=self._observe("complete", started),
            tool_calls=tuple(tool_calls),
            correlation_id=request.correlation_id,
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        client = await self._get_client()
        started = time.monotonic()
        try:
            stream = await client.messages.create(
                **self._message_params(request),
                stream=True,
                timeout=request.timeout_s or self.timeout_s,
            )
        except anthropic.AnthropicError as exc:
            raise self._translate(exc) from exc

        index = 0
        prompt_tokens = 0
        completion_tokens = 0
        finish = FinishReason.STOP
        model = self._model
        try:
            async for event in stream:
                if event.type == "message_start":
                    model = event.message.model
                    prompt_tokens = event.message.usage.input_tokens
                elif event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield CompletionChunk(
                        index=index,
                        delta=event.delta.text,
                        provider_id=self.identify(),
                        model=model,
                    )
                    index += 1
                elif event.type == "message_delta":
                    completion_tokens = event.usage.output_tokens
                    if event.delta.stop_reason:
                        finish = _STOP_REASONS.get(event.delta.stop_reason, FinishReason.STOP)
        except anthropic.AnthropicError as exc:
            raise self._translate(exc) from exc
        finally:
            await stream.close()

        self._record_usage(prompt_tokens, completion_tokens)
        self._observe("stream", started)
        yield CompletionChunk(
            index=index,
            finish_reason=finish,
            usage=Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
            provider_id=self.identify(),
            model=model,
        )

    async def health_check(self) -> HealthStatus:
        started = time.monotonic()
        try:
            client = await self._get_client()
            await client.models.list(limit=1, timeout=self.timeout_s)
        except (ProviderError, anthropic.AnthropicError) as exc:
            return self._probe_result(False, None, type(exc).__name__)
        return self._probe_result(True, (time.monotonic() - started) * 1000)

    # -- internals ---------------------------------------------------------

    async def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        async with self._client_lock:
            if self._client is None:
                if self._secrets is None or not self._credentials_ref:
                    raise AuthenticationFailed(
                        f"Provider {self.identify()} has no credentials_ref configured",
                        provider_id=self.identify(),
                    )
                try:
                    api_key = await self._secrets.get(self._credentials_ref)
                except SecretNotFound:
                    raise AuthenticationFailed(
                        f"No credentials available for provider {self.identify()}",
                        provider_id=self.identify(),
                    ) from None
                self._client = AsyncAnthropic(
                    api_key=api_key.get_secret_value(),
                    base_url=self._base_url,
                    timeout=self.timeout_s,
                    max_retries=0,
                )
        return self._client

    def _message_params(self, request: CompletionRequest) -> dict[str, Any]:
        system = "\n\n".join(m.content for m in request.messages if m.role == Role.SYSTEM)
        params: dict[str, Any] = {
            "model": self._model_for(request, self._model),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [
                _to_anthropic_message(m) for m in request.messages if m.role != Role.SYSTEM
            ],
        }
        if system:
            params["system"] = system
        if request.tools:
            params["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters or {"type": "object", "properties": {}},
                }
                for tool in request.tools
            ]
        return params

    def _translate(self, exc: anthropic.AnthropicError) -> ProviderError:
        pid = self.identify()
        status = getattr(exc, "status_code", None)
        if isinstance(exc, anthropic.APITimeoutError):
            return ProviderTimeout(str(exc), provider_id=pid)
        if isinstance(exc, anthropic.RateLimitError):
            header = exc.response.headers.get("retry-after") if exc.response is not None else None
            retry_after = float(header) if header and header.replace(".", "", 1).isdigit() else None
            return RateLimited(str(exc), provider_id=pid, status_code=status, retry_after_s=retry_after)
        if isinstance(exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            return AuthenticationFailed(str(exc), provider_id=pid, status_code=status)
        if isinstance(exc, anthropic.APIConnectionError):
            return ProviderError(str(exc), provider_id=pid, code="connection_error", retryable=True)
        if isinstance(exc, anthropic.APIStatusError):
            # 529 is Anthropic's "overloaded"
            retryable = exc.status_code >= 500 or exc.status_code in (408, 409)
            return ProviderError(
                str(exc), provider_id=pid, code=f"http_{exc.status_code}",
                retryable=retryable, status_code=status,
            )
        return ProviderError(str(exc), provider_id=pid, code="sdk_error", retryable=False)


def _to_anthropic_message(message: Message) -> dict[str, Any]:
    role = "assistant" if message.role == Role.ASSISTANT else "user"
    if not message.images:
        return {"role": role, "content": message.content}
    blocks: list[dict[str, Any]] = []
    for image in message.images:
        if image.startswith("data:"):
            header, _, data = image.partition(",")
            media_type = header[5:].split(";")[0] or "image/png"
            blocks.append(
                {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
            )
        else:
            blocks.append({"type": "image", "source": {"type": "url", "url": image}})
    blocks.append({"type": "text", "text": message.content})
    return {"role": role, "content": blocks}
