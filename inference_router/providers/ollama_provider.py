"""
Ollama adapter for locally hosted models.

Talks to the Ollama HTTP API directly with httpx:
  POST {base}/api/chat    chat completion (NDJSON lines when streaming)
  POST {base}/api/embed   batch embeddings
  GET  {base}/api/tags    liveness probe
No credentials are involved; traffic never leaves the host network.
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

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
from inference_router.errors import ProviderError, ProviderTimeout, RateLimited
from inference_router.providers.base import ProviderAdapter

DEFAULT_BASE_URL = "http://127.0.0.1:11434"
DEFAULT_MODEL = "llama3.1"


class OllamaProvider(ProviderAdapter):

    kind = ProviderKind.LOCAL

    def __init__(
        self,
        provider_id: str,
        *,
        base_url: str | None = None,
        model: str | None = None,
        embedding_model: str | None = "nomic-embed-text",
        capabilities: ProviderCapabilities | None = None,
        client: httpx.AsyncClient | None = None,
        **kwargs,
    ) -> None:
        super().__init__(provider_id, **kwargs)
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._model = model or DEFAULT_MODEL
        self._embedding_model = embedding_model
        self._capabilities = capabilities or ProviderCapabilities(
            max_context_tokens=8192,
            streaming=True,
            embeddings=bool(embedding_model),
            vision=False,
            function_calling=True,
            models=frozenset({self._model}),
        )
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url, timeout=self.timeout_s
        )

    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    async def aclose(self) -> None:
        await self._client.aclose()

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        started = time.monotonic()
        payload = self._chat_payload(request, stream=False)
        try:
            r = await self._client.post(
                "/api/chat", json=payload, timeout=request.timeout_s or self.timeout_s
            )
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as exc:
            raise self._translate(exc) from exc
        except ValueError as exc:
            raise ProviderError(
                f"Ollama: invalid JSON response - {exc}",
                provider_id=self.identify(), code="invalid_response",
            ) from exc

        message = data.get("message") or {}
        usage = Usage(
            prompt_tokens=data.get("prompt_eval_count", 0) or 0,
            completion_tokens=data.get("eval_count", 0) or 0,
        )
        self._record_usage(usage.prompt_tokens, usage.completion_tokens)
        tool_calls = tuple(
            ToolCall(
                name=call["function"]["name"],
                arguments=json.dumps(call["function"].get("arguments", {})),
            )
            for call in message.get("tool_calls") or []
        )
        return CompletionResponse(
            text=message.get("content", "") or "",
            usage=usage,
            finish_reason=_finish_reason(data.get("done_reason"), bool(tool_calls)),
            provider_id=self.identify(),
            model=data.get("model", payload["model"]),
            latency_ms=self._observe("complete", started),
            tool_calls=tool_calls,
            correlation_id=request.correlation_id,
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        started = time.monotonic()
        payload = self._chat_payload(request, stream=True)
        index = 0
        try:
            async with self._client.stream(
                "POST", "/api/chat", json=payload, timeout=request.timeout_s or self.timeout_s
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    data = json.loads(line)
                    if data.get("error"):
                        raise ProviderError(
                            f"Ollama: {data['error']}",
                            provider_id=self.identify(), code="stream_error",
                        )
                    content = (data.get("message") or {}).get("content", "")
                    if data.get("done"):
                        prompt_tokens = data.get("prompt_eval_count", 0) or 0
                        completion_tokens = data.get("eval_count", 0) or 0
                        self._record_usage(prompt_tokens, completion_tokens)
                        self._observe("stream", started)
                        if content:
                            yield CompletionChunk(
                                index=index, delta=content,
                                provider_id=self.identify(), model=payload["model"],
                            )
                            index += 1
                        yield CompletionChunk(
                            index=index,
                            finish_reason=_finish_reason(data.get("done_reason"), False),
                            usage=Usage(
                                prompt_tokens=prompt_tokens,
                                completion_tokens=completion_tokens,
                            ),
                            provider_id=self.identify(),
                            model=data.get("model", payload["model"]),
                        )
                        return
                    if content:
                        yield CompletionChunk(
                            index=index, delta=content,
                            provider_id=self.identify(), model=payload["model"],
                        )
                        index += 1
        except httpx.HTTPError as exc:
            raise self._translate(exc) from exc
        except json.JSONDecodeError as exc:
            raise ProviderError(
                f"Ollama: invalid stream line - {exc}",
                provider_id=self.identify(), code="invalid_response",
            ) from exc
        raise ProviderError(
            "Ollama: stream ended without a done marker",
            provider_id=self.identify(), code="truncated_stream",
        )

    async def embed(self, texts: Sequence[str]) -> list[Embedding]:
        if not self._embedding_model:
            return await super().embed(texts)
        started = time.monotonic()
        try:
            r = await self._client.post(
                "/api/embed",
                json={"model": self._embedding_model, "input": list(texts)},
            )
            r.raise_for_status()
            vectors = r.json().get("embeddings") or []
        except httpx.HTTPError as exc:
            raise self._translate(exc) from exc
        except ValueError as exc:
            raise ProviderError(
                f"Ollama: invalid JSON response - {exc}",
                provider_id=self.identify(), code="invalid_response",
            ) from exc
        self._observe("embed", started)
        return [Embedding(index=i, vector=tuple(v)) for i, v in enumerate(vectors)]

    async def health_check(self) -> HealthStatus:
        started = time.monotonic()
        try:
            r = await self._client.get("/api/tags")
            r.raise_for_status()
        except httpx.HTTPError as exc:
            return self._probe_result(False, None, type(exc).__name__)
        return self._probe_result(True, (time.monotonic() - started) * 1000)

    # -- internals ---------------------------------------------------------

    def _chat_payload(self, request: CompletionRequest, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._model_for(request, self._model),
            "messages": [_to_ollama_message(m) for m in request.messages],
            "stream": stream,
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_tokens,
            },
        }
        if request.tools:
            payload["tools"] = [
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
        return payload

    def _translate(self, exc: httpx.HTTPError) -> ProviderError:
        pid = self.identify()
        if isinstance(exc, httpx.TimeoutException):
            return ProviderTimeout(f"Ollama: timeout at {self._base_url}: {exc}", provider_id=pid)
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            if status == 429:
                return RateLimited("Ollama: HTTP 429", provider_id=pid, status_code=status)
            return ProviderError(
                f"Ollama: HTTP {status}",
                provider_id=pid,
                code=f"http_{status}",
                retryable=status >= 500,
                status_code=status,
            )
        return ProviderError(
            f"Ollama: could not reach {self._base_url}: {exc}",
            provider_id=pid, code="connection_error", retryable=True,
        )


def _to_ollama_message(message: Message) -> dict[str, Any]:
    entry: dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.images:
        # Ollama expects raw base64 without the data-URI prefix
        entry["images"] = [img.partition(",")[2] if img.startswith("data:") else img for img in message.images]
    return entry


def _finish_reason(done_reason: str | None, has_tool_calls: bool) -> FinishReason:
    if has_tool_calls:
        return FinishReason.TOOL_CALLS
    if done_reason == "length":
        return FinishReason.LENGTH
    return FinishReason.STOP
