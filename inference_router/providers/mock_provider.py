"""
Deterministic mock provider for testing and development.

Always returns the same output for the same prompt hash, making routing
reproducible without network calls. Failures can be scripted per call and
every invocation is appended to ``calls`` so tests can assert exactly
which adapters were contacted.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from collections import deque
from collections.abc import AsyncIterator, Iterable, Sequence

from inference_router.contracts.models import (
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    Embedding,
    FinishReason,
    HealthStatus,
    ProviderCapabilities,
    ProviderKind,
    Usage,
)
from inference_router.errors import ProviderError
from inference_router.providers.base import ProviderAdapter

_MOCK_PREFIX = "[MOCK] "

DEFAULT_MOCK_CAPABILITIES = ProviderCapabilities(
    max_context_tokens=32768,
    streaming=True,
    embeddings=True,
    vision=False,
    function_calling=True,
)


class MockProvider(ProviderAdapter):

    def __init__(
        self,
        provider_id: str = "mock",
        *,
        kind: ProviderKind = ProviderKind.LOCAL,
        capabilities: ProviderCapabilities | None = None,
        failures: Iterable[Exception] = (),
        delay_s: float = 0.0,
        chunk_delay_s: float = 0.0,
        embedding_dim: int = 8,
        healthy: bool = True,
        probe_latency_ms: float = 5.0,
        **kwargs,
    ) -> None:
        super().__init__(provider_id, kind=kind, **kwargs)
        self._capabilities = capabilities or DEFAULT_MOCK_CAPABILITIES
        self._failures: deque[Exception] = deque(failures)
        self.delay_s = delay_s
        self.chunk_delay_s = chunk_delay_s
        self.embedding_dim = embedding_dim
        self.healthy = healthy
        self.probe_latency_ms = probe_latency_ms
        self.calls: list[tuple[str, str]] = []
        self.probes = 0
        self.open_streams = 0

    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    def script_failures(self, *failures: Exception) -> None:
        self._failures.extend(failures)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        started = time.monotonic()
        self.calls.append(("complete", request.correlation_id))
        await self._before_call()

        prompt_hash = hashlib.sha256(request.text().encode()).hexdigest()
        content = self._content_for(prompt_hash)
        usage = Usage(
            prompt_tokens=len(request.text().split()),
            completion_tokens=len(content.split()),
        )
        self._record_usage(usage.prompt_tokens, usage.completion_tokens)
        return CompletionResponse(
            text=content,
            usage=usage,
            finish_reason=FinishReason.STOP,
            provider_id=self.identify(),
            model=self._model_for(request, "mock-deterministic"),
            latency_ms=self._observe("complete", started),
            correlation_id=request.correlation_id,
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        self.calls.append(("stream", request.correlation_id))
        self.open_streams += 1
        try:
            await self._before_call()
            prompt_hash = hashlib.sha256(request.text().encode()).hexdigest()
            words = self._content_for(prompt_hash).split()
            model = self._model_for(request, "mock-deterministic")
            for index, word in enumerate(words):
                if self.chunk_delay_s:
                    await asyncio.sleep(self.chunk_delay_s)
                yield CompletionChunk(
                    index=index,
                    delta=word if index == 0 else f" {word}",
                    provider_id=self.identify(),
                    model=model,
                )
            yield CompletionChunk(
                index=len(words),
                finish_reason=FinishReason.STOP,
                usage=Usage(
                    prompt_tokens=len(request.text().split()),
                    completion_tokens=len(words),
                ),
                provider_id=self.identify(),
                model=model,
            )
        finally:
            self.open_streams -= 1

    async def embed(self, texts: Sequence[str]) -> list[Embedding]:
        if not self._capabilities.embeddings:
            return await super().embed(texts)
        self.calls.append(("embed", str(len(texts))))
        await self._before_call()
        return [
            Embedding(index=i, vector=self._vector_for(text))
            for i, text in enumerate(texts)
        ]

    async def health_check(self) -> HealthStatus:
        self.probes += 1
        if not self.healthy:
            return self._probe_result(False, None, "mock marked unhealthy")
        return self._probe_result(True, self.probe_latency_ms)

    async def _before_call(self) -> None:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self._failures:
            failure = self._failures.popleft()
            if isinstance(failure, ProviderError) and not failure.provider_id:
                failure.provider_id = self.identify()
            raise failure

    @staticmethod
    def _content_for(prompt_hash: str) -> str:
        return (
            f"{_MOCK_PREFIX}Deterministic response for prompt hash "
            f"{prompt_hash[:12]}."
        )

    def _vector_for(self, text: str) -> tuple[float, ...]:
        digest = hashlib.sha256(text.encode()).digest()
        return tuple(
            digest[i % len(digest)] / 255.0 for i in range(self.embedding_dim)
        )
