"""Abstract base class that all provider adapters must implement."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from datetime import datetime, timezone

from inference_router.contracts.models import (
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    Embedding,
    HealthStatus,
    ProviderCapabilities,
    ProviderId,
    ProviderKind,
)
from inference_router.errors import ProviderError
from inference_router.observability.metrics import provider_latency, record_usage


class ProviderAdapter(ABC):
    """
    Contract for provider adapters.

    Every implementation MUST:
    - Translate backend errors into ProviderError subclasses (retryable or not)
    - Declare its capabilities up front; the router never probes for them
    - Be safe for concurrent use: no per-request state on the instance
    """

    kind: ProviderKind = ProviderKind.CLOUD

    def __init__(
        self,
        provider_id: ProviderId,
        *,
        kind: ProviderKind | None = None,
        priority: int = 100,
        cost_per_1k_tokens: float = 0.0,
        timeout_s: float = 60.0,
    ) -> None:
        self._provider_id = provider_id
        if kind is not None:
            self.kind = kind
        self.priority = priority
        self.cost_per_1k_tokens = cost_per_1k_tokens
        self.timeout_s = timeout_s

    def identify(self) -> ProviderId:
        return self._provider_id

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Static capability declaration for this adapter instance."""

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Send a completion request and return the full response."""

    @abstractmethod
    def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        """Return a lazy chunk stream; the last chunk carries a finish reason."""

    async def embed(self, texts: Sequence[str]) -> list[Embedding]:
        raise ProviderError(
            f"Provider {self._provider_id} does not support embeddings",
            provider_id=self._provider_id,
            code="unsupported",
            retryable=False,
        )

    @abstractmethod
    async def health_check(self) -> HealthStatus:
        """Probe the backend; never raises, reports failure as available=False."""

    # -- helpers for subclasses --------------------------------------------

    def _observe(self, operation: str, started: float) -> float:
        elapsed = time.monotonic() - started
        provider_latency.labels(provider=self._provider_id, operation=operation).observe(elapsed)
        return elapsed * 1000

    def _record_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        record_usage(self._provider_id, prompt_tokens, completion_tokens)

    def _probe_result(
        self, available: bool, latency_ms: float | None, error: str | None = None
    ) -> HealthStatus:
        return HealthStatus(
            provider_id=self._provider_id,
            available=available,
            latency_ms=latency_ms,
            last_checked_at=datetime.now(timezone.utc),
            last_error=error,
        )

    def _model_for(self, request: CompletionRequest, default: str) -> str:
        if request.model and self.capabilities().supports_model(request.model):
            return request.model
        return default

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self._provider_id!r}, kind={self.kind.value})"
