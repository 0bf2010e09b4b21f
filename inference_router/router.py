"""
InferenceRouter -- the single entry point callers use.

Every request runs the same pipeline:

  validate -> scan -> classify -> select candidates -> execute with failover

Each stage that ends a request writes the terminal audit record before
the error reaches the caller: rejected (validation), blocked (scanner),
no_provider (routing) and the per-attempt records of the executor.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import pydantic

from inference_router.audit.sink import AuditContext, AuditSink
from inference_router.cancellation import CancellationToken
from inference_router.config import RouterConfig
from inference_router.contracts.models import (
    AuditOutcome,
    Capability,
    CloudFirst,
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    Embedding,
    HealthStatus,
    Operation,
    ProviderId,
    RoutingPolicy,
    stable_hash,
    texts_digest,
)
from inference_router.credentials import SecretProvider
from inference_router.errors import (
    InferenceError,
    NoProviderAvailable,
    ProviderError,
    SecurityError,
    ValidationError,
)
from inference_router.execution.retry import RetryExecutor, RetrySettings
from inference_router.health.monitor import HealthMonitor, HealthSettings
from inference_router.logging.logger import bind_correlation_id
from inference_router.observability.metrics import routed_requests
from inference_router.providers.base import ProviderAdapter
from inference_router.providers.factory import build_adapters
from inference_router.routing.engine import RoutingPolicyEngine
from inference_router.security.classifier import DataClassifier, RemoteClassifier
from inference_router.security.scanner import InjectionScanner

logger = logging.getLogger(__name__)

_CHARS_PER_TOKEN = 4


class InferenceRouter:
    """Single entry point: admits, routes and audits completion and embedding requests."""

    def __init__(
        self,
        adapters: Sequence[ProviderAdapter],
        *,
        policy: RoutingPolicy | None = None,
        scanner: InjectionScanner | None = None,
        classifier: DataClassifier | None = None,
        audit_sink: AuditSink | None = None,
        health_monitor: HealthMonitor | None = None,
        retry_settings: RetrySettings | None = None,
        health_settings: HealthSettings | None = None,
    ) -> None:
        self._engine = RoutingPolicyEngine(adapters)
        self._policy: RoutingPolicy = policy or CloudFirst()
        self.scanner = scanner or InjectionScanner()
        self.classifier = classifier or DataClassifier()
        self.audit = audit_sink or AuditSink()
        self.health = health_monitor or HealthMonitor(adapters, health_settings)
        self._executor = RetryExecutor(self.audit, self.health, retry_settings)

    @classmethod
    def from_config(
        cls,
        config: RouterConfig,
        secrets: SecretProvider | None = None,
        *,
        audit_sink: AuditSink | None = None,
    ) -> InferenceRouter:
        remote = None
        if config.classifier.remote_url:
            remote = RemoteClassifier(
                config.classifier.remote_url, timeout_s=config.classifier.remote_timeout_s
            )
        return cls(
            build_adapters(config.providers, secrets),
            policy=config.policy,
            scanner=InjectionScanner(
                config.scanner.signature_set_version, mode=config.scanner.mode
            ),
            classifier=DataClassifier(remote=remote),
            audit_sink=audit_sink,
            retry_settings=config.retry,
            health_settings=config.health,
        )

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        await self.health.start()
        logger.info(
            "Inference router started (%d providers, policy=%s)",
            len(self._engine.adapters),
            self._policy.kind,
        )

    async def shutdown(self) -> None:
        await self.health.stop()
        for adapter in self._engine.adapters:
            aclose = getattr(adapter, "aclose", None)
            if aclose is not None:
                await aclose()
        await self.classifier.aclose()
        await self.audit.close()
        logger.info("Inference router stopped")

    async def __aenter__(self) -> InferenceRouter:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # -- configuration -----------------------------------------------------

    @property
    def policy(self) -> RoutingPolicy:
        return self._policy

    @property
    def adapters(self) -> tuple[ProviderAdapter, ...]:
        return self._engine.adapters

    def reconfigure(self, policy: RoutingPolicy) -> None:
        """Swap the policy; requests already dispatched keep the one they captured."""
        previous, self._policy = self._policy, policy
        logger.info("Routing policy changed: %s -> %s", previous.kind, policy.kind)

    def get_health(self) -> Mapping[ProviderId, HealthStatus]:
        return self.health.snapshot()

    # -- operations --------------------------------------------------------

    async def route(
        self,
        request: CompletionRequest | Mapping[str, Any],
        cancel: CancellationToken | None = None,
    ) -> CompletionResponse:
        policy = self._policy
        started = time.monotonic()
        try:
            request, ctx = await self._admit(request, Operation.COMPLETE)
            if request.stream:
                request = request.model_copy(update={"stream": False})
            with bind_correlation_id(ctx.correlation_id):
                candidates = await self._select(policy, request, ctx, request.required_capabilities())
                response, _ = await self._executor.execute(
                    candidates,
                    lambda adapter: adapter.complete(request),
                    ctx,
                    timeout_s=request.timeout_s,
                    cancel=cancel,
                )
        except BaseException as exc:
            self._count(Operation.COMPLETE, exc)
            raise
        self._count(Operation.COMPLETE, None)
        logger.info(
            "Routed completion via %s in %.0fms",
            response.provider_id,
            (time.monotonic() - started) * 1000,
            extra={"_extra": {"correlation_id": ctx.correlation_id, "classification": ctx.classification}},
        )
        return response.model_copy(
            update={
                "correlation_id": ctx.correlation_id,
                "security_flags": request.security_flags,
            }
        )

    async def route_streaming(
        self,
        request: CompletionRequest | Mapping[str, Any],
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[CompletionChunk]:
        """
        Stream a completion. Validation, scanning and routing errors surface
        on the first iteration; no chunk is produced before they pass.
        """
        policy = self._policy
        try:
            request, ctx = await self._admit(request, Operation.STREAM)
            request = request.model_copy(update={"stream": True})
            candidates = await self._select(policy, request, ctx, request.required_capabilities())
        except BaseException as exc:
            self._count(Operation.STREAM, exc)
            raise

        chunks = self._executor.stream(
            candidates,
            lambda adapter: adapter.stream(request),
            ctx,
            timeout_s=request.timeout_s,
            cancel=cancel,
        )
        try:
            async for chunk in chunks:
                yield chunk
        except BaseException as exc:
            self._count(Operation.STREAM, exc)
            raise
        finally:
            await chunks.aclose()
        self._count(Operation.STREAM, None)

    async def embed(
        self,
        texts: Sequence[str],
        correlation_id: str | None = None,
        cancel: CancellationToken | None = None,
        *,
        metadata: Mapping[str, str] | None = None,
    ) -> list[Embedding]:
        """Embed texts; the result is index-aligned with the input."""
        policy = self._policy
        correlation_id = correlation_id or str(uuid.uuid4())
        texts = list(texts)
        try:
            ctx = AuditContext(
                correlation_id=correlation_id,
                operation=Operation.EMBED,
                request_digest=texts_digest(texts),
            )
            if not texts or not all(isinstance(t, str) for t in texts):
                await self._reject(ctx, "embed() requires a non-empty list of strings")
            ctx = AuditContext(
                correlation_id=correlation_id,
                operation=Operation.EMBED,
                request_digest=ctx.request_digest,
                classification=self.classifier.classify_texts(texts, metadata),
            )
            estimated = max(len(t) for t in texts) // _CHARS_PER_TOKEN + 1
            with bind_correlation_id(correlation_id):
                candidates = await self._select(
                    policy, None, ctx, frozenset({Capability.EMBEDDINGS}), estimated_tokens=estimated
                )
                vectors, _ = await self._executor.execute(
                    candidates,
                    lambda adapter: self._embed_with(adapter, texts, correlation_id),
                    ctx,
                    cancel=cancel,
                )
        except BaseException as exc:
            self._count(Operation.EMBED, exc)
            raise
        self._count(Operation.EMBED, None)
        return vectors

    # -- pipeline stages ---------------------------------------------------

    async def _admit(
        self, raw: CompletionRequest | Mapping[str, Any], operation: Operation
    ) -> tuple[CompletionRequest, AuditContext]:
        if isinstance(raw, CompletionRequest):
            request = raw
        else:
            try:
                request = CompletionRequest.model_validate(raw)
            except pydantic.ValidationError as exc:
                fields = dict(raw) if isinstance(raw, Mapping) else {"payload": raw}
                ctx = AuditContext(
                    correlation_id=str(fields.get("correlation_id") or uuid.uuid4()),
                    operation=operation,
                    request_digest=stable_hash(fields),
                )
                await self._reject(ctx, _describe(exc))

        ctx = AuditContext(
            correlation_id=request.correlation_id,
            operation=operation,
            request_digest=request.digest(),
        )
        problem = _semantic_problem(request)
        if problem:
            await self._reject(ctx, problem)

        scan = self.scanner.scan(request)
        if scan.blocked:
            error = SecurityError(
                "Request blocked by injection scanner",
                signatures=scan.flags,
                correlation_id=request.correlation_id,
            )
            await self.audit.record(
                AuditContext(
                    correlation_id=ctx.correlation_id,
                    operation=operation,
                    request_digest=ctx.request_digest,
                    security_flags=scan.flags,
                ).record(AuditOutcome.BLOCKED, error=error, terminal=True)
            )
            raise error
        request = self.scanner.annotate(request, scan)

        classification = await self.classifier.aclassify(request)
        return request, AuditContext(
            correlation_id=request.correlation_id,
            operation=operation,
            request_digest=ctx.request_digest,
            classification=classification,
            security_flags=request.security_flags,
        )

    async def _select(
        self,
        policy: RoutingPolicy,
        request: CompletionRequest | None,
        ctx: AuditContext,
        required: frozenset[Capability],
        *,
        estimated_tokens: int | None = None,
    ) -> list[ProviderAdapter]:
        if estimated_tokens is None:
            estimated_tokens = request.estimated_prompt_tokens() if request is not None else 0
        try:
            return self._engine.select(
                policy=policy,
                required=required,
                classification=ctx.classification,
                health=self.health.snapshot(),
                estimated_tokens=estimated_tokens,
                correlation_id=ctx.correlation_id,
            )
        except NoProviderAvailable as exc:
            await self.audit.record(ctx.record(AuditOutcome.NO_PROVIDER, error=exc, terminal=True))
            raise

    async def _reject(self, ctx: AuditContext, reason: str) -> None:
        error = ValidationError(reason, correlation_id=ctx.correlation_id)
        logger.info(
            "Request rejected: %s",
            reason,
            extra={"_extra": {"correlation_id": ctx.correlation_id}},
        )
        await self.audit.record(ctx.record(AuditOutcome.REJECTED, error=error, terminal=True))
        raise error

    @staticmethod
    async def _embed_with(
        adapter: ProviderAdapter, texts: list[str], correlation_id: str
    ) -> list[Embedding]:
        vectors = sorted(await adapter.embed(texts), key=lambda e: e.index)
        if [e.index for e in vectors] != list(range(len(texts))):
            raise ProviderError(
                f"Expected {len(texts)} embeddings, got {len(vectors)}",
                provider_id=adapter.identify(),
                code="invalid_response",
                correlation_id=correlation_id,
            )
        return vectors

    @staticmethod
    def _count(operation: Operation, exc: BaseException | None) -> None:
        if exc is None:
            outcome = "success"
        elif isinstance(exc, InferenceError):
            outcome = exc.kind.value
        elif isinstance(exc, (GeneratorExit, asyncio.CancelledError)):
            outcome = "cancelled"
        else:
            outcome = type(exc).__name__
        routed_requests.labels(operation=operation.value, outcome=outcome).inc()


def _semantic_problem(request: CompletionRequest) -> str | None:
    if not any(m.content.strip() or m.images for m in request.messages):
        return "request contains no content"
    names = [t.name for t in request.tools]
    if len(names) != len(set(names)):
        return "tool names must be unique"
    return None


def _describe(exc: pydantic.ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "request"
    return f"{location}: {first.get('msg', 'invalid value')}"
