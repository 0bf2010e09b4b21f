"""
Sequential failover across an ordered candidate list.

Per request:
  Pending -> Attempting(candidate_i) -> Success
                                     -> retryable failure -> backoff -> Attempting(next)
                                     -> non-retryable failure | attempts spent -> Exhausted

Attempts never overlap. Every attempt writes exactly one audit record
before the executor moves on, and its outcome is fed to the health
monitor. The last record written for a request carries terminal=True.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from inference_router.audit.sink import AuditContext, AuditSink
from inference_router.cancellation import CancellationToken
from inference_router.contracts.models import AuditOutcome, CompletionChunk
from inference_router.errors import (
    AttemptFailure,
    ExhaustedError,
    ProviderError,
    ProviderTimeout,
    RateLimited,
    RequestCancelled,
)
from inference_router.health.monitor import HealthMonitor
from inference_router.observability.metrics import provider_attempts
from inference_router.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")

_END = object()


@dataclass(frozen=True)
class RetrySettings:
    """
    Failover budget and pacing.

    attempt_timeout_s bounds a single call. For streams it bounds the wait
    for each chunk, not the whole generation.
    """

    max_attempts: int = 3
    attempts_per_candidate: int = 1
    backoff_base_s: float = 0.2
    backoff_multiplier: float = 2.0
    backoff_max_s: float = 5.0
    attempt_timeout_s: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.attempts_per_candidate < 1:
            raise ValueError("attempts_per_candidate must be >= 1")

    def backoff_for(self, attempt: int, retry_after_s: float | None = None) -> float:
        """Delay before the given 1-based attempt; the first attempt never waits."""
        if attempt <= 1:
            return 0.0
        delay = self.backoff_base_s * self.backoff_multiplier ** (attempt - 2)
        if retry_after_s:
            delay = max(delay, retry_after_s)
        return min(delay, self.backoff_max_s)


class _StreamPump:
    """
    Drives one adapter stream inside its own task and hands items over a
    one-slot queue, so the consumer can race each read against a timeout
    and the cancellation token without moving the generator across tasks.
    """

    def __init__(self, source: AsyncIterator[CompletionChunk]) -> None:
        self._source = source
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        try:
            async for chunk in self._source:
                await self._queue.put(chunk)
            await self._queue.put(_END)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._queue.put(exc)
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()

    async def next(self) -> CompletionChunk | None:
        item = await self._queue.get()
        if item is _END:
            return None
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        if not self._task.done():
            self._task.cancel()
        await asyncio.wait({self._task})
        if not self._task.cancelled() and self._task.exception() is not None:
            logger.debug("Stream pump ended with %r", self._task.exception())


class RetryExecutor:
    """Runs one request against its candidate plan, one attempt at a time."""

    def __init__(
        self,
        audit: AuditSink,
        health: HealthMonitor | None = None,
        settings: RetrySettings | None = None,
    ) -> None:
        self.audit = audit
        self.health = health
        self.settings = settings or RetrySettings()

    def schedule(self, candidates: Sequence[ProviderAdapter]) -> list[ProviderAdapter]:
        """Expand candidates into the attempt plan, bounded by max_attempts."""
        plan = [
            adapter
            for adapter in candidates
            for _ in range(self.settings.attempts_per_candidate)
        ]
        return plan[: self.settings.max_attempts]

    # -- single-shot operations (complete, embed) --------------------------

    async def execute(
        self,
        candidates: Sequence[ProviderAdapter],
        call: Callable[[ProviderAdapter], Awaitable[T]],
        ctx: AuditContext,
        *,
        timeout_s: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> tuple[T, ProviderAdapter]:
        plan = self.schedule(candidates)
        failures: list[AttemptFailure] = []
        last_error: ProviderError | None = None

        for attempt, adapter in enumerate(plan, start=1):
            pid = adapter.identify()
            started: float | None = None
            try:
                await self._pause(attempt, last_error, cancel, ctx.correlation_id)
                started = time.monotonic()
                result = await self._race(
                    call(adapter),
                    timeout=self._timeout_for(adapter, timeout_s),
                    cancel=cancel,
                    provider_id=pid,
                    correlation_id=ctx.correlation_id,
                )
            except ProviderError as exc:
                last_error = exc
                terminal = attempt == len(plan) or not exc.retryable
                failures.append(await self._write_failure(ctx, attempt, adapter, exc, started, terminal))
                if not exc.retryable:
                    break
                continue
            except (RequestCancelled, asyncio.CancelledError):
                await self._write_cancelled(ctx, attempt, pid, started)
                raise

            await self._write_success(ctx, attempt, adapter, started)
            return result, adapter

        raise ExhaustedError(failures, correlation_id=ctx.correlation_id)

    # -- streaming ---------------------------------------------------------

    async def stream(
        self,
        candidates: Sequence[ProviderAdapter],
        open_stream: Callable[[ProviderAdapter], AsyncIterator[CompletionChunk]],
        ctx: AuditContext,
        *,
        timeout_s: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[CompletionChunk]:
        """
        Yield chunks from the first candidate that produces one.

        Failover is possible only until the first chunk reaches the caller.
        Afterwards a provider error is audited and re-raised. The chunk that
        carries the finish reason is yielded only after the terminal audit
        record has been written.
        """
        plan = self.schedule(candidates)
        failures: list[AttemptFailure] = []
        last_error: ProviderError | None = None

        for attempt, adapter in enumerate(plan, start=1):
            pid = adapter.identify()
            timeout = self._timeout_for(adapter, timeout_s)
            started: float | None = None
            pump: _StreamPump | None = None
            finished = False
            try:
                await self._pause(attempt, last_error, cancel, ctx.correlation_id)
                started = time.monotonic()
                pump = _StreamPump(open_stream(adapter))
                try:
                    chunk = await self._race(
                        pump.next(),
                        timeout=timeout,
                        cancel=cancel,
                        provider_id=pid,
                        correlation_id=ctx.correlation_id,
                    )
                    if chunk is None:
                        raise ProviderError(
                            "Stream ended before the first chunk",
                            provider_id=pid,
                            code="empty_stream",
                        )
                except ProviderError as exc:
                    last_error = exc
                    terminal = attempt == len(plan) or not exc.retryable
                    failures.append(await self._write_failure(ctx, attempt, adapter, exc, started, terminal))
                    if not exc.retryable:
                        break
                    continue

                while True:
                    if chunk.is_final:
                        await self._write_success(ctx, attempt, adapter, started)
                        finished = True
                        yield chunk
                        return
                    yield chunk
                    if cancel is not None and cancel.cancelled:
                        raise RequestCancelled(cancel.reason or "", correlation_id=ctx.correlation_id)
                    try:
                        following = await self._race(
                            pump.next(),
                            timeout=timeout,
                            cancel=cancel,
                            provider_id=pid,
                            correlation_id=ctx.correlation_id,
                        )
                    except ProviderError as exc:
                        finished = True
                        await self._write_failure(ctx, attempt, adapter, exc, started, terminal=True)
                        raise
                    if following is None:
                        await self._write_success(ctx, attempt, adapter, started)
                        finished = True
                        return
                    chunk = following
            except (RequestCancelled, asyncio.CancelledError, GeneratorExit):
                if not finished:
                    await self._write_cancelled(ctx, attempt, pid, started)
                raise
            finally:
                if pump is not None:
                    await pump.close()

        raise ExhaustedError(failures, correlation_id=ctx.correlation_id)

    # -- internals ---------------------------------------------------------

    def _timeout_for(self, adapter: ProviderAdapter, request_timeout: float | None) -> float:
        return request_timeout or self.settings.attempt_timeout_s or adapter.timeout_s

    async def _pause(
        self,
        attempt: int,
        last_error: ProviderError | None,
        cancel: CancellationToken | None,
        correlation_id: str,
    ) -> None:
        """Back off before the attempt; raise RequestCancelled if cancelled meanwhile."""
        retry_after = last_error.retry_after_s if isinstance(last_error, RateLimited) else None
        delay = self.settings.backoff_for(attempt, retry_after)
        if cancel is None:
            if delay > 0:
                await asyncio.sleep(delay)
            return
        if await cancel.sleep(delay):
            raise RequestCancelled(cancel.reason or "", correlation_id=correlation_id)

    async def _race(
        self,
        aw: Awaitable[T],
        *,
        timeout: float | None,
        cancel: CancellationToken | None,
        provider_id: str,
        correlation_id: str,
    ) -> T:
        task = asyncio.ensure_future(aw)
        stopper = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        waiters = {task} if stopper is None else {task, stopper}
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if stopper is not None:
                stopper.cancel()

        # A cancel that lands in the same tick as a result still wins.
        if cancel is not None and cancel.cancelled:
            task.cancel()
            await asyncio.wait({task})
            if not task.cancelled():
                task.exception()
            raise RequestCancelled(cancel.reason or "", correlation_id=correlation_id)

        if task in done:
            try:
                return task.result()
            except ProviderError:
                raise
            except Exception as exc:
                logger.exception(
                    "Adapter %s raised an untranslated error",
                    provider_id,
                    extra={"_extra": {"correlation_id": correlation_id}},
                )
                raise ProviderError(
                    f"Unexpected adapter failure: {type(exc).__name__}",
                    provider_id=provider_id,
                    code="adapter_error",
                ) from exc

        task.cancel()
        await asyncio.wait({task})
        raise ProviderTimeout(
            f"No response within {timeout:.1f}s",
            provider_id=provider_id,
            correlation_id=correlation_id,
        )

    async def _write_success(
        self, ctx: AuditContext, attempt: int, adapter: ProviderAdapter, started: float
    ) -> None:
        pid = adapter.identify()
        await self.audit.record(
            ctx.record(
                AuditOutcome.SUCCESS,
                attempt=attempt,
                provider_id=pid,
                latency_ms=(time.monotonic() - started) * 1000,
                terminal=True,
            )
        )
        provider_attempts.labels(provider=pid, outcome=AuditOutcome.SUCCESS.value).inc()
        if self.health is not None:
            self.health.report_success(pid)

    async def _write_failure(
        self,
        ctx: AuditContext,
        attempt: int,
        adapter: ProviderAdapter,
        exc: ProviderError,
        started: float,
        terminal: bool,
    ) -> AttemptFailure:
        pid = adapter.identify()
        outcome = AuditOutcome.TIMEOUT if isinstance(exc, ProviderTimeout) else AuditOutcome.FAILED
        logger.warning(
            "Attempt %d on %s failed: %s (retryable=%s)",
            attempt,
            pid,
            exc.code,
            exc.retryable,
            extra={"_extra": {"correlation_id": ctx.correlation_id, "provider": pid}},
        )
        await self.audit.record(
            ctx.record(
                outcome,
                attempt=attempt,
                provider_id=pid,
                error=exc,
                latency_ms=(time.monotonic() - started) * 1000,
                terminal=terminal,
            )
        )
        provider_attempts.labels(provider=pid, outcome=outcome.value).inc()
        if self.health is not None:
            self.health.report_failure(pid, exc.code)
        return AttemptFailure(
            attempt=attempt,
            provider_id=pid,
            code=exc.code,
            retryable=exc.retryable,
            message=exc.message,
        )

    async def _write_cancelled(
        self, ctx: AuditContext, attempt: int, provider_id: str, started: float | None
    ) -> None:
        latency = (time.monotonic() - started) * 1000 if started is not None else 0.0
        await self.audit.record(
            ctx.record(
                AuditOutcome.CANCELLED,
                attempt=attempt,
                provider_id=provider_id,
                error=RequestCancelled(correlation_id=ctx.correlation_id),
                latency_ms=latency,
                terminal=True,
            )
        )
        provider_attempts.labels(provider=provider_id, outcome=AuditOutcome.CANCELLED.value).inc()
