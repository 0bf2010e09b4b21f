"""
Provider health tracking.

The monitor is the only writer of the HealthStatus table. Two inputs feed
it: a background probe loop calling health_check() on every adapter, and
request outcomes reported by the retry executor. Readers (routing engine,
public get_health) receive immutable snapshots.

Transitions per provider:
  available --(failure_threshold consecutive failures)--> unavailable
  unavailable --(one successful probe | cooldown_s elapsed)--> available
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Mapping

from inference_router.contracts.models import HealthStatus, ProviderId
from inference_router.observability.metrics import provider_available
from inference_router.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HealthSettings:
    probe_interval_s: float = 30.0
    probe_timeout_s: float = 5.0
    failure_threshold: int = 3
    cooldown_s: float = 60.0
    latency_alpha: float = 0.3


class HealthMonitor:
    """Owns the provider health table; probes in the background and records call outcomes."""

    def __init__(
        self,
        adapters: Sequence[ProviderAdapter],
        settings: HealthSettings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._adapters = {a.identify(): a for a in adapters}
        self.settings = settings or HealthSettings()
        self._clock = clock
        self._lock = threading.Lock()
        self._table: dict[ProviderId, HealthStatus] = {
            pid: HealthStatus(provider_id=pid) for pid in self._adapters
        }
        self._task: asyncio.Task | None = None
        for pid in self._table:
            provider_available.labels(provider=pid).set(1)

    # -- readers -----------------------------------------------------------

    def snapshot(self) -> Mapping[ProviderId, HealthStatus]:
        with self._lock:
            self._expire_cooldowns()
            return MappingProxyType(dict(self._table))

    def status(self, provider_id: ProviderId) -> HealthStatus:
        return self.snapshot()[provider_id]

    # -- background loop ---------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        await self.probe_all()
        self._task = asyncio.create_task(self._run(), name="health-monitor")
        logger.info(
            "Health monitor started (%d providers, interval=%.1fs)",
            len(self._adapters),
            self.settings.probe_interval_s,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Health monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.settings.probe_interval_s)
            try:
                await self.probe_all()
            except Exception:
                logger.exception("Health probe cycle failed")

    async def probe_all(self) -> None:
        await asyncio.gather(*(self.probe(pid) for pid in self._adapters))

    async def probe(self, provider_id: ProviderId) -> HealthStatus:
        adapter = self._adapters[provider_id]
        try:
            result = await asyncio.wait_for(
                adapter.health_check(), timeout=self.settings.probe_timeout_s
            )
        except asyncio.TimeoutError:
            result = HealthStatus(provider_id=provider_id, available=False, last_error="probe timeout")
        except Exception as exc:
            logger.warning("Health check raised for %s: %s", provider_id, exc)
            result = HealthStatus(provider_id=provider_id, available=False, last_error=type(exc).__name__)

        if result.available:
            return self._record_success(provider_id, latency_ms=result.latency_ms, probed=True)
        return self._record_failure(provider_id, result.last_error or "probe failed", probed=True)

    # -- request feedback --------------------------------------------------

    def report_success(self, provider_id: ProviderId) -> None:
        """A request succeeded; clears a failure streak if there is one."""
        if provider_id not in self._adapters:
            return
        with self._lock:
            current = self._table[provider_id]
            if current.available and current.consecutive_failures == 0:
                return
        self._record_success(provider_id, latency_ms=None, probed=False)

    def report_failure(self, provider_id: ProviderId, error: str) -> None:
        if provider_id in self._adapters:
            self._record_failure(provider_id, error, probed=False)

    # -- single writer -----------------------------------------------------

    def _record_success(
        self, provider_id: ProviderId, *, latency_ms: float | None, probed: bool
    ) -> HealthStatus:
        now = self._clock()
        with self._lock:
            current = self._table[provider_id]
            latency = current.latency_ms
            if latency_ms is not None:
                alpha = self.settings.latency_alpha
                latency = latency_ms if latency is None else alpha * latency_ms + (1 - alpha) * latency
            updated = current.model_copy(
                update={
                    "available": True,
                    "latency_ms": latency,
                    "last_checked_at": now if probed else current.last_checked_at,
                    "consecutive_failures": 0,
                    "marked_down_at": None,
                    "last_error": None,
                }
            )
            self._table[provider_id] = updated
        if not current.available:
            logger.info("Provider %s is available again", provider_id)
        provider_available.labels(provider=provider_id).set(1)
        return updated

    def _record_failure(self, provider_id: ProviderId, error: str, *, probed: bool) -> HealthStatus:
        now = self._clock()
        with self._lock:
            current = self._table[provider_id]
            failures = current.consecutive_failures + 1
            tripped = current.available and failures >= self.settings.failure_threshold
            available = current.available and not tripped
            updated = current.model_copy(
                update={
                    "available": available,
                    "last_checked_at": now if probed else current.last_checked_at,
                    "consecutive_failures": failures,
                    "last_failure_at": now,
                    "marked_down_at": now if tripped else current.marked_down_at,
                    "last_error": error,
                }
            )
            self._table[provider_id] = updated
        if tripped:
            logger.warning(
                "Provider %s marked unavailable after %d consecutive failures",
                provider_id,
                failures,
            )
        provider_available.labels(provider=provider_id).set(1 if available else 0)
        return updated

    def _expire_cooldowns(self) -> None:
        """Re-admit providers whose cooldown elapsed. Caller holds the lock."""
        now = self._clock()
        window = timedelta(seconds=self.settings.cooldown_s)
        for pid, status in self._table.items():
            if status.available or status.marked_down_at is None:
                continue
            if now - status.marked_down_at >= window:
                self._table[pid] = status.model_copy(
                    update={"available": True, "marked_down_at": None}
                )
                provider_available.labels(provider=pid).set(1)
                logger.info("Provider %s cooldown elapsed; eligible again", pid)
