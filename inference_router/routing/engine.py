"""
Routing policy engine: turns (request, classification, health, policy)
into an ordered list of candidate adapters, most preferred first.

Pipeline:
  1. policy eligibility   (provider kind, classification)
  2. capability filter    (required ⊆ declared, estimated tokens fit context)
  3. nothing left         -> NoProviderAvailable, no provider is contacted
  4. policy ceilings       (cost, latency); nothing left -> NoProviderAvailable
  5. health filter + policy ordering
  6. every remaining provider unhealthy -> least-recently-failed one alone

Ties are always broken by ProviderId so the same inputs produce the same
order on every run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone

from inference_router.contracts.models import (
    CapabilityBased,
    Capability,
    ClassificationBased,
    CloudFirst,
    CostOptimized,
    DataClassification,
    HealthStatus,
    LatencyOptimized,
    LocalOnly,
    ProviderId,
    ProviderKind,
    RoutingPolicy,
)
from inference_router.errors import NoProviderAvailable
from inference_router.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

Health = Mapping[ProviderId, HealthStatus]


def _by_priority(adapter: ProviderAdapter) -> tuple[int, str]:
    return adapter.priority, adapter.identify()


def _latency(adapter: ProviderAdapter, health: Health) -> float | None:
    status = health.get(adapter.identify())
    return status.latency_ms if status is not None else None


class RoutingPolicyEngine:
    """Orders the configured adapters into a candidate list for one request."""

    def __init__(self, adapters: Sequence[ProviderAdapter]) -> None:
        ids = [a.identify() for a in adapters]
        duplicates = {pid for pid in ids if ids.count(pid) > 1}
        if duplicates:
            raise ValueError(f"Duplicate provider ids: {sorted(duplicates)}")
        self._adapters = tuple(adapters)
        self._eligibility: dict[type, Callable[..., list[ProviderAdapter]]] = {
            CloudFirst: self._eligible_cloud_first,
            LocalOnly: self._eligible_local_only,
            ClassificationBased: self._eligible_classification,
            CapabilityBased: self._eligible_all,
            CostOptimized: self._eligible_all,
            LatencyOptimized: self._eligible_all,
        }
        self._ordering: dict[type, Callable[..., list[ProviderAdapter]]] = {
            CloudFirst: self._order_cloud_first,
            LocalOnly: self._order_priority,
            ClassificationBased: self._order_cloud_then_local,
            CapabilityBased: self._order_richness,
            CostOptimized: self._order_cost,
            LatencyOptimized: self._order_latency,
        }
        self._ceilings: dict[type, Callable[..., list[ProviderAdapter]]] = {
            CostOptimized: self._within_cost,
            LatencyOptimized: self._within_latency,
        }

    @property
    def adapters(self) -> tuple[ProviderAdapter, ...]:
        return self._adapters

    def select(
        self,
        *,
        policy: RoutingPolicy,
        required: frozenset[Capability],
        classification: DataClassification,
        health: Health,
        estimated_tokens: int = 0,
        correlation_id: str | None = None,
    ) -> list[ProviderAdapter]:
        if isinstance(policy, CapabilityBased):
            required = required | policy.required_capabilities

        eligible = self._eligibility[type(policy)](policy, classification)
        capable = [
            a for a in eligible
            if a.capabilities().satisfies(required)
            and a.capabilities().max_context_tokens >= estimated_tokens
        ]
        if not capable:
            logger.warning(
                "No provider satisfies policy %s with capabilities %s",
                policy.kind,
                sorted(c.value for c in required),
                extra={"_extra": {"correlation_id": correlation_id}},
            )
            raise NoProviderAvailable(
                f"No provider satisfies policy '{policy.kind}' "
                f"for capabilities {sorted(c.value for c in required)}",
                correlation_id=correlation_id,
            )

        ceiling = self._ceilings.get(type(policy))
        within = ceiling(policy, capable, health) if ceiling is not None else capable
        if not within:
            raise NoProviderAvailable(
                f"No provider within the limits of policy '{policy.kind}'",
                correlation_id=correlation_id,
            )

        healthy = [a for a in within if self._is_available(a, health)]
        if not healthy:
            fallback = self._least_recently_failed(within, health)
            logger.warning(
                "All eligible providers unhealthy; last-resort attempt on %s",
                fallback.identify(),
                extra={"_extra": {"correlation_id": correlation_id}},
            )
            return [fallback]

        return self._ordering[type(policy)](policy, healthy, health)

    # -- eligibility -------------------------------------------------------

    def _of_kind(self, kind: ProviderKind) -> list[ProviderAdapter]:
        return [a for a in self._adapters if a.kind == kind]

    def _eligible_all(self, policy: RoutingPolicy, classification: DataClassification) -> list[ProviderAdapter]:
        return list(self._adapters)

    def _eligible_local_only(self, policy: LocalOnly, classification: DataClassification) -> list[ProviderAdapter]:
        return self._of_kind(ProviderKind.LOCAL)

    def _eligible_cloud_first(self, policy: CloudFirst, classification: DataClassification) -> list[ProviderAdapter]:
        if policy.fallback_to_local:
            return list(self._adapters)
        return self._of_kind(ProviderKind.CLOUD)

    def _eligible_classification(
        self, policy: ClassificationBased, classification: DataClassification
    ) -> list[ProviderAdapter]:
        if classification in policy.local_classifications:
            return self._of_kind(ProviderKind.LOCAL)
        return list(self._adapters)

    # -- ordering ----------------------------------------------------------

    def _order_priority(self, policy: RoutingPolicy, adapters: list[ProviderAdapter], health: Health) -> list[ProviderAdapter]:
        return sorted(adapters, key=_by_priority)

    def _order_cloud_then_local(
        self, policy: RoutingPolicy, adapters: list[ProviderAdapter], health: Health
    ) -> list[ProviderAdapter]:
        cloud = sorted((a for a in adapters if a.kind == ProviderKind.CLOUD), key=_by_priority)
        local = sorted((a for a in adapters if a.kind == ProviderKind.LOCAL), key=_by_priority)
        return cloud + local

    def _order_cloud_first(
        self, policy: CloudFirst, adapters: list[ProviderAdapter], health: Health
    ) -> list[ProviderAdapter]:
        # Local adapters form the fallback tail; they are only eligible at
        # all when fallback_to_local is set.
        return self._order_cloud_then_local(policy, adapters, health)

    def _order_richness(
        self, policy: CapabilityBased, adapters: list[ProviderAdapter], health: Health
    ) -> list[ProviderAdapter]:
        return sorted(adapters, key=lambda a: (-a.capabilities().richness, a.identify()))

    def _order_cost(
        self, policy: CostOptimized, adapters: list[ProviderAdapter], health: Health
    ) -> list[ProviderAdapter]:
        return sorted(adapters, key=lambda a: (a.cost_per_1k_tokens, a.identify()))

    def _order_latency(
        self, policy: LatencyOptimized, adapters: list[ProviderAdapter], health: Health
    ) -> list[ProviderAdapter]:
        return sorted(adapters, key=lambda a: (_latency(a, health), a.identify()))

    # -- ceilings ----------------------------------------------------------

    def _within_cost(
        self, policy: CostOptimized, adapters: list[ProviderAdapter], health: Health
    ) -> list[ProviderAdapter]:
        return [a for a in adapters if a.cost_per_1k_tokens <= policy.max_cost_per_1k_tokens]

    def _within_latency(
        self, policy: LatencyOptimized, adapters: list[ProviderAdapter], health: Health
    ) -> list[ProviderAdapter]:
        # Unknown latency cannot be shown to be under the ceiling.
        return [
            a for a in adapters
            if _latency(a, health) is not None and _latency(a, health) <= policy.max_latency_ms
        ]

    # -- health ------------------------------------------------------------

    @staticmethod
    def _is_available(adapter: ProviderAdapter, health: Health) -> bool:
        status = health.get(adapter.identify())
        return status is None or status.available

    @staticmethod
    def _least_recently_failed(adapters: list[ProviderAdapter], health: Health) -> ProviderAdapter:
        def last_failure(a: ProviderAdapter) -> tuple[datetime, str]:
            status = health.get(a.identify())
            failed_at = status.last_failure_at if status and status.last_failure_at else _EPOCH
            return failed_at, a.identify()

        return min(adapters, key=last_failure)
