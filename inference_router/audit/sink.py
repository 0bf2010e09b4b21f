"""Synchronous-with-request audit writer."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from inference_router.audit.storage import AuditStorage, InMemoryAuditStorage
from inference_router.contracts.models import (
    AuditOutcome,
    AuditRecord,
    DataClassification,
    Operation,
    ProviderId,
)
from inference_router.errors import AuditError, InferenceError
from inference_router.observability.metrics import audit_records

logger = logging.getLogger(__name__)


class AuditSink:
    """
    Writes AuditRecords to an append-only storage backend.

    record() returns only after the backend acknowledged the write. A
    failed write raises AuditError; the router treats that as fatal for the
    request, so no success is ever reported without its audit entry.
    """

    def __init__(self, storage: AuditStorage | None = None) -> None:
        self.storage = storage or InMemoryAuditStorage()

    async def record(self, record: AuditRecord) -> None:
        try:
            await self.storage.append(record)
        except Exception as exc:
            logger.exception(
                "Audit write failed",
                extra={"_extra": {"correlation_id": record.correlation_id, "attempt": record.attempt}},
            )
            raise AuditError(
                f"Audit storage rejected record {record.record_id}",
                correlation_id=record.correlation_id,
            ) from exc

        audit_records.labels(outcome=record.outcome.value).inc()
        logger.info(
            "audit %s attempt=%d outcome=%s",
            record.operation.value,
            record.attempt,
            record.outcome.value,
            extra={
                "_extra": {
                    "correlation_id": record.correlation_id,
                    "provider": record.provider_id,
                    "outcome": record.outcome.value,
                    "terminal": record.terminal,
                    "latency_ms": round(record.latency_ms, 2),
                }
            },
        )

    async def close(self) -> None:
        await self.storage.close()


@dataclass(frozen=True)
class AuditContext:
    """Per-request fields shared by every audit record of that request."""

    correlation_id: str
    operation: Operation
    request_digest: str
    classification: DataClassification | None = None
    security_flags: tuple[str, ...] = ()

    def record(
        self,
        outcome: AuditOutcome,
        *,
        attempt: int = 0,
        provider_id: ProviderId | None = None,
        error: InferenceError | None = None,
        latency_ms: float = 0.0,
        terminal: bool = False,
    ) -> AuditRecord:
        return AuditRecord(
            correlation_id=self.correlation_id,
            operation=self.operation,
            attempt=attempt,
            request_digest=self.request_digest,
            classification=self.classification,
            provider_id=provider_id,
            outcome=outcome,
            error_kind=error.kind.value if error is not None else None,
            error_code=getattr(error, "code", None),
            latency_ms=latency_ms,
            terminal=terminal,
            security_flags=self.security_flags,
        )
