"""
Append-only storage backends for audit records.

Every backend exposes a single write operation, append(record), which
returns once the record is durably queued and raises otherwise. There is
no update or delete path.

  InMemoryAuditStorage     process-local list (tests, development)
  SqlAuditStorage          SQLAlchemy async engine, insert-only audit_log table
  RedisStreamAuditStorage  Redis stream via XADD
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from inference_router.contracts.models import AuditRecord


class AuditStorage(ABC):

    @abstractmethod
    async def append(self, record: AuditRecord) -> None:
        """Persist one record; raise on failure."""

    async def close(self) -> None:
        return None


class InMemoryAuditStorage(AuditStorage):

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []
        self._lock = asyncio.Lock()

    async def append(self, record: AuditRecord) -> None:
        async with self._lock:
            self._records.append(record)

    @property
    def records(self) -> tuple[AuditRecord, ...]:
        return tuple(self._records)

    def for_request(self, correlation_id: str) -> list[AuditRecord]:
        return [r for r in self._records if r.correlation_id == correlation_id]


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    correlation_id: Mapped[str] = mapped_column(String(64), index=True)
    operation: Mapped[str] = mapped_column(String(16))
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    request_digest: Mapped[str] = mapped_column(String(64))
    classification: Mapped[str | None] = mapped_column(String(32), nullable=True)
    provider_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    latency_ms: Mapped[float] = mapped_column(Float, default=0.0)
    terminal: Mapped[bool] = mapped_column(Boolean, default=False)
    security_flags: Mapped[str] = mapped_column(Text, default="[]")
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )


class SqlAuditStorage(AuditStorage):

    def __init__(self, database_url: str, **engine_kwargs) -> None:
        self._engine: AsyncEngine = create_async_engine(database_url, echo=False, **engine_kwargs)
        self._session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    async def initialize(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def append(self, record: AuditRecord) -> None:
        async with self._session_factory() as session:
            session.add(
                AuditLog(
                    record_id=record.record_id,
                    correlation_id=record.correlation_id,
                    operation=record.operation.value,
                    attempt=record.attempt,
                    request_digest=record.request_digest,
                    classification=record.classification.value if record.classification else None,
                    provider_id=record.provider_id,
                    outcome=record.outcome.value,
                    error_kind=record.error_kind,
                    error_code=record.error_code,
                    latency_ms=record.latency_ms,
                    terminal=record.terminal,
                    security_flags=json.dumps(list(record.security_flags)),
                    recorded_at=record.timestamp,
                )
            )
            await session.commit()

    async def close(self) -> None:
        await self._engine.dispose()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


class RedisStreamAuditStorage(AuditStorage):

    def __init__(self, redis_url: str, stream: str = "inference:audit", client=None) -> None:
        self._redis = client or aioredis.from_url(redis_url, decode_responses=True)
        self._stream = stream

    async def append(self, record: AuditRecord) -> None:
        await self._redis.xadd(self._stream, {"record": record.model_dump_json()})

    async def close(self) -> None:
        await self._redis.aclose()
