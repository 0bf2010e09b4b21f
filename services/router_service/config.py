from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class RouterServiceConfig:
    log_level: str
    audit_backend: str
    database_url: str | None
    redis_url: str | None
    audit_stream: str
    secrets_prefix: str

    @classmethod
    def from_env(cls) -> RouterServiceConfig:
        backend = os.environ.get("AUDIT_BACKEND", "memory").lower()
        if backend not in ("memory", "sql", "redis"):
            raise ValueError(f"AUDIT_BACKEND must be memory, sql or redis (got '{backend}')")
        if backend == "sql" and not os.environ.get("DATABASE_URL"):
            raise ValueError("AUDIT_BACKEND=sql requires DATABASE_URL")
        if backend == "redis" and not os.environ.get("REDIS_URL"):
            raise ValueError("AUDIT_BACKEND=redis requires REDIS_URL")
        return cls(
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            audit_backend=backend,
            database_url=os.environ.get("DATABASE_URL"),
            redis_url=os.environ.get("REDIS_URL"),
            audit_stream=os.environ.get("AUDIT_STREAM", "inference:audit"),
            secrets_prefix=os.environ.get("SECRETS_ENV_PREFIX", ""),
        )
