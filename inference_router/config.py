"""
Router configuration.

RouterConfig is built from a JSON document (ROUTER_CONFIG_PATH) or from
individual environment variables. Provider credentials are never part of
the configuration: a provider names a secret via credentials_ref and the
material is resolved at call time through a SecretProvider.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from inference_router.contracts.models import (
    CloudFirst,
    ProviderCapabilities,
    ProviderKind,
    RoutingPolicy,
)
from inference_router.execution.retry import RetrySettings
from inference_router.health.monitor import HealthSettings
from inference_router.security.signatures import DEFAULT_SIGNATURE_SET

ProviderType = Literal[
    "mock",
    "openai",
    "groq",
    "gemini",
    "openrouter",
    "local",
    "anthropic",
    "ollama",
]

_policy_adapter: TypeAdapter[RoutingPolicy] = TypeAdapter(RoutingPolicy)


class ProviderSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    type: ProviderType
    kind: ProviderKind | None = None
    enabled: bool = True
    credentials_ref: str | None = None
    base_url: str | None = None
    model: str | None = None
    embedding_model: str | None = None
    priority: int = 100
    cost_per_1k_tokens: float = Field(default=0.0, ge=0.0)
    timeout_s: float = Field(default=60.0, gt=0.0)
    capabilities: ProviderCapabilities | None = None


class ScannerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    signature_set_version: str = DEFAULT_SIGNATURE_SET
    mode: Literal["enforce", "monitor"] = "enforce"


class ClassifierSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    remote_url: str | None = None
    remote_timeout_s: float = Field(default=2.0, gt=0.0)


def _default_providers() -> list[ProviderSettings]:
    return [ProviderSettings(id="mock", type="mock", kind=ProviderKind.LOCAL)]


class RouterConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    policy: RoutingPolicy = Field(default_factory=CloudFirst)
    providers: list[ProviderSettings] = Field(default_factory=_default_providers)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    scanner: ScannerSettings = Field(default_factory=ScannerSettings)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)

    @model_validator(mode="after")
    def _unique_provider_ids(self) -> RouterConfig:
        ids = [p.id for p in self.providers]
        duplicates = sorted({pid for pid in ids if ids.count(pid) > 1})
        if duplicates:
            raise ValueError(f"Duplicate provider ids: {duplicates}")
        return self

    @property
    def enabled_providers(self) -> list[ProviderSettings]:
        return [p for p in self.providers if p.enabled]

    @classmethod
    def from_file(cls, path: str | Path) -> RouterConfig:
        return cls.model_validate_json(Path(path).read_text())

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RouterConfig:
        env = os.environ if environ is None else environ

        path = env.get("ROUTER_CONFIG_PATH")
        if path:
            return cls.from_file(path)

        data: dict = {
            "policy": _policy_from_env(env),
            "retry": RetrySettings(
                max_attempts=int(env.get("ROUTER_MAX_ATTEMPTS", "3")),
                attempts_per_candidate=int(env.get("ROUTER_ATTEMPTS_PER_CANDIDATE", "1")),
                backoff_base_s=float(env.get("ROUTER_BACKOFF_BASE_S", "0.2")),
                backoff_max_s=float(env.get("ROUTER_BACKOFF_MAX_S", "5.0")),
            ),
            "health": HealthSettings(
                probe_interval_s=float(env.get("HEALTH_PROBE_INTERVAL_S", "30")),
                failure_threshold=int(env.get("HEALTH_FAILURE_THRESHOLD", "3")),
                cooldown_s=float(env.get("HEALTH_COOLDOWN_S", "60")),
            ),
            "scanner": {
                "signature_set_version": env.get("SCANNER_SIGNATURE_VERSION", DEFAULT_SIGNATURE_SET),
                "mode": env.get("SCANNER_MODE", "enforce"),
            },
            "classifier": {"remote_url": env.get("CLASSIFIER_REMOTE_URL") or None},
        }
        providers = env.get("ROUTER_PROVIDERS")
        if providers:
            data["providers"] = json.loads(providers)
        return cls.model_validate(data)


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _policy_from_env(env: Mapping[str, str]) -> RoutingPolicy:
    kind = env.get("ROUTER_POLICY", "cloud_first").lower()
    raw: dict = {"kind": kind}
    if kind == "cloud_first":
        raw["fallback_to_local"] = env.get("ROUTER_FALLBACK_TO_LOCAL", "true").lower() in ("1", "true", "yes")
    elif kind == "classification_based" and env.get("ROUTER_LOCAL_CLASSIFICATIONS"):
        raw["local_classifications"] = _csv(env["ROUTER_LOCAL_CLASSIFICATIONS"])
    elif kind == "capability_based":
        raw["required_capabilities"] = _csv(env.get("ROUTER_REQUIRED_CAPABILITIES", ""))
    elif kind == "cost_optimized":
        raw["max_cost_per_1k_tokens"] = float(env["ROUTER_MAX_COST_PER_1K"])
    elif kind == "latency_optimized":
        raw["max_latency_ms"] = float(env["ROUTER_MAX_LATENCY_MS"])
    return _policy_adapter.validate_python(raw)
