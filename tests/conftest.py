from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from inference_router.audit.sink import AuditSink
from inference_router.audit.storage import InMemoryAuditStorage
from inference_router.contracts.models import (
    CompletionRequest,
    Message,
    ProviderCapabilities,
    ProviderKind,
    Role,
)
from inference_router.execution.retry import RetrySettings
from inference_router.health.monitor import HealthMonitor, HealthSettings
from inference_router.providers.mock_provider import MockProvider
from inference_router.router import InferenceRouter

VISION_CAPABILITIES = ProviderCapabilities(
    max_context_tokens=128000,
    streaming=True,
    embeddings=False,
    vision=True,
    function_calling=True,
)

TEXT_ONLY_CAPABILITIES = ProviderCapabilities(
    max_context_tokens=8192,
    streaming=True,
    embeddings=False,
    vision=False,
    function_calling=False,
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def make_request():
    def _make(text: str = "Summarise the quarterly roadmap in three bullet points.", **kwargs):
        return CompletionRequest(messages=(Message(role=Role.USER, content=text),), **kwargs)

    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_sink(storage):
    return AuditSink(storage)


@pytest.fixture
def cloud():
    return MockProvider("cloud-a", kind=ProviderKind.CLOUD, priority=10)


@pytest.fixture
def local():
    return MockProvider("local-a", kind=ProviderKind.LOCAL, priority=10)


@pytest.fixture
def fast_retry():
    return RetrySettings(max_attempts=3, backoff_base_s=0.0)


@pytest.fixture
def make_router(audit_sink, clock, fast_retry):
    """Build an InferenceRouter over the given adapters with test-friendly defaults."""

    def _make(adapters, policy=None, *, retry=None, health_settings=None, **kwargs):
        monitor = HealthMonitor(adapters, health_settings or HealthSettings(), clock=clock)
        return InferenceRouter(
            adapters,
            policy=policy,
            audit_sink=kwargs.pop("audit_sink", audit_sink),
            health_monitor=monitor,
            retry_settings=retry or fast_retry,
            **kwargs,
        )

    return _make
