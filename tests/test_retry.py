"""Tests for the failover executor."""

from __future__ import annotations

import asyncio

import pytest

from inference_router.audit.sink import AuditContext, AuditSink
from inference_router.audit.storage import AuditStorage
from inference_router.cancellation import CancellationToken
from inference_router.contracts.models import (
    AuditOutcome,
    CompletionChunk,
    FinishReason,
    Operation,
    ProviderKind,
)
from inference_router.errors import (
    AuditError,
    AuthenticationFailed,
    ExhaustedError,
    ProviderError,
    ProviderTimeout,
    RequestCancelled,
)
from inference_router.execution.retry import RetryExecutor, RetrySettings
from inference_router.health.monitor import HealthMonitor
from inference_router.providers.mock_provider import MockProvider


class FailingStorage(AuditStorage):
    async def append(self, record) -> None:
        raise ConnectionError("audit backend unreachable")


@pytest.fixture
def ctx():
    return AuditContext(
        correlation_id="cid-retry",
        operation=Operation.COMPLETE,
        request_digest="d" * 64,
    )


@pytest.fixture
def stream_ctx():
    return AuditContext(
        correlation_id="cid-stream",
        operation=Operation.STREAM,
        request_digest="s" * 64,
    )


@pytest.fixture
def executor(audit_sink, fast_retry):
    return RetryExecutor(audit_sink, settings=fast_retry)


def _complete(request):
    return lambda adapter: adapter.complete(request)


def _outcomes(storage):
    return [(r.provider_id, r.outcome, r.terminal) for r in storage.records]


class TestSettings:

    def test_backoff_schedule(self):
        settings = RetrySettings()
        assert settings.backoff_for(1) == 0.0
        assert settings.backoff_for(2) == pytest.approx(0.2)
        assert settings.backoff_for(3) == pytest.approx(0.4)
        assert settings.backoff_for(10) == pytest.approx(5.0)

    def test_retry_after_respected_and_capped(self):
        settings = RetrySettings()
        assert settings.backoff_for(2, retry_after_s=3.0) == pytest.approx(3.0)
        assert settings.backoff_for(2, retry_after_s=30.0) == pytest.approx(5.0)

    def test_invalid_settings(self):
        with pytest.raises(ValueError):
            RetrySettings(max_attempts=0)
        with pytest.raises(ValueError):
            RetrySettings(attempts_per_candidate=0)

    def test_schedule_expands_and_truncates(self, audit_sink):
        a, b = MockProvider("a"), MockProvider("b")
        executor = RetryExecutor(audit_sink, settings=RetrySettings(max_attempts=3, attempts_per_candidate=2))
        assert [x.identify() for x in executor.schedule([a, b])] == ["a", "a", "b"]


class TestExecute:

    @pytest.mark.asyncio
    async def test_first_candidate_succeeds(self, executor, storage, ctx, cloud, local, make_request):
        response, adapter = await executor.execute([cloud, local], _complete(make_request()), ctx)
        assert adapter is cloud
        assert response.text.startswith("[MOCK]")
        assert local.calls == []
        assert _outcomes(storage) == [("cloud-a", AuditOutcome.SUCCESS, True)]

    @pytest.mark.asyncio
    async def test_failover_on_retryable_error(self, executor, storage, ctx, cloud, local, make_request):
        cloud.script_failures(ProviderError("upstream 503", code="http_503"))
        _, adapter = await executor.execute([cloud, local], _complete(make_request()), ctx)
        assert adapter is local
        assert _outcomes(storage) == [
            ("cloud-a", AuditOutcome.FAILED, False),
            ("local-a", AuditOutcome.SUCCESS, True),
        ]
        assert [r.attempt for r in storage.records] == [1, 2]
        assert storage.records[0].error_code == "http_503"

    @pytest.mark.asyncio
    async def test_non_retryable_stops(self, executor, storage, ctx, cloud, local, make_request):
        cloud.script_failures(AuthenticationFailed("bad key"))
        with pytest.raises(ExhaustedError) as excinfo:
            await executor.execute([cloud, local], _complete(make_request()), ctx)
        assert local.calls == []
        assert len(excinfo.value.failures) == 1
        assert _outcomes(storage) == [("cloud-a", AuditOutcome.FAILED, True)]

    @pytest.mark.asyncio
    async def test_attempts_bounded(self, storage, audit_sink, ctx, make_request):
        adapters = [MockProvider(f"p{i}", failures=[ProviderError("down")]) for i in range(5)]
        executor = RetryExecutor(audit_sink, settings=RetrySettings(max_attempts=3, backoff_base_s=0.0))
        with pytest.raises(ExhaustedError) as excinfo:
            await executor.execute(adapters, _complete(make_request()), ctx)
        assert sum(len(a.calls) for a in adapters) == 3
        assert [f.attempt for f in excinfo.value.failures] == [1, 2, 3]
        assert [r.terminal for r in storage.records] == [False, False, True]

    @pytest.mark.asyncio
    async def test_attempts_per_candidate(self, storage, audit_sink, ctx, cloud, local, make_request):
        cloud.script_failures(ProviderTimeout(), ProviderTimeout())
        settings = RetrySettings(max_attempts=3, attempts_per_candidate=2, backoff_base_s=0.0)
        executor = RetryExecutor(audit_sink, settings=settings)
        _, adapter = await executor.execute([cloud, local], _complete(make_request()), ctx)
        assert adapter is local
        assert [r.outcome for r in storage.records] == [
            AuditOutcome.TIMEOUT,
            AuditOutcome.TIMEOUT,
            AuditOutcome.SUCCESS,
        ]
        assert len(cloud.calls) == 2

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self, audit_sink, storage, ctx, local, make_request):
        slow = MockProvider("slow", kind=ProviderKind.CLOUD, delay_s=1.0)
        executor = RetryExecutor(
            audit_sink, settings=RetrySettings(attempt_timeout_s=0.02, backoff_base_s=0.0)
        )
        _, adapter = await executor.execute([slow, local], _complete(make_request()), ctx)
        assert adapter is local
        assert storage.records[0].outcome is AuditOutcome.TIMEOUT
        assert storage.records[0].error_code == "timeout"

    @pytest.mark.asyncio
    async def test_untranslated_exception_wrapped(self, executor, storage, ctx, cloud, local, make_request):
        cloud.script_failures(RuntimeError("adapter bug"))
        _, adapter = await executor.execute([cloud, local], _complete(make_request()), ctx)
        assert adapter is local
        assert storage.records[0].error_code == "adapter_error"

    @pytest.mark.asyncio
    async def test_outcomes_reported_to_health(self, audit_sink, ctx, cloud, local, clock, make_request):
        monitor = HealthMonitor([cloud, local], clock=clock)
        executor = RetryExecutor(audit_sink, monitor, RetrySettings(backoff_base_s=0.0))
        cloud.script_failures(ProviderError("down"))
        await executor.execute([cloud, local], _complete(make_request()), ctx)
        assert monitor.status("cloud-a").consecutive_failures == 1
        assert monitor.status("local-a").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_audit_failure_fails_request(self, ctx, cloud, make_request):
        executor = RetryExecutor(AuditSink(FailingStorage()), settings=RetrySettings(backoff_base_s=0.0))
        with pytest.raises(AuditError):
            await executor.execute([cloud], _complete(make_request()), ctx)


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_during_call(self, executor, storage, ctx, local, make_request):
        slow = MockProvider("slow", delay_s=1.0)
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)
        with pytest.raises(RequestCancelled):
            await executor.execute([slow, local], _complete(make_request()), ctx, cancel=token)
        assert local.calls == []
        assert _outcomes(storage) == [("slow", AuditOutcome.CANCELLED, True)]
        assert storage.records[0].attempt == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, executor, storage, ctx, cloud, make_request):
        token = CancellationToken()
        token.cancel("client went away")
        with pytest.raises(RequestCancelled):
            await executor.execute([cloud], _complete(make_request()), ctx, cancel=token)
        assert cloud.calls == []
        assert storage.records[0].outcome is AuditOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, audit_sink, storage, ctx, cloud, local, make_request):
        cloud.script_failures(ProviderError("down"))
        executor = RetryExecutor(audit_sink, settings=RetrySettings(backoff_base_s=5.0))
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)
        with pytest.raises(RequestCancelled):
            await executor.execute([cloud, local], _complete(make_request()), ctx, cancel=token)
        assert local.calls == []
        assert [r.outcome for r in storage.records] == [AuditOutcome.FAILED, AuditOutcome.CANCELLED]
        assert [r.terminal for r in storage.records] == [False, True]

    @pytest.mark.asyncio
    async def test_cancel_wins_over_ready_result(self, executor, storage, ctx, make_request):
        instant = MockProvider("instant")
        token = CancellationToken()
        asyncio.get_running_loop().call_soon(token.cancel)
        with pytest.raises(RequestCancelled):
            await executor.execute([instant], _complete(make_request()), ctx, cancel=token)
        assert _outcomes(storage) == [("instant", AuditOutcome.CANCELLED, True)]


async def _chunks_then_error(error: ProviderError):
    yield CompletionChunk(index=0, delta="partial", provider_id="cloud-a")
    raise error


class TestStream:

    @pytest.mark.asyncio
    async def test_stream_success_audited_before_final_chunk(
        self, executor, storage, stream_ctx, local, make_request
    ):
        request = make_request(stream=True)
        chunks = []
        async for chunk in executor.stream([local], lambda a: a.stream(request), stream_ctx):
            if chunk.is_final:
                assert _outcomes(storage) == [("local-a", AuditOutcome.SUCCESS, True)]
            chunks.append(chunk)
        assert chunks[-1].finish_reason is FinishReason.STOP
        assert [c.index for c in chunks] == list(range(len(chunks)))
        assert local.open_streams == 0

    @pytest.mark.asyncio
    async def test_failover_before_first_chunk(self, executor, storage, stream_ctx, cloud, local, make_request):
        request = make_request(stream=True)
        cloud.script_failures(ProviderError("refused", code="http_503"))
        chunks = [c async for c in executor.stream([cloud, local], lambda a: a.stream(request), stream_ctx)]
        assert {c.provider_id for c in chunks} == {"local-a"}
        assert _outcomes(storage) == [
            ("cloud-a", AuditOutcome.FAILED, False),
            ("local-a", AuditOutcome.SUCCESS, True),
        ]

    @pytest.mark.asyncio
    async def test_error_after_first_chunk_is_raised(self, executor, storage, stream_ctx, cloud, local):
        error = ProviderError("connection reset", code="stream_reset")
        received = []
        with pytest.raises(ProviderError) as excinfo:
            async for chunk in executor.stream(
                [cloud, local], lambda a: _chunks_then_error(error), stream_ctx
            ):
                received.append(chunk)
        assert excinfo.value is error
        assert [c.delta for c in received] == ["partial"]
        assert _outcomes(storage) == [("cloud-a", AuditOutcome.FAILED, True)]

    @pytest.mark.asyncio
    async def test_all_candidates_fail_before_first_chunk(self, executor, stream_ctx, cloud, local, make_request):
        request = make_request(stream=True)
        cloud.script_failures(ProviderError("down"))
        local.script_failures(ProviderError("down"))
        with pytest.raises(ExhaustedError):
            async for _ in executor.stream([cloud, local], lambda a: a.stream(request), stream_ctx):
                pass

    @pytest.mark.asyncio
    async def test_consumer_close_cancels_stream(self, executor, storage, stream_ctx, make_request):
        provider = MockProvider("local-a", chunk_delay_s=0.01)
        request = make_request(stream=True)
        stream = executor.stream([provider], lambda a: a.stream(request), stream_ctx)
        first = await stream.__anext__()
        assert first.index == 0
        await stream.aclose()
        assert provider.open_streams == 0
        assert _outcomes(storage) == [("local-a", AuditOutcome.CANCELLED, True)]

    @pytest.mark.asyncio
    async def test_token_cancel_mid_stream(self, executor, storage, stream_ctx, make_request):
        provider = MockProvider("local-a", chunk_delay_s=0.05)
        request = make_request(stream=True)
        token = CancellationToken()
        stream = executor.stream([provider], lambda a: a.stream(request), stream_ctx, cancel=token)
        await stream.__anext__()
        token.cancel()
        with pytest.raises(RequestCancelled):
            await stream.__anext__()
        assert provider.open_streams == 0
        assert storage.records[-1].outcome is AuditOutcome.CANCELLED
        assert storage.records[-1].terminal

    @pytest.mark.asyncio
    async def test_token_cancel_fast_stream(self, executor, storage, stream_ctx, make_request):
        provider = MockProvider("local-a")
        request = make_request(stream=True)
        token = CancellationToken()
        stream = executor.stream([provider], lambda a: a.stream(request), stream_ctx, cancel=token)
        await stream.__anext__()
        token.cancel()
        with pytest.raises(RequestCancelled):
            await stream.__anext__()
        assert provider.open_streams == 0
        assert _outcomes(storage) == [("local-a", AuditOutcome.CANCELLED, True)]

    @pytest.mark.asyncio
    async def test_attempt_timeout_bounds_each_chunk(self, audit_sink, storage, stream_ctx, make_request):
        provider = MockProvider("local-a", chunk_delay_s=0.03)
        executor = RetryExecutor(audit_sink, settings=RetrySettings(attempt_timeout_s=0.1))
        request = make_request(stream=True)
        chunks = [c async for c in executor.stream([provider], lambda a: a.stream(request), stream_ctx)]
        assert len(chunks) * 0.03 > 0.1
        assert _outcomes(storage) == [("local-a", AuditOutcome.SUCCESS, True)]
