"""Tests for the error taxonomy and its public rendering."""

from __future__ import annotations

import json

from inference_router.errors import (
    AttemptFailure,
    AuthenticationFailed,
    ErrorKind,
    ExhaustedError,
    NoProviderAvailable,
    ProviderError,
    ProviderTimeout,
    RateLimited,
    SecurityError,
    ValidationError,
)


class TestProviderErrors:

    def test_defaults_per_subclass(self):
        assert ProviderTimeout().code == "timeout"
        assert ProviderTimeout().retryable is True
        assert RateLimited(retry_after_s=2.0).retry_after_s == 2.0
        assert AuthenticationFailed().retryable is False
        assert ProviderError().retryable is True

    def test_explicit_flags_override_defaults(self):
        err = ProviderError("bad request", code="http_400", retryable=False, status_code=400)
        assert err.code == "http_400"
        assert err.retryable is False
        assert err.status_code == 400

    def test_repr_names_provider(self):
        assert "cloud-a" in repr(ProviderError(provider_id="cloud-a"))


class TestPublicRendering:

    def test_provider_id_not_exposed(self):
        err = ProviderError("cloud-secret-east returned 500", provider_id="cloud-secret-east")
        body = json.dumps(err.to_public())
        assert "cloud-secret-east" not in body
        assert err.to_public()["error"] == "provider"

    def test_exhausted_hides_candidates(self):
        failures = [
            AttemptFailure(1, "cloud-a", "timeout", True, "slow"),
            AttemptFailure(2, "local-a", "http_500", True, "boom"),
        ]
        err = ExhaustedError(failures, correlation_id="cid-1")
        public = err.to_public()
        assert public["attempts"] == 2
        assert public["correlation_id"] == "cid-1"
        assert "cloud-a" not in json.dumps(public)
        assert "cloud-a" in str(err)

    def test_validation_message_is_public(self):
        err = ValidationError("messages: too short")
        assert err.to_public()["message"] == "messages: too short"
        assert err.kind is ErrorKind.VALIDATION

    def test_security_error_keeps_signatures_private(self):
        err = SecurityError("blocked", signatures=("ignore_previous_instructions",))
        assert err.signatures == ("ignore_previous_instructions",)
        assert "ignore_previous_instructions" not in json.dumps(err.to_public())

    def test_no_provider_kind(self):
        assert NoProviderAvailable().to_public()["error"] == "no_provider"
