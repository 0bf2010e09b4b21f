"""
Error taxonomy for the inference router.

Every error a caller can observe derives from InferenceError. The
``to_public()`` rendering is what leaves the process (HTTP bodies, client
logs): it names the error kind and a safe message, never provider ids,
candidate order or credential material.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    SECURITY = "security"
    NO_PROVIDER = "no_provider"
    PROVIDER = "provider"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    AUDIT = "audit"


class InferenceError(Exception):
    """Base class for all router failures."""

    kind: ErrorKind = ErrorKind.PROVIDER
    public_message = "The inference request failed."

    def __init__(self, message: str = "", *, correlation_id: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.correlation_id = correlation_id

    def to_public(self) -> dict[str, Any]:
        return {
            "error": self.kind.value,
            "message": self.public_message,
            "correlation_id": self.correlation_id,
        }


class ValidationError(InferenceError):
    """Malformed request; raised before any provider is contacted."""

    kind = ErrorKind.VALIDATION
    public_message = "The request is invalid."

    def to_public(self) -> dict[str, Any]:
        body = super().to_public()
        body["message"] = self.message
        return body


class SecurityError(InferenceError):
    """Request rejected by the injection scanner or a classification rule."""

    kind = ErrorKind.SECURITY
    public_message = "The request was rejected by security policy."

    def __init__(
        self,
        message: str = "",
        *,
        signatures: tuple[str, ...] = (),
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(message, correlation_id=correlation_id)
        self.signatures = signatures


class NoProviderAvailable(InferenceError):
    """No configured provider satisfies the policy and capability constraints."""

    kind = ErrorKind.NO_PROVIDER
    public_message = "No provider is available to serve this request."


class ProviderError(InferenceError):
    """
    Adapter-level failure translated into the shared taxonomy.

    retryable drives failover in the RetryExecutor; code is the
    provider-reported (or adapter-assigned) error code.
    """

    kind = ErrorKind.PROVIDER
    default_code = "provider_error"
    default_retryable = True

    def __init__(
        self,
        message: str = "",
        *,
        provider_id: str = "",
        code: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(message, correlation_id=correlation_id)
        self.provider_id = provider_id
        self.code = code or self.default_code
        self.retryable = self.default_retryable if retryable is None else retryable
        self.status_code = status_code

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(provider_id={self.provider_id!r}, "
            f"code={self.code!r}, retryable={self.retryable})"
        )


class ProviderTimeout(ProviderError):
    default_code = "timeout"
    default_retryable = True


class RateLimited(ProviderError):
    default_code = "rate_limited"
    default_retryable = True

    def __init__(self, message: str = "", *, retry_after_s: float | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_s = retry_after_s


class AuthenticationFailed(ProviderError):
    default_code = "authentication_failed"
    default_retryable = False


@dataclass(frozen=True)
class AttemptFailure:
    attempt: int
    provider_id: str
    code: str
    retryable: bool
    message: str


class ExhaustedError(InferenceError):
    """All attempts failed, or a non-retryable failure stopped the sequence."""

    kind = ErrorKind.EXHAUSTED
    public_message = "No provider could serve this request."

    def __init__(
        self,
        failures: list[AttemptFailure],
        *,
        correlation_id: str | None = None,
    ) -> None:
        summary = "; ".join(
            f"#{f.attempt} {f.provider_id}: {f.code}" for f in failures
        )
        super().__init__(
            f"{len(failures)} attempt(s) failed: {summary}",
            correlation_id=correlation_id,
        )
        self.failures = tuple(failures)

    def to_public(self) -> dict[str, Any]:
        body = super().to_public()
        body["attempts"] = len(self.failures)
        return body


class RequestCancelled(InferenceError):
    kind = ErrorKind.CANCELLED
    public_message = "The request was cancelled."


class AuditError(InferenceError):
    """The audit record could not be persisted; the request must not succeed."""

    kind = ErrorKind.AUDIT
    public_message = "The request could not be recorded."
