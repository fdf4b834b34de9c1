"""
Error taxonomy for the attestation client.

Every failure the client can surface is one of the classes below. Lower
layers translate library exceptions (httpx, web3) into this taxonomy with
``raise ... from exc`` so the retry policy can tell transient failures
from fatal ones without string matching.

    ValidationError          malformed input, never retried
    ConfigError              bad configuration, never retried
    UpstreamError            verifier unreachable or non-success
    InsufficientFundsError   balance cannot cover fee + gas
    RejectedError            hub contract reverted
    ConfirmationTimeoutError submission not confirmed before the deadline
    TransportError           DA-layer connection/timeout/5xx
    RateLimitedError         DA-layer HTTP 429
    NotFoundError            retrieval exhausted without a proof
    SyntheticProofError      synthetic proof reached a production consumer
    WorkflowCancelledError   cooperative abort via CancelToken
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Machine-readable error categories."""

    VALIDATION = "VALIDATION"
    CONFIG = "CONFIG"
    UPSTREAM = "UPSTREAM"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    REJECTED = "REJECTED"
    TIMEOUT = "TIMEOUT"
    TRANSPORT = "TRANSPORT"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_FOUND = "NOT_FOUND"
    SYNTHETIC_PROOF = "SYNTHETIC_PROOF"
    CANCELLED = "CANCELLED"


class AttestationError(Exception):
    """Base class for all client errors.

    Args:
        message: Human-readable description.
        details: Structured context for diagnostics. Never contains
            secrets (private keys, API keys).
    """

    error_code: ErrorCode = ErrorCode.VALIDATION

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error_code": str(self.error_code),
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result


class ValidationError(AttestationError):
    error_code = ErrorCode.VALIDATION


class ConfigError(AttestationError):
    error_code = ErrorCode.CONFIG


class UpstreamError(AttestationError):
    error_code = ErrorCode.UPSTREAM


class InsufficientFundsError(AttestationError):
    error_code = ErrorCode.INSUFFICIENT_FUNDS


class RejectedError(AttestationError):
    error_code = ErrorCode.REJECTED


class ConfirmationTimeoutError(AttestationError, TimeoutError):
    """Submission confirmation did not arrive before the deadline.

    The transaction may still land. ``details`` carries ``tx_hash`` (when
    the send succeeded) and ``request_digest`` so the caller can re-check
    chain state before deciding to resubmit.
    """

    error_code = ErrorCode.TIMEOUT


class TransportError(AttestationError):
    """Connection-level or server-side failure talking to an HTTP service.

    Attributes:
        status_code: HTTP status if a response arrived, else None.
    """

    error_code = ErrorCode.TRANSPORT

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class RateLimitedError(TransportError):
    """HTTP 429. ``retry_after_s`` is the server's Retry-After hint, if any."""

    error_code = ErrorCode.RATE_LIMITED

    def __init__(
        self,
        message: str,
        *,
        retry_after_s: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, status_code=429, details=details)
        self.retry_after_s = retry_after_s


class NotFoundError(AttestationError):
    error_code = ErrorCode.NOT_FOUND


class SyntheticProofError(AttestationError):
    error_code = ErrorCode.SYNTHETIC_PROOF


class WorkflowCancelledError(AttestationError):
    error_code = ErrorCode.CANCELLED
