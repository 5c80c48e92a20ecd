"""Error taxonomy for the scan, propose and execute pipeline.

Each error carries a machine-readable ``code``, the HTTP status the API maps
it to, whether the caller may retry, and the list of violated rules (if any).
Budget and gate outcomes are scheduling decisions, never errors.
"""

from __future__ import annotations

from typing import Any, Optional


class TradingError(Exception):
    code = "TRADING_ERROR"
    status_code = 400
    retryable = False

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        reasons: Optional[list[str]] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        self.reasons = list(reasons or [])
        self.details = dict(details or {})

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "reasons": self.reasons,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(TradingError):
    """Malformed input, rejected before any state change."""

    code = "VALIDATION_ERROR"
    status_code = 422


class PolicyViolation(TradingError):
    """Preflight failed; the proposal stays APPROVED for retry after correction."""

    code = "PREFLIGHT_FAILED"
    status_code = 422


class AuthDenied(TradingError):
    code = "AUTH_DENIED"
    status_code = 403


class NotFound(TradingError):
    code = "NOT_FOUND"
    status_code = 404


class Conflict(TradingError):
    """Duplicate execution or wrong proposal status. Safe to report and ignore."""

    code = "CONFLICT"
    status_code = 409


class ExecutionInProgress(Conflict):
    code = "EXECUTION_IN_PROGRESS"
    status_code = 202


class ProposalExpired(Conflict):
    code = "PROPOSAL_EXPIRED"


class ExchangeTransient(TradingError):
    """Timeout, rate limit or 5xx. Retry goes through reconciliation."""

    code = "EXCHANGE_TRANSIENT"
    status_code = 503
    retryable = True


class ExchangeUnknownOutcome(ExchangeTransient):
    """Response lost after the order may have been placed."""

    code = "EXCHANGE_UNKNOWN_OUTCOME"


class ExchangeRejected(TradingError):
    """The venue refused the order (HARD failure)."""

    code = "EXCHANGE_REJECTED"
    status_code = 502
