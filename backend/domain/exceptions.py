"""
domain/exceptions.py — Error taxonomy for the Domain Ledger platform.

Exception hierarchy:
    PlatformError (base)
    ├── ValidationError       malformed input (HTTP 400)
    ├── NotFoundError         referenced entity absent (HTTP 404)
    ├── ConflictError         operation violates current state (HTTP 409)
    ├── ExternalServiceError  payment processor unreachable or rejected (HTTP 502)
    └── PersistenceError      store write failure (HTTP 500)

Scheduled runs catch these per item; request handlers let them propagate
to the exception handler registered in main.py.
"""
from __future__ import annotations

from typing import Optional


class PlatformError(Exception):
    """Base exception for all platform errors."""

    status_code: int = 500


class ValidationError(PlatformError):
    """Raised when input to an operation is malformed."""

    status_code = 400


class NotFoundError(PlatformError):
    """Raised when a referenced order/domain/customer/subscription is absent."""

    status_code = 404


class ConflictError(PlatformError):
    """Raised when a transition or transfer violates the entity's current state."""

    status_code = 409


class ExternalServiceError(PlatformError):
    """Raised when the payment processor is unreachable or rejects a call.

    ``retryable`` is True for network failures, timeouts, 429 and 5xx
    responses. State must be left untouched so the next scheduled run can
    retry. Terminal errors (other 4xx) are recorded and not retried.
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        upstream_status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.upstream_status = upstream_status


class PersistenceError(PlatformError):
    """Raised when a critical store write fails."""

    status_code = 500
