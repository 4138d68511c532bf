"""
Pledge-specific exceptions for reconciliation operations.

This module provides the error taxonomy used by the reconciliation engine,
the concurrency control errors shared with the pledge store, and the
Stripe-specific errors raised by the processor adapter.

Exception Hierarchy:
    PledgeError (base for pledge domain)
    └── ReconciliationError - Sweep-level failures
        ├── LookupInconclusive - No usable processor status (retried next sweep)
        ├── StoreWriteFailed - Local persistence error (pledge unchanged)
        └── ReceiptSendFailed - Receipt collaborator failed (transition kept)

    StripeError (inherits ExternalServiceError)
    ├── StripeInvalidRequestError - Invalid request or credentials (permanent)
    └── ProcessorUnavailable - Processor unreachable (transient)
        ├── StripeRateLimitError - Rate limited
        ├── StripeAPIUnavailableError - Network error or 5xx
        ├── StripeTimeoutError - Request exceeded STRIPE_API_TIMEOUT_SECONDS
        └── ProcessorNotConfigured - No API key for the requested mode

    InvalidModeMismatch - Pledge mode differs from credential mode (inherits ConflictError)
    StaleRecordError - Optimistic locking conflict (inherits ConflictError)
    ProcessorKindMismatch - Processor record does not fit the pledge kind (inherits ConflictError)
    LockAcquisitionError - Distributed lock timeout (inherits ConflictError)
    ReconciliationLockError - Another sweep is running (inherits ConflictError)
    InvalidStateTransitionError - FSM transition not allowed (inherits ConflictError)

Usage:
    from pledges.exceptions import ProcessorUnavailable, StoreWriteFailed

    try:
        session = StripeAdapter.get_checkout_session(session_id, mode="test")
    except ProcessorUnavailable:
        # Strategy inconclusive, the pledge stays pending
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError, ExternalServiceError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Pledge Domain Exceptions
# =============================================================================


class PledgeError(BaseApplicationError):
    """Base exception for pledge domain errors."""

    default_error_code: str = "PLEDGE_ERROR"


class ReconciliationError(PledgeError):
    """
    Raised when a reconciliation sweep fails as a whole.

    Per-pledge failures never raise this; they are converted into
    error outcomes at the pledge boundary.
    """

    default_error_code: str = "RECONCILIATION_ERROR"


class LookupInconclusive(ReconciliationError):
    """
    Processor returned no usable status for a pledge.

    Recoverable: the pledge stays pending and the next sweep retries it.
    """

    default_error_code: str = "LOOKUP_INCONCLUSIVE"


class StoreWriteFailed(ReconciliationError):
    """
    Persisting a reconciliation decision failed.

    The pledge row is left unchanged and the outcome is recorded as an
    error for operator investigation.
    """

    default_error_code: str = "STORE_WRITE_FAILED"


class ReceiptSendFailed(ReconciliationError):
    """
    The receipt collaborator failed.

    Non-fatal: the status transition has already been committed. The
    receipt intent is marked failed and resent out-of-band.
    """

    default_error_code: str = "RECEIPT_SEND_FAILED"


# =============================================================================
# Stripe-Specific Exceptions
# =============================================================================


class StripeError(ExternalServiceError):
    """
    Base exception for all Stripe-related errors.

    Attributes:
        stripe_code: Stripe's internal error code
        is_retryable: Whether a later attempt may succeed

    Example:
        try:
            StripeAdapter.get_subscription("sub_123", mode="live")
        except StripeError as e:
            if e.is_retryable:
                leave_pending_for_next_sweep()
    """

    default_error_code: str = "STRIPE_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        stripe_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if stripe_code:
            details["stripe_code"] = stripe_code
        super().__init__(message, error_code=error_code, details=details)
        self.stripe_code = stripe_code


class StripeInvalidRequestError(StripeError):
    """
    Invalid request parameters or credentials.

    Common causes:
    - Malformed object ID
    - Object belongs to another account
    - Invalid API key

    This is a permanent error for the given request.
    """

    default_error_code: str = "STRIPE_INVALID_REQUEST"


class ProcessorUnavailable(StripeError):
    """
    The processor could not be reached or answered with a server error.

    Covers network failures, timeouts, 5xx responses and rate limiting.
    A lookup that fails this way is treated as inconclusive and the pledge
    is left pending.
    """

    default_error_code: str = "PROCESSOR_UNAVAILABLE"
    is_retryable: bool = True


class StripeRateLimitError(ProcessorUnavailable):
    """
    Rate limited by Stripe API.

    Stripe allows 100 read requests/second in live mode and 25/second in
    test mode. Lower RECONCILIATION_MAX_WORKERS if sweeps hit this.
    """

    default_error_code: str = "STRIPE_RATE_LIMITED"


class StripeAPIUnavailableError(ProcessorUnavailable):
    """
    Stripe API is temporarily unavailable.

    This covers:
    - Network connectivity issues
    - Stripe server errors (5xx)
    - DNS resolution failures
    """

    default_error_code: str = "STRIPE_UNAVAILABLE"


class StripeTimeoutError(ProcessorUnavailable):
    """
    Stripe API call timed out.

    No response was received within STRIPE_API_TIMEOUT_SECONDS.
    Reconciliation only issues reads, so the next sweep simply retries.
    """

    default_error_code: str = "STRIPE_TIMEOUT"


class ProcessorNotConfigured(ProcessorUnavailable):
    """No Stripe API key is configured for the requested mode."""

    default_error_code: str = "PROCESSOR_NOT_CONFIGURED"
    is_retryable: bool = False


# =============================================================================
# Conflict Exceptions
# =============================================================================


class InvalidModeMismatch(ConflictError):
    """
    Raised when a pledge's processor mode differs from the credential mode.

    Test pledges are never looked up with live keys and vice versa. The
    pledge is skipped rather than processed with the wrong credentials.

    Example:
        raise InvalidModeMismatch(
            "Pledge is live but the sweep is restricted to test",
            details={"pledge_mode": "live", "sweep_mode": "test"},
        )
    """

    default_error_code: str = "INVALID_MODE_MISMATCH"


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    The pledge was modified by another process (usually the webhook
    handler) between read and update.

    Attributes:
        details: Contains pk, expected_version, and current_version
    """

    default_error_code: str = "STALE_RECORD"


class ProcessorKindMismatch(ConflictError):
    """
    Raised when the processor record does not fit the pledge kind.

    A one-time pledge resolves to a succeeded payment, a recurring pledge to
    an active subscription. Anything else is left for an operator rather
    than applied.
    """

    default_error_code: str = "PROCESSOR_KIND_MISMATCH"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Attributes:
        details: Contains the lock key
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


class ReconciliationLockError(ConflictError):
    """Raised when another reconciliation sweep already holds the run lock."""

    default_error_code: str = "RECONCILIATION_IN_PROGRESS"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a pledge state machine transition is not allowed.

    Wraps django-fsm's TransitionNotAllowed in our standard error format.

    Attributes:
        details: Contains current_state, target_state, and transition name
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


__all__ = [
    "InvalidModeMismatch",
    "InvalidStateTransitionError",
    "LockAcquisitionError",
    "LookupInconclusive",
    "PledgeError",
    "ProcessorKindMismatch",
    "ProcessorNotConfigured",
    "ProcessorUnavailable",
    "ReceiptSendFailed",
    "ReconciliationError",
    "ReconciliationLockError",
    "StaleRecordError",
    "StoreWriteFailed",
    "StripeAPIUnavailableError",
    "StripeError",
    "StripeInvalidRequestError",
    "StripeRateLimitError",
    "StripeTimeoutError",
]
