"""Domain errors raised by the Resolve services.

Every error a caller can act on derives from ``ResolveError`` and carries a
stable machine-readable ``code``. The operation surface turns these into
error envelopes. ``InvariantViolation`` is deliberately not a
``ResolveError``: it signals a programming fault and must propagate.
"""

from __future__ import annotations


class ResolveError(Exception):
    """Base class for errors surfaced to callers as ``{code, message}``."""

    code = "RESOLVE_ERROR"
    status_code = 400

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationFailed(ResolveError):
    code = "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class AgentNotFound(ResolveError):
    code = "AGENT_NOT_FOUND"
    status_code = 404


class TransactionNotFound(ResolveError):
    code = "TRANSACTION_NOT_FOUND"
    status_code = 404


class DisputeNotFound(ResolveError):
    code = "DISPUTE_NOT_FOUND"
    status_code = 404


class EscalationNotFound(ResolveError):
    code = "ESCALATION_NOT_FOUND"
    status_code = 404


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class NotParty(ResolveError):
    code = "NOT_PARTY"
    status_code = 403


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class AlreadyRegistered(ResolveError):
    code = "ALREADY_REGISTERED"
    status_code = 409


class AgentSuspended(ResolveError):
    code = "AGENT_SUSPENDED"
    status_code = 409


class InvalidTransactionState(ResolveError):
    code = "INVALID_TRANSACTION_STATUS"
    status_code = 409


class InvalidDisputeState(ResolveError):
    code = "INVALID_STATUS"
    status_code = 409


class CannotFileDispute(ResolveError):
    code = "CANNOT_FILE_DISPUTE"
    status_code = 409


class DeadlinePassed(ResolveError):
    code = "DEADLINE_PASSED"
    status_code = 409


class FeedbackWindowClosed(ResolveError):
    code = "FEEDBACK_WINDOW_CLOSED"
    status_code = 409


class FeedbackAlreadySubmitted(ResolveError):
    code = "FEEDBACK_ALREADY_SUBMITTED"
    status_code = 409


class MetricsAlreadyAggregated(ResolveError):
    code = "METRICS_PERIOD_EXISTS"
    status_code = 409


class EscrowError(ResolveError):
    code = "ESCROW_ERROR"
    status_code = 409


class EscrowAlreadyFunded(EscrowError):
    code = "ESCROW_ALREADY_FUNDED"


class EscrowNotFunded(EscrowError):
    code = "ESCROW_NOT_FUNDED"


class EscrowAlreadyReleased(EscrowError):
    code = "ESCROW_ALREADY_RELEASED"


class EscrowLocked(EscrowError):
    code = "ESCROW_LOCKED"


# ---------------------------------------------------------------------------
# Dependent capabilities
# ---------------------------------------------------------------------------


class InsufficientCredits(ResolveError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402


class CreditLedgerUnavailable(ResolveError):
    code = "CREDIT_LEDGER_UNAVAILABLE"
    status_code = 503


class ArbitrationUnavailable(ResolveError):
    code = "ARBITRATION_UNAVAILABLE"
    status_code = 503


class ExtractionFailed(ResolveError):
    code = "EXTRACTION_FAILED"
    status_code = 422


class TransferFailed(ResolveError):
    code = "TRANSFER_FAILED"
    status_code = 502


# ---------------------------------------------------------------------------
# Programming faults
# ---------------------------------------------------------------------------


class InvariantViolation(Exception):
    """Raised when persisted state breaks a guaranteed invariant."""


class DataIntegrityError(InvariantViolation):
    """Raised when stored rows contradict each other (e.g. an agent on both sides)."""
