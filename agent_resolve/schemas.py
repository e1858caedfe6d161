"""Pydantic models for operation inputs and service results.

Input models carry the field-level validation rules (lengths, ranges) so
malformed requests are rejected before any storage is touched.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from agent_resolve.models import ClaimType, EvidenceType, RejectionReason, Ruling


# ---------------------------------------------------------------------------
# Service results
# ---------------------------------------------------------------------------


class TrustUpdate(BaseModel):
    previous_score: int
    new_score: int


class DisputeLimit(BaseModel):
    can_file: bool
    disputes_this_month: int
    limit: int


class DisputeCost(BaseModel):
    estimated_cost: int
    is_free: bool


class ExtractionResult(BaseModel):
    """Plain text extracted from an uploaded file."""

    text: str
    page_count: int | None = None
    truncated: bool = False


class ArbitrationResult(BaseModel):
    """Structured ruling returned by the AI arbitrator."""

    ruling: Ruling
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str
    key_factors: list[str] = []
    mitigating_factors: list[str] = []
    recommendation: str = ""


class EvidenceItem(BaseModel):
    """Evidence entry as presented to the arbitrator."""

    submitted_by: str  # CLAIMANT or RESPONDENT
    evidence_type: str
    title: str
    content: str


class DisputeContext(BaseModel):
    """Snapshot of everything the arbitrator needs about one dispute."""

    dispute_id: str
    transaction_title: str
    transaction_description: str | None = None
    transaction_terms: dict = {}
    stated_value: int | None = None
    claim_type: ClaimType
    claim_summary: str
    claim_details: str | None = None
    requested_resolution: str
    response_summary: str | None = None
    response_details: str | None = None
    claimant_trust_score: int
    respondent_trust_score: int


# ---------------------------------------------------------------------------
# Agents and transactions
# ---------------------------------------------------------------------------


class RegisterAgentInput(BaseModel):
    agent_identifier: str = Field(..., min_length=1, max_length=100)
    display_name: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    metadata: dict | None = None
    payout_destination: str | None = Field(default=None, max_length=100)


class AgentRef(BaseModel):
    agent_id: str = Field(..., min_length=1)


class ProposeTransactionInput(BaseModel):
    proposer_agent_id: str = Field(..., min_length=1)
    receiver_agent_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    terms: dict = {}
    stated_value: int | None = Field(default=None, ge=0)
    stated_value_currency: str = Field(default="USD", min_length=3, max_length=3)
    expires_in_days: int | None = Field(default=None, ge=1, le=30)


class RespondTransactionInput(BaseModel):
    agent_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    accept: bool


class TransactionRef(BaseModel):
    agent_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)


class ListTransactionsInput(BaseModel):
    agent_id: str = Field(..., min_length=1)
    status: str | None = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class FileDisputeInput(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    claimant_agent_id: str = Field(..., min_length=1)
    claim_type: ClaimType
    claim_summary: str = Field(..., min_length=10, max_length=500)
    claim_details: str | None = Field(default=None, max_length=5000)
    requested_resolution: str = Field(..., min_length=10, max_length=1000)


class RespondDisputeInput(BaseModel):
    dispute_id: str = Field(..., min_length=1)
    respondent_agent_id: str = Field(..., min_length=1)
    response_summary: str = Field(..., min_length=10, max_length=500)
    response_details: str | None = Field(default=None, max_length=5000)


class DisputeRef(BaseModel):
    dispute_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)


class ListDisputesInput(BaseModel):
    agent_id: str = Field(..., min_length=1)
    role: str | None = Field(default=None, pattern="^(CLAIMANT|RESPONDENT)$")
    status: str | None = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class ExtendDeadlineInput(BaseModel):
    dispute_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    additional_hours: int = Field(..., ge=1, le=24 * 14)


class SubmitEvidenceInput(BaseModel):
    dispute_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    evidence_type: EvidenceType
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=10, max_length=50_000)


class SubmitFileEvidenceInput(BaseModel):
    dispute_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    evidence_type: EvidenceType = EvidenceType.DOCUMENT
    title: str = Field(..., min_length=1, max_length=200)
    filename: str = Field(..., min_length=1, max_length=255)
    content_base64: str = Field(..., min_length=1)


class AcceptDecisionInput(BaseModel):
    dispute_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    comment: str | None = Field(default=None, max_length=1000)


class RejectDecisionInput(BaseModel):
    dispute_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    reason: RejectionReason
    details: str | None = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Escalation and feedback
# ---------------------------------------------------------------------------


class RequestEscalationInput(BaseModel):
    dispute_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=20, max_length=2000)


class AssignArbitratorInput(BaseModel):
    arbitrator_id: str = Field(..., min_length=1, max_length=64)


class HumanRulingInput(BaseModel):
    arbitrator_id: str = Field(..., min_length=1, max_length=64)
    ruling: Ruling
    reasoning: str = Field(..., min_length=10, max_length=10_000)
    notes: str | None = Field(default=None, max_length=5000)


class SubmitFeedbackInput(BaseModel):
    dispute_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    fairness_rating: int = Field(..., ge=1, le=5)
    reasoning_rating: int = Field(..., ge=1, le=5)
    evidence_rating: int = Field(..., ge=1, le=5)
    comment: str | None = Field(default=None, max_length=2000)


class AggregateMetricsInput(BaseModel):
    period_start: datetime
    period_end: datetime


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------


class FundEscrowInput(BaseModel):
    agent_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)


class EscrowPayout(BaseModel):
    """One recipient's share of an escrow release."""

    recipient_id: str
    destination: str
    amount: int
    idempotency_key: str
    metadata: dict = {}
    transfer_id: str | None = None  # set once the share has been paid
