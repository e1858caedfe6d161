"""SQLAlchemy ORM models.

Agents, their trust history, the transactions they enter into, disputes over
those transactions with evidence, escalation and feedback records, and the
periodic decision-engine metrics. All timestamps are naive UTC.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from agent_resolve.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def external_id(prefix: str) -> str:
    return f"{prefix}-{secrets.token_hex(4).upper()}"


# =============================================================================
# ENUMS
# =============================================================================


class AgentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class TransactionStatus(str, Enum):
    PROPOSED = "PROPOSED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    EXPIRED = "EXPIRED"


class EscrowStatus(str, Enum):
    NONE = "NONE"
    FUNDED = "FUNDED"
    RELEASED = "RELEASED"


class ClaimType(str, Enum):
    NON_PERFORMANCE = "NON_PERFORMANCE"
    PARTIAL_PERFORMANCE = "PARTIAL_PERFORMANCE"
    QUALITY_ISSUE = "QUALITY_ISSUE"
    PAYMENT_DISPUTE = "PAYMENT_DISPUTE"
    MISREPRESENTATION = "MISREPRESENTATION"
    BREACH_OF_TERMS = "BREACH_OF_TERMS"
    OTHER = "OTHER"


class DisputeStatus(str, Enum):
    FILED = "FILED"
    EVIDENCE_SUBMISSION = "EVIDENCE_SUBMISSION"
    RULED = "RULED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"
    CLOSED = "CLOSED"
    DISMISSED = "DISMISSED"
    EXPIRED = "EXPIRED"


class Ruling(str, Enum):
    CLAIMANT = "CLAIMANT"
    RESPONDENT = "RESPONDENT"
    SPLIT = "SPLIT"
    DISMISSED = "DISMISSED"


class PartyRole(str, Enum):
    CLAIMANT = "CLAIMANT"
    RESPONDENT = "RESPONDENT"


class EvidenceType(str, Enum):
    TEXT_STATEMENT = "TEXT_STATEMENT"
    COMMUNICATION_LOG = "COMMUNICATION_LOG"
    AGREEMENT_EXCERPT = "AGREEMENT_EXCERPT"
    TIMELINE = "TIMELINE"
    DOCUMENT = "DOCUMENT"
    OTHER = "OTHER"


class RejectionReason(str, Enum):
    FACTUAL_ERROR = "FACTUAL_ERROR"
    EVIDENCE_IGNORED = "EVIDENCE_IGNORED"
    REASONING_FLAWED = "REASONING_FLAWED"
    BIAS_DETECTED = "BIAS_DETECTED"
    RULING_DISPROPORTIONATE = "RULING_DISPROPORTIONATE"
    OTHER = "OTHER"


class EscalationStatus(str, Enum):
    REQUESTED = "REQUESTED"
    ASSIGNED = "ASSIGNED"
    DECIDED = "DECIDED"


SYSTEM_ACTOR = "SYSTEM"


# =============================================================================
# AGENTS AND TRUST
# =============================================================================


class AgentDB(Base):
    """An autonomous agent registered under an operator."""

    __tablename__ = "resolve_agents"
    __table_args__ = (UniqueConstraint("operator_id", "agent_identifier", name="uq_operator_agent"),)

    id = Column(String(36), primary_key=True, default=new_id)
    external_id = Column(String(32), unique=True, nullable=False, index=True)
    operator_id = Column(String(64), nullable=False, index=True)
    agent_identifier = Column(String(100), nullable=False)
    display_name = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    agent_metadata = Column("metadata", JSON, nullable=True)
    payout_destination = Column(String(100), nullable=True)

    trust_score = Column(Integer, nullable=False, default=50)

    total_transactions = Column(Integer, nullable=False, default=0)
    completed_transactions = Column(Integer, nullable=False, default=0)
    disputes_as_claimant = Column(Integer, nullable=False, default=0)
    disputes_as_respondent = Column(Integer, nullable=False, default=0)
    disputes_won = Column(Integer, nullable=False, default=0)
    disputes_lost = Column(Integer, nullable=False, default=0)

    monthly_dispute_count = Column(Integer, nullable=False, default=0)
    monthly_dispute_reset_at = Column(DateTime, nullable=False, default=utcnow)

    status = Column(SQLEnum(AgentStatus), nullable=False, default=AgentStatus.ACTIVE)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    trust_history = relationship("TrustHistoryDB", back_populates="agent")


class TrustHistoryDB(Base):
    """Immutable record of a single trust score mutation."""

    __tablename__ = "resolve_trust_history"

    id = Column(String(36), primary_key=True, default=new_id)
    agent_id = Column(String(36), ForeignKey("resolve_agents.id"), nullable=False, index=True)
    previous_score = Column(Integer, nullable=False)
    new_score = Column(Integer, nullable=False)
    change_amount = Column(Integer, nullable=False)
    reason = Column(String(500), nullable=False)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    agent = relationship("AgentDB", back_populates="trust_history")


# =============================================================================
# TRANSACTIONS AND ESCROW
# =============================================================================


class TransactionDB(Base):
    """A transaction proposed by one agent to another, with optional escrow."""

    __tablename__ = "resolve_transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    external_id = Column(String(32), unique=True, nullable=False, index=True)
    proposer_agent_id = Column(String(36), ForeignKey("resolve_agents.id"), nullable=False, index=True)
    receiver_agent_id = Column(String(36), ForeignKey("resolve_agents.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    terms = Column(JSON, nullable=False, default=dict)
    stated_value = Column(Integer, nullable=True)  # cents
    stated_value_currency = Column(String(3), nullable=False, default="USD")

    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.PROPOSED)
    proposed_at = Column(DateTime, nullable=False, default=utcnow)
    responded_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    # Escrow
    escrow_status = Column(SQLEnum(EscrowStatus), nullable=False, default=EscrowStatus.NONE)
    escrow_amount = Column(Integer, nullable=True)  # cents
    escrow_currency = Column(String(3), nullable=True)
    escrow_funded_at = Column(DateTime, nullable=True)
    escrow_funded_by = Column(String(36), nullable=True)
    escrow_released_at = Column(DateTime, nullable=True)
    escrow_released_to = Column(String(36), nullable=True)  # agent id, or "SPLIT"
    escrow_transfer_ids = Column(JSON, nullable=True)  # recipient agent id -> transfer id

    proposer = relationship("AgentDB", foreign_keys=[proposer_agent_id])
    receiver = relationship("AgentDB", foreign_keys=[receiver_agent_id])
    disputes = relationship("DisputeDB", back_populates="transaction")


# =============================================================================
# DISPUTES
# =============================================================================


class DisputeDB(Base):
    """A claim by one party to a transaction against the other."""

    __tablename__ = "resolve_disputes"

    id = Column(String(36), primary_key=True, default=new_id)
    external_id = Column(String(32), unique=True, nullable=False, index=True)
    transaction_id = Column(String(36), ForeignKey("resolve_transactions.id"), nullable=False, index=True)
    claimant_agent_id = Column(String(36), ForeignKey("resolve_agents.id"), nullable=False, index=True)
    respondent_agent_id = Column(String(36), ForeignKey("resolve_agents.id"), nullable=False, index=True)

    # Claim
    claim_type = Column(SQLEnum(ClaimType), nullable=False)
    claim_summary = Column(String(500), nullable=False)
    claim_details = Column(Text, nullable=True)
    requested_resolution = Column(String(1000), nullable=False)
    stated_value = Column(Integer, nullable=True)  # cents

    # Response
    response_summary = Column(String(500), nullable=True)
    response_details = Column(Text, nullable=True)
    responded_at = Column(DateTime, nullable=True)

    status = Column(SQLEnum(DisputeStatus), nullable=False, default=DisputeStatus.FILED, index=True)
    response_deadline = Column(DateTime, nullable=False)
    evidence_deadline = Column(DateTime, nullable=True)
    claimant_submission_complete = Column(Boolean, nullable=False, default=False)
    respondent_submission_complete = Column(Boolean, nullable=False, default=False)

    # Billing
    credits_charged = Column(Integer, nullable=False, default=0)
    was_free = Column(Boolean, nullable=False, default=True)

    # Ruling
    ruling = Column(SQLEnum(Ruling), nullable=True)
    ruling_reasoning = Column(Text, nullable=True)
    ruling_details = Column(JSON, nullable=True)
    ruled_at = Column(DateTime, nullable=True, index=True)
    claimant_score_change = Column(Integer, nullable=True)
    respondent_score_change = Column(Integer, nullable=True)

    # Acceptance (None = pending)
    claimant_accepted = Column(Boolean, nullable=True)
    respondent_accepted = Column(Boolean, nullable=True)
    claimant_rejection_reason = Column(SQLEnum(RejectionReason), nullable=True)
    claimant_rejection_details = Column(Text, nullable=True)
    respondent_rejection_reason = Column(SQLEnum(RejectionReason), nullable=True)
    respondent_rejection_details = Column(Text, nullable=True)
    acceptance_deadline = Column(DateTime, nullable=True)

    closed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    transaction = relationship("TransactionDB", back_populates="disputes")
    claimant = relationship("AgentDB", foreign_keys=[claimant_agent_id])
    respondent = relationship("AgentDB", foreign_keys=[respondent_agent_id])
    evidence = relationship("EvidenceDB", back_populates="dispute", order_by="EvidenceDB.sequence")
    events = relationship("DisputeEventDB", back_populates="dispute", order_by="DisputeEventDB.created_at")
    escalation = relationship("EscalationDB", back_populates="dispute", uselist=False)
    feedback = relationship("DecisionFeedbackDB", back_populates="dispute")


class DisputeEventDB(Base):
    """Append-only audit entry for a dispute status transition."""

    __tablename__ = "resolve_dispute_events"

    id = Column(String(36), primary_key=True, default=new_id)
    dispute_id = Column(String(36), ForeignKey("resolve_disputes.id"), nullable=False, index=True)
    from_status = Column(SQLEnum(DisputeStatus), nullable=True)
    to_status = Column(SQLEnum(DisputeStatus), nullable=False)
    actor = Column(String(36), nullable=False)  # agent id or SYSTEM
    note = Column(String(500), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    dispute = relationship("DisputeDB", back_populates="events")


class EvidenceDB(Base):
    """A single piece of evidence submitted by one party."""

    __tablename__ = "resolve_evidence"

    id = Column(String(36), primary_key=True, default=new_id)
    external_id = Column(String(32), unique=True, nullable=False, index=True)
    dispute_id = Column(String(36), ForeignKey("resolve_disputes.id"), nullable=False, index=True)
    submitted_by_agent_id = Column(String(36), ForeignKey("resolve_agents.id"), nullable=False)
    submitted_by_role = Column(SQLEnum(PartyRole), nullable=False)
    sequence = Column(Integer, nullable=False)  # submission order within the dispute
    evidence_type = Column(SQLEnum(EvidenceType), nullable=False)
    title = Column(String(200), nullable=False)
    content = Column(Text, nullable=False)
    source_filename = Column(String(255), nullable=True)
    page_count = Column(Integer, nullable=True)
    truncated = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    dispute = relationship("DisputeDB", back_populates="evidence")


# =============================================================================
# ESCALATION AND FEEDBACK
# =============================================================================


class EscalationDB(Base):
    """Human review of an AI ruling."""

    __tablename__ = "resolve_escalations"

    id = Column(String(36), primary_key=True, default=new_id)
    external_id = Column(String(32), unique=True, nullable=False, index=True)
    dispute_id = Column(String(36), ForeignKey("resolve_disputes.id"), nullable=False, unique=True)
    requested_by = Column(String(36), nullable=False)  # agent id or SYSTEM
    reason = Column(Text, nullable=False)
    status = Column(SQLEnum(EscalationStatus), nullable=False, default=EscalationStatus.REQUESTED)
    credits_charged = Column(Integer, nullable=False, default=0)

    arbitrator_id = Column(String(64), nullable=True)
    arbitrator_ruling = Column(SQLEnum(Ruling), nullable=True)
    arbitrator_reasoning = Column(Text, nullable=True)
    arbitrator_notes = Column(Text, nullable=True)

    requested_at = Column(DateTime, nullable=False, default=utcnow)
    assigned_at = Column(DateTime, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    notified_at = Column(DateTime, nullable=True)

    dispute = relationship("DisputeDB", back_populates="escalation")
    accuracy_comparison = relationship("AccuracyComparisonDB", back_populates="escalation", uselist=False)


class AccuracyComparisonDB(Base):
    """AI ruling vs. human ruling for one escalated dispute. Immutable."""

    __tablename__ = "resolve_accuracy_comparisons"

    id = Column(String(36), primary_key=True, default=new_id)
    escalation_id = Column(String(36), ForeignKey("resolve_escalations.id"), nullable=False, unique=True)
    dispute_id = Column(String(36), ForeignKey("resolve_disputes.id"), nullable=False, index=True)
    ai_ruling = Column(SQLEnum(Ruling), nullable=False)
    ai_confidence = Column(Float, nullable=True)
    ai_key_factors = Column(JSON, nullable=False, default=list)
    ai_reasoning = Column(Text, nullable=True)
    human_ruling = Column(SQLEnum(Ruling), nullable=False)
    human_reasoning = Column(Text, nullable=True)
    ruling_agreed = Column(Boolean, nullable=False)
    dispute_type = Column(SQLEnum(ClaimType), nullable=False)
    stated_value = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    escalation = relationship("EscalationDB", back_populates="accuracy_comparison")


class DecisionFeedbackDB(Base):
    """Post-resolution feedback from one party."""

    __tablename__ = "resolve_decision_feedback"
    __table_args__ = (UniqueConstraint("dispute_id", "agent_id", name="uq_feedback_dispute_agent"),)

    id = Column(String(36), primary_key=True, default=new_id)
    dispute_id = Column(String(36), ForeignKey("resolve_disputes.id"), nullable=False, index=True)
    agent_id = Column(String(36), ForeignKey("resolve_agents.id"), nullable=False)
    party_role = Column(SQLEnum(PartyRole), nullable=False)
    was_winner = Column(Boolean, nullable=False)
    fairness_rating = Column(Integer, nullable=False)
    reasoning_rating = Column(Integer, nullable=False)
    evidence_rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    dispute = relationship("DisputeDB", back_populates="feedback")


class DecisionEngineMetricsDB(Base):
    """Aggregate snapshot for one non-overlapping period. Write-once."""

    __tablename__ = "resolve_decision_engine_metrics"

    id = Column(String(36), primary_key=True, default=new_id)
    period_start = Column(DateTime, nullable=False, index=True)
    period_end = Column(DateTime, nullable=False)

    total_decisions = Column(Integer, nullable=False)
    both_accepted_count = Column(Integer, nullable=False)
    escalated_count = Column(Integer, nullable=False)
    both_accepted_rate = Column(Float, nullable=False)
    escalation_rate = Column(Float, nullable=False)

    comparisons_count = Column(Integer, nullable=False, default=0)
    human_agreement_rate = Column(Float, nullable=True)
    avg_confidence = Column(Float, nullable=True)
    avg_confidence_when_agreed = Column(Float, nullable=True)
    avg_confidence_when_disagreed = Column(Float, nullable=True)

    feedback_count = Column(Integer, nullable=False, default=0)
    avg_fairness_rating = Column(Float, nullable=True)
    avg_reasoning_rating = Column(Float, nullable=True)
    avg_evidence_rating = Column(Float, nullable=True)

    by_claim_type = Column(JSON, nullable=False, default=dict)
    top_rejection_reasons = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
