"""Trust ledger.

Each agent carries a bounded reputation score in [0, 100]. Score arithmetic
is pure (``clamp_score``, ``calculate_trust_impact``); ``update_trust_score``
is the transactional shell that locks the agent row, applies the clamped
change and appends exactly one history entry in the caller's transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel, model_validator
from sqlalchemy.orm import Session

from agent_resolve.config import settings
from agent_resolve.errors import AgentNotFound, AlreadyRegistered, InvariantViolation
from agent_resolve.models import (
    AgentDB,
    AgentStatus,
    PartyRole,
    Ruling,
    TrustHistoryDB,
    external_id,
    utcnow,
)
from agent_resolve.schemas import RegisterAgentInput, TrustUpdate

logger = logging.getLogger(__name__)

MIN_TRUST_SCORE = 0
MAX_TRUST_SCORE = 100


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class TrustPolicy(BaseModel):
    """Trust deltas and value bands applied to dispute and transaction outcomes."""

    initial_score: int = 50
    transaction_complete: int = 1
    dispute_win: int = 2
    split_ruling: int = -1
    loss_small: int = -3
    loss_medium: int = -5
    loss_large: int = -10
    dismissed: int = -5
    no_response: int = -20
    escalation_favorable: int = 15
    escalation_unfavorable: int = -25
    small_value_cents: int = 10_000
    medium_value_cents: int = 100_000

    @model_validator(mode="after")
    def _check_ordering(self) -> TrustPolicy:
        ladder = [self.dispute_win, self.split_ruling, self.loss_small, self.loss_medium, self.loss_large]
        if any(a <= b for a, b in zip(ladder, ladder[1:])):
            raise ValueError("trust policy must keep win > split > small loss > medium loss > large loss")
        if self.dismissed >= 0:
            raise ValueError("dismissal penalty must be negative")
        if self.escalation_favorable <= 0 or self.escalation_unfavorable >= 0:
            raise ValueError("escalation deltas must reward the winner and penalise the loser")
        if not 0 < self.small_value_cents < self.medium_value_cents:
            raise ValueError("trust value bands must be increasing")
        if not MIN_TRUST_SCORE <= self.initial_score <= MAX_TRUST_SCORE:
            raise ValueError("initial trust score must be within bounds")
        return self

    @classmethod
    def from_settings(cls) -> TrustPolicy:
        return cls(
            initial_score=settings.trust_initial_score,
            transaction_complete=settings.trust_transaction_complete,
            dispute_win=settings.trust_dispute_win,
            split_ruling=settings.trust_split_ruling,
            loss_small=settings.trust_loss_small,
            loss_medium=settings.trust_loss_medium,
            loss_large=settings.trust_loss_large,
            dismissed=settings.trust_dismissed,
            no_response=settings.trust_no_response,
            escalation_favorable=settings.trust_escalation_favorable,
            escalation_unfavorable=settings.trust_escalation_unfavorable,
            small_value_cents=settings.trust_small_value_cents,
            medium_value_cents=settings.trust_medium_value_cents,
        )


# ---------------------------------------------------------------------------
# Pure arithmetic
# ---------------------------------------------------------------------------


def clamp_score(value: int) -> int:
    return max(MIN_TRUST_SCORE, min(MAX_TRUST_SCORE, value))


def calculate_trust_impact(
    ruling: Ruling | str,
    stated_value_cents: int | None,
    is_winner: bool,
    policy: TrustPolicy | None = None,
) -> int:
    """Trust delta for one party given a ruling.

    For DISMISSED rulings the claimant is the non-winner (frivolous claim
    penalty) and the respondent is unaffected.
    """
    policy = policy or TrustPolicy.from_settings()
    ruling = Ruling(ruling)
    value = stated_value_cents or 0

    if ruling in (Ruling.CLAIMANT, Ruling.RESPONDENT):
        if is_winner:
            return policy.dispute_win
        if value < policy.small_value_cents:
            return policy.loss_small
        if value < policy.medium_value_cents:
            return policy.loss_medium
        return policy.loss_large
    if ruling == Ruling.SPLIT:
        return policy.split_ruling
    # DISMISSED
    return 0 if is_winner else policy.dismissed


def is_party_winner(ruling: Ruling | str, role: PartyRole) -> bool:
    """Whether the party in ``role`` prevailed under ``ruling``.

    SPLIT has no winner; DISMISSED favours the respondent.
    """
    ruling = Ruling(ruling)
    if role == PartyRole.CLAIMANT:
        return ruling == Ruling.CLAIMANT
    return ruling in (Ruling.RESPONDENT, Ruling.DISMISSED)


# ---------------------------------------------------------------------------
# Agent lookup
# ---------------------------------------------------------------------------


def _load_agent(db: Session, agent_id: str, lock: bool = False) -> AgentDB:
    query = db.query(AgentDB).filter(AgentDB.id == agent_id)
    if lock:
        query = query.with_for_update()
    agent = query.one_or_none()
    if agent is None:
        raise AgentNotFound(f"Agent {agent_id} not found")
    return agent


def get_agent_for_operator(db: Session, operator_id: str, agent_ref: str) -> AgentDB:
    """Resolve an agent by external id or identifier, scoped to its operator.

    Agents owned by another operator are reported as not found.
    """
    agent = (
        db.query(AgentDB)
        .filter(AgentDB.operator_id == operator_id)
        .filter((AgentDB.external_id == agent_ref) | (AgentDB.agent_identifier == agent_ref))
        .one_or_none()
    )
    if agent is None:
        logger.warning("Operator %s referenced unknown or foreign agent %s", operator_id, agent_ref)
        raise AgentNotFound(f"Agent {agent_ref} not found")
    return agent


def get_agent_by_external_id(db: Session, agent_ref: str) -> AgentDB:
    """Resolve any agent by external id; used for counterparties owned by other operators."""
    agent = db.query(AgentDB).filter(AgentDB.external_id == agent_ref).one_or_none()
    if agent is None:
        raise AgentNotFound(f"Agent {agent_ref} not found")
    return agent


def register_agent(db: Session, operator_id: str, data: RegisterAgentInput) -> AgentDB:
    existing = (
        db.query(AgentDB)
        .filter(AgentDB.operator_id == operator_id, AgentDB.agent_identifier == data.agent_identifier)
        .one_or_none()
    )
    if existing is not None:
        raise AlreadyRegistered(
            f"Agent {data.agent_identifier!r} is already registered as {existing.external_id}"
        )

    now = utcnow()
    agent = AgentDB(
        external_id=external_id("RAGENT"),
        operator_id=operator_id,
        agent_identifier=data.agent_identifier,
        display_name=data.display_name,
        description=data.description,
        agent_metadata=data.metadata,
        payout_destination=data.payout_destination,
        trust_score=TrustPolicy.from_settings().initial_score,
        monthly_dispute_count=0,
        monthly_dispute_reset_at=now,
        status=AgentStatus.ACTIVE,
        created_at=now,
        updated_at=now,
    )
    db.add(agent)
    db.flush()
    logger.info("Registered agent %s for operator %s", agent.external_id, operator_id)
    return agent


# ---------------------------------------------------------------------------
# Transactional score updates
# ---------------------------------------------------------------------------


def update_trust_score(
    db: Session,
    agent_id: str,
    delta: int,
    reason: str,
    reference_type: str | None = None,
    reference_id: str | None = None,
    now: datetime | None = None,
) -> TrustUpdate:
    """Apply a clamped trust change and record it in the history.

    Runs inside the caller's transaction; if anything fails the caller's
    rollback discards both the score change and the history entry.
    """
    agent = _load_agent(db, agent_id, lock=True)
    previous = agent.trust_score
    new_score = clamp_score(previous + delta)
    if not MIN_TRUST_SCORE <= new_score <= MAX_TRUST_SCORE:
        raise InvariantViolation(f"Trust score {new_score} for agent {agent_id} is out of bounds")

    agent.trust_score = new_score
    db.add(
        TrustHistoryDB(
            agent_id=agent.id,
            previous_score=previous,
            new_score=new_score,
            change_amount=delta,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            created_at=now or utcnow(),
        )
    )
    db.flush()

    logger.info(
        "Trust score for %s: %d -> %d (%+d, %s)",
        agent.external_id,
        previous,
        new_score,
        delta,
        reason,
    )
    return TrustUpdate(previous_score=previous, new_score=new_score)


def get_trust_history(db: Session, agent_id: str, limit: int = 20) -> list[TrustHistoryDB]:
    return (
        db.query(TrustHistoryDB)
        .filter(TrustHistoryDB.agent_id == agent_id)
        .order_by(TrustHistoryDB.created_at.desc())
        .limit(limit)
        .all()
    )


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------


def increment_transaction_count(db: Session, agent_id: str, completed: bool = False) -> None:
    agent = _load_agent(db, agent_id, lock=True)
    if completed:
        agent.completed_transactions += 1
    else:
        agent.total_transactions += 1


def record_transaction_completion(
    db: Session, agent_id: str, transaction_id: str, now: datetime | None = None
) -> TrustUpdate:
    increment_transaction_count(db, agent_id, completed=True)
    policy = TrustPolicy.from_settings()
    return update_trust_score(
        db,
        agent_id,
        policy.transaction_complete,
        "Transaction completed",
        reference_type="TRANSACTION",
        reference_id=transaction_id,
        now=now,
    )


def increment_dispute_count(db: Session, agent_id: str, role: PartyRole) -> None:
    """Count a new dispute; claimants also consume monthly quota."""
    agent = _load_agent(db, agent_id, lock=True)
    if role == PartyRole.CLAIMANT:
        agent.disputes_as_claimant += 1
        agent.monthly_dispute_count += 1
    else:
        agent.disputes_as_respondent += 1


def record_dispute_outcome(db: Session, agent_id: str, won: bool) -> None:
    agent = _load_agent(db, agent_id, lock=True)
    if won:
        agent.disputes_won += 1
    else:
        agent.disputes_lost += 1
