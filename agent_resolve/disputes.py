"""Dispute lifecycle.

A dispute moves through::

    FILED -> EVIDENCE_SUBMISSION -> RULED -> {ACCEPTED | REJECTED | ESCALATED} -> CLOSED

with two further terminal states: DISMISSED (the arbitrator dismissed the
claim) and EXPIRED (the respondent never answered). Every transition is
checked against ``ALLOWED_TRANSITIONS`` and recorded as a ``DisputeEventDB``.

Deadlines are evaluated lazily by ``refresh_deadlines`` whenever a dispute
is loaded for an operation; the sweeper runs the same evaluation on a timer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from agent_resolve import quota, trust
from agent_resolve.clients import HttpCreditLedger
from agent_resolve.config import settings
from agent_resolve.errors import (
    CannotFileDispute,
    DataIntegrityError,
    DeadlinePassed,
    DisputeNotFound,
    InvalidDisputeState,
    NotParty,
    ValidationFailed,
)
from agent_resolve.models import (
    SYSTEM_ACTOR,
    AgentDB,
    DisputeDB,
    DisputeEventDB,
    DisputeStatus,
    PartyRole,
    RejectionReason,
    Ruling,
    TransactionStatus,
    external_id,
    utcnow,
)
from agent_resolve.schemas import ArbitrationResult, FileDisputeInput
from agent_resolve.transactions import is_party, load_transaction

logger = logging.getLogger(__name__)


# =============================================================================
# STATE MACHINE
# =============================================================================

ALLOWED_TRANSITIONS: dict[DisputeStatus, frozenset[DisputeStatus]] = {
    DisputeStatus.FILED: frozenset({DisputeStatus.EVIDENCE_SUBMISSION, DisputeStatus.EXPIRED}),
    DisputeStatus.EVIDENCE_SUBMISSION: frozenset({DisputeStatus.RULED}),
    DisputeStatus.RULED: frozenset(
        {
            DisputeStatus.ACCEPTED,
            DisputeStatus.REJECTED,
            DisputeStatus.ESCALATED,
            DisputeStatus.DISMISSED,
            DisputeStatus.CLOSED,
        }
    ),
    DisputeStatus.ACCEPTED: frozenset({DisputeStatus.CLOSED}),
    DisputeStatus.REJECTED: frozenset({DisputeStatus.ESCALATED, DisputeStatus.CLOSED}),
    DisputeStatus.ESCALATED: frozenset({DisputeStatus.CLOSED}),
    DisputeStatus.CLOSED: frozenset(),
    DisputeStatus.DISMISSED: frozenset(),
    DisputeStatus.EXPIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset({DisputeStatus.CLOSED, DisputeStatus.DISMISSED, DisputeStatus.EXPIRED})

FILEABLE_TRANSACTION_STATUSES = (
    TransactionStatus.ACCEPTED,
    TransactionStatus.IN_PROGRESS,
    TransactionStatus.COMPLETED,
)


def _record_event(
    db: Session,
    dispute: DisputeDB,
    from_status: DisputeStatus | None,
    to_status: DisputeStatus,
    actor: str,
    note: str | None,
    now: datetime,
) -> None:
    db.add(
        DisputeEventDB(
            dispute_id=dispute.id,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            note=note,
            created_at=now,
        )
    )


def transition(
    db: Session,
    dispute: DisputeDB,
    to_status: DisputeStatus,
    actor: str,
    note: str | None = None,
    now: datetime | None = None,
) -> None:
    """Move a dispute to ``to_status`` if the state machine allows it."""
    now = now or utcnow()
    current = dispute.status
    if to_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidDisputeState(f"Dispute is {current.value}; cannot move to {to_status.value}")

    dispute.status = to_status
    if to_status in TERMINAL_STATUSES:
        dispute.closed_at = now
    _record_event(db, dispute, current, to_status, actor, note, now)
    db.flush()
    logger.info("Dispute %s: %s -> %s (%s)", dispute.external_id, current.value, to_status.value, actor)


def require_status(dispute: DisputeDB, *allowed: DisputeStatus) -> None:
    if dispute.status not in allowed:
        expected = " or ".join(s.value for s in allowed)
        raise InvalidDisputeState(f"Dispute is {dispute.status.value}, expected {expected}")


# =============================================================================
# LOOKUP AND ROLES
# =============================================================================


def load_dispute(db: Session, dispute_ref: str, lock: bool = False) -> DisputeDB:
    query = db.query(DisputeDB).filter(
        (DisputeDB.external_id == dispute_ref) | (DisputeDB.id == dispute_ref)
    )
    if lock:
        query = query.with_for_update()
    dispute = query.one_or_none()
    if dispute is None:
        raise DisputeNotFound(f"Dispute {dispute_ref} not found")
    return dispute


def party_role(dispute: DisputeDB, agent_id: str) -> PartyRole | None:
    """Which side of the dispute ``agent_id`` is on, or None for outsiders."""
    is_claimant = dispute.claimant_agent_id == agent_id
    is_respondent = dispute.respondent_agent_id == agent_id
    if is_claimant and is_respondent:
        raise DataIntegrityError(f"Agent {agent_id} is both claimant and respondent on {dispute.external_id}")
    if is_claimant:
        return PartyRole.CLAIMANT
    if is_respondent:
        return PartyRole.RESPONDENT
    return None


def require_party(dispute: DisputeDB, agent: AgentDB) -> PartyRole:
    role = party_role(dispute, agent.id)
    if role is None:
        logger.warning("Agent %s is not a party to dispute %s", agent.external_id, dispute.external_id)
        raise NotParty("Agent is not a party to this dispute")
    return role


def other_party_id(dispute: DisputeDB, role: PartyRole) -> str:
    if role == PartyRole.CLAIMANT:
        return dispute.respondent_agent_id
    return dispute.claimant_agent_id


def final_ruling(dispute: DisputeDB) -> Ruling | None:
    """The ruling that binds the parties: a human ruling overrides the AI one."""
    escalation = dispute.escalation
    if escalation is not None and escalation.arbitrator_ruling is not None:
        return escalation.arbitrator_ruling
    return dispute.ruling


# =============================================================================
# DEADLINES
# =============================================================================


def refresh_deadlines(db: Session, dispute: DisputeDB, now: datetime | None = None) -> bool:
    """Apply any deadline that has elapsed. Returns True if the dispute changed."""
    now = now or utcnow()

    if dispute.status == DisputeStatus.FILED and now > dispute.response_deadline:
        transition(db, dispute, DisputeStatus.EXPIRED, SYSTEM_ACTOR, "Response deadline elapsed", now)
        policy = trust.TrustPolicy.from_settings()
        trust.update_trust_score(
            db,
            dispute.respondent_agent_id,
            policy.no_response,
            "No response to dispute",
            reference_type="DISPUTE",
            reference_id=dispute.external_id,
            now=now,
        )
        trust.record_dispute_outcome(db, dispute.respondent_agent_id, won=False)
        trust.record_dispute_outcome(db, dispute.claimant_agent_id, won=True)
        return True

    if (
        dispute.status in (DisputeStatus.RULED, DisputeStatus.REJECTED)
        and dispute.acceptance_deadline is not None
        and now > dispute.acceptance_deadline
        and dispute.escalation is None
    ):
        transition(
            db, dispute, DisputeStatus.CLOSED, SYSTEM_ACTOR, "Acceptance window elapsed; ruling stands", now
        )
        return True

    return False


def is_ready_for_arbitration(dispute: DisputeDB, now: datetime | None = None) -> bool:
    """Both parties finished submitting, or the evidence window has elapsed."""
    now = now or utcnow()
    if dispute.status != DisputeStatus.EVIDENCE_SUBMISSION:
        return False
    if dispute.claimant_submission_complete and dispute.respondent_submission_complete:
        return True
    return dispute.evidence_deadline is not None and now >= dispute.evidence_deadline


def evidence_window_open(dispute: DisputeDB, now: datetime | None = None) -> bool:
    now = now or utcnow()
    if dispute.status != DisputeStatus.EVIDENCE_SUBMISSION:
        return False
    return dispute.evidence_deadline is None or now < dispute.evidence_deadline


# =============================================================================
# FILING AND RESPONSE
# =============================================================================


def file_dispute(
    db: Session,
    claimant: AgentDB,
    data: FileDisputeInput,
    operator_id: str,
    ledger: HttpCreditLedger | None = None,
    now: datetime | None = None,
) -> DisputeDB:
    """File a dispute over a transaction the claimant is party to.

    The filing fee is deducted last so that a failure in any earlier step
    leaves the operator's credits untouched.
    """
    now = now or utcnow()
    txn = load_transaction(db, data.transaction_id, lock=True)

    if not is_party(txn, claimant.id):
        logger.warning("Agent %s tried to file on foreign transaction %s", claimant.external_id, txn.external_id)
        raise NotParty("Agent is not a party to this transaction")
    if txn.status not in FILEABLE_TRANSACTION_STATUSES:
        raise CannotFileDispute(f"Transaction is {txn.status.value}; disputes require an accepted transaction")

    active = (
        db.query(DisputeDB)
        .filter(DisputeDB.transaction_id == txn.id)
        .filter(DisputeDB.status.notin_(list(TERMINAL_STATUSES)))
        .first()
    )
    if active is not None:
        raise CannotFileDispute(f"Transaction already has an active dispute ({active.external_id})")

    limit = quota.check_dispute_limit(db, claimant.id, now=now)
    if not limit.can_file:
        raise CannotFileDispute(
            f"Monthly dispute limit reached ({limit.disputes_this_month}/{limit.limit})"
        )
    cost = quota.calculate_dispute_cost(txn.stated_value, limit.disputes_this_month)
    if not cost.is_free:
        quota.require_credits(ledger, operator_id, cost.estimated_cost, "paid dispute filing")

    respondent_id = txn.receiver_agent_id if claimant.id == txn.proposer_agent_id else txn.proposer_agent_id
    dispute = DisputeDB(
        external_id=external_id("RDISP"),
        transaction_id=txn.id,
        claimant_agent_id=claimant.id,
        respondent_agent_id=respondent_id,
        claim_type=data.claim_type,
        claim_summary=data.claim_summary,
        claim_details=data.claim_details,
        requested_resolution=data.requested_resolution,
        stated_value=txn.stated_value,
        status=DisputeStatus.FILED,
        response_deadline=now + timedelta(hours=settings.response_window_hours),
        credits_charged=cost.estimated_cost,
        was_free=cost.is_free,
        created_at=now,
        updated_at=now,
    )
    db.add(dispute)
    db.flush()
    _record_event(db, dispute, None, DisputeStatus.FILED, claimant.id, data.claim_summary[:500], now)

    trust.increment_dispute_count(db, claimant.id, PartyRole.CLAIMANT)
    trust.increment_dispute_count(db, respondent_id, PartyRole.RESPONDENT)
    txn.status = TransactionStatus.DISPUTED
    db.flush()

    if not cost.is_free:
        ledger.deduct(operator_id, cost.estimated_cost, "DISPUTE", dispute.external_id)

    logger.info(
        "Dispute %s filed by %s over %s (%s, %d credits)",
        dispute.external_id,
        claimant.external_id,
        txn.external_id,
        "free" if cost.is_free else "paid",
        cost.estimated_cost,
    )
    return dispute


def respond_to_dispute(
    db: Session,
    dispute_ref: str,
    respondent: AgentDB,
    response_summary: str,
    response_details: str | None = None,
    now: datetime | None = None,
) -> DisputeDB:
    now = now or utcnow()
    dispute = load_dispute(db, dispute_ref, lock=True)
    if require_party(dispute, respondent) != PartyRole.RESPONDENT:
        raise NotParty("Only the respondent can respond to a dispute")
    refresh_deadlines(db, dispute, now)
    require_status(dispute, DisputeStatus.FILED)

    dispute.response_summary = response_summary
    dispute.response_details = response_details
    dispute.responded_at = now
    dispute.evidence_deadline = now + timedelta(hours=settings.evidence_window_hours)
    transition(db, dispute, DisputeStatus.EVIDENCE_SUBMISSION, respondent.id, "Respondent answered", now)
    return dispute


def mark_submission_complete(
    db: Session, dispute_ref: str, agent: AgentDB, now: datetime | None = None
) -> DisputeDB:
    now = now or utcnow()
    dispute = load_dispute(db, dispute_ref, lock=True)
    role = require_party(dispute, agent)
    require_status(dispute, DisputeStatus.EVIDENCE_SUBMISSION)

    if role == PartyRole.CLAIMANT:
        dispute.claimant_submission_complete = True
    else:
        dispute.respondent_submission_complete = True
    db.flush()
    logger.info("Dispute %s: %s marked submission complete", dispute.external_id, role.value)
    return dispute


def extend_submission_deadline(
    db: Session,
    dispute_ref: str,
    agent: AgentDB,
    additional_hours: int,
    now: datetime | None = None,
) -> DisputeDB:
    """Let the claimant give the other side more time to respond or submit."""
    now = now or utcnow()
    if additional_hours < settings.min_deadline_extension_hours:
        raise ValidationFailed(
            f"Extension must be at least {settings.min_deadline_extension_hours} hour(s)"
        )
    dispute = load_dispute(db, dispute_ref, lock=True)
    if require_party(dispute, agent) != PartyRole.CLAIMANT:
        raise NotParty("Only the claimant can extend the submission deadline")
    refresh_deadlines(db, dispute, now)
    require_status(dispute, DisputeStatus.FILED, DisputeStatus.EVIDENCE_SUBMISSION)

    extension = timedelta(hours=additional_hours)
    if dispute.status == DisputeStatus.FILED:
        dispute.response_deadline = dispute.response_deadline + extension
    else:
        if dispute.evidence_deadline is not None and now >= dispute.evidence_deadline:
            raise DeadlinePassed("Evidence window has already closed")
        dispute.evidence_deadline = (dispute.evidence_deadline or now) + extension
    db.flush()
    logger.info("Dispute %s deadline extended by %dh", dispute.external_id, additional_hours)
    return dispute


# =============================================================================
# RULING
# =============================================================================


def apply_ruling(
    db: Session,
    dispute: DisputeDB,
    result: ArbitrationResult,
    now: datetime | None = None,
) -> DisputeDB:
    """Persist an arbitration result and apply its trust consequences.

    The caller holds the dispute row lock and has confirmed the dispute is
    still awaiting a ruling.
    """
    now = now or utcnow()
    require_status(dispute, DisputeStatus.EVIDENCE_SUBMISSION)

    dispute.ruling = result.ruling
    dispute.ruling_reasoning = result.reasoning
    dispute.ruling_details = {
        "confidence": result.confidence,
        "key_factors": list(result.key_factors),
        "mitigating_factors": list(result.mitigating_factors),
        "recommendation": result.recommendation,
    }
    dispute.ruled_at = now
    dispute.acceptance_deadline = now + timedelta(days=settings.acceptance_window_days)
    transition(db, dispute, DisputeStatus.RULED, SYSTEM_ACTOR, f"AI ruling: {result.ruling.value}", now)

    policy = trust.TrustPolicy.from_settings()
    changes = {}
    for role, agent_id in (
        (PartyRole.CLAIMANT, dispute.claimant_agent_id),
        (PartyRole.RESPONDENT, dispute.respondent_agent_id),
    ):
        won = trust.is_party_winner(result.ruling, role)
        delta = trust.calculate_trust_impact(result.ruling, dispute.stated_value, won, policy)
        changes[role] = delta
        if delta:
            trust.update_trust_score(
                db,
                agent_id,
                delta,
                f"Dispute ruling: {result.ruling.value}",
                reference_type="DISPUTE",
                reference_id=dispute.external_id,
                now=now,
            )
        if result.ruling != Ruling.SPLIT:
            trust.record_dispute_outcome(db, agent_id, won=won)

    dispute.claimant_score_change = changes[PartyRole.CLAIMANT]
    dispute.respondent_score_change = changes[PartyRole.RESPONDENT]
    db.flush()
    return dispute


# =============================================================================
# ACCEPTANCE
# =============================================================================


def _settle_acceptance(db: Session, dispute: DisputeDB, actor: str, now: datetime) -> None:
    if dispute.claimant_accepted and dispute.respondent_accepted:
        transition(db, dispute, DisputeStatus.ACCEPTED, actor, "Both parties accepted", now)
        transition(db, dispute, DisputeStatus.CLOSED, SYSTEM_ACTOR, "Ruling is binding", now)
    elif dispute.claimant_accepted is not None and dispute.respondent_accepted is not None:
        transition(db, dispute, DisputeStatus.REJECTED, actor, "Ruling rejected by at least one party", now)


def _record_response(dispute: DisputeDB, role: PartyRole) -> None:
    current = dispute.claimant_accepted if role == PartyRole.CLAIMANT else dispute.respondent_accepted
    if current is not None:
        raise InvalidDisputeState(f"{role.value.title()} has already responded to this ruling")


def accept_decision(
    db: Session,
    dispute_ref: str,
    agent: AgentDB,
    comment: str | None = None,
    now: datetime | None = None,
) -> DisputeDB:
    now = now or utcnow()
    dispute = load_dispute(db, dispute_ref, lock=True)
    role = require_party(dispute, agent)
    refresh_deadlines(db, dispute, now)
    require_status(dispute, DisputeStatus.RULED)
    _record_response(dispute, role)

    if role == PartyRole.CLAIMANT:
        dispute.claimant_accepted = True
    else:
        dispute.respondent_accepted = True
    if comment:
        _record_event(db, dispute, dispute.status, dispute.status, agent.id, f"Accepted: {comment}", now)
    db.flush()
    _settle_acceptance(db, dispute, agent.id, now)
    return dispute


def reject_decision(
    db: Session,
    dispute_ref: str,
    agent: AgentDB,
    reason: RejectionReason,
    details: str | None = None,
    now: datetime | None = None,
) -> DisputeDB:
    now = now or utcnow()
    dispute = load_dispute(db, dispute_ref, lock=True)
    role = require_party(dispute, agent)
    refresh_deadlines(db, dispute, now)
    require_status(dispute, DisputeStatus.RULED)
    _record_response(dispute, role)

    reason = RejectionReason(reason)
    if role == PartyRole.CLAIMANT:
        dispute.claimant_accepted = False
        dispute.claimant_rejection_reason = reason
        dispute.claimant_rejection_details = details
    else:
        dispute.respondent_accepted = False
        dispute.respondent_rejection_reason = reason
        dispute.respondent_rejection_details = details
    db.flush()
    logger.info("Dispute %s: %s rejected the ruling (%s)", dispute.external_id, role.value, reason.value)
    _settle_acceptance(db, dispute, agent.id, now)
    return dispute


def has_rejection(dispute: DisputeDB) -> bool:
    return dispute.claimant_accepted is False or dispute.respondent_accepted is False


# =============================================================================
# READS
# =============================================================================


def get_dispute(db: Session, dispute_ref: str, agent: AgentDB) -> DisputeDB:
    dispute = load_dispute(db, dispute_ref)
    require_party(dispute, agent)
    return dispute


def list_disputes(
    db: Session,
    agent: AgentDB,
    role: PartyRole | None = None,
    status: DisputeStatus | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[DisputeDB]:
    query = db.query(DisputeDB)
    if role == PartyRole.CLAIMANT:
        query = query.filter(DisputeDB.claimant_agent_id == agent.id)
    elif role == PartyRole.RESPONDENT:
        query = query.filter(DisputeDB.respondent_agent_id == agent.id)
    else:
        query = query.filter(
            (DisputeDB.claimant_agent_id == agent.id) | (DisputeDB.respondent_agent_id == agent.id)
        )
    if status is not None:
        query = query.filter(DisputeDB.status == status)
    return query.order_by(DisputeDB.created_at.desc()).offset(offset).limit(limit).all()


def find_ready_for_arbitration(db: Session, now: datetime | None = None) -> list[str]:
    """Ids of disputes whose evidence phase is over."""
    now = now or utcnow()
    candidates = db.query(DisputeDB).filter(DisputeDB.status == DisputeStatus.EVIDENCE_SUBMISSION).all()
    return [d.id for d in candidates if is_ready_for_arbitration(d, now)]


def find_with_due_deadlines(db: Session, now: datetime | None = None) -> list[str]:
    """Ids of disputes with an elapsed response or acceptance deadline."""
    now = now or utcnow()
    filed = (
        db.query(DisputeDB.id)
        .filter(DisputeDB.status == DisputeStatus.FILED, DisputeDB.response_deadline < now)
        .all()
    )
    awaiting = (
        db.query(DisputeDB)
        .filter(
            DisputeDB.status.in_([DisputeStatus.RULED, DisputeStatus.REJECTED]),
            DisputeDB.acceptance_deadline < now,
        )
        .all()
    )
    return [row.id for row in filed] + [d.id for d in awaiting if d.escalation is None]

