"""Human escalation of AI rulings.

A party that rejected a ruling may pay to have a human arbitrator review
it; low-confidence rulings are escalated automatically at no cost. The
human ruling closes the dispute, applies the escalation trust outcome and
records an accuracy comparison for the feedback loop.

The webhook notice for a new escalation is sent by ``notify_escalation``
once the escalation is committed, never while the dispute row is locked.
"""

from __future__ import annotations

import logging
from datetime import datetime

import httpx
from sqlalchemy.orm import Session

from agent_resolve import disputes, feedback, quota, trust
from agent_resolve.clients import HttpCreditLedger
from agent_resolve.config import settings
from agent_resolve.database import SessionFactory, session_scope
from agent_resolve.errors import (
    EscalationNotFound,
    InvalidDisputeState,
)
from agent_resolve.models import (
    SYSTEM_ACTOR,
    AgentDB,
    DisputeDB,
    DisputeStatus,
    EscalationDB,
    EscalationStatus,
    PartyRole,
    Ruling,
    external_id,
    utcnow,
)

logger = logging.getLogger(__name__)


def _notice_payload(escalation: EscalationDB) -> dict:
    dispute = escalation.dispute
    confidence = (dispute.ruling_details or {}).get("confidence")
    return {
        "text": (
            f"*Dispute Escalated*: `{dispute.external_id}` ({dispute.claim_type.value})\n"
            f"Requested by: {'auto-escalation' if escalation.requested_by == SYSTEM_ACTOR else 'party'}\n"
            f"AI ruling: {dispute.ruling.value if dispute.ruling else 'none'}"
            + (f" (confidence {confidence:.0%})" if confidence is not None else "")
            + f"\nReason: {escalation.reason}"
        ),
    }


def notify_escalation(
    session_factory: SessionFactory | None, escalation_id: str, now: datetime | None = None
) -> bool:
    """Send an escalation notice to the configured webhook (e.g., Slack).

    Runs in its own short transactions with no lock held during the POST.
    A notice that went out is stamped so repeat requests do not resend it.
    Returns True if a notice was sent.
    """
    if not settings.escalation_webhook_url:
        logger.warning("Escalation %s recorded but no escalation webhook configured", escalation_id)
        return False

    with session_scope(session_factory) as db:
        escalation = db.get(EscalationDB, escalation_id)
        if escalation is None or escalation.notified_at is not None:
            return False
        payload = _notice_payload(escalation)

    try:
        with httpx.Client(timeout=5.0) as client:
            client.post(settings.escalation_webhook_url, json=payload)
    except httpx.HTTPError:
        logger.exception("Failed to send escalation notification for %s", escalation_id)
        return False

    with session_scope(session_factory) as db:
        escalation = db.get(EscalationDB, escalation_id)
        escalation.notified_at = now or utcnow()
    return True


def request_escalation(
    db: Session,
    dispute_ref: str,
    agent: AgentDB | None,
    reason: str,
    operator_id: str | None = None,
    ledger: HttpCreditLedger | None = None,
    now: datetime | None = None,
) -> EscalationDB:
    """Escalate a ruling to human review.

    ``agent=None`` marks a system-triggered escalation, which is free and
    does not require a prior rejection. A second request for the same
    dispute returns the existing escalation without charging again.
    """
    now = now or utcnow()
    dispute = disputes.load_dispute(db, dispute_ref, lock=True)
    if agent is not None:
        disputes.require_party(dispute, agent)

    if dispute.escalation is not None:
        logger.info("Dispute %s already escalated; returning existing escalation", dispute.external_id)
        return dispute.escalation

    if agent is None:
        disputes.require_status(dispute, DisputeStatus.RULED)
    else:
        disputes.refresh_deadlines(db, dispute, now)
        disputes.require_status(dispute, DisputeStatus.RULED, DisputeStatus.REJECTED)
        if not disputes.has_rejection(dispute):
            raise InvalidDisputeState("A ruling can only be escalated after a party has rejected it")

    fee = 0 if agent is None else settings.escalation_fee_credits
    if fee:
        quota.require_credits(ledger, operator_id, fee, "escalation fees")

    escalation = EscalationDB(
        external_id=external_id("RESC"),
        dispute=dispute,
        requested_by=agent.id if agent is not None else SYSTEM_ACTOR,
        reason=reason,
        status=EscalationStatus.REQUESTED,
        credits_charged=fee,
        requested_at=now,
    )
    db.add(escalation)
    db.flush()
    disputes.transition(
        db,
        dispute,
        DisputeStatus.ESCALATED,
        escalation.requested_by,
        "Auto-escalated: low confidence" if agent is None else "Escalated by party",
        now,
    )

    if fee:
        ledger.deduct(operator_id, fee, "ESCALATION", escalation.external_id)
    return escalation


def _load_escalation(dispute: DisputeDB) -> EscalationDB:
    if dispute.escalation is None:
        raise EscalationNotFound(f"Dispute {dispute.external_id} has not been escalated")
    return dispute.escalation


def get_escalation_status(db: Session, dispute_ref: str, agent: AgentDB) -> EscalationDB:
    dispute = disputes.get_dispute(db, dispute_ref, agent)
    return _load_escalation(dispute)


def assign_arbitrator(
    db: Session, dispute_ref: str, arbitrator_id: str, now: datetime | None = None
) -> EscalationDB:
    dispute = disputes.load_dispute(db, dispute_ref, lock=True)
    escalation = _load_escalation(dispute)
    if escalation.status == EscalationStatus.DECIDED:
        raise InvalidDisputeState("Escalation has already been decided")

    escalation.arbitrator_id = arbitrator_id
    escalation.status = EscalationStatus.ASSIGNED
    escalation.assigned_at = now or utcnow()
    db.flush()
    logger.info("Escalation %s assigned to %s", escalation.external_id, arbitrator_id)
    return escalation


def record_human_ruling(
    db: Session,
    dispute_ref: str,
    arbitrator_id: str,
    ruling: Ruling,
    reasoning: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> EscalationDB:
    """Store a human arbitrator's ruling and close the dispute."""
    now = now or utcnow()
    ruling = Ruling(ruling)
    dispute = disputes.load_dispute(db, dispute_ref, lock=True)
    disputes.require_status(dispute, DisputeStatus.ESCALATED)
    escalation = _load_escalation(dispute)
    if escalation.status == EscalationStatus.DECIDED:
        raise InvalidDisputeState("Escalation has already been decided")

    escalation.arbitrator_id = arbitrator_id
    escalation.arbitrator_ruling = ruling
    escalation.arbitrator_reasoning = reasoning
    escalation.arbitrator_notes = notes
    escalation.status = EscalationStatus.DECIDED
    escalation.decided_at = now
    db.flush()

    if dispute.ruling is not None:
        feedback.create_accuracy_comparison(db, dispute, escalation, now=now)

    if ruling != Ruling.SPLIT:
        policy = trust.TrustPolicy.from_settings()
        for role, agent_id in (
            (PartyRole.CLAIMANT, dispute.claimant_agent_id),
            (PartyRole.RESPONDENT, dispute.respondent_agent_id),
        ):
            won = trust.is_party_winner(ruling, role)
            trust.update_trust_score(
                db,
                agent_id,
                policy.escalation_favorable if won else policy.escalation_unfavorable,
                f"Escalation ruling: {ruling.value}",
                reference_type="ESCALATION",
                reference_id=escalation.external_id,
                now=now,
            )

    disputes.transition(
        db, dispute, DisputeStatus.CLOSED, arbitrator_id, f"Human ruling: {ruling.value}", now
    )
    return escalation
