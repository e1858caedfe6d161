"""Evidence store.

Both parties may add evidence any number of times while a dispute is in
EVIDENCE_SUBMISSION and the evidence window is open. Entries are
append-only and numbered in submission order, which is the order the
arbitrator reads them in.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from agent_resolve import disputes
from agent_resolve.config import settings
from agent_resolve.errors import DeadlinePassed, ValidationFailed
from agent_resolve.extraction import extract_text
from agent_resolve.models import (
    AgentDB,
    DisputeDB,
    DisputeStatus,
    EvidenceDB,
    EvidenceType,
    external_id,
    utcnow,
)

logger = logging.getLogger(__name__)


def _next_sequence(db: Session, dispute: DisputeDB) -> int:
    current = db.query(func.max(EvidenceDB.sequence)).filter(EvidenceDB.dispute_id == dispute.id).scalar()
    return (current or 0) + 1


def _append(
    db: Session,
    dispute_ref: str,
    agent: AgentDB,
    evidence_type: EvidenceType,
    title: str,
    content: str,
    now: datetime,
    source_filename: str | None = None,
    page_count: int | None = None,
    truncated: bool = False,
) -> EvidenceDB:
    dispute = disputes.load_dispute(db, dispute_ref, lock=True)
    role = disputes.require_party(dispute, agent)
    disputes.require_status(dispute, DisputeStatus.EVIDENCE_SUBMISSION)
    if not disputes.evidence_window_open(dispute, now):
        raise DeadlinePassed("The evidence submission window has closed")

    if len(content) > settings.max_evidence_chars:
        raise ValidationFailed(f"Evidence content exceeds {settings.max_evidence_chars} characters")

    evidence = EvidenceDB(
        external_id=external_id("REVID"),
        dispute_id=dispute.id,
        submitted_by_agent_id=agent.id,
        submitted_by_role=role,
        sequence=_next_sequence(db, dispute),
        evidence_type=EvidenceType(evidence_type),
        title=title,
        content=content,
        source_filename=source_filename,
        page_count=page_count,
        truncated=truncated,
        created_at=now,
    )
    db.add(evidence)
    db.flush()
    logger.info(
        "Evidence %s (#%d, %s) added to %s by %s",
        evidence.external_id,
        evidence.sequence,
        evidence.evidence_type.value,
        dispute.external_id,
        role.value,
    )
    return evidence


def add_evidence(
    db: Session,
    dispute_ref: str,
    agent: AgentDB,
    evidence_type: EvidenceType,
    title: str,
    content: str,
    now: datetime | None = None,
) -> EvidenceDB:
    return _append(db, dispute_ref, agent, evidence_type, title, content, now or utcnow())


def add_file_evidence(
    db: Session,
    dispute_ref: str,
    agent: AgentDB,
    title: str,
    filename: str,
    data: bytes,
    evidence_type: EvidenceType = EvidenceType.DOCUMENT,
    now: datetime | None = None,
) -> EvidenceDB:
    """Extract text from an uploaded file and store it as evidence.

    Extraction runs before the dispute is touched, so a failure leaves no
    trace on the dispute.
    """
    extracted = extract_text(data, filename)
    return _append(
        db,
        dispute_ref,
        agent,
        evidence_type,
        title,
        extracted.text,
        now or utcnow(),
        source_filename=filename,
        page_count=extracted.page_count,
        truncated=extracted.truncated,
    )


def list_evidence(db: Session, dispute_ref: str, agent: AgentDB) -> list[EvidenceDB]:
    dispute = disputes.load_dispute(db, dispute_ref)
    disputes.require_party(dispute, agent)
    return (
        db.query(EvidenceDB)
        .filter(EvidenceDB.dispute_id == dispute.id)
        .order_by(EvidenceDB.sequence)
        .all()
    )
