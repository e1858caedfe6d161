"""Feedback loop.

Closes the loop between AI rulings and their outcomes:

- ``create_accuracy_comparison`` records whether a human arbitrator agreed
  with the AI ruling on an escalated dispute.
- ``submit_feedback`` collects post-resolution ratings from the parties.
- ``aggregate_metrics`` is a batch job that rolls a period of decisions up
  into a single ``DecisionEngineMetricsDB`` row.
- ``get_calibration_context`` turns the latest metrics row into notes that
  are appended to future arbitration prompts.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from agent_resolve import disputes, trust
from agent_resolve.config import settings
from agent_resolve.errors import (
    FeedbackAlreadySubmitted,
    FeedbackWindowClosed,
    InvalidDisputeState,
    MetricsAlreadyAggregated,
    ValidationFailed,
)
from agent_resolve.models import (
    AccuracyComparisonDB,
    AgentDB,
    DecisionEngineMetricsDB,
    DecisionFeedbackDB,
    DisputeDB,
    DisputeStatus,
    EscalationDB,
    utcnow,
)

logger = logging.getLogger(__name__)

# Calibration heuristics
OVERCONFIDENCE_THRESHOLD = 0.7
CLAIM_TYPE_ESCALATION_THRESHOLD = 0.3
CLAIM_TYPE_MIN_SAMPLES = 5
LOW_RATING_THRESHOLD = 3.0
TOP_REJECTION_REASONS = 5


def _mean(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


# ---------------------------------------------------------------------------
# Accuracy comparison
# ---------------------------------------------------------------------------


def create_accuracy_comparison(
    db: Session,
    dispute: DisputeDB,
    escalation: EscalationDB,
    now: datetime | None = None,
) -> AccuracyComparisonDB:
    if dispute.ruling is None or escalation.arbitrator_ruling is None:
        raise InvalidDisputeState("Accuracy comparison needs both an AI ruling and a human ruling")

    existing = (
        db.query(AccuracyComparisonDB)
        .filter(AccuracyComparisonDB.escalation_id == escalation.id)
        .one_or_none()
    )
    if existing is not None:
        return existing

    details = dispute.ruling_details or {}
    comparison = AccuracyComparisonDB(
        escalation=escalation,
        dispute_id=dispute.id,
        ai_ruling=dispute.ruling,
        ai_confidence=details.get("confidence"),
        ai_key_factors=list(details.get("key_factors") or []),
        ai_reasoning=dispute.ruling_reasoning,
        human_ruling=escalation.arbitrator_ruling,
        human_reasoning=escalation.arbitrator_reasoning,
        ruling_agreed=dispute.ruling == escalation.arbitrator_ruling,
        dispute_type=dispute.claim_type,
        stated_value=dispute.stated_value,
        created_at=now or utcnow(),
    )
    db.add(comparison)
    db.flush()
    logger.info(
        "Accuracy comparison for %s: AI %s vs human %s (%s)",
        dispute.external_id,
        comparison.ai_ruling.value,
        comparison.human_ruling.value,
        "agreed" if comparison.ruling_agreed else "disagreed",
    )
    return comparison


# ---------------------------------------------------------------------------
# Party feedback
# ---------------------------------------------------------------------------


def submit_feedback(
    db: Session,
    dispute_ref: str,
    agent: AgentDB,
    fairness_rating: int,
    reasoning_rating: int,
    evidence_rating: int,
    comment: str | None = None,
    now: datetime | None = None,
) -> DecisionFeedbackDB:
    now = now or utcnow()
    dispute = disputes.load_dispute(db, dispute_ref)
    disputes.require_status(dispute, DisputeStatus.CLOSED)
    role = disputes.require_party(dispute, agent)

    if dispute.closed_at is None or now > dispute.closed_at + timedelta(days=settings.feedback_window_days):
        raise FeedbackWindowClosed(
            f"Feedback is accepted for {settings.feedback_window_days} days after the dispute closes"
        )

    existing = (
        db.query(DecisionFeedbackDB)
        .filter(DecisionFeedbackDB.dispute_id == dispute.id, DecisionFeedbackDB.agent_id == agent.id)
        .one_or_none()
    )
    if existing is not None:
        raise FeedbackAlreadySubmitted("Feedback for this dispute has already been submitted")

    for name, rating in (
        ("fairness", fairness_rating),
        ("reasoning", reasoning_rating),
        ("evidence", evidence_rating),
    ):
        if not 1 <= rating <= 5:
            raise ValidationFailed(f"{name} rating must be between 1 and 5")

    ruling = disputes.final_ruling(dispute)
    feedback = DecisionFeedbackDB(
        dispute_id=dispute.id,
        agent_id=agent.id,
        party_role=role,
        was_winner=ruling is not None and trust.is_party_winner(ruling, role),
        fairness_rating=fairness_rating,
        reasoning_rating=reasoning_rating,
        evidence_rating=evidence_rating,
        comment=comment,
        created_at=now,
    )
    db.add(feedback)
    db.flush()
    logger.info("Feedback recorded for %s from %s", dispute.external_id, role.value)
    return feedback


# ---------------------------------------------------------------------------
# Metrics aggregation
# ---------------------------------------------------------------------------


def aggregate_metrics(
    db: Session,
    period_start: datetime,
    period_end: datetime,
    now: datetime | None = None,
) -> DecisionEngineMetricsDB | None:
    """Roll up all decisions ruled in ``[period_start, period_end)``.

    Returns None without writing when no dispute was ruled in the period.
    """
    if period_end <= period_start:
        raise ValidationFailed("period_end must be after period_start")

    overlapping = (
        db.query(DecisionEngineMetricsDB)
        .filter(
            DecisionEngineMetricsDB.period_start < period_end,
            DecisionEngineMetricsDB.period_end > period_start,
        )
        .first()
    )
    if overlapping is not None:
        raise MetricsAlreadyAggregated(
            f"Metrics already aggregated for {overlapping.period_start:%Y-%m-%d} to "
            f"{overlapping.period_end:%Y-%m-%d}"
        )

    decisions = (
        db.query(DisputeDB)
        .filter(DisputeDB.ruled_at >= period_start, DisputeDB.ruled_at < period_end)
        .all()
    )
    if not decisions:
        logger.info("No decisions between %s and %s; skipping metrics", period_start, period_end)
        return None

    total = len(decisions)
    both_accepted = [d for d in decisions if d.claimant_accepted and d.respondent_accepted]
    escalated = [d for d in decisions if d.escalation is not None]

    confidences = [
        float(d.ruling_details["confidence"])
        for d in decisions
        if d.ruling_details and d.ruling_details.get("confidence") is not None
    ]

    comparisons = (
        db.query(AccuracyComparisonDB)
        .filter(
            AccuracyComparisonDB.created_at >= period_start,
            AccuracyComparisonDB.created_at < period_end,
        )
        .all()
    )
    agreed = [c for c in comparisons if c.ruling_agreed]
    disagreed = [c for c in comparisons if not c.ruling_agreed]

    feedback = (
        db.query(DecisionFeedbackDB)
        .filter(
            DecisionFeedbackDB.created_at >= period_start,
            DecisionFeedbackDB.created_at < period_end,
        )
        .all()
    )

    reasons: Counter[str] = Counter()
    for d in decisions:
        for reason in (d.claimant_rejection_reason, d.respondent_rejection_reason):
            if reason is not None:
                reasons[reason.value] += 1
    top_reasons = sorted(reasons.items(), key=lambda item: (-item[1], item[0]))[:TOP_REJECTION_REASONS]

    by_type: dict[str, dict] = {}
    for claim_type in sorted({d.claim_type.value for d in decisions}):
        of_type = [d for d in decisions if d.claim_type.value == claim_type]
        by_type[claim_type] = {
            "total": len(of_type),
            "escalation_rate": sum(1 for d in of_type if d.escalation is not None) / len(of_type),
            "acceptance_rate": sum(1 for d in of_type if d.claimant_accepted and d.respondent_accepted)
            / len(of_type),
        }

    metrics = DecisionEngineMetricsDB(
        period_start=period_start,
        period_end=period_end,
        total_decisions=total,
        both_accepted_count=len(both_accepted),
        escalated_count=len(escalated),
        both_accepted_rate=len(both_accepted) / total,
        escalation_rate=len(escalated) / total,
        comparisons_count=len(comparisons),
        human_agreement_rate=len(agreed) / len(comparisons) if comparisons else None,
        avg_confidence=_mean(confidences),
        avg_confidence_when_agreed=_mean([c.ai_confidence for c in agreed if c.ai_confidence is not None]),
        avg_confidence_when_disagreed=_mean(
            [c.ai_confidence for c in disagreed if c.ai_confidence is not None]
        ),
        feedback_count=len(feedback),
        avg_fairness_rating=_mean([f.fairness_rating for f in feedback]),
        avg_reasoning_rating=_mean([f.reasoning_rating for f in feedback]),
        avg_evidence_rating=_mean([f.evidence_rating for f in feedback]),
        by_claim_type=by_type,
        top_rejection_reasons=[{"reason": reason, "count": count} for reason, count in top_reasons],
        created_at=now or utcnow(),
    )
    db.add(metrics)
    db.flush()
    logger.info(
        "Aggregated %d decisions (%s to %s): accepted %.0f%%, escalated %.0f%%",
        total,
        period_start,
        period_end,
        metrics.both_accepted_rate * 100,
        metrics.escalation_rate * 100,
    )
    return metrics


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------


def _humanize(code: str) -> str:
    return code.replace("_", " ").lower()


def get_calibration_context(db: Session) -> str:
    """Calibration notes for the arbitrator, or "" when nothing applies."""
    latest = (
        db.query(DecisionEngineMetricsDB)
        .order_by(DecisionEngineMetricsDB.created_at.desc(), DecisionEngineMetricsDB.period_end.desc())
        .first()
    )
    if latest is None:
        return ""

    lines: list[str] = []

    if (
        latest.avg_confidence_when_disagreed is not None
        and latest.avg_confidence_when_disagreed > OVERCONFIDENCE_THRESHOLD
    ):
        lines.append(
            f"- Past rulings that human arbitrators overturned carried an average confidence of "
            f"{latest.avg_confidence_when_disagreed:.0%}. Lower your confidence when the evidence is ambiguous."
        )

    for claim_type, stats in sorted((latest.by_claim_type or {}).items()):
        rate = stats.get("escalation_rate", 0)
        if rate > CLAIM_TYPE_ESCALATION_THRESHOLD and stats.get("total", 0) >= CLAIM_TYPE_MIN_SAMPLES:
            lines.append(
                f"- {_humanize(claim_type).capitalize()} disputes are escalated "
                f"{stats['escalation_rate']:.0%} of the time. Examine them with extra care."
            )

    reasons = [entry["reason"] for entry in (latest.top_rejection_reasons or [])[:3]]
    if reasons:
        lines.append(
            "- Parties most often reject rulings for: " + ", ".join(_humanize(r) for r in reasons) + "."
        )

    for label, value, advice in (
        ("fairness", latest.avg_fairness_rating, "Address both parties' positions explicitly."),
        ("reasoning", latest.avg_reasoning_rating, "Explain how each key factor led to the ruling."),
        ("evidence handling", latest.avg_evidence_rating, "Reference the specific evidence you relied on."),
    ):
        if value is not None and value < LOW_RATING_THRESHOLD:
            lines.append(f"- Parties rate {label} at {value:.1f}/5. {advice}")

    if not lines:
        return ""
    return "\n\n## Calibration Notes\n\n" + "\n".join(lines) + "\n"
