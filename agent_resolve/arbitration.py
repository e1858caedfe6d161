"""AI arbitration engine.

Orchestrates a ruling in three phases so that no database transaction is
held open while the model is thinking:

1. Read the dispute, its evidence and the calibration notes (short transaction)
2. Ask the LLM for a structured ruling (no transaction)
3. Re-check and persist the ruling with its trust consequences (short transaction)

If the model is unavailable or answers with something unusable, the dispute
stays in EVIDENCE_SUBMISSION and ``ArbitrationUnavailable`` is raised so the
caller can retry.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime

import litellm

from agent_resolve import disputes, escalation, feedback
from agent_resolve.config import settings
from agent_resolve.database import SessionFactory, session_scope
from agent_resolve.errors import ArbitrationUnavailable, InvalidDisputeState, InvariantViolation, ResolveError
from agent_resolve.models import SYSTEM_ACTOR, DisputeDB, DisputeStatus, EvidenceDB, Ruling, utcnow
from agent_resolve.prompts import build_arbitration_prompt, build_system_prompt
from agent_resolve.schemas import ArbitrationResult, DisputeContext, EvidenceItem

logger = logging.getLogger(__name__)

# Suppress litellm's verbose logging unless explicitly enabled
litellm.suppress_debug_info = True


# ---------------------------------------------------------------------------
# LLM evaluation
# ---------------------------------------------------------------------------


def _call_llm(system_prompt: str, user_prompt: str) -> tuple[dict, int]:
    """Send the dispute to the LLM and parse its JSON answer.

    Returns: (parsed_ruling_dict, latency_ms)
    """
    t0 = time.monotonic()
    response = litellm.completion(
        model=settings.llm_model,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        timeout=settings.llm_timeout_seconds,
    )
    latency_ms = int((time.monotonic() - t0) * 1000)

    raw_text = (response.choices[0].message.content or "").strip()

    if settings.audit_log_enabled:
        logger.info("LLM raw response (%dms): %s", latency_ms, raw_text)

    # Strip markdown fences if the LLM wrapped its response
    if raw_text.startswith("```"):
        raw_text = raw_text.split("\n", 1)[1] if "\n" in raw_text else raw_text[3:]
        if raw_text.endswith("```"):
            raw_text = raw_text[:-3]
        raw_text = raw_text.strip()

    return json.loads(raw_text), latency_ms


def _string_list(details: dict, *keys: str) -> list[str]:
    value = next((details[k] for k in keys if details.get(k) is not None), [])
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        raise ArbitrationUnavailable(f"AI arbitrator returned malformed {keys[0]}")
    return [str(item) for item in value]


def _parse_result(llm_output: dict) -> ArbitrationResult:
    """Convert raw LLM output into a typed ArbitrationResult."""
    if not isinstance(llm_output, dict):
        raise ArbitrationUnavailable("AI arbitrator returned an unexpected response shape")

    ruling_str = str(llm_output.get("ruling", "")).strip().upper()
    try:
        ruling = Ruling(ruling_str)
    except ValueError as exc:
        raise ArbitrationUnavailable(f"AI arbitrator returned unrecognized ruling: {ruling_str!r}") from exc

    details = llm_output.get("details") or {}
    if not isinstance(details, dict):
        raise ArbitrationUnavailable("AI arbitrator returned malformed ruling details")

    try:
        confidence = float(details.get("confidence", llm_output.get("confidence", 0.0)))
    except (TypeError, ValueError):
        confidence = 0.0

    # Clamp confidence to valid range
    confidence = max(0.0, min(1.0, confidence))

    return ArbitrationResult(
        ruling=ruling,
        confidence=confidence,
        reasoning=str(llm_output.get("reasoning") or "No reasoning provided"),
        key_factors=_string_list(details, "key_factors", "keyFactors"),
        mitigating_factors=_string_list(details, "mitigating_factors", "mitigatingFactors"),
        recommendation=str(details.get("recommendation") or ""),
    )


def rule(
    context: DisputeContext,
    evidence: list[EvidenceItem],
    calibration_context: str = "",
) -> ArbitrationResult:
    """Ask the AI arbitrator for a ruling. Stateless."""
    system_prompt = build_system_prompt(calibration_context)
    user_prompt = build_arbitration_prompt(context, evidence)

    try:
        llm_output, latency_ms = _call_llm(system_prompt, user_prompt)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse arbitration response as JSON for %s: %s", context.dispute_id, exc)
        raise ArbitrationUnavailable("AI arbitrator returned a response that was not valid JSON") from exc
    except Exception as exc:
        logger.error("Arbitration LLM call failed for %s: %s", context.dispute_id, exc)
        raise ArbitrationUnavailable("AI arbitration is currently unavailable") from exc

    result = _parse_result(llm_output)
    logger.info(
        "AI ruling for %s: %s (confidence: %.0f%%, %dms)",
        context.dispute_id,
        result.ruling.value,
        result.confidence * 100,
        latency_ms,
    )
    return result


# ---------------------------------------------------------------------------
# Dispute snapshot
# ---------------------------------------------------------------------------


def build_context(dispute: DisputeDB, evidence: list[EvidenceDB]) -> tuple[DisputeContext, list[EvidenceItem]]:
    txn = dispute.transaction
    context = DisputeContext(
        dispute_id=dispute.external_id,
        transaction_title=txn.title,
        transaction_description=txn.description,
        transaction_terms=txn.terms or {},
        stated_value=dispute.stated_value,
        claim_type=dispute.claim_type,
        claim_summary=dispute.claim_summary,
        claim_details=dispute.claim_details,
        requested_resolution=dispute.requested_resolution,
        response_summary=dispute.response_summary,
        response_details=dispute.response_details,
        claimant_trust_score=dispute.claimant.trust_score,
        respondent_trust_score=dispute.respondent.trust_score,
    )
    items = [
        EvidenceItem(
            submitted_by=e.submitted_by_role.value,
            evidence_type=e.evidence_type.value,
            title=e.title,
            content=e.content,
        )
        for e in evidence
    ]
    return context, items


# ---------------------------------------------------------------------------
# Main arbitration entry point
# ---------------------------------------------------------------------------


def process_arbitration(
    session_factory: SessionFactory | None,
    dispute_ref: str,
    now: datetime | None = None,
) -> ArbitrationResult | None:
    """Rule on a dispute whose evidence phase is over.

    Returns the persisted result, or None if another worker ruled first.
    """
    now = now or utcnow()

    # 1. Snapshot
    with session_scope(session_factory) as db:
        dispute = disputes.load_dispute(db, dispute_ref)
        if not disputes.is_ready_for_arbitration(dispute, now):
            raise InvalidDisputeState(
                f"Dispute is {dispute.status.value} and not ready for arbitration"
            )
        evidence = (
            db.query(EvidenceDB)
            .filter(EvidenceDB.dispute_id == dispute.id)
            .order_by(EvidenceDB.sequence)
            .all()
        )
        context, items = build_context(dispute, evidence)
        calibration = feedback.get_calibration_context(db)
        dispute_id = dispute.id

    # 2. Evaluate via LLM (outside any transaction)
    logger.info("Starting arbitration for dispute %s (%d evidence items)", context.dispute_id, len(items))
    result = rule(context, items, calibration)

    # 3. Persist
    escalation_id = None
    with session_scope(session_factory) as db:
        dispute = disputes.load_dispute(db, dispute_id, lock=True)
        if dispute.status != DisputeStatus.EVIDENCE_SUBMISSION:
            logger.info("Dispute %s was ruled concurrently; discarding result", dispute.external_id)
            return None

        disputes.apply_ruling(db, dispute, result, now)

        if result.confidence < settings.auto_escalate_threshold:
            logger.info(
                "Escalating dispute %s (confidence: %.0f%%, threshold: %.0f%%)",
                dispute.external_id,
                result.confidence * 100,
                settings.auto_escalate_threshold * 100,
            )
            escalation_id = escalation.request_escalation(
                db,
                dispute.id,
                None,
                f"AI confidence {result.confidence:.0%} is below the "
                f"{settings.auto_escalate_threshold:.0%} auto-escalation threshold",
                now=now,
            ).id
        elif result.ruling == Ruling.DISMISSED:
            disputes.transition(db, dispute, DisputeStatus.DISMISSED, SYSTEM_ACTOR, "Claim dismissed", now)

    if escalation_id is not None:
        escalation.notify_escalation(session_factory, escalation_id, now)
    return result


def process_pending_arbitrations(
    session_factory: SessionFactory | None = None, now: datetime | None = None
) -> tuple[int, int]:
    """Arbitrate every dispute that is ready. Returns (processed, failed).

    One dispute failing does not stop the batch; invariant violations still
    propagate.
    """
    now = now or utcnow()
    with session_scope(session_factory) as db:
        ready = disputes.find_ready_for_arbitration(db, now)

    processed = failed = 0
    for dispute_id in ready:
        try:
            process_arbitration(session_factory, dispute_id, now)
            processed += 1
        except ResolveError as exc:
            failed += 1
            logger.warning("Arbitration failed for dispute %s: %s", dispute_id, exc.message)
        except InvariantViolation:
            raise
        except Exception:
            failed += 1
            logger.exception("Unexpected error arbitrating dispute %s", dispute_id)
    if ready:
        logger.info("Arbitration sweep: %d processed, %d failed", processed, failed)
    return processed, failed
