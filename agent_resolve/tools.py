"""Operation surface.

``ResolveTools`` exposes one handler per operation. Every handler takes the
authenticated operator id and a plain dict of parameters, validates them
against its input model, runs the operation in its own transaction and
returns a discriminated envelope::

    {"success": True, "data": {...}}
    {"success": False, "error": {"code": "...", "message": "..."}}

Domain errors become error envelopes; invariant violations propagate.
"""

from __future__ import annotations

import base64
import binascii
import functools
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from agent_resolve import (
    arbitration,
    disputes,
    escalation,
    escrow,
    evidence,
    feedback,
    transactions,
    trust,
)
from agent_resolve.clients import HttpCreditLedger, HttpPayoutClient
from agent_resolve.database import SessionFactory, session_scope
from agent_resolve.errors import (
    InvariantViolation,
    ResolveError,
    TransactionNotFound,
    ValidationFailed,
)
from agent_resolve.models import (
    SYSTEM_ACTOR,
    AgentDB,
    DisputeDB,
    DisputeStatus,
    EscalationDB,
    EvidenceDB,
    PartyRole,
    TransactionDB,
    TransactionStatus,
    utcnow,
)
from agent_resolve.schemas import (
    AcceptDecisionInput,
    AgentRef,
    DisputeRef,
    ExtendDeadlineInput,
    FileDisputeInput,
    FundEscrowInput,
    ListDisputesInput,
    ListTransactionsInput,
    ProposeTransactionInput,
    RegisterAgentInput,
    RejectDecisionInput,
    RequestEscalationInput,
    RespondDisputeInput,
    RespondTransactionInput,
    SubmitEvidenceInput,
    SubmitFeedbackInput,
    SubmitFileEvidenceInput,
    TransactionRef,
)

logger = logging.getLogger(__name__)

# Tool name -> (method name, input model)
TOOL_REGISTRY: dict[str, tuple[str, type[BaseModel]]] = {}


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


def ok(data: dict) -> dict:
    return {"success": True, "data": data}


def fail(code: str, message: str) -> dict:
    return {"success": False, "error": {"code": code, "message": message}}


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid input"


def tool(name: str, input_model: type[BaseModel]) -> Callable:
    """Register a handler and wrap it in the success/error envelope."""

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(self: ResolveTools, operator_id: str, params: dict | None = None) -> dict:
            try:
                data = input_model.model_validate(params or {})
            except ValidationError as exc:
                return fail("VALIDATION_ERROR", _validation_message(exc))
            try:
                return ok(fn(self, operator_id, data))
            except ResolveError as exc:
                if exc.status_code >= 500:
                    logger.warning("%s failed for operator %s: %s", name, operator_id, exc.message)
                return fail(exc.code, exc.message)
            except InvariantViolation:
                logger.critical("Invariant violated during %s", name, exc_info=True)
                raise
            except Exception:
                logger.exception("Unexpected error in %s", name)
                return fail("INTERNAL_ERROR", "An unexpected error occurred")

        TOOL_REGISTRY[name] = (fn.__name__, input_model)
        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _agent_ref(db: Session, agent_id: str | None) -> str | None:
    if agent_id is None:
        return None
    agent = db.get(AgentDB, agent_id)
    return agent.external_id if agent is not None else agent_id


def _agent_dict(agent: AgentDB) -> dict:
    return {
        "agent_id": agent.external_id,
        "agent_identifier": agent.agent_identifier,
        "display_name": agent.display_name,
        "trust_score": agent.trust_score,
        "status": agent.status.value,
        "created_at": _iso(agent.created_at),
    }


def _transaction_dict(txn: TransactionDB) -> dict:
    return {
        "transaction_id": txn.external_id,
        "proposer_agent_id": txn.proposer.external_id,
        "receiver_agent_id": txn.receiver.external_id,
        "title": txn.title,
        "description": txn.description,
        "terms": txn.terms or {},
        "stated_value": txn.stated_value,
        "stated_value_currency": txn.stated_value_currency,
        "status": txn.status.value,
        "proposed_at": _iso(txn.proposed_at),
        "responded_at": _iso(txn.responded_at),
        "completed_at": _iso(txn.completed_at),
        "expires_at": _iso(txn.expires_at),
        "escrow_status": txn.escrow_status.value,
    }


def _escrow_dict(db: Session, txn: TransactionDB) -> dict:
    return {
        "transaction_id": txn.external_id,
        "escrow_status": txn.escrow_status.value,
        "amount": txn.escrow_amount,
        "currency": txn.escrow_currency,
        "funded_at": _iso(txn.escrow_funded_at),
        "funded_by": _agent_ref(db, txn.escrow_funded_by),
        "released_at": _iso(txn.escrow_released_at),
        "released_to": (
            txn.escrow_released_to
            if txn.escrow_released_to == escrow.SPLIT_RECIPIENT
            else _agent_ref(db, txn.escrow_released_to)
        ),
        "transfers": {
            _agent_ref(db, recipient_id): transfer_id
            for recipient_id, transfer_id in (txn.escrow_transfer_ids or {}).items()
        },
    }


def _decision_dict(dispute: DisputeDB) -> dict | None:
    if dispute.ruling is None:
        return None
    details = dispute.ruling_details or {}
    return {
        "ruling": dispute.ruling.value,
        "reasoning": dispute.ruling_reasoning,
        "confidence": details.get("confidence"),
        "key_factors": details.get("key_factors", []),
        "mitigating_factors": details.get("mitigating_factors", []),
        "recommendation": details.get("recommendation"),
        "ruled_at": _iso(dispute.ruled_at),
        "claimant_score_change": dispute.claimant_score_change,
        "respondent_score_change": dispute.respondent_score_change,
        "claimant_accepted": dispute.claimant_accepted,
        "respondent_accepted": dispute.respondent_accepted,
        "acceptance_deadline": _iso(dispute.acceptance_deadline),
    }


def _dispute_dict(dispute: DisputeDB, role: PartyRole | None = None) -> dict:
    final = disputes.final_ruling(dispute)
    data = {
        "dispute_id": dispute.external_id,
        "transaction_id": dispute.transaction.external_id,
        "claimant_agent_id": dispute.claimant.external_id,
        "respondent_agent_id": dispute.respondent.external_id,
        "claim_type": dispute.claim_type.value,
        "claim_summary": dispute.claim_summary,
        "claim_details": dispute.claim_details,
        "requested_resolution": dispute.requested_resolution,
        "response_summary": dispute.response_summary,
        "stated_value": dispute.stated_value,
        "status": dispute.status.value,
        "response_deadline": _iso(dispute.response_deadline),
        "evidence_deadline": _iso(dispute.evidence_deadline),
        "claimant_submission_complete": dispute.claimant_submission_complete,
        "respondent_submission_complete": dispute.respondent_submission_complete,
        "credits_charged": dispute.credits_charged,
        "was_free": dispute.was_free,
        "decision": _decision_dict(dispute),
        "final_ruling": final.value if final is not None else None,
        "created_at": _iso(dispute.created_at),
        "closed_at": _iso(dispute.closed_at),
    }
    if role is not None:
        data["your_role"] = role.value
    return data


def _evidence_dict(item: EvidenceDB) -> dict:
    return {
        "evidence_id": item.external_id,
        "sequence": item.sequence,
        "submitted_by": item.submitted_by_role.value,
        "evidence_type": item.evidence_type.value,
        "title": item.title,
        "content": item.content,
        "source_filename": item.source_filename,
        "page_count": item.page_count,
        "truncated": item.truncated,
        "submitted_at": _iso(item.created_at),
    }


def serialize_escalation(esc: EscalationDB) -> dict:
    return {
        "escalation_id": esc.external_id,
        "dispute_id": esc.dispute.external_id,
        "status": esc.status.value,
        "reason": esc.reason,
        "credits_charged": esc.credits_charged,
        "auto_escalated": esc.requested_by == SYSTEM_ACTOR,
        "arbitrator_ruling": esc.arbitrator_ruling.value if esc.arbitrator_ruling else None,
        "arbitrator_reasoning": esc.arbitrator_reasoning,
        "requested_at": _iso(esc.requested_at),
        "assigned_at": _iso(esc.assigned_at),
        "decided_at": _iso(esc.decided_at),
    }


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ResolveTools:
    """Operation handlers bound to a session factory and external collaborators."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        ledger: HttpCreditLedger | None = None,
        payouts: HttpPayoutClient | None = None,
        clock: Callable[[], datetime] | None = None,
        arbitrate_inline: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger if ledger is not None else HttpCreditLedger()
        self._payouts = payouts if payouts is not None else HttpPayoutClient()
        self._clock = clock or utcnow
        self._arbitrate_inline = arbitrate_inline

    def call(self, operator_id: str, tool_name: str, params: dict | None = None) -> dict:
        """Dispatch a tool by name."""
        entry = TOOL_REGISTRY.get(tool_name)
        if entry is None:
            return fail("UNKNOWN_TOOL", f"Unknown tool: {tool_name}")
        return getattr(self, entry[0])(operator_id, params)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _scope(self):
        return session_scope(self._session_factory)

    def _refresh_dispute(self, dispute_ref: str, agent_ref: str, operator_id: str) -> None:
        """Commit any elapsed deadline before the operation itself runs.

        Only a party to the dispute can trigger its deadline transitions.
        """
        now = self._clock()
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, agent_ref)
            dispute = disputes.load_dispute(db, dispute_ref, lock=True)
            disputes.require_party(dispute, agent)
            disputes.refresh_deadlines(db, dispute, now)

    def _refresh_transaction(self, transaction_ref: str) -> None:
        now = self._clock()
        with self._scope() as db:
            try:
                txn = transactions.load_transaction(db, transaction_ref, lock=True)
            except TransactionNotFound:
                return
            transactions.refresh_expiry(db, txn, now)

    def _arbitrate_if_ready(self, dispute_ref: str) -> bool:
        """Run arbitration when the evidence phase is over. Returns True if it ran."""
        now = self._clock()
        with self._scope() as db:
            ready = disputes.is_ready_for_arbitration(disputes.load_dispute(db, dispute_ref), now)
        if not ready:
            return False
        arbitration.process_arbitration(self._session_factory, dispute_ref, now)
        return True

    def _dispute_view(self, dispute_ref: str, agent_ref: str, operator_id: str) -> dict:
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, agent_ref)
            dispute = disputes.get_dispute(db, dispute_ref, agent)
            return _dispute_dict(dispute, disputes.party_role(dispute, agent.id))

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    @tool("register_agent", RegisterAgentInput)
    def register_agent(self, operator_id: str, data: RegisterAgentInput) -> dict:
        with self._scope() as db:
            agent = trust.register_agent(db, operator_id, data)
            return _agent_dict(agent)

    @tool("get_agent_trust", AgentRef)
    def get_agent_trust(self, operator_id: str, data: AgentRef) -> dict:
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            history = trust.get_trust_history(db, agent.id, limit=10)
            return {
                **_agent_dict(agent),
                "total_transactions": agent.total_transactions,
                "completed_transactions": agent.completed_transactions,
                "disputes_as_claimant": agent.disputes_as_claimant,
                "disputes_as_respondent": agent.disputes_as_respondent,
                "disputes_won": agent.disputes_won,
                "disputes_lost": agent.disputes_lost,
                "recent_history": [
                    {
                        "previous_score": h.previous_score,
                        "new_score": h.new_score,
                        "change": h.change_amount,
                        "reason": h.reason,
                        "reference_type": h.reference_type,
                        "reference_id": h.reference_id,
                        "created_at": _iso(h.created_at),
                    }
                    for h in history
                ],
            }

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @tool("propose_transaction", ProposeTransactionInput)
    def propose_transaction(self, operator_id: str, data: ProposeTransactionInput) -> dict:
        with self._scope() as db:
            proposer = trust.get_agent_for_operator(db, operator_id, data.proposer_agent_id)
            receiver = trust.get_agent_by_external_id(db, data.receiver_agent_id)
            txn = transactions.propose_transaction(db, proposer, receiver, data, now=self._clock())
            return _transaction_dict(txn)

    @tool("respond_to_transaction", RespondTransactionInput)
    def respond_to_transaction(self, operator_id: str, data: RespondTransactionInput) -> dict:
        self._refresh_transaction(data.transaction_id)
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            txn = transactions.respond_to_transaction(
                db, data.transaction_id, agent, data.accept, now=self._clock()
            )
            return _transaction_dict(txn)

    @tool("complete_transaction", TransactionRef)
    def complete_transaction(self, operator_id: str, data: TransactionRef) -> dict:
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            txn = transactions.complete_transaction(db, data.transaction_id, agent, now=self._clock())
            return _transaction_dict(txn)

    @tool("get_transaction", TransactionRef)
    def get_transaction(self, operator_id: str, data: TransactionRef) -> dict:
        self._refresh_transaction(data.transaction_id)
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            return _transaction_dict(transactions.get_transaction(db, data.transaction_id, agent))

    @tool("list_transactions", ListTransactionsInput)
    def list_transactions(self, operator_id: str, data: ListTransactionsInput) -> dict:
        try:
            status = TransactionStatus(data.status) if data.status else None
        except ValueError as exc:
            raise ValidationFailed(f"Unknown transaction status: {data.status}") from exc
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            rows = transactions.list_transactions(db, agent, status, data.limit, data.offset)
            return {
                "transactions": [_transaction_dict(t) for t in rows],
                "limit": data.limit,
                "offset": data.offset,
            }

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    @tool("file_dispute", FileDisputeInput)
    def file_dispute(self, operator_id: str, data: FileDisputeInput) -> dict:
        with self._scope() as db:
            claimant = trust.get_agent_for_operator(db, operator_id, data.claimant_agent_id)
            dispute = disputes.file_dispute(
                db, claimant, data, operator_id, ledger=self._ledger, now=self._clock()
            )
            return _dispute_dict(dispute, PartyRole.CLAIMANT)

    @tool("respond_to_dispute", RespondDisputeInput)
    def respond_to_dispute(self, operator_id: str, data: RespondDisputeInput) -> dict:
        self._refresh_dispute(data.dispute_id, data.respondent_agent_id, operator_id)
        with self._scope() as db:
            respondent = trust.get_agent_for_operator(db, operator_id, data.respondent_agent_id)
            dispute = disputes.respond_to_dispute(
                db,
                data.dispute_id,
                respondent,
                data.response_summary,
                data.response_details,
                now=self._clock(),
            )
            return _dispute_dict(dispute, PartyRole.RESPONDENT)

    @tool("submit_evidence", SubmitEvidenceInput)
    def submit_evidence(self, operator_id: str, data: SubmitEvidenceInput) -> dict:
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            item = evidence.add_evidence(
                db, data.dispute_id, agent, data.evidence_type, data.title, data.content, now=self._clock()
            )
            return _evidence_dict(item)

    @tool("submit_file_evidence", SubmitFileEvidenceInput)
    def submit_file_evidence(self, operator_id: str, data: SubmitFileEvidenceInput) -> dict:
        try:
            raw = base64.b64decode(data.content_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationFailed("content_base64 is not valid base64") from exc
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            item = evidence.add_file_evidence(
                db,
                data.dispute_id,
                agent,
                data.title,
                data.filename,
                raw,
                evidence_type=data.evidence_type,
                now=self._clock(),
            )
            return _evidence_dict(item)

    @tool("get_evidence", DisputeRef)
    def get_evidence(self, operator_id: str, data: DisputeRef) -> dict:
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            items = evidence.list_evidence(db, data.dispute_id, agent)
            return {"dispute_id": data.dispute_id, "evidence": [_evidence_dict(e) for e in items]}

    @tool("mark_submission_complete", DisputeRef)
    def mark_submission_complete(self, operator_id: str, data: DisputeRef) -> dict:
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            disputes.mark_submission_complete(db, data.dispute_id, agent, now=self._clock())

        arbitration_error = None
        if self._arbitrate_inline:
            try:
                self._arbitrate_if_ready(data.dispute_id)
            except ResolveError as exc:
                # Submission stays recorded; arbitration is retried later.
                arbitration_error = exc.to_dict()

        view = self._dispute_view(data.dispute_id, data.agent_id, operator_id)
        view["arbitration_error"] = arbitration_error
        return view

    @tool("extend_submission_deadline", ExtendDeadlineInput)
    def extend_submission_deadline(self, operator_id: str, data: ExtendDeadlineInput) -> dict:
        self._refresh_dispute(data.dispute_id, data.agent_id, operator_id)
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            dispute = disputes.extend_submission_deadline(
                db, data.dispute_id, agent, data.additional_hours, now=self._clock()
            )
            return _dispute_dict(dispute, PartyRole.CLAIMANT)

    @tool("get_dispute", DisputeRef)
    def get_dispute(self, operator_id: str, data: DisputeRef) -> dict:
        self._refresh_dispute(data.dispute_id, data.agent_id, operator_id)
        return self._dispute_view(data.dispute_id, data.agent_id, operator_id)

    @tool("list_disputes", ListDisputesInput)
    def list_disputes(self, operator_id: str, data: ListDisputesInput) -> dict:
        try:
            status = DisputeStatus(data.status) if data.status else None
        except ValueError as exc:
            raise ValidationFailed(f"Unknown dispute status: {data.status}") from exc
        role = PartyRole(data.role) if data.role else None
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            rows = disputes.list_disputes(db, agent, role, status, data.limit, data.offset)
            return {
                "disputes": [_dispute_dict(d, disputes.party_role(d, agent.id)) for d in rows],
                "limit": data.limit,
                "offset": data.offset,
            }

    @tool("get_decision", DisputeRef)
    def get_decision(self, operator_id: str, data: DisputeRef) -> dict:
        self._refresh_dispute(data.dispute_id, data.agent_id, operator_id)
        # Authorize before possibly triggering arbitration
        self._dispute_view(data.dispute_id, data.agent_id, operator_id)
        if self._arbitrate_inline:
            self._arbitrate_if_ready(data.dispute_id)
        view = self._dispute_view(data.dispute_id, data.agent_id, operator_id)
        return {
            "dispute_id": view["dispute_id"],
            "status": view["status"],
            "decision": view["decision"],
            "final_ruling": view["final_ruling"],
        }

    @tool("accept_decision", AcceptDecisionInput)
    def accept_decision(self, operator_id: str, data: AcceptDecisionInput) -> dict:
        self._refresh_dispute(data.dispute_id, data.agent_id, operator_id)
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            dispute = disputes.accept_decision(db, data.dispute_id, agent, data.comment, now=self._clock())
            return _dispute_dict(dispute, disputes.party_role(dispute, agent.id))

    @tool("reject_decision", RejectDecisionInput)
    def reject_decision(self, operator_id: str, data: RejectDecisionInput) -> dict:
        self._refresh_dispute(data.dispute_id, data.agent_id, operator_id)
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            dispute = disputes.reject_decision(
                db, data.dispute_id, agent, data.reason, data.details, now=self._clock()
            )
            return _dispute_dict(dispute, disputes.party_role(dispute, agent.id))

    # ------------------------------------------------------------------
    # Escalation and feedback
    # ------------------------------------------------------------------

    @tool("request_escalation", RequestEscalationInput)
    def request_escalation(self, operator_id: str, data: RequestEscalationInput) -> dict:
        self._refresh_dispute(data.dispute_id, data.agent_id, operator_id)
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            esc = escalation.request_escalation(
                db,
                data.dispute_id,
                agent,
                data.reason,
                operator_id=operator_id,
                ledger=self._ledger,
                now=self._clock(),
            )
            result = serialize_escalation(esc)
            escalation_id = esc.id
        escalation.notify_escalation(self._session_factory, escalation_id, self._clock())
        return result

    @tool("get_escalation_status", DisputeRef)
    def get_escalation_status(self, operator_id: str, data: DisputeRef) -> dict:
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            return serialize_escalation(escalation.get_escalation_status(db, data.dispute_id, agent))

    @tool("submit_feedback", SubmitFeedbackInput)
    def submit_feedback(self, operator_id: str, data: SubmitFeedbackInput) -> dict:
        self._refresh_dispute(data.dispute_id, data.agent_id, operator_id)
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            fb = feedback.submit_feedback(
                db,
                data.dispute_id,
                agent,
                data.fairness_rating,
                data.reasoning_rating,
                data.evidence_rating,
                data.comment,
                now=self._clock(),
            )
            return {
                "dispute_id": data.dispute_id,
                "party_role": fb.party_role.value,
                "was_winner": fb.was_winner,
                "fairness_rating": fb.fairness_rating,
                "reasoning_rating": fb.reasoning_rating,
                "evidence_rating": fb.evidence_rating,
                "submitted_at": _iso(fb.created_at),
            }

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    @tool("fund_escrow", FundEscrowInput)
    def fund_escrow(self, operator_id: str, data: FundEscrowInput) -> dict:
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            txn = escrow.fund_escrow(db, data.transaction_id, agent, data.amount, data.currency, now=self._clock())
            return _escrow_dict(db, txn)

    @tool("release_escrow", TransactionRef)
    def release_escrow(self, operator_id: str, data: TransactionRef) -> dict:
        with self._scope() as db:
            agent_id = trust.get_agent_for_operator(db, operator_id, data.agent_id).id
        txn_id = escrow.release_escrow(
            self._session_factory, data.transaction_id, agent_id, self._payouts, now=self._clock()
        )
        with self._scope() as db:
            return _escrow_dict(db, transactions.load_transaction(db, txn_id))

    @tool("get_escrow_status", TransactionRef)
    def get_escrow_status(self, operator_id: str, data: TransactionRef) -> dict:
        with self._scope() as db:
            agent = trust.get_agent_for_operator(db, operator_id, data.agent_id)
            return _escrow_dict(db, escrow.get_escrow_status(db, data.transaction_id, agent))
