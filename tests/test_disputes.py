"""Tests for the dispute lifecycle: filing, response, deadlines, rulings and acceptance."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from agent_resolve import disputes, transactions, trust
from agent_resolve.config import settings
from agent_resolve.database import session_scope
from agent_resolve.errors import (
    CannotFileDispute,
    DataIntegrityError,
    DeadlinePassed,
    InsufficientCredits,
    InvalidDisputeState,
    NotParty,
)
from agent_resolve.models import (
    AgentDB,
    DisputeDB,
    DisputeEventDB,
    DisputeStatus,
    PartyRole,
    RejectionReason,
    Ruling,
    TransactionDB,
    TransactionStatus,
    TrustHistoryDB,
)
from agent_resolve.schemas import ArbitrationResult, ProposeTransactionInput, RegisterAgentInput

from conftest import NOW, file_input


def _ruling(ruling: Ruling, confidence: float = 0.85) -> ArbitrationResult:
    return ArbitrationResult(ruling=ruling, confidence=confidence, reasoning="Because the evidence says so.")


# ---------------------------------------------------------------------------
# Filing
# ---------------------------------------------------------------------------


class TestFileDispute:
    def test_files_free_dispute(self, db, parties, make_dispute):
        dispute = make_dispute(respond=False)

        assert dispute.status == DisputeStatus.FILED
        assert dispute.external_id.startswith("RDISP-")
        assert dispute.respondent_agent_id == parties.respondent.id
        assert dispute.response_deadline == NOW + timedelta(hours=72)
        assert dispute.was_free
        assert dispute.credits_charged == 0
        assert parties.txn.status == TransactionStatus.DISPUTED
        assert parties.claimant.disputes_as_claimant == 1
        assert parties.claimant.monthly_dispute_count == 1
        assert parties.respondent.disputes_as_respondent == 1
        assert parties.respondent.monthly_dispute_count == 0

        events = db.query(DisputeEventDB).filter(DisputeEventDB.dispute_id == dispute.id).all()
        assert [(e.from_status, e.to_status) for e in events] == [(None, DisputeStatus.FILED)]

    def test_outsider_cannot_file(self, db, parties, make_agent):
        outsider = make_agent("outsider")
        with pytest.raises(NotParty):
            disputes.file_dispute(db, outsider, file_input(parties.txn, outsider), "op-1", now=NOW)

    def test_requires_accepted_transaction(self, db, make_agent, make_transaction):
        a, b = make_agent("buyer"), make_agent("writer", operator_id="op-2")
        txn = make_transaction(a, b, accept=False)
        with pytest.raises(CannotFileDispute):
            disputes.file_dispute(db, a, file_input(txn, a), "op-1", now=NOW)

    def test_one_active_dispute_per_transaction(self, db, parties, make_dispute):
        make_dispute(respond=False)
        with pytest.raises(CannotFileDispute):
            disputes.file_dispute(
                db, parties.respondent, file_input(parties.txn, parties.respondent), "op-2", now=NOW
            )

    def test_monthly_limit(self, db, parties):
        parties.claimant.monthly_dispute_count = settings.monthly_dispute_limit
        parties.claimant.monthly_dispute_reset_at = NOW
        with pytest.raises(CannotFileDispute):
            disputes.file_dispute(db, parties.claimant, file_input(parties.txn, parties.claimant), "op-1", now=NOW)


class TestPaidFiling:
    @pytest.fixture(autouse=True)
    def _no_free_allowance(self):
        original = settings.free_monthly_disputes
        settings.free_monthly_disputes = 0
        yield
        settings.free_monthly_disputes = original

    def test_fee_deducted_from_operator(self, db, make_agent, make_transaction):
        a, b = make_agent("buyer"), make_agent("writer", operator_id="op-2")
        txn = make_transaction(a, b, stated_value=500_000)
        ledger = MagicMock()

        dispute = disputes.file_dispute(db, a, file_input(txn, a), "op-1", ledger=ledger, now=NOW)

        assert not dispute.was_free
        assert dispute.credits_charged == 1_000
        ledger.deduct.assert_called_once_with("op-1", 1_000, "DISPUTE", dispute.external_id)

    def test_low_balance_refused_before_filing(self, db, make_agent, make_transaction):
        a, b = make_agent("buyer"), make_agent("writer", operator_id="op-2")
        txn = make_transaction(a, b, stated_value=500_000)
        ledger = MagicMock()
        ledger.has_sufficient_balance.return_value = False

        with pytest.raises(InsufficientCredits):
            disputes.file_dispute(db, a, file_input(txn, a), "op-1", ledger=ledger, now=NOW)

        ledger.has_sufficient_balance.assert_called_once_with("op-1", 1_000)
        ledger.deduct.assert_not_called()
        assert db.query(DisputeDB).count() == 0

    def test_insufficient_credits_rolls_back_everything(self, session_factory):
        with session_scope(session_factory) as db:
            a = trust.register_agent(db, "op-1", RegisterAgentInput(agent_identifier="buyer"))
            b = trust.register_agent(db, "op-2", RegisterAgentInput(agent_identifier="writer"))
            txn = transactions.propose_transaction(
                db,
                a,
                b,
                ProposeTransactionInput(
                    proposer_agent_id=a.external_id,
                    receiver_agent_id=b.external_id,
                    title="Expensive work",
                    stated_value=500_000,
                ),
                now=NOW,
            )
            transactions.respond_to_transaction(db, txn.id, b, True, now=NOW)
            ids = (a.id, b.id, txn.id)

        ledger = MagicMock()
        ledger.deduct.side_effect = InsufficientCredits("Insufficient credits: 1000 required")

        with pytest.raises(InsufficientCredits):
            with session_scope(session_factory) as db:
                claimant = db.get(AgentDB, ids[0])
                txn = db.get(TransactionDB, ids[2])
                disputes.file_dispute(db, claimant, file_input(txn, claimant), "op-1", ledger=ledger, now=NOW)

        with session_scope(session_factory) as db:
            assert db.query(DisputeDB).count() == 0
            assert db.query(DisputeEventDB).count() == 0
            assert db.get(TransactionDB, ids[2]).status == TransactionStatus.ACCEPTED
            claimant = db.get(AgentDB, ids[0])
            assert claimant.disputes_as_claimant == 0
            assert claimant.monthly_dispute_count == 0
            assert db.get(AgentDB, ids[1]).disputes_as_respondent == 0


# ---------------------------------------------------------------------------
# Response and deadlines
# ---------------------------------------------------------------------------


class TestRespondToDispute:
    def test_response_opens_evidence_window(self, db, parties, make_dispute):
        dispute = make_dispute(respond=False)
        later = NOW + timedelta(hours=5)
        disputes.respond_to_dispute(db, dispute.id, parties.respondent, "Delivered on time via email", now=later)

        assert dispute.status == DisputeStatus.EVIDENCE_SUBMISSION
        assert dispute.responded_at == later
        assert dispute.evidence_deadline == later + timedelta(hours=24)

    def test_only_respondent_may_respond(self, db, parties, make_dispute):
        dispute = make_dispute(respond=False)
        with pytest.raises(NotParty):
            disputes.respond_to_dispute(db, dispute.id, parties.claimant, "I respond to myself", now=NOW)

    def test_late_response_expires_dispute(self, db, parties, make_dispute):
        dispute = make_dispute(respond=False)

        with pytest.raises(InvalidDisputeState):
            disputes.respond_to_dispute(
                db, dispute.id, parties.respondent, "Sorry for the delay", now=NOW + timedelta(hours=73)
            )

        assert dispute.status == DisputeStatus.EXPIRED
        assert dispute.closed_at == NOW + timedelta(hours=73)
        assert parties.respondent.trust_score == 30
        assert parties.respondent.disputes_lost == 1
        assert parties.claimant.disputes_won == 1


class TestRefreshDeadlines:
    def test_filed_within_window_unchanged(self, db, make_dispute):
        dispute = make_dispute(respond=False)
        assert not disputes.refresh_deadlines(db, dispute, NOW + timedelta(hours=71))
        assert dispute.status == DisputeStatus.FILED

    def test_filed_past_window_expires(self, db, make_dispute):
        dispute = make_dispute(respond=False)
        assert disputes.refresh_deadlines(db, dispute, NOW + timedelta(hours=72, seconds=1))
        assert dispute.status == DisputeStatus.EXPIRED

    def test_acceptance_window_closes_ruling(self, db, make_dispute):
        dispute = make_dispute()
        disputes.apply_ruling(db, dispute, _ruling(Ruling.CLAIMANT), NOW)

        assert not disputes.refresh_deadlines(db, dispute, NOW + timedelta(days=6))
        assert disputes.refresh_deadlines(db, dispute, NOW + timedelta(days=7, seconds=1))
        assert dispute.status == DisputeStatus.CLOSED
        assert dispute.ruling == Ruling.CLAIMANT


class TestExtendSubmissionDeadline:
    def test_extends_response_deadline_while_filed(self, db, parties, make_dispute):
        dispute = make_dispute(respond=False)
        disputes.extend_submission_deadline(db, dispute.id, parties.claimant, 24, now=NOW)
        assert dispute.response_deadline == NOW + timedelta(hours=96)

    def test_extends_evidence_deadline(self, db, parties, make_dispute):
        dispute = make_dispute()
        disputes.extend_submission_deadline(db, dispute.id, parties.claimant, 12, now=NOW + timedelta(hours=1))
        assert dispute.evidence_deadline == NOW + timedelta(hours=36)

    def test_only_claimant_may_extend(self, db, parties, make_dispute):
        dispute = make_dispute()
        with pytest.raises(NotParty):
            disputes.extend_submission_deadline(db, dispute.id, parties.respondent, 12, now=NOW)

    def test_closed_evidence_window_cannot_be_extended(self, db, parties, make_dispute):
        dispute = make_dispute()
        with pytest.raises(DeadlinePassed):
            disputes.extend_submission_deadline(
                db, dispute.id, parties.claimant, 12, now=NOW + timedelta(hours=25)
            )


class TestReadiness:
    def test_ready_when_both_parties_complete(self, db, parties, make_dispute):
        dispute = make_dispute()
        disputes.mark_submission_complete(db, dispute.id, parties.claimant, now=NOW)
        assert not disputes.is_ready_for_arbitration(dispute, NOW)
        disputes.mark_submission_complete(db, dispute.id, parties.respondent, now=NOW)
        assert disputes.is_ready_for_arbitration(dispute, NOW)

    def test_ready_when_evidence_window_elapses(self, db, make_dispute):
        dispute = make_dispute()
        assert not disputes.is_ready_for_arbitration(dispute, NOW + timedelta(hours=23))
        assert disputes.is_ready_for_arbitration(dispute, NOW + timedelta(hours=24))

    def test_find_ready_for_arbitration(self, db, make_dispute):
        dispute = make_dispute()
        assert disputes.find_ready_for_arbitration(db, NOW) == []
        assert disputes.find_ready_for_arbitration(db, NOW + timedelta(hours=25)) == [dispute.id]


# ---------------------------------------------------------------------------
# Rulings and acceptance
# ---------------------------------------------------------------------------


class TestApplyRuling:
    def test_claimant_ruling(self, db, parties, make_dispute):
        dispute = make_dispute()
        disputes.apply_ruling(db, dispute, _ruling(Ruling.CLAIMANT), NOW)

        assert dispute.status == DisputeStatus.RULED
        assert dispute.ruled_at == NOW
        assert dispute.acceptance_deadline == NOW + timedelta(days=7)
        assert dispute.ruling_details["confidence"] == 0.85
        assert (parties.claimant.trust_score, parties.respondent.trust_score) == (52, 47)
        assert (dispute.claimant_score_change, dispute.respondent_score_change) == (2, -3)
        assert parties.claimant.disputes_won == 1
        assert parties.respondent.disputes_lost == 1

    def test_split_ruling(self, db, parties, make_dispute):
        dispute = make_dispute()
        disputes.apply_ruling(db, dispute, _ruling(Ruling.SPLIT), NOW)

        assert (parties.claimant.trust_score, parties.respondent.trust_score) == (49, 49)
        assert parties.claimant.disputes_won == parties.claimant.disputes_lost == 0

    def test_dismissed_ruling_penalises_only_claimant(self, db, parties, make_dispute):
        dispute = make_dispute()
        disputes.apply_ruling(db, dispute, _ruling(Ruling.DISMISSED), NOW)

        assert (parties.claimant.trust_score, parties.respondent.trust_score) == (45, 50)
        assert (
            db.query(TrustHistoryDB)
            .filter(TrustHistoryDB.agent_id == parties.respondent.id, TrustHistoryDB.reference_type == "DISPUTE")
            .count()
            == 0
        )

    def test_requires_evidence_submission(self, db, make_dispute):
        dispute = make_dispute(respond=False)
        with pytest.raises(InvalidDisputeState):
            disputes.apply_ruling(db, dispute, _ruling(Ruling.CLAIMANT), NOW)


class TestAcceptance:
    @pytest.fixture
    def ruled(self, db, make_dispute):
        dispute = make_dispute()
        disputes.apply_ruling(db, dispute, _ruling(Ruling.CLAIMANT), NOW)
        return dispute

    def test_both_accept_closes(self, db, parties, ruled):
        disputes.accept_decision(db, ruled.id, parties.claimant, "Fair outcome", now=NOW)
        assert ruled.status == DisputeStatus.RULED
        disputes.accept_decision(db, ruled.id, parties.respondent, now=NOW)

        assert ruled.status == DisputeStatus.CLOSED
        assert ruled.closed_at == NOW
        statuses = {e.to_status for e in db.query(DisputeEventDB).filter(DisputeEventDB.dispute_id == ruled.id)}
        assert {DisputeStatus.ACCEPTED, DisputeStatus.CLOSED} <= statuses

    def test_party_cannot_respond_twice(self, db, parties, ruled):
        disputes.accept_decision(db, ruled.id, parties.claimant, now=NOW)
        with pytest.raises(InvalidDisputeState):
            disputes.reject_decision(db, ruled.id, parties.claimant, RejectionReason.OTHER, now=NOW)

    def test_single_rejection_stays_ruled(self, db, parties, ruled):
        disputes.reject_decision(db, ruled.id, parties.respondent, RejectionReason.EVIDENCE_IGNORED, now=NOW)
        assert ruled.status == DisputeStatus.RULED
        assert ruled.respondent_rejection_reason == RejectionReason.EVIDENCE_IGNORED
        assert disputes.has_rejection(ruled)

    def test_rejection_after_acceptance_moves_to_rejected(self, db, parties, ruled):
        disputes.accept_decision(db, ruled.id, parties.claimant, now=NOW)
        disputes.reject_decision(db, ruled.id, parties.respondent, RejectionReason.FACTUAL_ERROR, "Wrong date", now=NOW)
        assert ruled.status == DisputeStatus.REJECTED

    def test_cannot_accept_before_ruling(self, db, parties, make_dispute):
        dispute = make_dispute()
        with pytest.raises(InvalidDisputeState):
            disputes.accept_decision(db, dispute.id, parties.claimant, now=NOW)

    def test_outsider_cannot_accept(self, db, ruled, make_agent):
        outsider = make_agent("outsider")
        with pytest.raises(NotParty):
            disputes.accept_decision(db, ruled.id, outsider, now=NOW)


class TestStateMachine:
    def test_disallowed_transition(self, db, make_dispute):
        dispute = make_dispute(respond=False)
        with pytest.raises(InvalidDisputeState):
            disputes.transition(db, dispute, DisputeStatus.CLOSED, "SYSTEM", now=NOW)

    def test_terminal_states_have_no_exits(self):
        for status in disputes.TERMINAL_STATUSES:
            assert disputes.ALLOWED_TRANSITIONS[status] == frozenset()

    def test_agent_on_both_sides_is_integrity_error(self):
        dispute = DisputeDB(external_id="RDISP-TEST", claimant_agent_id="same", respondent_agent_id="same")
        with pytest.raises(DataIntegrityError):
            disputes.party_role(dispute, "same")

    def test_party_role(self, db, parties, make_dispute):
        dispute = make_dispute(respond=False)
        assert disputes.party_role(dispute, parties.claimant.id) == PartyRole.CLAIMANT
        assert disputes.party_role(dispute, parties.respondent.id) == PartyRole.RESPONDENT
        assert disputes.party_role(dispute, "stranger") is None


class TestListDisputes:
    def test_filters_by_role(self, db, parties, make_dispute):
        make_dispute(respond=False)
        assert len(disputes.list_disputes(db, parties.claimant)) == 1
        assert len(disputes.list_disputes(db, parties.claimant, role=PartyRole.CLAIMANT)) == 1
        assert disputes.list_disputes(db, parties.claimant, role=PartyRole.RESPONDENT) == []
        assert len(disputes.list_disputes(db, parties.respondent, status=DisputeStatus.FILED)) == 1
