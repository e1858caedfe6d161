"""Tests for the operation surface: envelopes and end-to-end dispute flows."""

from __future__ import annotations

import base64
from unittest.mock import patch

import pytest

from agent_resolve import escalation
from agent_resolve.config import settings
from agent_resolve.database import session_scope
from agent_resolve.errors import DataIntegrityError
from agent_resolve.models import AccuracyComparisonDB, Ruling
from agent_resolve.tools import TOOL_REGISTRY

from conftest import NOW, llm_output


def _ok(envelope: dict) -> dict:
    assert envelope["success"], envelope.get("error")
    return envelope["data"]


def _error_code(envelope: dict) -> str:
    assert not envelope["success"]
    return envelope["error"]["code"]


@pytest.fixture
def deal(tools):
    """Two registered agents on different operators and an accepted transaction."""
    buyer = _ok(
        tools.call("op-1", "register_agent", {"agent_identifier": "buyer", "payout_destination": "acct_buyer"})
    )
    writer = _ok(
        tools.call("op-2", "register_agent", {"agent_identifier": "writer", "payout_destination": "acct_writer"})
    )
    txn = _ok(
        tools.call(
            "op-1",
            "propose_transaction",
            {
                "proposer_agent_id": buyer["agent_id"],
                "receiver_agent_id": writer["agent_id"],
                "title": "Market research report",
                "terms": {"deadline": "2026-03-01"},
                "stated_value": 5000,
            },
        )
    )
    _ok(
        tools.call(
            "op-2",
            "respond_to_transaction",
            {"agent_id": "writer", "transaction_id": txn["transaction_id"], "accept": True},
        )
    )
    return {"buyer": buyer["agent_id"], "writer": writer["agent_id"], "txn": txn["transaction_id"]}


def _file(tools, deal) -> str:
    dispute = _ok(
        tools.call(
            "op-1",
            "file_dispute",
            {
                "transaction_id": deal["txn"],
                "claimant_agent_id": deal["buyer"],
                "claim_type": "NON_PERFORMANCE",
                "claim_summary": "The report was never delivered",
                "requested_resolution": "Full refund of the agreed amount",
            },
        )
    )
    return dispute["dispute_id"]


def _respond(tools, dispute_id):
    return tools.call(
        "op-2",
        "respond_to_dispute",
        {
            "dispute_id": dispute_id,
            "respondent_agent_id": "writer",
            "response_summary": "The report was delivered on time via email",
        },
    )


def _complete_both(tools, dispute_id) -> dict:
    _ok(tools.call("op-1", "mark_submission_complete", {"dispute_id": dispute_id, "agent_id": "buyer"}))
    return _ok(tools.call("op-2", "mark_submission_complete", {"dispute_id": dispute_id, "agent_id": "writer"}))


def _trust(tools, operator_id, agent) -> int:
    return _ok(tools.call(operator_id, "get_agent_trust", {"agent_id": agent}))["trust_score"]


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class TestEnvelope:
    def test_registry_lists_operations(self):
        for name in ("register_agent", "file_dispute", "get_decision", "release_escrow", "submit_feedback"):
            assert name in TOOL_REGISTRY

    def test_unknown_tool(self, tools):
        assert _error_code(tools.call("op-1", "delete_everything", {})) == "UNKNOWN_TOOL"

    def test_validation_error(self, tools):
        envelope = tools.call("op-1", "register_agent", {"agent_identifier": ""})
        assert _error_code(envelope) == "VALIDATION_ERROR"
        assert "agent_identifier" in envelope["error"]["message"]

    def test_domain_error(self, tools):
        assert _error_code(tools.call("op-1", "get_agent_trust", {"agent_id": "ghost"})) == "AGENT_NOT_FOUND"

    def test_foreign_agent_is_not_found(self, tools, deal):
        assert _error_code(tools.call("op-1", "get_agent_trust", {"agent_id": deal["writer"]})) == "AGENT_NOT_FOUND"

    @patch("agent_resolve.trust.register_agent")
    def test_unexpected_error_is_internal(self, mock_register, tools):
        mock_register.side_effect = RuntimeError("boom")
        envelope = tools.call("op-1", "register_agent", {"agent_identifier": "buyer"})
        assert _error_code(envelope) == "INTERNAL_ERROR"
        assert "boom" not in envelope["error"]["message"]

    @patch("agent_resolve.trust.register_agent")
    def test_invariant_violation_propagates(self, mock_register, tools):
        mock_register.side_effect = DataIntegrityError("duplicate party")
        with pytest.raises(DataIntegrityError):
            tools.call("op-1", "register_agent", {"agent_identifier": "buyer"})

    def test_invalid_base64(self, tools, deal):
        dispute_id = _file(tools, deal)
        envelope = tools.call(
            "op-1",
            "submit_file_evidence",
            {
                "dispute_id": dispute_id,
                "agent_id": "buyer",
                "title": "Chat",
                "filename": "chat.txt",
                "content_base64": "not base64!!",
            },
        )
        assert _error_code(envelope) == "VALIDATION_ERROR"

    def test_list_transactions(self, tools, deal):
        data = _ok(tools.call("op-2", "list_transactions", {"agent_id": "writer", "status": "ACCEPTED"}))
        assert [t["transaction_id"] for t in data["transactions"]] == [deal["txn"]]
        envelope = tools.call("op-2", "list_transactions", {"agent_id": "writer", "status": "LOST"})
        assert _error_code(envelope) == "VALIDATION_ERROR"

    def test_unknown_status_filter(self, tools, deal):
        envelope = tools.call("op-1", "list_disputes", {"agent_id": "buyer", "status": "ON_FIRE"})
        assert _error_code(envelope) == "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Flows
# ---------------------------------------------------------------------------


class TestDisputeFlow:
    @patch("agent_resolve.arbitration._call_llm")
    def test_ruling_accepted_by_both(self, mock_llm, tools, deal, ledger):
        mock_llm.return_value = (llm_output("CLAIMANT", 0.85), 100)
        dispute_id = _file(tools, deal)
        ledger.deduct.assert_not_called()

        data = _ok(_respond(tools, dispute_id))
        assert data["status"] == "EVIDENCE_SUBMISSION"
        assert data["your_role"] == "RESPONDENT"

        _ok(
            tools.call(
                "op-1",
                "submit_evidence",
                {
                    "dispute_id": dispute_id,
                    "agent_id": "buyer",
                    "evidence_type": "AGREEMENT_EXCERPT",
                    "title": "Contract",
                    "content": "Deliver a 2000-word report by March 1st",
                },
            )
        )
        _ok(
            tools.call(
                "op-2",
                "submit_file_evidence",
                {
                    "dispute_id": dispute_id,
                    "agent_id": "writer",
                    "title": "Sent mail",
                    "filename": "sent.txt",
                    "content_base64": base64.b64encode(b"Sent report.pdf on Feb 28").decode(),
                },
            )
        )
        listed = _ok(tools.call("op-2", "get_evidence", {"dispute_id": dispute_id, "agent_id": "writer"}))
        assert [e["sequence"] for e in listed["evidence"]] == [1, 2]

        view = _complete_both(tools, dispute_id)
        assert view["status"] == "RULED"
        assert view["arbitration_error"] is None

        decision = _ok(tools.call("op-1", "get_decision", {"dispute_id": dispute_id, "agent_id": "buyer"}))
        assert decision["decision"]["ruling"] == "CLAIMANT"
        assert decision["decision"]["confidence"] == 0.85

        _ok(tools.call("op-1", "accept_decision", {"dispute_id": dispute_id, "agent_id": "buyer"}))
        closed = _ok(tools.call("op-2", "accept_decision", {"dispute_id": dispute_id, "agent_id": "writer"}))
        assert closed["status"] == "CLOSED"
        assert closed["final_ruling"] == "CLAIMANT"

        assert _trust(tools, "op-1", "buyer") == 52
        assert _trust(tools, "op-2", "writer") == 47

        fb = _ok(
            tools.call(
                "op-1",
                "submit_feedback",
                {
                    "dispute_id": dispute_id,
                    "agent_id": "buyer",
                    "fairness_rating": 5,
                    "reasoning_rating": 4,
                    "evidence_rating": 4,
                },
            )
        )
        assert fb["was_winner"]

    @patch("agent_resolve.arbitration._call_llm")
    def test_low_confidence_escalates(self, mock_llm, tools, deal):
        mock_llm.return_value = (llm_output("SPLIT", 0.3), 100)
        dispute_id = _file(tools, deal)
        _ok(_respond(tools, dispute_id))

        view = _complete_both(tools, dispute_id)

        assert view["status"] == "ESCALATED"
        esc = _ok(tools.call("op-1", "get_escalation_status", {"dispute_id": dispute_id, "agent_id": "buyer"}))
        assert esc["auto_escalated"]
        assert esc["credits_charged"] == 0

    @patch("agent_resolve.arbitration._call_llm")
    def test_party_escalation_after_rejection(self, mock_llm, tools, deal, ledger):
        mock_llm.return_value = (llm_output("CLAIMANT", 0.9), 100)
        dispute_id = _file(tools, deal)
        _ok(_respond(tools, dispute_id))
        _complete_both(tools, dispute_id)

        _ok(
            tools.call(
                "op-2",
                "reject_decision",
                {"dispute_id": dispute_id, "agent_id": "writer", "reason": "EVIDENCE_IGNORED"},
            )
        )
        esc = _ok(
            tools.call(
                "op-2",
                "request_escalation",
                {
                    "dispute_id": dispute_id,
                    "agent_id": "writer",
                    "reason": "The ruling ignored the email receipt I submitted",
                },
            )
        )

        assert not esc["auto_escalated"]
        assert esc["status"] == "REQUESTED"
        ledger.deduct.assert_called_once()
        assert ledger.deduct.call_args[0][0] == "op-2"

    @patch("agent_resolve.arbitration._call_llm")
    def test_overturned_large_dispute(self, mock_llm, tools, deal, ledger, session_factory):
        mock_llm.return_value = (llm_output("RESPONDENT", 0.8), 100)
        txn = _ok(
            tools.call(
                "op-1",
                "propose_transaction",
                {
                    "proposer_agent_id": "buyer",
                    "receiver_agent_id": deal["writer"],
                    "title": "Quarterly market analysis",
                    "stated_value": 200_000,
                },
            )
        )
        _ok(
            tools.call(
                "op-2",
                "respond_to_transaction",
                {"agent_id": "writer", "transaction_id": txn["transaction_id"], "accept": True},
            )
        )
        dispute_id = _file(tools, {**deal, "txn": txn["transaction_id"]})
        _ok(_respond(tools, dispute_id))

        view = _complete_both(tools, dispute_id)
        assert view["status"] == "RULED"
        assert view["decision"]["ruling"] == "RESPONDENT"
        assert _trust(tools, "op-1", "buyer") == 40
        assert _trust(tools, "op-2", "writer") == 52

        _ok(
            tools.call(
                "op-1",
                "reject_decision",
                {"dispute_id": dispute_id, "agent_id": "buyer", "reason": "EVIDENCE_IGNORED"},
            )
        )
        esc = _ok(
            tools.call(
                "op-1",
                "request_escalation",
                {
                    "dispute_id": dispute_id,
                    "agent_id": "buyer",
                    "reason": "The delivered file was an empty template, not the analysis",
                },
            )
        )
        assert esc["status"] == "REQUESTED"
        assert ledger.deduct.call_args[0][:2] == ("op-1", settings.escalation_fee_credits)

        with session_scope(session_factory) as db:
            escalation.record_human_ruling(
                db, dispute_id, "arb-1", Ruling.CLAIMANT, "The delivered file was empty.", now=NOW
            )

        final = _ok(tools.call("op-1", "get_dispute", {"dispute_id": dispute_id, "agent_id": "buyer"}))
        assert final["status"] == "CLOSED"
        assert final["final_ruling"] == "CLAIMANT"
        with session_scope(session_factory) as db:
            comparison = db.query(AccuracyComparisonDB).one()
            assert comparison.ai_ruling == Ruling.RESPONDENT
            assert comparison.human_ruling == Ruling.CLAIMANT
            assert not comparison.ruling_agreed
            assert comparison.stated_value == 200_000

    def test_unanswered_dispute_expires(self, tools, deal, clock):
        dispute_id = _file(tools, deal)
        clock.advance(hours=73)

        assert _error_code(_respond(tools, dispute_id)) == "INVALID_STATUS"

        view = _ok(tools.call("op-1", "get_dispute", {"dispute_id": dispute_id, "agent_id": "buyer"}))
        assert view["status"] == "EXPIRED"
        assert _trust(tools, "op-2", "writer") == 30

    @patch("agent_resolve.arbitration._call_llm")
    def test_arbitration_retried_on_read(self, mock_llm, tools, deal):
        mock_llm.side_effect = ConnectionError("provider down")
        dispute_id = _file(tools, deal)
        _ok(_respond(tools, dispute_id))

        view = _complete_both(tools, dispute_id)
        assert view["status"] == "EVIDENCE_SUBMISSION"
        assert view["arbitration_error"]["code"] == "ARBITRATION_UNAVAILABLE"

        mock_llm.side_effect = None
        mock_llm.return_value = (llm_output("RESPONDENT", 0.8), 100)
        decision = _ok(tools.call("op-2", "get_decision", {"dispute_id": dispute_id, "agent_id": "writer"}))
        assert decision["status"] == "RULED"
        assert decision["decision"]["ruling"] == "RESPONDENT"

    def test_outsider_cannot_read_dispute(self, tools, deal):
        dispute_id = _file(tools, deal)
        _ok(tools.call("op-3", "register_agent", {"agent_identifier": "snoop"}))
        envelope = tools.call("op-3", "get_dispute", {"dispute_id": dispute_id, "agent_id": "snoop"})
        assert _error_code(envelope) == "NOT_PARTY"

    def test_outsider_cannot_trigger_deadlines(self, tools, deal, clock):
        dispute_id = _file(tools, deal)
        _ok(tools.call("op-3", "register_agent", {"agent_identifier": "snoop"}))
        clock.advance(hours=73)

        envelope = tools.call("op-3", "get_dispute", {"dispute_id": dispute_id, "agent_id": "snoop"})

        assert _error_code(envelope) == "NOT_PARTY"
        assert _trust(tools, "op-2", "writer") == 50
        view = _ok(tools.call("op-1", "get_dispute", {"dispute_id": dispute_id, "agent_id": "buyer"}))
        assert view["status"] == "EXPIRED"
        assert _trust(tools, "op-2", "writer") == 30


class TestEscrowFlow:
    @patch("agent_resolve.arbitration._call_llm")
    def test_escrow_follows_ruling(self, mock_llm, tools, deal, payouts):
        mock_llm.return_value = (llm_output("CLAIMANT", 0.9), 100)
        funded = _ok(
            tools.call("op-1", "fund_escrow", {"agent_id": "buyer", "transaction_id": deal["txn"], "amount": 5000})
        )
        assert funded["escrow_status"] == "FUNDED"
        assert funded["funded_by"] == deal["buyer"]

        dispute_id = _file(tools, deal)
        envelope = tools.call("op-2", "release_escrow", {"agent_id": "writer", "transaction_id": deal["txn"]})
        assert _error_code(envelope) == "ESCROW_LOCKED"

        _ok(_respond(tools, dispute_id))
        _complete_both(tools, dispute_id)
        _ok(tools.call("op-1", "accept_decision", {"dispute_id": dispute_id, "agent_id": "buyer"}))
        _ok(tools.call("op-2", "accept_decision", {"dispute_id": dispute_id, "agent_id": "writer"}))

        released = _ok(tools.call("op-2", "release_escrow", {"agent_id": "writer", "transaction_id": deal["txn"]}))

        assert released["escrow_status"] == "RELEASED"
        assert released["released_to"] == deal["buyer"]
        assert released["transfers"] == {deal["buyer"]: "tr_1"}
        assert payouts.create_transfer.call_args[0][:2] == ("acct_buyer", 5000)

        status = _ok(tools.call("op-1", "get_escrow_status", {"agent_id": "buyer", "transaction_id": deal["txn"]}))
        assert status["escrow_status"] == "RELEASED"
