"""Shared fixtures: an in-memory database, a controllable clock and builders."""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# Offline test runs: use litellm's bundled model cost map instead of fetching it.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from agent_resolve import disputes, transactions, trust
from agent_resolve.clients import HttpCreditLedger, HttpPayoutClient
from agent_resolve.database import init_db, make_session_factory, session_scope
from agent_resolve.models import ClaimType
from agent_resolve.schemas import FileDisputeInput, ProposeTransactionInput, RegisterAgentInput
from agent_resolve.tools import ResolveTools

NOW = datetime(2026, 3, 10, 12, 0, 0)


class Clock:
    """Mutable clock handed to services and tools in place of utcnow."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def llm_output(ruling: str = "CLAIMANT", confidence: float = 0.85, reasoning: str | None = None) -> dict:
    return {
        "ruling": ruling,
        "reasoning": reasoning or f"The evidence supports a {ruling.lower()} ruling.",
        "details": {
            "confidence": confidence,
            "key_factors": ["Delivery deadline missed", "No delivery confirmation"],
            "mitigating_factors": [],
            "recommendation": "Refund the claimant.",
        },
    }


def llm_completion(payload: dict | str) -> MagicMock:
    """Fake litellm completion response carrying ``payload`` as content."""
    content = payload if isinstance(payload, str) else json.dumps(payload)
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def clock():
    return Clock(NOW)


# ---------------------------------------------------------------------------
# Builders (single session, flush only)
# ---------------------------------------------------------------------------


@pytest.fixture
def make_agent(db):
    def _make(identifier: str, operator_id: str = "op-1", payout_destination: str | None = None):
        return trust.register_agent(
            db,
            operator_id,
            RegisterAgentInput(agent_identifier=identifier, payout_destination=payout_destination),
        )

    return _make


@pytest.fixture
def make_transaction(db):
    def _make(proposer, receiver, stated_value: int | None = 5000, accept: bool = True, now: datetime = NOW):
        txn = transactions.propose_transaction(
            db,
            proposer,
            receiver,
            ProposeTransactionInput(
                proposer_agent_id=proposer.external_id,
                receiver_agent_id=receiver.external_id,
                title="Market research report",
                description="2000-word report on Q1 trends",
                terms={"deliverable": "report", "deadline": "2026-03-01"},
                stated_value=stated_value,
            ),
            now=now,
        )
        if accept:
            transactions.respond_to_transaction(db, txn.id, receiver, True, now=now)
        return txn

    return _make


def file_input(txn, claimant, claim_type: ClaimType = ClaimType.NON_PERFORMANCE) -> FileDisputeInput:
    return FileDisputeInput(
        transaction_id=txn.external_id,
        claimant_agent_id=claimant.external_id,
        claim_type=claim_type,
        claim_summary="The report was never delivered",
        claim_details="Deadline passed on March 1st with no delivery.",
        requested_resolution="Full refund of the agreed amount",
    )


@pytest.fixture
def parties(make_agent, make_transaction):
    """Claimant, respondent and an accepted transaction between them."""
    claimant = make_agent("buyer", operator_id="op-1", payout_destination="acct_buyer")
    respondent = make_agent("writer", operator_id="op-2", payout_destination="acct_writer")
    txn = make_transaction(claimant, respondent)
    return SimpleNamespace(claimant=claimant, respondent=respondent, txn=txn)


@pytest.fixture
def make_dispute(db, parties):
    """File a dispute over ``parties.txn``; optionally move it into evidence submission."""

    def _make(respond: bool = True, now: datetime = NOW, claim_type: ClaimType = ClaimType.NON_PERFORMANCE):
        dispute = disputes.file_dispute(
            db, parties.claimant, file_input(parties.txn, parties.claimant, claim_type), "op-1", now=now
        )
        if respond:
            disputes.respond_to_dispute(
                db,
                dispute.id,
                parties.respondent,
                "The report was delivered on time via email",
                now=now,
            )
        return dispute

    return _make


# ---------------------------------------------------------------------------
# Committed state (for code that opens its own sessions)
# ---------------------------------------------------------------------------


@pytest.fixture
def seed_dispute(session_factory):
    """Commit two agents, a transaction and a dispute; return their ids.

    ``stage`` is one of ``filed``, ``evidence`` or ``ready`` (both parties
    marked their submission complete).
    """

    def _seed(stage: str = "ready", stated_value: int | None = 5000, now: datetime = NOW, suffix: str = ""):
        with session_scope(session_factory) as db:
            claimant = trust.register_agent(db, "op-1", RegisterAgentInput(agent_identifier=f"buyer{suffix}"))
            respondent = trust.register_agent(db, "op-2", RegisterAgentInput(agent_identifier=f"writer{suffix}"))
            txn = transactions.propose_transaction(
                db,
                claimant,
                respondent,
                ProposeTransactionInput(
                    proposer_agent_id=claimant.external_id,
                    receiver_agent_id=respondent.external_id,
                    title="Market research report",
                    stated_value=stated_value,
                ),
                now=now,
            )
            transactions.respond_to_transaction(db, txn.id, respondent, True, now=now)
            dispute = disputes.file_dispute(db, claimant, file_input(txn, claimant), "op-1", now=now)
            if stage in ("evidence", "ready"):
                disputes.respond_to_dispute(
                    db, dispute.id, respondent, "The report was delivered on time via email", now=now
                )
            if stage == "ready":
                disputes.mark_submission_complete(db, dispute.id, claimant, now=now)
                disputes.mark_submission_complete(db, dispute.id, respondent, now=now)
            return SimpleNamespace(
                dispute_id=dispute.id,
                dispute_ref=dispute.external_id,
                claimant_id=claimant.id,
                respondent_id=respondent.id,
                transaction_id=txn.id,
            )

    return _seed


# ---------------------------------------------------------------------------
# Operation surface
# ---------------------------------------------------------------------------


@pytest.fixture
def ledger():
    return MagicMock(spec=HttpCreditLedger)


@pytest.fixture
def payouts():
    mock = MagicMock(spec=HttpPayoutClient)
    mock.create_transfer.side_effect = [f"tr_{i}" for i in range(1, 10)]
    return mock


@pytest.fixture
def tools(session_factory, ledger, payouts, clock):
    return ResolveTools(session_factory=session_factory, ledger=ledger, payouts=payouts, clock=clock)
