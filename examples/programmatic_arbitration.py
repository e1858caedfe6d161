"""Example: Programmatic dispute arbitration.

This example drives a full dispute through the operation surface in-process,
without the HTTP service. Two agents on different operators agree a
transaction, the buyer files a dispute, both sides submit evidence and the
AI arbitrator rules once both have marked their submissions complete.

Prerequisites:
    export RESOLVE_DATABASE_URL=sqlite:///./example.db
    export ANTHROPIC_API_KEY=sk-ant-...   # or OPENAI_API_KEY for OpenAI models

Usage:
    python examples/programmatic_arbitration.py
"""

from __future__ import annotations

import json
import sys
from unittest.mock import MagicMock

from agent_resolve import ResolveTools
from agent_resolve.clients import HttpCreditLedger, HttpPayoutClient
from agent_resolve.database import init_db


def _ok(envelope: dict) -> dict:
    if not envelope["success"]:
        print(f"\nError: {envelope['error']['code']}: {envelope['error']['message']}")
        sys.exit(1)
    return envelope["data"]


def main() -> None:
    init_db()
    # No billing or payout service in this example; the first dispute is free anyway.
    tools = ResolveTools(
        ledger=MagicMock(spec=HttpCreditLedger),
        payouts=MagicMock(spec=HttpPayoutClient),
    )

    # Step 1: Register both agents and agree a transaction
    buyer = _ok(tools.call("op-buyer", "register_agent", {"agent_identifier": "research-buyer"}))
    writer = _ok(tools.call("op-writer", "register_agent", {"agent_identifier": "report-writer"}))
    txn = _ok(
        tools.call(
            "op-buyer",
            "propose_transaction",
            {
                "proposer_agent_id": buyer["agent_id"],
                "receiver_agent_id": writer["agent_id"],
                "title": "Market research report",
                "description": "2000-word report on Q1 AI agent market trends",
                "terms": {"deliverable": "PDF report", "deadline": "2026-03-01"},
                "stated_value": 5000,
            },
        )
    )
    _ok(
        tools.call(
            "op-writer",
            "respond_to_transaction",
            {"agent_id": writer["agent_id"], "transaction_id": txn["transaction_id"], "accept": True},
        )
    )
    print("=" * 60)
    print(f"Transaction {txn['transaction_id']} accepted")
    print("=" * 60)

    # Step 2: File and answer the dispute
    dispute = _ok(
        tools.call(
            "op-buyer",
            "file_dispute",
            {
                "transaction_id": txn["transaction_id"],
                "claimant_agent_id": buyer["agent_id"],
                "claim_type": "NON_PERFORMANCE",
                "claim_summary": "The report was never delivered",
                "claim_details": "The deadline of March 1st passed with no delivery or message.",
                "requested_resolution": "Full refund of the agreed amount",
            },
        )
    )
    dispute_id = dispute["dispute_id"]
    _ok(
        tools.call(
            "op-writer",
            "respond_to_dispute",
            {
                "dispute_id": dispute_id,
                "respondent_agent_id": writer["agent_id"],
                "response_summary": "The report was delivered by email on February 28th",
            },
        )
    )
    print(f"Dispute {dispute_id} filed ({'free' if dispute['was_free'] else dispute['credits_charged']} credits)")

    # Step 3: Evidence from both sides
    for operator_id, agent_id, evidence_type, title, content in (
        (
            "op-buyer",
            buyer["agent_id"],
            "AGREEMENT_EXCERPT",
            "Agreed terms",
            "Deliverable: 2000-word PDF report. Deadline: March 1st, 2026.",
        ),
        (
            "op-writer",
            writer["agent_id"],
            "COMMUNICATION_LOG",
            "Outgoing mail",
            "Feb 28 23:10 UTC: sent q1-report.pdf to the buyer's delivery address.",
        ),
    ):
        _ok(
            tools.call(
                operator_id,
                "submit_evidence",
                {
                    "dispute_id": dispute_id,
                    "agent_id": agent_id,
                    "evidence_type": evidence_type,
                    "title": title,
                    "content": content,
                },
            )
        )

    # Step 4: Close submissions; the second call triggers arbitration
    print("Running AI arbitration...")
    print("-" * 60)
    _ok(tools.call("op-buyer", "mark_submission_complete", {"dispute_id": dispute_id, "agent_id": buyer["agent_id"]}))
    view = _ok(
        tools.call("op-writer", "mark_submission_complete", {"dispute_id": dispute_id, "agent_id": writer["agent_id"]})
    )
    if view["arbitration_error"]:
        print(f"Arbitration unavailable: {view['arbitration_error']['message']}")
        print("The sweeper (or a later get_decision call) will retry.")
        return

    # Step 5: Display results
    decision = _ok(tools.call("op-buyer", "get_decision", {"dispute_id": dispute_id, "agent_id": buyer["agent_id"]}))
    d = decision["decision"]
    print(f"\n{'=' * 60}")
    print(f"RULING: {d['ruling']}  (status {decision['status']})")
    print(f"  Confidence:  {d['confidence']:.0%}")
    print(f"  Reasoning:   {d['reasoning']}")
    print(f"  Factors:     {', '.join(d['key_factors'])}")
    print(f"  Trust:       claimant {d['claimant_score_change']:+d}, respondent {d['respondent_score_change']:+d}")

    if decision["status"] == "ESCALATED":
        print("\nThis ruling was ESCALATED: confidence below threshold.")
        print("A human arbitrator should rule via POST /admin/escalations/{dispute_id}/ruling.")

    for operator_id, agent_id in (("op-buyer", buyer["agent_id"]), ("op-writer", writer["agent_id"])):
        trust = _ok(tools.call(operator_id, "get_agent_trust", {"agent_id": agent_id}))
        print(f"\n{trust['agent_identifier']}: trust {trust['trust_score']}")
        print(json.dumps(trust["recent_history"], indent=2))


if __name__ == "__main__":
    main()
