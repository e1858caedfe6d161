"""Escrow coordinator.

Funds can be held against an accepted transaction and released exactly
once. While a dispute over the transaction is open the escrow is locked;
once the dispute is final the binding ruling decides who receives the funds.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from agent_resolve import disputes
from agent_resolve.clients import HttpPayoutClient
from agent_resolve.database import SessionFactory, session_scope
from agent_resolve.errors import (
    EscrowAlreadyFunded,
    EscrowAlreadyReleased,
    EscrowLocked,
    EscrowNotFunded,
    InvalidTransactionState,
    NotParty,
    TransferFailed,
    ValidationFailed,
)
from agent_resolve.models import (
    AgentDB,
    DisputeDB,
    DisputeStatus,
    EscrowStatus,
    Ruling,
    TransactionDB,
    TransactionStatus,
    utcnow,
)
from agent_resolve.schemas import EscrowPayout
from agent_resolve.transactions import ACTIVE_STATUSES, counterparty_id, is_party, load_transaction

logger = logging.getLogger(__name__)

SPLIT_RECIPIENT = "SPLIT"


def _require_party(txn: TransactionDB, agent: AgentDB) -> None:
    if not is_party(txn, agent.id):
        logger.warning("Agent %s is not a party to transaction %s", agent.external_id, txn.external_id)
        raise NotParty("Agent is not a party to this transaction")


def latest_dispute(db: Session, txn: TransactionDB) -> DisputeDB | None:
    return (
        db.query(DisputeDB)
        .filter(DisputeDB.transaction_id == txn.id)
        .order_by(DisputeDB.created_at.desc())
        .first()
    )


def fund_escrow(
    db: Session,
    transaction_ref: str,
    agent: AgentDB,
    amount_cents: int,
    currency: str = "USD",
    now: datetime | None = None,
) -> TransactionDB:
    now = now or utcnow()
    if amount_cents <= 0:
        raise ValidationFailed("Escrow amount must be positive")
    txn = load_transaction(db, transaction_ref, lock=True)
    _require_party(txn, agent)
    if txn.status not in ACTIVE_STATUSES:
        raise InvalidTransactionState(
            f"Transaction is {txn.status.value}; escrow requires ACCEPTED or IN_PROGRESS"
        )
    if txn.escrow_status != EscrowStatus.NONE:
        raise EscrowAlreadyFunded(f"Escrow is already {txn.escrow_status.value}")

    txn.escrow_status = EscrowStatus.FUNDED
    txn.escrow_amount = amount_cents
    txn.escrow_currency = currency.upper()
    txn.escrow_funded_at = now
    txn.escrow_funded_by = agent.id
    txn.status = TransactionStatus.IN_PROGRESS
    db.flush()
    logger.info(
        "Escrow funded for %s: %d %s by %s", txn.external_id, amount_cents, txn.escrow_currency, agent.external_id
    )
    return txn


def _allocations(txn: TransactionDB, dispute: DisputeDB | None, releasing_agent_id: str) -> list[tuple[str, int]]:
    """Who receives how much of the escrowed amount."""
    amount = txn.escrow_amount or 0
    if dispute is None:
        return [(counterparty_id(txn, releasing_agent_id), amount)]

    if dispute.status not in disputes.TERMINAL_STATUSES:
        raise EscrowLocked(f"Escrow is locked while dispute {dispute.external_id} is {dispute.status.value}")

    if dispute.status == DisputeStatus.EXPIRED:
        return [(dispute.claimant_agent_id, amount)]

    ruling = disputes.final_ruling(dispute)
    if ruling == Ruling.CLAIMANT:
        return [(dispute.claimant_agent_id, amount)]
    if ruling in (Ruling.RESPONDENT, Ruling.DISMISSED):
        return [(dispute.respondent_agent_id, amount)]
    if ruling == Ruling.SPLIT:
        half = amount // 2
        return [(dispute.claimant_agent_id, amount - half), (dispute.respondent_agent_id, half)]
    raise EscrowLocked(f"Dispute {dispute.external_id} has no binding ruling")


def _require_funded(txn: TransactionDB) -> None:
    if txn.escrow_status == EscrowStatus.RELEASED:
        raise EscrowAlreadyReleased(f"Escrow for {txn.external_id} was already released")
    if txn.escrow_status != EscrowStatus.FUNDED:
        raise EscrowNotFunded(f"Escrow for {txn.external_id} is not funded")


def plan_release(db: Session, txn: TransactionDB, releasing_agent_id: str) -> list[EscrowPayout]:
    """Every share of the escrow, with the transfers already made filled in."""
    dispute = latest_dispute(db, txn)
    paid = txn.escrow_transfer_ids or {}
    plan = []
    for recipient_id, amount in _allocations(txn, dispute, releasing_agent_id):
        if amount <= 0:
            continue
        recipient = db.get(AgentDB, recipient_id)
        if recipient is None or not recipient.payout_destination:
            raise TransferFailed(f"Agent {recipient_id} has no payout destination")
        plan.append(
            EscrowPayout(
                recipient_id=recipient.id,
                destination=recipient.payout_destination,
                amount=amount,
                idempotency_key=f"{txn.external_id}:{recipient.external_id}",
                metadata={
                    "transaction_id": txn.external_id,
                    "dispute_id": dispute.external_id if dispute is not None else None,
                    "recipient_agent_id": recipient.external_id,
                },
                transfer_id=paid.get(recipient.id),
            )
        )
    return plan


def record_transfer(db: Session, txn: TransactionDB, recipient_id: str, transfer_id: str) -> None:
    # Reassign so the JSON column is flagged dirty.
    txn.escrow_transfer_ids = {**(txn.escrow_transfer_ids or {}), recipient_id: transfer_id}
    db.flush()


def release_escrow(
    session_factory: SessionFactory | None,
    transaction_ref: str,
    agent_id: str,
    payouts: HttpPayoutClient | None = None,
    now: datetime | None = None,
) -> str:
    """Release escrowed funds to the party the outcome entitles.

    Runs in phases so that no row lock is held during a transfer:

    1. Authorize and settle any elapsed dispute deadline (short transaction)
    2. Plan the shares under the row lock (short transaction)
    3. One transfer per unpaid share, each recorded as soon as it succeeds
    4. Mark the escrow released (short transaction)

    A failure in step 3 leaves the escrow FUNDED with the completed
    transfers recorded; a retry pays only the shares still outstanding.
    Every transfer carries an idempotency key, so a concurrent release
    cannot move the same share twice.

    Returns the transaction id.
    """
    now = now or utcnow()

    # 1. Authorize
    with session_scope(session_factory) as db:
        txn = load_transaction(db, transaction_ref, lock=True)
        agent = db.get(AgentDB, agent_id)
        _require_party(txn, agent)
        _require_funded(txn)
        dispute = latest_dispute(db, txn)
        if dispute is not None:
            disputes.refresh_deadlines(db, dispute, now)
        txn_id = txn.id

    # 2. Plan
    with session_scope(session_factory) as db:
        txn = load_transaction(db, txn_id, lock=True)
        _require_funded(txn)
        plan = plan_release(db, txn, agent_id)
    if payouts is None:
        raise TransferFailed("No payout service configured")

    # 3. Transfer
    for payout in plan:
        if payout.transfer_id is not None:
            logger.info("Share for %s already paid (%s); skipping", payout.recipient_id, payout.transfer_id)
            continue
        transfer_id = payouts.create_transfer(
            payout.destination, payout.amount, payout.metadata, idempotency_key=payout.idempotency_key
        )
        with session_scope(session_factory) as db:
            record_transfer(db, load_transaction(db, txn_id, lock=True), payout.recipient_id, transfer_id)

    # 4. Finalize
    with session_scope(session_factory) as db:
        txn = load_transaction(db, txn_id, lock=True)
        _require_funded(txn)
        txn.escrow_status = EscrowStatus.RELEASED
        txn.escrow_released_at = now
        txn.escrow_released_to = plan[0].recipient_id if len(plan) == 1 else SPLIT_RECIPIENT
        db.flush()
        logger.info(
            "Escrow released for %s: %s",
            txn.external_id,
            ", ".join(f"{p.amount} to {p.recipient_id}" for p in plan),
        )
    return txn_id


def get_escrow_status(db: Session, transaction_ref: str, agent: AgentDB) -> TransactionDB:
    txn = load_transaction(db, transaction_ref)
    _require_party(txn, agent)
    return txn
