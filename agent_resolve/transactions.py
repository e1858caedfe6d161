"""Transaction registry.

Agents propose transactions to one another; the receiver accepts or rejects
before the proposal expires. Completing a transaction rewards both parties
with a small trust gain. Disputes and escrow hang off these records.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from agent_resolve import trust
from agent_resolve.config import settings
from agent_resolve.errors import (
    AgentSuspended,
    InvalidTransactionState,
    NotParty,
    TransactionNotFound,
    ValidationFailed,
)
from agent_resolve.models import (
    AgentDB,
    AgentStatus,
    TransactionDB,
    TransactionStatus,
    external_id,
    utcnow,
)
from agent_resolve.schemas import ProposeTransactionInput

logger = logging.getLogger(__name__)

# Transactions a party may still file a dispute over or fund escrow against.
ACTIVE_STATUSES = (TransactionStatus.ACCEPTED, TransactionStatus.IN_PROGRESS)


def load_transaction(db: Session, transaction_ref: str, lock: bool = False) -> TransactionDB:
    query = db.query(TransactionDB).filter(
        (TransactionDB.external_id == transaction_ref) | (TransactionDB.id == transaction_ref)
    )
    if lock:
        query = query.with_for_update()
    txn = query.one_or_none()
    if txn is None:
        raise TransactionNotFound(f"Transaction {transaction_ref} not found")
    return txn


def is_party(txn: TransactionDB, agent_id: str) -> bool:
    return agent_id in (txn.proposer_agent_id, txn.receiver_agent_id)


def counterparty_id(txn: TransactionDB, agent_id: str) -> str:
    if agent_id == txn.proposer_agent_id:
        return txn.receiver_agent_id
    if agent_id == txn.receiver_agent_id:
        return txn.proposer_agent_id
    raise NotParty("Agent is not a party to this transaction")


def _require_party(txn: TransactionDB, agent: AgentDB) -> None:
    if not is_party(txn, agent.id):
        logger.warning("Agent %s is not a party to transaction %s", agent.external_id, txn.external_id)
        raise NotParty("Agent is not a party to this transaction")


def _require_active(agent: AgentDB) -> None:
    if agent.status != AgentStatus.ACTIVE:
        raise AgentSuspended(f"Agent {agent.external_id} is {agent.status.value}")


def refresh_expiry(db: Session, txn: TransactionDB, now: datetime | None = None) -> bool:
    """Expire a PROPOSED transaction whose response window has passed."""
    now = now or utcnow()
    if txn.status == TransactionStatus.PROPOSED and txn.expires_at is not None and now > txn.expires_at:
        txn.status = TransactionStatus.EXPIRED
        db.flush()
        logger.info("Transaction %s expired without a response", txn.external_id)
        return True
    return False


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def propose_transaction(
    db: Session,
    proposer: AgentDB,
    receiver: AgentDB,
    data: ProposeTransactionInput,
    now: datetime | None = None,
) -> TransactionDB:
    now = now or utcnow()
    if proposer.id == receiver.id:
        raise ValidationFailed("An agent cannot transact with itself")
    _require_active(proposer)
    _require_active(receiver)

    days = data.expires_in_days or settings.transaction_expiry_days
    txn = TransactionDB(
        external_id=external_id("RTXN"),
        proposer_agent_id=proposer.id,
        receiver_agent_id=receiver.id,
        title=data.title,
        description=data.description,
        terms=data.terms,
        stated_value=data.stated_value,
        stated_value_currency=data.stated_value_currency.upper(),
        status=TransactionStatus.PROPOSED,
        proposed_at=now,
        expires_at=now + timedelta(days=days),
    )
    db.add(txn)
    db.flush()
    logger.info(
        "Transaction %s proposed by %s to %s", txn.external_id, proposer.external_id, receiver.external_id
    )
    return txn


def respond_to_transaction(
    db: Session,
    transaction_ref: str,
    agent: AgentDB,
    accept: bool,
    now: datetime | None = None,
) -> TransactionDB:
    now = now or utcnow()
    txn = load_transaction(db, transaction_ref, lock=True)
    if agent.id != txn.receiver_agent_id:
        _require_party(txn, agent)
        raise NotParty("Only the receiving agent can respond to a proposal")
    refresh_expiry(db, txn, now)
    if txn.status != TransactionStatus.PROPOSED:
        raise InvalidTransactionState(f"Transaction is {txn.status.value}, expected PROPOSED")

    txn.responded_at = now
    if accept:
        txn.status = TransactionStatus.ACCEPTED
        trust.increment_transaction_count(db, txn.proposer_agent_id)
        trust.increment_transaction_count(db, txn.receiver_agent_id)
    else:
        txn.status = TransactionStatus.REJECTED
    db.flush()
    logger.info("Transaction %s %s", txn.external_id, txn.status.value.lower())
    return txn


def complete_transaction(
    db: Session,
    transaction_ref: str,
    agent: AgentDB,
    now: datetime | None = None,
) -> TransactionDB:
    now = now or utcnow()
    txn = load_transaction(db, transaction_ref, lock=True)
    _require_party(txn, agent)
    if txn.status not in ACTIVE_STATUSES:
        raise InvalidTransactionState(
            f"Transaction is {txn.status.value}, expected ACCEPTED or IN_PROGRESS"
        )

    txn.status = TransactionStatus.COMPLETED
    txn.completed_at = now
    for party_id in (txn.proposer_agent_id, txn.receiver_agent_id):
        trust.record_transaction_completion(db, party_id, txn.external_id, now=now)
    db.flush()
    return txn


def get_transaction(db: Session, transaction_ref: str, agent: AgentDB) -> TransactionDB:
    txn = load_transaction(db, transaction_ref)
    _require_party(txn, agent)
    return txn


def list_transactions(
    db: Session,
    agent: AgentDB,
    status: TransactionStatus | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[TransactionDB]:
    query = db.query(TransactionDB).filter(
        (TransactionDB.proposer_agent_id == agent.id) | (TransactionDB.receiver_agent_id == agent.id)
    )
    if status is not None:
        query = query.filter(TransactionDB.status == status)
    return query.order_by(TransactionDB.proposed_at.desc()).offset(offset).limit(limit).all()
