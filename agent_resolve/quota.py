"""Dispute quota guard.

Agents may file a limited number of disputes per calendar month. The
counter is reset lazily: the first check in a new month (compared by
month and year, not elapsed days) zeroes it before reporting.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from agent_resolve.config import settings
from agent_resolve.clients import HttpCreditLedger
from agent_resolve.errors import AgentNotFound, CreditLedgerUnavailable, InsufficientCredits
from agent_resolve.models import AgentDB, utcnow
from agent_resolve.schemas import DisputeCost, DisputeLimit

logger = logging.getLogger(__name__)


def _same_month(a: datetime, b: datetime) -> bool:
    return a.year == b.year and a.month == b.month


def check_dispute_limit(db: Session, agent_id: str, now: datetime | None = None) -> DisputeLimit:
    """Report whether the agent may file another dispute this month.

    Resets the monthly counter as a side effect when the stored reset
    timestamp belongs to a previous month.
    """
    now = now or utcnow()
    agent = db.query(AgentDB).filter(AgentDB.id == agent_id).with_for_update().one_or_none()
    if agent is None:
        raise AgentNotFound(f"Agent {agent_id} not found")

    if agent.monthly_dispute_reset_at is None or not _same_month(agent.monthly_dispute_reset_at, now):
        if agent.monthly_dispute_count:
            logger.info(
                "Resetting monthly dispute count for %s (was %d)",
                agent.external_id,
                agent.monthly_dispute_count,
            )
        agent.monthly_dispute_count = 0
        agent.monthly_dispute_reset_at = now
        db.flush()

    limit = settings.monthly_dispute_limit
    return DisputeLimit(
        can_file=agent.monthly_dispute_count < limit,
        disputes_this_month=agent.monthly_dispute_count,
        limit=limit,
    )


def calculate_dispute_cost(stated_value_cents: int | None, disputes_this_month: int) -> DisputeCost:
    """Filing fee in credits.

    Free when the stated value is below the free threshold or the agent is
    still within its free monthly allowance; otherwise a base fee plus a
    value-proportional component, capped.
    """
    value = stated_value_cents or 0
    if value < settings.free_dispute_value_cents or disputes_this_month < settings.free_monthly_disputes:
        return DisputeCost(estimated_cost=0, is_free=True)

    # fee_per_thousand credits for every $1000 (100_000 cents) of value
    proportional = (value * settings.dispute_fee_per_thousand) // 100_000
    cost = min(settings.dispute_max_fee_credits, settings.dispute_base_fee_credits + proportional)
    return DisputeCost(estimated_cost=cost, is_free=False)


def require_credits(ledger: HttpCreditLedger | None, operator_id: str, amount: int, purpose: str) -> None:
    """Refuse a paid operation up front when the operator cannot cover it."""
    if ledger is None:
        raise CreditLedgerUnavailable(f"No credit ledger configured for {purpose}")
    if not ledger.has_sufficient_balance(operator_id, amount):
        logger.info("Operator %s cannot cover %d credits for %s", operator_id, amount, purpose)
        raise InsufficientCredits(f"Insufficient credits: {amount} required")
