"""HTTP clients for external collaborators.

The credit ledger (filing and escalation fees) and the payout service
(escrow release transfers) live in other services. Both are reached over
REST with httpx; failures surface as distinct domain errors so callers can
decide whether to retry.
"""

from __future__ import annotations

import logging

import httpx

from agent_resolve.config import settings
from agent_resolve.errors import CreditLedgerUnavailable, InsufficientCredits, TransferFailed

logger = logging.getLogger(__name__)


def _url(base: str, path: str) -> str:
    return base.rstrip("/") + "/" + path.lstrip("/")


def _headers(api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


# ---------------------------------------------------------------------------
# Credit ledger
# ---------------------------------------------------------------------------


class HttpCreditLedger:
    """Deducts operator credits through the billing service."""

    def __init__(self, base_url: str | None = None, api_key: str | None = None, timeout: float = 10.0) -> None:
        self._base_url = base_url if base_url is not None else settings.billing_url
        self._api_key = api_key if api_key is not None else settings.billing_api_key
        self._timeout = timeout

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, headers=_headers(self._api_key))

    def has_sufficient_balance(self, operator_id: str, amount: int) -> bool:
        try:
            with self._client() as client:
                resp = client.get(_url(self._base_url, f"operators/{operator_id}/credits"))
                resp.raise_for_status()
                balance = int(resp.json().get("balance", 0))
        except (httpx.HTTPError, TypeError, ValueError) as exc:
            logger.error("Credit balance lookup failed for operator %s: %s", operator_id, exc)
            raise CreditLedgerUnavailable("Credit ledger is unavailable, try again later") from exc
        return balance >= amount

    def deduct(self, operator_id: str, amount: int, reference_type: str, reference_id: str) -> None:
        payload = {
            "amount": amount,
            "reference_type": reference_type,
            "reference_id": reference_id,
        }
        try:
            with self._client() as client:
                resp = client.post(_url(self._base_url, f"operators/{operator_id}/credits/deduct"), json=payload)
        except httpx.HTTPError as exc:
            logger.error("Credit deduction failed for operator %s: %s", operator_id, exc)
            raise CreditLedgerUnavailable("Credit ledger is unavailable, try again later") from exc

        if resp.status_code == 402:
            raise InsufficientCredits(f"Insufficient credits: {amount} required")
        if not resp.is_success:
            logger.error("Credit ledger returned %d for operator %s", resp.status_code, operator_id)
            raise CreditLedgerUnavailable(f"Credit ledger returned HTTP {resp.status_code}")
        logger.info("Deducted %d credits from operator %s (%s %s)", amount, operator_id, reference_type, reference_id)


# ---------------------------------------------------------------------------
# Payouts
# ---------------------------------------------------------------------------


class HttpPayoutClient:
    """Creates transfers to agent payout destinations."""

    def __init__(self, base_url: str | None = None, api_key: str | None = None, timeout: float = 15.0) -> None:
        self._base_url = base_url if base_url is not None else settings.payouts_url
        self._api_key = api_key if api_key is not None else settings.payouts_api_key
        self._timeout = timeout

    def create_transfer(
        self, destination: str, amount_cents: int, metadata: dict, idempotency_key: str | None = None
    ) -> str:
        """Create a transfer and return its id.

        Repeating a call with the same ``idempotency_key`` returns the
        original transfer instead of moving the money again.
        """
        payload = {
            "destination": destination,
            "amount": amount_cents,
            "metadata": metadata,
        }
        headers = _headers(self._api_key)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            with httpx.Client(timeout=self._timeout, headers=headers) as client:
                resp = client.post(_url(self._base_url, "transfers"), json=payload)
                resp.raise_for_status()
                transfer_id = resp.json()["id"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.error("Transfer of %d cents to %s failed: %s", amount_cents, destination, exc)
            raise TransferFailed(f"Transfer to {destination} failed") from exc
        logger.info("Created transfer %s (%d cents to %s)", transfer_id, amount_cents, destination)
        return transfer_id
