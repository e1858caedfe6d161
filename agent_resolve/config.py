"""Configuration for Agent Resolve.

All settings are driven by environment variables with sensible defaults.
Trust deltas, quota limits, fees and deadline windows are policy values and
can be tuned here without touching the services that consume them.
"""

from __future__ import annotations

import os


def _get_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return int(val)


def _get_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return float(val)


def _get_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


class ResolveSettings:
    # --- Storage ---
    database_url: str = os.getenv("RESOLVE_DATABASE_URL", "sqlite:///./agent_resolve.db")
    database_echo: bool = _get_bool("RESOLVE_DATABASE_ECHO", False)

    # --- LLM provider (via LiteLLM) ---
    llm_model: str = os.getenv("RESOLVE_LLM_MODEL", "anthropic/claude-sonnet-4-20250514")
    llm_temperature: float = _get_float("RESOLVE_LLM_TEMPERATURE", 0.1)
    llm_max_tokens: int = _get_int("RESOLVE_LLM_MAX_TOKENS", 4096)
    llm_timeout_seconds: int = _get_int("RESOLVE_LLM_TIMEOUT", 60)
    # If True, log full LLM responses for audit.
    audit_log_enabled: bool = _get_bool("RESOLVE_AUDIT_LOG", False)

    # --- Arbitration policy ---
    # Rulings below this confidence are escalated to a human arbitrator.
    auto_escalate_threshold: float = _get_float("RESOLVE_AUTO_ESCALATE_THRESHOLD", 0.5)

    # --- Trust policy ---
    trust_initial_score: int = _get_int("RESOLVE_TRUST_INITIAL", 50)
    trust_transaction_complete: int = _get_int("RESOLVE_TRUST_TRANSACTION_COMPLETE", 1)
    trust_dispute_win: int = _get_int("RESOLVE_TRUST_DISPUTE_WIN", 2)
    trust_split_ruling: int = _get_int("RESOLVE_TRUST_SPLIT_RULING", -1)
    trust_loss_small: int = _get_int("RESOLVE_TRUST_LOSS_SMALL", -3)
    trust_loss_medium: int = _get_int("RESOLVE_TRUST_LOSS_MEDIUM", -5)
    trust_loss_large: int = _get_int("RESOLVE_TRUST_LOSS_LARGE", -10)
    trust_dismissed: int = _get_int("RESOLVE_TRUST_DISMISSED", -5)
    trust_no_response: int = _get_int("RESOLVE_TRUST_NO_RESPONSE", -20)
    trust_escalation_favorable: int = _get_int("RESOLVE_TRUST_ESCALATION_FAVORABLE", 15)
    trust_escalation_unfavorable: int = _get_int("RESOLVE_TRUST_ESCALATION_UNFAVORABLE", -25)
    # Value bands in cents: below small -> small loss, below medium -> medium loss.
    trust_small_value_cents: int = _get_int("RESOLVE_TRUST_SMALL_VALUE_CENTS", 10_000)
    trust_medium_value_cents: int = _get_int("RESOLVE_TRUST_MEDIUM_VALUE_CENTS", 100_000)

    # --- Dispute quota and fees ---
    monthly_dispute_limit: int = _get_int("RESOLVE_MONTHLY_DISPUTE_LIMIT", 5)
    free_monthly_disputes: int = _get_int("RESOLVE_FREE_MONTHLY_DISPUTES", 5)
    free_dispute_value_cents: int = _get_int("RESOLVE_FREE_DISPUTE_VALUE_CENTS", 10_000)
    dispute_base_fee_credits: int = _get_int("RESOLVE_DISPUTE_BASE_FEE", 500)
    # Credits added per $1000 of stated value.
    dispute_fee_per_thousand: int = _get_int("RESOLVE_DISPUTE_FEE_PER_THOUSAND", 100)
    dispute_max_fee_credits: int = _get_int("RESOLVE_DISPUTE_MAX_FEE", 5_000)
    escalation_fee_credits: int = _get_int("RESOLVE_ESCALATION_FEE", 2_000)

    # --- Deadline windows ---
    response_window_hours: int = _get_int("RESOLVE_RESPONSE_WINDOW_HOURS", 72)
    evidence_window_hours: int = _get_int("RESOLVE_EVIDENCE_WINDOW_HOURS", 24)
    acceptance_window_days: int = _get_int("RESOLVE_ACCEPTANCE_WINDOW_DAYS", 7)
    feedback_window_days: int = _get_int("RESOLVE_FEEDBACK_WINDOW_DAYS", 30)
    transaction_expiry_days: int = _get_int("RESOLVE_TRANSACTION_EXPIRY_DAYS", 7)
    min_deadline_extension_hours: int = _get_int("RESOLVE_MIN_EXTENSION_HOURS", 1)

    # --- Evidence ---
    max_evidence_chars: int = _get_int("RESOLVE_MAX_EVIDENCE_CHARS", 50_000)
    max_upload_bytes: int = _get_int("RESOLVE_MAX_UPLOAD_BYTES", 10 * 1024 * 1024)

    # --- Collaborators ---
    billing_url: str = os.getenv("RESOLVE_BILLING_URL", "http://127.0.0.1:3200/v1")
    billing_api_key: str = os.getenv("RESOLVE_BILLING_API_KEY", "")
    payouts_url: str = os.getenv("RESOLVE_PAYOUTS_URL", "http://127.0.0.1:3300/v1")
    payouts_api_key: str = os.getenv("RESOLVE_PAYOUTS_API_KEY", "")
    # Webhook URL to POST escalation notices to (e.g., Slack incoming webhook).
    escalation_webhook_url: str = os.getenv("RESOLVE_ESCALATION_WEBHOOK_URL", "")

    # --- HTTP service ---
    host: str = os.getenv("RESOLVE_HOST", "127.0.0.1")
    port: int = _get_int("RESOLVE_PORT", 3100)
    admin_api_key: str = os.getenv("RESOLVE_ADMIN_API_KEY", "")

    # --- Deadline sweeper ---
    sweeper_enabled: bool = _get_bool("RESOLVE_SWEEPER_ENABLED", False)
    sweeper_interval_seconds: float = _get_float("RESOLVE_SWEEPER_INTERVAL", 300.0)


settings = ResolveSettings()
