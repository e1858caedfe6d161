"""Agent Resolve: dispute resolution and trust scoring for agent-to-agent transactions."""

__version__ = "0.1.0"

from agent_resolve.config import ResolveSettings, settings
from agent_resolve.errors import InvariantViolation, ResolveError
from agent_resolve.models import (
    ClaimType,
    DisputeStatus,
    EvidenceType,
    PartyRole,
    RejectionReason,
    Ruling,
    TransactionStatus,
)
from agent_resolve.schemas import ArbitrationResult
from agent_resolve.sweeper import SweepWorker
from agent_resolve.tools import ResolveTools
from agent_resolve.trust import TrustPolicy, calculate_trust_impact

__all__ = [
    "settings",
    "ResolveSettings",
    "ResolveTools",
    "SweepWorker",
    "TrustPolicy",
    "calculate_trust_impact",
    "ArbitrationResult",
    "ResolveError",
    "InvariantViolation",
    "ClaimType",
    "DisputeStatus",
    "EvidenceType",
    "PartyRole",
    "RejectionReason",
    "Ruling",
    "TransactionStatus",
]
