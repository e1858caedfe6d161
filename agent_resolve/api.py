"""HTTP service for Agent Resolve.

Exposes the operation surface at ``POST /tools/{tool_name}`` for agents
(the operator is identified by the ``X-Operator-Id`` header set by the
upstream gateway) and a small set of admin routes for human arbitrators
and batch jobs, guarded by ``X-Admin-Key``.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timezone

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from agent_resolve import __version__, arbitration, escalation, feedback
from agent_resolve.config import settings
from agent_resolve.database import SessionFactory, session_scope
from agent_resolve.errors import ResolveError
from agent_resolve.schemas import AggregateMetricsInput, AssignArbitratorInput, HumanRulingInput
from agent_resolve.sweeper import SweepWorker
from agent_resolve.tools import TOOL_REGISTRY, ResolveTools, serialize_escalation

logger = logging.getLogger(__name__)

# Base64 file evidence inflates the upload by a third; leave room for the JSON envelope.
MAX_REQUEST_BODY_BYTES = settings.max_upload_bytes * 4 // 3 + 64 * 1024


class _BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose body exceeds MAX_REQUEST_BODY_BYTES.

    Oversized uploads are refused at the HTTP layer before any JSON parsing,
    text extraction or prompt construction occurs.
    """

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and int(content_length) > MAX_REQUEST_BODY_BYTES:
            return JSONResponse(
                status_code=413,
                content={"detail": "Request body too large"},
            )
        return await call_next(request)


def _require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    if not settings.admin_api_key:
        raise HTTPException(status_code=503, detail="Admin API is disabled (no admin key configured)")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.admin_api_key):
        raise HTTPException(status_code=401, detail="Invalid admin key")


def create_app(
    tools: ResolveTools | None = None,
    sweeper: SweepWorker | None = None,
    session_factory: SessionFactory | None = None,
) -> FastAPI:
    """Build the FastAPI application around the given collaborators."""
    tools = tools or ResolveTools(session_factory=session_factory)
    sweeper = sweeper or SweepWorker(session_factory=session_factory)

    @asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if settings.sweeper_enabled:
            sweeper.start()
        yield
        if sweeper.running:
            sweeper.stop()

    app = FastAPI(
        title="Agent Resolve",
        description="Dispute resolution and trust scoring for autonomous agent transactions",
        version=__version__,
        lifespan=_lifespan,
    )
    app.add_middleware(_BodySizeLimitMiddleware)

    @app.exception_handler(ResolveError)
    async def _resolve_error_handler(_request: Request, exc: ResolveError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})

    # -----------------------------------------------------------------------
    # Public routes
    # -----------------------------------------------------------------------

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "service": "agent-resolve",
            "version": __version__,
            "auto_escalate_threshold": settings.auto_escalate_threshold,
            "llm_model": settings.llm_model,
        }

    @app.get("/tools")
    def list_tools():
        return {"tools": sorted(TOOL_REGISTRY)}

    @app.post("/tools/{tool_name}")
    def call_tool(
        tool_name: str,
        params: dict | None = None,
        x_operator_id: str | None = Header(default=None),
    ):
        if not x_operator_id:
            raise HTTPException(status_code=401, detail="Missing X-Operator-Id header")
        if tool_name not in TOOL_REGISTRY:
            raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_name}")
        return tools.call(x_operator_id, tool_name, params or {})

    # -----------------------------------------------------------------------
    # Admin routes
    # -----------------------------------------------------------------------

    @app.post("/admin/escalations/{dispute_id}/assign", dependencies=[Depends(_require_admin)])
    def assign_arbitrator(dispute_id: str, body: AssignArbitratorInput):
        with session_scope(session_factory) as db:
            esc = escalation.assign_arbitrator(db, dispute_id, body.arbitrator_id)
            return {"success": True, "data": serialize_escalation(esc)}

    @app.post("/admin/escalations/{dispute_id}/ruling", dependencies=[Depends(_require_admin)])
    def record_ruling(dispute_id: str, body: HumanRulingInput):
        with session_scope(session_factory) as db:
            esc = escalation.record_human_ruling(
                db, dispute_id, body.arbitrator_id, body.ruling, body.reasoning, body.notes
            )
            return {"success": True, "data": serialize_escalation(esc)}

    @app.post("/admin/metrics/aggregate", dependencies=[Depends(_require_admin)])
    def aggregate(body: AggregateMetricsInput):
        start = body.period_start
        end = body.period_end
        # Stored timestamps are naive UTC
        if start.tzinfo is not None:
            start = start.astimezone(timezone.utc).replace(tzinfo=None)
        if end.tzinfo is not None:
            end = end.astimezone(timezone.utc).replace(tzinfo=None)
        with session_scope(session_factory) as db:
            metrics = feedback.aggregate_metrics(db, start, end)
            if metrics is None:
                return {"success": True, "data": None}
            return {
                "success": True,
                "data": {
                    "period_start": metrics.period_start.isoformat(),
                    "period_end": metrics.period_end.isoformat(),
                    "total_decisions": metrics.total_decisions,
                    "both_accepted_rate": metrics.both_accepted_rate,
                    "escalation_rate": metrics.escalation_rate,
                    "human_agreement_rate": metrics.human_agreement_rate,
                    "avg_confidence": metrics.avg_confidence,
                    "feedback_count": metrics.feedback_count,
                    "by_claim_type": metrics.by_claim_type,
                    "top_rejection_reasons": metrics.top_rejection_reasons,
                },
            }

    @app.get("/admin/calibration", dependencies=[Depends(_require_admin)])
    def calibration():
        with session_scope(session_factory) as db:
            return {"calibration_context": feedback.get_calibration_context(db)}

    @app.post("/admin/arbitrate-pending", dependencies=[Depends(_require_admin)])
    def arbitrate_pending():
        processed, failed = arbitration.process_pending_arbitrations(session_factory)
        return {"processed": processed, "failed": failed}

    @app.get("/sweeper/status")
    def sweeper_status():
        """Return the current state of the deadline sweeper."""
        return sweeper.status()

    return app


app = create_app()
