"""CLI entrypoint for Agent Resolve.

Usage:
    agent-resolve                                  # Start the HTTP API
    agent-resolve --init-db                        # Create database tables and exit
    agent-resolve --arbitrate-pending              # Rule on every dispute that is ready
    agent-resolve --aggregate-metrics START END    # Roll up decision metrics (ISO dates)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime

import uvicorn

from agent_resolve import __version__
from agent_resolve.config import settings


def _parse_date(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value!r}") from exc


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    parser = argparse.ArgumentParser(description="Agent Resolve")
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create database tables and exit",
    )
    parser.add_argument(
        "--arbitrate-pending",
        action="store_true",
        help="Arbitrate every dispute whose evidence phase is over, then exit",
    )
    parser.add_argument(
        "--aggregate-metrics",
        nargs=2,
        metavar=("START", "END"),
        type=_parse_date,
        help="Aggregate decision metrics for [START, END) and exit",
    )
    parser.add_argument(
        "--host",
        default=settings.host,
        help=f"HTTP host (default: {settings.host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help=f"HTTP port (default: {settings.port})",
    )
    args = parser.parse_args()

    from agent_resolve.database import init_db, session_scope

    if args.init_db:
        init_db()
        print(f"Initialized database at {settings.database_url}")
        sys.exit(0)

    if args.arbitrate_pending:
        from agent_resolve.arbitration import process_pending_arbitrations

        processed, failed = process_pending_arbitrations()
        print(json.dumps({"processed": processed, "failed": failed}))
        sys.exit(0 if failed == 0 else 1)

    if args.aggregate_metrics:
        from agent_resolve.errors import ResolveError
        from agent_resolve.feedback import aggregate_metrics

        start, end = args.aggregate_metrics
        try:
            with session_scope() as db:
                metrics = aggregate_metrics(db, start, end)
                total = metrics.total_decisions if metrics is not None else 0
        except ResolveError as exc:
            print(f"ERROR: {exc.message}", file=sys.stderr)
            sys.exit(1)
        print(json.dumps({"period_start": start.isoformat(), "period_end": end.isoformat(), "total_decisions": total}))
        sys.exit(0)

    init_db()
    print(f"Agent Resolve v{__version__}")
    print(f"   Database:  {settings.database_url}")
    print(f"   LLM:       {settings.llm_model}")
    print(f"   Threshold: {settings.auto_escalate_threshold:.0%}")
    print(f"   Listening: http://{args.host}:{args.port}/tools")
    print()

    uvicorn.run(
        "agent_resolve.api:app",
        host=args.host,
        port=args.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
