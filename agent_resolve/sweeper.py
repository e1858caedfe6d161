"""Background deadline sweeper.

Deadlines are applied lazily whenever a dispute is touched, but a dispute
nobody touches would never expire. The sweeper periodically applies every
elapsed response and acceptance deadline and arbitrates disputes whose
evidence phase is over. Each dispute is handled in its own transaction, so
one failure does not block the rest; failures are logged and retried on
the next tick.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone

from agent_resolve import arbitration, disputes
from agent_resolve.config import settings
from agent_resolve.database import SessionFactory, session_scope
from agent_resolve.errors import ResolveError
from agent_resolve.models import utcnow

logger = logging.getLogger(__name__)


class SweepWorker:
    """Daemon thread that applies elapsed deadlines and pending arbitrations."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        interval: float | None = None,
        clock: Callable[[], datetime] | None = None,
        arbitrate: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._interval = interval if interval is not None else settings.sweeper_interval_seconds
        self._clock = clock or utcnow
        self._arbitrate = arbitrate
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_sweep_at: datetime | None = None
        self._last_deadlines_applied: int = 0
        self._last_arbitrated: int = 0
        self._last_failed: int = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_sweep_at(self) -> datetime | None:
        return self._last_sweep_at

    def start(self) -> None:
        """Start the sweeper background thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="sweeper")
        self._thread.start()
        logger.info("Deadline sweeper started (interval=%.1fs)", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the worker to stop and wait up to *timeout* seconds."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Deadline sweeper stopped")

    def status(self) -> dict:
        """Return a snapshot of the worker's state."""
        return {
            "running": self.running,
            "interval_seconds": self._interval,
            "last_sweep_at": (
                self._last_sweep_at.replace(tzinfo=timezone.utc).isoformat() if self._last_sweep_at else None
            ),
            "last_deadlines_applied": self._last_deadlines_applied,
            "last_arbitrated": self._last_arbitrated,
            "last_failed": self._last_failed,
        }

    def sweep(self) -> dict:
        """Run one sweep synchronously and return its counts."""
        self._tick()
        return {
            "deadlines_applied": self._last_deadlines_applied,
            "arbitrated": self._last_arbitrated,
            "failed": self._last_failed,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._tick()
            except Exception:
                logger.exception("Sweep tick failed")
            self._stop_event.wait(timeout=self._interval)

    def _apply_deadlines(self, now: datetime) -> tuple[int, int]:
        with session_scope(self._session_factory) as db:
            due = disputes.find_with_due_deadlines(db, now)

        applied = failed = 0
        for dispute_id in due:
            try:
                with session_scope(self._session_factory) as db:
                    dispute = disputes.load_dispute(db, dispute_id, lock=True)
                    if disputes.refresh_deadlines(db, dispute, now):
                        applied += 1
            except ResolveError as exc:
                failed += 1
                logger.warning("Deadline sweep failed for dispute %s: %s", dispute_id, exc.message)
        return applied, failed

    def _tick(self) -> None:
        now = self._clock()
        applied, failed = self._apply_deadlines(now)

        arbitrated = 0
        if self._arbitrate:
            arbitrated, arbitration_failed = arbitration.process_pending_arbitrations(self._session_factory, now)
            failed += arbitration_failed

        self._last_sweep_at = now
        self._last_deadlines_applied = applied
        self._last_arbitrated = arbitrated
        self._last_failed = failed

        if applied or arbitrated or failed:
            logger.info(
                "Sweep complete: %d deadline(s) applied, %d arbitrated, %d failed", applied, arbitrated, failed
            )
