"""
Progress reporter — a read-only projection of an import session.

``compute_progress`` is pure.  ``ProgressMonitor`` re-runs it on a timer
while the import is active, and whenever the driver or the backend signals
that something changed.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Callable, Optional

from holdings_import.config import PROGRESS_REFRESH_SECONDS
from holdings_import.events import EventEmitter
from holdings_import.models import ImportSession, ProgressSnapshot

logger = logging.getLogger(__name__)

# Until the session is actually completed we never report more than this
ACTIVE_PROGRESS_CAP = 95.0


def format_eta(minutes: Optional[float]) -> Optional[str]:
    """Human-readable remaining time: 'under 1 minute', '12 min', '2h 5min'."""
    if minutes is None:
        return None
    if minutes < 1:
        return "under 1 minute"
    whole = math.ceil(minutes)
    if whole < 60:
        return f"{whole} min"
    return f"{whole // 60}h {whole % 60}min"


def compute_progress(session: ImportSession, now: datetime | None = None) -> ProgressSnapshot:
    now = now or datetime.now(timezone.utc)
    started = session.start_time
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    elapsed_seconds = max(0.0, (now - started).total_seconds())

    if session.status == "completed":
        percent = 100.0
    elif session.total_file_rows > 0:
        percent = min(ACTIVE_PROGRESS_CAP, session.processed_rows / session.total_file_rows * 100)
    elif session.total_batches > 0:
        percent = min(ACTIVE_PROGRESS_CAP, session.current_batch / session.total_batches * 100)
    else:
        percent = 0.0

    elapsed_minutes = elapsed_seconds / 60
    speed = session.processed_rows / elapsed_minutes if elapsed_minutes > 0 else 0.0

    eta: Optional[float] = None
    remaining = session.total_file_rows - session.processed_rows
    if session.status == "active" and speed > 0 and remaining > 0:
        eta = remaining / speed

    return ProgressSnapshot(
        session_id=session.session_id,
        status=session.status,
        processed_rows=session.processed_rows,
        total_file_rows=session.total_file_rows,
        current_batch=session.current_batch,
        total_batches=session.total_batches,
        overall_progress_percent=round(percent, 1),
        import_speed=round(speed, 1),
        estimated_minutes_remaining=round(eta, 1) if eta is not None else None,
        eta_label=format_eta(eta),
        elapsed_seconds=round(elapsed_seconds, 1),
    )


class ProgressMonitor:
    """
    Recomputes snapshots from *source* and hands them to subscribers.

    *source* returns the session to project (the driver's working copy, or a
    store lookup); it is only read, never written.
    """

    def __init__(
        self,
        source: Callable[[], Optional[ImportSession]],
        interval: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.source = source
        self.interval = interval if interval is not None else PROGRESS_REFRESH_SECONDS
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.events = EventEmitter()
        self.latest: Optional[ProgressSnapshot] = None

    def refresh(self) -> Optional[ProgressSnapshot]:
        session = self.source()
        if session is None:
            return self.latest
        snapshot = compute_progress(session, self.clock())
        self.latest = snapshot
        self.events.emit("progress", snapshot.model_dump(mode="json"))
        return snapshot

    def on_change(self, *_args):
        """Event hook for the driver's emitter or a push listener."""
        self.refresh()

    async def run(self):
        """Poll until the session leaves the active/paused states."""
        while True:
            snapshot = self.refresh()
            if snapshot is not None and snapshot.status not in ("pending", "active", "paused"):
                logger.debug("Progress monitor stopping: session %s", snapshot.status)
                return snapshot
            await asyncio.sleep(self.interval)
