"""
Durable store for in-flight import sessions.

Local persistence is SQLite (one row per session plus a single well-known
"active import" pointer).  When a remote URL is configured, every save is
also queued for a remote ``import_sessions`` table so other devices can
watch progress; the remote upsert runs in the background and never holds up
the caller.  The store does no locking; one driver per session.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx

from holdings_import.config import (
    ACTIVE_SESSION_KEY,
    REMOTE_SESSION_API_KEY,
    REMOTE_SESSION_URL,
    SESSION_DB_PATH,
    STALENESS_HOURS,
)
from holdings_import.database import get_db, init_db
from holdings_import.models import ActiveImportPointer, ImportSession

logger = logging.getLogger(__name__)

RESUMABLE_STATUSES = ("active", "paused")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RemoteSessionMirror:
    """
    Best-effort upsert of session rows to a PostgREST-style table.

    ``schedule()`` never waits on the network: the latest row per session is
    queued and a background task posts it.  Rows for the same session are
    coalesced, so the remote table only ever moves forward.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key if api_key is not None else REMOTE_SESSION_API_KEY
        self._client = client
        self._owns_client = client is None
        self._pending: dict[str, dict] = {}
        self._drain_task: asyncio.Task | None = None

    def _headers(self) -> dict:
        headers = {"Prefer": "resolution=merge-duplicates"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _row(session: ImportSession) -> dict:
        return {
            "session_id": session.session_id,
            "year": session.year,
            "file_names": list(session.file_names),
            "total_file_rows": session.total_file_rows,
            "processed_rows": session.processed_rows,
            "current_batch": session.current_batch,
            "total_batches": session.total_batches,
            "status": session.status,
            "errors_count": session.errors_count,
            "duplicates_count": session.duplicates_count,
            "start_time": session.start_time.isoformat(),
            "updated_at": session.last_update_time.isoformat(),
        }

    async def _post(self, row: dict) -> bool:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        try:
            resp = await self._client.post(
                f"{self.base_url}/import_sessions", json=row, headers=self._headers()
            )
            resp.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("Remote mirror upsert failed for %s: %s", row["session_id"], e)
            return False

    async def upsert(self, session: ImportSession) -> bool:
        """Post *session* now and wait for the answer."""
        return await self._post(self._row(session))

    def schedule(self, session: ImportSession) -> None:
        """Queue *session* for a background upsert without blocking."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop; remote mirror skipped for %s", session.session_id
            )
            return
        self._pending[session.session_id] = self._row(session)
        task = self._drain_task
        if task is None or task.done() or task.get_loop() is not loop:
            self._drain_task = loop.create_task(self._drain())

    async def _drain(self):
        while self._pending:
            session_id = next(iter(self._pending))
            await self._post(self._pending.pop(session_id))

    async def flush(self):
        """Wait until every queued row has been posted."""
        if self._drain_task is not None and not self._drain_task.done():
            await self._drain_task

    async def aclose(self):
        await self.flush()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class SessionStore:
    """Local-first session persistence with an optional remote mirror."""

    def __init__(
        self,
        db_path: str | None = None,
        mirror: RemoteSessionMirror | None = None,
        staleness_hours: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db_path = db_path or SESSION_DB_PATH
        self.mirror = mirror
        self.staleness = timedelta(
            hours=staleness_hours if staleness_hours is not None else STALENESS_HOURS
        )
        self.clock = clock
        init_db(self.db_path)

    @classmethod
    def from_config(cls, db_path: str | None = None) -> "SessionStore":
        mirror = RemoteSessionMirror(REMOTE_SESSION_URL) if REMOTE_SESSION_URL else None
        return cls(db_path=db_path, mirror=mirror)

    # ── writes ───────────────────────────────────────────────────────────────

    def save(self, session: ImportSession) -> None:
        """Persist *session* locally and queue it for the remote mirror."""
        pointer = ActiveImportPointer(
            session_id=session.session_id,
            year=session.year,
            file_names=session.file_names,
            started_at=session.start_time,
            status=session.status,
        )
        with get_db(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO import_sessions (session_id, year, status, start_time, last_update_time, payload)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    status           = excluded.status,
                    last_update_time = excluded.last_update_time,
                    payload          = excluded.payload
                """,
                (
                    session.session_id,
                    session.year,
                    session.status,
                    session.start_time.isoformat(),
                    session.last_update_time.isoformat(),
                    session.model_dump_json(),
                ),
            )
            conn.execute(
                "INSERT OR REPLACE INTO local_state (key, value) VALUES (?, ?)",
                (ACTIVE_SESSION_KEY, pointer.model_dump_json()),
            )

        if self.mirror is not None:
            self.mirror.schedule(session)

    async def flush(self):
        """Wait for queued remote upserts; a no-op without a mirror."""
        if self.mirror is not None:
            await self.mirror.flush()

    async def aclose(self):
        if self.mirror is not None:
            await self.mirror.aclose()

    def clear(self, session_id: str) -> bool:
        """Remove a session (and the active pointer if it points at it)."""
        with get_db(self.db_path) as conn:
            cur = conn.execute("DELETE FROM import_sessions WHERE session_id=?", (session_id,))
            row = conn.execute(
                "SELECT value FROM local_state WHERE key=?", (ACTIVE_SESSION_KEY,)
            ).fetchone()
            if row and json.loads(row["value"]).get("session_id") == session_id:
                conn.execute("DELETE FROM local_state WHERE key=?", (ACTIVE_SESSION_KEY,))
        return cur.rowcount > 0

    # ── reads ────────────────────────────────────────────────────────────────

    def is_stale(self, session: ImportSession) -> bool:
        started = session.start_time
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return self.clock() - started > self.staleness

    def load(self, session_id: str, discard_stale: bool = True) -> Optional[ImportSession]:
        """
        Return the persisted session, or ``None``.

        With *discard_stale* (the default) a session past the staleness
        window is deleted and reported as missing.
        """
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT payload FROM import_sessions WHERE session_id=?", (session_id,)
            ).fetchone()
        if not row:
            return None

        session = ImportSession.model_validate_json(row["payload"])
        if discard_stale and self.is_stale(session):
            logger.info("Discarding stale import session %s (started %s)", session_id, session.start_time)
            self.clear(session_id)
            return None
        return session

    def load_active(self) -> Optional[ActiveImportPointer]:
        """The well-known local pointer, if it names a fresh, resumable import."""
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT value FROM local_state WHERE key=?", (ACTIVE_SESSION_KEY,)
            ).fetchone()
        if not row:
            return None

        try:
            pointer = ActiveImportPointer.model_validate_json(row["value"])
        except ValueError:
            logger.warning("Corrupt active-import pointer; removing it")
            with get_db(self.db_path) as conn:
                conn.execute("DELETE FROM local_state WHERE key=?", (ACTIVE_SESSION_KEY,))
            return None

        if pointer.status not in RESUMABLE_STATUSES:
            return None
        if self.load(pointer.session_id) is None:
            return None
        return pointer

    def list_resumable(self) -> list[ImportSession]:
        """All fresh sessions in an active or paused state, newest first."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT session_id FROM import_sessions WHERE status IN (?, ?) ORDER BY start_time DESC",
                RESUMABLE_STATUSES,
            ).fetchall()
        sessions = []
        for r in rows:
            session = self.load(r["session_id"])
            if session is not None:
                sessions.append(session)
        return sessions
