"""
Sequential import driver — the state machine that moves files through the
pipeline one batch at a time.

    idle → processing → completed | error
               ⇅
             paused                (cancel → cancelled, from any live state)

For each file: decode → normalize → batch (cached), then submit batches in
order.  Rate-limit signals and timeouts cool down and retry the same batch a
bounded number of times; any other failure ends that file and the driver moves
on.  Every state transition is written through to the session store.

Pause and cancel are cooperative: they are honoured before the next
submission, never in the middle of one.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from holdings_import import config
from holdings_import.errors import (
    DecodeError,
    HoldingsImportError,
    ImportInProgressError,
    SessionNotFoundError,
    SessionStaleError,
    SubmissionTimeoutError,
    TransientSubmissionError,
    is_rate_limit_error,
)
from holdings_import.events import EventEmitter
from holdings_import.ingest.batcher import make_batches
from holdings_import.ingest.decoder import decode_file
from holdings_import.ingest.normalizer import RowNormalizer
from holdings_import.models import (
    Batch,
    BatchResult,
    FileStatus,
    ImportSession,
    ImportSummary,
    Rejection,
)
from holdings_import.session_store import RESUMABLE_STATUSES, SessionStore, utcnow

logger = logging.getLogger(__name__)

_STATE_TO_STATUS = {
    "idle": "pending",
    "processing": "active",
    "paused": "paused",
    "completed": "completed",
    "error": "failed",
    "cancelled": "cancelled",
}
_LIVE_STATES = ("processing", "paused")
_TERMINAL_STATES = ("completed", "error", "cancelled")

# Session ids currently held by a running driver in this process
_claimed_sessions: set[str] = set()


class BatchSubmitter(Protocol):
    async def submit(self, batch: Batch, *, year: int, session_id: str) -> BatchResult: ...


@dataclass
class PreparedFile:
    batches: list[Batch]
    total_rows: int
    rejected_rows: int


class _Cancelled(Exception):
    pass


def _retry_reason(exc: Exception) -> str:
    return "timed out" if isinstance(exc, SubmissionTimeoutError) else "rate limited"


class SequentialImportDriver:
    def __init__(
        self,
        store: SessionStore,
        submitter: BatchSubmitter,
        *,
        batch_size: int | None = None,
        delimiter: str | None = None,
        rate_limit_cooldown: float | None = None,
        inter_file_delay: float | None = None,
        max_rate_limit_retries: int | None = None,
        large_import_threshold: int | None = None,
        max_file_size: int | None = None,
        normalizer: RowNormalizer | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.submitter = submitter
        self.batch_size = batch_size or config.BATCH_SIZE
        self.delimiter = delimiter
        self.rate_limit_cooldown = (
            rate_limit_cooldown if rate_limit_cooldown is not None else config.RATE_LIMIT_COOLDOWN_SECONDS
        )
        self.inter_file_delay = (
            inter_file_delay if inter_file_delay is not None else config.INTER_FILE_DELAY_SECONDS
        )
        self.max_rate_limit_retries = (
            max_rate_limit_retries if max_rate_limit_retries is not None else config.MAX_RATE_LIMIT_RETRIES
        )
        self.large_import_threshold = large_import_threshold or config.LARGE_IMPORT_WARNING_BYTES
        self.max_file_size = max_file_size or config.MAX_FILE_SIZE_BYTES
        self.normalizer = normalizer or RowNormalizer()
        self._sleep = sleep
        self._clock = clock

        self.events = EventEmitter()
        self.state = "idle"
        self.session: Optional[ImportSession] = None
        self._files: list[str] = []
        self._prepared: dict[str, PreparedFile] = {}
        self._pause_requested = False
        self._cancel_requested = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()

    # ── session setup ────────────────────────────────────────────────────────

    def begin(self, files: Sequence[str], year: int, session_id: str | None = None) -> ImportSession:
        """Create and persist a fresh session for *files*."""
        self._ensure_not_running()
        if not files:
            raise ValueError("At least one file is required")

        now = self._clock()
        names = [os.path.basename(str(f)) for f in files]
        self._reset(files)
        self.session = ImportSession(
            session_id=session_id or uuid.uuid4().hex,
            year=year,
            file_names=names,
            status="pending",
            start_time=now,
            last_update_time=now,
            file_statuses=[FileStatus(name=n) for n in names],
        )
        self._persist()
        logger.info("Created import session %s (%d files, year %d)", self.session.session_id, len(files), year)
        self.events.emit("session_created", {"session_id": self.session.session_id})
        return self.session

    def restore(self, session_id: str, files: Sequence[str]) -> ImportSession:
        """
        Reload a persisted session so ``run()`` continues where it stopped.

        *files* must be the same files, in the same order, as the original
        import.
        """
        self._ensure_not_running()
        session = self.store.load(session_id, discard_stale=False)
        if session is None:
            raise SessionNotFoundError(f"Unknown import session {session_id}")
        if self.store.is_stale(session):
            self.store.clear(session_id)
            raise SessionStaleError(
                f"Import session {session_id} started {session.start_time.isoformat()} "
                "and is too old to resume; start a new import."
            )
        if session.status not in RESUMABLE_STATUSES:
            raise HoldingsImportError(f"Import session {session_id} is {session.status} and cannot be resumed")

        names = [os.path.basename(str(f)) for f in files]
        if names != session.file_names:
            raise HoldingsImportError(
                f"Files {names} do not match session files {session.file_names}"
            )

        self._reset(files)
        self.session = session
        logger.info(
            "Restored import session %s at file %d/%d, batch %d/%d",
            session_id, session.current_file_index + 1, len(names),
            session.current_batch, session.total_batches,
        )
        self.events.emit("session_restored", {"session_id": session_id})
        return session

    async def start(self, files: Sequence[str], year: int) -> ImportSummary:
        self.begin(files, year)
        return await self.run()

    # ── main loop ────────────────────────────────────────────────────────────

    async def run(self) -> ImportSummary:
        session = self.session
        if session is None:
            raise HoldingsImportError("No session: call begin() or restore() first")
        self._ensure_not_running()
        if self.state in _TERMINAL_STATES:
            raise HoldingsImportError(f"Session {session.session_id} already finished ({self.state})")
        if session.session_id in _claimed_sessions:
            raise ImportInProgressError(f"Session {session.session_id} is already being imported")

        _claimed_sessions.add(session.session_id)
        try:
            self._warn_if_large()
            self._set_state("processing")

            attempted = 0
            for index in range(session.current_file_index, len(self._files)):
                if self._cancel_requested:
                    break
                if session.file_statuses[index].status == "completed":
                    continue

                if attempted:
                    logger.info("Waiting %.0fs before next file", self.inter_file_delay)
                    await self._sleep(self.inter_file_delay)
                    if self._cancel_requested:
                        break
                attempted += 1

                if index != session.current_file_index:
                    session.current_file_index = index
                    session.current_batch = 0
                    session.total_batches = 0
                await self._process_file(index)

            summary = self._finish()
            await self.store.flush()
            return summary
        finally:
            _claimed_sessions.discard(session.session_id)

    async def _process_file(self, index: int):
        session = self.session
        path = self._files[index]
        status = session.file_statuses[index]

        status.status = "processing"
        status.error = None
        self._persist()
        self.events.emit("file_started", {"file": status.name, "index": index})
        logger.info("▶ Processing %s (%d/%d)", status.name, index + 1, len(self._files))

        try:
            prepared = self._prepare(path, status)
        except DecodeError as e:
            self._fail_file(status, str(e))
            return
        except Exception as e:
            logger.exception("Could not prepare %s", status.name)
            self._fail_file(status, f"{status.name} could not be read: {e}")
            return

        session.total_batches = len(prepared.batches)
        resume_after = session.current_batch
        if resume_after:
            logger.info("Skipping %d already submitted batches of %s", resume_after, status.name)

        for batch in prepared.batches:
            if batch.batch_index <= resume_after:
                continue
            try:
                if not await self._checkpoint():
                    return
                result = await self._submit_with_cooldown(batch)
            except _Cancelled:
                return
            except TransientSubmissionError as e:
                self._fail_file(
                    status,
                    f"Batch {batch.batch_index}/{batch.total_batches} still {_retry_reason(e)} after "
                    f"{self.max_rate_limit_retries} retries: {e}",
                )
                return
            except Exception as e:
                logger.exception("Batch %d of %s failed", batch.batch_index, status.name)
                self._fail_file(status, str(e))
                return

            status.rows_processed += result.processed_rows
            status.progress_percent = round(batch.batch_index / batch.total_batches * 100, 1)
            session.processed_rows += result.processed_rows
            session.duplicates_count += result.duplicates
            session.errors_count += result.errors
            session.current_batch = batch.batch_index
            self._persist()
            self.events.emit("batch_completed", {
                "file": status.name,
                "batch": batch.batch_index,
                "total_batches": batch.total_batches,
                "processed_rows": result.processed_rows,
            })

        status.status = "completed"
        status.progress_percent = 100.0
        self._persist()
        logger.info("✓ %s: %d rows processed", status.name, status.rows_processed)
        self.events.emit("file_completed", {"file": status.name, "rows": status.rows_processed})

    def _prepare(self, path: str, status: FileStatus) -> PreparedFile:
        """Decode, normalize and batch *path*; cached per file."""
        cached = self._prepared.get(path)
        if cached is not None:
            return cached

        try:
            size = os.path.getsize(path)
        except OSError as e:
            raise DecodeError(f"Could not read {status.name}: {e}") from e
        if size > self.max_file_size:
            raise DecodeError(
                f"{status.name} is {size / 1024 / 1024:.1f}MB; the limit is "
                f"{self.max_file_size / 1024 / 1024:.0f}MB per file"
            )

        decoder = decode_file(path, delimiter=self.delimiter)
        records = []
        rejected = 0
        for raw in decoder:
            result = self.normalizer.normalize_or_reject(raw)
            if isinstance(result, Rejection):
                rejected += 1
            else:
                records.append(result)

        total_rows = decoder.total_rows or 0
        if not records:
            raise DecodeError(f"{status.name}: none of {total_rows} rows had a valid company and holder")

        # First sighting in this session; a restored file was counted before
        if status.total_rows == 0:
            self.session.total_file_rows += total_rows
            self.session.errors_count += rejected
        status.total_rows = total_rows
        status.rejected_rows = rejected

        prepared = PreparedFile(make_batches(records, self.batch_size), total_rows, rejected)
        self._prepared[path] = prepared
        logger.info(
            "Prepared %s: %d rows, %d rejected, %d batches of up to %d",
            status.name, total_rows, rejected, len(prepared.batches), self.batch_size,
        )
        return prepared

    async def _submit_with_cooldown(self, batch: Batch) -> BatchResult:
        retries = 0
        while True:
            try:
                return await self.submitter.submit(
                    batch, year=self.session.year, session_id=self.session.session_id
                )
            except Exception as e:
                transient = isinstance(e, TransientSubmissionError) or is_rate_limit_error(e)
                if not transient:
                    raise
                if retries >= self.max_rate_limit_retries:
                    if isinstance(e, TransientSubmissionError):
                        raise
                    raise TransientSubmissionError(str(e)) from e

                retries += 1
                logger.warning(
                    "Batch %d/%d %s (%s); cooling down %.0fs (retry %d/%d)",
                    batch.batch_index, batch.total_batches, _retry_reason(e), e,
                    self.rate_limit_cooldown, retries, self.max_rate_limit_retries,
                )
                self.events.emit("rate_limited", {
                    "batch": batch.batch_index,
                    "reason": _retry_reason(e),
                    "retry": retries,
                    "cooldown_seconds": self.rate_limit_cooldown,
                })
                await self._sleep(self.rate_limit_cooldown)
                if not await self._checkpoint():
                    raise _Cancelled()

    async def _checkpoint(self) -> bool:
        """Honour pause/cancel between suspension points. False means stop."""
        if self._cancel_requested:
            return False
        if self._pause_requested:
            self._set_state("paused")
            logger.info("Import %s paused at batch %d", self.session.session_id, self.session.current_batch)
            await self._resume_event.wait()
            if self._cancel_requested:
                return False
            self._set_state("processing")
            logger.info("Import %s resumed", self.session.session_id)
        return True

    def _fail_file(self, status: FileStatus, message: str):
        status.status = "error"
        status.error = message
        self._persist()
        logger.error("✗ %s: %s", status.name, message)
        self.events.emit("file_failed", {"file": status.name, "error": message})

    def _finish(self) -> ImportSummary:
        session = self.session
        if self._cancel_requested:
            self._set_state("cancelled")
            self.store.clear(session.session_id)
            logger.info("Import %s cancelled", session.session_id)
        elif any(fs.status == "completed" for fs in session.file_statuses):
            self._set_state("completed")
            self.store.clear(session.session_id)
        else:
            self._set_state("error")

        summary = self.summary()
        if summary.status == "completed":
            logger.info(summary.message)
        elif summary.status == "failed":
            logger.error(summary.message)
        self.events.emit("import_finished", summary.model_dump(mode="json"))
        return summary

    # ── operator controls ────────────────────────────────────────────────────

    def pause(self) -> bool:
        if self.state != "processing" or self._pause_requested:
            logger.info("Pause ignored in state %s", self.state)
            return False
        self._pause_requested = True
        self._resume_event.clear()
        self.events.emit("pause_requested", {"session_id": self.session.session_id})
        return True

    def resume(self) -> bool:
        if not self._pause_requested:
            return False
        self._pause_requested = False
        self._resume_event.set()
        return True

    def cancel(self) -> bool:
        if self.session is None or self.state in _TERMINAL_STATES:
            return False
        self._cancel_requested = True
        self._pause_requested = False
        self._resume_event.set()
        if self.state == "idle":
            # Nothing in flight: abort now
            self._set_state("cancelled")
            self.store.clear(self.session.session_id)
        logger.info("Cancel requested for import %s", self.session.session_id)
        return True

    def abort(self, message: str) -> bool:
        """
        Record that ``run()`` died unexpectedly.

        Files that were in flight are marked ``error`` and the session ends
        ``failed``, so it is no longer reported as running.  Returns False
        when the driver had already finished.
        """
        if self.session is None or self.state in _TERMINAL_STATES:
            return False
        for fs in self.session.file_statuses:
            if fs.status == "processing":
                fs.status = "error"
                fs.error = message
        self._pause_requested = False
        self._resume_event.set()
        self._set_state("error")
        logger.error("✗ Import %s aborted: %s", self.session.session_id, message)
        self.events.emit("import_finished", self.summary().model_dump(mode="json"))
        return True

    # ── projections ──────────────────────────────────────────────────────────

    def summary(self) -> ImportSummary:
        session = self.session
        if session is None:
            raise HoldingsImportError("No session")
        succeeded = sum(1 for fs in session.file_statuses if fs.status == "completed")
        total = len(session.file_statuses)
        failed = [fs for fs in session.file_statuses if fs.status == "error"]

        if session.status == "completed":
            message = f"Imported {succeeded} of {total} files ({session.processed_rows} rows)."
            if failed:
                message += " Failed: " + ", ".join(fs.name for fs in failed) + "."
        elif session.status == "failed" and succeeded:
            message = f"Import failed after {succeeded} of {total} files ({session.processed_rows} rows)."
        elif session.status == "failed":
            message = f"Import failed: none of {total} files could be imported."
        elif session.status == "cancelled":
            message = f"Import cancelled after {session.processed_rows} rows."
        else:
            message = f"{succeeded} of {total} files done, {session.processed_rows} rows so far."

        return ImportSummary(
            session_id=session.session_id,
            status=session.status,
            files_total=total,
            files_succeeded=succeeded,
            processed_rows=session.processed_rows,
            errors_count=session.errors_count,
            duplicates_count=session.duplicates_count,
            file_statuses=[fs.model_copy() for fs in session.file_statuses],
            message=message,
        )

    # ── internals ────────────────────────────────────────────────────────────

    def _ensure_not_running(self):
        if self.state in _LIVE_STATES:
            raise ImportInProgressError("An import is already running on this driver")

    def _reset(self, files: Sequence[str]):
        self._files = [str(f) for f in files]
        self._prepared.clear()
        self._pause_requested = False
        self._cancel_requested = False
        self._resume_event.set()
        self.state = "idle"

    def _set_state(self, state: str):
        self.state = state
        self.session.status = _STATE_TO_STATUS[state]
        self._persist()
        self.events.emit("state_changed", {"state": state, "session_id": self.session.session_id})

    def _persist(self):
        self.session.last_update_time = self._clock()
        self.store.save(self.session)

    def _warn_if_large(self):
        total = 0
        for path in self._files:
            try:
                total += os.path.getsize(path)
            except OSError:
                continue
        if total > self.large_import_threshold:
            logger.warning(
                "Large import: %.1fMB across %d file(s). This may take several minutes due to rate limiting.",
                total / 1024 / 1024, len(self._files),
            )
