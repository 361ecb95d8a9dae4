"""
Tests for holdings_import.driver — the sequential import state machine.

The ingestion endpoint is replaced by a scripted in-process submitter and
sleeps are recorded instead of awaited, so these run fast and deterministically.
"""

import asyncio
import logging
import sqlite3
import time
import zipfile
from datetime import timedelta

import httpx
import pytest
from openpyxl import Workbook

from holdings_import import driver as driver_module
from holdings_import.driver import SequentialImportDriver
from holdings_import.errors import (
    HoldingsImportError,
    ImportInProgressError,
    RateLimitError,
    RemoteIngestionError,
    SessionNotFoundError,
    SessionStaleError,
    SubmissionTimeoutError,
)
from holdings_import.models import BatchResult, FileStatus, ImportSession
from holdings_import.session_store import RemoteSessionMirror, SessionStore, utcnow

HEADER = "Orgnr;Selskap;Aksjeklasse;Navn aksjonær;Postnummer/sted;Landkode;Antall aksjer;Fødselsår/orgnr"


# ── helper fixtures ──────────────────────────────────────────────────────────

def write_registry(path, rows: int, start: int = 0):
    lines = [HEADER]
    for i in range(start, start + rows):
        lines.append(f"91234{i:04d};Acme ASA;Ordinære aksjer;Holder {i};0150 OSLO;NO;{100 + i};1980")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8-sig")
    return str(path)


def truncate_sheet_xml(path, keep=0.6):
    """Rewrite the workbook with its first sheet's XML cut short."""
    with zipfile.ZipFile(path) as zf:
        entries = {name: zf.read(name) for name in zf.namelist()}
    sheet = "xl/worksheets/sheet1.xml"
    entries[sheet] = entries[sheet][: int(len(entries[sheet]) * keep)]
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)


class ScriptedSubmitter:
    """Plays back *script* (results or exceptions), then accepts every row."""

    def __init__(self, script=None, on_submit=None):
        self.script = list(script or [])
        self.on_submit = on_submit
        self.calls = []

    async def submit(self, batch, *, year, session_id):
        self.calls.append((batch.batch_index, len(batch), year, session_id))
        if self.on_submit:
            self.on_submit(batch)
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return BatchResult(processed_rows=len(batch))


class FailingSubmitter:
    def __init__(self, exc):
        self.exc = exc
        self.calls = 0

    async def submit(self, batch, *, year, session_id):
        self.calls += 1
        raise self.exc


@pytest.fixture
def store(tmp_path):
    return SessionStore(db_path=str(tmp_path / "sessions.db"))


@pytest.fixture
def sleeps():
    return []


def make_driver(store, submitter, sleeps, **kwargs):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    kwargs.setdefault("sleep", fake_sleep)
    kwargs.setdefault("inter_file_delay", 3)
    kwargs.setdefault("rate_limit_cooldown", 10)
    return SequentialImportDriver(store, submitter, **kwargs)


# ── tests ────────────────────────────────────────────────────────────────────

class TestHappyPath:
    @pytest.mark.asyncio
    async def test_single_small_file(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 10)
        submitter = ScriptedSubmitter()
        driver = make_driver(store, submitter, sleeps, batch_size=1000)

        summary = await driver.start([path], 2024)

        assert len(submitter.calls) == 1
        assert submitter.calls[0][1] == 10
        assert submitter.calls[0][2] == 2024
        assert summary.status == "completed"
        assert summary.processed_rows == 10
        assert summary.files_succeeded == 1
        assert driver.state == "completed"
        assert driver.session.total_file_rows == 10
        # Completed sessions leave nothing resumable behind
        assert store.load(driver.session.session_id) is None
        assert store.load_active() is None

    @pytest.mark.asyncio
    async def test_batches_in_order(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 25)
        submitter = ScriptedSubmitter()
        driver = make_driver(store, submitter, sleeps, batch_size=10)

        summary = await driver.start([path], 2024)

        assert [c[0] for c in submitter.calls] == [1, 2, 3]
        assert [c[1] for c in submitter.calls] == [10, 10, 5]
        assert summary.processed_rows == 25
        assert driver.session.current_batch == 3
        assert driver.session.total_batches == 3

    @pytest.mark.asyncio
    async def test_files_processed_sequentially_with_delay(self, tmp_path, store, sleeps):
        a = write_registry(tmp_path / "a.csv", 3)
        b = write_registry(tmp_path / "b.csv", 4, start=3)
        c = write_registry(tmp_path / "c.csv", 5, start=7)
        driver = make_driver(store, ScriptedSubmitter(), sleeps)

        summary = await driver.start([a, b, c], 2024)

        assert sleeps == [3, 3]
        assert [fs.rows_processed for fs in summary.file_statuses] == [3, 4, 5]
        assert summary.processed_rows == 12
        assert summary.message == "Imported 3 of 3 files (12 rows)."

    @pytest.mark.asyncio
    async def test_rejected_rows_counted(self, tmp_path, store, sleeps):
        path = tmp_path / "a.csv"
        path.write_text(
            "\n".join([
                HEADER,
                "912345678;Acme ASA;;Kari;;;10;",
                "123;Bad Co;;Ola;;;5;",
                "923456789;;;Per;;;5;",
            ]) + "\n",
            encoding="utf-8",
        )
        driver = make_driver(store, ScriptedSubmitter(), sleeps)

        summary = await driver.start([str(path)], 2024)

        assert summary.processed_rows == 1
        assert summary.errors_count == 2
        assert summary.file_statuses[0].rejected_rows == 2
        assert summary.file_statuses[0].total_rows == 3

    @pytest.mark.asyncio
    async def test_events_emitted(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 4)
        driver = make_driver(store, ScriptedSubmitter(), sleeps, batch_size=2)
        seen = []
        driver.events.subscribe(lambda event, payload: seen.append(event))

        await driver.start([path], 2024)

        assert seen[0] == "session_created"
        assert seen.count("batch_completed") == 2
        assert "file_completed" in seen
        assert seen[-1] == "import_finished"


class TestPartialFailure:
    @pytest.mark.asyncio
    async def test_unreadable_second_file(self, tmp_path, store, sleeps):
        a = write_registry(tmp_path / "a.csv", 5)
        b = tmp_path / "b.csv"
        b.write_text(HEADER + "\n", encoding="utf-8")
        driver = make_driver(store, ScriptedSubmitter(), sleeps)

        summary = await driver.start([a, str(b)], 2024)

        assert summary.status == "completed"
        assert summary.processed_rows == 5
        statuses = summary.file_statuses
        assert (statuses[0].status, statuses[0].rows_processed) == ("completed", 5)
        assert statuses[1].status == "error"
        assert "no data rows" in statuses[1].error
        assert "Failed: b.csv" in summary.message

    @pytest.mark.asyncio
    async def test_remote_error_ends_file_not_import(self, tmp_path, store, sleeps):
        a = write_registry(tmp_path / "a.csv", 4)
        b = write_registry(tmp_path / "b.csv", 2, start=4)
        submitter = ScriptedSubmitter([
            BatchResult(processed_rows=2),
            RemoteIngestionError("HTTP 500: boom", status_code=500),
        ])
        driver = make_driver(store, submitter, sleeps, batch_size=2)

        summary = await driver.start([a, b], 2024)

        # a.csv stops at its failed second batch; b.csv still runs
        assert [c[0] for c in submitter.calls] == [1, 2, 1]
        assert summary.file_statuses[0].status == "error"
        assert summary.file_statuses[0].rows_processed == 2
        assert summary.file_statuses[1].status == "completed"
        assert summary.status == "completed"
        assert summary.processed_rows == 4

    @pytest.mark.asyncio
    async def test_oversized_file_rejected(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 3)
        submitter = ScriptedSubmitter()
        driver = make_driver(store, submitter, sleeps, max_file_size=10)

        summary = await driver.start([path], 2024)

        assert submitter.calls == []
        assert summary.status == "failed"
        assert "limit" in summary.file_statuses[0].error

    @pytest.mark.asyncio
    async def test_truncated_spreadsheet_then_csv(self, tmp_path, store, sleeps):
        bad = str(tmp_path / "a.xlsx")
        wb = Workbook()
        ws = wb.active
        ws.append(["Orgnr", "Selskap", "Navn aksjonær", "Antall aksjer"])
        for i in range(50):
            ws.append([912340000 + i, "Acme ASA", f"Holder {i}", 10])
        wb.save(bad)
        truncate_sheet_xml(bad)
        good = write_registry(tmp_path / "b.csv", 4)
        submitter = ScriptedSubmitter()
        driver = make_driver(store, submitter, sleeps)

        summary = await driver.start([bad, good], 2024)

        assert driver.state == "completed"
        assert summary.status == "completed"
        assert [fs.status for fs in summary.file_statuses] == ["error", "completed"]
        assert "Spreadsheet parsing error" in summary.file_statuses[0].error
        assert summary.processed_rows == 4
        assert len(submitter.calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_read_failure_ends_only_that_file(self, tmp_path, store, sleeps, monkeypatch):
        a = write_registry(tmp_path / "a.csv", 3)
        b = write_registry(tmp_path / "b.csv", 2, start=3)
        real_decode_file = driver_module.decode_file

        def flaky_decode_file(path, **kwargs):
            if path.endswith("a.csv"):
                raise RuntimeError("device not ready")
            return real_decode_file(path, **kwargs)

        monkeypatch.setattr(driver_module, "decode_file", flaky_decode_file)
        driver = make_driver(store, ScriptedSubmitter(), sleeps)

        summary = await driver.start([a, b], 2024)

        assert summary.status == "completed"
        assert summary.file_statuses[0].status == "error"
        assert "device not ready" in summary.file_statuses[0].error
        assert summary.file_statuses[1].status == "completed"
        assert summary.processed_rows == 2


class TestTotalFailure:
    @pytest.mark.asyncio
    async def test_every_file_fails(self, tmp_path, store, sleeps):
        a = write_registry(tmp_path / "a.csv", 3)
        b = write_registry(tmp_path / "b.csv", 3, start=3)
        submitter = FailingSubmitter(RemoteIngestionError("HTTP 500: down", status_code=500))
        driver = make_driver(store, submitter, sleeps)

        summary = await driver.start([a, b], 2024)

        assert submitter.calls == 2
        assert summary.status == "failed"
        assert summary.processed_rows == 0
        assert driver.state == "error"
        assert all(fs.status == "error" for fs in summary.file_statuses)
        assert summary.message.startswith("Import failed")

        # Failed sessions stay on record but are not offered for resume
        saved = store.load(driver.session.session_id)
        assert saved.status == "failed"
        assert store.list_resumable() == []
        assert store.load_active() is None


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_cooldown_then_retry_same_batch(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 3)
        submitter = ScriptedSubmitter([RateLimitError(), RateLimitError()])
        driver = make_driver(store, submitter, sleeps, rate_limit_cooldown=10)

        summary = await driver.start([path], 2024)

        assert [c[0] for c in submitter.calls] == [1, 1, 1]
        assert sleeps == [10, 10]
        assert summary.status == "completed"
        assert summary.processed_rows == 3

    @pytest.mark.asyncio
    async def test_rate_limit_message_is_transient(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 3)
        submitter = ScriptedSubmitter([RemoteIngestionError("Too many requests, slow down")])
        driver = make_driver(store, submitter, sleeps)

        summary = await driver.start([path], 2024)

        assert len(submitter.calls) == 2
        assert summary.status == "completed"

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_retries(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 3)
        submitter = FailingSubmitter(RateLimitError())
        driver = make_driver(store, submitter, sleeps, max_rate_limit_retries=2)

        summary = await driver.start([path], 2024)

        assert submitter.calls == 3
        assert sleeps == [10, 10]
        assert summary.status == "failed"
        assert "rate limited" in summary.file_statuses[0].error

    @pytest.mark.asyncio
    async def test_exhausted_timeouts_reported_as_timeouts(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 3)
        submitter = FailingSubmitter(SubmissionTimeoutError("read timed out after 30s"))
        driver = make_driver(store, submitter, sleeps, max_rate_limit_retries=1)

        summary = await driver.start([path], 2024)

        assert submitter.calls == 2
        error = summary.file_statuses[0].error
        assert "still timed out after 1 retries" in error
        assert "rate limited" not in error

    @pytest.mark.asyncio
    async def test_real_cooldown_elapses(self, tmp_path, store):
        path = write_registry(tmp_path / "a.csv", 3)
        submitter = ScriptedSubmitter([RateLimitError(), RateLimitError()])
        driver = SequentialImportDriver(store, submitter, rate_limit_cooldown=0.05, inter_file_delay=0)

        t0 = time.monotonic()
        summary = await driver.start([path], 2024)
        elapsed = time.monotonic() - t0

        assert summary.processed_rows == 3
        assert elapsed >= 0.1


class TestResume:
    def _saved_session(self, store, name, started=None, **kwargs):
        started = started or utcnow()
        fields = dict(
            session_id="resume-me",
            year=2024,
            file_names=[name],
            total_file_rows=6,
            processed_rows=2,
            current_file_index=0,
            current_batch=1,
            total_batches=3,
            status="active",
            start_time=started,
            last_update_time=started,
            file_statuses=[FileStatus(name=name, status="processing", rows_processed=2, total_rows=6)],
        )
        fields.update(kwargs)
        session = ImportSession(**fields)
        store.save(session)
        return session

    @pytest.mark.asyncio
    async def test_continues_after_last_checkpoint(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 6)
        self._saved_session(store, "a.csv")
        submitter = ScriptedSubmitter()
        driver = make_driver(store, submitter, sleeps, batch_size=2)

        driver.restore("resume-me", [path])
        summary = await driver.run()

        assert [c[0] for c in submitter.calls] == [2, 3]
        assert summary.processed_rows == 6
        assert driver.session.total_file_rows == 6
        assert summary.status == "completed"

    @pytest.mark.asyncio
    async def test_replayed_batch_counts_duplicates(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 4)
        # Batch 1 was accepted remotely but the checkpoint never landed
        self._saved_session(store, "a.csv", current_batch=0, processed_rows=0, total_batches=2, total_file_rows=4)
        submitter = ScriptedSubmitter([BatchResult(processed_rows=0, duplicates=2)])
        driver = make_driver(store, submitter, sleeps, batch_size=2)

        driver.restore("resume-me", [path])
        summary = await driver.run()

        assert summary.duplicates_count == 2
        assert summary.processed_rows == 2
        assert summary.status == "completed"

    @pytest.mark.asyncio
    async def test_skips_completed_files(self, tmp_path, store, sleeps):
        a = write_registry(tmp_path / "a.csv", 2)
        b = write_registry(tmp_path / "b.csv", 2, start=2)
        self._saved_session(
            store, "a.csv",
            file_names=["a.csv", "b.csv"],
            current_file_index=1,
            current_batch=0,
            processed_rows=2,
            total_file_rows=2,
            file_statuses=[
                FileStatus(name="a.csv", status="completed", rows_processed=2, total_rows=2),
                FileStatus(name="b.csv"),
            ],
        )
        submitter = ScriptedSubmitter()
        driver = make_driver(store, submitter, sleeps)

        driver.restore("resume-me", [a, b])
        summary = await driver.run()

        assert len(submitter.calls) == 1
        assert sleeps == []
        assert summary.processed_rows == 4
        assert summary.files_succeeded == 2

    def test_stale_session_refused_and_discarded(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 2)
        self._saved_session(store, "a.csv", started=utcnow() - timedelta(hours=25))
        driver = make_driver(store, ScriptedSubmitter(), sleeps)

        with pytest.raises(SessionStaleError):
            driver.restore("resume-me", [path])
        assert store.load("resume-me", discard_stale=False) is None

    def test_unknown_session(self, tmp_path, store, sleeps):
        driver = make_driver(store, ScriptedSubmitter(), sleeps)
        with pytest.raises(SessionNotFoundError):
            driver.restore("nope", [str(tmp_path / "a.csv")])

    def test_file_mismatch(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "other.csv", 2)
        self._saved_session(store, "a.csv")
        driver = make_driver(store, ScriptedSubmitter(), sleeps)
        with pytest.raises(HoldingsImportError, match="do not match"):
            driver.restore("resume-me", [path])

    def test_finished_session_not_resumable(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 2)
        self._saved_session(store, "a.csv", status="failed")
        driver = make_driver(store, ScriptedSubmitter(), sleeps)
        with pytest.raises(HoldingsImportError, match="cannot be resumed"):
            driver.restore("resume-me", [path])


class TestControls:
    @pytest.mark.asyncio
    async def test_pause_and_resume(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 6)
        driver = make_driver(store, None, sleeps, batch_size=2)
        submitter = ScriptedSubmitter(on_submit=lambda b: driver.pause() if b.batch_index == 1 else None)
        driver.submitter = submitter

        driver.begin([path], 2024)
        task = asyncio.create_task(driver.run())
        for _ in range(100):
            if driver.state == "paused":
                break
            await asyncio.sleep(0)

        assert driver.state == "paused"
        assert [c[0] for c in submitter.calls] == [1]
        saved = store.load(driver.session.session_id)
        assert saved.status == "paused"
        assert saved.current_batch == 1
        assert store.load_active().session_id == driver.session.session_id

        assert driver.resume() is True
        summary = await task

        assert [c[0] for c in submitter.calls] == [1, 2, 3]
        assert summary.status == "completed"

    @pytest.mark.asyncio
    async def test_cancel_mid_import(self, tmp_path, store, sleeps):
        a = write_registry(tmp_path / "a.csv", 4)
        b = write_registry(tmp_path / "b.csv", 2, start=4)
        driver = make_driver(store, None, sleeps, batch_size=2)
        driver.submitter = ScriptedSubmitter(on_submit=lambda b: driver.cancel())

        summary = await driver.start([a, b], 2024)

        assert len(driver.submitter.calls) == 1
        assert summary.status == "cancelled"
        assert driver.state == "cancelled"
        assert store.load(driver.session.session_id) is None

    @pytest.mark.asyncio
    async def test_cancel_while_paused(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 4)
        driver = make_driver(store, None, sleeps, batch_size=2)
        driver.submitter = ScriptedSubmitter(on_submit=lambda b: driver.pause())

        driver.begin([path], 2024)
        task = asyncio.create_task(driver.run())
        for _ in range(100):
            if driver.state == "paused":
                break
            await asyncio.sleep(0)

        assert driver.cancel() is True
        summary = await task
        assert summary.status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_before_run(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 2)
        driver = make_driver(store, ScriptedSubmitter(), sleeps)
        session = driver.begin([path], 2024)

        assert driver.cancel() is True
        assert driver.state == "cancelled"
        assert store.load(session.session_id) is None
        with pytest.raises(HoldingsImportError):
            await driver.run()

    def test_pause_requires_processing(self, tmp_path, store, sleeps):
        driver = make_driver(store, ScriptedSubmitter(), sleeps)
        assert driver.pause() is False
        assert driver.resume() is False
        assert driver.cancel() is False

    @pytest.mark.asyncio
    async def test_second_driver_cannot_claim_running_session(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 4)
        first = make_driver(store, None, sleeps, batch_size=2)
        first.submitter = ScriptedSubmitter(on_submit=lambda b: first.pause() if b.batch_index == 1 else None)

        session = first.begin([path], 2024)
        task = asyncio.create_task(first.run())
        for _ in range(100):
            if first.state == "paused":
                break
            await asyncio.sleep(0)

        second = make_driver(store, ScriptedSubmitter(), sleeps)
        second.restore(session.session_id, [path])
        with pytest.raises(ImportInProgressError):
            await second.run()

        first.resume()
        summary = await task
        assert summary.status == "completed"

    @pytest.mark.asyncio
    async def test_begin_while_running_refused(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 4)
        driver = make_driver(store, None, sleeps, batch_size=2)
        driver.submitter = ScriptedSubmitter(on_submit=lambda b: driver.pause())

        driver.begin([path], 2024)
        task = asyncio.create_task(driver.run())
        for _ in range(100):
            if driver.state == "paused":
                break
            await asyncio.sleep(0)

        with pytest.raises(ImportInProgressError):
            driver.begin([path], 2024)

        driver.cancel()
        await task


class TestWarnings:
    @pytest.mark.asyncio
    async def test_large_import_warns_but_proceeds(self, tmp_path, store, sleeps, caplog):
        path = write_registry(tmp_path / "a.csv", 3)
        driver = make_driver(store, ScriptedSubmitter(), sleeps, large_import_threshold=1)

        with caplog.at_level(logging.WARNING, logger="holdings_import.driver"):
            summary = await driver.start([path], 2024)

        assert "Large import" in caplog.text
        assert summary.status == "completed"

    def test_begin_requires_files(self, store, sleeps):
        driver = make_driver(store, ScriptedSubmitter(), sleeps)
        with pytest.raises(ValueError):
            driver.begin([], 2024)


class TestAbort:
    @pytest.mark.asyncio
    async def test_crashed_run_marked_failed(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 3)
        driver = make_driver(store, ScriptedSubmitter(), sleeps)
        events = []
        driver.events.subscribe(lambda event, payload: events.append(event))

        def broken_finish():
            raise sqlite3.OperationalError("disk I/O error")

        driver._finish = broken_finish
        with pytest.raises(sqlite3.OperationalError):
            await driver.start([path], 2024)
        assert driver.state == "processing"

        assert driver.abort("disk I/O error") is True
        assert driver.state == "error"
        assert store.load(driver.session.session_id).status == "failed"
        assert store.list_resumable() == []
        assert events[-1] == "import_finished"

        assert driver.abort("again") is False

    @pytest.mark.asyncio
    async def test_in_flight_file_marked_error(self, tmp_path, store, sleeps):
        path = write_registry(tmp_path / "a.csv", 4)
        driver = make_driver(store, None, sleeps, batch_size=2)
        driver.submitter = ScriptedSubmitter(on_submit=lambda b: driver.pause())

        driver.begin([path], 2024)
        task = asyncio.create_task(driver.run())
        for _ in range(100):
            if driver.state == "paused":
                break
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert driver.abort("worker cancelled") is True
        assert driver.session.file_statuses[0].status == "error"
        assert driver.session.file_statuses[0].error == "worker cancelled"


class TestRemoteMirror:
    @pytest.mark.asyncio
    async def test_slow_mirror_does_not_stall_the_event_loop(self, tmp_path, sleeps):
        posted = []

        async def slow_mirror(request):
            await asyncio.sleep(0.3)
            posted.append(request)
            return httpx.Response(201)

        client = httpx.AsyncClient(transport=httpx.MockTransport(slow_mirror))
        mirror = RemoteSessionMirror("http://mirror.test", api_key="", client=client)
        store = SessionStore(db_path=str(tmp_path / "sessions.db"), mirror=mirror)
        path = write_registry(tmp_path / "a.csv", 8)
        driver = make_driver(store, ScriptedSubmitter(), sleeps, batch_size=2)

        gaps = []

        async def ticker():
            last = time.monotonic()
            while True:
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        ticking = asyncio.create_task(ticker())
        try:
            summary = await driver.start([path], 2024)
        finally:
            ticking.cancel()
            await asyncio.gather(ticking, return_exceptions=True)
            await store.aclose()
            await client.aclose()

        assert summary.status == "completed"
        assert max(gaps) < 0.25
        # The session's final state reached the mirror before run() returned
        assert posted
        assert b'"status":"completed"' in posted[-1].content.replace(b" ", b"")
