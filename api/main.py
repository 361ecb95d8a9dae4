"""
FastAPI application — operator surface for shareholder-registry imports.

    POST   /imports                     start an import (multipart files + year)
    POST   /imports/{id}/pause|resume|cancel
    GET    /imports/{id}/progress       read-only progress projection
    GET    /imports/{id}/events         server-sent change events
    GET    /imports/resumable           sessions that can be picked up again
    GET    /health

Each import runs as one background task driving a SequentialImportDriver.
A task that dies unexpectedly marks its session failed.  Finished imports stay
queryable until FINISHED_IMPORTS_KEPT newer ones have finished, and uploads
are deleted once their session completes or is cancelled.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import os
import shutil
import sqlite3
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from api.models import (
    ControlResponse,
    ProgressResponse,
    ResumableResponse,
    ResumableSession,
    StartImportResponse,
)
from holdings_import import config
from holdings_import.driver import SequentialImportDriver
from holdings_import.errors import (
    DecodeError,
    HoldingsImportError,
    ImportInProgressError,
    SessionNotFoundError,
    SessionStaleError,
)
from holdings_import.ingest.client import IngestionClient
from holdings_import.ingest.decoder import detect_format
from holdings_import.progress import compute_progress
from holdings_import.session_store import SessionStore

logger = logging.getLogger(__name__)

# ── Globals ──────────────────────────────────────────────────────────────────
_store: SessionStore | None = None
_client: IngestionClient | None = None
_drivers: dict[str, SequentialImportDriver] = {}
_tasks: dict[str, asyncio.Task] = {}
# Recently finished drivers, oldest first, for progress and event lookups
_finished: OrderedDict[str, SequentialImportDriver] = OrderedDict()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _store, _client
    _store = SessionStore.from_config(config.SESSION_DB_PATH)
    _client = IngestionClient()
    logger.info("Import service ready (ingest endpoint: %s)", _client.url)
    yield
    # Leave sessions persisted as-is so they can be resumed after restart
    for task in _tasks.values():
        task.cancel()
    _tasks.clear()
    _drivers.clear()
    _finished.clear()
    await _client.aclose()
    await _store.aclose()
    _client = None
    _store = None


app = FastAPI(
    title="Shareholder Registry Import",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _new_driver() -> SequentialImportDriver:
    return SequentialImportDriver(_store, _client)


def _session_dir(session_id: str) -> str:
    return os.path.join(config.UPLOAD_DIR, session_id)


def _remove_uploads(session_id: str):
    shutil.rmtree(_session_dir(session_id), ignore_errors=True)


def _get_driver(session_id: str) -> SequentialImportDriver | None:
    return _drivers.get(session_id) or _finished.get(session_id)


async def _run_driver(driver: SequentialImportDriver):
    try:
        await driver.run()
    except HoldingsImportError as e:
        logger.error("Import %s stopped: %s", driver.session.session_id, e)


def _on_task_done(driver: SequentialImportDriver, task: asyncio.Task):
    session_id = driver.session.session_id
    if _tasks.get(session_id) is task:
        del _tasks[session_id]
    if _drivers.get(session_id) is not driver or task.cancelled():
        return
    del _drivers[session_id]

    exc = task.exception()
    if exc is not None:
        logger.error("✗ Import %s crashed", session_id, exc_info=exc)
        try:
            driver.abort(f"Import stopped unexpectedly: {exc}")
        except sqlite3.Error:
            logger.exception("Could not record the failure of import %s", session_id)

    # Completed and cancelled sessions are gone from the store; so are their files
    if driver.state in ("completed", "cancelled"):
        _remove_uploads(session_id)

    if driver.state in ("completed", "error", "cancelled"):
        _finished[session_id] = driver
        while len(_finished) > config.FINISHED_IMPORTS_KEPT:
            _finished.popitem(last=False)


def _launch(driver: SequentialImportDriver):
    session_id = driver.session.session_id
    _finished.pop(session_id, None)
    _drivers[session_id] = driver
    task = asyncio.create_task(_run_driver(driver))
    task.add_done_callback(functools.partial(_on_task_done, driver))
    _tasks[session_id] = task


# ── POST /imports ────────────────────────────────────────────────────────────

@app.post("/imports", response_model=StartImportResponse)
async def start_import(
    files: list[UploadFile] = File(...),
    year: int = Form(...),
):
    """Store the uploaded files and start importing them in order."""
    if not files:
        raise HTTPException(status_code=422, detail="At least one file is required.")

    names = [os.path.basename(f.filename or "") for f in files]
    for name in names:
        try:
            detect_format(name)
        except DecodeError as e:
            raise HTTPException(status_code=422, detail=str(e))
    if len(set(names)) != len(names):
        raise HTTPException(status_code=422, detail="File names must be unique within one import.")

    session_id = uuid.uuid4().hex
    upload_dir = _session_dir(session_id)
    os.makedirs(upload_dir, exist_ok=True)

    paths = []
    for upload, name in zip(files, names):
        path = os.path.join(upload_dir, name)
        content = await upload.read()
        with open(path, "wb") as f:
            f.write(content)
        paths.append(path)

    driver = _new_driver()
    session = driver.begin(paths, year, session_id=session_id)
    _launch(driver)

    return StartImportResponse(
        session_id=session.session_id,
        year=year,
        file_names=session.file_names,
        status=session.status,
    )


# ── controls ─────────────────────────────────────────────────────────────────

@app.post("/imports/{session_id}/pause", response_model=ControlResponse)
async def pause_import(session_id: str):
    driver = _get_driver(session_id)
    if driver is None:
        raise HTTPException(status_code=404, detail=f"No running import {session_id}.")
    if not driver.pause():
        raise HTTPException(status_code=409, detail=f"Import is {driver.state}; only a processing import can be paused.")
    return ControlResponse(session_id=session_id, state=driver.state, message="Pause requested.")


@app.post("/imports/{session_id}/resume", response_model=ControlResponse)
async def resume_import(session_id: str):
    """Resume a paused import, or restore one interrupted by a restart."""
    driver = _get_driver(session_id)
    if driver is not None and driver.state in ("processing", "paused"):
        if not driver.resume():
            raise HTTPException(status_code=409, detail="Import is not paused.")
        return ControlResponse(session_id=session_id, state=driver.state, message="Resumed.")

    session = _store.load(session_id, discard_stale=False)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Import session {session_id} not found.")

    paths = [os.path.join(_session_dir(session_id), name) for name in session.file_names]
    driver = _new_driver()
    try:
        driver.restore(session_id, paths)
    except SessionStaleError as e:
        _remove_uploads(session_id)
        raise HTTPException(status_code=410, detail=str(e))
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ImportInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except HoldingsImportError as e:
        raise HTTPException(status_code=409, detail=str(e))

    _launch(driver)
    return ControlResponse(session_id=session_id, state=driver.state, message="Restored from saved session.")


@app.post("/imports/{session_id}/cancel", response_model=ControlResponse)
async def cancel_import(session_id: str):
    driver = _get_driver(session_id)
    if driver is not None:
        if not driver.cancel():
            raise HTTPException(status_code=409, detail=f"Import already {driver.state}.")
        return ControlResponse(session_id=session_id, state=driver.state, message="Cancel requested.")

    # Not running here: abandon the persisted session
    if not _store.clear(session_id):
        raise HTTPException(status_code=404, detail=f"Import session {session_id} not found.")
    _remove_uploads(session_id)
    return ControlResponse(session_id=session_id, state="cancelled", message="Saved session abandoned.")


# ── GET /imports/resumable ───────────────────────────────────────────────────

@app.get("/imports/resumable", response_model=ResumableResponse)
async def list_resumable():
    sessions = [
        ResumableSession(
            session_id=s.session_id,
            year=s.year,
            file_names=s.file_names,
            status=s.status,
            processed_rows=s.processed_rows,
            started_at=s.start_time.isoformat(),
        )
        for s in _store.list_resumable()
        if s.session_id not in _drivers
    ]
    return ResumableResponse(sessions=sessions)


# ── GET /imports/{id}/progress ───────────────────────────────────────────────

@app.get("/imports/{session_id}/progress", response_model=ProgressResponse)
async def get_progress(session_id: str):
    driver = _get_driver(session_id)
    session = driver.session if driver is not None else _store.load(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Import session {session_id} not found.")

    message = driver.summary().message if driver is not None else None
    return ProgressResponse(
        progress=compute_progress(session),
        file_statuses=session.file_statuses,
        errors_count=session.errors_count,
        duplicates_count=session.duplicates_count,
        message=message,
    )


# ── GET /imports/{id}/events ─────────────────────────────────────────────────

@app.get("/imports/{session_id}/events")
async def stream_events(session_id: str):
    """Server-sent events for every driver transition of a running import."""
    driver = _get_driver(session_id)
    if driver is None:
        raise HTTPException(status_code=404, detail=f"No running import {session_id}.")

    queue: asyncio.Queue = asyncio.Queue()

    def _enqueue(event: str, payload: dict):
        queue.put_nowait({"event": event, **payload})

    unsubscribe = driver.events.subscribe(_enqueue)

    async def generate():
        try:
            if driver.state in ("completed", "error", "cancelled"):
                yield f"data: {json.dumps({'event': 'import_finished', **driver.summary().model_dump(mode='json')})}\n\n"
                return
            while True:
                item = await queue.get()
                yield f"data: {json.dumps(item, default=str)}\n\n"
                if item["event"] == "import_finished":
                    break
        finally:
            unsubscribe()

    return StreamingResponse(generate(), media_type="text/event-stream")


# ── GET /health ──────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "ingest_configured": bool(config.INGEST_URL),
        "running_imports": sum(1 for d in _drivers.values() if d.state in ("processing", "paused")),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
