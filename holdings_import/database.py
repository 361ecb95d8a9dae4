"""
SQLite database initialisation and helpers for local session persistence.
"""

import os
import sqlite3
from contextlib import contextmanager

from holdings_import.config import SESSION_DB_PATH

_SCHEMA = """
CREATE TABLE IF NOT EXISTS import_sessions (
    session_id       TEXT PRIMARY KEY,
    year             INTEGER NOT NULL,
    status           TEXT NOT NULL DEFAULT 'pending',
    start_time       TEXT NOT NULL,
    last_update_time TEXT NOT NULL,
    payload          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS local_state (
    key             TEXT PRIMARY KEY,
    value           TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_status ON import_sessions(status);
"""


def _ensure_dir(path: str):
    db_dir = os.path.dirname(path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)


def init_db(db_path: str | None = None):
    """Create tables if they don't exist yet."""
    path = db_path or SESSION_DB_PATH
    _ensure_dir(path)
    conn = sqlite3.connect(path)
    conn.executescript(_SCHEMA)
    conn.close()


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    path = db_path or SESSION_DB_PATH
    _ensure_dir(path)
    conn = sqlite3.connect(path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def get_db(db_path: str | None = None):
    """Context manager that yields a connection and auto-commits/rollbacks."""
    conn = get_connection(db_path)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
