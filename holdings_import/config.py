"""
Central configuration — reads environment variables and provides defaults.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# ── Ingestion endpoint ────────────────────────────────────────────────────────
INGEST_URL: str = os.getenv("INGEST_URL", "http://localhost:54321/functions/v1/shareholders-ingest-batch")
INGEST_API_KEY: str = os.getenv("INGEST_API_KEY", "")
INGEST_TIMEOUT_SECONDS: float = float(os.getenv("INGEST_TIMEOUT_SECONDS", "60"))

# ── Batching / rate limiting ──────────────────────────────────────────────────
BATCH_SIZE: int = int(os.getenv("BATCH_SIZE", "1000"))
RATE_LIMIT_COOLDOWN_SECONDS: float = float(os.getenv("RATE_LIMIT_COOLDOWN_SECONDS", "10"))
INTER_FILE_DELAY_SECONDS: float = float(os.getenv("INTER_FILE_DELAY_SECONDS", "3"))
MAX_RATE_LIMIT_RETRIES: int = int(os.getenv("MAX_RATE_LIMIT_RETRIES", "3"))

# ── File limits ───────────────────────────────────────────────────────────────
LARGE_IMPORT_WARNING_BYTES: int = int(os.getenv("LARGE_IMPORT_WARNING_BYTES", str(50 * 1024 * 1024)))
MAX_FILE_SIZE_BYTES: int = int(os.getenv("MAX_FILE_SIZE_BYTES", str(100 * 1024 * 1024)))
CSV_DELIMITER: str = os.getenv("CSV_DELIMITER", ";")

# ── Row defaults ──────────────────────────────────────────────────────────────
DEFAULT_COUNTRY_CODE: str = os.getenv("DEFAULT_COUNTRY_CODE", "NO")
DEFAULT_SHARE_CLASS: str = os.getenv("DEFAULT_SHARE_CLASS", "Ordinære aksjer")

# ── Session persistence ───────────────────────────────────────────────────────
SESSION_DB_PATH: str = os.getenv("SESSION_DB_PATH", "data/import_sessions.db")
STALENESS_HOURS: float = float(os.getenv("STALENESS_HOURS", "24"))
ACTIVE_SESSION_KEY: str = os.getenv("ACTIVE_SESSION_KEY", "holdings_import_session")

# ── Remote mirror (optional, disabled when URL is empty) ──────────────────────
REMOTE_SESSION_URL: str = os.getenv("REMOTE_SESSION_URL", "")
REMOTE_SESSION_API_KEY: str = os.getenv("REMOTE_SESSION_API_KEY", "")

# ── Progress / push notifications ─────────────────────────────────────────────
PROGRESS_REFRESH_SECONDS: float = float(os.getenv("PROGRESS_REFRESH_SECONDS", "2"))
PUSH_URL: str = os.getenv("PUSH_URL", "")
PUSH_RECONNECT_SECONDS: float = float(os.getenv("PUSH_RECONNECT_SECONDS", "5"))

# ── Uploads ───────────────────────────────────────────────────────────────────
UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", "data/uploads")
# Finished imports the API keeps in memory for progress/event lookups
FINISHED_IMPORTS_KEPT: int = int(os.getenv("FINISHED_IMPORTS_KEPT", "50"))
