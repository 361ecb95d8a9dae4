"""
Exception taxonomy for the import pipeline.

Record-level problems are returned as values (see ``ValidationRejection``);
everything that can stop a batch, a file or a session is raised.
"""

from __future__ import annotations

import re
from typing import Optional

_RATE_LIMIT_RE = re.compile(r"rate.?limit|too many requests", re.IGNORECASE)


class HoldingsImportError(Exception):
    """Base class for all pipeline errors."""


class DecodeError(HoldingsImportError):
    """File is unreadable, unsupported, or has no data rows. Fatal for that file."""


class TransientSubmissionError(HoldingsImportError):
    """Submission failed in a way that is worth retrying after a cooldown."""


class RateLimitError(TransientSubmissionError):
    def __init__(self, message: str = "rate limited", status_code: Optional[int] = 429):
        super().__init__(message)
        self.status_code = status_code


class SubmissionTimeoutError(TransientSubmissionError):
    pass


class RemoteIngestionError(HoldingsImportError):
    """Any non-transient submission failure. Fatal for the file, not the import."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionStaleError(HoldingsImportError):
    """Persisted session is past the staleness window and cannot be resumed."""


class SessionNotFoundError(HoldingsImportError):
    pass


class ImportInProgressError(HoldingsImportError):
    """A session is already being driven (by this or another driver)."""


def is_rate_limit_message(message: str | None) -> bool:
    return bool(message) and _RATE_LIMIT_RE.search(message) is not None


def is_rate_limit_error(exc: BaseException) -> bool:
    """True for errors signalling rate limiting: status 429 or a matching message."""
    if isinstance(exc, RateLimitError):
        return True
    if getattr(exc, "status_code", None) == 429 or getattr(exc, "status", None) == 429:
        return True
    return is_rate_limit_message(str(exc))
