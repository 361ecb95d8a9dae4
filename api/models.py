"""
API request / response models for FastAPI.
"""

from pydantic import BaseModel, Field
from typing import Optional

from holdings_import.models import FileStatus, ProgressSnapshot


class StartImportResponse(BaseModel):
    session_id: str
    year: int
    file_names: list[str] = Field(default_factory=list)
    status: str = "pending"


class ControlResponse(BaseModel):
    session_id: str
    state: str
    message: str = ""


class ProgressResponse(BaseModel):
    progress: ProgressSnapshot
    file_statuses: list[FileStatus] = Field(default_factory=list)
    errors_count: int = 0
    duplicates_count: int = 0
    message: Optional[str] = None


class ResumableSession(BaseModel):
    session_id: str
    year: int
    file_names: list[str] = Field(default_factory=list)
    status: str
    processed_rows: int = 0
    started_at: str = ""


class ResumableResponse(BaseModel):
    sessions: list[ResumableSession] = Field(default_factory=list)
