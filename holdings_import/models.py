"""
Pydantic models shared across the import pipeline.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SessionStatus = Literal["pending", "active", "paused", "completed", "failed", "cancelled"]
FileState = Literal["pending", "processing", "completed", "error"]
RejectionReasonCode = Literal[
    "missing_company_identifier",
    "invalid_company_identifier",
    "missing_company_name",
    "missing_holder_name",
]

RawRecord = dict[str, str]


class NormalizedRecord(BaseModel):
    company_identifier: str
    company_name: str
    holder_name: str
    holder_registry_number: Optional[str] = None
    holder_birth_year: Optional[int] = None
    holder_country_code: str = "NO"
    share_class: str = "Ordinære aksjer"
    share_count: int = Field(default=0, ge=0)


class Rejection(BaseModel):
    """Why a raw record could not be normalized. Counted, never stored."""
    reason: RejectionReasonCode
    detail: str = ""


ValidationRejection = Rejection


class Batch(BaseModel):
    model_config = ConfigDict(frozen=True)

    records: tuple[NormalizedRecord, ...]
    batch_index: int
    total_batches: int

    def __len__(self) -> int:
        return len(self.records)


class BatchResult(BaseModel):
    processed_rows: int = 0
    duplicates: int = 0
    errors: int = 0


class FileStatus(BaseModel):
    name: str
    status: FileState = "pending"
    rows_processed: int = 0
    error: Optional[str] = None
    progress_percent: float = 0.0
    total_rows: int = 0
    rejected_rows: int = 0


class ImportSession(BaseModel):
    session_id: str
    year: int
    file_names: list[str] = Field(default_factory=list)
    total_file_rows: int = 0
    processed_rows: int = 0
    current_file_index: int = 0
    current_batch: int = 0
    total_batches: int = 0
    status: SessionStatus = "pending"
    errors_count: int = 0
    duplicates_count: int = 0
    start_time: datetime
    last_update_time: datetime
    file_statuses: list[FileStatus] = Field(default_factory=list)


class ActiveImportPointer(BaseModel):
    """The single well-known local entry that marks an import as resumable."""
    session_id: str
    year: int
    file_names: list[str] = Field(default_factory=list)
    started_at: datetime
    status: SessionStatus


class ProgressSnapshot(BaseModel):
    session_id: str
    status: SessionStatus
    processed_rows: int = 0
    total_file_rows: int = 0
    current_batch: int = 0
    total_batches: int = 0
    overall_progress_percent: float = 0.0
    import_speed: float = 0.0
    estimated_minutes_remaining: Optional[float] = None
    eta_label: Optional[str] = None
    elapsed_seconds: float = 0.0


class ImportSummary(BaseModel):
    session_id: str
    status: SessionStatus
    files_total: int = 0
    files_succeeded: int = 0
    processed_rows: int = 0
    errors_count: int = 0
    duplicates_count: int = 0
    file_statuses: list[FileStatus] = Field(default_factory=list)
    message: str = ""
