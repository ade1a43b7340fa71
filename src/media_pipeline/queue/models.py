"""Pydantic models for job queue data structures.

The queue's wire format is one camelCase JSON object per file, so every
model here is aliased with ``to_camel`` and dumped ``by_alias``. Python code
keeps using the snake_case attribute names.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, Enum):
    """Determines which converter runs. Fixed at creation."""

    IMAGE = "image"
    VIDEO = "video"


class JobStatus(str, Enum):
    """Job processing states.

    State transitions (directory in parentheses):
        pending (pending)       → processing (processing)   worker claims
        processing (processing) → completed (done)          conversion succeeded
        processing (processing) → pending (pending)         failed, attempts left
        processing (processing) → failed (failed)           failed, attempts exhausted
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueState(str, Enum):
    """Queue subdirectory names. A job file's location is authoritative."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


STATUS_FOR_STATE = {
    QueueState.PENDING: JobStatus.PENDING,
    QueueState.PROCESSING: JobStatus.PROCESSING,
    QueueState.DONE: JobStatus.COMPLETED,
    QueueState.FAILED: JobStatus.FAILED,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MediaMeta(_CamelModel):
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    fps: Optional[float] = None


class ConversionResult(_CamelModel):
    """Converter output, stored on the job once it completes."""

    success: bool = True
    size: int = Field(..., ge=0, description="Output file size in bytes")
    mime: str = Field(..., description="Output MIME type")
    ext: str = Field(..., description="Output extension including the dot")
    meta: Optional[MediaMeta] = None


class MediaJob(_CamelModel):
    """One unit of conversion work, persisted as ``<state>/<jobId>.json``."""

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    lead_id: str = Field(..., description="Owning lead")
    attachment_id: str = Field(..., description="Entry in the lead's attachment list")
    kind: JobKind
    input_path: str = Field(..., description="Absolute path of the original in the temp area")
    output_path: str = Field(..., description="Absolute path the converter must produce")
    original_name: str
    original_size: int = Field(..., ge=0)
    original_mime: Optional[str] = None
    attempt: int = Field(default=0, ge=0, description="Failures so far")
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    result: Optional[ConversionResult] = None
    error: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    @classmethod
    def from_json(cls, data: str) -> "MediaJob":
        return cls.model_validate_json(data)


class AttachmentStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class OriginalFile(_CamelModel):
    """Provenance snapshot of the uploaded file."""

    name: str
    size: int
    type: Optional[str] = None


class ProcessingAttachment(_CamelModel):
    """Business-facing attachment entry stored in the lead's attachment list."""

    id: str
    name: str
    url: str
    path: str
    size: int
    type: str
    status: AttachmentStatus
    kind: JobKind
    original: Optional[OriginalFile] = None
    meta: Optional[MediaMeta] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None

    def to_record(self) -> dict:
        """JSON-safe dict in the shape stored on the lead."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
