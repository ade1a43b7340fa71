"""Filesystem job queue: records, directories, claiming and submission."""

from .backends import AttachmentStore, ClaimStrategy
from .filesystem import FileQueue, PartitionedClaim, RenameClaim
from .models import (
    AttachmentStatus,
    ConversionResult,
    JobKind,
    JobStatus,
    MediaJob,
    MediaMeta,
    OriginalFile,
    ProcessingAttachment,
    QueueState,
)
from .submitter import (
    PreparedUpload,
    UnsupportedMediaError,
    classify_upload,
    enqueue_prepared,
    needs_processing,
    prepare_upload,
    submit_upload,
)

__all__ = [
    "AttachmentStore",
    "ClaimStrategy",
    "FileQueue",
    "PartitionedClaim",
    "RenameClaim",
    "AttachmentStatus",
    "ConversionResult",
    "JobKind",
    "JobStatus",
    "MediaJob",
    "MediaMeta",
    "OriginalFile",
    "ProcessingAttachment",
    "QueueState",
    "PreparedUpload",
    "UnsupportedMediaError",
    "classify_upload",
    "enqueue_prepared",
    "needs_processing",
    "prepare_upload",
    "submit_upload",
]
