"""Job submission: the web tier's side of the queue.

An accepted upload either goes straight to the public output root (fast
path) or is parked in the temp area with a job for the worker (slow path).
Either way the caller gets back the attachment entry to store on the lead;
the job is written to ``pending`` only after that entry is recorded.
"""

import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..models import PipelineConfig
from .filesystem import FileQueue
from .models import (
    AttachmentStatus,
    JobKind,
    MediaJob,
    OriginalFile,
    ProcessingAttachment,
    utcnow,
)

logger = logging.getLogger(__name__)

# extension -> (kind, accepted MIME types); the first MIME is canonical
SUPPORTED_MEDIA = {
    "jpg": (JobKind.IMAGE, ("image/jpeg", "image/pjpeg")),
    "jpeg": (JobKind.IMAGE, ("image/jpeg", "image/pjpeg")),
    "heic": (JobKind.IMAGE, ("image/heic", "image/heic-sequence", "image/heif")),
    "heif": (JobKind.IMAGE, ("image/heif", "image/heif-sequence", "image/heic")),
    "mp4": (JobKind.VIDEO, ("video/mp4",)),
    "mov": (JobKind.VIDEO, ("video/quicktime",)),
}

NEEDS_PROCESSING = {
    JobKind.IMAGE: {"heic", "heif"},
    JobKind.VIDEO: {"mov"},
}

OUTPUT_FORMATS = {
    JobKind.IMAGE: ("image/jpeg", ".jpg"),
    JobKind.VIDEO: ("video/mp4", ".mp4"),
}


class UnsupportedMediaError(ValueError):
    """Upload whose extension is unknown or disagrees with its MIME type."""


def file_extension(name: str) -> str:
    """Lowercase extension without the dot ('' when there is none)."""
    return Path(name).suffix.lower().lstrip(".")


def normalize_mime(mime: Optional[str]) -> str:
    """'Video/QuickTime; charset=x' -> 'video/quicktime'."""
    if not mime:
        return ""
    return mime.split(";", 1)[0].strip().lower()


def canonical_mime(name: str) -> Optional[str]:
    entry = SUPPORTED_MEDIA.get(file_extension(name))
    return entry[1][0] if entry else None


def classify_upload(name: str, mime: Optional[str]) -> JobKind:
    """Check an upload against the whitelist.

    Args:
        name: Original filename
        mime: Client-reported MIME type; None skips the agreement check

    Returns:
        JobKind for the file

    Raises:
        UnsupportedMediaError: Unknown extension or extension/MIME mismatch
    """
    ext = file_extension(name)
    entry = SUPPORTED_MEDIA.get(ext)
    if entry is None:
        raise UnsupportedMediaError(f"Unsupported file type: {name}")

    kind, accepted = entry
    if mime is not None and normalize_mime(mime) not in accepted:
        raise UnsupportedMediaError(f"MIME type {mime!r} does not match extension .{ext}")
    return kind


def needs_processing(name: str, kind: JobKind) -> bool:
    """HEIC/HEIF images and MOV videos are converted, everything else is served as-is."""
    return file_extension(name) in NEEDS_PROCESSING[JobKind(kind)]


def public_url(prefix: str, lead_id: str, filename: str) -> str:
    return f"{prefix.rstrip('/')}/leads/{lead_id}/{filename}"


def _check_path_component(value: str, what: str) -> str:
    if not value or value in (".", "..") or "/" in value or "\\" in value:
        raise ValueError(f"Invalid {what}: {value!r}")
    return value


@dataclass
class PreparedUpload:
    """An accepted upload whose file is in place but whose job is not queued yet."""

    attachment: ProcessingAttachment
    job: Optional[MediaJob] = None  # None on the fast path


def prepare_upload(
    temp_path: str,
    original_name: str,
    size: int,
    mime: Optional[str],
    lead_id: str,
    config: PipelineConfig,
) -> PreparedUpload:
    """Move an uploaded temp file into place and build its attachment entry.

    The fast path is complete after this call. On the slow path the returned
    job must be enqueued only once the attachment has been recorded on the
    lead, otherwise the worker can finish before there is anything to update.

    Args:
        temp_path: Where the upload currently sits (moved, not copied)
        original_name: Client filename
        size: Upload size in bytes
        mime: Client-reported MIME type
        lead_id: Owning lead
        config: Pipeline configuration (paths)

    Raises:
        UnsupportedMediaError: If the file is not on the whitelist
    """
    kind = classify_upload(original_name, mime)
    _check_path_component(lead_id, "lead id")

    ext = file_extension(original_name)
    mime_type = normalize_mime(mime) or canonical_mime(original_name)
    attachment_id = str(uuid.uuid4())
    prefix = config.paths.public_url_prefix
    output_dir = Path(config.paths.output_dir).resolve() / "leads" / lead_id
    original = OriginalFile(name=original_name, size=size, type=mime_type)

    if not needs_processing(original_name, kind):
        filename = f"{attachment_id}.{ext}"
        final_path = output_dir / filename
        output_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(temp_path), final_path)

        logger.info("Stored %s without conversion as %s", original_name, final_path)
        now = utcnow()
        return PreparedUpload(
            ProcessingAttachment(
                id=attachment_id,
                name=original_name,
                url=public_url(prefix, lead_id, filename),
                path=str(final_path),
                size=final_path.stat().st_size,
                type=mime_type,
                status=AttachmentStatus.READY,
                kind=kind,
                original=original,
                created_at=now,
                processed_at=now,
            )
        )

    temp_dir = Path(config.paths.temp_dir).resolve() / "leads" / lead_id
    temp_dir.mkdir(parents=True, exist_ok=True)
    input_path = temp_dir / f"{attachment_id}.{ext}"
    shutil.move(str(temp_path), input_path)

    output_mime, output_ext = OUTPUT_FORMATS[kind]
    filename = f"{attachment_id}{output_ext}"
    output_path = output_dir / filename

    job = MediaJob(
        job_id=str(uuid.uuid4()),
        lead_id=lead_id,
        attachment_id=attachment_id,
        kind=kind,
        input_path=str(input_path),
        output_path=str(output_path),
        original_name=original_name,
        original_size=size,
        original_mime=mime_type,
    )
    attachment = ProcessingAttachment(
        id=attachment_id,
        name=original_name,
        url=public_url(prefix, lead_id, filename),
        path=str(output_path),
        size=size,
        type=output_mime,
        status=AttachmentStatus.PROCESSING,
        kind=kind,
        original=original,
    )
    return PreparedUpload(attachment, job)


def enqueue_prepared(prepared: PreparedUpload, queue: FileQueue) -> None:
    """Hand a recorded slow-path upload to the worker (no-op on the fast path)."""
    job = prepared.job
    if job is None:
        return
    queue.enqueue(job)
    logger.info(
        "Queued %s job for %s", job.kind.value, job.original_name, extra={"job_id": job.job_id}
    )


def discard_prepared(prepared: PreparedUpload) -> None:
    """Remove the stored file of an upload that could not be recorded."""
    target = prepared.job.input_path if prepared.job is not None else prepared.attachment.path
    Path(target).unlink(missing_ok=True)


def submit_upload(
    temp_path: str,
    original_name: str,
    size: int,
    mime: Optional[str],
    lead_id: str,
    config: PipelineConfig,
    queue: Optional[FileQueue] = None,
    record: Optional[Callable[[ProcessingAttachment], None]] = None,
) -> ProcessingAttachment:
    """Route an uploaded temp file through the fast or slow path.

    ``record`` runs before the job is enqueued and should persist the
    attachment on the lead. If it raises, the stored file is removed, no
    job is written and the error propagates.

    Returns:
        ``ready`` attachment (fast path) or ``processing`` attachment (slow path)

    Raises:
        UnsupportedMediaError: If the file is not on the whitelist
    """
    prepared = prepare_upload(temp_path, original_name, size, mime, lead_id, config)

    if record is not None:
        try:
            record(prepared.attachment)
        except Exception:
            discard_prepared(prepared)
            raise

    enqueue_prepared(prepared, queue or FileQueue(config.paths.queue_dir))
    return prepared.attachment
