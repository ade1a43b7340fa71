"""Reflects finished jobs onto the owning lead's attachment list."""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict

from .queue.backends import AttachmentStore
from .queue.models import AttachmentStatus, JobKind, MediaJob, utcnow
from .queue.submitter import OUTPUT_FORMATS, public_url

logger = logging.getLogger(__name__)

MISSING_OUTPUT_ERROR = "File not found after conversion"


def final_name(name: str, kind: JobKind) -> str:
    """Display name with the converted extension ('clip.mov' -> 'clip.mp4')."""
    _, ext = OUTPUT_FORMATS[JobKind(kind)]
    stem, _ = os.path.splitext(name)
    return f"{stem or name}{ext}"


def _original_name(entry: Dict[str, Any], job: MediaJob) -> str:
    original = entry.get("original") or {}
    return original.get("name") or entry.get("name") or job.original_name


class ResultPropagator:
    """Best-effort sync between the queue and the business record.

    A missing lead or attachment (deleted while the job was in flight) is
    logged and ignored. Store errors never reach the worker.
    """

    def __init__(self, store: AttachmentStore, public_url_prefix: str = "/api/uploads"):
        self.store = store
        self.public_url_prefix = public_url_prefix

    def propagate(self, job: MediaJob) -> bool:
        """Mark the attachment ready (or failed if the output vanished)."""
        result = job.result
        if result is None:
            return self.propagate_failure(job, job.error or "Conversion failed")

        file_exists = Path(job.output_path).exists()
        if not file_exists:
            logger.error(
                "File not found before record update: %s",
                job.output_path,
                extra={"job_id": job.job_id},
            )

        def updater(entry: Dict[str, Any]) -> Dict[str, Any]:
            entry.update(
                name=final_name(_original_name(entry, job), job.kind),
                status=(AttachmentStatus.READY if file_exists else AttachmentStatus.FAILED).value,
                type=result.mime,
                size=result.size,
                kind=job.kind.value,
                path=job.output_path,
                url=self._url(job),
                processedAt=utcnow().isoformat(),
            )
            if result.meta is not None:
                entry["meta"] = result.meta.model_dump(by_alias=True, exclude_none=True)
            else:
                entry.pop("meta", None)
            if file_exists:
                entry.pop("error", None)
            else:
                entry["error"] = MISSING_OUTPUT_ERROR
            return entry

        return self._apply(job, updater)

    def propagate_failure(self, job: MediaJob, message: str) -> bool:
        """Flag the attachment as failed; type and size stay as submitted."""

        def updater(entry: Dict[str, Any]) -> Dict[str, Any]:
            entry.update(
                status=AttachmentStatus.FAILED.value,
                kind=job.kind.value,
                error=message or "Conversion failed",
                processedAt=utcnow().isoformat(),
            )
            entry.pop("meta", None)
            return entry

        return self._apply(job, updater)

    def _url(self, job: MediaJob) -> str:
        return public_url(self.public_url_prefix, job.lead_id, Path(job.output_path).name)

    def _apply(self, job: MediaJob, updater: Callable[[Dict[str, Any]], Dict[str, Any]]) -> bool:
        log_extra = {"job_id": job.job_id, "lead_id": job.lead_id, "attachment_id": job.attachment_id}
        try:
            found = self.store.update_attachment(job.lead_id, job.attachment_id, updater)
        except Exception:
            logger.exception("Failed to update lead attachment", extra=log_extra)
            return False

        if not found:
            logger.warning("Lead or attachment no longer exists, skipping update", extra=log_extra)
            return False

        logger.info("Updated lead attachment", extra=log_extra)
        return True
