"""Single-consumer worker loop.

This module provides sequential job processing with:
- Rename-based claiming (a job is processed at most once per claim)
- Dispatch to the image or video converter by job kind
- Bounded retries (failed jobs go back to pending until attempts run out)
- Result propagation to the lead's attachment list
- Startup recovery of orphaned processing entries
- Immediate exit on SIGTERM/SIGINT
"""

import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from ..converters import convert_image, convert_video
from ..ffmpeg_runner import FfmpegRunner
from ..models import PipelineConfig
from ..propagator import ResultPropagator
from ..store import SqlAttachmentStore
from .filesystem import FileQueue
from .models import ConversionResult, JobKind, JobStatus, MediaJob, QueueState, utcnow

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
RETRIED = "retried"
SKIPPED = "skipped"

CONVERTERS: Dict[JobKind, Callable[[MediaJob, PipelineConfig, FfmpegRunner], ConversionResult]] = {
    JobKind.IMAGE: convert_image,
    JobKind.VIDEO: convert_video,
}


class MediaWorker:
    """Polls ``pending`` and converts jobs one at a time.

    One external tool invocation is in flight at most; there is no overlap
    between a running conversion and the next claim.
    """

    def __init__(
        self,
        config: PipelineConfig,
        queue: Optional[FileQueue] = None,
        propagator: Optional[ResultPropagator] = None,
        runner: Optional[FfmpegRunner] = None,
    ):
        """Initialize worker.

        Args:
            config: Pipeline configuration
            queue: Job queue (default: built from ``paths.queue_dir``)
            propagator: Attachment updater (default: SQL store at ``database.url``)
            runner: External tool runner (default: built from ``tools``)
        """
        self.config = config
        self.queue = queue or FileQueue.from_config(config)
        self.propagator = propagator or ResultPropagator(
            SqlAttachmentStore(config.database.url), config.paths.public_url_prefix
        )
        self.runner = runner or FfmpegRunner.from_config(config)
        self.worker_id = config.worker.worker_id or f"worker-{os.getpid()}"
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def prepare(self) -> int:
        """Create directories and recover orphans. Returns recovered count."""
        self.queue.ensure_directories()
        Path(self.config.paths.temp_dir).mkdir(parents=True, exist_ok=True)
        (Path(self.config.paths.output_dir) / "leads").mkdir(parents=True, exist_ok=True)

        if not self.config.worker.recover_on_start:
            return 0

        recovered = self.queue.recover_stale(self.config.worker.stale_processing_s)
        if recovered:
            logger.warning("Moved %d orphaned job(s) back to pending", recovered)
        return recovered

    def run_forever(self) -> None:
        """Scan, process, rescan; sleep only when ``pending`` is empty."""
        self.prepare()
        self._install_signal_handlers()
        logger.info(
            "Worker %s started (queue: %s, poll: %dms)",
            self.worker_id,
            self.queue.root,
            self.config.worker.poll_interval_ms,
        )

        while not self._stop_event.is_set():
            try:
                counts = self.run_once()
            except Exception:
                logger.exception("Worker loop error")
                counts = None

            if not counts or sum(counts.values()) == 0:
                self._stop_event.wait(self.config.worker.poll_interval_s)

        logger.info("Worker %s stopped", self.worker_id)

    def stop(self) -> None:
        """Ask run_forever to return after the current job."""
        self._stop_event.set()

    def run_once(self, max_jobs: Optional[int] = None) -> Dict[str, int]:
        """Process every job currently pending, oldest first.

        Args:
            max_jobs: Stop after this many claimed jobs (None = no limit)

        Returns:
            Counts keyed by outcome: succeeded, failed, retried, skipped
        """
        counts = {SUCCEEDED: 0, FAILED: 0, RETRIED: 0, SKIPPED: 0}

        for path in self.queue.list_pending():
            if self._stop_event.is_set():
                break
            if max_jobs is not None and counts[SUCCEEDED] + counts[FAILED] + counts[RETRIED] >= max_jobs:
                break
            counts[self.process_job(path)] += 1

        return counts

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def _handle_signal(self, signum, frame) -> None:
        # In-flight job stays in processing; startup recovery picks it up
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        sys.exit(0)

    # ------------------------------------------------------------------
    # Single job
    # ------------------------------------------------------------------

    def process_job(self, pending_path: Path) -> str:
        """Claim, convert and finalize one job file.

        Returns:
            One of ``succeeded``, ``failed``, ``retried``, ``skipped``
        """
        try:
            claimed = self.queue.claim(pending_path)
        except FileNotFoundError:
            logger.debug("Job %s already claimed", Path(pending_path).name)
            return SKIPPED

        try:
            job = self.queue.load(claimed)
        except (OSError, ValueError) as e:
            logger.error("Unreadable job file %s, moving to failed: %s", claimed.name, e)
            self.queue.quarantine(claimed)
            return FAILED

        log_extra = {"job_id": job.job_id, "worker_id": self.worker_id}
        logger.info(
            "Processing %s job %s (attempt %d)",
            job.kind.value,
            job.original_name,
            job.attempt + 1,
            extra=log_extra,
        )

        try:
            Path(job.output_path).parent.mkdir(parents=True, exist_ok=True)
            result = self.convert(job)
        except Exception as e:
            logger.error("Job failed: %s", e, extra=log_extra)
            return self._finalize_failure(claimed, job, str(e))

        self._finalize_success(claimed, job, result)
        logger.info("Job completed", extra=log_extra)
        return SUCCEEDED

    def convert(self, job: MediaJob) -> ConversionResult:
        return CONVERTERS[job.kind](job, self.config, self.runner)

    def _finalize_success(self, claimed: Path, job: MediaJob, result: ConversionResult) -> None:
        job.result = result
        job.completed_at = utcnow()
        job.status = JobStatus.COMPLETED

        self.propagator.propagate(job)
        self.queue.write(job, QueueState.DONE)
        self.queue.release(claimed)
        self._cleanup_input(job)

    def _finalize_failure(self, claimed: Path, job: MediaJob, message: str) -> str:
        try:
            job = self.queue.load(claimed)
        except (OSError, ValueError):
            logger.warning("Could not reload %s, using in-memory job", claimed.name)

        job.error = message
        job.failed_at = utcnow()
        job.attempt += 1

        self.propagator.propagate_failure(job, message)

        if job.attempt >= self.config.worker.max_retries:
            self.queue.write(job, QueueState.FAILED)
            self.queue.release(claimed)
            self._cleanup_input(job)
            logger.error(
                "Job failed permanently after %d attempt(s)", job.attempt, extra={"job_id": job.job_id}
            )
            return FAILED

        self.queue.write(job, QueueState.PENDING)
        self.queue.release(claimed)
        logger.warning(
            "Job re-queued (attempt %d of %d)",
            job.attempt,
            self.config.worker.max_retries,
            extra={"job_id": job.job_id},
        )
        return RETRIED

    def _cleanup_input(self, job: MediaJob) -> None:
        try:
            Path(job.input_path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to clean up %s: %s", job.input_path, e, extra={"job_id": job.job_id})
