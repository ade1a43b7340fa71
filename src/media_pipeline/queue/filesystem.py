"""Directory-backed job queue.

Lifecycle state is encoded purely by file placement:

    <root>/pending/<jobId>.json      waiting to be claimed
    <root>/processing/<jobId>.json   claimed by the worker
    <root>/done/<jobId>.json         completed
    <root>/failed/<jobId>.json       failed permanently

Writes go through a hidden temp file in the target directory followed by
``os.replace``, so scanners never see a half-written job. Claiming is a
rename, which is atomic within one filesystem.
"""

import logging
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .backends import ClaimStrategy
from .models import STATUS_FOR_STATE, MediaJob, QueueState

logger = logging.getLogger(__name__)

JOB_SUFFIX = ".json"


class RenameClaim(ClaimStrategy):
    """Single-consumer claim: ``pending/<id>.json`` → ``processing/<id>.json``."""

    def __init__(self, processing_dir: Path):
        self.processing_dir = Path(processing_dir)

    def claim(self, pending_path: Path) -> Path:
        target = self.processing_dir / pending_path.name
        os.rename(pending_path, target)
        # mtime marks claim time for orphan detection
        os.utime(target)
        return target

    def claimed_files(self) -> Iterator[Path]:
        if not self.processing_dir.exists():
            return
        for path in sorted(self.processing_dir.rglob(f"*{JOB_SUFFIX}")):
            yield path


class PartitionedClaim(RenameClaim):
    """Per-worker namespace: ``processing/<worker_id>/<id>.json``.

    Lets several worker processes share one queue root; each one only ever
    finalizes files inside its own partition.
    """

    def __init__(self, processing_dir: Path, worker_id: str):
        super().__init__(processing_dir)
        if not worker_id or "/" in worker_id or worker_id in (".", ".."):
            raise ValueError(f"Invalid worker id: {worker_id!r}")
        self.worker_id = worker_id
        self.partition_dir = self.processing_dir / worker_id

    def claim(self, pending_path: Path) -> Path:
        self.partition_dir.mkdir(parents=True, exist_ok=True)
        target = self.partition_dir / pending_path.name
        os.rename(pending_path, target)
        os.utime(target)
        return target


class FileQueue:
    """Filesystem job queue with pluggable claim strategy.

    Features:
    - Atomic enqueue and state writes (temp file + os.replace)
    - FIFO scanning by modification time
    - Rename-based claiming (exclusive per file)
    - Orphan recovery for entries stuck in processing
    """

    def __init__(self, root: str, claim_strategy: Optional[ClaimStrategy] = None):
        """Initialize queue.

        Args:
            root: Queue root directory
            claim_strategy: Defaults to RenameClaim into ``processing``
        """
        self.root = Path(root).resolve()
        self.claim_strategy = claim_strategy or RenameClaim(self.state_dir(QueueState.PROCESSING))

    @classmethod
    def from_config(cls, config) -> "FileQueue":
        """Queue at ``paths.queue_dir`` using the configured claim strategy."""
        queue = cls(config.paths.queue_dir)
        if config.worker.claim_strategy == "partitioned":
            worker_id = config.worker.worker_id or f"worker-{os.getpid()}"
            queue.claim_strategy = PartitionedClaim(queue.state_dir(QueueState.PROCESSING), worker_id)
        return queue

    def state_dir(self, state: QueueState) -> Path:
        return self.root / QueueState(state).value

    def ensure_directories(self) -> None:
        for state in QueueState:
            self.state_dir(state).mkdir(parents=True, exist_ok=True)

    def job_path(self, job_id: str, state: QueueState) -> Path:
        return self.state_dir(state) / f"{job_id}{JOB_SUFFIX}"

    def enqueue(self, job: MediaJob) -> Path:
        """Write a new job into ``pending``."""
        return self.write(job, QueueState.PENDING)

    def write(self, job: MediaJob, state: QueueState) -> Path:
        """Atomically write ``job`` as ``<state>/<jobId>.json``.

        The job's status is set to match the target directory.
        """
        state = QueueState(state)
        job.status = STATUS_FOR_STATE[state]
        target_dir = self.state_dir(state)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / f"{job.job_id}{JOB_SUFFIX}"
        tmp = target_dir / f".{job.job_id}.{uuid.uuid4().hex}.tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(job.to_json())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        finally:
            if tmp.exists():
                tmp.unlink()
        return target

    def list_pending(self) -> List[Path]:
        """Pending job files, oldest modification time first."""
        pending_dir = self.state_dir(QueueState.PENDING)
        if not pending_dir.exists():
            return []

        entries: List[Tuple[float, str, Path]] = []
        for path in pending_dir.glob(f"*{JOB_SUFFIX}"):
            try:
                entries.append((path.stat().st_mtime, path.name, path))
            except FileNotFoundError:
                # Claimed between listing and stat
                continue

        entries.sort()
        return [path for _, _, path in entries]

    def claim(self, pending_path: Path) -> Path:
        """Claim a pending job file.

        Raises:
            FileNotFoundError: If the file was already claimed or removed
        """
        return self.claim_strategy.claim(Path(pending_path))

    def load(self, path: Path) -> MediaJob:
        with open(path, "r", encoding="utf-8") as f:
            return MediaJob.from_json(f.read())

    def release(self, path: Path) -> None:
        """Remove a claimed job file once its new state has been written."""
        Path(path).unlink(missing_ok=True)

    def quarantine(self, path: Path) -> Path:
        """Move an unreadable job file into ``failed`` untouched."""
        failed_dir = self.state_dir(QueueState.FAILED)
        failed_dir.mkdir(parents=True, exist_ok=True)
        target = failed_dir / Path(path).name
        os.replace(path, target)
        return target

    def find(self, job_id: str) -> Optional[Tuple[QueueState, MediaJob]]:
        """Locate a job by id in any state."""
        for state in (QueueState.PENDING, QueueState.DONE, QueueState.FAILED):
            path = self.job_path(job_id, state)
            if path.exists():
                return state, self.load(path)

        for path in self.claim_strategy.claimed_files():
            if path.stem == job_id:
                return QueueState.PROCESSING, self.load(path)

        return None

    def stats(self) -> Dict[str, int]:
        """Number of job files per state."""
        counts = {}
        for state in (QueueState.PENDING, QueueState.DONE, QueueState.FAILED):
            state_dir = self.state_dir(state)
            counts[state.value] = (
                len(list(state_dir.glob(f"*{JOB_SUFFIX}"))) if state_dir.exists() else 0
            )
        counts[QueueState.PROCESSING.value] = sum(1 for _ in self.claim_strategy.claimed_files())
        counts["total"] = sum(counts.values())
        return counts

    def recover_stale(self, max_age_s: float, now: Optional[float] = None) -> int:
        """Crash recovery: move orphaned processing entries back to pending.

        Args:
            max_age_s: Entries whose mtime is older than this are orphaned
            now: Reference time (defaults to time.time())

        Returns:
            Count of recovered jobs

        The attempt counter is not incremented; the job never got a verdict.
        Unreadable entries are quarantined into ``failed``. Entries whose job
        already sits in ``done`` or ``failed`` are leftovers of a finalize that
        stopped before release; they are dropped, not re-queued.
        """
        now = time.time() if now is None else now
        recovered = 0

        for path in list(self.claim_strategy.claimed_files()):
            try:
                age = now - path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age < max_age_s:
                continue

            try:
                job = self.load(path)
            except (OSError, ValueError) as e:
                logger.error("Quarantining unreadable job file %s: %s", path, e)
                self.quarantine(path)
                continue

            finished = next(
                (s for s in (QueueState.DONE, QueueState.FAILED) if self.job_path(job.job_id, s).exists()),
                None,
            )
            if finished is not None:
                self.release(path)
                logger.info(
                    "Dropped leftover claim for %s job %s", finished.value, job.job_id, extra={"job_id": job.job_id}
                )
                continue

            self.write(job, QueueState.PENDING)
            self.release(path)
            recovered += 1
            logger.warning(
                "Recovered orphaned job %s (age %.0fs)", job.job_id, age, extra={"job_id": job.job_id}
            )

        return recovered

    def purge_lead(self, lead_id: str, temp_root: Optional[str] = None) -> int:
        """Drop unfinished jobs (and their inputs) belonging to a lead.

        Args:
            lead_id: Lead being deleted
            temp_root: Upload temp root; ``<temp_root>/leads/<lead_id>`` is removed

        Returns:
            Count of job files removed
        """
        removed = 0
        candidates = list(self.list_pending()) + list(self.claim_strategy.claimed_files())

        for path in candidates:
            try:
                job = self.load(path)
            except (OSError, ValueError):
                continue
            if job.lead_id != lead_id:
                continue

            path.unlink(missing_ok=True)
            Path(job.input_path).unlink(missing_ok=True)
            removed += 1

        if temp_root:
            shutil.rmtree(Path(temp_root) / "leads" / lead_id, ignore_errors=True)

        return removed
