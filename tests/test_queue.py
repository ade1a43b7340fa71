"""Unit tests for the filesystem job queue.

Tests cover:
- Atomic enqueue and state writes
- FIFO ordering of pending jobs
- Rename-based claim exclusivity
- Crash recovery of orphaned processing entries
- Lead purge and partitioned claiming
"""

import json
import os
import threading
import time
import uuid
from pathlib import Path

import pytest

from media_pipeline.models import PipelineConfig
from media_pipeline.queue import (
    FileQueue,
    JobKind,
    JobStatus,
    MediaJob,
    PartitionedClaim,
    QueueState,
    RenameClaim,
)


def new_job(lead_id="lead-1", input_path="/tmp/in.mov", **overrides):
    data = dict(
        job_id=str(uuid.uuid4()),
        lead_id=lead_id,
        attachment_id=str(uuid.uuid4()),
        kind=JobKind.VIDEO,
        input_path=input_path,
        output_path="/srv/public/leads/lead-1/out.mp4",
        original_name="clip.mov",
        original_size=100,
        original_mime="video/quicktime",
    )
    data.update(overrides)
    return MediaJob(**data)


def set_mtime(path, mtime):
    os.utime(path, (mtime, mtime))


class TestQueueWrites:
    """Test enqueue and state writes."""

    def test_enqueue_writes_pending_file(self, queue):
        job = new_job()
        path = queue.enqueue(job)

        assert path == queue.job_path(job.job_id, QueueState.PENDING)
        data = json.loads(path.read_text())
        assert data["jobId"] == job.job_id
        assert data["status"] == "pending"
        assert data["attempt"] == 0

    def test_enqueue_creates_directories(self, tmp_path):
        queue = FileQueue(str(tmp_path / "fresh"))
        queue.enqueue(new_job())
        assert len(queue.list_pending()) == 1

    def test_write_leaves_no_temp_files(self, queue):
        job = new_job()
        queue.enqueue(job)
        queue.write(job, QueueState.DONE)

        for state in QueueState:
            leftovers = [p for p in queue.state_dir(state).iterdir() if p.suffix == ".tmp"]
            assert leftovers == []

    def test_write_sets_status_from_state(self, queue):
        job = new_job()
        queue.write(job, QueueState.DONE)
        assert job.status == JobStatus.COMPLETED
        loaded = queue.load(queue.job_path(job.job_id, QueueState.DONE))
        assert loaded.status == JobStatus.COMPLETED

    def test_list_pending_ignores_temp_files(self, queue):
        queue.enqueue(new_job())
        (queue.state_dir(QueueState.PENDING) / ".partial.abc.tmp").write_text("{")
        assert len(queue.list_pending()) == 1


class TestClaiming:
    """Test FIFO scanning and claim exclusivity."""

    def test_fifo_by_mtime(self, queue):
        jobs = [new_job() for _ in range(3)]
        now = time.time()
        for offset, job in zip((30, 10, 20), jobs):
            set_mtime(queue.enqueue(job), now - offset)

        order = [path.stem for path in queue.list_pending()]
        assert order == [jobs[0].job_id, jobs[2].job_id, jobs[1].job_id]

    def test_claim_moves_to_processing(self, queue):
        job = new_job()
        pending = queue.enqueue(job)
        set_mtime(pending, time.time() - 3600)

        claimed = queue.claim(pending)

        assert not pending.exists()
        assert claimed.parent == queue.state_dir(QueueState.PROCESSING)
        assert queue.load(claimed).job_id == job.job_id
        # Claim time, not enqueue time
        assert time.time() - claimed.stat().st_mtime < 60

    def test_second_claim_loses(self, queue):
        pending = queue.enqueue(new_job())
        queue.claim(pending)
        with pytest.raises(FileNotFoundError):
            queue.claim(pending)

    def test_concurrent_claims_have_one_winner(self, queue):
        pending = queue.enqueue(new_job())
        barrier = threading.Barrier(8)
        winners, losers = [], []

        def attempt():
            barrier.wait()
            try:
                winners.append(queue.claim(pending))
            except FileNotFoundError:
                losers.append(True)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(losers) == 7
        assert len(list(queue.claim_strategy.claimed_files())) == 1

    def test_release_removes_claimed_file(self, queue):
        claimed = queue.claim(queue.enqueue(new_job()))
        queue.release(claimed)
        queue.release(claimed)
        assert not claimed.exists()


class TestInspection:
    """Test find and stats."""

    def test_find_in_each_state(self, queue):
        pending_job, processing_job, done_job = new_job(), new_job(), new_job()
        queue.enqueue(pending_job)
        queue.claim(queue.enqueue(processing_job))
        queue.write(done_job, QueueState.DONE)

        assert queue.find(pending_job.job_id)[0] == QueueState.PENDING
        assert queue.find(processing_job.job_id)[0] == QueueState.PROCESSING
        state, job = queue.find(done_job.job_id)
        assert state == QueueState.DONE
        assert job.status == JobStatus.COMPLETED
        assert queue.find("missing") is None

    def test_stats(self, queue):
        queue.enqueue(new_job())
        queue.enqueue(new_job())
        queue.claim(queue.enqueue(new_job()))
        queue.write(new_job(), QueueState.FAILED)

        assert queue.stats() == {"pending": 2, "done": 0, "failed": 1, "processing": 1, "total": 4}


class TestRecovery:
    """Test orphan recovery and quarantine."""

    def test_recover_stale_requeues_old_entries(self, queue):
        job = new_job(attempt=1)
        claimed = queue.claim(queue.enqueue(job))
        set_mtime(claimed, time.time() - 7200)

        assert queue.recover_stale(3600) == 1

        assert not claimed.exists()
        state, recovered = queue.find(job.job_id)
        assert state == QueueState.PENDING
        assert recovered.status == JobStatus.PENDING
        # No verdict was reached, so the attempt counter is unchanged
        assert recovered.attempt == 1

    def test_recover_stale_leaves_fresh_entries(self, queue):
        claimed = queue.claim(queue.enqueue(new_job()))
        assert queue.recover_stale(3600) == 0
        assert claimed.exists()

    @pytest.mark.parametrize("final_state", [QueueState.DONE, QueueState.FAILED])
    def test_recover_stale_drops_claims_of_finished_jobs(self, queue, final_state):
        # Stopped between writing the verdict and releasing the claim
        job = new_job()
        claimed = queue.claim(queue.enqueue(job))
        queue.write(job, final_state)
        set_mtime(claimed, time.time() - 7200)

        assert queue.recover_stale(3600) == 0

        assert not claimed.exists()
        assert queue.list_pending() == []
        assert queue.find(job.job_id)[0] == final_state
        assert queue.stats()["total"] == 1

    def test_recover_stale_quarantines_garbage(self, queue):
        processing = queue.state_dir(QueueState.PROCESSING)
        bad = processing / "broken.json"
        bad.write_text("{not json")
        set_mtime(bad, time.time() - 7200)

        assert queue.recover_stale(60) == 0
        assert not bad.exists()
        assert (queue.state_dir(QueueState.FAILED) / "broken.json").read_text() == "{not json"

    def test_quarantine_keeps_contents(self, queue):
        processing = queue.state_dir(QueueState.PROCESSING)
        bad = processing / "x.json"
        bad.write_text("garbage")
        target = queue.quarantine(bad)
        assert target.parent == queue.state_dir(QueueState.FAILED)
        assert target.read_text() == "garbage"


class TestPurgeLead:
    def test_purge_removes_only_that_lead(self, queue, tmp_path):
        temp_root = tmp_path / "uploads"
        lead_dir = temp_root / "leads" / "lead-1"
        lead_dir.mkdir(parents=True)
        input_a = lead_dir / "a.mov"
        input_a.write_bytes(b"a")

        mine = new_job(input_path=str(input_a))
        claimed_mine = new_job(input_path=str(lead_dir / "b.mov"))
        other = new_job(lead_id="lead-2")
        queue.enqueue(mine)
        queue.claim(queue.enqueue(claimed_mine))
        queue.enqueue(other)

        removed = queue.purge_lead("lead-1", str(temp_root))

        assert removed == 2
        assert not lead_dir.exists()
        assert [p.stem for p in queue.list_pending()] == [other.job_id]
        assert queue.stats()["processing"] == 0


class TestPartitionedClaim:
    def test_claims_into_worker_partition(self, tmp_path):
        queue = FileQueue(str(tmp_path / "q"))
        queue.claim_strategy = PartitionedClaim(queue.state_dir(QueueState.PROCESSING), "w1")
        job = new_job()
        claimed = queue.claim(queue.enqueue(job))

        assert claimed.parent == queue.state_dir(QueueState.PROCESSING) / "w1"
        assert queue.find(job.job_id)[0] == QueueState.PROCESSING
        assert queue.stats()["processing"] == 1

    @pytest.mark.parametrize("worker_id", ["", "..", "a/b"])
    def test_invalid_worker_id(self, tmp_path, worker_id):
        with pytest.raises(ValueError):
            PartitionedClaim(tmp_path, worker_id)

    def test_from_config(self, tmp_path):
        config = PipelineConfig.from_dict({"paths": {"queue_dir": str(tmp_path / "q")}})
        assert isinstance(FileQueue.from_config(config).claim_strategy, RenameClaim)

        config = config.merge_cli_overrides({"worker_id": "w7"})
        queue = FileQueue.from_config(config)
        assert isinstance(queue.claim_strategy, PartitionedClaim)
        assert queue.claim_strategy.worker_id == "w7"
        assert queue.root == Path(tmp_path / "q").resolve()
