"""Tests for the worker loop: claim, convert, finalize, retry."""

import os
import threading
import time
from pathlib import Path

import pytest

from media_pipeline.ffmpeg_runner import ToolExitError
from media_pipeline.propagator import ResultPropagator
from media_pipeline.queue.models import JobKind, JobStatus, QueueState
from media_pipeline.queue.submitter import submit_upload
from media_pipeline.queue.worker import FAILED, RETRIED, SKIPPED, SUCCEEDED, MediaWorker


@pytest.fixture
def propagator(store):
    return ResultPropagator(store)


@pytest.fixture
def worker(config, queue, propagator, fake_runner):
    return MediaWorker(config, queue=queue, propagator=propagator, runner=fake_runner)


@pytest.fixture
def submitted(store, queue, make_job):
    """Enqueue a job whose lead carries a matching processing attachment."""

    def _submit(**kwargs):
        job = make_job(**kwargs)
        attachments = store.get_attachments(job.lead_id)
        entry = {
            "id": job.attachment_id,
            "name": job.original_name,
            "url": "",
            "path": job.output_path,
            "size": job.original_size,
            "type": "video/mp4",
            "status": "processing",
            "kind": job.kind.value,
        }
        if attachments is None:
            store.create_lead("Ada", "ada@example.com", attachments=[entry], lead_id=job.lead_id)
        else:
            store.append_attachments(job.lead_id, [entry])
        queue.enqueue(job)
        return job

    return _submit


def attachment(store, job):
    return next(a for a in store.get_attachments(job.lead_id) if a["id"] == job.attachment_id)


class TestSuccess:
    def test_video_job_completes(self, worker, queue, store, submitted):
        job = submitted()

        counts = worker.run_once()

        assert counts == {SUCCEEDED: 1, FAILED: 0, RETRIED: 0, SKIPPED: 0}
        state, done = queue.find(job.job_id)
        assert state == QueueState.DONE
        assert done.status == JobStatus.COMPLETED
        assert done.result.mime == "video/mp4"
        assert done.result.meta.fps == 30
        assert done.completed_at is not None
        assert queue.stats()["processing"] == 0

        assert not Path(job.input_path).exists()
        assert Path(job.output_path).exists()

        entry = attachment(store, job)
        assert entry["status"] == "ready"
        assert entry["name"] == "clip.mp4"
        assert entry["meta"]["duration"] == 45.0

    def test_image_job_completes(self, worker, queue, store, submitted, fake_runner):
        job = submitted(kind=JobKind.IMAGE, original_name="IMG.heic", attachment_id="img-1")

        assert worker.run_once()[SUCCEEDED] == 1
        assert fake_runner.tools_called() == ["heif-convert"]
        assert attachment(store, job)["type"] == "image/jpeg"

    def test_uploaded_heic_ends_up_ready(self, config, worker, queue, store, tmp_path):
        lead_id = store.create_lead("Ada", "ada@example.com")
        temp = tmp_path / "upload-IMG.HEIC"
        temp.write_bytes(b"heic")

        def record(entry):
            # A worker polling while the lead is written has nothing to pick up
            assert worker.run_once()[SUCCEEDED] == 0
            assert store.append_attachments(lead_id, [entry.to_record()])

        uploaded = submit_upload(str(temp), "IMG.HEIC", 4, "image/heic", lead_id, config, queue, record=record)

        assert worker.run_once()[SUCCEEDED] == 1
        (entry,) = store.get_attachments(lead_id)
        assert entry["id"] == uploaded.id
        assert entry["status"] == "ready"
        assert entry["type"] == "image/jpeg"

    def test_jobs_processed_oldest_first(self, worker, queue, submitted, fake_runner):
        first = submitted(attachment_id="a")
        second = submitted(attachment_id="b")
        now = time.time()
        for offset, job in ((10, first), (20, second)):
            path = queue.job_path(job.job_id, QueueState.PENDING)
            os.utime(path, (now - offset, now - offset))

        worker.run_once()

        outputs = [call[1][-1] for call in fake_runner.calls if call[0] == "ffmpeg"]
        assert outputs == [second.output_path, first.output_path]

    def test_max_jobs(self, worker, queue, submitted):
        submitted(attachment_id="a")
        submitted(attachment_id="b")

        assert worker.run_once(max_jobs=1)[SUCCEEDED] == 1
        assert queue.stats()["pending"] == 1


class TestFailure:
    def test_retry_then_permanent_failure(self, worker, queue, store, submitted, fake_runner):
        fake_runner.ffmpeg_error = ToolExitError("ffmpeg failed (code 1): Invalid data", tool="ffmpeg")
        job = submitted()

        assert worker.run_once()[RETRIED] == 1
        state, retried = queue.find(job.job_id)
        assert state == QueueState.PENDING
        assert retried.attempt == 1
        assert retried.status == JobStatus.PENDING
        assert "Invalid data" in retried.error
        assert retried.failed_at is not None
        assert Path(job.input_path).exists()
        # Flagged as failed already, before retries run out
        assert attachment(store, job)["status"] == "failed"

        assert worker.run_once()[FAILED] == 1
        state, failed = queue.find(job.job_id)
        assert state == QueueState.FAILED
        assert failed.attempt == 2
        assert failed.status == JobStatus.FAILED
        assert not Path(job.input_path).exists()
        assert queue.stats() == {"pending": 0, "done": 0, "failed": 1, "processing": 0, "total": 1}

        entry = attachment(store, job)
        assert entry["status"] == "failed"
        assert "Invalid data" in entry["error"]

    def test_single_attempt_policy(self, config, queue, propagator, fake_runner, submitted):
        config.worker.max_retries = 1
        worker = MediaWorker(config, queue=queue, propagator=propagator, runner=fake_runner)
        fake_runner.probe["format"]["duration"] = "999"
        job = submitted()

        assert worker.run_once()[FAILED] == 1
        _, failed = queue.find(job.job_id)
        assert failed.attempt == 1
        assert "Video too long" in failed.error
        assert fake_runner.tools_called() == ["ffprobe"]

    def test_retry_after_transient_failure_succeeds(self, worker, queue, store, submitted, fake_runner):
        fake_runner.ffmpeg_error = ToolExitError("ffmpeg failed (code 137): Killed", tool="ffmpeg")
        job = submitted()
        worker.run_once()

        fake_runner.ffmpeg_error = None
        assert worker.run_once()[SUCCEEDED] == 1

        _, done = queue.find(job.job_id)
        assert done.attempt == 1
        entry = attachment(store, job)
        assert entry["status"] == "ready"
        assert "error" not in entry

    def test_unreadable_job_quarantined(self, worker, queue):
        bad = queue.state_dir(QueueState.PENDING) / "broken.json"
        bad.write_text("{")

        assert worker.run_once()[FAILED] == 1
        assert (queue.state_dir(QueueState.FAILED) / "broken.json").read_text() == "{"

    def test_already_claimed_is_skipped(self, worker, queue, submitted):
        job = submitted()
        pending = queue.job_path(job.job_id, QueueState.PENDING)
        queue.claim(pending)

        assert worker.process_job(pending) == SKIPPED

    def test_deleted_lead_does_not_break_job(self, worker, queue, store, make_job):
        job = make_job(lead_id="gone")
        queue.enqueue(job)

        assert worker.run_once()[SUCCEEDED] == 1
        assert queue.find(job.job_id)[0] == QueueState.DONE

    def test_store_outage_does_not_break_job(self, config, queue, fake_runner, make_job):
        class BrokenStore:
            def update_attachment(self, lead_id, attachment_id, updater):
                raise RuntimeError("connection refused")

        worker = MediaWorker(
            config, queue=queue, propagator=ResultPropagator(BrokenStore()), runner=fake_runner
        )
        job = make_job()
        queue.enqueue(job)

        assert worker.run_once()[SUCCEEDED] == 1
        assert queue.find(job.job_id)[0] == QueueState.DONE


class TestLifecycle:
    def test_prepare_recovers_orphans(self, worker, queue, config, make_job):
        job = make_job()
        claimed = queue.claim(queue.enqueue(job))
        old = time.time() - config.worker.stale_processing_s - 60
        os.utime(claimed, (old, old))

        assert worker.prepare() == 1
        assert queue.find(job.job_id)[0] == QueueState.PENDING

    def test_prepare_without_recovery(self, config, queue, propagator, fake_runner, make_job):
        config.worker.recover_on_start = False
        worker = MediaWorker(config, queue=queue, propagator=propagator, runner=fake_runner)
        claimed = queue.claim(queue.enqueue(make_job()))
        os.utime(claimed, (0, 0))

        assert worker.prepare() == 0
        assert claimed.exists()

    def test_run_forever_until_stopped(self, worker, queue, submitted):
        job = submitted()
        thread = threading.Thread(target=worker.run_forever)
        thread.start()

        deadline = time.time() + 10
        while time.time() < deadline and queue.find(job.job_id)[0] != QueueState.DONE:
            time.sleep(0.02)
        worker.stop()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert queue.find(job.job_id)[0] == QueueState.DONE
