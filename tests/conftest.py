import json
import os
import shutil
import tempfile
from pathlib import Path

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine

# Force test paths before importing app (which resolves config at import time)
API_ROOT = Path(tempfile.mkdtemp(prefix="media_pipeline_api_"))
os.environ["DATABASE_URL"] = f"sqlite:///{API_ROOT}/test_api.db"
os.environ["UPLOAD_TMP_DIR"] = str(API_ROOT / "tmp")
os.environ["MEDIA_QUEUE_DIR"] = str(API_ROOT / "queue")
os.environ["UPLOAD_DIR"] = str(API_ROOT / "public")

from media_pipeline.api.db_models import Base  # noqa: E402
from media_pipeline.api.main import app, database  # noqa: E402
from media_pipeline.ffmpeg_runner import ToolResult  # noqa: E402
from media_pipeline.models import PipelineConfig  # noqa: E402
from media_pipeline.queue.filesystem import FileQueue  # noqa: E402
from media_pipeline.queue.models import JobKind, MediaJob  # noqa: E402
from media_pipeline.store import SqlAttachmentStore  # noqa: E402


@pytest.fixture(scope="function")
async def client():
    # Create tables via synchronous SQLAlchemy
    engine = create_engine(os.environ["DATABASE_URL"])
    Base.metadata.create_all(engine)
    engine.dispose()

    # Connect the async database used by the app
    await database.connect()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    # Clean up: drop all tables, disconnect, wipe files written by the app
    engine = create_engine(os.environ["DATABASE_URL"])
    Base.metadata.drop_all(engine)
    engine.dispose()
    await database.disconnect()
    for name in ("tmp", "queue", "public"):
        shutil.rmtree(API_ROOT / name, ignore_errors=True)


@pytest.fixture
def config(tmp_path):
    """Pipeline config rooted in a per-test directory."""
    return PipelineConfig.from_dict(
        {
            "paths": {
                "temp_dir": str(tmp_path / "tmp"),
                "queue_dir": str(tmp_path / "queue"),
                "output_dir": str(tmp_path / "public"),
            },
            "worker": {"poll_interval_ms": 10},
            "database": {"url": f"sqlite:///{tmp_path}/leads.db"},
        }
    )


@pytest.fixture
def queue(config):
    q = FileQueue(config.paths.queue_dir)
    q.ensure_directories()
    return q


@pytest.fixture
def store(config):
    s = SqlAttachmentStore(config.database.url)
    s.init_db()
    yield s
    s.engine.dispose()


def make_probe(codec="h264", width=854, height=480, duration=45.0, audio=None, frame_rate=None):
    """ffprobe JSON payload in the shape the worker requests."""
    video = {"codec_type": "video", "codec_name": codec}
    if width is not None:
        video["width"] = width
    if height is not None:
        video["height"] = height
    if frame_rate is not None:
        video["r_frame_rate"] = frame_rate
        video["avg_frame_rate"] = frame_rate
    streams = [video]
    if audio is not None:
        streams.append({"codec_type": "audio", "codec_name": audio})
    return {"streams": streams, "format": {"duration": str(duration)}}


class FakeRunner:
    """Records tool invocations and fakes their effect on the filesystem."""

    def __init__(self, probe=None, output_bytes=b"converted"):
        self.probe = probe if probe is not None else make_probe()
        self.output_bytes = output_bytes
        self.calls = []
        self.ffmpeg_error = None
        self.heif_error = None
        self.write_output = True

    def _result(self, tool, cmd, stdout=""):
        return ToolResult(tool=tool, cmd=cmd, returncode=0, stdout=stdout, stderr="", duration_s=0.01)

    def ffprobe(self, args, timeout_s):
        self.calls.append(("ffprobe", list(args), timeout_s))
        return self._result("ffprobe", list(args), json.dumps(self.probe))

    def ffmpeg(self, args, timeout_s):
        self.calls.append(("ffmpeg", list(args), timeout_s))
        if self.ffmpeg_error is not None:
            raise self.ffmpeg_error
        if self.write_output:
            Path(args[-1]).write_bytes(self.output_bytes)
        return self._result("ffmpeg", list(args))

    def heif_convert(self, input_path, output_path, timeout_s):
        self.calls.append(("heif-convert", [str(input_path), str(output_path)], timeout_s))
        if self.heif_error is not None:
            raise self.heif_error
        if self.write_output:
            Path(output_path).write_bytes(self.output_bytes)
        return self._result("heif-convert", [str(input_path), str(output_path)])

    def tools_called(self):
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def make_job(config):
    """Build a job whose input file exists in the temp area."""

    def _make(kind=JobKind.VIDEO, original_name="clip.mov", lead_id="lead-1", attachment_id="att-1"):
        temp_dir = Path(config.paths.temp_dir) / "leads" / lead_id
        temp_dir.mkdir(parents=True, exist_ok=True)
        input_path = temp_dir / f"{attachment_id}{Path(original_name).suffix.lower()}"
        input_path.write_bytes(b"original media")

        out_ext = ".mp4" if JobKind(kind) == JobKind.VIDEO else ".jpg"
        output_path = Path(config.paths.output_dir) / "leads" / lead_id / f"{attachment_id}{out_ext}"
        output_path.parent.mkdir(parents=True, exist_ok=True)
        return MediaJob(
            job_id=f"job-{attachment_id}",
            lead_id=lead_id,
            attachment_id=attachment_id,
            kind=kind,
            input_path=str(input_path),
            output_path=str(output_path),
            original_name=original_name,
            original_size=input_path.stat().st_size,
            original_mime="video/quicktime" if JobKind(kind) == JobKind.VIDEO else "image/heic",
        )

    return _make


@pytest.fixture
def probe_payload():
    return make_probe
