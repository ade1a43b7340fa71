"""Pydantic models for pipeline configuration."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class PathsConfig(BaseModel):
    """Filesystem layout shared by the web tier and the worker."""

    temp_dir: str = Field(
        default="tmp/uploads", description="Scratch area for uploaded-but-unprocessed originals"
    )
    queue_dir: str = Field(
        default="tmp/queue", description="Queue root holding pending/processing/done/failed"
    )
    output_dir: str = Field(
        default="public/uploads", description="Public output root (files live under leads/<leadId>/)"
    )
    public_url_prefix: str = Field(
        default="/api/uploads", description="URL path that maps onto output_dir"
    )

    @field_validator("public_url_prefix")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/") or "/"


class ToolsConfig(BaseModel):
    """External executables. None means resolve from PATH."""

    ffmpeg_path: Optional[str] = Field(default=None, description="ffmpeg executable")
    ffprobe_path: Optional[str] = Field(default=None, description="ffprobe executable")
    heif_convert_path: Optional[str] = Field(default=None, description="heif-convert executable")
    kill_grace_period_s: float = Field(
        default=5.0, gt=0.0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=False, description="Save command/stdout/stderr logs when a tool fails"
    )
    artifacts_dir: Optional[str] = Field(
        default=None, description="Where failure logs go (None = system temp dir)"
    )


class VideoConfig(BaseModel):
    """Video conversion policy (H.264/AAC MP4 target)."""

    max_duration_s: float = Field(
        default=360, gt=0, description="Reject videos longer than this before transcoding"
    )
    max_height: int = Field(default=720, gt=0, description="Output height ceiling (downscale only)")
    fps: int = Field(default=30, gt=0, description="Target frame rate for transcodes")
    preset: Literal[
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
        "slower",
        "veryslow",
    ] = Field(default="ultrafast", description="libx264 preset")
    crf: int = Field(default=23, ge=0, le=51, description="Constant Rate Factor")
    maxrate: str = Field(default="3.5M", description="Peak video bitrate cap")
    bufsize: str = Field(default="7M", description="Rate-control buffer size")
    audio_bitrate: str = Field(default="128k", description="AAC bitrate")
    audio_channels: int = Field(default=2, ge=1, le=8, description="AAC channel count")
    threads: Optional[int] = Field(
        default=None, ge=0, description="ffmpeg -threads value (None = ffmpeg decides)"
    )


class ImageConfig(BaseModel):
    """Image conversion policy (JPEG target)."""

    heif_timeout_s: float = Field(
        default=300, gt=0, description="Timeout for the dedicated HEIC decoder"
    )
    jpeg_quality: int = Field(
        default=2, ge=1, le=31, description="ffmpeg -q:v for the fallback (lower = better)"
    )


class WorkerConfig(BaseModel):
    """Worker loop scheduling and retry policy."""

    job_timeout_ms: int = Field(
        default=1_200_000, gt=0, description="Hard timeout for a single ffmpeg invocation"
    )
    max_retries: int = Field(
        default=2,
        ge=1,
        description="A job fails permanently once its attempt counter reaches this value",
    )
    poll_interval_ms: int = Field(
        default=1000, gt=0, description="Sleep between scans when pending is empty"
    )
    recover_on_start: bool = Field(
        default=True, description="Move stale processing entries back to pending at startup"
    )
    stale_processing_s: float = Field(
        default=2400, gt=0, description="Age after which a processing entry counts as orphaned"
    )
    claim_strategy: Literal["rename", "partitioned"] = Field(
        default="rename", description="How jobs are claimed from pending"
    )
    worker_id: Optional[str] = Field(
        default=None, description="Partition name for the partitioned claim strategy"
    )

    @property
    def job_timeout_s(self) -> float:
        return self.job_timeout_ms / 1000.0

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0


class UploadConfig(BaseModel):
    """Upload endpoint limits."""

    max_upload_bytes: int = Field(default=1024 ** 3, gt=0, description="Per-file size cap")


class DatabaseConfig(BaseModel):
    url: str = Field(default="sqlite:///./media_pipeline.db", description="Lead store URL")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Root log level")
    format: Literal["text", "json"] = Field(default="text", description="Log line format")


class PipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    video: VideoConfig = Field(default_factory=VideoConfig)
    image: ImageConfig = Field(default_factory=ImageConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("queue_dir") is not None:
            config_dict["paths"]["queue_dir"] = cli_args["queue_dir"]
        if cli_args.get("max_retries") is not None:
            config_dict["worker"]["max_retries"] = cli_args["max_retries"]
        if cli_args.get("threads") is not None:
            config_dict["video"]["threads"] = cli_args["threads"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]
        if cli_args.get("worker_id") is not None:
            config_dict["worker"]["worker_id"] = cli_args["worker_id"]
            config_dict["worker"]["claim_strategy"] = "partitioned"

        return PipelineConfig.from_dict(config_dict)
