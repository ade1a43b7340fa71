"""MOV/MP4 to web-friendly H.264/AAC MP4 conversion."""

import logging
import os
from typing import List, Optional, Tuple

from ..ffmpeg_runner import ConversionError, FfmpegRunner, ToolErrorType
from ..models import PipelineConfig, VideoConfig
from ..probe import VideoMetadata, probe_video
from ..queue.models import ConversionResult, MediaJob, MediaMeta

logger = logging.getLogger(__name__)

# Used when ffprobe reports no dimensions
DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080


def _dimensions(meta: VideoMetadata) -> Tuple[int, int]:
    return meta.width or DEFAULT_WIDTH, meta.height or DEFAULT_HEIGHT


def should_remux(meta: VideoMetadata, max_height: int) -> bool:
    """Determine if stream copy (-c copy) produces an acceptable output.

    Remux is safe when the source is already H.264, not taller than the
    output ceiling, and its audio is AAC or absent.
    """
    _, height = _dimensions(meta)
    if meta.codec_name != "h264":
        return False
    if height > max_height:
        return False
    return meta.audio_codec is None or meta.audio_codec == "aac"


def build_remux_args(input_path: str, output_path: str) -> List[str]:
    return [
        "-y",
        "-i", input_path,
        "-c", "copy",
        "-movflags", "+faststart",
        output_path,
    ]


def scale_filter(height: int, max_height: int) -> str:
    """Downscale-only, even-dimension-safe scale filter."""
    if height > max_height:
        return f"scale=-2:{max_height}"
    return "scale=trunc(iw/2)*2:trunc(ih/2)*2"


def build_transcode_args(
    input_path: str,
    output_path: str,
    height: int,
    video: VideoConfig,
) -> List[str]:
    """ffmpeg arguments for a full H.264/AAC transcode."""
    args = [
        "-y",
        "-i", input_path,
        "-vf", f"{scale_filter(height, video.max_height)},fps={video.fps}",
        "-c:v", "libx264",
        "-preset", video.preset,
        "-crf", str(video.crf),
        "-maxrate", video.maxrate,
        "-bufsize", video.bufsize,
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-b:a", video.audio_bitrate,
        "-ac", str(video.audio_channels),
        "-movflags", "+faststart",
    ]
    if video.threads is not None:
        args.extend(["-threads", str(video.threads)])
    args.append(output_path)
    return args


def scaled_dimensions(width: int, height: int, max_height: int) -> Tuple[int, int]:
    """Output size produced by ``scale_filter`` for a given source size."""
    if height > max_height:
        scaled_width = int(round(width * max_height / height / 2)) * 2
        return max(scaled_width, 2), max_height
    return width // 2 * 2, height // 2 * 2


def convert_video(job: MediaJob, config: PipelineConfig, runner: FfmpegRunner) -> ConversionResult:
    """Convert ``job.input_path`` to an MP4 at ``job.output_path``.

    Steps:
    1. Probe (hard failure if ffprobe errors or its output is unusable)
    2. Reject videos longer than ``video.max_duration_s``
    3. Remux when the source is already compatible, otherwise transcode
    4. Verify the output exists

    Raises:
        ConversionError: On any failure, with ``error_type`` set
    """
    video = config.video
    logger.info("Analyzing video %s", job.input_path, extra={"job_id": job.job_id})
    meta = probe_video(job.input_path, runner)

    if meta.duration > video.max_duration_s:
        raise ConversionError(
            f"Video too long: {meta.duration:g}s > {video.max_duration_s:g}s limit",
            ToolErrorType.REJECTED,
        )

    width, height = _dimensions(meta)
    fps: Optional[float]

    if should_remux(meta, video.max_height):
        logger.info("Fast remux (H.264+AAC, no re-encode)", extra={"job_id": job.job_id})
        args = build_remux_args(job.input_path, job.output_path)
        out_width, out_height = width, height
        fps = meta.fps or float(video.fps)
    else:
        logger.info(
            "Transcoding %s %dx%d to H.264/AAC",
            meta.codec_name,
            width,
            height,
            extra={"job_id": job.job_id},
        )
        args = build_transcode_args(job.input_path, job.output_path, height, video)
        out_width, out_height = scaled_dimensions(width, height, video.max_height)
        fps = float(video.fps)

    result = runner.ffmpeg(args, timeout_s=config.worker.job_timeout_s)

    try:
        size = os.stat(job.output_path).st_size
    except FileNotFoundError:
        logger.error(
            "Video file not found after conversion: %s", job.output_path, extra={"job_id": job.job_id}
        )
        raise ConversionError(
            f"Output file not found: {job.output_path}", ToolErrorType.OUTPUT_MISSING
        )

    logger.info(
        "Video file created (%d bytes in %.1fs)",
        size,
        result.duration_s,
        extra={"job_id": job.job_id},
    )
    return ConversionResult(
        success=True,
        size=size,
        mime="video/mp4",
        ext=".mp4",
        meta=MediaMeta(width=out_width, height=out_height, duration=meta.duration, fps=fps),
    )
