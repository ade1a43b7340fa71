"""HEIC/HEIF (and other still image) to JPEG conversion."""

import logging
import os
from pathlib import Path

from ..ffmpeg_runner import ConversionError, FfmpegRunner, ToolErrorType
from ..models import PipelineConfig
from ..queue.models import ConversionResult, MediaJob

logger = logging.getLogger(__name__)

HEIF_EXTENSIONS = {".heic", ".heif"}


def _stat_output(job: MediaJob) -> int:
    try:
        return os.stat(job.output_path).st_size
    except FileNotFoundError:
        logger.error(
            "Image file not found after conversion: %s", job.output_path, extra={"job_id": job.job_id}
        )
        raise ConversionError(
            f"Output file not found: {job.output_path}", ToolErrorType.OUTPUT_MISSING
        )


def _ffmpeg_single_frame(job: MediaJob, config: PipelineConfig, runner: FfmpegRunner) -> None:
    args = [
        "-y",
        "-i", job.input_path,
        "-frames:v", "1",
        "-q:v", str(config.image.jpeg_quality),
        job.output_path,
    ]
    runner.ffmpeg(args, timeout_s=config.worker.job_timeout_s)


def convert_image(job: MediaJob, config: PipelineConfig, runner: FfmpegRunner) -> ConversionResult:
    """Convert ``job.input_path`` to a JPEG at ``job.output_path``.

    HEIC/HEIF originals go through heif-convert first; any failure there
    (missing binary included) falls back to a single-frame ffmpeg extraction.

    Raises:
        ConversionError: If the fallback fails or no output was produced
    """
    ext = Path(job.original_name).suffix.lower()
    logger.info("Converting image %s to JPEG", job.original_name, extra={"job_id": job.job_id})

    size = None
    if ext in HEIF_EXTENSIONS:
        try:
            runner.heif_convert(job.input_path, job.output_path, timeout_s=config.image.heif_timeout_s)
            size = _stat_output(job)
        except ConversionError as e:
            logger.warning(
                "heif-convert failed, trying ffmpeg fallback: %s", e, extra={"job_id": job.job_id}
            )

    if size is None:
        _ffmpeg_single_frame(job, config, runner)
        size = _stat_output(job)

    logger.info("Image file created (%d bytes)", size, extra={"job_id": job.job_id})
    return ConversionResult(success=True, size=size, mime="image/jpeg", ext=".jpg")
