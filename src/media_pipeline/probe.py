import json
from dataclasses import dataclass
from typing import Optional

from .ffmpeg_runner import FfmpegRunner, ProbeError

PROBE_TIMEOUT_S = 30  # ffprobe should be fast

PROBE_ARGS = [
    "-v", "error",
    "-show_entries", "format=duration",
    "-show_entries", "stream=codec_type,codec_name,width,height,r_frame_rate,avg_frame_rate",
    "-of", "json",
]


@dataclass
class VideoMetadata:
    """Video metadata from ffprobe.

    Used for the remux-vs-transcode decision and the duration guard.
    """

    codec_name: str
    width: Optional[int]
    height: Optional[int]
    fps: Optional[float]  # None when the stream reports no usable rate
    duration: float
    audio_codec: Optional[str]  # None when there is no audio stream


def fraction_to_float(rate_str: Optional[str]) -> float:
    """Convert '30/1' or '30000/1001' to float (0.0 when unusable)."""
    if not rate_str:
        return 0.0
    try:
        num, denom = rate_str.split("/")
        return float(num) / float(denom) if float(denom) != 0 else 0.0
    except ValueError:
        return 0.0


def parse_probe_output(stdout: str, video_path: str = "") -> VideoMetadata:
    """Build VideoMetadata from ffprobe JSON output.

    Raises:
        ProbeError: If the output is not JSON or has no video stream.
    """
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise ProbeError(f"ffprobe parse error: {e}")
    if not isinstance(data, dict):
        raise ProbeError("ffprobe parse error: expected a JSON object")

    video_stream = None
    audio_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video" and video_stream is None:
            video_stream = stream
        elif stream.get("codec_type") == "audio" and audio_stream is None:
            audio_stream = stream

    if not video_stream:
        raise ProbeError(f"No video stream found in {video_path}".rstrip())

    try:
        duration = float(data.get("format", {}).get("duration") or 0)
    except (TypeError, ValueError):
        raise ProbeError(f"ffprobe reported an invalid duration in {video_path}".rstrip())

    avg_fps = fraction_to_float(video_stream.get("avg_frame_rate"))
    r_fps = fraction_to_float(video_stream.get("r_frame_rate"))
    fps = avg_fps if avg_fps > 0 else r_fps

    return VideoMetadata(
        codec_name=video_stream.get("codec_name", "unknown"),
        width=video_stream.get("width"),
        height=video_stream.get("height"),
        fps=fps or None,
        duration=duration,
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
    )


def probe_video(video_path: str, runner: FfmpegRunner) -> VideoMetadata:
    """Probe a video file with ffprobe.

    Raises:
        ToolNotFoundError, ToolExitError, ToolTimeoutError: If ffprobe fails
        ProbeError: If the output is unusable
    """
    result = runner.ffprobe([*PROBE_ARGS, str(video_path)], timeout_s=PROBE_TIMEOUT_S)
    return parse_probe_output(result.stdout, str(video_path))
