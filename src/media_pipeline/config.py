import os
import yaml
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "UPLOAD_TMP_DIR": "paths.temp_dir",
    "MEDIA_QUEUE_DIR": "paths.queue_dir",
    "UPLOAD_DIR": "paths.output_dir",
    "PUBLIC_URL_PREFIX": "paths.public_url_prefix",
    "FFMPEG_PATH": "tools.ffmpeg_path",
    "FFPROBE_PATH": "tools.ffprobe_path",
    "HEIF_CONVERT_PATH": "tools.heif_convert_path",
    "MAX_VIDEO_DURATION_SECONDS": "video.max_duration_s",
    "VIDEO_OUTPUT_MAX_HEIGHT": "video.max_height",
    "VIDEO_OUTPUT_FPS": "video.fps",
    "FFMPEG_THREADS": "video.threads",
    "VIDEO_PRESET": "video.preset",
    "VIDEO_CRF": "video.crf",
    "VIDEO_MAXRATE": "video.maxrate",
    "VIDEO_BUFSIZE": "video.bufsize",
    "JOB_TIMEOUT_MS": "worker.job_timeout_ms",
    "MAX_RETRIES": "worker.max_retries",
    "LOOP_INTERVAL_MS": "worker.poll_interval_ms",
    "STALE_PROCESSING_SECONDS": "worker.stale_processing_s",
    "MEDIA_CLAIM_STRATEGY": "worker.claim_strategy",
    "MEDIA_WORKER_ID": "worker.worker_id",
    "MAX_UPLOAD_BYTES": "upload.max_upload_bytes",
    "DATABASE_URL": "database.url",
    "LOG_LEVEL": "logging.level",
    "LOG_FORMAT": "logging.format",
}


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Build a nested override dict from environment variables.

    Empty values are ignored so that ``FFMPEG_THREADS=`` means "unset".
    Values stay strings; pydantic coerces them during validation.
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for key, dotted in ENV_OVERRIDES.items():
        value = environ.get(key)
        if value is None or value == "":
            continue
        section, field = dotted.split(".")
        overrides.setdefault(section, {})[field] = value
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PipelineConfig:
    """
    Resolve config: Defaults < default.yaml < local.yaml (or config_path) < env < CLI
    Returns validated Pydantic PipelineConfig model.

    Raises:
        pydantic.ValidationError: If any layer supplies an invalid value.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    override_path = Path(config_path) if config_path else LOCAL_CONFIG_PATH
    config_data = merge_dicts(config_data, load_yaml(override_path))

    config_data = merge_dicts(config_data, env_overrides(environ))

    config = PipelineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
