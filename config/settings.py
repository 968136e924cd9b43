"""Application settings constants and environment-driven runtime settings."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent

ENV_PREFIX = "REELGRAB_"

# Quality presets offered to callers, in display order.
QUALITY_PRESETS = {
    "4k": {"height": 2160, "label": "4K Ultra", "badge": "BEST QUALITY"},
    "1080p": {"height": 1080, "label": "Full HD", "badge": "MOST POPULAR"},
    "720p": {"height": 720, "label": "Standard", "badge": "SMALLEST SIZE"},
    "audio": {"height": None, "label": "Extract Audio Only", "badge": None},
}

AUDIO_OUTPUT_FORMAT = "mp3"
AUDIO_BITRATE = "320k"
VIDEO_OUTPUT_FORMAT = "mp4"

# Extensions accepted when scanning a job directory for the downloaded file.
MEDIA_EXTENSIONS = (".mp4", ".webm", ".mkv", ".mp3", ".m4a")

SUPPORTED_PLATFORMS = ("youtube", "tiktok", "instagram")

_DEFAULTS = {
    "APP_NAME": "reelgrab",
    "ENV": "development",
    "YTDLP_PATH": "yt-dlp",
    "FFMPEG_PATH": "ffmpeg",
    "TEMP_DIR": str(PROJECT_ROOT / "temp"),
    "LOG_DIR": str(PROJECT_ROOT / "logs"),
    "LOG_LEVEL": "INFO",
    "FRONTEND_URL": "http://localhost:3000",
    "HOST": "0.0.0.0",
}

_INT_DEFAULTS = {
    "MAX_FILE_SIZE_MB": 1024,
    "JOB_EXPIRY_MINUTES": 15,
    "CLEANUP_INTERVAL_MINUTES": 5,
    "MAX_JOBS_PER_REQUESTER": 10,
    "PORT": 8000,
}


@dataclass(frozen=True)
class Settings:
    app_name: str = _DEFAULTS["APP_NAME"]
    env: str = _DEFAULTS["ENV"]
    ytdlp_path: str = _DEFAULTS["YTDLP_PATH"]
    ffmpeg_path: str = _DEFAULTS["FFMPEG_PATH"]
    temp_dir: str = _DEFAULTS["TEMP_DIR"]
    log_dir: str = _DEFAULTS["LOG_DIR"]
    log_level: str = _DEFAULTS["LOG_LEVEL"]
    frontend_url: str = _DEFAULTS["FRONTEND_URL"]
    host: str = _DEFAULTS["HOST"]
    port: int = _INT_DEFAULTS["PORT"]
    max_file_size_mb: int = _INT_DEFAULTS["MAX_FILE_SIZE_MB"]
    job_expiry_minutes: int = _INT_DEFAULTS["JOB_EXPIRY_MINUTES"]
    cleanup_interval_minutes: int = _INT_DEFAULTS["CLEANUP_INTERVAL_MINUTES"]
    max_jobs_per_requester: int = _INT_DEFAULTS["MAX_JOBS_PER_REQUESTER"]
    trust_proxy: bool = False

    @property
    def is_production(self) -> bool:
        return self.env.strip().lower() == "production"

    @property
    def uses_custom_ffmpeg(self) -> bool:
        return self.ffmpeg_path != _DEFAULTS["FFMPEG_PATH"]


def _env(environ: Mapping[str, str], key: str) -> str | None:
    value = environ.get(f"{ENV_PREFIX}{key}")
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_int(environ: Mapping[str, str], key: str) -> int:
    default = _INT_DEFAULTS[key]
    raw = _env(environ, key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s%s=%r; using %s", ENV_PREFIX, key, raw, default)
        return default
    if value <= 0:
        logger.warning("Non-positive value for %s%s=%r; using %s", ENV_PREFIX, key, raw, default)
        return default
    return value


def _env_bool(environ: Mapping[str, str], key: str) -> bool:
    raw = _env(environ, key)
    return bool(raw) and raw.lower() in {"1", "true", "yes", "on"}


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from ``REELGRAB_*`` environment variables.

    Unset or blank variables fall back to the defaults; malformed integers are
    logged and replaced by their default rather than aborting startup.
    """
    environ = os.environ if environ is None else environ
    strings = {key: _env(environ, key) or default for key, default in _DEFAULTS.items()}
    return Settings(
        app_name=strings["APP_NAME"],
        env=strings["ENV"],
        ytdlp_path=strings["YTDLP_PATH"],
        ffmpeg_path=strings["FFMPEG_PATH"],
        temp_dir=str(Path(strings["TEMP_DIR"]).resolve()),
        log_dir=str(Path(strings["LOG_DIR"]).resolve()),
        log_level=strings["LOG_LEVEL"].upper(),
        frontend_url=strings["FRONTEND_URL"],
        host=strings["HOST"],
        port=_env_int(environ, "PORT"),
        max_file_size_mb=_env_int(environ, "MAX_FILE_SIZE_MB"),
        job_expiry_minutes=_env_int(environ, "JOB_EXPIRY_MINUTES"),
        cleanup_interval_minutes=_env_int(environ, "CLEANUP_INTERVAL_MINUTES"),
        max_jobs_per_requester=_env_int(environ, "MAX_JOBS_PER_REQUESTER"),
        trust_proxy=_env_bool(environ, "TRUST_PROXY"),
    )
