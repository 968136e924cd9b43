import os
import re
from pathlib import Path


_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w\s.-]", re.ASCII)


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def job_dir(root, job_id):
    """Return the working directory owned by ``job_id`` under ``root``."""
    if not job_id or os.sep in job_id or job_id in {".", ".."}:
        raise ValueError(f"Invalid job id for working directory: {job_id!r}")
    path = Path(root) / job_id
    if not _is_within_base(path, root):
        raise ValueError(f"Job directory escapes temp root: {path}")
    return path


def sanitize_download_filename(name):
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", os.path.basename(name or "")).strip()
    return cleaned or "download"


def format_bytes(size):
    if not size:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB", "TB")
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.2f} {units[index]}"
