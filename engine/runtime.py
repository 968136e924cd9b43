import os
import platform
import sys
import time

from yt_dlp.version import __version__ as ytdlp_version

_STARTED_MONOTONIC = time.monotonic()


def uptime_seconds():
    return round(time.monotonic() - _STARTED_MONOTONIC, 3)


def get_runtime_info(env=None):
    info = {
        "app_version": os.environ.get("REELGRAB_VERSION", "0.1.0"),
        "python_version": sys.version.split()[0],
        "platform": platform.system().lower(),
        "yt_dlp_version": ytdlp_version,
        "uptime_seconds": uptime_seconds(),
    }
    if env:
        info["environment"] = env
    return info
