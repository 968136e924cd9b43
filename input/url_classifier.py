"""Platform detection for submitted video URLs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Platform(Enum):
    YOUTUBE = "youtube"
    TIKTOK = "tiktok"
    INSTAGRAM = "instagram"


INVALID_URL_ERROR = "Invalid URL"
UNSUPPORTED_PLATFORM_ERROR = "Unsupported platform. We support YouTube, TikTok, and Instagram."

_PREFIX = r"^(?:https?://)?"

_PATTERNS = {
    Platform.YOUTUBE: (
        re.compile(_PREFIX + r"(?:www\.|m\.)?youtube\.com/watch\?(?:.*&)?v=([A-Za-z0-9_-]{11})"),
        re.compile(_PREFIX + r"(?:www\.|m\.)?youtube\.com/shorts/([A-Za-z0-9_-]{11})"),
        re.compile(_PREFIX + r"youtu\.be/([A-Za-z0-9_-]{11})"),
        re.compile(_PREFIX + r"(?:www\.)?youtube\.com/embed/([A-Za-z0-9_-]{11})"),
        re.compile(_PREFIX + r"(?:www\.)?youtube\.com/v/([A-Za-z0-9_-]{11})"),
    ),
    Platform.TIKTOK: (
        re.compile(_PREFIX + r"(?:www\.|m\.)?tiktok\.com/@[\w.-]+/video/(\d+)"),
        re.compile(_PREFIX + r"vm\.tiktok\.com/(\w+)"),
        re.compile(_PREFIX + r"(?:www\.)?tiktok\.com/t/(\w+)"),
    ),
    Platform.INSTAGRAM: (
        re.compile(_PREFIX + r"(?:www\.)?instagram\.com/p/([A-Za-z0-9_-]+)"),
        re.compile(_PREFIX + r"(?:www\.)?instagram\.com/reels?/([A-Za-z0-9_-]+)"),
        re.compile(_PREFIX + r"(?:www\.)?instagram\.com/tv/([A-Za-z0-9_-]+)"),
    ),
}

_PLATFORM_INFO = {
    Platform.YOUTUBE: {"name": "YouTube", "color": "#FF0000", "maxQuality": "4K"},
    Platform.TIKTOK: {"name": "TikTok", "color": "#000000", "maxQuality": "1080p"},
    Platform.INSTAGRAM: {"name": "Instagram", "color": "#E4405F", "maxQuality": "1080p"},
}


@dataclass(frozen=True)
class Classification:
    platform: Optional[Platform]
    is_valid: bool
    video_id: Optional[str] = None
    error: Optional[str] = None


def classify(url) -> Classification:
    """Classify ``url`` by platform without any network access.

    Anything that is not a non-empty string is ``Invalid URL``; a string that
    matches none of the known share-link shapes is an unsupported platform.
    """
    if not isinstance(url, str) or not url.strip():
        return Classification(platform=None, is_valid=False, error=INVALID_URL_ERROR)

    candidate = url.strip()
    for platform, patterns in _PATTERNS.items():
        for pattern in patterns:
            match = pattern.search(candidate)
            if match:
                return Classification(platform=platform, is_valid=True, video_id=match.group(1))

    return Classification(platform=None, is_valid=False, error=UNSUPPORTED_PLATFORM_ERROR)


def platform_info(platform: Optional[Platform]) -> dict:
    info = _PLATFORM_INFO.get(platform)
    if info is None:
        return {"name": "Unknown", "color": "#666666", "maxQuality": None}
    return dict(info)
