"""Line adapters that turn tool output into progress events.

Each parser takes one line of output and returns an event or ``None``; a line
that does not match is never an error. The tools' output formats change
between releases, so keeping the patterns here keeps them out of the engine.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

_DESTINATION_RE = re.compile(r"\[download\] Destination: (.+)$")
_MERGER_RE = re.compile(r'\[Merger\] Merging formats into "(.+)"')
_ALREADY_DOWNLOADED_RE = re.compile(r"\[download\] (.+) has already been downloaded")
_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)%")

_FFMPEG_DURATION_RE = re.compile(r"Duration: (\d{2}):(\d{2}):(\d{2}(?:\.\d+)?)")
_FFMPEG_TIME_RE = re.compile(r"time=(\d{2}):(\d{2}):(\d{2}(?:\.\d+)?)")


@dataclass(frozen=True)
class DownloadEvent:
    kind: str  # "progress", "destination" or "merge"
    percent: Optional[float] = None
    path: Optional[str] = None


@dataclass(frozen=True)
class TranscodeEvent:
    kind: str  # "duration" or "time"
    seconds: float


@dataclass(frozen=True)
class TranscodeProgress:
    elapsed_seconds: float
    percent: Optional[float]
    message: str


def parse_download_line(line: str) -> Optional[DownloadEvent]:
    if not line:
        return None
    match = _MERGER_RE.search(line)
    if match:
        return DownloadEvent(kind="merge", path=match.group(1).strip())
    match = _DESTINATION_RE.search(line)
    if match:
        return DownloadEvent(kind="destination", path=match.group(1).strip())
    match = _ALREADY_DOWNLOADED_RE.search(line)
    if match:
        return DownloadEvent(kind="destination", path=match.group(1).strip())
    match = _PERCENT_RE.search(line)
    if match:
        percent = max(0.0, min(100.0, float(match.group(1))))
        return DownloadEvent(kind="progress", percent=percent)
    return None


def _clock_seconds(match) -> float:
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_transcode_line(line: str) -> Optional[TranscodeEvent]:
    if not line:
        return None
    match = _FFMPEG_TIME_RE.search(line)
    if match:
        return TranscodeEvent(kind="time", seconds=_clock_seconds(match))
    match = _FFMPEG_DURATION_RE.search(line)
    if match:
        return TranscodeEvent(kind="duration", seconds=_clock_seconds(match))
    return None


def format_clock(seconds: float) -> str:
    total = int(seconds)
    return f"{total // 3600:02d}:{(total % 3600) // 60:02d}:{total % 60:02d}"
