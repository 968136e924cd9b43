"""Normalize raw ``yt-dlp --dump-json`` payloads into metadata and renditions."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional

from config.settings import QUALITY_PRESETS

RENDITION_VIDEO = "video"
RENDITION_AUDIO = "audio"

_NO_CODEC = {None, "", "none"}


@dataclass(frozen=True)
class Rendition:
    format_id: str
    kind: str
    quality: str
    label: str
    ext: str
    filesize: int = 0
    filesize_formatted: str = ""
    codec: Optional[str] = None
    height: Optional[int] = None
    width: Optional[int] = None
    fps: Optional[float] = None
    bitrate: Optional[float] = None
    has_audio: bool = True
    preset: Optional[str] = None
    badge: Optional[str] = None

    @property
    def is_audio(self) -> bool:
        return self.kind == RENDITION_AUDIO

    def to_dict(self) -> dict:
        return {
            "formatId": self.format_id,
            "type": self.kind,
            "quality": self.quality,
            "label": self.label,
            "ext": self.ext,
            "filesize": self.filesize,
            "filesizeFormatted": self.filesize_formatted,
            "codec": self.codec,
            "height": self.height,
            "width": self.width,
            "fps": self.fps,
            "bitrate": self.bitrate,
            "preset": self.preset,
            "badge": self.badge,
        }


@dataclass(frozen=True)
class VideoMetadata:
    id: Optional[str]
    title: str
    description: str = ""
    thumbnail: Optional[str] = None
    duration: float = 0
    duration_formatted: str = "0:00"
    uploader: str = "Unknown"
    uploader_url: Optional[str] = None
    view_count: int = 0
    like_count: int = 0
    upload_date: Optional[str] = None
    platform: str = "unknown"
    original_url: Optional[str] = None
    renditions: tuple = ()
    file_specs: dict = field(default_factory=dict)

    @property
    def best_video(self) -> Optional[Rendition]:
        return next((r for r in self.renditions if r.kind == RENDITION_VIDEO), None)

    @property
    def best_audio(self) -> Optional[Rendition]:
        return next((r for r in self.renditions if r.kind == RENDITION_AUDIO), None)

    def to_dict(self) -> dict:
        best_video = self.best_video
        best_audio = self.best_audio
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "thumbnail": self.thumbnail,
            "duration": self.duration,
            "durationFormatted": self.duration_formatted,
            "uploader": self.uploader,
            "uploaderUrl": self.uploader_url,
            "viewCount": self.view_count,
            "likeCount": self.like_count,
            "uploadDate": self.upload_date,
            "platform": self.platform,
            "originalUrl": self.original_url,
            "formats": [r.to_dict() for r in self.renditions],
            "bestVideo": best_video.to_dict() if best_video else None,
            "bestAudio": best_audio.to_dict() if best_audio else None,
            "fileSpecs": dict(self.file_specs),
        }


def format_duration(seconds) -> str:
    if not seconds:
        return "0:00"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_size_estimate(size) -> str:
    if not size:
        return "~ MB"
    units = ("B", "KB", "MB", "GB")
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"~{value:.1f} {units[index]}"


def quality_label(height) -> str:
    height = height or 0
    if height >= 2160:
        return "4K Ultra"
    if height >= 1440:
        return "2K"
    if height >= 1080:
        return "Full HD"
    if height >= 720:
        return "HD"
    if height >= 480:
        return "SD"
    return "Low"


def _int_or_zero(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _format_size(raw: dict) -> int:
    return _int_or_zero(raw.get("filesize") or raw.get("filesize_approx"))


def _video_rendition(raw: dict) -> Rendition:
    height = _int_or_zero(raw.get("height"))
    size = _format_size(raw)
    return Rendition(
        format_id=str(raw.get("format_id")),
        kind=RENDITION_VIDEO,
        quality=f"{height}p",
        label=quality_label(height),
        ext=raw.get("ext") or "mp4",
        filesize=size,
        filesize_formatted=format_size_estimate(size),
        codec=raw.get("vcodec"),
        height=height,
        width=_int_or_zero(raw.get("width")),
        fps=raw.get("fps") or 30,
        has_audio=raw.get("acodec") != "none",
    )


def _audio_rendition(raw: dict) -> Rendition:
    size = _format_size(raw)
    return Rendition(
        format_id=str(raw.get("format_id")),
        kind=RENDITION_AUDIO,
        quality="audio",
        label="Audio Only",
        ext=raw.get("ext") or "mp3",
        filesize=size,
        filesize_formatted=format_size_estimate(size),
        codec=raw.get("acodec"),
        bitrate=raw.get("abr") or raw.get("tbr") or 128,
    )


def _audio_bitrate(raw: dict) -> float:
    try:
        return float(raw.get("abr") or raw.get("tbr") or 0)
    except (TypeError, ValueError):
        return 0.0


def split_formats(raw_formats) -> tuple[list[Rendition], Optional[Rendition]]:
    """Return video renditions (tallest first, one per height) and the best audio-only one."""
    usable = [
        f
        for f in raw_formats or []
        if isinstance(f, dict) and f.get("format_id") is not None
        and (f.get("height") or f.get("acodec") not in _NO_CODEC)
    ]
    usable.sort(key=lambda f: _int_or_zero(f.get("height")), reverse=True)

    videos: list[Rendition] = []
    seen_heights: set[int] = set()
    best_audio_raw = None
    for raw in usable:
        height = _int_or_zero(raw.get("height"))
        if height and raw.get("vcodec") != "none":
            if height in seen_heights:
                continue
            seen_heights.add(height)
            videos.append(_video_rendition(raw))
        elif not height and raw.get("acodec") not in _NO_CODEC and raw.get("vcodec") in _NO_CODEC:
            if best_audio_raw is None or _audio_bitrate(raw) > _audio_bitrate(best_audio_raw):
                best_audio_raw = raw
    audio = _audio_rendition(best_audio_raw) if best_audio_raw is not None else None
    return videos, audio


def build_presets(videos: list[Rendition], audio: Optional[Rendition]) -> list[Rendition]:
    """Map renditions onto the quality presets, falling back to the top three videos.

    Each video preset takes the smallest rendition at or above its height; a
    preset whose rendition was already taken by a higher preset is skipped.
    """
    presets: list[Rendition] = []
    taken: set[str] = set()
    for name, preset in QUALITY_PRESETS.items():
        height = preset["height"]
        if height is None:
            continue
        candidates = [v for v in videos if (v.height or 0) >= height]
        if not candidates:
            continue
        chosen = min(candidates, key=lambda v: v.height or 0)
        if chosen.format_id in taken:
            continue
        taken.add(chosen.format_id)
        presets.append(replace(chosen, preset=name, label=preset["label"], badge=preset["badge"]))

    if audio is not None:
        audio_preset = QUALITY_PRESETS["audio"]
        presets.append(
            replace(audio, preset="audio", label=audio_preset["label"], badge=audio_preset["badge"])
        )
    return presets if presets else videos[:3]


def extract_renditions(raw_formats) -> list[Rendition]:
    videos, audio = split_formats(raw_formats)
    return build_presets(videos, audio)


def _thumbnail(raw: dict) -> Optional[str]:
    if raw.get("thumbnail"):
        return raw["thumbnail"]
    for entry in raw.get("thumbnails") or []:
        if isinstance(entry, dict) and entry.get("url"):
            return entry["url"]
    return None


def normalize_metadata(raw: dict[str, Any]) -> VideoMetadata:
    renditions = tuple(extract_renditions(raw.get("formats") or []))
    duration = raw.get("duration") or 0
    return VideoMetadata(
        id=raw.get("id"),
        title=raw.get("title") or "Untitled",
        description=raw.get("description") or "",
        thumbnail=_thumbnail(raw),
        duration=duration,
        duration_formatted=format_duration(duration),
        uploader=raw.get("uploader") or raw.get("channel") or "Unknown",
        uploader_url=raw.get("uploader_url") or raw.get("channel_url"),
        view_count=_int_or_zero(raw.get("view_count")),
        like_count=_int_or_zero(raw.get("like_count")),
        upload_date=raw.get("upload_date"),
        platform=(raw.get("extractor_key") or "unknown").lower(),
        original_url=raw.get("webpage_url") or raw.get("original_url"),
        renditions=renditions,
        file_specs={
            "resolution": f"{_int_or_zero(raw.get('width'))} × {_int_or_zero(raw.get('height'))}",
            "frameRate": f"{raw.get('fps') or 30} FPS",
            "codec": f"{raw.get('vcodec') or 'unknown'} / {raw.get('acodec') or 'unknown'}",
            "originalSize": format_size_estimate(_format_size(raw)),
        },
    )
