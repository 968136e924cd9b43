"""yt-dlp and ffmpeg orchestration for metadata, downloads and transcodes."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from config.settings import AUDIO_BITRATE, MEDIA_EXTENSIONS, Settings
from engine.errors import (
    DownloadError,
    JobCancelledError,
    MetadataError,
    ToolUnavailableError,
    TranscodeError,
)
from engine.formats import VideoMetadata, normalize_metadata
from engine.log_events import log_event
from engine.paths import ensure_dir, job_dir
from engine.process import ProcessResult, ProcessRunner, RunningProcess
from engine.progress import (
    TranscodeProgress,
    format_clock,
    parse_download_line,
    parse_transcode_line,
)

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 20
_PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp")


@dataclass(frozen=True)
class ToolStatus:
    available: bool
    version: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"available": self.available, "version": self.version, "error": self.error}


def _tail(lines) -> str:
    return "\n".join(line for line in lines if line).strip()


def _format_selector(rendition) -> str:
    if rendition is None or not rendition.format_id:
        return "best"
    if rendition.is_audio or rendition.has_audio:
        return rendition.format_id
    # Video-only streams need an audio track merged in.
    return f"{rendition.format_id}+bestaudio/{rendition.format_id}"


def select_download_output(workdir: Path, captured: Optional[str]) -> Optional[Path]:
    """Return the downloaded file, preferring the path yt-dlp reported."""
    if captured:
        path = Path(captured)
        if not path.is_absolute():
            path = workdir / path
        if path.is_file() and path.stat().st_size > 0:
            return path

    candidates = []
    for entry in os.listdir(workdir):
        lower_entry = entry.lower()
        if lower_entry.endswith(_PARTIAL_SUFFIXES):
            continue
        if not lower_entry.endswith(MEDIA_EXTENSIONS):
            continue
        candidate = workdir / entry
        if not candidate.is_file():
            continue
        try:
            size = candidate.stat().st_size
        except OSError:
            size = 0
        if size <= 0:
            continue
        candidates.append((size, candidate))
    if not candidates:
        return None
    candidates.sort(key=lambda item: item[0], reverse=True)
    return candidates[0][1]


class MediaEngine:
    """Drive the external extraction and transcoding tools for jobs.

    At most one process runs per job id at a time. :meth:`cancel` consults
    the registry of running processes and records the job as cancelled, which
    also stops any process the job starts later.
    """

    def __init__(self, settings: Settings, runner: Optional[ProcessRunner] = None):
        self.settings = settings
        self.runner = runner or ProcessRunner()
        self._active: dict[str, RunningProcess] = {}
        self._cancelled: set[str] = set()
        self._lock = threading.Lock()

    # --- tool health

    def probe_tools(self) -> dict[str, ToolStatus]:
        return {
            "ytdlp": self._probe(self.settings.ytdlp_path, ["--version"]),
            "ffmpeg": self._probe(self.settings.ffmpeg_path, ["-version"]),
        }

    def _probe(self, command: str, args: list[str]) -> ToolStatus:
        lines: list[str] = []
        try:
            result = self.runner.run(command, args, on_stdout=lines.append)
        except ToolUnavailableError as exc:
            return ToolStatus(available=False, error=exc.message)
        if not result.ok:
            return ToolStatus(available=False, error=f"{command} exited with code {result.exit_code}")
        first = next((line.strip() for line in lines if line.strip()), "")
        if first.startswith("ffmpeg version "):
            first = first.split()[2]
        return ToolStatus(available=True, version=first or None)

    # --- metadata

    def fetch_metadata(self, url: str) -> VideoMetadata:
        stdout: list[str] = []
        stderr: deque = deque(maxlen=_STDERR_TAIL_LINES)
        result = self.runner.run(
            self.settings.ytdlp_path,
            ["--dump-json", "--no-download", "--no-warnings", url],
            on_stdout=stdout.append,
            on_stderr=stderr.append,
        )
        if not result.ok:
            raise MetadataError("Failed to fetch video metadata", detail=_tail(stderr))

        payload = next((line for line in stdout if line.lstrip().startswith("{")), "")
        try:
            raw = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise MetadataError("Failed to parse video metadata", detail=payload[:500]) from exc
        if not isinstance(raw, dict):
            raise MetadataError("Failed to parse video metadata", detail=payload[:500])

        metadata = normalize_metadata(raw)
        if not metadata.renditions:
            raise MetadataError("No downloadable formats found", detail=f"url={url}")
        log_event(
            logging.INFO,
            "media_metadata_fetched",
            url=url,
            video_id=metadata.id,
            renditions=len(metadata.renditions),
        )
        return metadata

    # --- download

    def build_download_args(self, job, workdir: Path) -> list[str]:
        args = [
            "-f",
            _format_selector(job.selected_rendition),
            "--merge-output-format",
            "mp4",
            "-o",
            str(workdir / "%(title)s.%(ext)s"),
            "--no-playlist",
            "--progress",
            "--newline",
        ]
        if self.settings.max_file_size_mb:
            args.extend(["--max-filesize", f"{self.settings.max_file_size_mb}M"])
        if self.settings.uses_custom_ffmpeg:
            args = ["--ffmpeg-location", self.settings.ffmpeg_path, *args]
        args.append(job.source_url)
        return args

    def download(self, job, on_progress: Optional[Callable[[float], None]] = None) -> Path:
        """Download ``job.selected_rendition`` into the job's working directory."""
        workdir = job_dir(self.settings.temp_dir, job.id)
        ensure_dir(workdir)
        captured: dict[str, Optional[str]] = {"path": None}
        stderr: deque = deque(maxlen=_STDERR_TAIL_LINES)

        def _on_stdout(line: str) -> None:
            event = parse_download_line(line)
            if event is None:
                return
            if event.kind == "progress":
                if on_progress is not None:
                    on_progress(event.percent)
                return
            captured["path"] = event.path

        log_event(logging.INFO, "media_download_started", job_id=job.id, url=job.source_url)
        result = self._run_tracked(
            job.id,
            self.settings.ytdlp_path,
            self.build_download_args(job, workdir),
            on_stdout=_on_stdout,
            on_stderr=stderr.append,
        )
        if not result.ok:
            raise DownloadError("Download failed", detail=_tail(stderr))

        output = select_download_output(workdir, captured["path"])
        if output is None:
            raise DownloadError(
                "Download finished but no output file was found",
                detail=f"workdir={workdir} captured={captured['path']}",
            )
        log_event(logging.INFO, "media_download_finished", job_id=job.id, path=str(output))
        return output

    # --- transcode

    def extract_audio(
        self,
        input_path,
        output_path,
        *,
        on_progress: Optional[Callable[[TranscodeProgress], None]] = None,
        job_id: Optional[str] = None,
    ) -> Path:
        args = ["-i", str(input_path), "-vn", "-acodec", "libmp3lame", "-ab", AUDIO_BITRATE, "-y", str(output_path)]
        return self._transcode(args, output_path, on_progress, job_id, "Audio extraction failed")

    def convert_video(
        self,
        input_path,
        output_path,
        *,
        height: Optional[int] = None,
        on_progress: Optional[Callable[[TranscodeProgress], None]] = None,
        job_id: Optional[str] = None,
    ) -> Path:
        args = ["-i", str(input_path)]
        if height:
            args.extend(["-vf", f"scale=-2:{height}"])
        args.extend(
            [
                "-c:v", "libx264",
                "-preset", "fast",
                "-crf", "23",
                "-c:a", "aac",
                "-b:a", "192k",
                "-y", str(output_path),
            ]
        )
        return self._transcode(args, output_path, on_progress, job_id, "Video conversion failed")

    def _transcode(self, args, output_path, on_progress, job_id, failure_message) -> Path:
        state: dict[str, Optional[float]] = {"duration": None}
        stderr: deque = deque(maxlen=_STDERR_TAIL_LINES)

        def _on_stderr(line: str) -> None:
            stderr.append(line)
            event = parse_transcode_line(line)
            if event is None:
                return
            if event.kind == "duration":
                if state["duration"] is None:
                    state["duration"] = event.seconds
                return
            if on_progress is None:
                return
            duration = state["duration"]
            percent = min(100.0, event.seconds / duration * 100.0) if duration else None
            on_progress(
                TranscodeProgress(
                    elapsed_seconds=event.seconds,
                    percent=percent,
                    message=f"Processing: {format_clock(event.seconds)}",
                )
            )

        result = self._run_tracked(job_id, self.settings.ffmpeg_path, args, on_stderr=_on_stderr)
        if not result.ok:
            raise TranscodeError(failure_message, detail=_tail(stderr))
        return Path(output_path)

    # --- process registry

    def _run_tracked(self, job_id, command, args, *, on_stdout=None, on_stderr=None) -> ProcessResult:
        if job_id is None:
            return self.runner.run(command, args, on_stdout=on_stdout, on_stderr=on_stderr)
        if self.is_cancelled(job_id):
            raise JobCancelledError()
        handle = self.runner.start(command, args, on_stdout=on_stdout, on_stderr=on_stderr)
        with self._lock:
            self._active[job_id] = handle
            pending = job_id in self._cancelled
        if pending:
            # Cancelled while the process was being spawned.
            handle.terminate()
            log_event(logging.INFO, "media_process_cancelled", job_id=job_id, pending=True)
        try:
            result = handle.wait()
        finally:
            with self._lock:
                if self._active.get(job_id) is handle:
                    del self._active[job_id]
                cancelled = job_id in self._cancelled
        if cancelled:
            raise JobCancelledError()
        return result

    def cancel(self, job_id: str) -> bool:
        """Cancel every process run for ``job_id``.

        The request stays pending until :meth:`clear_cancellation`, so a
        process started afterwards for the same job is terminated at once.
        Returns whether a running process was terminated now.
        """
        with self._lock:
            self._cancelled.add(job_id)
            handle = self._active.get(job_id)
        if handle is None:
            return False
        handle.terminate()
        log_event(logging.INFO, "media_process_cancelled", job_id=job_id)
        return True

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._cancelled

    def clear_cancellation(self, job_id: str) -> None:
        with self._lock:
            self._cancelled.discard(job_id)

    def active_job_ids(self) -> list[str]:
        with self._lock:
            return list(self._active)
