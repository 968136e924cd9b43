from __future__ import annotations

import json
import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest

from conftest import FakeRunner, FakeScript, output_dir_from_args
from engine.errors import DownloadError, JobCancelledError, MetadataError, ToolUnavailableError, TranscodeError
from engine.formats import Rendition
from engine.job_store import JobStore
from engine.media_engine import MediaEngine

_RAW_METADATA = {
    "id": "dQw4w9WgXcQ",
    "title": "Sample Clip",
    "duration": 212,
    "uploader": "Uploader",
    "extractor_key": "Youtube",
    "webpage_url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
    "formats": [
        {"format_id": "22", "height": 720, "vcodec": "avc1", "acodec": "mp4a", "ext": "mp4"},
        {"format_id": "140", "vcodec": "none", "acodec": "mp4a", "abr": 129, "ext": "m4a"},
    ],
}


def _job(store: JobStore, rendition: Rendition | None = None):
    job = store.create("https://youtu.be/dQw4w9WgXcQ", "127.0.0.1")
    return replace(job, selected_rendition=rendition)


def test_fetch_metadata_parses_dump_json(settings) -> None:
    runner = FakeRunner(lambda command, args: FakeScript(stdout=[json.dumps(_RAW_METADATA)]))
    metadata = MediaEngine(settings, runner=runner).fetch_metadata("https://youtu.be/dQw4w9WgXcQ")

    assert runner.calls == [
        ["yt-dlp", "--dump-json", "--no-download", "--no-warnings", "https://youtu.be/dQw4w9WgXcQ"]
    ]
    assert metadata.title == "Sample Clip"
    assert [r.preset for r in metadata.renditions] == ["720p", "audio"]


def test_fetch_metadata_failure_keeps_stderr_as_detail(settings) -> None:
    runner = FakeRunner(
        lambda command, args: FakeScript(stderr=["ERROR: [youtube] Private video"], exit_code=1)
    )
    with pytest.raises(MetadataError) as excinfo:
        MediaEngine(settings, runner=runner).fetch_metadata("https://youtu.be/dQw4w9WgXcQ")
    assert excinfo.value.message == "Failed to fetch video metadata"
    assert "Private video" in excinfo.value.detail


def test_fetch_metadata_rejects_unparsable_output(settings) -> None:
    runner = FakeRunner(lambda command, args: FakeScript(stdout=["{not json"]))
    with pytest.raises(MetadataError):
        MediaEngine(settings, runner=runner).fetch_metadata("https://youtu.be/dQw4w9WgXcQ")


def test_fetch_metadata_spawn_failure_is_distinct(settings) -> None:
    runner = FakeRunner(lambda command, args: FakeScript(spawn_error=True))
    with pytest.raises(ToolUnavailableError):
        MediaEngine(settings, runner=runner).fetch_metadata("https://youtu.be/dQw4w9WgXcQ")


def test_download_reports_progress_and_uses_merge_target(settings) -> None:
    def _responder(command, args):
        workdir = output_dir_from_args(args)
        merged = workdir / "Sample Clip.mp4"
        return FakeScript(
            stdout=[
                f"[download] Destination: {workdir / 'Sample Clip.f22.mp4'}",
                "[download]  10.0% of 1.00MiB",
                "[download]  55.5% of 1.00MiB",
                "[download] 100% of 1.00MiB",
                f'[Merger] Merging formats into "{merged}"',
            ],
            creates={merged: b"video-bytes"},
        )

    runner = FakeRunner(_responder)
    engine = MediaEngine(settings, runner=runner)
    job = _job(JobStore(), Rendition(format_id="22", kind="video", quality="720p", label="HD", ext="mp4"))
    progress = []

    output = engine.download(job, on_progress=progress.append)

    assert progress == [10.0, 55.5, 100.0]
    assert output == Path(settings.temp_dir) / job.id / "Sample Clip.mp4"
    args = runner.calls[0]
    assert args[args.index("-f") + 1] == "22"
    assert "--no-playlist" in args and "--newline" in args
    assert args[-1] == job.source_url
    assert "--ffmpeg-location" not in args


def test_download_falls_back_to_directory_scan(settings) -> None:
    def _responder(command, args):
        workdir = output_dir_from_args(args)
        return FakeScript(
            stdout=["[download] 100% of 1.00MiB"],
            creates={workdir / "clip.webm": b"12345", workdir / "clip.webm.part": b"1234567890"},
        )

    engine = MediaEngine(settings, runner=FakeRunner(_responder))
    output = engine.download(_job(JobStore()))
    assert output.name == "clip.webm"


def test_download_selector_merges_audio_for_video_only_streams(settings) -> None:
    rendition = Rendition(format_id="137", kind="video", quality="1080p", label="Full HD", ext="mp4", has_audio=False)
    engine = MediaEngine(replace(settings, ffmpeg_path="/opt/ffmpeg/bin/ffmpeg"), runner=FakeRunner(lambda c, a: FakeScript()))
    args = engine.build_download_args(_job(JobStore(), rendition), Path(settings.temp_dir) / "x")

    assert args[:2] == ["--ffmpeg-location", "/opt/ffmpeg/bin/ffmpeg"]
    assert args[args.index("-f") + 1] == "137+bestaudio/137"


def test_download_failure_and_missing_output(settings) -> None:
    failing = MediaEngine(settings, runner=FakeRunner(lambda c, a: FakeScript(stderr=["HTTP Error 403"], exit_code=1)))
    with pytest.raises(DownloadError) as excinfo:
        failing.download(_job(JobStore()))
    assert "403" in excinfo.value.detail

    empty = MediaEngine(settings, runner=FakeRunner(lambda c, a: FakeScript()))
    with pytest.raises(DownloadError):
        empty.download(_job(JobStore()))


def test_cancel_terminates_the_registered_process(settings) -> None:
    runner = FakeRunner(lambda command, args: FakeScript(block=True))
    engine = MediaEngine(settings, runner=runner)
    job = _job(JobStore())
    errors = []

    def _download():
        try:
            engine.download(job)
        except JobCancelledError as exc:
            errors.append(exc)

    worker = threading.Thread(target=_download)
    worker.start()
    assert runner.started.wait(timeout=5)
    for _ in range(100):
        if engine.active_job_ids():
            break
        time.sleep(0.01)

    assert engine.cancel(job.id) is True
    worker.join(timeout=5)

    assert len(errors) == 1
    assert runner.processes[0].terminated
    assert engine.active_job_ids() == []
    assert engine.cancel(job.id) is False


def test_transcode_reports_progress_and_failure(settings, tmp_path: Path) -> None:
    stderr = [
        "  Duration: 00:00:10.00, start: 0.000000, bitrate: 128 kb/s",
        "size=  64kB time=00:00:05.00 bitrate=128.0kbits/s",
    ]
    runner = FakeRunner(lambda command, args: FakeScript(stderr=stderr))
    engine = MediaEngine(settings, runner=runner)
    updates = []

    output = engine.extract_audio(tmp_path / "in.m4a", tmp_path / "out.mp3", on_progress=updates.append)

    assert output == tmp_path / "out.mp3"
    assert runner.calls[0][:2] == ["ffmpeg", "-i"]
    assert "libmp3lame" in runner.calls[0] and "320k" in runner.calls[0]
    assert updates[0].percent == 50.0
    assert updates[0].message == "Processing: 00:00:05"

    broken = MediaEngine(settings, runner=FakeRunner(lambda c, a: FakeScript(stderr=["Invalid data"], exit_code=1)))
    with pytest.raises(TranscodeError):
        broken.convert_video(tmp_path / "in.webm", tmp_path / "out.mp4", height=720)


def test_convert_video_scales_to_height(settings, tmp_path: Path) -> None:
    runner = FakeRunner(lambda command, args: FakeScript())
    MediaEngine(settings, runner=runner).convert_video(tmp_path / "in.webm", tmp_path / "out.mp4", height=720)
    args = runner.calls[0]
    assert args[args.index("-vf") + 1] == "scale=-2:720"
    assert args[-2:] == ["-y", str(tmp_path / "out.mp4")]


def test_probe_tools_reports_versions_and_missing_tools(settings) -> None:
    def _responder(command, args):
        if command == "yt-dlp":
            return FakeScript(stdout=["2024.08.06"])
        return FakeScript(spawn_error=True)

    status = MediaEngine(settings, runner=FakeRunner(_responder)).probe_tools()
    assert status["ytdlp"].available and status["ytdlp"].version == "2024.08.06"
    assert not status["ffmpeg"].available
    assert "not installed" in status["ffmpeg"].error


def test_cancel_before_spawn_stops_later_processes_for_the_job(settings, tmp_path: Path) -> None:
    runner = FakeRunner(lambda command, args: FakeScript(block=True))
    engine = MediaEngine(settings, runner=runner)

    assert engine.cancel("job-1") is False
    assert engine.is_cancelled("job-1")

    with pytest.raises(JobCancelledError):
        engine.convert_video(tmp_path / "in.webm", tmp_path / "out.mp4", job_id="job-1")
    assert runner.calls == []

    engine.clear_cancellation("job-1")
    runner.responder = lambda command, args: FakeScript()
    assert engine.convert_video(tmp_path / "in.webm", tmp_path / "out.mp4", job_id="job-1") == tmp_path / "out.mp4"
    assert engine.active_job_ids() == []
