from __future__ import annotations

from engine.progress import format_clock, parse_download_line, parse_transcode_line


def test_percentage_lines_become_progress_events_in_order() -> None:
    lines = [
        "[download]  10.0% of 12.34MiB at 1.00MiB/s ETA 00:10",
        "[download]  55.5% of 12.34MiB at 1.00MiB/s ETA 00:05",
        "[download] 100% of 12.34MiB in 00:12",
    ]
    percents = [parse_download_line(line).percent for line in lines]
    assert percents == [10.0, 55.5, 100.0]


def test_destination_and_merge_lines_capture_paths() -> None:
    destination = parse_download_line("[download] Destination: /tmp/job/Clip 100% real.f137.mp4")
    assert destination.kind == "destination"
    assert destination.path == "/tmp/job/Clip 100% real.f137.mp4"

    merge = parse_download_line('[Merger] Merging formats into "/tmp/job/Clip.mp4"')
    assert merge.kind == "merge"
    assert merge.path == "/tmp/job/Clip.mp4"

    already = parse_download_line("[download] /tmp/job/Clip.mp4 has already been downloaded")
    assert already.kind == "destination"
    assert already.path == "/tmp/job/Clip.mp4"


def test_unrelated_lines_are_ignored() -> None:
    assert parse_download_line("") is None
    assert parse_download_line("[youtube] dQw4w9WgXcQ: Downloading webpage") is None
    assert parse_transcode_line("Stream mapping:") is None


def test_transcode_time_and_duration_markers() -> None:
    duration = parse_transcode_line("  Duration: 00:03:20.50, start: 0.000000, bitrate: 128 kb/s")
    assert duration.kind == "duration"
    assert duration.seconds == 200.5

    tick = parse_transcode_line("size=  1024kB time=00:01:05.25 bitrate= 128.0kbits/s speed=10x")
    assert tick.kind == "time"
    assert tick.seconds == 65.25


def test_format_clock() -> None:
    assert format_clock(3725.9) == "01:02:05"
