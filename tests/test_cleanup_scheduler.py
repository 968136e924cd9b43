from __future__ import annotations

import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

from engine.job_store import JobStore
from scheduler.jobs.cleanup import CLEANUP_JOB_ID, CleanupScheduler, delete_tree


class _Clock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now


def _age(path: Path, minutes: int) -> None:
    stamp = time.time() - minutes * 60
    os.utime(path, (stamp, stamp))


def _populate(workdir: Path) -> None:
    (workdir / "nested" / "deeper").mkdir(parents=True)
    (workdir / "clip.mp4").write_bytes(b"x" * 10)
    (workdir / "nested" / "part.f22.mp4").write_bytes(b"y" * 5)
    (workdir / "nested" / "deeper" / "thumb.jpg").write_bytes(b"z")


def test_delete_tree_removes_nested_content(tmp_path: Path) -> None:
    target = tmp_path / "job"
    _populate(target)
    outside = tmp_path / "keep.txt"
    outside.write_text("keep")
    os.symlink(outside, target / "link.txt")

    delete_tree(target)

    assert not target.exists()
    assert outside.read_text() == "keep"


def test_expired_jobs_are_removed_with_their_directories(tmp_path: Path) -> None:
    clock = _Clock(datetime(2025, 1, 1, tzinfo=timezone.utc))
    store = JobStore(clock=clock)
    temp_dir = tmp_path / "temp"
    expired = store.create("https://youtu.be/dQw4w9WgXcQ", "k")
    clock.now += timedelta(minutes=20)
    fresh = store.create("https://youtu.be/dQw4w9WgXcQ", "k")
    _populate(temp_dir / expired.id)
    _populate(temp_dir / fresh.id)

    cancelled = []
    cleanup = CleanupScheduler(
        store,
        temp_dir,
        expiry_minutes=15,
        cancel_hook=lambda job_id: cancelled.append(job_id) or False,
    )
    report = cleanup.run_once()

    assert report.jobs_removed == 1
    assert report.failures == 0
    assert cancelled == [expired.id]
    assert store.get(expired.id) is None
    assert not (temp_dir / expired.id).exists()
    assert store.get(fresh.id) is not None
    assert (temp_dir / fresh.id / "clip.mp4").exists()


def test_orphan_sweep_spares_known_jobs_and_recent_dirs(tmp_path: Path) -> None:
    store = JobStore()
    temp_dir = tmp_path / "temp"
    active = store.create("https://youtu.be/dQw4w9WgXcQ", "k")
    _populate(temp_dir / active.id)
    _age(temp_dir / active.id, 120)
    _populate(temp_dir / "old-orphan")
    _age(temp_dir / "old-orphan", 120)
    _populate(temp_dir / "new-orphan")
    (temp_dir / "stray.txt").write_text("not a directory")
    _age(temp_dir / "stray.txt", 120)

    report = CleanupScheduler(store, temp_dir, expiry_minutes=15).run_once()

    assert report.orphans_removed == 1
    assert not (temp_dir / "old-orphan").exists()
    assert (temp_dir / "new-orphan").exists()
    assert (temp_dir / active.id).exists()
    assert (temp_dir / "stray.txt").exists()


def test_failures_are_counted_and_the_pass_continues(tmp_path: Path, monkeypatch) -> None:
    clock = _Clock(datetime(2025, 1, 1, tzinfo=timezone.utc))
    store = JobStore(clock=clock)
    temp_dir = tmp_path / "temp"
    first = store.create("https://youtu.be/dQw4w9WgXcQ", "k")
    second = store.create("https://youtu.be/dQw4w9WgXcQ", "k")
    clock.now += timedelta(minutes=30)
    cleanup = CleanupScheduler(store, temp_dir, expiry_minutes=15)

    original = cleanup.cleanup_job

    def _flaky(job_id):
        if job_id == first.id:
            raise PermissionError("locked")
        return original(job_id)

    monkeypatch.setattr(cleanup, "cleanup_job", _flaky)
    report = cleanup.run_once()

    assert report.failures == 1
    assert report.jobs_removed == 1
    assert store.get(first.id) is not None
    assert store.get(second.id) is None


def test_cleanup_job_without_directory_still_drops_record(tmp_path: Path) -> None:
    store = JobStore()
    job = store.create("https://youtu.be/dQw4w9WgXcQ", "k")
    cleanup = CleanupScheduler(store, tmp_path / "temp", expiry_minutes=15)

    assert cleanup.cleanup_job(job.id) is True
    assert store.get(job.id) is None
    assert cleanup.cleanup_job(job.id) is False


def test_storage_stats(tmp_path: Path) -> None:
    temp_dir = tmp_path / "temp"
    _populate(temp_dir / "a")
    (temp_dir / "b").mkdir()
    stats = CleanupScheduler(JobStore(), temp_dir, expiry_minutes=15).storage_stats()

    assert stats["dirCount"] == 2
    assert stats["fileCount"] == 3
    assert stats["totalSize"] == 16
    assert stats["totalSizeFormatted"] == "16.00 Bytes"


def test_start_runs_immediately_and_registers_interval_job(tmp_path: Path) -> None:
    clock = _Clock(datetime(2025, 1, 1, tzinfo=timezone.utc))
    store = JobStore(clock=clock)
    store.create("https://youtu.be/dQw4w9WgXcQ", "k")
    clock.now += timedelta(minutes=30)
    cleanup = CleanupScheduler(store, tmp_path / "temp", expiry_minutes=15, interval_minutes=5)

    cleanup.start()
    try:
        assert len(store) == 0
        assert cleanup.running
        job = cleanup._scheduler.get_job(CLEANUP_JOB_ID)
        assert job is not None
        assert job.trigger.interval == timedelta(minutes=5)
    finally:
        cleanup.stop()
