"""Scheduler job that reclaims storage from expired jobs and orphaned directories."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from engine.job_store import JobStore
from engine.log_events import log_event
from engine.paths import format_bytes, job_dir

logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "expired_job_cleanup"


@dataclass
class CleanupReport:
    jobs_removed: int = 0
    orphans_removed: int = 0
    failures: int = 0


def delete_tree(path) -> None:
    """Delete ``path`` depth-first: a directory's files, then its subdirectories, then itself.

    Symlinks are unlinked, never followed. Entries that vanish mid-walk are ignored.
    """
    path = Path(path)
    if path.is_symlink() or not path.is_dir():
        path.unlink(missing_ok=True)
        return
    subdirs = []
    with os.scandir(path) as entries:
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                subdirs.append(entry.path)
            else:
                Path(entry.path).unlink(missing_ok=True)
    for subdir in subdirs:
        delete_tree(subdir)
    try:
        os.rmdir(path)
    except FileNotFoundError:
        pass


class CleanupScheduler:
    """Periodically delete expired jobs and orphaned working directories.

    Age is measured from job creation, so a job that finishes late keeps its
    artifact for less than the full expiry window.
    """

    def __init__(
        self,
        store: JobStore,
        temp_dir,
        *,
        expiry_minutes: int,
        interval_minutes: int = 5,
        cancel_hook: Optional[Callable[[str], bool]] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.store = store
        self.temp_dir = Path(temp_dir)
        self.expiry_minutes = expiry_minutes
        self.interval_minutes = interval_minutes
        self.cancel_hook = cancel_hook
        self._scheduler = scheduler
        self._lock = threading.RLock()

    @property
    def running(self) -> bool:
        return bool(self._scheduler is not None and self._scheduler.running)

    def start(self) -> None:
        self.run_once()
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=CLEANUP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logging.info("Cleanup scheduler active (every %s minutes)", self.interval_minutes)

    def stop(self) -> None:
        scheduler = self._scheduler
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
            logging.info("Cleanup scheduler stopped")

    def run_once(self) -> CleanupReport:
        report = CleanupReport()
        with self._lock:
            for job in self.store.list_expired(self.expiry_minutes):
                try:
                    if self.cancel_hook is not None:
                        self.cancel_hook(job.id)
                    self.cleanup_job(job.id)
                    report.jobs_removed += 1
                except Exception:
                    report.failures += 1
                    logger.exception("Failed to clean up expired job %s", job.id)
            removed, failures = self.sweep_orphans()
            report.orphans_removed += removed
            report.failures += failures
        if report.jobs_removed or report.orphans_removed or report.failures:
            log_event(
                logging.INFO,
                "cleanup_pass_finished",
                jobs_removed=report.jobs_removed,
                orphans_removed=report.orphans_removed,
                failures=report.failures,
            )
        return report

    def cleanup_job(self, job_id: str) -> bool:
        """Delete a job's working directory and then its record."""
        with self._lock:
            workdir = job_dir(self.temp_dir, job_id)
            if workdir.exists():
                delete_tree(workdir)
            return self.store.delete(job_id)

    def sweep_orphans(self) -> tuple[int, int]:
        if not self.temp_dir.is_dir():
            return 0, 0
        known = self.store.ids()
        cutoff = time.time() - self.expiry_minutes * 60
        removed = 0
        failures = 0
        with os.scandir(self.temp_dir) as entries:
            candidates = [entry for entry in entries if entry.name not in known]
        for entry in candidates:
            try:
                if not entry.is_dir(follow_symlinks=False):
                    continue
                if entry.stat(follow_symlinks=False).st_mtime >= cutoff:
                    continue
                delete_tree(entry.path)
                removed += 1
                logging.info("Cleaned orphaned directory: %s", entry.name)
            except OSError:
                failures += 1
                logger.exception("Failed to clean orphaned directory %s", entry.name)
        return removed, failures

    def storage_stats(self) -> dict:
        total_size = 0
        file_count = 0
        dir_count = 0
        if self.temp_dir.is_dir():
            with os.scandir(self.temp_dir) as entries:
                subdirs = [entry.path for entry in entries if entry.is_dir(follow_symlinks=False)]
            for path in subdirs:
                dir_count += 1
                for root, _dirs, files in os.walk(path):
                    for name in files:
                        try:
                            total_size += os.path.getsize(os.path.join(root, name))
                        except OSError:
                            continue
                        file_count += 1
        return {
            "totalSize": total_size,
            "totalSizeFormatted": format_bytes(total_size),
            "fileCount": file_count,
            "dirCount": dir_count,
        }
