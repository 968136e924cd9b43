"""Job pipeline: analyze a URL, download the chosen rendition, hand out the file."""

from __future__ import annotations

import logging
import mimetypes
import os
import threading
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable, Iterator, Optional

from config.settings import Settings
from engine.errors import (
    ArtifactExpiredError,
    InvalidTransitionError,
    JobCancelledError,
    JobStateError,
    MetadataError,
    NotFoundError,
    PipelineError,
    QuotaError,
    ValidationError,
)
from engine.formats import Rendition, VideoMetadata
from engine.job_store import (
    EVENT_ANALYSIS_SUCCEEDED,
    EVENT_ANALYZE,
    EVENT_CANCEL,
    EVENT_FAIL,
    EVENT_START_PROCESSING,
    JOB_STATUS_ANALYZING,
    JOB_STATUS_CANCELLED,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_READY,
    STAGE_DOWNLOAD,
    STAGE_METADATA,
    STAGE_PROCESSING,
    STAGE_STATUS_COMPLETED,
    STAGE_STATUS_FAILED,
    STAGE_STATUS_PROCESSING,
    STAGE_VALIDATION,
    STAGES,
    Job,
    JobSnapshot,
    JobStore,
)
from engine.log_events import log_event
from engine.media_engine import MediaEngine
from engine.paths import sanitize_download_filename
from engine.progress import TranscodeProgress
from input.url_classifier import INVALID_URL_ERROR, Classification, classify

logger = logging.getLogger(__name__)

METADATA_FAILURE_MESSAGE = (
    "Failed to analyze video. The video may be private, unavailable, or region-restricted."
)
CANCELLED_MESSAGE = "Cancelled by user"
UNEXPECTED_FAILURE_MESSAGE = "Processing failed unexpectedly"
_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class AnalysisResult:
    job: Job
    metadata: VideoMetadata

    @property
    def renditions(self) -> tuple:
        return self.metadata.renditions


@dataclass(frozen=True)
class CompletedArtifact:
    job_id: str
    path: Path
    filename: str
    size: int

    @property
    def media_type(self) -> str:
        return mimetypes.guess_type(self.filename)[0] or "application/octet-stream"

    def open(self):
        return open(self.path, "rb")

    def iter_chunks(self, chunk_size: int = _CHUNK_SIZE) -> Iterator[bytes]:
        with self.open() as handle:
            while True:
                chunk = handle.read(chunk_size)
                if not chunk:
                    break
                yield chunk


def choose_rendition(
    renditions, *, format_id: Optional[str] = None, preset: Optional[str] = None
) -> Optional[Rendition]:
    """Pick by format id, then by preset or quality name, then the first one."""
    renditions = list(renditions or ())
    if format_id:
        for rendition in renditions:
            if rendition.format_id == format_id:
                return rendition
    if preset:
        for rendition in renditions:
            if preset in (rendition.preset, rendition.quality):
                return rendition
    return renditions[0] if renditions else None


class PipelineOrchestrator:
    """Compose the job store, media engine and cleanup into the job lifecycle.

    Each processing job gets one supervised worker thread. Whatever happens
    inside it, the outcome (completed, failed or cancelled) is written back to
    the store before the thread exits.
    """

    def __init__(
        self,
        store: JobStore,
        engine: MediaEngine,
        cleanup,
        settings: Settings,
        *,
        classifier: Callable[[str], Classification] = classify,
    ):
        self.store = store
        self.engine = engine
        self.cleanup = cleanup
        self.settings = settings
        self.classifier = classifier
        self._workers: dict[str, threading.Thread] = {}
        self._cancel_flags: dict[str, str] = {}
        self._lock = threading.Lock()

    # --- analysis

    def create_job(self, url: str, requester_key: str) -> Job:
        limit = self.settings.max_jobs_per_requester
        if self.store.count_active(requester_key) >= limit:
            raise QuotaError(f"Too many active jobs. Maximum {limit} concurrent jobs allowed.")

        classification = self.classifier(url)
        if not classification.is_valid:
            raise ValidationError(classification.error or INVALID_URL_ERROR)

        job = self.store.create(
            url.strip(),
            requester_key,
            platform=classification.platform.value if classification.platform else None,
            max_active=limit,
        )
        self.store.transition(job.id, EVENT_ANALYZE)
        return self.store.update_stage(job.id, STAGE_VALIDATION, STAGE_STATUS_COMPLETED, "URL validated")

    def analyze(self, job_id: str) -> AnalysisResult:
        job = self._require(job_id)
        if job.status != JOB_STATUS_ANALYZING:
            raise JobStateError(f"Job cannot be analyzed while {job.status}")
        self.store.update_stage(job_id, STAGE_METADATA, STAGE_STATUS_PROCESSING, "Fetching video information...")
        try:
            metadata = self.engine.fetch_metadata(job.source_url)
        except MetadataError as exc:
            self._fail(job_id, STAGE_METADATA, METADATA_FAILURE_MESSAGE, exc.detail)
            raise MetadataError(METADATA_FAILURE_MESSAGE, detail=exc.detail) from exc
        except PipelineError as exc:
            self._fail(job_id, STAGE_METADATA, exc.message, exc.detail)
            raise
        except Exception as exc:
            logger.exception("Metadata fetch crashed job_id=%s", job_id)
            self._fail(job_id, STAGE_METADATA, METADATA_FAILURE_MESSAGE, repr(exc))
            raise MetadataError(METADATA_FAILURE_MESSAGE, detail=repr(exc)) from exc

        self.store.update(job_id, metadata=metadata, renditions=metadata.renditions)
        self.store.update_stage(job_id, STAGE_METADATA, STAGE_STATUS_COMPLETED, "Video information retrieved")
        job = self.store.transition(job_id, EVENT_ANALYSIS_SUCCEEDED)
        if job is None:
            raise NotFoundError("Job not found")
        return AnalysisResult(job=job, metadata=metadata)

    def analyze_url(self, url: str, requester_key: str) -> AnalysisResult:
        job = self.create_job(url, requester_key)
        return self.analyze(job.id)

    # --- processing

    def select_rendition_and_start(
        self, job_id: str, *, format_id: Optional[str] = None, preset: Optional[str] = None
    ) -> Job:
        job = self._require(job_id)
        if job.status == JOB_STATUS_PROCESSING:
            raise JobStateError("Job is already processing")
        if job.status != JOB_STATUS_READY:
            raise JobStateError(f"Job is not ready for processing (status: {job.status})")
        rendition = choose_rendition(job.renditions, format_id=format_id, preset=preset)
        if rendition is None:
            raise ValidationError("No downloadable format available")

        with self._lock:
            try:
                job = self.store.transition(job_id, EVENT_START_PROCESSING, selected_rendition=rendition)
            except InvalidTransitionError as exc:
                raise JobStateError("Job is already processing") from exc
            if job is None:
                raise NotFoundError("Job not found")
            self.store.update_stage(job_id, STAGE_DOWNLOAD, STAGE_STATUS_PROCESSING, "Starting download...")
            worker = threading.Thread(
                target=self._run_job,
                args=(job_id,),
                name=f"job-worker-{job_id[:8]}",
                daemon=True,
            )
            self._workers[job_id] = worker
            worker.start()
        log_event(
            logging.INFO,
            "job_processing_started",
            job_id=job_id,
            format_id=rendition.format_id,
            preset=rendition.preset,
        )
        return self.store.get(job_id) or job

    def _run_job(self, job_id: str) -> None:
        try:
            self._process(job_id)
        except JobCancelledError:
            self._mark_cancelled(job_id)
        except PipelineError as exc:
            if job_id in self._cancel_flags:
                self._mark_cancelled(job_id)
            else:
                self._fail(job_id, self._running_stage(job_id), exc.message, exc.detail)
        except Exception as exc:
            logger.exception("Job worker crashed job_id=%s", job_id)
            self._fail(job_id, self._running_stage(job_id), UNEXPECTED_FAILURE_MESSAGE, repr(exc))
        finally:
            with self._lock:
                self._workers.pop(job_id, None)
                self._cancel_flags.pop(job_id, None)
                self.engine.clear_cancellation(job_id)

    def _process(self, job_id: str) -> None:
        job = self._require(job_id)
        self._check_cancelled(job_id)

        def _on_download_progress(percent: float) -> None:
            self.store.record_stage_progress(job_id, STAGE_DOWNLOAD, percent, f"Downloading: {percent:.1f}%")

        downloaded = self.engine.download(job, on_progress=_on_download_progress)
        self.store.update_stage(job_id, STAGE_DOWNLOAD, STAGE_STATUS_COMPLETED, "Download complete")

        self._check_cancelled(job_id)
        self.store.update_stage(job_id, STAGE_PROCESSING, STAGE_STATUS_PROCESSING, "Preparing file...")
        output = self._post_process(job, downloaded)
        self.store.update_stage(job_id, STAGE_PROCESSING, STAGE_STATUS_COMPLETED, "Processing complete")

        with self._lock:
            self._check_cancelled(job_id)
            expires_at = self.store.now() + timedelta(minutes=self.settings.job_expiry_minutes)
            done = self.store.complete(job_id, str(output), expires_at)
        if done is None:
            logger.info("Job %s was removed before it completed", job_id)

    def _post_process(self, job: Job, downloaded: Path) -> Path:
        rendition = job.selected_rendition
        suffix = downloaded.suffix.lower()

        def _on_transcode_progress(progress: TranscodeProgress) -> None:
            self.store.record_stage_progress(
                job.id, STAGE_PROCESSING, progress.percent or 0.0, progress.message
            )

        if rendition is not None and rendition.is_audio:
            if suffix == ".mp3":
                return downloaded
            output = self.engine.extract_audio(
                downloaded,
                downloaded.with_suffix(".mp3"),
                on_progress=_on_transcode_progress,
                job_id=job.id,
            )
        elif suffix == ".mp4":
            return downloaded
        else:
            output = self.engine.convert_video(
                downloaded,
                downloaded.with_suffix(".mp4"),
                height=rendition.height if rendition is not None else None,
                on_progress=_on_transcode_progress,
                job_id=job.id,
            )
        if output != downloaded:
            try:
                os.unlink(downloaded)
            except OSError:
                logger.warning("Could not remove intermediate file %s", downloaded)
        return output

    # --- cancellation

    def _check_cancelled(self, job_id: str) -> None:
        reason = self._cancel_flags.get(job_id)
        if reason is not None:
            raise JobCancelledError(reason)

    def cancel(self, job_id: str) -> bool:
        """Stop a processing job.

        Returns whether a running subprocess was terminated; ``False`` when
        nothing is running for the job. A processing job caught between two
        subprocesses is still cancelled: the next one is stopped at spawn.
        """
        with self._lock:
            job = self.store.get(job_id)
            if job is None or job.status != JOB_STATUS_PROCESSING or job_id not in self._workers:
                return False
            self._cancel_flags[job_id] = CANCELLED_MESSAGE
        terminated = self.engine.cancel(job_id)
        with self._lock:
            if job_id not in self._workers:
                self.engine.clear_cancellation(job_id)
        log_event(logging.INFO, "job_cancel_requested", job_id=job_id, terminated=terminated)
        return terminated

    def cancel_and_cleanup(self, job_id: str, *, join_timeout: float = 10.0) -> bool:
        """Cancel ``job_id`` if it is processing, wait for its worker, then remove it.

        Returns whether a processing job ended up cancelled.
        """
        job = self._require(job_id)
        was_processing = job.status == JOB_STATUS_PROCESSING
        terminated = self.cancel(job_id)
        self.join(job_id, timeout=join_timeout)
        current = self.store.get(job_id)
        cancelled = terminated or (
            was_processing and current is not None and current.status == JOB_STATUS_CANCELLED
        )
        self.cleanup.cleanup_job(job_id)
        log_event(logging.INFO, "job_cleaned_up", job_id=job_id, cancelled=cancelled)
        return cancelled

    def _mark_cancelled(self, job_id: str) -> None:
        stage = self._running_stage(job_id)
        try:
            self.store.update_stage(job_id, stage, STAGE_STATUS_FAILED, "Cancelled")
            self.store.transition(job_id, EVENT_CANCEL, last_error=CANCELLED_MESSAGE)
        except InvalidTransitionError:
            logger.warning("Could not mark job %s cancelled", job_id)

    # --- failure routing

    def _running_stage(self, job_id: str) -> str:
        job = self.store.get(job_id)
        if job is None:
            return STAGE_DOWNLOAD
        for name in STAGES:
            if job.stage_record[name].status == STAGE_STATUS_PROCESSING:
                return name
        return job.stage if job.stage in STAGES else STAGE_DOWNLOAD

    def _fail(self, job_id: str, stage: str, message: str, detail: Optional[str] = None) -> None:
        log_event(logging.WARNING, "job_failed", job_id=job_id, stage=stage, error=message, detail=detail)
        try:
            self.store.update_stage(job_id, stage, STAGE_STATUS_FAILED, message)
            self.store.transition(job_id, EVENT_FAIL, last_error=message, error_detail=detail)
        except InvalidTransitionError:
            logger.warning("Could not record failure for job %s", job_id)

    # --- reads

    def _require(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return job

    def get_job(self, job_id: str) -> Job:
        return self._require(job_id)

    def get_progress(self, job_id: str) -> JobSnapshot:
        return self._require(job_id).snapshot()

    def fetch_completed_file(self, job_id: str) -> CompletedArtifact:
        job = self._require(job_id)
        if job.status != JOB_STATUS_COMPLETED or not job.output_path:
            raise JobStateError("File not ready yet")
        path = Path(job.output_path)
        if job.expires_at is not None and self.store.now() >= job.expires_at:
            raise ArtifactExpiredError("File has expired or been deleted")
        if not path.is_file():
            raise ArtifactExpiredError("File has expired or been deleted")
        return CompletedArtifact(
            job_id=job_id,
            path=path,
            filename=sanitize_download_filename(path.name),
            size=path.stat().st_size,
        )

    # --- lifecycle

    def join(self, job_id: Optional[str] = None, timeout: Optional[float] = None) -> bool:
        """Wait for one worker (or all of them); ``True`` when none is left running."""
        with self._lock:
            if job_id is None:
                workers = list(self._workers.values())
            else:
                workers = [w for w in (self._workers.get(job_id),) if w is not None]
        for worker in workers:
            worker.join(timeout)
        return not any(worker.is_alive() for worker in workers)

    def shutdown(self, timeout: float = 10.0) -> None:
        with self._lock:
            job_ids = list(self._workers)
        for job_id in job_ids:
            self.cancel(job_id)
        self.join(timeout=timeout)
