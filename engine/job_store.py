"""In-memory job records and the job lifecycle state machine.

Jobs are frozen snapshots. Every change builds a new snapshot through one of
the pure functions below (:func:`apply_transition`, :func:`apply_stage_update`,
:func:`apply_stage_progress`) and the store swaps it in under a single lock,
so readers never observe a half-applied update.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Callable, Mapping, Optional
from uuid import uuid4

from engine.errors import InvalidTransitionError, QuotaError
from engine.formats import Rendition, VideoMetadata
from engine.log_events import log_event

logger = logging.getLogger(__name__)

JOB_STATUS_PENDING = "pending"
JOB_STATUS_ANALYZING = "analyzing"
JOB_STATUS_READY = "ready"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"
JOB_STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_CANCELLED,
)

# Statuses that count against a requester's quota.
ACTIVE_STATUSES = (
    JOB_STATUS_PENDING,
    JOB_STATUS_ANALYZING,
    JOB_STATUS_PROCESSING,
)

STAGE_VALIDATION = "validation"
STAGE_METADATA = "metadata"
STAGE_DOWNLOAD = "download"
STAGE_PROCESSING = "processing"
STAGE_READY = "ready"

STAGES = (
    STAGE_VALIDATION,
    STAGE_METADATA,
    STAGE_DOWNLOAD,
    STAGE_PROCESSING,
    STAGE_READY,
)

STAGE_STATUS_PENDING = "pending"
STAGE_STATUS_PROCESSING = "processing"
STAGE_STATUS_COMPLETED = "completed"
STAGE_STATUS_FAILED = "failed"

STAGE_STATUSES = (
    STAGE_STATUS_PENDING,
    STAGE_STATUS_PROCESSING,
    STAGE_STATUS_COMPLETED,
    STAGE_STATUS_FAILED,
)

INITIAL_STAGE_LABEL = "initializing"

EVENT_ANALYZE = "analyze"
EVENT_ANALYSIS_SUCCEEDED = "analysis_succeeded"
EVENT_START_PROCESSING = "start_processing"
EVENT_COMPLETE = "complete"
EVENT_FAIL = "fail"
EVENT_CANCEL = "cancel"

TRANSITIONS = {
    (JOB_STATUS_PENDING, EVENT_ANALYZE): JOB_STATUS_ANALYZING,
    (JOB_STATUS_ANALYZING, EVENT_ANALYSIS_SUCCEEDED): JOB_STATUS_READY,
    (JOB_STATUS_ANALYZING, EVENT_FAIL): JOB_STATUS_FAILED,
    (JOB_STATUS_READY, EVENT_START_PROCESSING): JOB_STATUS_PROCESSING,
    (JOB_STATUS_PROCESSING, EVENT_COMPLETE): JOB_STATUS_COMPLETED,
    (JOB_STATUS_PROCESSING, EVENT_FAIL): JOB_STATUS_FAILED,
    (JOB_STATUS_PROCESSING, EVENT_CANCEL): JOB_STATUS_CANCELLED,
}

# In-flight progress of a running stage maps into this percent band.
STAGE_PROGRESS_BANDS = {
    STAGE_DOWNLOAD: (40, 60),
    STAGE_PROCESSING: (60, 80),
}

_TRANSITION_FIELDS = {
    "output_path",
    "expires_at",
    "last_error",
    "error_detail",
    "metadata",
    "renditions",
    "selected_rendition",
}

# Fields only the lifecycle functions may change.
_PROTECTED_FIELDS = {
    "id",
    "created_at",
    "updated_at",
    "status",
    "output_path",
    "expires_at",
    "stage",
    "stage_record",
    "progress_percent",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StageState:
    status: str = STAGE_STATUS_PENDING
    message: str = ""

    def to_dict(self) -> dict:
        return {"status": self.status, "message": self.message}


def _initial_stage_record() -> Mapping[str, StageState]:
    return MappingProxyType({name: StageState() for name in STAGES})


@dataclass(frozen=True)
class Job:
    id: str
    source_url: str
    requester_key: str
    created_at: datetime
    updated_at: datetime
    platform: Optional[str] = None
    status: str = JOB_STATUS_PENDING
    stage: str = INITIAL_STAGE_LABEL
    stage_record: Mapping[str, StageState] = field(default_factory=_initial_stage_record)
    progress_percent: int = 0
    metadata: Optional[VideoMetadata] = None
    renditions: tuple = ()
    selected_rendition: Optional[Rendition] = None
    output_path: Optional[str] = None
    last_error: Optional[str] = None
    error_detail: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def snapshot(self) -> "JobSnapshot":
        return JobSnapshot(
            id=self.id,
            status=self.status,
            progress_percent=self.progress_percent,
            stage=self.stage,
            stage_record={name: state.to_dict() for name, state in self.stage_record.items()},
            last_error=self.last_error,
            created_at=self.created_at,
            expires_at=self.expires_at,
        )


@dataclass(frozen=True)
class JobSnapshot:
    """Public view of a job, without raw tool diagnostics."""

    id: str
    status: str
    progress_percent: int
    stage: str
    stage_record: dict
    last_error: Optional[str]
    created_at: datetime
    expires_at: Optional[datetime]

    @property
    def can_download(self) -> bool:
        return self.status == JOB_STATUS_COMPLETED

    def to_dict(self) -> dict:
        return {
            "jobId": self.id,
            "status": self.status,
            "progress": self.progress_percent,
            "stage": self.stage,
            "stages": {name: dict(state) for name, state in self.stage_record.items()},
            "error": self.last_error,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "canDownload": self.can_download,
        }


def apply_transition(job: Job, event: str, *, now: datetime, **fields) -> Job:
    """Return ``job`` moved along ``event``, or raise for an illegal edge."""
    target = TRANSITIONS.get((job.status, event))
    if target is None:
        raise InvalidTransitionError(f"Cannot apply {event!r} to a job that is {job.status!r}")
    unknown = set(fields) - _TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")
    if target == JOB_STATUS_COMPLETED:
        if not fields.get("output_path") or fields.get("expires_at") is None:
            raise ValueError("Completing a job requires output_path and expires_at")
    else:
        fields["output_path"] = None
        fields["expires_at"] = None
    return replace(job, status=target, updated_at=now, **fields)


def derive_progress(stage_record: Mapping[str, StageState]) -> int:
    for index, name in enumerate(STAGES):
        if stage_record[name].status != STAGE_STATUS_COMPLETED:
            return round(100 * index / len(STAGES))
    return 100


def apply_stage_update(job: Job, stage: str, status: str, message: str = "", *, now: datetime) -> Job:
    if stage not in STAGES:
        raise ValueError(f"Unknown stage: {stage!r}")
    if status not in STAGE_STATUSES:
        raise ValueError(f"Unknown stage status: {status!r}")
    if status == STAGE_STATUS_COMPLETED:
        earlier = STAGES[: STAGES.index(stage)]
        unfinished = [name for name in earlier if job.stage_record[name].status != STAGE_STATUS_COMPLETED]
        if unfinished:
            raise InvalidTransitionError(
                f"Stage {stage!r} cannot complete before {', '.join(unfinished)}"
            )
        if stage == STAGE_READY and job.status != JOB_STATUS_COMPLETED:
            raise InvalidTransitionError("The ready stage completes only with the job itself")
    record = dict(job.stage_record)
    record[stage] = StageState(status=status, message=message)
    progress = max(job.progress_percent, derive_progress(record))
    return replace(
        job,
        stage=stage,
        stage_record=MappingProxyType(record),
        progress_percent=progress,
        updated_at=now,
    )


def apply_stage_progress(job: Job, stage: str, percent: float, message: Optional[str] = None, *, now: datetime) -> Job:
    band = STAGE_PROGRESS_BANDS.get(stage)
    if band is None:
        raise ValueError(f"Stage {stage!r} does not report in-flight progress")
    if job.status != JOB_STATUS_PROCESSING:
        return job
    start, end = band
    clamped = max(0.0, min(100.0, float(percent)))
    progress = max(job.progress_percent, int(start + (end - start) * clamped / 100.0))
    record = job.stage_record
    if message is not None:
        updated = dict(record)
        updated[stage] = StageState(status=STAGE_STATUS_PROCESSING, message=message)
        record = MappingProxyType(updated)
    return replace(job, stage=stage, stage_record=record, progress_percent=progress, updated_at=now)


class JobStore:
    """Thread-safe map of job id to the latest :class:`Job` snapshot."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.RLock()
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    def create(
        self,
        source_url: str,
        requester_key: str,
        *,
        platform: Optional[str] = None,
        max_active: Optional[int] = None,
    ) -> Job:
        """Create a pending job; with ``max_active`` the quota check is atomic."""
        with self._lock:
            if max_active is not None:
                active = self.count_active(requester_key)
                if active >= max_active:
                    raise QuotaError(
                        f"Too many active jobs. Maximum {max_active} concurrent jobs allowed."
                    )
            now = self._clock()
            job_id = uuid4().hex
            while job_id in self._jobs:
                job_id = uuid4().hex
            job = Job(
                id=job_id,
                source_url=source_url,
                requester_key=requester_key,
                platform=platform,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job_id] = job
        log_event(logging.INFO, "job_created", job_id=job_id, platform=platform)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def _mutate(self, job_id: str, change: Callable[[Job, datetime], Job]) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            updated = change(job, self._clock())
            self._jobs[job_id] = updated
            return updated

    def update(self, job_id: str, **fields) -> Optional[Job]:
        protected = set(fields) & _PROTECTED_FIELDS
        if protected:
            raise ValueError(f"Fields cannot be updated directly: {sorted(protected)}")
        return self._mutate(job_id, lambda job, now: replace(job, updated_at=now, **fields))

    def transition(self, job_id: str, event: str, **fields) -> Optional[Job]:
        updated = self._mutate(
            job_id, lambda job, now: apply_transition(job, event, now=now, **fields)
        )
        if updated is not None:
            log_event(logging.INFO, "job_transition", job_id=job_id, event=event, status=updated.status)
        return updated

    def update_stage(self, job_id: str, stage: str, status: str, message: str = "") -> Optional[Job]:
        return self._mutate(
            job_id, lambda job, now: apply_stage_update(job, stage, status, message, now=now)
        )

    def record_stage_progress(
        self, job_id: str, stage: str, percent: float, message: Optional[str] = None
    ) -> Optional[Job]:
        return self._mutate(
            job_id, lambda job, now: apply_stage_progress(job, stage, percent, message, now=now)
        )

    def complete(self, job_id: str, output_path: str, expires_at: datetime) -> Optional[Job]:
        """Mark a processing job completed and finish its ready stage in one step."""

        def _complete(job: Job, now: datetime) -> Job:
            done = apply_transition(
                job,
                EVENT_COMPLETE,
                now=now,
                output_path=str(output_path),
                expires_at=expires_at,
            )
            return apply_stage_update(
                done, STAGE_READY, STAGE_STATUS_COMPLETED, "Ready for download", now=now
            )

        updated = self._mutate(job_id, _complete)
        if updated is not None:
            log_event(logging.INFO, "job_transition", job_id=job_id, event=EVENT_COMPLETE, status=updated.status)
        return updated

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def list_by_requester(self, requester_key: str) -> list[Job]:
        with self._lock:
            return [job for job in self._jobs.values() if job.requester_key == requester_key]

    def count_active(self, requester_key: str) -> int:
        return sum(1 for job in self.list_by_requester(requester_key) if job.is_active)

    def list_expired(self, expiry_minutes: int, now: Optional[datetime] = None) -> list[Job]:
        """Jobs created more than ``expiry_minutes`` ago, whatever their status."""
        cutoff = (now or self._clock()) - timedelta(minutes=expiry_minutes)
        with self._lock:
            return [job for job in self._jobs.values() if job.created_at < cutoff]

    def list_all(self) -> list[Job]:
        with self._lock:
            return list(self._jobs.values())

    def ids(self) -> set[str]:
        with self._lock:
            return set(self._jobs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
