from .errors import PipelineError
from .job_store import Job, JobSnapshot, JobStore
from .media_engine import MediaEngine
from .pipeline import PipelineOrchestrator
from .process import ProcessRunner
from .runtime import get_runtime_info

__all__ = [
    "Job",
    "JobSnapshot",
    "JobStore",
    "MediaEngine",
    "PipelineError",
    "PipelineOrchestrator",
    "ProcessRunner",
    "get_runtime_info",
]
