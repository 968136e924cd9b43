"""Error taxonomy shared by the pipeline services.

Every error carries a short ``message`` that is safe to show to callers and an
optional ``detail`` with raw tool diagnostics (stderr tails and the like) that
is only logged or kept server-side.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures raised by the job pipeline."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        return self.message


class ValidationError(PipelineError):
    """Raised when a submitted URL is malformed or on an unsupported platform."""


class MetadataError(PipelineError):
    """Raised when metadata extraction fails or yields nothing usable."""


class DownloadError(PipelineError):
    pass


class TranscodeError(PipelineError):
    pass


class NotFoundError(PipelineError):
    pass


class ArtifactExpiredError(NotFoundError):
    """Raised when a completed job's file has already been removed."""


class QuotaError(PipelineError):
    """Raised when a requester already has too many active jobs."""


class ToolUnavailableError(PipelineError):
    """Raised when an external tool cannot be spawned at all."""

    def __init__(self, command: str, detail: str | None = None):
        super().__init__(f"{command} is not installed or not available in PATH", detail)
        self.command = command


class JobCancelledError(PipelineError):
    """Raised to abort an in-flight download or transcode after cancellation."""

    def __init__(self, message: str = "Cancelled by user", detail: str | None = None):
        super().__init__(message, detail)


class JobStateError(PipelineError):
    """Raised when an operation does not fit the job's current status."""


class InvalidTransitionError(JobStateError):
    pass
