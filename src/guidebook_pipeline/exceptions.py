"""Domain exceptions shared by the queue, workers and supervisor."""

from __future__ import annotations

from typing import Optional


class PipelineError(RuntimeError):
    """Base error for pipeline failures, tagged with the stage that raised it."""

    def __init__(self, detail: str, *, stage: str = "pipeline", hint: Optional[str] = None) -> None:
        super().__init__(detail)
        self.stage = stage
        self.detail = detail
        self.hint = hint


class UnrecoverableJobError(Exception):
    """Marker mixin: the job queue fails these immediately instead of retrying."""


class QueueUnavailableError(PipelineError):
    """Raised when the queue storage cannot be reached."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, stage="queue")


class ProjectNotFoundError(PipelineError, UnrecoverableJobError):
    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project {project_id} not found", stage="preflight")
        self.project_id = project_id


class PipelineAlreadyFinishedError(PipelineError, UnrecoverableJobError):
    """Raised by preflight when a duplicate trigger hits a finished project."""

    def __init__(self, project_id: str, status: str) -> None:
        super().__init__(
            f"Project {project_id} is already {status}",
            stage="preflight",
            hint="Re-trigger generation to reset the project before running again.",
        )
        self.project_id = project_id
        self.status = status


class InvalidTransitionError(PipelineError, UnrecoverableJobError):
    def __init__(self, project_id: str, current: str, target: str) -> None:
        super().__init__(f"Project {project_id} cannot move from {current} to {target}", stage="state")
        self.project_id = project_id
        self.current = current
        self.target = target


class JobTimeoutError(PipelineError):
    def __init__(self, job_id: str, timeout: float, *, stage: str = "wait") -> None:
        super().__init__(f"Job {job_id} timed out after {timeout:g} seconds", stage=stage)
        self.job_id = job_id
        self.timeout = timeout


class JobFailedError(PipelineError):
    def __init__(self, job_id: str, reason: Optional[str], *, stage: str = "wait") -> None:
        super().__init__(f"Job {job_id} failed: {reason or 'unknown error'}", stage=stage)
        self.job_id = job_id
        self.reason = reason


class UpstreamDataMissingError(PipelineError, UnrecoverableJobError):
    """Raised when a unit of work needs data that an earlier phase should have produced."""


class AssetFetchError(PipelineError):
    def __init__(self, url: str, detail: str) -> None:
        super().__init__(f"Failed to fetch asset {url}: {detail}", stage="fetch")
        self.url = url


class StorageError(PipelineError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, stage="storage")
