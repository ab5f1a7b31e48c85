"""
Exceptions raised by the generation job queue.

Per-job failures (StageTimeout, StageFailure) are recorded on the job
record and never escape a worker. The rest are raised to callers of the
queue controller.
"""

from typing import Optional


class JobQueueError(Exception):
    """Base class for all job queue errors."""


class UnknownJobKind(JobQueueError):
    """A submit referenced a kind with no registered pipeline."""

    def __init__(self, kind: str):
        super().__init__(f"No pipeline registered for job kind '{kind}'")
        self.kind = kind


class JobNotFound(JobQueueError, LookupError):
    """The store has no record for the given job id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class DuplicateJob(JobQueueError):
    """A caller-supplied job id is already in use."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class AlreadyTerminal(JobQueueError):
    """A job in a terminal state was asked to change."""

    def __init__(self, job_id: str, state: str):
        super().__init__(f"Job {job_id} is already {state}")
        self.job_id = job_id
        self.state = state


class InvalidTransition(JobQueueError):
    """A state change that the job state machine does not allow."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobStillActive(JobQueueError):
    """Deletion was requested for a job that has not finished."""

    def __init__(self, job_id: str, state: str):
        super().__init__(f"Job {job_id} is still {state}; cancel it before deleting")
        self.job_id = job_id
        self.state = state


class QueueUnavailable(JobQueueError):
    """The job store backend cannot be reached."""


class InvalidPipeline(JobQueueError):
    """A pipeline definition is malformed (weights, names)."""


class StageFailure(JobQueueError):
    """A stage executor reported an error (e.g. an AI provider error)."""

    def __init__(
        self,
        stage: str,
        message: str,
        retryable: bool = False,
        cause: Optional[BaseException] = None
    ):
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage
        self.message = message
        self.retryable = retryable
        self.__cause__ = cause


class StageTimeout(StageFailure):
    """A stage did not finish within its allotted time."""

    def __init__(self, stage: str, timeout: float):
        super().__init__(stage, f"timed out after {timeout:g}s", retryable=True)
        self.timeout = timeout
