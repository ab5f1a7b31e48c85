"""
Job record data model for the generation queue.

JobRecord is the single source of truth for a job. Its state only moves
through ``transition``, which enforces:

    queued -> processing -> completed | failed | cancelled
    queued -> cancelled

Terminal states never change again.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from gamegen.jobs.errors import AlreadyTerminal, InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return str(uuid.uuid4())


class JobState(str, Enum):
    """Lifecycle states of a generation job"""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})

_ALLOWED_TRANSITIONS = {
    JobState.QUEUED: {JobState.PROCESSING, JobState.CANCELLED},
    JobState.PROCESSING: {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED},
}


class JobKind(str, Enum):
    """Built-in pipeline kinds"""
    GAME_GENERATION = "game_generation"
    ASSET_BATCH = "asset_batch"
    TEST_SUITE = "test_suite"


def normalize_kind(kind: Any) -> str:
    if isinstance(kind, JobKind):
        return kind.value
    return str(kind)


class CancelResult(str, Enum):
    """What a cancel request did"""
    CANCELLED = "cancelled"              # queued job, cancelled on the spot
    REQUESTED = "requested"              # processing job, flag set for the next stage boundary
    ALREADY_TERMINAL = "already_terminal"

    @property
    def accepted(self) -> bool:
        return self is not CancelResult.ALREADY_TERMINAL


class JobRecord(BaseModel):
    """Tracks the lifecycle of one generation job."""
    id: str = Field(default_factory=new_job_id)
    kind: str
    payload: Any = None
    state: JobState = JobState.QUEUED
    progress: int = 0
    current_step: Optional[str] = None
    stage_index: Optional[int] = None
    logs: List[str] = Field(default_factory=list)
    result: Any = None
    error: Optional[str] = None
    cancel_requested: bool = False
    attempt: int = 1
    retry_of: Optional[str] = None
    # Earliest time a worker may start the job (retry backoff)
    run_after: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def touch(self):
        self.updated_at = utcnow()

    def _ensure_active(self):
        if self.is_terminal:
            raise AlreadyTerminal(self.id, self.state.value)

    def transition(
        self,
        new_state: JobState,
        *,
        result: Any = None,
        error: Optional[str] = None
    ):
        """Move to ``new_state``, applying the fields that state owns."""
        self._ensure_active()
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(self.id, self.state.value, new_state.value)

        now = utcnow()
        if new_state == JobState.PROCESSING:
            self.started_at = now
        elif new_state == JobState.COMPLETED:
            self.progress = 100
            self.result = result
            self.completed_at = now
        elif new_state == JobState.FAILED:
            self.error = error or "Unknown error"
            self.completed_at = now
        elif new_state == JobState.CANCELLED:
            self.completed_at = now

        self.state = new_state
        self.updated_at = now

    def append_log(self, message: str, retention: int = 200):
        """Append a timestamped log line, keeping the newest ``retention`` lines."""
        self._ensure_active()
        self.logs.append(f"[{utcnow().isoformat()}] {message}")
        if len(self.logs) > retention:
            del self.logs[:len(self.logs) - retention]
        self.touch()

    def advance_progress(self, value: int, ceiling: int = 99) -> int:
        """
        Raise progress towards ``value`` without passing ``ceiling``.

        Progress never decreases and stays below 100 until the job
        completes.
        """
        self._ensure_active()
        capped = min(value, ceiling, 99)
        if capped > self.progress:
            self.progress = capped
            self.touch()
        return self.progress

    def request_cancel(self) -> bool:
        """Set the cancel flag. Returns False if it was already set."""
        self._ensure_active()
        if self.cancel_requested:
            return False
        self.cancel_requested = True
        self.touch()
        return True

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobRecord":
        return cls.model_validate(data)

    def view(self, log_tail: Optional[int] = None) -> "JobView":
        logs = self.logs if log_tail is None else self.logs[-log_tail:] if log_tail else []
        return JobView(
            job_id=self.id,
            kind=self.kind,
            state=self.state,
            progress=self.progress,
            current_step=self.current_step,
            logs=list(logs),
            result=self.result if self.state == JobState.COMPLETED else None,
            error=self.error if self.state == JobState.FAILED else None,
            cancel_requested=self.cancel_requested,
            attempt=self.attempt,
            retry_of=self.retry_of,
            run_after=self.run_after,
            created_at=self.created_at,
            updated_at=self.updated_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class JobView(BaseModel):
    """Read-only projection of a job returned to callers."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    kind: str
    state: JobState
    progress: int
    current_step: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    result: Any = None
    error: Optional[str] = None
    cancel_requested: bool = False
    attempt: int = 1
    retry_of: Optional[str] = None
    run_after: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class QueueStats(BaseModel):
    """Aggregate queue counters."""
    queued_count: int = 0
    # Queued retries still waiting out their backoff (not in queued_count)
    delayed_count: int = 0
    processing_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    is_paused: bool = False
    max_concurrency: int = 0

    @property
    def total(self) -> int:
        return (
            self.queued_count + self.delayed_count + self.processing_count + self.completed_count
            + self.failed_count + self.cancelled_count
        )


class ProgressEvent(BaseModel):
    """One observed change of a job, as pushed to subscribers."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    state: JobState
    progress: int
    current_step: Optional[str] = None
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_job(cls, job: JobRecord, message: Optional[str] = None) -> "ProgressEvent":
        return cls(
            job_id=job.id,
            state=job.state,
            progress=job.progress,
            current_step=job.current_step,
            message=message,
        )
