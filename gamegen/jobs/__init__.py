"""
Generation job queue.

Components:
- JobStore: atomic per-job access on top of a memory, SQLite or Redis backend
- ProgressEmitter: non-blocking fan-out of progress events
- PipelineRunner: drives one job through its kind's stages
- JobScheduler: bounded worker pool with pause/resume and cancellation
- QueueController: the public interface

Usage:
    # At startup - wire the queue
    from gamegen.jobs import build_controller
    controller = build_controller(registry=registry)
    await controller.start()

    # Queue a job
    job_id = await controller.submit("game_generation", payload)

    # Check job status / follow progress
    view = await controller.status(job_id)
    async for event in controller.subscribe(job_id):
        ...
"""

from gamegen.jobs.errors import (
    JobQueueError,
    UnknownJobKind,
    JobNotFound,
    DuplicateJob,
    AlreadyTerminal,
    InvalidTransition,
    JobStillActive,
    QueueUnavailable,
    InvalidPipeline,
    StageFailure,
    StageTimeout,
)
from gamegen.jobs.models import (
    JobState,
    JobKind,
    JobRecord,
    JobView,
    QueueStats,
    ProgressEvent,
    CancelResult,
)
from gamegen.jobs.database import JobBackend, MemoryJobBackend, SQLiteJobBackend
from gamegen.jobs.store import JobStore
from gamegen.jobs.events import ProgressEmitter, Subscription
from gamegen.jobs.pipeline import (
    Stage,
    Pipeline,
    StageContext,
    Continue,
    Fail,
    Cancelled,
    PipelineRunner,
    PipelineResult,
)
from gamegen.jobs.registry import PipelineRegistry
from gamegen.jobs.worker import JobScheduler, RetryPolicy
from gamegen.jobs.queue import QueueController, CancelReport, QueueHealth, build_controller

__all__ = [
    # Errors
    "JobQueueError",
    "UnknownJobKind",
    "JobNotFound",
    "DuplicateJob",
    "AlreadyTerminal",
    "InvalidTransition",
    "JobStillActive",
    "QueueUnavailable",
    "InvalidPipeline",
    "StageFailure",
    "StageTimeout",

    # Models
    "JobState",
    "JobKind",
    "JobRecord",
    "JobView",
    "QueueStats",
    "ProgressEvent",
    "CancelResult",

    # Storage
    "JobBackend",
    "MemoryJobBackend",
    "SQLiteJobBackend",
    "JobStore",

    # Progress
    "ProgressEmitter",
    "Subscription",

    # Pipelines
    "Stage",
    "Pipeline",
    "StageContext",
    "Continue",
    "Fail",
    "Cancelled",
    "PipelineRunner",
    "PipelineResult",
    "PipelineRegistry",

    # Workers
    "JobScheduler",
    "RetryPolicy",

    # Controller
    "QueueController",
    "CancelReport",
    "QueueHealth",
    "build_controller",
]
