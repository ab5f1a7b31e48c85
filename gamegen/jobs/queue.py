"""
Generation queue controller.

Public entry point for the job queue: submit, status, cancel,
pause/resume and stats. The controller owns no global state; build one
with ``build_controller`` (or by hand) and pass it to whoever needs it.
"""

import asyncio
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel

from gamegen.config import AppConfig, config as default_config
from gamegen.jobs.database import JobBackend, MemoryJobBackend, SQLiteJobBackend
from gamegen.jobs.errors import JobStillActive, UnknownJobKind
from gamegen.jobs.events import ProgressEmitter, Subscription, log_events
from gamegen.jobs.models import (
    CancelResult,
    JobKind,
    JobRecord,
    JobState,
    JobView,
    QueueStats,
    normalize_kind,
)
from gamegen.jobs.pipeline import PipelineRunner
from gamegen.jobs.registry import PipelineRegistry
from gamegen.jobs.store import JobStore
from gamegen.jobs.worker import JobScheduler, RetryPolicy
from gamegen.utils.logging import (
    QUEUE_SOURCES,
    LogBuffer,
    LogLevel,
    get_log_buffer,
    queue_logger as logger,
)


class CancelReport(BaseModel):
    """Outcome of a cancel request, with the state seen at the time."""
    job_id: str
    outcome: CancelResult
    state: JobState

    @property
    def accepted(self) -> bool:
        return self.outcome.accepted


class QueueHealth(BaseModel):
    """Counters plus what went wrong lately."""
    stats: QueueStats
    # Newest first; LogEntry.to_dict() of queue warnings and errors
    recent_failures: List[Dict[str, Any]]
    warning_count: int = 0
    error_count: int = 0


class QueueController:
    """
    High-level interface for the generation queue.

    Usage:
        controller = build_controller(registry=registry)
        await controller.start()

        # Queue a game
        job_id = await controller.submit("game_generation", {"prompt": ...})

        # Check status
        view = await controller.status(job_id)
    """

    def __init__(
        self,
        store: JobStore,
        scheduler: JobScheduler,
        emitter: ProgressEmitter,
        registry: PipelineRegistry,
        status_log_tail: int = 20,
        log_retention: int = 200,
        log_progress_events: bool = False,
        log_buffer: Optional[LogBuffer] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.emitter = emitter
        self.registry = registry
        self.status_log_tail = status_log_tail
        self.log_retention = log_retention
        self.log_progress_events = log_progress_events
        self.log_buffer = log_buffer or get_log_buffer()
        self._event_log: Optional[Subscription] = None
        self._event_log_task: Optional[asyncio.Task] = None
        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Connect the store and start the worker pool"""
        if self._started:
            return
        self.registry.freeze()
        await self.store.connect()
        if self.log_progress_events:
            self._event_log = self.emitter.subscribe()
            self._event_log_task = asyncio.create_task(log_events(self._event_log))
        await self.scheduler.start()
        self._started = True
        logger.info("Generation queue started", kinds=self.registry.kinds())

    async def shutdown(self, cancel_in_flight: bool = False, timeout: Optional[float] = None):
        """Drain (or cancel) running jobs, then release resources"""
        if not self._started:
            return
        await self.scheduler.shutdown(cancel_in_flight=cancel_in_flight, timeout=timeout)
        if self._event_log_task is not None:
            self._event_log.close()
            await self._event_log_task
            self._event_log_task = None
        await self.store.close()
        self._started = False
        logger.info("Generation queue stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.shutdown()

    # =========================================================================
    # Public API
    # =========================================================================

    async def submit(
        self,
        kind: Union[str, JobKind],
        payload: Any = None,
        job_id: Optional[str] = None,
    ) -> str:
        """
        Queue a new job.

        Args:
            kind: Registered pipeline kind (e.g. "game_generation")
            payload: Pipeline input, stored as-is
            job_id: Optional caller-supplied id (must be unused)

        Returns:
            job_id: Unique identifier for tracking the job

        Raises:
            UnknownJobKind: no pipeline for ``kind``; nothing is stored
            DuplicateJob: ``job_id`` is already in use
            QueueUnavailable: the job store cannot be reached
        """
        kind = normalize_kind(kind)
        if kind not in self.registry:
            logger.warning("Rejected job with unknown kind", kind=kind)
            raise UnknownJobKind(kind)

        job = JobRecord(kind=kind, payload=payload)
        if job_id is not None:
            job.id = job_id
        job.append_log("Job queued", self.log_retention)

        await self.store.create(job)
        await self.scheduler.enqueue(job.id)
        self.emitter.emit(job, "Job queued")

        logger.info("Job queued", job_id=job.id, kind=kind)
        return job.id

    async def status(self, job_id: str) -> JobView:
        """Read-only view of a job. Raises JobNotFound for unknown ids."""
        job = await self.store.get(job_id)
        return job.view(self.status_log_tail)

    async def cancel(self, job_id: str) -> bool:
        """True if the cancellation was accepted (job existed and was not finished)."""
        report = await self.cancel_job(job_id)
        return report.accepted

    async def cancel_job(self, job_id: str) -> CancelReport:
        """Cancel a job and report exactly what happened."""
        outcome = await self.scheduler.cancel(job_id)
        job = await self.store.get(job_id)
        return CancelReport(job_id=job_id, outcome=outcome, state=job.state)

    async def pause_all(self):
        await self.scheduler.pause()

    async def resume_all(self):
        await self.scheduler.resume()

    async def queue_stats(self) -> QueueStats:
        return await self.scheduler.stats()

    async def health(self, limit: int = 20) -> QueueHealth:
        """
        Queue counters with the latest warnings and errors of the queue
        components (newest first) and their totals since startup.
        """
        failures = self.log_buffer.recent(
            limit, min_level=LogLevel.WARNING, sources=QUEUE_SOURCES
        )
        warnings = errors = 0
        for levels in self.log_buffer.totals(QUEUE_SOURCES).values():
            warnings += levels.get(LogLevel.WARNING.value, 0)
            errors += levels.get(LogLevel.ERROR.value, 0) + levels.get(LogLevel.CRITICAL.value, 0)

        return QueueHealth(
            stats=await self.scheduler.stats(),
            recent_failures=[entry.to_dict() for entry in failures],
            warning_count=warnings,
            error_count=errors,
        )

    async def list_jobs(
        self,
        state: Optional[JobState] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[JobView]:
        """Jobs in submission order, optionally filtered by state"""
        jobs = await self.store.list(state, limit, offset)
        return [job.view(self.status_log_tail) for job in jobs]

    async def delete_job(self, job_id: str):
        """
        Remove a finished job's record.

        Cancellation and deletion are separate steps: a job that is still
        queued or processing must be cancelled (and finish) first.
        """
        job = await self.store.get(job_id)
        if not job.is_terminal:
            raise JobStillActive(job_id, job.state.value)
        await self.store.delete(job_id)
        logger.info("Deleted job", job_id=job_id, state=job.state.value)

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        """Live progress events for one job, or all jobs"""
        return self.emitter.subscribe(job_id)

    async def wait_idle(self):
        """Wait until the pool has nothing pending or running"""
        await self.scheduler.join()


def build_backend(settings: AppConfig) -> JobBackend:
    if settings.JOB_BACKEND == "sqlite":
        return SQLiteJobBackend(settings.job_db_path)
    if settings.JOB_BACKEND == "redis":
        from gamegen.jobs.redis_backend import RedisJobBackend
        return RedisJobBackend(settings.REDIS_URL, prefix=settings.REDIS_KEY_PREFIX)
    return MemoryJobBackend()


def build_controller(
    registry: PipelineRegistry,
    settings: Optional[AppConfig] = None,
    backend: Optional[JobBackend] = None,
    log_progress_events: bool = False,
) -> QueueController:
    """Wire store, emitter, runner and worker pool from configuration."""
    settings = settings or default_config

    store = JobStore(backend or build_backend(settings))
    emitter = ProgressEmitter(buffer_size=settings.EVENT_BUFFER_SIZE)
    runner = PipelineRunner(
        store,
        emitter,
        registry,
        default_timeout=settings.STAGE_TIMEOUT_SECONDS,
        log_retention=settings.JOB_LOG_RETENTION,
    )
    retry_policy = None
    if settings.GENERATION_RETRIES > 0:
        retry_policy = RetryPolicy(
            max_retries=settings.GENERATION_RETRIES,
            retry_on_timeout=settings.RETRY_ON_TIMEOUT,
            backoff_seconds=settings.RETRY_BACKOFF_SECONDS,
        )
    scheduler = JobScheduler(
        store,
        runner,
        emitter,
        max_concurrency=settings.QUEUE_MAX_CONCURRENCY,
        retry_policy=retry_policy,
        intake_poll_interval=settings.INTAKE_POLL_SECONDS,
        log_retention=settings.JOB_LOG_RETENTION,
    )
    return QueueController(
        store,
        scheduler,
        emitter,
        registry,
        status_log_tail=settings.STATUS_LOG_TAIL,
        log_retention=settings.JOB_LOG_RETENTION,
        log_progress_events=log_progress_events,
    )
