"""
Worker pool for generation jobs.

A fixed number of asyncio worker tasks pull job ids from a FIFO intake,
mark each job processing, drive it through the PipelineRunner and apply
the terminal state. Pausing stops new intake only; running jobs finish.
Retries wait out their backoff on an APScheduler date trigger before
they join the intake.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Set

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from gamegen.jobs.errors import AlreadyTerminal, InvalidTransition, JobNotFound
from gamegen.jobs.events import ProgressEmitter
from gamegen.jobs.models import CancelResult, JobRecord, JobState, QueueStats, utcnow
from gamegen.jobs.pipeline import PipelineResult, PipelineRunner
from gamegen.jobs.store import JobStore
from gamegen.utils.logging import worker_logger as logger


@dataclass
class RetryPolicy:
    """
    When a failed job gets a fresh successor job, and how long it waits.

    The failed job stays failed; the retry is a new job id with the same
    kind and payload, ``attempt + 1`` and ``retry_of`` pointing back.
    The wait doubles with every attempt: ``backoff_seconds * 2**(attempt - 1)``.
    """
    max_retries: int = 2
    retry_on_timeout: bool = True
    backoff_seconds: float = 30.0

    def should_retry(self, job: JobRecord, outcome: PipelineResult) -> bool:
        if outcome.state != JobState.FAILED or job.attempt > self.max_retries:
            return False
        if outcome.timed_out:
            return self.retry_on_timeout
        return outcome.retryable

    def delay_for(self, failed_attempt: int) -> float:
        """Backoff before retrying a job that failed on ``failed_attempt``."""
        return self.backoff_seconds * 2 ** (failed_attempt - 1)


class JobScheduler:
    """
    Bounded pool of workers that process queued generation jobs.

    Usage:
        scheduler = JobScheduler(store, runner, emitter, max_concurrency=3)
        await scheduler.start()
        await scheduler.enqueue(job_id)
        ...
        await scheduler.shutdown()
    """

    def __init__(
        self,
        store: JobStore,
        runner: PipelineRunner,
        emitter: ProgressEmitter,
        max_concurrency: int = 3,
        retry_policy: Optional[RetryPolicy] = None,
        intake_poll_interval: Optional[float] = None,
        log_retention: int = 200,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.store = store
        self.runner = runner
        self.emitter = emitter
        self.max_concurrency = max_concurrency
        self.retry_policy = retry_policy
        self.intake_poll_interval = intake_poll_interval
        self.log_retention = log_retention

        # Insertion-ordered set of queued job ids (FIFO)
        self._pending: "OrderedDict[str, None]" = OrderedDict()
        self._active: Set[str] = set()
        # Queued jobs waiting for their run_after time
        self._delayed: Dict[str, Job] = {}
        self._cond = asyncio.Condition()
        self._paused = False
        self._stopping = False
        self._workers: List[asyncio.Task] = []
        self._timers: Optional[AsyncIOScheduler] = None
        self.peak_concurrency = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def pending_jobs(self) -> List[str]:
        return list(self._pending)

    @property
    def active_jobs(self) -> List[str]:
        return list(self._active)

    @property
    def delayed_jobs(self) -> List[str]:
        return list(self._delayed)

    async def start(self):
        """Recover leftovers from the store and start the workers."""
        if self._workers:
            return

        self._stopping = False
        if self._timers is None:
            self._timers = AsyncIOScheduler()
            self._timers.start()
        await self._recover()

        self._workers = [
            asyncio.create_task(self._worker_loop(n), name=f"gamegen-worker-{n}")
            for n in range(self.max_concurrency)
        ]

        if self.intake_poll_interval:
            self._timers.add_job(
                self.adopt_queued,
                trigger=IntervalTrigger(seconds=self.intake_poll_interval),
                id="intake_poll",
                name="Adopt queued generation jobs",
                replace_existing=True,
                max_instances=1
            )

        logger.info(
            "Worker pool started",
            workers=self.max_concurrency,
            pending=len(self._pending),
            delayed=len(self._delayed),
            poll_interval=self.intake_poll_interval,
        )

    async def shutdown(self, cancel_in_flight: bool = False, timeout: Optional[float] = None):
        """
        Stop intake and wait for running jobs to finish.

        With ``cancel_in_flight`` every running job is asked to cancel at
        its next stage boundary first. If ``timeout`` expires the workers
        are cancelled outright; their jobs stay ``processing`` in the store
        and are failed as interrupted on the next start. Delayed retries
        stay ``queued`` in the store and are picked up on the next start.
        """
        if self._timers is not None:
            if self._timers.running:
                self._timers.shutdown(wait=False)
            self._timers = None

        if cancel_in_flight:
            for job_id in list(self._active):
                await self.cancel(job_id)

        async with self._cond:
            self._stopping = True
            self._delayed.clear()
            self._cond.notify_all()

        workers, self._workers = self._workers, []
        if not workers:
            return

        done, still_running = await asyncio.wait(workers, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Worker pool stopped with jobs still running", jobs=len(still_running))
        else:
            logger.info("Worker pool stopped")

    async def _recover(self):
        """Fail jobs a previous process left mid-flight; requeue the rest."""
        for job in await self.store.list(JobState.PROCESSING, limit=None):
            if job.id in self._active:
                continue

            def interrupt(j: JobRecord):
                j.append_log("Worker stopped while processing", self.log_retention)
                j.transition(JobState.FAILED, error="Interrupted: worker stopped while processing")

            try:
                job = await self.store.update(job.id, interrupt)
            except (AlreadyTerminal, InvalidTransition, JobNotFound):
                continue
            self.emitter.emit(job, job.error)
            logger.warning("Job was interrupted", job_id=job.id, kind=job.kind)

        await self.adopt_queued()

    async def adopt_queued(self) -> int:
        """Add queued jobs from the store that this pool does not know yet."""
        jobs = await self.store.list(JobState.QUEUED, limit=None)
        now = utcnow()
        adopted = 0
        async with self._cond:
            for job in jobs:
                if job.id in self._pending or job.id in self._active or job.id in self._delayed:
                    continue
                if job.run_after is not None and job.run_after > now:
                    if self._timers is None:
                        # Not started; picked up by start()
                        continue
                    self._delay(job)
                else:
                    self._pending[job.id] = None
                adopted += 1
            if adopted:
                self._cond.notify_all()
        if adopted:
            logger.info("Adopted queued jobs from store", count=adopted)
        return adopted

    async def join(self):
        """Wait until nothing is pending, delayed or running."""
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._pending and not self._active and not self._delayed
            )

    # =========================================================================
    # Intake and control
    # =========================================================================

    async def enqueue(self, job_id: str) -> bool:
        """Add a stored, queued job to the intake. False if already known."""
        async with self._cond:
            if job_id in self._pending or job_id in self._active or job_id in self._delayed:
                return False
            self._pending[job_id] = None
            self._cond.notify()
        return True

    def _delay(self, job: JobRecord):
        # Caller holds self._cond
        self._delayed[job.id] = self._timers.add_job(
            self._release,
            trigger=DateTrigger(run_date=job.run_after),
            args=[job.id],
            id=f"retry:{job.id}",
            name=f"Release retry {job.id}",
            replace_existing=True,
            misfire_grace_time=None,
        )

    async def _release(self, job_id: str):
        """Backoff over: move a delayed job into the intake."""
        async with self._cond:
            if self._delayed.pop(job_id, None) is None or self._stopping:
                return
            self._pending[job_id] = None
            self._cond.notify_all()
        logger.debug("Retry released to the queue", job_id=job_id)

    async def _forget(self, job_id: str):
        """Drop a job that reached a terminal state from intake and timers."""
        async with self._cond:
            self._pending.pop(job_id, None)
            timer = self._delayed.pop(job_id, None)
            if timer is not None:
                try:
                    timer.remove()
                except JobLookupError:
                    pass
            self._cond.notify_all()

    async def pause(self) -> bool:
        """Stop starting new jobs. Returns False if already paused."""
        async with self._cond:
            if self._paused:
                return False
            self._paused = True
        logger.info("Queue paused", running=len(self._active), pending=len(self._pending))
        return True

    async def resume(self) -> bool:
        """Re-enable intake. Returns False if not paused."""
        async with self._cond:
            if not self._paused:
                return False
            self._paused = False
            self._cond.notify_all()
        logger.info("Queue resumed", pending=len(self._pending))
        return True

    async def cancel(self, job_id: str) -> CancelResult:
        """
        Cancel a job.

        A queued job nobody is running is cancelled on the spot. A job a
        worker owns gets its cancel flag set and stops at the next stage
        boundary. Raises JobNotFound for unknown ids. The job leaves the
        intake only once its new state is stored, so a failed store write
        leaves it queued and runnable.
        """
        async with self._cond:
            owned = job_id in self._active

        def apply(job: JobRecord):
            if job.is_terminal:
                raise AlreadyTerminal(job.id, job.state.value)
            if job.state == JobState.QUEUED and not owned:
                job.append_log("Cancelled while queued", self.log_retention)
                job.transition(JobState.CANCELLED)
            elif job.request_cancel():
                job.append_log("Cancellation requested", self.log_retention)

        try:
            job = await self.store.update(job_id, apply)
        except AlreadyTerminal as e:
            await self._forget(job_id)
            logger.debug("Cancel ignored", job_id=job_id, state=e.state)
            return CancelResult.ALREADY_TERMINAL

        if job.state == JobState.CANCELLED:
            await self._forget(job_id)
            self.emitter.emit(job, "Cancelled while queued")
            logger.info("Job cancelled while queued", job_id=job_id)
            return CancelResult.CANCELLED

        self.emitter.emit(job, "Cancellation requested")
        logger.info("Cancellation requested", job_id=job_id)
        return CancelResult.REQUESTED

    async def stats(self) -> QueueStats:
        counts = await self.store.count_by_state()
        delayed = len(self._delayed)
        return QueueStats(
            queued_count=max(counts[JobState.QUEUED] - delayed, 0),
            delayed_count=delayed,
            processing_count=counts[JobState.PROCESSING],
            completed_count=counts[JobState.COMPLETED],
            failed_count=counts[JobState.FAILED],
            cancelled_count=counts[JobState.CANCELLED],
            is_paused=self._paused,
            max_concurrency=self.max_concurrency,
        )

    # =========================================================================
    # Workers
    # =========================================================================

    async def _next_job(self) -> Optional[str]:
        async with self._cond:
            await self._cond.wait_for(
                lambda: self._stopping or (not self._paused and bool(self._pending))
            )
            if self._stopping:
                return None
            job_id, _ = self._pending.popitem(last=False)
            self._active.add(job_id)
            self.peak_concurrency = max(self.peak_concurrency, len(self._active))
            return job_id

    async def _worker_loop(self, worker_number: int):
        while True:
            job_id = await self._next_job()
            if job_id is None:
                break

            try:
                await self._process_job(job_id)
            except Exception as e:
                # Store trouble; the job stays as the store last saw it
                logger.error(
                    f"Worker {worker_number} error: {e}",
                    job_id=job_id,
                    error_type=type(e).__name__,
                )
            finally:
                async with self._cond:
                    self._active.discard(job_id)
                    self._cond.notify_all()

    async def _process_job(self, job_id: str):
        def begin(job: JobRecord):
            job.transition(JobState.PROCESSING)
            job.append_log("Processing started", self.log_retention)

        try:
            job = await self.store.update(job_id, begin)
        except (JobNotFound, AlreadyTerminal, InvalidTransition) as e:
            # Cancelled or deleted before a worker got to it
            logger.debug(f"Skipping job: {e}", job_id=job_id)
            return

        self.emitter.emit(job, "Processing started")
        logger.info("Processing job", job_id=job_id, kind=job.kind, attempt=job.attempt)
        start_time = time.time()

        try:
            outcome = await self.runner.run(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Pipeline crashed", job_id=job_id, error=str(e))
            outcome = PipelineResult(
                JobState.FAILED,
                error=f"Internal error: {type(e).__name__}: {e}",
            )

        job = await self._finish(job_id, outcome)
        logger.info(
            f"Job {job.state.value}",
            job_id=job_id,
            duration=round(time.time() - start_time, 3),
            error=job.error,
        )

        if self.retry_policy and self.retry_policy.should_retry(job, outcome):
            await self._spawn_retry(job)

    async def _finish(self, job_id: str, outcome: PipelineResult) -> JobRecord:
        def finish(job: JobRecord):
            if outcome.state == JobState.COMPLETED:
                job.append_log("Job completed", self.log_retention)
                job.transition(JobState.COMPLETED, result=outcome.result)
            elif outcome.state == JobState.CANCELLED:
                job.transition(JobState.CANCELLED)
            else:
                job.transition(JobState.FAILED, error=outcome.error)

        job = await self.store.update(job_id, finish)
        self.emitter.emit(job, outcome.error or job.state.value)
        return job

    async def _spawn_retry(self, failed: JobRecord) -> JobRecord:
        delay = self.retry_policy.delay_for(failed.attempt)
        retry = JobRecord(
            kind=failed.kind,
            payload=failed.payload,
            attempt=failed.attempt + 1,
            retry_of=failed.id,
        )
        if delay > 0:
            retry.run_after = utcnow() + timedelta(seconds=delay)
            retry.append_log(
                f"Retry of job {failed.id} (attempt {retry.attempt}) in {delay:g}s",
                self.log_retention,
            )
        else:
            retry.append_log(f"Retry of job {failed.id} (attempt {retry.attempt})", self.log_retention)
        await self.store.create(retry)

        async with self._cond:
            if self._stopping or self._timers is None:
                # Left queued in the store for the next start
                pass
            elif retry.run_after is not None:
                self._delay(retry)
            else:
                self._pending[retry.id] = None
                self._cond.notify()

        self.emitter.emit(retry, "Queued for retry")
        logger.info(
            f"Job {failed.id} will be retried",
            job_id=retry.id,
            attempt=retry.attempt,
            delay=delay,
        )
        return retry
