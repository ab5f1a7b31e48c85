"""Tests for the worker pool: concurrency, pause/resume, cancellation, retries."""

import asyncio
import random
from datetime import timedelta

import pytest

from gamegen.jobs import (
    CancelResult,
    JobNotFound,
    JobRecord,
    JobScheduler,
    JobState,
    JobStore,
    MemoryJobBackend,
    PipelineRegistry,
    PipelineRunner,
    ProgressEmitter,
    QueueUnavailable,
    RetryPolicy,
    Stage,
    StageFailure,
)
from gamegen.jobs.models import utcnow
from gamegen.jobs.pipeline import PipelineResult


def single_stage_registry(script, **stage_kwargs) -> PipelineRegistry:
    registry = PipelineRegistry()
    registry.register("k", [script.stage("only", 100, **stage_kwargs)])
    return registry


class FlakyBackend(MemoryJobBackend):
    """Memory backend whose next write can be made to fail."""
    unavailable_errors = (OSError,)

    def __init__(self):
        super().__init__()
        self.fail_next_put = False

    async def put(self, job):
        if self.fail_next_put:
            self.fail_next_put = False
            raise OSError("connection reset")
        await super().put(job)


async def wait_for_delayed(controller, count: int = 1, timeout: float = 2.0):
    async def poll():
        while True:
            stats = await controller.queue_stats()
            if stats.delayed_count == count:
                return stats
            await asyncio.sleep(0.005)

    return await asyncio.wait_for(poll(), timeout)


class TestConcurrency:

    async def test_never_exceeds_max_concurrency(self, make_controller, wait_idle):
        rng = random.Random(7)

        async def jittery(payload, context):
            await asyncio.sleep(rng.uniform(0.005, 0.04))

        registry = PipelineRegistry()
        registry.register("k", [
            Stage(name="a", weight=30, executor=jittery),
            Stage(name="b", weight=70, executor=jittery),
        ])
        controller = await make_controller(registry)
        for _ in range(12):
            await controller.submit("k", {})

        async def sample():
            samples = []
            while True:
                stats = await controller.queue_stats()
                samples.append(stats.processing_count)
                if stats.completed_count == 12:
                    return samples
                await asyncio.sleep(0.003)

        samples = await asyncio.wait_for(sample(), 5)
        await wait_idle(controller)
        assert max(samples) <= 2
        assert controller.scheduler.peak_concurrency == 2

    async def test_jobs_start_in_submission_order(self, make_controller, script, wait_idle):
        controller = await make_controller(single_stage_registry(script), QUEUE_MAX_CONCURRENCY=1)
        ids = [await controller.submit("k", {"n": n}) for n in range(4)]
        await wait_idle(controller)
        assert [job_id for job_id, _ in script.calls] == ids


class TestPauseResume:

    async def test_paused_queue_starts_nothing(self, make_controller, script, wait_idle):
        controller = await make_controller(single_stage_registry(script), QUEUE_MAX_CONCURRENCY=1)
        await controller.pause_all()
        ids = [await controller.submit("k", {}) for _ in range(3)]

        await asyncio.sleep(0.05)
        assert script.calls == []
        stats = await controller.queue_stats()
        assert stats.is_paused
        assert stats.queued_count == 3

        await controller.resume_all()
        await wait_idle(controller)
        assert [job_id for job_id, _ in script.calls] == ids
        assert (await controller.queue_stats()).completed_count == 3

    async def test_pause_lets_running_job_finish(self, make_controller, script, wait_terminal):
        gate, started = asyncio.Event(), asyncio.Event()
        controller = await make_controller(single_stage_registry(script, gate=gate, started=started))
        job_id = await controller.submit("k", {})
        await asyncio.wait_for(started.wait(), 1)

        await controller.pause_all()
        gate.set()

        view = await wait_terminal(controller, job_id)
        assert view.state == JobState.COMPLETED

    async def test_pause_and_resume_are_idempotent(self, make_controller, script):
        controller = await make_controller(single_stage_registry(script))
        assert await controller.scheduler.pause() is True
        assert await controller.scheduler.pause() is False
        assert await controller.scheduler.resume() is True
        assert await controller.scheduler.resume() is False


class TestCancellation:

    async def test_cancel_queued_job(self, make_controller, script, wait_idle):
        controller = await make_controller(single_stage_registry(script))
        await controller.pause_all()
        job_id = await controller.submit("k", {})

        report = await controller.cancel_job(job_id)

        assert report.outcome == CancelResult.CANCELLED
        assert report.state == JobState.CANCELLED
        await controller.resume_all()
        await wait_idle(controller)
        view = await controller.status(job_id)
        assert view.state == JobState.CANCELLED
        assert view.progress == 0
        assert script.calls == []

    async def test_cancel_running_job_stops_at_next_stage(
        self, make_controller, script, wait_terminal
    ):
        gate, started = asyncio.Event(), asyncio.Event()
        registry = PipelineRegistry()
        registry.register("k", [
            script.stage("first", 40, gate=gate, started=started),
            script.stage("second", 60),
        ])
        controller = await make_controller(registry)
        job_id = await controller.submit("k", {})
        await asyncio.wait_for(started.wait(), 1)

        report = await controller.cancel_job(job_id)
        assert report.outcome == CancelResult.REQUESTED
        assert report.state == JobState.PROCESSING
        gate.set()

        view = await wait_terminal(controller, job_id)
        assert view.state == JobState.CANCELLED
        assert view.progress == 40
        assert script.stages_for(job_id) == ["first"]
        assert any("Cancellation requested" in line for line in view.logs)

    async def test_cancel_finished_job_is_rejected(self, make_controller, script, wait_terminal):
        controller = await make_controller(single_stage_registry(script))
        job_id = await controller.submit("k", {})
        await wait_terminal(controller, job_id)

        assert await controller.cancel(job_id) is False
        report = await controller.cancel_job(job_id)
        assert report.outcome == CancelResult.ALREADY_TERMINAL
        assert report.state == JobState.COMPLETED

    async def test_cancel_unknown_job(self, make_controller, script):
        controller = await make_controller(single_stage_registry(script))
        with pytest.raises(JobNotFound):
            await controller.cancel("missing")

    async def test_second_cancel_is_still_accepted(self, make_controller, script, wait_terminal):
        gate, started = asyncio.Event(), asyncio.Event()
        controller = await make_controller(single_stage_registry(script, gate=gate, started=started))
        job_id = await controller.submit("k", {})
        await asyncio.wait_for(started.wait(), 1)

        assert await controller.cancel(job_id)
        assert await controller.cancel(job_id)
        gate.set()
        assert (await wait_terminal(controller, job_id)).state == JobState.CANCELLED

    async def test_failed_cancel_write_leaves_job_runnable(
        self, make_controller, script, wait_terminal
    ):
        backend = FlakyBackend()
        controller = await make_controller(single_stage_registry(script), backend=backend)
        await controller.pause_all()
        job_id = await controller.submit("k", {})

        backend.fail_next_put = True
        with pytest.raises(QueueUnavailable):
            await controller.cancel(job_id)

        assert (await controller.status(job_id)).state == JobState.QUEUED
        assert controller.scheduler.pending_jobs == [job_id]

        await controller.resume_all()
        view = await wait_terminal(controller, job_id)
        assert view.state == JobState.COMPLETED
        assert script.stages_for(job_id) == ["only"]


class TestRetries:

    async def test_retryable_failure_spawns_new_jobs(self, make_controller, script, wait_idle):
        error = StageFailure("only", "upstream busy", retryable=True)
        controller = await make_controller(
            single_stage_registry(script, error=error), GENERATION_RETRIES=2
        )
        first = await controller.submit("k", {"prompt": "tetris"})
        await wait_idle(controller)

        jobs = await controller.list_jobs()
        assert len(jobs) == 3
        assert [j.attempt for j in jobs] == [1, 2, 3]
        assert all(j.state == JobState.FAILED for j in jobs)
        assert jobs[0].job_id == first
        assert jobs[1].retry_of == jobs[0].job_id
        assert jobs[2].retry_of == jobs[1].job_id

        retried = await controller.store.get(jobs[1].job_id)
        assert retried.payload == {"prompt": "tetris"}

    async def test_permanent_failure_is_not_retried(self, make_controller, script, wait_idle):
        controller = await make_controller(
            single_stage_registry(script, error=ValueError("bad prompt")), GENERATION_RETRIES=2
        )
        await controller.submit("k", {})
        await wait_idle(controller)
        assert len(await controller.list_jobs()) == 1

    async def test_timeouts_follow_retry_on_timeout(self, make_controller, script, wait_idle):
        controller = await make_controller(
            single_stage_registry(script, delay=1.0, timeout=0.05),
            GENERATION_RETRIES=2,
            RETRY_ON_TIMEOUT=False,
        )
        await controller.submit("k", {})
        await wait_idle(controller)

        jobs = await controller.list_jobs()
        assert len(jobs) == 1
        assert "timed out" in jobs[0].error

    def test_retry_policy_limits_attempts(self):
        policy = RetryPolicy(max_retries=1)
        failed = PipelineResult(JobState.FAILED, error="x", retryable=True)
        assert policy.should_retry(JobRecord(kind="k", attempt=1), failed)
        assert not policy.should_retry(JobRecord(kind="k", attempt=2), failed)
        assert not policy.should_retry(
            JobRecord(kind="k"), PipelineResult(JobState.CANCELLED)
        )

    def test_backoff_doubles_per_attempt(self):
        policy = RetryPolicy(backoff_seconds=30)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [30, 60, 120]
        assert RetryPolicy(backoff_seconds=0).delay_for(4) == 0

    async def test_retry_waits_out_backoff(self, make_controller, wait_idle):
        loop = asyncio.get_running_loop()
        started_at = []

        async def rate_limited_once(payload, context):
            started_at.append(loop.time())
            if context.attempt == 1:
                raise StageFailure("only", "rate limited", retryable=True)

        registry = PipelineRegistry()
        registry.register("k", [Stage(name="only", weight=100, executor=rate_limited_once)])
        controller = await make_controller(
            registry, GENERATION_RETRIES=1, RETRY_BACKOFF_SECONDS=0.2
        )
        await controller.submit("k", {})

        stats = await wait_for_delayed(controller)
        assert stats.queued_count == 0
        assert stats.failed_count == 1

        await wait_idle(controller)
        assert len(started_at) == 2
        assert started_at[1] - started_at[0] >= 0.2

        first, retry = await controller.list_jobs()
        assert retry.retry_of == first.job_id
        assert retry.state == JobState.COMPLETED
        assert retry.run_after is not None
        assert retry.started_at >= retry.run_after
        assert (await controller.queue_stats()).delayed_count == 0

    async def test_cancel_delayed_retry(self, make_controller, script, wait_idle):
        error = StageFailure("only", "upstream busy", retryable=True)
        controller = await make_controller(
            single_stage_registry(script, error=error),
            GENERATION_RETRIES=1,
            RETRY_BACKOFF_SECONDS=5,
        )
        await controller.submit("k", {})
        await wait_for_delayed(controller)
        retry_id = controller.scheduler.delayed_jobs[0]

        report = await controller.cancel_job(retry_id)

        assert report.outcome == CancelResult.CANCELLED
        await wait_idle(controller, timeout=1)
        assert script.stages_for(retry_id) == []
        stats = await controller.queue_stats()
        assert stats.delayed_count == 0
        assert stats.cancelled_count == 1


class TestRecoveryAndShutdown:

    async def test_start_fails_interrupted_and_adopts_queued(
        self, make_controller, script, wait_terminal
    ):
        backend = MemoryJobBackend()
        seed = JobStore(backend)
        interrupted = JobRecord(kind="k")
        interrupted.transition(JobState.PROCESSING)
        waiting = JobRecord(kind="k")
        await seed.create(interrupted)
        await seed.create(waiting)

        controller = await make_controller(single_stage_registry(script), backend=backend)

        view = await controller.status(interrupted.id)
        assert view.state == JobState.FAILED
        assert view.error.startswith("Interrupted")
        assert (await wait_terminal(controller, waiting.id)).state == JobState.COMPLETED

    async def test_start_keeps_backoff_of_stored_retry(self, make_controller, script):
        backend = MemoryJobBackend()
        retry = JobRecord(kind="k", attempt=2, run_after=utcnow() + timedelta(seconds=5))
        await JobStore(backend).create(retry)

        controller = await make_controller(single_stage_registry(script), backend=backend)

        assert controller.scheduler.delayed_jobs == [retry.id]
        stats = await controller.queue_stats()
        assert (stats.queued_count, stats.delayed_count) == (0, 1)
        await asyncio.sleep(0.05)
        assert script.calls == []

    async def test_intake_poll_adopts_jobs_written_elsewhere(
        self, make_controller, script, wait_terminal
    ):
        controller = await make_controller(single_stage_registry(script), INTAKE_POLL_SECONDS=0.05)
        job = JobRecord(kind="k")
        await controller.store.create(job)

        assert (await wait_terminal(controller, job.id)).state == JobState.COMPLETED

    async def test_shutdown_timeout_leaves_job_for_recovery(self, script):
        gate, started = asyncio.Event(), asyncio.Event()
        registry = single_stage_registry(script, gate=gate, started=started)
        store = JobStore(MemoryJobBackend())
        emitter = ProgressEmitter()
        runner = PipelineRunner(store, emitter, registry)

        scheduler = JobScheduler(store, runner, emitter, max_concurrency=1)
        await scheduler.start()
        job = JobRecord(kind="k")
        await store.create(job)
        await scheduler.enqueue(job.id)
        await asyncio.wait_for(started.wait(), 1)

        await scheduler.shutdown(cancel_in_flight=True, timeout=0.05)
        assert not scheduler.is_running
        stored = await store.get(job.id)
        assert stored.state == JobState.PROCESSING
        assert stored.cancel_requested

        restarted = JobScheduler(store, runner, emitter, max_concurrency=1)
        await restarted.start()
        assert (await store.get(job.id)).state == JobState.FAILED
        await restarted.shutdown()

    async def test_shutdown_drains_running_jobs(self, script):
        registry = single_stage_registry(script, delay=0.05)
        store = JobStore(MemoryJobBackend())
        emitter = ProgressEmitter()
        scheduler = JobScheduler(store, PipelineRunner(store, emitter, registry), emitter)
        await scheduler.start()
        job = JobRecord(kind="k")
        await store.create(job)
        await scheduler.enqueue(job.id)
        await asyncio.sleep(0.01)

        await scheduler.shutdown()
        assert (await store.get(job.id)).state == JobState.COMPLETED

    def test_concurrency_must_be_positive(self):
        store = JobStore()
        emitter = ProgressEmitter()
        with pytest.raises(ValueError):
            JobScheduler(store, PipelineRunner(store, emitter, PipelineRegistry()), emitter, 0)
