"""Shared fixtures for the generation queue tests."""

import asyncio
from typing import Any, List, Optional, Tuple

import pytest

from gamegen.config import AppConfig
from gamegen.jobs import (
    JobState,
    JobStore,
    MemoryJobBackend,
    PipelineRegistry,
    ProgressEmitter,
    Stage,
    build_controller,
)


class StageScript:
    """Builds test stages and records which (job, stage) pairs ran."""

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []

    def stage(
        self,
        name: str,
        weight: int,
        delay: float = 0.0,
        error: Optional[BaseException] = None,
        outcome: Any = None,
        timeout: Optional[float] = None,
        gate: Optional[asyncio.Event] = None,
        started: Optional[asyncio.Event] = None,
    ) -> Stage:
        async def executor(payload, context):
            self.calls.append((context.job_id, name))
            if started is not None:
                started.set()
            if gate is not None:
                await gate.wait()
            if delay:
                await asyncio.sleep(delay)
            if error is not None:
                raise error
            return outcome

        return Stage(name=name, label=name.title(), weight=weight, executor=executor, timeout=timeout)

    def stages_for(self, job_id: str) -> List[str]:
        return [stage for jid, stage in self.calls if jid == job_id]


@pytest.fixture
def script():
    return StageScript()


@pytest.fixture
def settings():
    return AppConfig(
        _env_file=None,
        QUEUE_MAX_CONCURRENCY=2,
        STAGE_TIMEOUT_SECONDS=2.0,
        GENERATION_RETRIES=0,
        RETRY_BACKOFF_SECONDS=0,
        JOB_BACKEND="memory",
        JOB_LOG_RETENTION=50,
        STATUS_LOG_TAIL=50,
    )


@pytest.fixture
def store():
    return JobStore(MemoryJobBackend())


@pytest.fixture
def emitter():
    return ProgressEmitter(buffer_size=64)


@pytest.fixture
async def make_controller(settings):
    """Factory: build and start a controller around a registry."""
    controllers = []

    async def factory(registry: PipelineRegistry, backend=None, **overrides):
        cfg = settings.model_copy(update=overrides) if overrides else settings
        controller = build_controller(
            registry=registry,
            settings=cfg,
            backend=backend or MemoryJobBackend(),
        )
        await controller.start()
        controllers.append(controller)
        return controller

    yield factory

    for controller in controllers:
        await controller.shutdown(cancel_in_flight=True, timeout=5)


@pytest.fixture
def wait_terminal():
    """Poll a job until it reaches a terminal state."""

    async def wait(controller, job_id: str, timeout: float = 5.0):
        async def poll():
            while True:
                view = await controller.status(job_id)
                if view.state in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED):
                    return view
                await asyncio.sleep(0.01)

        return await asyncio.wait_for(poll(), timeout)

    return wait


@pytest.fixture
def wait_idle():
    async def wait(controller, timeout: float = 5.0):
        await asyncio.wait_for(controller.wait_idle(), timeout)

    return wait
