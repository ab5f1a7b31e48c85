"""
Stage pipelines and the runner that drives one job through them.

A pipeline is an ordered list of stages, each owning a share of the
0-100 progress range. The runner executes stages strictly in order,
checks the job's cancel flag at every stage boundary, enforces a timeout
on every stage and turns any stage error into a failed result. It never
retries; retries are new jobs created by the scheduler.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from gamegen.jobs.errors import InvalidPipeline, JobQueueError, StageFailure, StageTimeout
from gamegen.jobs.events import ProgressEmitter
from gamegen.jobs.models import JobRecord, JobState
from gamegen.jobs.store import JobStore
from gamegen.utils.logging import pipeline_logger as logger


# =============================================================================
# Stage outcomes
# =============================================================================

@dataclass
class Continue:
    """Stage succeeded. ``progress_delta=None`` fills the stage's share."""
    progress_delta: Optional[int] = None
    log_line: Optional[str] = None
    output: Any = None


@dataclass
class Fail:
    """Stage failed; the job ends ``failed``."""
    error: Union[str, BaseException]
    retryable: bool = False


@dataclass
class Cancelled:
    """Stage noticed the cancel flag and stopped early."""
    reason: Optional[str] = None


StageOutcome = Union[Continue, Fail, Cancelled]

StageExecutor = Callable[
    [Any, "StageContext"],
    Union[Optional[StageOutcome], Awaitable[Optional[StageOutcome]]]
]


# =============================================================================
# Pipeline definition
# =============================================================================

@dataclass
class Stage:
    """One step of a pipeline."""
    name: str
    weight: int
    executor: StageExecutor
    label: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def display(self) -> str:
        return self.label or self.name


class Pipeline:
    """Ordered stages for one job kind; weights must add up to 100."""

    def __init__(self, kind: str, stages: Sequence[Stage]):
        if not stages:
            raise InvalidPipeline(f"Pipeline '{kind}' has no stages")

        names = [s.name for s in stages]
        if len(set(names)) != len(names):
            raise InvalidPipeline(f"Pipeline '{kind}' has duplicate stage names: {names}")

        for stage in stages:
            if not isinstance(stage.weight, int) or stage.weight <= 0:
                raise InvalidPipeline(
                    f"Stage '{stage.name}' of '{kind}' needs a positive integer weight"
                )
            if stage.timeout is not None and stage.timeout <= 0:
                raise InvalidPipeline(
                    f"Stage '{stage.name}' of '{kind}' has a non-positive timeout ({stage.timeout})"
                )

        total = sum(s.weight for s in stages)
        if total != 100:
            raise InvalidPipeline(f"Stage weights of '{kind}' add up to {total}, expected 100")

        self.kind = kind
        self.stages: List[Stage] = list(stages)
        self.ceilings: List[int] = []
        running = 0
        for stage in self.stages:
            running += stage.weight
            self.ceilings.append(running)

    def __len__(self) -> int:
        return len(self.stages)

    def __repr__(self) -> str:
        return f"Pipeline({self.kind!r}, {[s.name for s in self.stages]})"


# =============================================================================
# Runtime
# =============================================================================

class StageContext:
    """What a stage executor can see and do while it runs."""

    def __init__(
        self,
        runner: "PipelineRunner",
        job: JobRecord,
        stage: Stage,
        ceiling: int,
        artifacts: Dict[str, Any],
    ):
        self.job_id = job.id
        self.kind = job.kind
        self.attempt = job.attempt
        self.stage = stage
        self.ceiling = ceiling
        self.artifacts = artifacts
        # Set by a stage to override the pipeline result
        self.result: Any = None
        self._runner = runner
        self._progress = job.progress

    @property
    def progress(self) -> int:
        return self._progress

    async def report(self, delta: int, message: Optional[str] = None) -> int:
        """Advance progress within this stage's share and optionally log."""
        self._progress = await self._runner._advance(
            self.job_id, self._progress + max(delta, 0), self.ceiling, message
        )
        return self._progress

    async def cancel_requested(self) -> bool:
        return await self._runner._cancel_seen(self.job_id)


@dataclass
class PipelineResult:
    """How a run ended. The scheduler applies it to the job record."""
    state: JobState
    result: Any = None
    error: Optional[str] = None
    retryable: bool = False
    timed_out: bool = False
    stages_run: List[str] = field(default_factory=list)


class PipelineRunner:
    """
    Executes a job's stages in order.

    Usage:
        runner = PipelineRunner(store, emitter, registry)
        outcome = await runner.run(job)
    """

    def __init__(
        self,
        store: JobStore,
        emitter: ProgressEmitter,
        registry,
        default_timeout: float = 300.0,
        log_retention: int = 200,
    ):
        self.store = store
        self.emitter = emitter
        self.registry = registry
        self.default_timeout = default_timeout
        self.log_retention = log_retention

    async def run(self, job: JobRecord) -> PipelineResult:
        job_id = job.id
        start_time = time.time()

        try:
            pipeline = self.registry.resolve(job.kind)
        except JobQueueError as e:
            return PipelineResult(JobState.FAILED, error=str(e))

        logger.info("Pipeline started", job_id=job_id, kind=job.kind, stages=len(pipeline))

        artifacts: Dict[str, Any] = {}
        stages_run: List[str] = []
        last_output: Any = None
        override: Any = None

        for index, stage in enumerate(pipeline.stages):
            if await self._cancel_seen(job_id):
                return await self._cancelled(job_id, f"before {stage.display}", stages_run)

            job = await self._enter_stage(job_id, stage, index)
            ceiling = pipeline.ceilings[index]
            context = StageContext(self, job, stage, ceiling, artifacts)
            stages_run.append(stage.name)

            outcome = await self._execute(stage, job.payload, context)

            if isinstance(outcome, Fail):
                return await self._failed(job_id, stage, outcome, stages_run)

            if isinstance(outcome, Cancelled):
                return await self._cancelled(
                    job_id, outcome.reason or f"during {stage.display}", stages_run
                )

            if outcome.progress_delta is None:
                target = ceiling
            else:
                target = context.progress + max(outcome.progress_delta, 0)
            lines = [f"{stage.display} completed"]
            if outcome.log_line:
                lines.append(outcome.log_line)
            await self._advance(job_id, target, ceiling, *lines)

            if outcome.output is not None:
                artifacts[stage.name] = outcome.output
                last_output = outcome.output
            if context.result is not None:
                override = context.result

        # The last stage may have been running when cancel arrived
        if await self._cancel_seen(job_id):
            return await self._cancelled(job_id, "after final stage", stages_run)

        logger.info(
            "Pipeline completed",
            job_id=job_id,
            duration=round(time.time() - start_time, 3),
        )
        return PipelineResult(
            JobState.COMPLETED,
            result=override if override is not None else last_output,
            stages_run=stages_run,
        )

    # -------------------------------------------------------------------------

    async def _execute(self, stage: Stage, payload: Any, context: StageContext) -> StageOutcome:
        timeout = stage.timeout if stage.timeout is not None else self.default_timeout
        try:
            outcome = await asyncio.wait_for(self._invoke(stage, payload, context), timeout)
        except asyncio.TimeoutError:
            return Fail(StageTimeout(stage.name, timeout), retryable=True)
        except StageFailure as e:
            return Fail(e, retryable=e.retryable)
        except Exception as e:
            message = str(e) or type(e).__name__
            retryable = bool(getattr(e, "retryable", False))
            return Fail(StageFailure(stage.name, message, retryable, cause=e), retryable=retryable)

        if outcome is None:
            return Continue()
        if not isinstance(outcome, (Continue, Fail, Cancelled)):
            return Fail(StageFailure(stage.name, f"unexpected stage outcome {outcome!r}"))
        return outcome

    @staticmethod
    async def _invoke(stage: Stage, payload: Any, context: StageContext):
        executor = stage.executor
        if inspect.iscoroutinefunction(executor) or inspect.iscoroutinefunction(
            getattr(executor, "__call__", None)
        ):
            return await executor(payload, context)

        # Blocking executors run in a thread so other workers keep going
        result = await asyncio.to_thread(executor, payload, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _cancel_seen(self, job_id: str) -> bool:
        job = await self.store.get(job_id)
        return job.cancel_requested

    async def _enter_stage(self, job_id: str, stage: Stage, index: int) -> JobRecord:
        def enter(job: JobRecord):
            job.current_step = stage.display
            job.stage_index = index
            job.append_log(f"{stage.display} started", self.log_retention)

        job = await self.store.update(job_id, enter)
        self.emitter.emit(job, f"{stage.display} started")
        logger.debug(f"Entered stage {stage.name}", job_id=job_id, progress=job.progress)
        return job

    async def _advance(self, job_id: str, target: int, ceiling: int, *messages: Optional[str]) -> int:
        def advance(job: JobRecord):
            job.advance_progress(target, ceiling)
            for message in messages:
                if message:
                    job.append_log(message, self.log_retention)

        job = await self.store.update(job_id, advance)
        self.emitter.emit(job, messages[-1] if messages else None)
        return job.progress

    async def _failed(
        self,
        job_id: str,
        stage: Stage,
        outcome: Fail,
        stages_run: List[str],
    ) -> PipelineResult:
        error = outcome.error
        if isinstance(error, StageFailure):
            message = str(error)
        else:
            message = f"Stage '{stage.name}' failed: {error}"
        retryable = outcome.retryable or bool(getattr(error, "retryable", False))
        timed_out = isinstance(error, StageTimeout)

        await self.store.update(job_id, lambda job: job.append_log(message, self.log_retention))
        logger.warning(
            f"Stage {stage.name} failed", job_id=job_id, error=message, retryable=retryable
        )
        return PipelineResult(
            JobState.FAILED,
            error=message,
            retryable=retryable,
            timed_out=timed_out,
            stages_run=stages_run,
        )

    async def _cancelled(self, job_id: str, where: str, stages_run: List[str]) -> PipelineResult:
        message = f"Cancelled {where}"
        await self.store.update(job_id, lambda job: job.append_log(message, self.log_retention))
        logger.info("Job cancelled", job_id=job_id, where=where)
        return PipelineResult(JobState.CANCELLED, stages_run=stages_run)
