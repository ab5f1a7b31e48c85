"""
Registry mapping job kinds to their stage pipelines.

Pipelines are registered once at startup; ``freeze()`` locks the
registry so lookups during processing always see the same pipelines.
"""

from typing import Dict, List, Sequence, Union

from gamegen.jobs.errors import InvalidPipeline, UnknownJobKind
from gamegen.jobs.models import JobKind, normalize_kind
from gamegen.jobs.pipeline import Pipeline, Stage


class PipelineRegistry:
    """kind -> Pipeline"""

    def __init__(self):
        self._pipelines: Dict[str, Pipeline] = {}
        self._frozen = False

    def register(
        self,
        kind: Union[str, JobKind],
        stages: Union[Pipeline, Sequence[Stage]],
    ) -> Pipeline:
        if self._frozen:
            raise InvalidPipeline("Pipeline registry is frozen; register pipelines at startup")

        kind = normalize_kind(kind)
        if kind in self._pipelines:
            raise InvalidPipeline(f"A pipeline for '{kind}' is already registered")

        pipeline = stages if isinstance(stages, Pipeline) else Pipeline(kind, stages)
        if pipeline.kind != kind:
            raise InvalidPipeline(f"Pipeline for '{pipeline.kind}' registered as '{kind}'")

        self._pipelines[kind] = pipeline
        return pipeline

    def resolve(self, kind: Union[str, JobKind]) -> Pipeline:
        pipeline = self._pipelines.get(normalize_kind(kind))
        if pipeline is None:
            raise UnknownJobKind(normalize_kind(kind))
        return pipeline

    def freeze(self) -> "PipelineRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def kinds(self) -> List[str]:
        return list(self._pipelines)

    def __contains__(self, kind) -> bool:
        return normalize_kind(kind) in self._pipelines

    def __len__(self) -> int:
        return len(self._pipelines)
