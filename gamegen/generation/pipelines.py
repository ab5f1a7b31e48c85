"""
Default stage pipelines for the built-in job kinds.

Every stage hands its operation to the generation provider; what a game,
an asset batch or a test run actually contains is the provider's concern.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from gamegen.generation.providers import GenerationProvider, ProviderError, is_transient
from gamegen.jobs.errors import StageFailure
from gamegen.jobs.models import JobKind
from gamegen.jobs.pipeline import Continue, Fail, Stage, StageContext, StageOutcome
from gamegen.jobs.registry import PipelineRegistry


# (stage name, label, share of progress)
GAME_GENERATION_STAGES: List[Tuple[str, str, int]] = [
    ("prompt_analysis", "Prompt analysis", 5),
    ("game_design", "Game design", 10),
    ("project_structure", "Project structure", 10),
    ("code_generation", "Code generation", 25),
    ("asset_generation", "Asset generation", 20),
    ("sdk_integration", "SDK integration", 10),
    ("build", "Build", 10),
    ("validation", "Validation", 5),
    ("archive", "Archive", 5),
]

ASSET_BATCH_STAGES: List[Tuple[str, str, int]] = [
    ("plan", "Asset planning", 10),
    ("generate", "Asset generation", 60),
    ("optimize", "Optimization", 20),
    ("package", "Packaging", 10),
]

TEST_SUITE_STAGES: List[Tuple[str, str, int]] = [
    ("prepare", "Test preparation", 10),
    ("run", "Device test run", 70),
    ("report", "Test report", 20),
]


class ProviderStage:
    """Stage executor that delegates one operation to a provider."""

    def __init__(self, provider: GenerationProvider, operation: str):
        self.provider = provider
        self.operation = operation

    async def __call__(self, payload: Any, context: StageContext) -> StageOutcome:
        try:
            output = await self.provider.invoke(self.operation, payload, dict(context.artifacts))
        except ProviderError as e:
            return Fail(e, retryable=e.retryable)
        except Exception as e:
            retryable = is_transient(e)
            return Fail(
                StageFailure(context.stage.name, str(e) or type(e).__name__, retryable, cause=e),
                retryable=retryable,
            )
        return Continue(output=output)

    def __repr__(self) -> str:
        return f"ProviderStage({self.operation!r})"


def provider_stages(
    provider: GenerationProvider,
    definitions: Sequence[Tuple[str, str, int]],
    timeouts: Optional[Dict[str, float]] = None,
) -> List[Stage]:
    timeouts = timeouts or {}
    return [
        Stage(
            name=name,
            label=label,
            weight=weight,
            executor=ProviderStage(provider, name),
            timeout=timeouts.get(name),
        )
        for name, label, weight in definitions
    ]


def build_default_registry(
    provider: GenerationProvider,
    timeouts: Optional[Dict[str, float]] = None,
) -> PipelineRegistry:
    """
    Registry with the game_generation, asset_batch and test_suite pipelines.

    ``timeouts`` maps stage names to per-stage limits in seconds; other
    stages use the runner's default.
    """
    registry = PipelineRegistry()
    registry.register(
        JobKind.GAME_GENERATION, provider_stages(provider, GAME_GENERATION_STAGES, timeouts)
    )
    registry.register(
        JobKind.ASSET_BATCH, provider_stages(provider, ASSET_BATCH_STAGES, timeouts)
    )
    registry.register(
        JobKind.TEST_SUITE, provider_stages(provider, TEST_SUITE_STAGES, timeouts)
    )
    return registry
