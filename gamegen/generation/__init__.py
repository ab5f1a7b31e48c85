"""Stage pipelines backed by AI generation providers."""

from gamegen.generation.providers import (
    GenerationProvider,
    ProviderError,
    is_transient,
    load_provider,
)
from gamegen.generation.pipelines import (
    ProviderStage,
    build_default_registry,
    GAME_GENERATION_STAGES,
    ASSET_BATCH_STAGES,
    TEST_SUITE_STAGES,
)

__all__ = [
    "GenerationProvider",
    "ProviderError",
    "is_transient",
    "load_provider",
    "ProviderStage",
    "build_default_registry",
    "GAME_GENERATION_STAGES",
    "ASSET_BATCH_STAGES",
    "TEST_SUITE_STAGES",
]
