"""
Interface to the AI generation services that pipeline stages call.

Concrete clients (text/code models, image models, device farms) live
outside this package; they implement ``GenerationProvider`` and are
handed to ``build_default_registry``.
"""

import importlib
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class ProviderError(Exception):
    """Error reported by a generation provider."""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.provider = provider
        self.status_code = status_code


# Error text that points at a transient upstream problem
TRANSIENT_MARKERS = ("timeout", "rate limit", "429", "503", "502", "connection")


def is_transient(error: BaseException) -> bool:
    """Guess whether retrying the same request could succeed."""
    if isinstance(error, ProviderError):
        return error.retryable
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


class GenerationProvider(ABC):
    """Performs named generation operations for pipeline stages."""

    @abstractmethod
    async def invoke(self, operation: str, payload: Any, artifacts: Dict[str, Any]) -> Any:
        """
        Run one operation.

        Args:
            operation: Stage operation name (e.g. "code_generation")
            payload: The job's payload
            artifacts: Outputs of earlier stages, keyed by stage name

        Returns:
            The stage output, made available to later stages
        """
        ...


def load_provider(path: str) -> GenerationProvider:
    """
    Import a provider from "package.module:attribute".

    The attribute may be a provider instance or a zero-argument factory.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Provider path must look like 'module:attribute', got '{path}'")

    target = getattr(importlib.import_module(module_name), attribute)
    provider = target if isinstance(target, GenerationProvider) else target()
    if not isinstance(provider, GenerationProvider):
        raise TypeError(f"{path} did not produce a GenerationProvider")
    return provider
