"""Exception hierarchy for the arena engine.

Provider errors never leave a provider: they are resolved to a HOLD decision.
Orchestration errors are fatal for the run and move it to ``failed``.
"""
from typing import Optional


class ArenaError(Exception):
    """Base class for all arena errors."""


class ConfigurationError(ArenaError):
    """Invalid simulation or application configuration."""


class ProviderError(ArenaError):
    """A decision backend failed to produce a usable decision."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ProviderTimeoutError(ProviderError):
    """The backend did not answer within its timeout."""


class ProviderResponseError(ProviderError):
    """The backend answered with an HTTP error or an unparsable body."""


class OrchestrationError(ArenaError):
    """Failure outside per-model isolation (persistence, setup)."""


class RunNotFoundError(ArenaError):
    """Unknown run id."""


class RunStateError(ArenaError):
    """Operation not allowed in the run's current status."""
