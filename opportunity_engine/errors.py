"""
Exception types for the opportunity engine.

Only store connectivity failures (and a rebuild for an unknown hunt) reach
a batch caller.
Malformed input, ambiguous fetches and empty result sets are represented
as data, never as exceptions.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(EngineError):
    """Required configuration (e.g. Supabase credentials) is missing."""


class StoreError(EngineError):
    """
    The datastore could not be reached or rejected a write.

    Fatal for the current batch invocation; the scheduler retries on its
    next tick.
    """

    def __init__(self, operation: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.cause = cause
        message = f"Store operation '{operation}' failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class HuntNotFoundError(EngineError):
    """A rebuild was requested for a hunt id the store does not know."""

    def __init__(self, hunt_id: str):
        self.hunt_id = hunt_id
        super().__init__(f"Hunt not found: {hunt_id}")
