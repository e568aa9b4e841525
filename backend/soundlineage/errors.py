from typing import Dict, Optional


class LineageError(Exception):
    """Base error for the derivation engine."""


class ValidationError(LineageError):
    """Raised when a variation request is missing fields or is out of range."""


class NotFoundError(LineageError):
    """Raised when a parent sound, combine target or lineage cannot be resolved."""


class LineageExistsError(LineageError):
    """Raised when a lineage is created for a sound that already roots one."""


class SynthesisFailure(LineageError):
    """Raised by a synthesis client when a single generation fails."""

    def __init__(self, message: str, engine_id: Optional[str] = None):
        super().__init__(message)
        self.engine_id = engine_id


class BatchExhaustedError(LineageError):
    """Raised when every variation in a batch failed."""

    def __init__(self, requested: int, failures: Optional[Dict[int, str]] = None):
        self.requested = requested
        self.failures = failures or {}
        super().__init__(f"Failed to generate any of {requested} variations")


class StoreInconsistency(LineageError):
    """Raised when the lineage graph breaks its tree invariants."""
