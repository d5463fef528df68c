"""
Error types for the mastery engine.

Absence of a record is never an error; reads return ``None``. Upstream store
failures are wrapped in ``StoreError`` subclasses and propagate out of primary
operations, while best-effort propagation records them as
``PropagationFailure`` entries and carries on.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class MasteryErrorType(str, Enum):
    """Kinds of failure the engine distinguishes."""

    NOT_FOUND = "not_found"
    STORE_FAILURE = "store_failure"
    INVARIANT_CLAMPED = "invariant_clamped"
    UNKNOWN_ERROR = "unknown_error"


class MasteryError(Exception):
    """Base exception for the mastery engine."""


class StoreError(MasteryError):
    """Raised when an external store operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying backend error.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


class RecordStoreError(StoreError):
    """Failure reading or writing mastery records."""


class GraphStoreError(StoreError):
    """Failure loading a learner's knowledge graph."""


class PropagationFailure(BaseModel):
    """Structured information about a neighbor update that was skipped."""

    concept_id: str
    error_type: MasteryErrorType = MasteryErrorType.UNKNOWN_ERROR
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_exception(cls, concept_id: str, error: Exception) -> PropagationFailure:
        """Build a failure entry from a caught exception."""
        error_type = (
            MasteryErrorType.STORE_FAILURE
            if isinstance(error, StoreError)
            else MasteryErrorType.UNKNOWN_ERROR
        )
        return cls(concept_id=concept_id, error_type=error_type, message=str(error))

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "concept_id": self.concept_id,
            "error_type": self.error_type.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
