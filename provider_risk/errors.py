"""Error taxonomy for the scoring pipeline.

Every fatal error names the stage it was raised in, the invariant that was
violated and the offending record or count, so that an operator never has to
read a bare stack trace to learn what went wrong.
"""
from __future__ import annotations

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for all pipeline failures.

    Args:
        message: Human-readable description of the failure.
        stage: Pipeline stage name (e.g. "aggregate", "labels", "train").
        invariant: Short statement of the invariant that was violated.
        detail: The offending record, identifier or count.
    """

    default_stage = "pipeline"

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        invariant: Optional[str] = None,
        detail: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage
        self.invariant = invariant
        self.detail = detail

    def __str__(self) -> str:
        parts = [f"[{self.stage}] {self.message}"]
        if self.invariant:
            parts.append(f"invariant: {self.invariant}")
        if self.detail is not None:
            parts.append(f"detail: {self.detail}")
        return " | ".join(parts)


class ConfigError(PipelineError):
    """Missing or invalid configuration. Raised before any data is read."""

    default_stage = "config"


class MalformedRecordError(PipelineError):
    """A single billing row has negative counts or non-numeric amounts."""

    default_stage = "ingest"

    def __init__(self, message: str, reason: str, record: Any = None) -> None:
        super().__init__(
            message,
            invariant="counts and amounts are numeric and non-negative",
            detail=record,
        )
        self.reason = reason


class RejectionRateError(PipelineError):
    """Too many rows were rejected; the input is probably corrupt."""

    default_stage = "aggregate"


class LabelConflictError(PipelineError):
    """Duplicate or conflicting identifier-to-provider mappings."""

    default_stage = "labels"


class TrainingError(PipelineError):
    """The classifier cannot be trained or validated."""

    default_stage = "train"


class InsufficientPositivesError(TrainingError):
    """Too few examples of a class to build stratified folds."""
