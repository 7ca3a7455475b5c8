"""Per-unit failure kinds raised inside a batch run.

Every failure pauses the batch at a decision point; the `error_code` lets the
decision provider and the event stream tell a rejection from a timeout.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class UnitFailure(Exception):
    """Base class for failures of a single generation unit."""

    message: str
    error_code: str

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.error_code}: {self.message}"


class UnitGenerationRejected(UnitFailure):
    def __init__(self, message: str = "The writer rejected the generation request") -> None:
        super().__init__(message=message, error_code="generation_rejected")


class UnitFinalizeRejected(UnitFailure):
    def __init__(self, message: str = "Finalizing the chapter failed") -> None:
        super().__init__(message=message, error_code="finalize_rejected")


class UnitNotPersisted(UnitFailure):
    def __init__(
        self, message: str = "The chapter finished without a persisted id"
    ) -> None:
        super().__init__(message=message, error_code="not_persisted")


class UnitTimeout(UnitFailure):
    def __init__(self, stage: str, seconds: float) -> None:
        super().__init__(
            message=f"Timed out after {seconds:g}s waiting for {stage}",
            error_code="timeout",
        )
        self.stage = stage
