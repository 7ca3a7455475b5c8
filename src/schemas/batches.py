"""Schemas for multi-chapter batch generation."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BatchState(StrEnum):
    IDLE = "idle"
    GENERATING_UNIT = "generating_unit"
    AWAITING_UNIT_COMPLETION = "awaiting_unit_completion"
    FINALIZING_UNIT = "finalizing_unit"
    AWAITING_NEXT_UNIT_READY = "awaiting_next_unit_ready"
    AWAITING_DECISION = "awaiting_decision"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {BatchState.COMPLETED, BatchState.CANCELLED, BatchState.FAILED}
)


class UnitStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class UnitDecision(StrEnum):
    """Answer to a paused unit failure."""

    CONTINUE = "continue"
    RETRY = "retry"
    STOP = "stop"


class UnitPlan(BaseModel):
    """What to write for one chapter of the batch."""

    sequence_number: Annotated[int, Field(ge=1, description="Chapter number")]
    title_hint: Annotated[
        str | None, Field(default=None, max_length=200, description="Suggested title")
    ]
    directive: Annotated[
        str | None,
        Field(
            default=None,
            max_length=4000,
            description="Free-text adjustment passed to the writer",
        ),
    ]
    key_events: Annotated[list[str], Field(default_factory=list)]
    estimated_words: Annotated[int, Field(default=3000, ge=100, le=50_000)]
    prompt_template_id: int | None = None
    model: str | None = None

    model_config = ConfigDict(extra="forbid")


class BatchJobCreate(BaseModel):
    """Request to generate a run of consecutive chapters."""

    novel_id: Annotated[int, Field(ge=1)]
    units: Annotated[list[UnitPlan], Field(min_length=1)]
    memory_bank: Annotated[
        dict[str, Any] | None,
        Field(default=None, description="Initial context passed to the first chapter"),
    ]

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _sequence_numbers_increase(self) -> BatchJobCreate:
        numbers = [u.sequence_number for u in self.units]
        if any(b <= a for a, b in zip(numbers, numbers[1:], strict=False)):
            raise ValueError("units must be ordered by strictly increasing sequence_number")
        return self


class UnitOutcomeRead(BaseModel):
    unit_index: int
    sequence_number: int
    status: UnitStatus
    error: str | None = None
    errors: list[str] = Field(default_factory=list)
    unit_id: int | None = None
    title: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PendingFailureRead(BaseModel):
    unit_index: int
    sequence_number: int
    stage: str
    error_code: str
    message: str

    model_config = ConfigDict(from_attributes=True)


class BatchJobSnapshot(BaseModel):
    """Point-in-time view of a batch job."""

    id: str
    novel_id: int
    state: BatchState
    total_units: int
    current_index: int
    cancelled: bool
    progress: Annotated[
        int, Field(ge=0, le=100, description="Estimated progress of the current unit")
    ]
    outcomes: list[UnitOutcomeRead]
    pending_failure: PendingFailureRead | None = None
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DecisionRequest(BaseModel):
    decision: UnitDecision

    model_config = ConfigDict(extra="forbid")


class CurrentUnitUpdate(BaseModel):
    """The chapter the surrounding application now has open for editing."""

    sequence_number: Annotated[int, Field(ge=1)]

    model_config = ConfigDict(extra="forbid")
