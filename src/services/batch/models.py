"""In-memory state of a batch job.

The orchestrator owns and mutates a `BatchJob` directly; the job store and the
API only ever read it or copy it out.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from schemas.batches import BatchState, UnitPlan, UnitStatus


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class UnitOutcome:
    unit_index: int
    sequence_number: int
    status: UnitStatus
    error: str | None = None
    errors: list[str] = field(default_factory=list)
    unit_id: int | None = None
    title: str | None = None


@dataclass(slots=True)
class PendingFailure:
    """A unit failure waiting for a continue/retry/stop decision."""

    unit_index: int
    sequence_number: int
    stage: str
    error_code: str
    message: str


@dataclass(slots=True)
class UnitRef:
    """A finished, persisted unit handed to the finalize step."""

    unit_index: int
    sequence_number: int
    unit_id: int
    title: str | None = None


@dataclass(slots=True)
class BatchJob:
    novel_id: int
    plans: list[UnitPlan]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    context: dict[str, Any] | None = None
    current_index: int = 0
    state: BatchState = BatchState.IDLE
    cancelled: bool = False
    progress: int = 0
    outcomes: list[UnitOutcome] = field(default_factory=list)
    pending_failure: PendingFailure | None = None
    failure_reason: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def total_units(self) -> int:
        return len(self.plans)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def touch(self) -> None:
        self.updated_at = _utcnow()
