"""Collaborators the batch orchestrator depends on.

The orchestrator never talks to the writer service directly: generation,
finalization and the continue/stop decision all come in through these
protocols, and the two shared signals below are passed in explicitly.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from schemas.batches import UnitDecision, UnitPlan
from services.batch.models import BatchJob, PendingFailure, UnitRef
from services.streaming.session import StreamSession


class UnitGenerator(Protocol):
    """Starts generation of one unit."""

    async def start_unit(self, job: BatchJob, plan: UnitPlan) -> StreamSession:
        """Begin generating `plan` with the job's current context.

        Returns a live session that turns terminal on its own. A background
        save, if any, is exposed as `session.persist_task`. Raises
        `UnitGenerationRejected` when the request itself is refused.
        """
        ...


class UnitFinalizer(Protocol):
    """Summarizes a finished unit and prepares the next one."""

    async def finalize_unit(
        self, job: BatchJob, unit: UnitRef
    ) -> dict[str, Any] | None:
        """Return the updated context for the next unit (opaque to the caller).

        Raises `UnitFinalizeRejected` on failure.
        """
        ...


class DecisionProvider(Protocol):
    """Resolves a paused unit failure into continue, retry or stop."""

    async def decide(self, job: BatchJob, failure: PendingFailure) -> UnitDecision: ...


class UnitReadinessSignal:
    """The sequence number currently open for editing.

    Written by the surrounding application, read by the orchestrator on every
    poll tick. Reads always see the latest write.
    """

    def __init__(self, current: int | None = None) -> None:
        self._current = current

    def current(self) -> int | None:
        return self._current

    def set(self, sequence_number: int | None) -> None:
        self._current = sequence_number


class CancellationToken:
    """Cooperative cancellation flag shared with the API layer."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
