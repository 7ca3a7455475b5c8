"""Typed messages a batch run publishes, and the bus that carries them."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any, ClassVar


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BatchMessage:
    kind: ClassVar[str] = "message"

    job_id: str

    def payload(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("job_id")
        return data


@dataclass(frozen=True, slots=True)
class UnitStarted(BatchMessage):
    kind: ClassVar[str] = "unit.started"

    unit_index: int
    sequence_number: int


@dataclass(frozen=True, slots=True)
class UnitProgress(BatchMessage):
    kind: ClassVar[str] = "unit.progress"

    unit_index: int
    percentage: int
    characters: int


@dataclass(frozen=True, slots=True)
class UnitTerminal(BatchMessage):
    kind: ClassVar[str] = "unit.terminal"

    unit_index: int
    succeeded: bool
    characters: int
    title: str | None = None
    error_code: str | None = None


@dataclass(frozen=True, slots=True)
class UnitFinalized(BatchMessage):
    kind: ClassVar[str] = "unit.finalized"

    unit_index: int
    unit_id: int


@dataclass(frozen=True, slots=True)
class NextUnitReady(BatchMessage):
    kind: ClassVar[str] = "unit.ready"

    unit_index: int
    sequence_number: int


@dataclass(frozen=True, slots=True)
class UnitFailed(BatchMessage):
    kind: ClassVar[str] = "unit.failed"

    unit_index: int
    stage: str
    error_code: str
    message: str


@dataclass(frozen=True, slots=True)
class DecisionRequired(BatchMessage):
    kind: ClassVar[str] = "decision.required"

    unit_index: int
    options: tuple[str, ...] = ("continue", "retry", "stop")


@dataclass(frozen=True, slots=True)
class BatchFinished(BatchMessage):
    kind: ClassVar[str] = "batch.finished"

    state: str
    completed_units: int
    failure_reason: str | None = None


Listener = Callable[[BatchMessage], Awaitable[None]]


class BatchEventBus:
    """Fan-out of batch messages to listeners and queue subscribers.

    Listeners are awaited in registration order before `publish` returns, so a
    persistence listener always sees a message before the orchestrator moves
    on. Queue subscribers are fed without blocking.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._queues: set[asyncio.Queue[BatchMessage]] = set()
        self.closed = False

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def subscribe(self) -> asyncio.Queue[BatchMessage]:
        queue: asyncio.Queue[BatchMessage] = asyncio.Queue()
        self._queues.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[BatchMessage]) -> None:
        self._queues.discard(queue)

    async def publish(self, message: BatchMessage) -> None:
        for listener in self._listeners:
            try:
                await listener(message)
            except Exception:
                logger.exception("Batch event listener failed for %s", message.kind)
        for queue in self._queues:
            queue.put_nowait(message)
        if isinstance(message, BatchFinished):
            self.closed = True
