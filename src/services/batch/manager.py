"""Process-wide registry of running batch jobs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from core.config import Settings
from core.exceptions import (
    BatchJobConflictError,
    BatchJobNotFoundError,
    NoPendingDecisionError,
)
from schemas.batches import BatchJobCreate, UnitDecision
from services.batch.adapters import PendingDecisions, ReadinessRegistry, UpstreamChapters
from services.batch.events import BatchEventBus, BatchMessage
from services.batch.interfaces import CancellationToken, UnitFinalizer, UnitGenerator
from services.batch.job_store import BatchJobStore
from services.batch.models import BatchJob
from services.batch.orchestrator import BatchOrchestrator


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunningJob:
    job: BatchJob
    bus: BatchEventBus
    cancellation: CancellationToken
    task: asyncio.Task[BatchJob] | None = None


class BatchJobManager:
    """Starts orchestrators as tasks and keeps their records up to date."""

    def __init__(
        self,
        settings: Settings,
        store: BatchJobStore,
        generator: UnitGenerator,
        finalizer: UnitFinalizer,
        *,
        readiness: ReadinessRegistry | None = None,
        decisions: PendingDecisions | None = None,
        chapters: UpstreamChapters | None = None,
        bus_factory: Callable[[], BatchEventBus] = BatchEventBus,
    ) -> None:
        self.settings = settings
        self.store = store
        self.generator = generator
        self.finalizer = finalizer
        self.readiness = readiness or ReadinessRegistry()
        self.decisions = decisions or PendingDecisions()
        self._chapters = chapters
        self._bus_factory = bus_factory
        self._running: dict[str, RunningJob] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_job(self, request: BatchJobCreate) -> BatchJob:
        if len(request.units) > self.settings.MAX_BATCH_UNITS:
            raise BatchJobConflictError(
                f"A batch may contain at most {self.settings.MAX_BATCH_UNITS} units"
            )
        for running in self._running.values():
            if running.job.novel_id == request.novel_id and not running.job.is_terminal:
                raise BatchJobConflictError(
                    f"Novel {request.novel_id} already has a batch in progress"
                )

        job = BatchJob(
            novel_id=request.novel_id,
            plans=list(request.units),
            context=request.memory_bank,
        )
        await self.store.save(job)
        self._start(job)
        logger.info(
            "Batch %s created for novel %d with %d units",
            job.id,
            job.novel_id,
            job.total_units,
        )
        return job

    def _start(self, job: BatchJob, *, resumed: bool = False) -> RunningJob:
        bus = self._bus_factory()
        running = RunningJob(job=job, bus=bus, cancellation=CancellationToken())

        async def persist(_message: BatchMessage) -> None:
            await self.store.save(job)

        bus.add_listener(persist)
        orchestrator = BatchOrchestrator(
            job,
            self.generator,
            self.finalizer,
            self.readiness.for_novel(job.novel_id),
            self.decisions,
            bus,
            self.settings,
            cancellation=running.cancellation,
            await_ready_on_start=resumed,
        )
        running.task = asyncio.create_task(orchestrator.run(), name=f"batch-{job.id}")
        running.task.add_done_callback(lambda _task: self._release(running))
        self._running[job.id] = running
        return running

    def _release(self, running: RunningJob) -> None:
        """Drop a finished job; its final state was saved by the bus listener."""
        job = running.job
        if not job.is_terminal or self._running.get(job.id) is not running:
            return
        del self._running[job.id]
        if self._chapters is not None:
            self._chapters.discard_placeholders(
                job.novel_id, (plan.sequence_number for plan in job.plans)
            )

    async def reconcile_unfinished_jobs(self) -> list[BatchJob]:
        """Re-attach to jobs left unfinished by a previous process."""
        jobs = await self.store.list_unfinished()
        for job in jobs:
            if not self.settings.BATCH_RESUME_ON_STARTUP:
                await self.store.mark_interrupted(job)
                continue
            current = await self._fetch_current_sequence(job.novel_id)
            if current is not None:
                self.readiness.for_novel(job.novel_id).set(current)
            logger.info(
                "Resuming batch %s at unit %d of %d",
                job.id,
                job.current_index,
                job.total_units,
            )
            self._start(job, resumed=True)
        return jobs

    async def _fetch_current_sequence(self, novel_id: int) -> int | None:
        if self._chapters is None:
            return None
        try:
            return await self._chapters.latest_sequence(novel_id)
        except httpx.HTTPError as exc:
            logger.warning(
                "Could not read chapters of novel %d: %s",
                novel_id,
                exc.__class__.__name__,
            )
            return None

    async def shutdown(self) -> None:
        """Stop every running task; unfinished jobs stay resumable."""
        tasks = [r.task for r in self._running.values() if r.task and not r.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._running.clear()

    # ------------------------------------------------------------------
    # Queries and commands
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> BatchJob:
        running = self._running.get(job_id)
        if running is not None:
            return running.job
        job = await self.store.get(job_id)
        if job is None:
            raise BatchJobNotFoundError(f"Batch job {job_id} not found")
        return job

    def _require_running(self, job_id: str) -> RunningJob:
        running = self._running.get(job_id)
        if running is None:
            raise BatchJobNotFoundError(f"Batch job {job_id} is not running")
        return running

    async def cancel(self, job_id: str) -> BatchJob:
        job = await self.get_job(job_id)
        if job.is_terminal:
            return job
        running = self._require_running(job_id)
        running.cancellation.cancel()
        logger.info("Cancellation requested for batch %s", job_id)
        return running.job

    async def decide(self, job_id: str, decision: UnitDecision) -> BatchJob:
        running = self._require_running(job_id)
        if not self.decisions.submit(job_id, decision):
            raise NoPendingDecisionError(f"Batch job {job_id} is not waiting for a decision")
        return running.job

    def set_current_unit(self, novel_id: int, sequence_number: int) -> None:
        self.readiness.for_novel(novel_id).set(sequence_number)

    def subscribe(self, job_id: str) -> asyncio.Queue[BatchMessage] | None:
        """Queue of future messages for a running job; None once it has finished."""
        running = self._running.get(job_id)
        if running is None or running.job.is_terminal:
            return None
        return running.bus.subscribe()

    def unsubscribe(self, job_id: str, queue: asyncio.Queue[BatchMessage]) -> None:
        running = self._running.get(job_id)
        if running is not None:
            running.bus.unsubscribe(queue)

    async def wait(self, job_id: str) -> BatchJob:
        """Wait for a job's task to finish; finished jobs come from the store."""
        running = self._running.get(job_id)
        if running is None or running.task is None:
            return await self.get_job(job_id)
        return await asyncio.shield(running.task)
