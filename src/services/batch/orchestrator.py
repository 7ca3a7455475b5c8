"""Sequential multi-chapter generation.

For every unit the orchestrator starts one stream, waits for it to turn
terminal, lets the auto-persist step settle, runs the finalize step, and then
waits until the surrounding application reports the next chapter as ready.
Units never overlap: finalizing unit k mutates the state unit k+1 starts from.

All waits are poll loops on `POLL_INTERVAL_SECONDS` ticks. Each tick checks
the cancellation token and a finite deadline, and shared signals are read
fresh on every tick.

Any per-unit failure pauses the run until the decision provider answers:

* ``continue`` records the unit as failed and moves on,
* ``retry`` repeats the failed stage for the same unit,
* ``stop`` records the unit as failed and ends the run as FAILED.

At every terminal state ``len(job.outcomes) == job.current_index``.
"""

from __future__ import annotations

import asyncio
import logging

from core.config import Settings
from schemas.batches import BatchState, UnitDecision, UnitPlan, UnitStatus
from services.batch.events import (
    BatchEventBus,
    BatchFinished,
    DecisionRequired,
    NextUnitReady,
    UnitFailed,
    UnitFinalized,
    UnitProgress,
    UnitStarted,
    UnitTerminal,
)
from services.batch.exceptions import UnitFailure, UnitNotPersisted, UnitTimeout
from services.batch.interfaces import (
    CancellationToken,
    DecisionProvider,
    UnitFinalizer,
    UnitGenerator,
    UnitReadinessSignal,
)
from services.batch.models import BatchJob, PendingFailure, UnitOutcome, UnitRef
from services.progress import ProgressEstimator
from services.streaming.exceptions import StreamError
from services.streaming.session import StreamSession


logger = logging.getLogger(__name__)

STAGE_GENERATION = "generation"
STAGE_FINALIZE = "finalize"
STAGE_READINESS = "readiness"

UnitError = UnitFailure | StreamError


class _Cancelled(Exception):
    pass


class _Stopped(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class BatchOrchestrator:
    def __init__(
        self,
        job: BatchJob,
        generator: UnitGenerator,
        finalizer: UnitFinalizer,
        readiness: UnitReadinessSignal,
        decisions: DecisionProvider,
        bus: BatchEventBus,
        settings: Settings,
        *,
        cancellation: CancellationToken | None = None,
        await_ready_on_start: bool = False,
    ) -> None:
        self.job = job
        self.generator = generator
        self.finalizer = finalizer
        self.readiness = readiness
        self.decisions = decisions
        self.bus = bus
        self.cancellation = cancellation or CancellationToken()
        self.poll_interval = settings.POLL_INTERVAL_SECONDS
        self.grace_interval = settings.GRACE_INTERVAL_SECONDS
        self.unit_timeout = settings.UNIT_TIMEOUT_SECONDS
        self.readiness_timeout = settings.READINESS_TIMEOUT_SECONDS
        # A resumed job may be restarted before its next chapter exists.
        self._await_ready_on_start = await_ready_on_start
        self._carried_errors: list[str] = []

    async def run(self) -> BatchJob:
        job = self.job
        if job.is_terminal:
            return job
        logger.info(
            "Batch %s starting at unit %d of %d",
            job.id,
            job.current_index,
            job.total_units,
        )
        try:
            if self._await_ready_on_start and 0 < job.current_index < job.total_units:
                await self._await_next_ready(job.current_index)
            while job.current_index < job.total_units:
                self._check_cancelled()
                await self._run_unit(job.current_index)
        except _Cancelled:
            job.cancelled = True
            await self._finish(BatchState.CANCELLED)
        except _Stopped as exc:
            job.failure_reason = exc.reason
            await self._finish(BatchState.FAILED)
        except Exception:
            logger.exception("Batch %s failed unexpectedly", job.id)
            job.failure_reason = "internal_error"
            await self._finish(BatchState.FAILED)
        else:
            await self._finish(BatchState.COMPLETED)
        return job

    # ------------------------------------------------------------------
    # One unit
    # ------------------------------------------------------------------

    async def _run_unit(self, index: int) -> None:
        plan = self.job.plans[index]
        errors, self._carried_errors = self._carried_errors, []
        # Status recorded if the run is cancelled before this unit is recorded.
        cancel_status = UnitStatus.SKIPPED
        recorded = False
        try:
            ref: UnitRef | None = None
            while ref is None:
                try:
                    ref = await self._generate(index, plan)
                except (UnitFailure, StreamError) as exc:
                    errors.append(exc.message)
                    cancel_status = UnitStatus.FAILED
                    decision = await self._decide(index, STAGE_GENERATION, exc)
                    if decision is UnitDecision.RETRY:
                        continue
                    recorded = self._record_failure(index, errors)
                    self._stop_if_requested(decision, exc)
                    return

            while True:
                try:
                    await self._finalize(ref)
                    break
                except (UnitFailure, StreamError) as exc:
                    errors.append(exc.message)
                    cancel_status = UnitStatus.FAILED
                    decision = await self._decide(index, STAGE_FINALIZE, exc)
                    if decision is UnitDecision.RETRY:
                        continue
                    recorded = self._record_failure(index, errors)
                    self._stop_if_requested(decision, exc)
                    return

            self._record(
                UnitOutcome(
                    unit_index=index,
                    sequence_number=plan.sequence_number,
                    status=UnitStatus.SUCCESS,
                    errors=errors,
                    unit_id=ref.unit_id,
                    title=ref.title,
                )
            )
            recorded = True
        except _Cancelled:
            if not recorded:
                self._record(
                    UnitOutcome(
                        unit_index=index,
                        sequence_number=plan.sequence_number,
                        status=cancel_status,
                        error=errors[-1] if errors else None,
                        errors=errors,
                    )
                )
            raise
        except _Stopped:
            raise
        except Exception as exc:
            if not recorded:
                self._record_failure(index, [*errors, str(exc)])
            raise

        if index + 1 < self.job.total_units:
            await self._await_next_ready(index + 1)

    async def _generate(self, index: int, plan: UnitPlan) -> UnitRef:
        job = self.job
        self._set_state(BatchState.GENERATING_UNIT)
        job.progress = 0
        await self.bus.publish(UnitStarted(job.id, index, plan.sequence_number))
        session = await self.generator.start_unit(job, plan)
        try:
            return await self._follow(index, plan, session)
        except (UnitFailure, StreamError):
            # A failed attempt stops reading and saving before any retry starts.
            await session.aclose()
            raise

    async def _follow(self, index: int, plan: UnitPlan, session: StreamSession) -> UnitRef:
        job = self.job
        self._set_state(BatchState.AWAITING_UNIT_COMPLETION)
        estimator = ProgressEstimator()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.unit_timeout
        while not session.terminal:
            self._check_cancelled()
            if loop.time() >= deadline:
                raise UnitTimeout("the chapter stream", self.unit_timeout)
            try:
                await asyncio.wait_for(session.terminated.wait(), self.poll_interval)
            except TimeoutError:
                job.progress = estimator.tick()
                await self.bus.publish(
                    UnitProgress(
                        job.id, index, job.progress, len(session.accumulated_body)
                    )
                )

        await self.bus.publish(
            UnitTerminal(
                job.id,
                index,
                succeeded=session.succeeded,
                characters=len(session.accumulated_body),
                title=session.title,
                error_code=session.error.error_code if session.error else None,
            )
        )
        if session.error is not None:
            raise session.error
        if session.memory_bank is not None:
            job.context = session.memory_bank

        await self._settle(session)
        if session.unit_id is None:
            if session.persist_error is not None:
                raise UnitNotPersisted(session.persist_error)
            raise UnitNotPersisted()
        job.progress = estimator.complete()
        return UnitRef(index, plan.sequence_number, session.unit_id, session.title)

    async def _settle(self, session: StreamSession) -> None:
        """Wait for the auto-persist step to land.

        Waits at least one grace interval for a persisted id. While a save is
        still running the wait goes on, bounded by the unit timeout.
        """
        loop = asyncio.get_running_loop()
        start = loop.time()
        grace_deadline = start + self.grace_interval
        deadline = start + max(self.grace_interval, self.unit_timeout)
        while session.unit_id is None and session.persist_error is None:
            self._check_cancelled()
            now = loop.time()
            if not session.persisting:
                if now >= grace_deadline:
                    return
                limit = grace_deadline
            else:
                if now >= deadline:
                    raise UnitTimeout("the chapter to be saved", self.unit_timeout)
                limit = deadline
            await self._tick(min(self.poll_interval, limit - now))

    async def _finalize(self, ref: UnitRef) -> None:
        job = self.job
        self._set_state(BatchState.FINALIZING_UNIT)
        self._check_cancelled()
        try:
            context = await asyncio.wait_for(
                self.finalizer.finalize_unit(job, ref), self.unit_timeout
            )
        except TimeoutError as exc:
            raise UnitTimeout("the finalize step", self.unit_timeout) from exc
        if context is not None:
            job.context = context
        await self.bus.publish(UnitFinalized(job.id, ref.unit_index, ref.unit_id))

    async def _await_next_ready(self, next_index: int) -> None:
        job = self.job
        expected = job.plans[next_index].sequence_number
        while True:
            self._set_state(BatchState.AWAITING_NEXT_UNIT_READY)
            try:
                await self._poll_readiness(expected)
                break
            except UnitTimeout as exc:
                decision = await self._decide(next_index, STAGE_READINESS, exc)
                if decision is UnitDecision.RETRY:
                    continue
                self._stop_if_requested(decision, exc)
                # Generate the next unit without readiness confirmation.
                self._carried_errors.append(exc.message)
                break
        await self.bus.publish(NextUnitReady(job.id, next_index, expected))

    async def _poll_readiness(self, expected: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.readiness_timeout
        while True:
            self._check_cancelled()
            if self.readiness.current() == expected:
                return
            if loop.time() >= deadline:
                raise UnitTimeout(f"chapter {expected} to become ready", self.readiness_timeout)
            await self._tick(self.poll_interval)

    # ------------------------------------------------------------------
    # Failure decisions
    # ------------------------------------------------------------------

    async def _decide(self, index: int, stage: str, exc: UnitError) -> UnitDecision:
        job = self.job
        plan = job.plans[index]
        failure = PendingFailure(
            unit_index=index,
            sequence_number=plan.sequence_number,
            stage=stage,
            error_code=exc.error_code,
            message=exc.message,
        )
        logger.warning(
            "Batch %s unit %d failed during %s: %s",
            job.id,
            index,
            stage,
            exc.error_code,
        )
        job.pending_failure = failure
        self._set_state(BatchState.AWAITING_DECISION)
        await self.bus.publish(
            UnitFailed(job.id, index, stage, exc.error_code, exc.message)
        )
        await self.bus.publish(DecisionRequired(job.id, index))

        pending = asyncio.ensure_future(self.decisions.decide(job, failure))
        try:
            while not pending.done():
                self._check_cancelled()
                await asyncio.wait({pending}, timeout=self.poll_interval)
            decision = UnitDecision(pending.result())
        finally:
            if not pending.done():
                pending.cancel()
            job.pending_failure = None

        logger.info("Batch %s unit %d decision: %s", job.id, index, decision.value)
        return decision

    def _stop_if_requested(self, decision: UnitDecision, exc: UnitError) -> None:
        if decision is UnitDecision.STOP:
            raise _Stopped(exc.error_code)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record_failure(self, index: int, errors: list[str]) -> bool:
        plan = self.job.plans[index]
        self._record(
            UnitOutcome(
                unit_index=index,
                sequence_number=plan.sequence_number,
                status=UnitStatus.FAILED,
                error=errors[-1] if errors else None,
                errors=errors,
            )
        )
        return True

    def _record(self, outcome: UnitOutcome) -> None:
        job = self.job
        job.outcomes.append(outcome)
        job.current_index = outcome.unit_index + 1
        job.touch()

    def _set_state(self, state: BatchState) -> None:
        self.job.state = state
        self.job.touch()

    def _check_cancelled(self) -> None:
        if self.cancellation.cancelled:
            raise _Cancelled()

    async def _tick(self, seconds: float) -> None:
        """Sleep one tick, waking early on cancellation."""
        try:
            await asyncio.wait_for(self.cancellation.wait(), seconds)
        except TimeoutError:
            return

    async def _finish(self, state: BatchState) -> None:
        job = self.job
        job.state = state
        job.pending_failure = None
        job.touch()
        logger.info(
            "Batch %s finished as %s after %d of %d units",
            job.id,
            state.value,
            len(job.outcomes),
            job.total_units,
        )
        await self.bus.publish(
            BatchFinished(job.id, state.value, len(job.outcomes), job.failure_reason)
        )

