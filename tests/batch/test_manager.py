import asyncio

import httpx
import pytest

from core.exceptions import (
    BatchJobConflictError,
    BatchJobNotFoundError,
    NoPendingDecisionError,
)
from schemas.batches import BatchJobCreate, BatchState, UnitDecision, UnitPlan, UnitStatus
from services.batch.adapters import ReadinessRegistry, UpstreamChapters
from services.batch.job_store import INTERRUPTED_REASON
from services.batch.manager import BatchJobManager
from services.batch.models import UnitOutcome
from tests.fixtures.batch_fixtures import FakeFinalizer, FakeGenerator, make_job


def _request(count: int = 2, novel_id: int = 7) -> BatchJobCreate:
    return BatchJobCreate(
        novel_id=novel_id,
        units=[UnitPlan(sequence_number=i + 1) for i in range(count)],
    )


async def _wait_for_state(manager, job_id, state, timeout=2.0):
    async def poll():
        while (await manager.get_job(job_id)).state is not state:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_job_runs_to_completion_and_is_persisted(batch_manager, job_store):
    job = await batch_manager.create_job(_request(2))

    finished = await batch_manager.wait(job.id)

    assert finished.state is BatchState.COMPLETED
    stored = await job_store.get(job.id)
    assert stored is not None
    assert stored.state is BatchState.COMPLETED
    assert [o.status for o in stored.outcomes] == [UnitStatus.SUCCESS] * 2


@pytest.mark.asyncio
async def test_second_batch_for_same_novel_conflicts(batch_manager):
    batch_manager.generator = FakeGenerator({1: ["hang"]})
    job = await batch_manager.create_job(_request(2))

    with pytest.raises(BatchJobConflictError):
        await batch_manager.create_job(_request(1))

    await batch_manager.cancel(job.id)
    finished = await batch_manager.wait(job.id)
    assert finished.state is BatchState.CANCELLED


@pytest.mark.asyncio
async def test_too_many_units_is_rejected(batch_manager):
    batch_manager.settings.MAX_BATCH_UNITS = 1

    with pytest.raises(BatchJobConflictError):
        await batch_manager.create_job(_request(2))


@pytest.mark.asyncio
async def test_decision_flow_through_manager(batch_manager):
    batch_manager.generator = FakeGenerator({2: ["reject"]})
    job = await batch_manager.create_job(_request(3))

    await _wait_for_state(batch_manager, job.id, BatchState.AWAITING_DECISION)
    snapshot = await batch_manager.get_job(job.id)
    assert snapshot.pending_failure is not None
    assert snapshot.pending_failure.error_code == "generation_rejected"

    await batch_manager.decide(job.id, UnitDecision.STOP)
    finished = await batch_manager.wait(job.id)

    assert finished.state is BatchState.FAILED
    assert [o.status for o in finished.outcomes] == [UnitStatus.SUCCESS, UnitStatus.FAILED]


@pytest.mark.asyncio
async def test_decision_without_pending_failure_is_refused(batch_manager):
    batch_manager.generator = FakeGenerator({1: ["hang"]})
    job = await batch_manager.create_job(_request(1))

    with pytest.raises(NoPendingDecisionError):
        await batch_manager.decide(job.id, UnitDecision.CONTINUE)

    await batch_manager.cancel(job.id)
    await batch_manager.wait(job.id)


@pytest.mark.asyncio
async def test_unknown_job_raises_not_found(batch_manager):
    with pytest.raises(BatchJobNotFoundError):
        await batch_manager.get_job("nope")


@pytest.mark.asyncio
async def test_reconcile_marks_jobs_interrupted_when_resume_disabled(
    fast_settings, job_store
):
    job = make_job(2)
    job.state = BatchState.AWAITING_UNIT_COMPLETION
    await job_store.save(job)
    fast_settings.BATCH_RESUME_ON_STARTUP = False
    readiness = ReadinessRegistry()
    manager = BatchJobManager(
        fast_settings, job_store, FakeGenerator(), FakeFinalizer(readiness.for_novel)
    )

    await manager.reconcile_unfinished_jobs()

    stored = await job_store.get(job.id)
    assert stored is not None
    assert stored.state is BatchState.FAILED
    assert stored.failure_reason == INTERRUPTED_REASON


@pytest.mark.asyncio
async def test_reconcile_resumes_from_stored_index(fast_settings, job_store):
    job = make_job(3)
    job.state = BatchState.AWAITING_NEXT_UNIT_READY
    job.current_index = 1
    job.outcomes.append(
        UnitOutcome(unit_index=0, sequence_number=1, status=UnitStatus.SUCCESS)
    )
    await job_store.save(job)

    readiness = ReadinessRegistry()
    readiness.for_novel(job.novel_id).set(2)
    generator = FakeGenerator()
    manager = BatchJobManager(
        fast_settings,
        job_store,
        generator,
        FakeFinalizer(readiness.for_novel),
        readiness=readiness,
    )

    resumed = await manager.reconcile_unfinished_jobs()
    finished = await manager.wait(job.id)

    assert [j.id for j in resumed] == [job.id]
    assert finished.state is BatchState.COMPLETED
    assert generator.started == [2, 3]
    assert len(finished.outcomes) == 3
    await manager.shutdown()


@pytest.mark.asyncio
async def test_finished_job_leaves_the_registry(batch_manager):
    job = await batch_manager.create_job(_request(2))

    await batch_manager.wait(job.id)

    assert job.id not in batch_manager._running
    stored = await batch_manager.get_job(job.id)
    assert stored.state is BatchState.COMPLETED
    assert (await batch_manager.wait(job.id)).state is BatchState.COMPLETED
    assert (await batch_manager.cancel(job.id)).state is BatchState.COMPLETED
    assert batch_manager.subscribe(job.id) is None

    second = await batch_manager.create_job(_request(1))
    assert (await batch_manager.wait(second.id)).state is BatchState.COMPLETED


@pytest.mark.asyncio
async def test_finished_job_discards_its_placeholders(fast_settings, job_store):
    http = httpx.AsyncClient()
    chapters = UpstreamChapters(http, fast_settings)
    chapters.placeholders[(7, 2)] = 55
    chapters.placeholders[(8, 2)] = 66
    readiness = ReadinessRegistry()
    manager = BatchJobManager(
        fast_settings,
        job_store,
        FakeGenerator({1: ["hang"]}),
        FakeFinalizer(readiness.for_novel),
        readiness=readiness,
        chapters=chapters,
    )

    job = await manager.create_job(_request(2))
    await manager.cancel(job.id)
    finished = await manager.wait(job.id)

    assert finished.state is BatchState.CANCELLED
    assert chapters.placeholders == {(8, 2): 66}
    await manager.shutdown()
    await http.aclose()
