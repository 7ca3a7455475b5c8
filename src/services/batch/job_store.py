"""Persistence of batch jobs, and restart reconciliation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.batch_jobs import BatchJobRecord
from schemas.batches import TERMINAL_STATES, BatchState, UnitPlan, UnitStatus
from services.batch.models import BatchJob, UnitOutcome


logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "interrupted"


def _as_aware(value: datetime) -> datetime:
    # sqlite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def job_to_record(job: BatchJob, record: BatchJobRecord | None = None) -> BatchJobRecord:
    record = record or BatchJobRecord(id=job.id, created_at=job.created_at)
    record.novel_id = job.novel_id
    record.start_sequence = job.plans[0].sequence_number
    record.total_units = job.total_units
    record.current_index = job.current_index
    record.state = job.state.value
    record.cancelled = job.cancelled
    record.failure_reason = job.failure_reason
    record.plans = [plan.model_dump() for plan in job.plans]
    record.outcomes = [
        {**asdict(outcome), "status": outcome.status.value} for outcome in job.outcomes
    ]
    record.context = job.context
    record.updated_at = job.updated_at
    return record


def record_to_job(record: BatchJobRecord) -> BatchJob:
    outcomes = [
        UnitOutcome(**{**item, "status": UnitStatus(item["status"])})
        for item in record.outcomes or []
    ]
    return BatchJob(
        id=record.id,
        novel_id=record.novel_id,
        plans=[UnitPlan.model_validate(plan) for plan in record.plans],
        context=record.context,
        current_index=record.current_index,
        state=BatchState(record.state),
        cancelled=record.cancelled,
        outcomes=outcomes,
        failure_reason=record.failure_reason,
        created_at=_as_aware(record.created_at),
        updated_at=_as_aware(record.updated_at),
    )


class BatchJobStore:
    """Reads and writes `BatchJobRecord` rows.

    Operations are serialized; sqlite allows a single writer at a time.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    async def save(self, job: BatchJob) -> None:
        async with self._lock, self._session_factory() as db:
            record = await db.get(BatchJobRecord, job.id)
            if record is None:
                db.add(job_to_record(job))
            else:
                job_to_record(job, record)
            await db.commit()

    async def get(self, job_id: str) -> BatchJob | None:
        async with self._lock, self._session_factory() as db:
            record = await db.get(BatchJobRecord, job_id)
            return record_to_job(record) if record is not None else None

    async def list_unfinished(self) -> list[BatchJob]:
        terminal = [state.value for state in TERMINAL_STATES]
        async with self._lock, self._session_factory() as db:
            result = await db.execute(
                select(BatchJobRecord)
                .where(BatchJobRecord.state.not_in(terminal))
                .order_by(BatchJobRecord.created_at)
            )
            return [record_to_job(record) for record in result.scalars().all()]

    async def mark_interrupted(self, job: BatchJob) -> BatchJob:
        job.state = BatchState.FAILED
        job.failure_reason = INTERRUPTED_REASON
        job.touch()
        await self.save(job)
        logger.info("Batch %s marked failed after restart", job.id)
        return job
