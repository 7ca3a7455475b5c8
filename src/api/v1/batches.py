"""API endpoints for multi-chapter batch generation."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import APIRouter, status
from fastapi.responses import StreamingResponse

from dependencies.batches import BatchManager
from schemas.api import ApiResponse
from schemas.batches import (
    BatchJobCreate,
    BatchJobSnapshot,
    CurrentUnitUpdate,
    DecisionRequest,
)
from schemas.streaming import BatchSseEvent
from services.batch.events import BatchFinished
from services.batch.models import BatchJob


router = APIRouter(prefix="/batches", tags=["batches"])


def _snapshot(job: BatchJob) -> BatchJobSnapshot:
    return BatchJobSnapshot.model_validate(job, from_attributes=True)


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[BatchJobSnapshot],
    summary="Start a batch",
    description=(
        "Generate the given chapters one after another. Each chapter is "
        "streamed, saved and summarized before the next one starts."
    ),
    responses={
        201: {"description": "Batch created and started"},
        409: {"description": "The novel already has a batch in progress"},
        422: {"description": "Invalid unit plans"},
    },
)
async def create_batch(
    payload: BatchJobCreate, manager: BatchManager
) -> ApiResponse[BatchJobSnapshot]:
    job = await manager.create_job(payload)
    return ApiResponse(
        success=True, data=_snapshot(job), message="Batch started"
    )


@router.get("/{job_id}", response_model=ApiResponse[BatchJobSnapshot])
async def get_batch(job_id: str, manager: BatchManager) -> ApiResponse[BatchJobSnapshot]:
    job = await manager.get_job(job_id)
    return ApiResponse(success=True, data=_snapshot(job), message="Batch retrieved")


@router.post("/{job_id}/cancel", response_model=ApiResponse[BatchJobSnapshot])
async def cancel_batch(
    job_id: str, manager: BatchManager
) -> ApiResponse[BatchJobSnapshot]:
    """Request cancellation; the run stops at its next poll tick."""
    job = await manager.cancel(job_id)
    return ApiResponse(
        success=True, data=_snapshot(job), message="Cancellation requested"
    )


@router.post(
    "/{job_id}/decision",
    response_model=ApiResponse[BatchJobSnapshot],
    responses={409: {"description": "The batch is not waiting for a decision"}},
)
async def decide_batch(
    job_id: str, payload: DecisionRequest, manager: BatchManager
) -> ApiResponse[BatchJobSnapshot]:
    """Answer a paused unit failure with continue, retry or stop."""
    job = await manager.decide(job_id, payload.decision)
    return ApiResponse(
        success=True,
        data=_snapshot(job),
        message=f"Decision '{payload.decision.value}' accepted",
    )


@router.put("/{job_id}/current-unit", response_model=ApiResponse[BatchJobSnapshot])
async def set_current_unit(
    job_id: str, payload: CurrentUnitUpdate, manager: BatchManager
) -> ApiResponse[BatchJobSnapshot]:
    """Report the chapter the editor now has open for this batch's novel."""
    job = await manager.get_job(job_id)
    manager.set_current_unit(job.novel_id, payload.sequence_number)
    return ApiResponse(
        success=True, data=_snapshot(job), message="Current unit updated"
    )


@router.get("/{job_id}/events", response_class=StreamingResponse)
async def stream_batch_events(job_id: str, manager: BatchManager) -> StreamingResponse:
    """Stream batch messages as SSE until the batch finishes."""
    job = await manager.get_job(job_id)
    queue = manager.subscribe(job_id)
    snapshot = _snapshot(job)

    async def event_stream() -> AsyncGenerator[str, None]:
        yield BatchSseEvent(
            event="snapshot",
            job_id=job.id,
            data={
                "state": snapshot.state.value,
                "current_index": snapshot.current_index,
                "total_units": snapshot.total_units,
                "progress": snapshot.progress,
                "statuses": [o.status.value for o in snapshot.outcomes],
            },
        ).to_sse()
        if queue is not None:
            try:
                while True:
                    message = await queue.get()
                    yield BatchSseEvent(
                        event=message.kind,  # type: ignore[arg-type]
                        job_id=message.job_id,
                        data=message.payload(),
                    ).to_sse()
                    if isinstance(message, BatchFinished):
                        break
            finally:
                manager.unsubscribe(job_id, queue)
        yield BatchSseEvent(event="done", job_id=job.id).to_sse()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
