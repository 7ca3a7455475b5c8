"""API tests for batch endpoints, backed by fake collaborators."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
from fastapi import status

from schemas.batches import BatchState
from tests.fixtures.batch_fixtures import FakeGenerator


def _payload(count: int = 2, novel_id: int = 7) -> dict[str, Any]:
    return {
        "novel_id": novel_id,
        "units": [{"sequence_number": i + 1} for i in range(count)],
    }


def _parse_sse(raw: str) -> list[tuple[str, dict[str, Any]]]:
    events: list[tuple[str, dict[str, Any]]] = []
    for block in raw.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.split("\n") if line)
        events.append((lines["event"], json.loads(lines["data"])))
    return events


async def _poll_state(async_client, job_id: str, state: str, timeout: float = 2.0):
    async def poll():
        while True:
            resp = await async_client.get(f"/api/v1/batches/{job_id}")
            data = resp.json()["data"]
            if data["state"] == state:
                return data
            await asyncio.sleep(0.02)

    return await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_create_batch_and_poll_until_completed(async_client):
    resp = await async_client.post("/api/v1/batches", json=_payload(2))

    assert resp.status_code == status.HTTP_201_CREATED
    body = resp.json()
    assert body["success"] is True
    job_id = body["data"]["id"]
    assert body["data"]["total_units"] == 2

    data = await _poll_state(async_client, job_id, "completed")
    assert data["current_index"] == 2
    assert [o["status"] for o in data["outcomes"]] == ["success", "success"]
    assert data["outcomes"][0]["title"] == "第1章"


@pytest.mark.asyncio
async def test_create_batch_rejects_unordered_units(async_client):
    payload = {"novel_id": 7, "units": [{"sequence_number": 2}, {"sequence_number": 1}]}

    resp = await async_client.post("/api/v1/batches", json=payload)

    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "validation_error"


@pytest.mark.asyncio
async def test_create_batch_rejects_empty_units(async_client):
    resp = await async_client.post("/api/v1/batches", json={"novel_id": 7, "units": []})

    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_unknown_batch_is_404(async_client):
    resp = await async_client.get("/api/v1/batches/does-not-exist")

    assert resp.status_code == 404
    assert resp.json()["error"]["type"] == "domain_error"


@pytest.mark.asyncio
async def test_decision_without_failure_is_409(async_client, batch_manager):
    batch_manager.generator = FakeGenerator({1: ["hang"]})
    job_id = (await async_client.post("/api/v1/batches", json=_payload(1))).json()["data"]["id"]

    resp = await async_client.post(
        f"/api/v1/batches/{job_id}/decision", json={"decision": "continue"}
    )

    assert resp.status_code == 409
    await async_client.post(f"/api/v1/batches/{job_id}/cancel")
    await batch_manager.wait(job_id)


@pytest.mark.asyncio
async def test_failure_decision_through_api(async_client, batch_manager):
    batch_manager.generator = FakeGenerator({1: ["reject"]})
    job_id = (await async_client.post("/api/v1/batches", json=_payload(2))).json()["data"]["id"]

    paused = await _poll_state(async_client, job_id, "awaiting_decision")
    assert paused["pending_failure"]["error_code"] == "generation_rejected"
    assert paused["pending_failure"]["stage"] == "generation"

    resp = await async_client.post(
        f"/api/v1/batches/{job_id}/decision", json={"decision": "continue"}
    )
    assert resp.status_code == 200

    done = await _poll_state(async_client, job_id, "completed")
    assert [o["status"] for o in done["outcomes"]] == ["failed", "success"]


@pytest.mark.asyncio
async def test_invalid_decision_is_422(async_client):
    resp = await async_client.post(
        "/api/v1/batches/anything/decision", json={"decision": "later"}
    )

    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_cancel_batch(async_client, batch_manager):
    batch_manager.generator = FakeGenerator({1: ["hang"]})
    job_id = (await async_client.post("/api/v1/batches", json=_payload(3))).json()["data"]["id"]

    resp = await async_client.post(f"/api/v1/batches/{job_id}/cancel")
    assert resp.status_code == 200

    data = await _poll_state(async_client, job_id, "cancelled")
    assert data["cancelled"] is True
    assert len(data["outcomes"]) == data["current_index"]


@pytest.mark.asyncio
async def test_current_unit_update_sets_readiness(async_client, batch_manager):
    batch_manager.generator = FakeGenerator({1: ["hang"]})
    job_id = (await async_client.post("/api/v1/batches", json=_payload(2))).json()["data"]["id"]

    resp = await async_client.put(
        f"/api/v1/batches/{job_id}/current-unit", json={"sequence_number": 5}
    )

    assert resp.status_code == 200
    assert batch_manager.readiness.for_novel(7).current() == 5
    await batch_manager.cancel(job_id)
    await batch_manager.wait(job_id)


@pytest.mark.asyncio
async def test_events_stream_ends_after_batch_finishes(async_client, batch_manager):
    job_id = (await async_client.post("/api/v1/batches", json=_payload(2))).json()["data"]["id"]

    resp = await async_client.get(f"/api/v1/batches/{job_id}/events")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = _parse_sse(resp.text)
    names = [name for name, _ in events]
    assert names[0] == "snapshot"
    assert names[-1] == "done"
    assert events[0][1]["job_id"] == job_id
    finished = await batch_manager.wait(job_id)
    assert finished.state is BatchState.COMPLETED
    if "batch.finished" in names:
        assert names[-2] == "batch.finished"


@pytest.mark.asyncio
async def test_events_for_finished_batch_is_snapshot_then_done(async_client, batch_manager):
    job_id = (await async_client.post("/api/v1/batches", json=_payload(1))).json()["data"]["id"]
    await batch_manager.wait(job_id)

    resp = await async_client.get(f"/api/v1/batches/{job_id}/events")

    events = _parse_sse(resp.text)
    assert [name for name, _ in events] == ["snapshot", "done"]
    assert events[0][1]["data"]["state"] == "completed"
