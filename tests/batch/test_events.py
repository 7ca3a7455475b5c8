import pytest

from services.batch.events import (
    BatchEventBus,
    BatchFinished,
    DecisionRequired,
    UnitProgress,
    UnitStarted,
)


def test_payload_drops_job_id():
    message = UnitProgress("job-1", unit_index=0, percentage=45, characters=120)

    assert message.kind == "unit.progress"
    assert message.payload() == {"unit_index": 0, "percentage": 45, "characters": 120}


def test_decision_required_lists_options():
    assert DecisionRequired("job-1", 2).payload()["options"] == ("continue", "retry", "stop")


@pytest.mark.asyncio
async def test_listeners_run_in_order_and_failures_are_isolated():
    bus = BatchEventBus()
    calls: list[str] = []

    async def broken(message):
        calls.append("broken")
        raise RuntimeError("listener bug")

    async def recorder(message):
        calls.append(message.kind)

    bus.add_listener(broken)
    bus.add_listener(recorder)

    await bus.publish(UnitStarted("job-1", 0, 1))

    assert calls == ["broken", "unit.started"]


@pytest.mark.asyncio
async def test_subscribers_receive_messages_until_unsubscribed():
    bus = BatchEventBus()
    queue = bus.subscribe()

    await bus.publish(UnitStarted("job-1", 0, 1))
    bus.unsubscribe(queue)
    await bus.publish(UnitStarted("job-1", 1, 2))

    assert queue.qsize() == 1
    assert (await queue.get()).unit_index == 0


@pytest.mark.asyncio
async def test_finished_message_closes_bus():
    bus = BatchEventBus()

    await bus.publish(BatchFinished("job-1", "completed", 3))

    assert bus.closed
