"""
Unit tests for ProgressBus and progress events.
"""

import json

import pytest

from enrichment_engine.coordinator import MetricsSnapshot, ProgressBus, ProgressEvent, RunPhase


def _snapshot(**overrides):
    values = dict(
        total=10,
        processed=4,
        succeeded=3,
        not_found=1,
        failed=1,
        skipped=2,
        retries=5,
        active_credentials=2,
        cooling_credentials=1,
        banned_credentials=0,
        in_flight=2,
        elapsed_sec=1.5,
    )
    values.update(overrides)
    return MetricsSnapshot(**values)


@pytest.fixture
def bus():
    """Fresh ProgressBus for each test."""
    return ProgressBus()


@pytest.fixture
def event():
    return ProgressEvent(run_id="results.csv", phase=RunPhase.RUNNING, metrics=_snapshot())


def test_progress_event_immutable(event):
    with pytest.raises(Exception):  # dataclass frozen raises on assignment
        event.phase = RunPhase.DONE  # type: ignore


def test_completion_and_pending(event):
    assert event.metrics.accounted == 6
    assert event.metrics.pending == 4
    assert event.completion == pytest.approx(0.6)

    empty = ProgressEvent(run_id="r", phase=RunPhase.STARTING, metrics=_snapshot(total=0))
    assert empty.completion == 0.0


def test_status_line_shape(event):
    line = event.to_status_line()
    assert line["type"] == "status"
    assert line["status"] == "running"
    assert line["metrics"]["succeeded"] == 3
    assert line["metrics"]["pending"] == 4
    assert "reason" not in line
    json.dumps(line)

    stopping = ProgressEvent("r", RunPhase.STOPPING, _snapshot(), reason="stop flag")
    assert stopping.to_status_line()["reason"] == "stop flag"


@pytest.mark.asyncio
async def test_subscribe_and_publish(bus, event):
    received = []

    async def subscriber(evt: ProgressEvent):
        received.append(evt)

    bus.subscribe(subscriber)
    bus.subscribe(subscriber)  # duplicate ignored
    await bus.publish(event)

    assert received == [event]


@pytest.mark.asyncio
async def test_unsubscribe(bus, event):
    received = []

    async def subscriber(evt: ProgressEvent):
        received.append(evt)

    bus.subscribe(subscriber)
    bus.unsubscribe(subscriber)
    bus.unsubscribe(subscriber)  # not found is safe
    await bus.publish(event)

    assert received == []
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_subscriber_exception_isolation(bus, event):
    """One subscriber's exception doesn't affect others."""
    received = []

    async def bad_subscriber(evt: ProgressEvent):
        raise RuntimeError("Intentional error")

    async def good_subscriber(evt: ProgressEvent):
        received.append(evt)

    bus.subscribe(bad_subscriber)
    bus.subscribe(good_subscriber)
    await bus.publish(event)

    assert received == [event]
    assert bus.subscriber_count == 2
