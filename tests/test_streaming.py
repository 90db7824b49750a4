import asyncio
import json

import pytest

from conftest import USER, complete_request, make_env
from mediaflow.workflow.models import (
    PipelineVariant,
    RunStatus,
    StatusEvent,
    StepStatus,
    WorkflowRun,
)
from mediaflow.workflow.publisher import ProgressPublisher
from mediaflow.workflow.steps import build_steps
from mediaflow.workflow.streaming import format_sse, stream_run_events


def _parse(chunks):
    events = []
    for chunk in chunks:
        lines = dict(line.split(": ", 1) for line in chunk.strip().split("\n"))
        events.append((lines["event"], int(lines["id"]), json.loads(lines["data"])))
    return events


async def _collect(stream, timeout=5.0):
    async def _drain():
        return [chunk async for chunk in stream]
    return await asyncio.wait_for(_drain(), timeout)


def test_format_sse():
    event = StatusEvent(run_id="run-1", status=RunStatus.RUNNING, seq=4)
    text = format_sse(event)
    assert text.startswith("event: status\nid: 4\ndata: ")
    assert text.endswith("\n\n")
    assert json.loads(text.split("data: ", 1)[1])["status"] == "running"


@pytest.mark.asyncio
async def test_stream_replays_and_ends_with_complete():
    env = make_env()
    run = await env.coordinator.start(USER, complete_request())

    chunks = await _collect(stream_run_events(env.publisher, env.coordinator, run))
    events = _parse(chunks)

    assert events[0][0] == "status"
    assert events[-1][0] == "complete"
    assert events[-1][2]["status"] == "completed"
    assert [seq for _, seq, _ in events] == sorted(seq for _, seq, _ in events)
    assert env.publisher.subscriber_count(run.id) == 0


@pytest.mark.asyncio
async def test_stream_sends_heartbeat_when_idle():
    publisher = ProgressPublisher()
    run = WorkflowRun(id="run-1", user_id=USER, variant=PipelineVariant.IMAGE_ONLY)
    publisher.publish(run.id, StatusEvent(run_id=run.id, status=RunStatus.QUEUED))

    stream = stream_run_events(publisher, None, run, heartbeat_seconds=0.01)
    first = await stream.__anext__()
    second = await stream.__anext__()
    await stream.aclose()

    assert first.startswith("event: status")
    assert second.startswith("event: heartbeat")
    assert publisher.subscriber_count(run.id) == 0


@pytest.mark.asyncio
async def test_finished_run_without_channel_is_served_from_store():
    run = WorkflowRun(
        id="run-old", user_id=USER, variant=PipelineVariant.IMAGE_ONLY,
        status=RunStatus.COMPLETED, total_cost=5,
    )
    chunks = await _collect(stream_run_events(ProgressPublisher(), None, run))
    events = _parse(chunks)

    assert [name for name, _, _ in events] == ["status", "complete"]
    assert events[1][2]["total_cost"] == 5


class SnapshotCoordinator:
    """Returns a fixed sequence of run snapshots from get_status."""

    def __init__(self, snapshots):
        self.snapshots = list(snapshots)

    async def get_status(self, run_id, user_id=None):
        return self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]


@pytest.mark.asyncio
async def test_store_fallback_emits_step_changes_until_terminal():
    queued = WorkflowRun(
        id="run-x", user_id=USER, variant=PipelineVariant.IMAGE_ONLY,
        steps=build_steps(PipelineVariant.IMAGE_ONLY),
    )
    running = queued.model_copy(deep=True)
    running.status = RunStatus.RUNNING
    running.steps[0].status = StepStatus.PROCESSING
    done = running.model_copy(deep=True)
    done.status = RunStatus.FAILED
    done.steps[0].status = StepStatus.FAILED
    done.error_code = "content_rejected"

    stream = stream_run_events(
        ProgressPublisher(), SnapshotCoordinator([running, done]), queued, store_poll_seconds=0,
    )
    events = _parse(await _collect(stream))

    assert [name for name, _, _ in events] == [
        "status", "status", "step-update", "step-update", "complete",
    ]
    assert events[-1][2]["error_code"] == "content_rejected"
