"""
Server-Sent Events transport for workflow progress.

A connection first receives everything the run's channel has retained, then
live events, with a heartbeat whenever nothing was sent for
``heartbeat_seconds``. The stream ends after the ``complete`` event.

When the channel is gone (purged after retention, or the run belongs to
another worker process) the stream falls back to polling the run store.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from .models import (
    HeartbeatEvent,
    RunCompleteEvent,
    StatusEvent,
    StepUpdateEvent,
    WorkflowEvent,
    WorkflowRun,
)
from .publisher import ProgressPublisher

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 30.0
STORE_POLL_SECONDS = 2.0

DisconnectFn = Callable[[], Awaitable[bool]]


def format_sse(event: WorkflowEvent) -> str:
    return f"event: {event.type.value}\nid: {event.seq}\ndata: {event.model_dump_json()}\n\n"


def _complete_event(run: WorkflowRun) -> RunCompleteEvent:
    return RunCompleteEvent(
        run_id=run.id,
        status=run.status,
        result=run.result,
        error=run.error,
        error_code=run.error_code,
        total_cost=run.total_cost,
        refunded=run.refunded,
    )


async def _disconnected(is_disconnected: Optional[DisconnectFn]) -> bool:
    return is_disconnected is not None and await is_disconnected()


async def stream_run_events(
    publisher: ProgressPublisher,
    coordinator,
    run: WorkflowRun,
    heartbeat_seconds: float = HEARTBEAT_SECONDS,
    is_disconnected: Optional[DisconnectFn] = None,
    store_poll_seconds: float = STORE_POLL_SECONDS,
) -> AsyncIterator[str]:
    if not publisher.has_channel(run.id):
        async for chunk in _poll_store(coordinator, run, heartbeat_seconds, is_disconnected, store_poll_seconds):
            yield chunk
        return

    subscription = publisher.subscribe(run.id)
    try:
        while not subscription.finished:
            if await _disconnected(is_disconnected):
                logger.info(f"[{run.id}] stream client disconnected")
                return
            event = await subscription.get(timeout=heartbeat_seconds)
            if event is None:
                yield format_sse(HeartbeatEvent(run_id=run.id))
                continue
            yield format_sse(event)
    finally:
        subscription.close()


async def _poll_store(
    coordinator,
    run: WorkflowRun,
    heartbeat_seconds: float,
    is_disconnected: Optional[DisconnectFn],
    poll_seconds: float,
) -> AsyncIterator[str]:
    """Fallback: diff successive run snapshots from the store."""
    yield format_sse(StatusEvent(run_id=run.id, status=run.status))
    if run.is_terminal:
        yield format_sse(_complete_event(run))
        return

    last_steps = [s.model_dump() for s in run.steps]
    last_status = run.status
    idle = 0.0
    while True:
        if await _disconnected(is_disconnected):
            return
        await asyncio.sleep(poll_seconds)
        current = await coordinator.get_status(run.id)

        if current.status != last_status:
            last_status = current.status
            if not current.is_terminal:
                yield format_sse(StatusEvent(run_id=run.id, status=current.status))

        steps = [s.model_dump() for s in current.steps]
        if steps != last_steps:
            last_steps = steps
            idle = 0.0
            yield format_sse(StepUpdateEvent(run_id=run.id, steps=current.steps))
        else:
            idle += poll_seconds
            if idle >= heartbeat_seconds:
                idle = 0.0
                yield format_sse(HeartbeatEvent(run_id=run.id))

        if current.is_terminal:
            yield format_sse(_complete_event(current))
            return
