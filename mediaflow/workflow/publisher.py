"""
Progress Publisher — per-run pub/sub channel of typed workflow events.

  - every observer of a run receives the same ordered sequence
  - a late subscriber first receives everything published so far
  - the ``complete`` event closes the channel; its log is kept for
    ``retention_seconds`` for reconnecting clients, then purged
  - heartbeats go to live subscribers only and are never retained
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .models import AnyWorkflowEvent, EventType, WorkflowEvent

logger = logging.getLogger(__name__)

EVENT_RETENTION_SECONDS = 300


@dataclass
class _Channel:
    events: list = field(default_factory=list)
    subscribers: list = field(default_factory=list)
    next_seq: int = 1
    closed: bool = False
    expires_at: Optional[float] = None


class Subscription:
    """One observer's view of a run channel."""

    def __init__(self, publisher: "ProgressPublisher", run_id: str, backlog: list):
        self.run_id = run_id
        self._publisher = publisher
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False
        for event in backlog:
            self._queue.put_nowait(event)

    def _deliver(self, event: WorkflowEvent) -> None:
        self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[AnyWorkflowEvent]:
        """Next event, or None when ``timeout`` passes with nothing new."""
        if self._done:
            return None
        try:
            if timeout is None:
                event = await self._queue.get()
            else:
                event = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if event.type == EventType.COMPLETE:
            self._done = True
            self.close()
        return event

    @property
    def finished(self) -> bool:
        return self._done

    def close(self) -> None:
        self._publisher._unsubscribe(self.run_id, self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> AnyWorkflowEvent:
        if self._done:
            raise StopAsyncIteration
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class ProgressPublisher:
    def __init__(
        self,
        retention_seconds: float = EVENT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._channels: dict[str, _Channel] = {}

    def publish(self, run_id: str, event: WorkflowEvent) -> WorkflowEvent:
        channel = self._channels.setdefault(run_id, _Channel())
        if channel.closed:
            logger.warning(f"[{run_id}] dropped {event.type.value} event after completion")
            return event

        event = event.model_copy(update={"run_id": run_id, "seq": channel.next_seq}, deep=True)
        channel.next_seq += 1

        if event.type != EventType.HEARTBEAT:
            channel.events.append(event)
        if event.type == EventType.COMPLETE:
            channel.closed = True
            channel.expires_at = self._clock() + self.retention_seconds

        for subscriber in list(channel.subscribers):
            subscriber._deliver(event)
        return event

    def subscribe(self, run_id: str) -> Subscription:
        """Register an observer; it first receives the retained log."""
        channel = self._channels.setdefault(run_id, _Channel())
        sub = Subscription(self, run_id, list(channel.events))
        if not channel.closed:
            channel.subscribers.append(sub)
        return sub

    def _unsubscribe(self, run_id: str, sub: Subscription) -> None:
        channel = self._channels.get(run_id)
        if channel and sub in channel.subscribers:
            channel.subscribers.remove(sub)

    def has_channel(self, run_id: str) -> bool:
        return run_id in self._channels

    def history(self, run_id: str) -> list[WorkflowEvent]:
        channel = self._channels.get(run_id)
        return list(channel.events) if channel else []

    def subscriber_count(self, run_id: str) -> int:
        channel = self._channels.get(run_id)
        return len(channel.subscribers) if channel else 0

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [
            run_id for run_id, channel in self._channels.items()
            if channel.closed and channel.expires_at is not None and channel.expires_at <= now
        ]
        for run_id in expired:
            del self._channels[run_id]
        if expired:
            logger.info(f"Purged {len(expired)} expired event channels")
        return len(expired)
