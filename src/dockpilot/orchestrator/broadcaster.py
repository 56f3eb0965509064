"""In-process progress fan-out.

Each topic (a deployment id or a session id) keeps a merged snapshot, a
bounded backlog and one unbounded queue per subscriber. ``publish`` never
blocks and never raises, so a slow or vanished subscriber cannot stall the
deployment pipeline.

A finished topic leaves the live table once its last subscriber detaches and
is kept in a bounded cache of recently finished topics.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
from typing import Any

from dockpilot.lib.logging_config import get_logger
from dockpilot.models.events import EventType, StreamEvent

logger = get_logger(__name__)


class _Topic:
    def __init__(self, backlog_size: int) -> None:
        self.snapshot: dict[str, Any] = {}
        self.backlog: deque[StreamEvent] = deque(maxlen=backlog_size)
        self.sequence = 0
        self.subscribers: set[asyncio.Queue[StreamEvent]] = set()
        self.done: StreamEvent | None = None


class Subscription:
    """Async iterator over one subscriber's view of a topic.

    Yields ``connected`` first, then the topic's events in publish order,
    then exactly one ``done`` after which iteration stops. Yields
    ``heartbeat`` whenever nothing arrives for ``heartbeat_interval``.

    Example:
        >>> async with broadcaster.subscribe(deployment_id) as events:
        ...     async for event in events:
        ...         print(event.to_sse())
    """

    def __init__(
        self,
        broadcaster: ProgressBroadcaster,
        topic: str,
        queue: asyncio.Queue[StreamEvent],
        connected: StreamEvent,
        heartbeat_interval: float,
    ) -> None:
        self.topic = topic
        self._broadcaster = broadcaster
        self._queue = queue
        self._connected: StreamEvent | None = connected
        self._heartbeat_interval = heartbeat_interval
        self._finished = False
        self._closed = False

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        if self._connected is not None:
            event, self._connected = self._connected, None
            return event
        if self._finished:
            self.close()
            raise StopAsyncIteration

        try:
            event = await asyncio.wait_for(
                self._queue.get(), timeout=self._heartbeat_interval
            )
        except asyncio.TimeoutError:
            return StreamEvent.heartbeat(self.topic)

        if event.type == EventType.DONE:
            self._finished = True
        return event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Detach from the topic. Idempotent."""
        if not self._closed:
            self._closed = True
            self._broadcaster._detach(self.topic, self._queue)

    async def aclose(self) -> None:
        """Async alias of ``close``."""
        self.close()


class ProgressBroadcaster:
    """Ordered, at-least-once fan-out of progress events per topic.

    Args:
        backlog_size: Events retained per topic for inspection.
        heartbeat_interval: Idle seconds before a subscription heartbeat.
        finished_retention: Finished topics kept after their last
            subscriber detached.
    """

    def __init__(
        self,
        backlog_size: int = 50,
        heartbeat_interval: float = 15.0,
        finished_retention: int = 100,
    ):
        self.backlog_size = backlog_size
        self.heartbeat_interval = heartbeat_interval
        self.finished_retention = finished_retention
        self._topics: dict[str, _Topic] = {}
        self._finished: OrderedDict[str, _Topic] = OrderedDict()

    @property
    def live_topic_count(self) -> int:
        """Topics still running or with attached subscribers."""
        return len(self._topics)

    @property
    def finished_topic_count(self) -> int:
        """Finished topics held in the retention cache."""
        return len(self._finished)

    def _lookup(self, topic: str) -> _Topic | None:
        state = self._topics.get(topic)
        return state if state is not None else self._finished.get(topic)

    def _topic(self, topic: str) -> _Topic:
        state = self._lookup(topic)
        if state is None:
            state = self._topics[topic] = _Topic(self.backlog_size)
        return state

    def _retire(self, topic: str) -> None:
        state = self._topics.pop(topic, None)
        if state is None:
            return
        self._finished[topic] = state
        while len(self._finished) > self.finished_retention:
            evicted, _ = self._finished.popitem(last=False)
            logger.debug(f"Evicted finished topic {evicted}")

    def publish(self, topic: str, event: StreamEvent) -> StreamEvent | None:
        """Stamp an event with the topic sequence and fan it out.

        Args:
            topic: Deployment id or session id.
            event: Event to publish. Its ``sequence`` is replaced.

        Returns:
            The stamped event, or None if the topic already finished.
        """
        state = self._topic(topic)
        if state.done is not None:
            logger.debug(f"Dropping {event.type.value} event on finished topic {topic}")
            return None

        state.sequence += 1
        stamped = event.model_copy(update={"sequence": state.sequence})

        if stamped.type == EventType.PROGRESS:
            state.snapshot.update(stamped.data)
        elif stamped.type == EventType.ERROR:
            state.snapshot["error"] = stamped.data.get("error")
        elif stamped.type == EventType.DONE:
            state.snapshot.update(stamped.data)
            state.done = stamped

        state.backlog.append(stamped)
        for queue in list(state.subscribers):
            queue.put_nowait(stamped)
        if state.done is not None and not state.subscribers:
            self._retire(topic)
        return stamped

    def subscribe(self, topic: str) -> Subscription:
        """Attach a new subscriber to a topic.

        The snapshot is captured and the queue registered in the same step,
        so no event can fall between ``connected`` and the first increment.
        """
        state = self._topic(topic)
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        connected = StreamEvent.connected(topic, dict(state.snapshot)).model_copy(
            update={"sequence": state.sequence}
        )
        if state.done is not None:
            queue.put_nowait(state.done)
        else:
            state.subscribers.add(queue)
        logger.debug(f"Subscriber attached to {topic}")
        return Subscription(self, topic, queue, connected, self.heartbeat_interval)

    def _detach(self, topic: str, queue: asyncio.Queue[StreamEvent]) -> None:
        state = self._topics.get(topic)
        if state is not None:
            state.subscribers.discard(queue)
            logger.debug(f"Subscriber detached from {topic}")
            if state.done is not None and not state.subscribers:
                self._retire(topic)

    def snapshot(self, topic: str) -> dict[str, Any]:
        """Return a copy of the merged snapshot of a topic."""
        state = self._lookup(topic)
        return dict(state.snapshot) if state else {}

    def backlog(self, topic: str) -> list[StreamEvent]:
        """Return the retained events of a topic, oldest first."""
        state = self._lookup(topic)
        return list(state.backlog) if state else []

    def is_live(self, topic: str) -> bool:
        """True while the topic is unfinished or has attached subscribers."""
        return topic in self._topics

    def is_done(self, topic: str) -> bool:
        """True once a ``done`` event was published on the topic."""
        state = self._lookup(topic)
        return state is not None and state.done is not None

    def subscriber_count(self, topic: str) -> int:
        """Number of attached subscribers."""
        state = self._lookup(topic)
        return len(state.subscribers) if state else 0

