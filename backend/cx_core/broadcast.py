"""In-process fan-out of live update events to server-sent-event clients."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Protocol, Set

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 30.0
DISCONNECT_POLL_SECONDS = 1.0
QUEUE_MAXSIZE = 256

CONNECTED = "connected"
HEARTBEAT = "heartbeat"
RACE_UPDATED = "race-updated"
CONTEST_UPDATED = "contest-updated"
SERIES_UPDATED = "series-updated"
EVENT_TYPES = (CONNECTED, HEARTBEAT, RACE_UPDATED, CONTEST_UPDATED, SERIES_UPDATED)


class Subscriber(Protocol):
    def send(self, message: str) -> None:
        ...


class Relay(Protocol):
    def forward(self, envelope: Dict[str, Any]) -> None:
        ...


def now_ms() -> int:
    return int(time.time() * 1000)


def envelope(
    event_type: str,
    data: Optional[Dict[str, Any]] = None,
    message: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"type": event_type}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body["timestamp"] = timestamp if timestamp is not None else now_ms()
    return body


def format_sse(body: Dict[str, Any]) -> str:
    return f"data: {json.dumps(body, separators=(',', ':'))}\n\n"


class QueueSubscriber:
    """Delivers messages into an asyncio queue owned by a streaming response.

    ``send`` may be called from any thread; delivery is handed to the queue's
    event loop. A client whose bounded queue fills up is marked closed and is
    dropped by the next publish.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: "asyncio.Queue[str]") -> None:
        self.loop = loop
        self.queue = queue
        self.closed = False

    def send(self, message: str) -> None:
        if self.closed or self.loop.is_closed():
            raise ConnectionError("subscriber connection is closed")
        if self.queue.full():
            self.closed = True
            raise ConnectionError("subscriber queue is full")
        self.loop.call_soon_threadsafe(self._deliver, message)

    def _deliver(self, message: str) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Live update client is not reading; closing its stream")
            self.closed = True

    def close(self) -> None:
        self.closed = True


class LiveUpdateHub:
    """Registry of connected viewers plus the publish operation.

    One hub is built per application and handed to the request handlers. The
    subscriber set is guarded by a lock and publishing walks a snapshot, so
    viewers may come and go while a publish is in flight.
    """

    def __init__(self, heartbeat_seconds: float = HEARTBEAT_SECONDS, relay: Relay | None = None) -> None:
        self.heartbeat_seconds = heartbeat_seconds
        self.relay = relay
        self._subscribers: Set[Subscriber] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def register(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.add(subscriber)

        def unregister() -> None:
            self.unregister(subscriber)

        return unregister

    def unregister(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.discard(subscriber)

    def publish(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        forward: bool = True,
        timestamp: Optional[int] = None,
    ) -> int:
        """Send an event to every subscriber and return how many received it.

        Subscribers whose send raises are dropped. With ``forward`` the event is
        also handed to the cross-process relay; events arriving from the relay
        are published with ``forward=False`` so they never bounce back.
        """
        body = envelope(event_type, data=data, timestamp=timestamp)
        message = format_sse(body)

        with self._lock:
            snapshot = list(self._subscribers)

        delivered = 0
        stale = []
        for subscriber in snapshot:
            try:
                subscriber.send(message)
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("Dropping stale live update subscriber (%s)", exc)
                stale.append(subscriber)
            else:
                delivered += 1

        if stale:
            with self._lock:
                for subscriber in stale:
                    self._subscribers.discard(subscriber)

        if forward and self.relay is not None:
            try:
                self.relay.forward(body)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Failed to forward %s event to other workers", event_type)

        logger.debug("Published %s to %d subscribers", event_type, delivered)
        return delivered

    async def stream(
        self,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        heartbeat_seconds: float | None = None,
        poll_seconds: float = DISCONNECT_POLL_SECONDS,
    ) -> AsyncIterator[str]:
        """Yield the text/event-stream for one client until it goes away.

        The client is checked for disconnection every ``poll_seconds`` even
        while the stream is idle; heartbeats go out every ``heartbeat_seconds``.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        subscriber = QueueSubscriber(loop, queue)
        unregister = self.register(subscriber)
        interval = heartbeat_seconds or self.heartbeat_seconds
        next_heartbeat = loop.time() + interval
        try:
            yield format_sse(envelope(CONNECTED, message="SSE connection established"))
            while not subscriber.closed:
                if is_disconnected is not None and await is_disconnected():
                    break
                remaining = next_heartbeat - loop.time()
                if remaining <= 0:
                    next_heartbeat = loop.time() + interval
                    yield format_sse(envelope(HEARTBEAT))
                    continue
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=min(remaining, poll_seconds))
                except asyncio.TimeoutError:
                    continue
                yield message
        finally:
            subscriber.close()
            unregister()


def notify_race_update(hub: LiveUpdateHub, race_id: int) -> int:
    return hub.publish(RACE_UPDATED, {"raceId": race_id})


def notify_contest_update(hub: LiveUpdateHub, contest_id: int) -> int:
    return hub.publish(CONTEST_UPDATED, {"contestId": contest_id})


def notify_series_update(hub: LiveUpdateHub, series_id: int) -> int:
    return hub.publish(SERIES_UPDATED, {"seriesId": series_id})
