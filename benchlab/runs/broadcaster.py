"""In-memory fan-out of live run events to SSE subscribers.

Publishing never blocks: each subscriber owns a bounded queue and a slow
subscriber simply loses chunks. The terminal ``complete`` event is always
delivered and detaches every subscriber of that run.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator
from types import TracebackType

from benchlab.runs.models import RunEvent

logger = logging.getLogger(__name__)

# How many finished runs to remember for late subscribers
_FINAL_CACHE_SIZE = 256


class Subscription:
    """One live listener attached to a run."""

    def __init__(
        self,
        broadcaster: "EventBroadcaster | None",
        run_id: str,
        maxsize: int,
        final: RunEvent | None = None,
    ) -> None:
        self.run_id = run_id
        self.dropped = 0
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[RunEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        if final is not None:
            self._queue.put_nowait(final)

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: RunEvent) -> None:
        """Hand an event to this subscriber without blocking."""
        try:
            self._queue.put_nowait(event)
            return
        except asyncio.QueueFull:
            pass

        if not event.is_complete:
            self.dropped += 1
            if self.dropped == 1:
                logger.warning("Subscriber of run %s is falling behind, dropping output", self.run_id)
            return

        # Terminal event must arrive: evict the oldest chunk to make room.
        self._queue.get_nowait()
        self.dropped += 1
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._broadcaster is not None:
            self._broadcaster._detach(self)

    def __aiter__(self) -> AsyncIterator[RunEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[RunEvent]:
        try:
            while True:
                event = await self._queue.get()
                yield event
                if event.is_complete:
                    return
        finally:
            self.close()

    async def get(self, timeout: float | None = None) -> RunEvent:
        """Next event, or ``asyncio.TimeoutError`` after ``timeout`` seconds."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class EventBroadcaster:
    """Per-run subscriber sets with fire-and-forget publishing."""

    def __init__(self, queue_size: int = 1000) -> None:
        self.queue_size = queue_size
        self._subscribers: dict[str, set[Subscription]] = {}
        self._final: OrderedDict[str, RunEvent] = OrderedDict()

    def subscribe(self, run_id: str, final: RunEvent | None = None) -> Subscription:
        """Attach a listener to ``run_id``.

        If the run is already terminal (``final`` given, or its ``complete``
        event was published earlier) the subscription yields only that event.
        """
        final = final or self._final.get(run_id)
        if final is not None:
            return Subscription(None, run_id, maxsize=1, final=final)

        sub = Subscription(self, run_id, maxsize=self.queue_size)
        self._subscribers.setdefault(run_id, set()).add(sub)
        logger.debug("Subscriber attached to run %s (%d total)", run_id, len(self._subscribers[run_id]))
        return sub

    def publish(self, run_id: str, event: RunEvent) -> None:
        """Deliver ``event`` to every subscriber currently attached to ``run_id``."""
        if event.is_complete:
            self._remember(run_id, event)
            subscribers = self._subscribers.pop(run_id, set())
        else:
            subscribers = self._subscribers.get(run_id, set())

        for sub in list(subscribers):
            if sub.closed:
                subscribers.discard(sub)
                continue
            sub.deliver(event)

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, ()))

    def _remember(self, run_id: str, event: RunEvent) -> None:
        self._final[run_id] = event
        self._final.move_to_end(run_id)
        while len(self._final) > _FINAL_CACHE_SIZE:
            self._final.popitem(last=False)

    def _detach(self, sub: Subscription) -> None:
        subscribers = self._subscribers.get(sub.run_id)
        if subscribers is None:
            return
        subscribers.discard(sub)
        if not subscribers:
            del self._subscribers[sub.run_id]
