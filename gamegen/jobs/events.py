"""
Progress event fan-out.

The pipeline publishes; any number of subscribers (SSE/WebSocket
bridges, the log drain) read at their own pace. Each subscription has a
bounded buffer that drops its oldest event on overflow, so a slow or
absent reader never blocks a publisher. Events are observational only;
the job store stays authoritative.
"""

import asyncio
from collections import deque
from typing import List, Optional, Tuple

from gamegen.jobs.models import JobRecord, ProgressEvent
from gamegen.utils.logging import AppLogger, event_logger


class Subscription:
    """
    Async iterator over progress events for one job (or all jobs).

    Usage:
        with emitter.subscribe(job_id) as events:
            async for event in events:
                ...
    """

    def __init__(self, emitter: "ProgressEmitter", job_id: Optional[str], buffer_size: int):
        self.job_id = job_id
        self.dropped = 0
        self._emitter = emitter
        self._events: deque = deque(maxlen=buffer_size)
        self._wakeup = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, job_id: str) -> bool:
        return self.job_id is None or self.job_id == job_id

    def push(self, event: ProgressEvent):
        if self._closed:
            return
        if len(self._events) == self._events.maxlen:
            self.dropped += 1
        self._events.append(event)
        self._wakeup.set()

    def drain(self) -> List[ProgressEvent]:
        """Take every buffered event without waiting."""
        events = list(self._events)
        self._events.clear()
        return events

    async def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None once closed (or when ``timeout`` expires)."""
        try:
            return await asyncio.wait_for(self.__anext__(), timeout)
        except (StopAsyncIteration, asyncio.TimeoutError):
            return None

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        while not self._events:
            if self._closed:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()
        return self._events.popleft()

    def close(self):
        """Detach from the emitter. Buffered events can still be read."""
        if self._closed:
            return
        self._closed = True
        self._wakeup.set()
        self._emitter._unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.close()


class ProgressEmitter:
    """Single-writer, many-reader broadcast of ProgressEvents."""

    def __init__(self, buffer_size: int = 256):
        self.buffer_size = buffer_size
        # Replaced, never mutated, so publish iterates a stable snapshot
        self._subscribers: Tuple[Subscription, ...] = ()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        """Subscribe to one job's events, or to every job with ``job_id=None``."""
        subscription = Subscription(self, job_id, self.buffer_size)
        if self._closed:
            subscription.close()
            return subscription
        self._subscribers = self._subscribers + (subscription,)
        return subscription

    def _unsubscribe(self, subscription: Subscription):
        self._subscribers = tuple(s for s in self._subscribers if s is not subscription)

    def publish(self, job_id: str, event: ProgressEvent):
        """Deliver ``event`` to matching subscribers. Never blocks."""
        if self._closed:
            return
        for subscription in self._subscribers:
            if subscription.matches(job_id):
                subscription.push(event)

    def emit(self, job: JobRecord, message: Optional[str] = None):
        """Publish the current state of ``job``."""
        self.publish(job.id, ProgressEvent.from_job(job, message))

    def close(self):
        """End every subscription; later publishes are dropped."""
        self._closed = True
        for subscription in self._subscribers:
            subscription.close()


async def log_events(subscription: Subscription, logger: AppLogger = event_logger):
    """Drain a subscription into the application log until it closes."""
    async for event in subscription:
        logger.debug(
            f"{event.state.value} {event.progress}%",
            job_id=event.job_id,
            step=event.current_step,
            message=event.message,
        )
    if subscription.dropped:
        logger.warning("Progress log drain fell behind", dropped=subscription.dropped)
