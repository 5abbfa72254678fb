"""Fire-and-forget event bus decoupled from call processing.

Every subscriber owns a bounded queue drained by its own consumer task, so
publishing is a non-blocking enqueue and a slow or failing subscriber only
ever affects itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .events import CallEventKind, EventHandler, EventPayload

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class Subscription:
    """One registered handler and its delivery queue."""

    name: str
    handler: EventHandler
    queue: asyncio.Queue[tuple[CallEventKind, EventPayload]]
    is_async: bool
    task: asyncio.Task[None] | None = None
    dropped: int = 0
    failures: int = 0
    delivered: int = field(default=0)


class EventBus:
    """Publish/subscribe channel for call lifecycle events."""

    def __init__(self, *, queue_size: int = 1000) -> None:
        """Initializes an idle bus.

        Args:
            queue_size: Maximum number of undelivered events buffered per
                subscriber before new events are dropped for it.
        """
        self._queue_size = queue_size
        self._subscriptions: list[Subscription] = []
        self._started = False
        self._closed = False

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return tuple(self._subscriptions)

    def subscribe(self, handler: EventHandler, *, name: str | None = None) -> Subscription:
        """Registers a handler invoked for every published event.

        Handlers added after `start()` get their consumer task immediately.
        """
        if self._closed:
            raise RuntimeError("Cannot subscribe to a closed event bus")
        subscription = Subscription(
            name=name or getattr(handler, "__qualname__", type(handler).__name__),
            handler=handler,
            queue=asyncio.Queue(maxsize=self._queue_size),
            is_async=_is_async_handler(handler),
        )
        self._subscriptions.append(subscription)
        if self._started:
            self._spawn_consumer(subscription)
        _LOGGER.debug(
            "Event subscriber registered.",
            extra={"subscriber": subscription.name, "is_async": subscription.is_async},
        )
        return subscription

    def publish(self, kind: CallEventKind, payload: EventPayload) -> None:
        """Queues an event for every subscriber without waiting for delivery."""
        if self._closed:
            _LOGGER.debug("Event bus closed; dropping event.", extra={"event_kind": kind.value})
            return
        frozen = MappingProxyType(dict(payload))
        for subscription in self._subscriptions:
            try:
                subscription.queue.put_nowait((kind, frozen))
            except asyncio.QueueFull:
                subscription.dropped += 1
                _LOGGER.warning(
                    "Event subscriber queue full; dropping event.",
                    extra={
                        "subscriber": subscription.name,
                        "event_kind": kind.value,
                        "dropped": subscription.dropped,
                    },
                )

    async def start(self) -> None:
        """Starts one consumer task per subscriber. Must run inside an event loop."""
        if self._started:
            return
        self._started = True
        for subscription in self._subscriptions:
            self._spawn_consumer(subscription)
        _LOGGER.debug("Event bus started.", extra={"subscriber_count": len(self._subscriptions)})

    async def drain(self) -> None:
        """Waits until every queued event has been handled."""
        if not self._started:
            await self.start()
        for subscription in self._subscriptions:
            await subscription.queue.join()

    async def close(self, *, drain: bool = True, timeout: float | None = 5.0) -> None:
        """Stops consumers, optionally delivering queued events first."""
        if self._closed:
            return
        if drain and self._started:
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except asyncio.TimeoutError:
                _LOGGER.warning("Timed out draining event bus on close.")
        self._closed = True
        for subscription in self._subscriptions:
            task = subscription.task
            subscription.task = None
            if task is None:
                continue
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        _LOGGER.debug(
            "Event bus closed.",
            extra={
                "subscriber_count": len(self._subscriptions),
                "delivered": sum(sub.delivered for sub in self._subscriptions),
                "dropped": sum(sub.dropped for sub in self._subscriptions),
            },
        )

    def _spawn_consumer(self, subscription: Subscription) -> None:
        subscription.task = asyncio.create_task(
            self._consume(subscription),
            name=f"event-bus:{subscription.name}",
        )

    async def _consume(self, subscription: Subscription) -> None:
        """Delivers one subscriber's events in publish order."""
        while True:
            kind, payload = await subscription.queue.get()
            try:
                if subscription.is_async:
                    await subscription.handler(kind, payload)  # type: ignore[misc]
                else:
                    await asyncio.to_thread(subscription.handler, kind, payload)
                subscription.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                subscription.failures += 1
                _LOGGER.exception(
                    "Event subscriber failed.",
                    extra={"subscriber": subscription.name, "event_kind": kind.value},
                )
            finally:
                subscription.queue.task_done()


def _is_async_handler(handler: Any) -> bool:
    if inspect.iscoroutinefunction(handler):
        return True
    return inspect.iscoroutinefunction(getattr(handler, "__call__", None))
