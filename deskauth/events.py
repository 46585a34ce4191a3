"""Lifecycle event subscription.

Consumers subscribe a handler (sync or async) to some or all lifecycle
events, or take a queue of events they own. A failing handler is
logged and never affects the authentication flow that emitted it.
"""

from __future__ import annotations

import asyncio
import inspect

from collections.abc import Awaitable, Callable
from typing import Any

from .log import get_logger, log_handler_error
from .types import AuthEvent, LifecycleEvent


# Handlers may be plain functions or coroutine functions
EventHandler = Callable[[AuthEvent], None] | Callable[[AuthEvent], Awaitable[None]]


class Subscription:
    """A registered handler. Unsubscribe explicitly or use as a context manager."""

    def __init__(
        self,
        owner: LifecycleEvents,
        handler: EventHandler,
        events: frozenset[LifecycleEvent] | None,
    ) -> None:
        """Initialize the subscription."""
        self._owner = owner
        self.handler = handler
        self.events = events
        self._active = True

    @property
    def active(self) -> bool:
        """Whether the handler still receives events."""
        return self._active

    def wants(self, event: LifecycleEvent) -> bool:
        """Whether this subscription receives ``event``."""
        return self._active and (self.events is None or event in self.events)

    def unsubscribe(self) -> bool:
        """Stop receiving events.

        Returns
        -------
        bool
            False if already unsubscribed.
        """
        if not self._active:
            return False
        self._active = False
        self._owner._remove(self)  # noqa: SLF001
        return True

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class LifecycleEvents:
    """Observer registry for authentication lifecycle events."""

    def __init__(self) -> None:
        """Initialize with no subscribers."""
        self._subscriptions: list[Subscription] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, handler: EventHandler, *events: LifecycleEvent | str) -> Subscription:
        """Register a handler.

        Parameters
        ----------
        handler : callable
            Called with each ``AuthEvent``. Coroutine results are
            scheduled as tasks on the running loop.
        *events : LifecycleEvent or str
            Events to receive (e.g. ``"token-expired"``). None given means all.

        Returns
        -------
        Subscription
            Handle used to unsubscribe.
        """
        wanted = frozenset(LifecycleEvent(e) for e in events) if events else None
        subscription = Subscription(self, handler, wanted)
        self._subscriptions.append(subscription)
        return subscription

    def channel(
        self, *events: LifecycleEvent | str, maxsize: int = 0
    ) -> tuple[asyncio.Queue[AuthEvent], Subscription]:
        """Deliver events into a queue owned by the caller.

        Parameters
        ----------
        *events : LifecycleEvent or str
            Events to receive. None given means all.
        maxsize : int
            Queue bound (0 for unbounded). Events arriving at a full
            queue are dropped with a warning.

        Returns
        -------
        tuple
            ``(queue, subscription)``.
        """
        queue: asyncio.Queue[AuthEvent] = asyncio.Queue(maxsize=maxsize)

        def _put(event: AuthEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                get_logger().warning("Lifecycle channel full; dropped '%s'", event.event.value)

        return queue, self.subscribe(_put, *events)

    def emit(self, event: AuthEvent) -> None:
        """Deliver an event to every interested subscriber."""
        for subscription in list(self._subscriptions):
            if not subscription.wants(event.event):
                continue
            try:
                result = subscription.handler(event)
            except Exception as exc:
                log_handler_error(event.event.value, exc)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(lambda t, name=event.event.value: self._task_done(t, name))

    def _task_done(self, task: asyncio.Task[Any], event: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_handler_error(event, exc)

    async def drain(self) -> None:
        """Wait for async handlers that are still running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def clear(self) -> None:
        """Drop every subscription."""
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()
