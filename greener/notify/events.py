"""In-process completion signal for estimation passes."""

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Subscriber = Callable[[Any], Any]


class EstimationEvents:
    """
    Fire-and-forget "estimation pass complete" notifications.

    Subscribers may be plain callables or coroutine functions. Delivery is
    at most once per publish; nothing is persisted or replayed, and a
    failing subscriber never affects the publisher or other subscribers.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe():
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, payload: Any) -> None:
        """Notify every subscriber without waiting on them."""
        for callback in list(self._subscribers):
            try:
                result = callback(payload)
            except Exception:
                logger.exception(f"Estimation completion subscriber {callback!r} failed")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async estimation completion subscriber failed: {exc}")

    async def drain(self) -> None:
        """Wait for in-flight async subscribers (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# Process-wide completion signal
estimation_events = EstimationEvents()
