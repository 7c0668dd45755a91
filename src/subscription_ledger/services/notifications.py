"""
Post-commit domain events.

Services record events on the unit of work; once it has committed they are
handed to `EventDispatcher.publish`, which schedules every subscriber as a
separate task and returns immediately. A failing or slow subscriber never
reaches back into the transition that produced the event.
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Iterable, List, Set, Union

from subscription_ledger.models.events import DomainEvent

logger = logging.getLogger(__name__)

Handler = Callable[[DomainEvent], Union[Awaitable[None], None]]


class EventDispatcher:
    def __init__(self) -> None:
        self._handlers: List[Handler] = []
        self._pending_tasks: Set[asyncio.Task] = set()

    def subscribe(self, handler: Handler) -> None:
        self._handlers.append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__qualname__', handler)!r}")

    def unsubscribe(self, handler: Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def publish(self, events: Iterable[DomainEvent]) -> None:
        events = list(events)
        if not events or not self._handlers:
            return
        loop = asyncio.get_running_loop()
        for event in events:
            for handler in self._handlers:
                task = loop.create_task(self._deliver(handler, event))
                self._pending_tasks.add(task)
                task.add_done_callback(self._pending_tasks.discard)

    async def drain(self, timeout: float = 5.0) -> None:
        """Waits for in-flight deliveries. Used on shutdown and in tests."""
        if not self._pending_tasks:
            return
        done, pending = await asyncio.wait(set(self._pending_tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"{len(pending)} notification(s) cancelled on drain")

    async def _deliver(self, handler: Handler, event: DomainEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "Notification handler failed",
                extra={"event_name": event.name, "subscription_id": str(event.subscription_id)},
            )


class LoggingNotifier:
    """Default subscriber: one INFO line per event. Email delivery plugs in next to it."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logging.getLogger("subscription_ledger.notifications")

    async def __call__(self, event: DomainEvent) -> None:
        self._log.info(
            f"{event.name} for subscription {event.subscription_id}",
            extra={"event_name": event.name, "user_id": str(event.user_id), "subscription_id": str(event.subscription_id)},
        )
