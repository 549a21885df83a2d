"""
In-process publish/subscribe dispatcher.

Handlers run sequentially in subscription order. A failing handler is retried
in the background with exponential backoff (1s, 2s, 4s by default) and, once
retries are exhausted, reported on the dead-letter channel. Handler failures
never reach the publisher.
"""
import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple, Union

from afms.core.clock import utcnow
from afms.core.logging import Logger
from afms.models.domain import DomainEvent
from afms.models.enums import EventType

DEFAULT_MAX_RETRIES = 3


class EventHandler(Protocol):
    async def handle(self, event: DomainEvent) -> None:
        ...


HandlerLike = Union[EventHandler, Callable[[DomainEvent], Awaitable[None]]]


@dataclass(frozen=True)
class DeadLetter:
    """An event whose handler permanently failed after retries."""
    event: DomainEvent
    handler: str
    error: str
    attempts: int
    failed_at: datetime = field(default_factory=utcnow)


def handler_name(handler: HandlerLike) -> str:
    if hasattr(handler, "handle"):
        return type(handler).__name__
    return getattr(handler, "__name__", repr(handler))


class EventBus:
    """Fans domain events out to subscribed handlers."""

    def __init__(
        self,
        logger: Optional[Logger] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics=None,
    ):
        self.logger = logger or Logger(__name__)
        self.max_retries = max_retries
        self.metrics = metrics
        self._sleep = sleep
        self._subscriptions: Dict[str, List[HandlerLike]] = {}
        # (event id, handler identity) -> retries already scheduled
        self._retry_attempts: Dict[Tuple[str, int], int] = {}
        self._pending: Set[asyncio.Task] = set()
        self._dead_letter_listeners: List[Callable[[DeadLetter], Any]] = []
        self.dead_letters: List[DeadLetter] = []

    def subscribe(self, event_type: str, handler: HandlerLike) -> None:
        self._subscriptions.setdefault(event_type, []).append(handler)
        self.logger.info(f"Subscribed to event: {event_type}", handler=handler_name(handler))

    def subscribe_to_all(self, handler: HandlerLike) -> None:
        self.subscribe(EventType.WILDCARD, handler)

    def unsubscribe(self, event_type: str, handler: HandlerLike) -> None:
        handlers = self._subscriptions.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)
            self.logger.info(f"Unsubscribed from event: {event_type}", handler=handler_name(handler))

    def subscribe_dead_letter(self, listener: Callable[[DeadLetter], Any]) -> None:
        self._dead_letter_listeners.append(listener)

    def get_subscription_count(self, event_type: str) -> int:
        return len(self._subscriptions.get(event_type, []))

    def get_all_event_types(self) -> List[str]:
        return list(self._subscriptions.keys())

    @property
    def pending_retries(self) -> int:
        return len(self._pending)

    async def publish(self, event: DomainEvent) -> None:
        """Deliver an event to its subscribers, then to wildcard subscribers."""
        self.logger.info(
            f"Publishing event: {event.event_type}",
            event_id=event.id,
            aggregate_id=event.aggregate_id,
            aggregate_type=event.aggregate_type,
        )
        if self.metrics is not None:
            self.metrics.increment("event_bus.published", labels={"event_type": event.event_type})

        handlers = list(self._subscriptions.get(event.event_type, []))
        if event.event_type != EventType.WILDCARD:
            handlers += self._subscriptions.get(EventType.WILDCARD, [])

        for handler in handlers:
            await self._handle_event(event, handler)

        self.logger.info(f"Event published successfully: {event.event_type}", event_id=event.id)

    async def _handle_event(self, event: DomainEvent, handler: HandlerLike) -> None:
        key = (event.id, id(handler))
        name = handler_name(handler)

        try:
            await self._invoke(handler, event)
        except Exception as e:
            attempts = self._retry_attempts.get(key, 0)
            self.logger.error(
                "Event handler failed",
                event_id=event.id,
                event_type=event.event_type,
                handler=name,
                attempt=attempts + 1,
                error=str(e),
            )

            if attempts < self.max_retries:
                self._retry_attempts[key] = attempts + 1
                self._schedule_retry(event, handler, delay=2 ** attempts)
            else:
                self._retry_attempts.pop(key, None)
                await self._dead_letter(DeadLetter(event=event, handler=name, error=str(e), attempts=attempts + 1))
            return

        # Reset retry count on success
        self._retry_attempts.pop(key, None)
        self.logger.debug("Event handled successfully", event_id=event.id, event_type=event.event_type, handler=name)

    @staticmethod
    async def _invoke(handler: HandlerLike, event: DomainEvent) -> None:
        if hasattr(handler, "handle"):
            result = handler.handle(event)
        else:
            result = handler(event)
        if inspect.isawaitable(result):
            await result

    def _schedule_retry(self, event: DomainEvent, handler: HandlerLike, delay: float) -> None:
        task = asyncio.create_task(self._retry_later(event, handler, delay))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _retry_later(self, event: DomainEvent, handler: HandlerLike, delay: float) -> None:
        await self._sleep(delay)
        await self._handle_event(event, handler)

    async def _dead_letter(self, letter: DeadLetter) -> None:
        self.logger.error(
            f"Event moved to dead letter queue after {self.max_retries} retries",
            event_id=letter.event.id,
            event_type=letter.event.event_type,
            handler=letter.handler,
        )
        self.dead_letters.append(letter)
        if self.metrics is not None:
            self.metrics.increment("event_bus.dead_letter", labels={"event_type": letter.event.event_type})

        for listener in list(self._dead_letter_listeners):
            try:
                result = listener(letter)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception("Dead letter listener failed", event_id=letter.event.id)

    async def drain(self) -> None:
        """Wait until every scheduled retry has settled (including retries they schedule)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel pending retries. Called once at process shutdown."""
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        self._pending.clear()
