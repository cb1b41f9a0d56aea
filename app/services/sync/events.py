import asyncio
import inspect
import json
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Set
import uuid

from pydantic import Field
import redis
import redis.asyncio as aioredis

from app.config.settings import settings
from app.schemas.camel_base_model import CamelCaseBaseModel
from app.utils.datetime_utils import naive_utc_now
from app.utils.logging import get_logger

logger = get_logger()


class ConditionAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ARMED = "armed"
    DISARMED = "disarmed"
    CHECKED_IN = "checked_in"
    PANIC_FIRED = "panic_fired"
    REMINDER_SENT = "reminder_sent"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    RECOVERED = "recovered"


class ConditionEvent(CamelCaseBaseModel):
    """Authoritative change announcement for one condition"""

    condition_id: uuid.UUID
    message_id: uuid.UUID
    action: ConditionAction
    timestamp: datetime = Field(default_factory=naive_utc_now)
    active: Optional[bool] = None
    version: Optional[int] = None


EventHandler = Callable[[ConditionEvent], object]


def _log_handler_failure(event: ConditionEvent, error: BaseException):
    logger.warning(
        "Condition event handler failed",
        action=event.action.value,
        condition_id=str(event.condition_id),
        error=str(error),
    )


class EventBus(Protocol):
    def publish(self, event: ConditionEvent) -> None: ...

    def subscribe(self, handler: EventHandler) -> Callable[[], None]: ...


class PushChannel(Protocol):
    """Client side of the push transport: yields events until disconnected"""

    def listen(self) -> AsyncIterator[ConditionEvent]: ...


class InMemoryEventBus:
    """Process-local bus; also serves as a push channel for in-process clients"""

    def __init__(self):
        self._handlers: List[EventHandler] = []
        self._queues: List[asyncio.Queue] = []
        self._handler_tasks: Set[asyncio.Future] = set()

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, event: ConditionEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    self._track(result, event)
            except Exception as e:
                # A broken subscriber must not fail the mutation that published
                _log_handler_failure(event, e)
        for queue in list(self._queues):
            queue.put_nowait(event)

    def _track(self, awaitable: Awaitable, event: ConditionEvent):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning(
                "Async condition event handler dropped outside an event loop",
                action=event.action.value,
                condition_id=str(event.condition_id),
            )
            return

        task = asyncio.ensure_future(awaitable)
        self._handler_tasks.add(task)

        def _done(finished: asyncio.Future):
            self._handler_tasks.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                _log_handler_failure(event, finished.exception())

        task.add_done_callback(_done)

    async def listen(self) -> AsyncIterator[ConditionEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)


def redis_url() -> str:
    return f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"


class RedisEventBus:
    """Publishes events on a Redis channel so other processes can push them"""

    def __init__(self, client: Optional[redis.Redis] = None, channel: Optional[str] = None):
        self.client = client or redis.Redis.from_url(redis_url())
        self.channel = channel or settings.EVENT_CHANNEL
        self._local = InMemoryEventBus()

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        return self._local.subscribe(handler)

    def publish(self, event: ConditionEvent) -> None:
        self._local.publish(event)
        try:
            self.client.publish(self.channel, event.model_dump_json(by_alias=True))
        except redis.RedisError as e:
            logger.warning(
                "Failed to publish condition event",
                action=event.action.value,
                condition_id=str(event.condition_id),
                error=str(e),
            )


class RedisPushChannel:
    """Subscribes to the Redis event channel. Connection errors propagate so
    the caller can reconnect."""

    def __init__(self, url: Optional[str] = None, channel: Optional[str] = None):
        self.url = url or redis_url()
        self.channel = channel or settings.EVENT_CHANNEL

    async def listen(self) -> AsyncIterator[ConditionEvent]:
        client = aioredis.Redis.from_url(self.url)
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield ConditionEvent.model_validate(json.loads(message["data"]))
                except ValueError as e:
                    logger.warning("Dropping malformed condition event", error=str(e))
        finally:
            await pubsub.aclose()
            await client.aclose()


_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Process-wide event bus selected by EVENT_BUS_BACKEND"""
    global _event_bus
    if _event_bus is None:
        if settings.EVENT_BUS_BACKEND == "redis":
            _event_bus = RedisEventBus()
        else:
            _event_bus = InMemoryEventBus()
    return _event_bus
