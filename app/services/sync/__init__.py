from .cache import TTLCache
from .client_sync import ConditionSyncClient, HttpConditionApi
from .events import (
    ConditionAction,
    ConditionEvent,
    InMemoryEventBus,
    RedisEventBus,
    RedisPushChannel,
    get_event_bus,
)

__all__ = [
    "TTLCache",
    "ConditionSyncClient",
    "HttpConditionApi",
    "ConditionAction",
    "ConditionEvent",
    "InMemoryEventBus",
    "RedisEventBus",
    "RedisPushChannel",
    "get_event_bus",
]
