from .dispatch import (
    DispatchResult,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    WebhookNotificationDispatcher,
    dispatch_with_timeout,
)
from .registry import NotificationDispatcherRegistry

__all__ = [
    "DispatchResult",
    "LoggingNotificationDispatcher",
    "NotificationDispatcher",
    "NotificationDispatcherRegistry",
    "WebhookNotificationDispatcher",
    "dispatch_with_timeout",
]
