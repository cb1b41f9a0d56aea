from typing import Callable, Dict, Optional

from .dispatch import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    WebhookNotificationDispatcher,
)
from app.config.settings import settings
from app.utils.logging import get_logger

logger = get_logger()


def create_logging_dispatcher() -> NotificationDispatcher:
    return LoggingNotificationDispatcher()


def create_webhook_dispatcher() -> NotificationDispatcher:
    return WebhookNotificationDispatcher(
        settings.NOTIFICATION_WEBHOOK_URL,
        timeout=float(settings.DISPATCH_TIMEOUT_SECONDS),
    )


class NotificationDispatcherRegistry:
    """Registry for notification dispatcher creation"""

    # Map channel names to factory functions
    _factories: Dict[str, Callable[[], NotificationDispatcher]] = {
        "log": create_logging_dispatcher,
        "webhook": create_webhook_dispatcher,
    }

    @classmethod
    def create_dispatcher(
        cls, channel: Optional[str] = None
    ) -> NotificationDispatcher:
        """Create dispatcher instance for a channel, defaulting to settings"""
        channel = channel or settings.NOTIFICATION_CHANNEL
        factory = cls._factories.get(channel)
        if factory is None:
            logger.warning(
                f"No dispatcher registered for channel: {channel}, falling back to log"
            )
            factory = create_logging_dispatcher
        return factory()

    @classmethod
    def register_dispatcher(
        cls, channel: str, factory: Callable[[], NotificationDispatcher]
    ):
        """Register a custom factory function for a channel"""
        cls._factories[channel] = factory
        logger.info(f"Registered dispatcher for channel: {channel}")

    @classmethod
    def list_registered_channels(cls) -> list:
        """List all registered channels"""
        return list(cls._factories.keys())

    @classmethod
    def is_registered(cls, channel: str) -> bool:
        """Check if channel is registered"""
        return channel in cls._factories
