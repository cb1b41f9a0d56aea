import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Optional, Protocol, Sequence

import httpx

from app.config.settings import settings
from app.utils.logging import get_logger

logger = get_logger()


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of a single dispatch call"""

    success: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "DispatchResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str) -> "DispatchResult":
        return cls(success=False, error=error)


class NotificationDispatcher(Protocol):
    """Outbound notification contract used by the scheduler and panic path.

    Implementations report failure through ``DispatchResult``; raising is
    tolerated and treated the same way by ``dispatch_with_timeout``.
    """

    async def remind_owner(self, owner_ref: Any, message_ref: Any) -> DispatchResult:
        ...

    async def deliver_final(
        self, recipient_refs: Sequence[Any], message_ref: Any
    ) -> DispatchResult:
        ...


async def dispatch_with_timeout(
    call: Awaitable[DispatchResult], timeout_seconds: Optional[float] = None
) -> DispatchResult:
    """Await a dispatch call, turning timeouts and exceptions into failures."""
    timeout = (
        timeout_seconds
        if timeout_seconds is not None
        else settings.DISPATCH_TIMEOUT_SECONDS
    )
    try:
        result = await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        return DispatchResult.failed(f"Dispatch timed out after {timeout}s")
    except Exception as e:
        return DispatchResult.failed(f"{type(e).__name__}: {e}")

    if result is None:
        return DispatchResult.failed("Dispatcher returned no result")
    return result


class LoggingNotificationDispatcher:
    """Dispatcher that only logs. Default channel for development."""

    async def remind_owner(self, owner_ref: Any, message_ref: Any) -> DispatchResult:
        logger.info(
            "Reminder dispatched",
            owner_ref=str(owner_ref),
            message_ref=str(message_ref),
        )
        return DispatchResult.ok()

    async def deliver_final(
        self, recipient_refs: Sequence[Any], message_ref: Any
    ) -> DispatchResult:
        logger.info(
            "Final delivery dispatched",
            recipient_count=len(recipient_refs),
            message_ref=str(message_ref),
        )
        return DispatchResult.ok()


class WebhookNotificationDispatcher:
    """Posts dispatch requests to an HTTP endpoint that owns the real channels."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not url:
            raise ValueError("Webhook dispatcher requires NOTIFICATION_WEBHOOK_URL")
        self.url = url
        self.timeout = timeout
        self.client = client

    async def _post(self, payload: dict) -> DispatchResult:
        if self.client is not None:
            response = await self.client.post(
                self.url, json=payload, timeout=self.timeout
            )
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.url, json=payload, timeout=self.timeout
                )

        if response.status_code >= 400:
            return DispatchResult.failed(
                f"Webhook responded {response.status_code}: {response.text[:200]}"
            )
        return DispatchResult.ok()

    async def remind_owner(self, owner_ref: Any, message_ref: Any) -> DispatchResult:
        return await self._post(
            {
                "type": "reminder",
                "ownerRef": str(owner_ref),
                "messageRef": str(message_ref),
            }
        )

    async def deliver_final(
        self, recipient_refs: Sequence[Any], message_ref: Any
    ) -> DispatchResult:
        return await self._post(
            {
                "type": "final_delivery",
                "recipientRefs": [str(ref) for ref in recipient_refs],
                "messageRef": str(message_ref),
            }
        )
