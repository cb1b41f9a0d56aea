"""Client-side view of conditions.

Reads go through a short TTL cache. The TTL only decides when to refetch; the
last confirmed state stays available to the local view after it goes stale.
Mutations are applied optimistically to the local view, then replaced by the
server's confirmed state, which always wins over anything optimistic. A push
channel carries server-side changes (scheduler deliveries, other devices) and
is reconnected in the background with exponential backoff.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Protocol
import uuid

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    wait_random_exponential,
)

from app.config.settings import settings
from app.schemas.condition_schemas import ConditionResponse
from app.services.sync.cache import TTLCache
from app.services.sync.events import ConditionEvent, PushChannel
from app.utils.datetime_utils import naive_utc_now
from app.utils.errors import BusinessLogicError, ConflictError, NotFoundError
from app.utils.logging import get_logger

logger = get_logger()

StateCallback = Callable[[ConditionResponse], object]


class PushChannelClosed(Exception):
    """The push stream ended without an error"""


class ConditionApi(Protocol):
    async def fetch(self, condition_id: uuid.UUID) -> ConditionResponse: ...

    async def arm(self, condition_id: uuid.UUID) -> ConditionResponse: ...

    async def disarm(self, condition_id: uuid.UUID) -> ConditionResponse: ...

    async def check_in(self, condition_id: uuid.UUID) -> ConditionResponse: ...


class HttpConditionApi:
    """ConditionApi over the conditions HTTP router"""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _request(self, method: str, path: str) -> ConditionResponse:
        response = await self.client.request(method, f"{self.base_url}{path}")
        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            message = body.get("message", response.text)
            error_code = (body.get("meta") or {}).get("error_code", "HTTP_ERROR")
            if response.status_code == 404:
                raise NotFoundError(message, error_code=error_code)
            if response.status_code == 409:
                raise ConflictError(message, error_code=error_code)
            raise BusinessLogicError(message, error_code=error_code)

        return ConditionResponse.model_validate(body["data"])

    async def fetch(self, condition_id: uuid.UUID) -> ConditionResponse:
        return await self._request("GET", f"/conditions/{condition_id}")

    async def arm(self, condition_id: uuid.UUID) -> ConditionResponse:
        return await self._request("POST", f"/conditions/{condition_id}/arm")

    async def disarm(self, condition_id: uuid.UUID) -> ConditionResponse:
        return await self._request("POST", f"/conditions/{condition_id}/disarm")

    async def check_in(self, condition_id: uuid.UUID) -> ConditionResponse:
        return await self._request("POST", f"/conditions/{condition_id}/check-in")

    async def aclose(self):
        await self.client.aclose()


def _log_reconnect(retry_state: RetryCallState):
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Push channel disconnected, reconnecting",
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.next_action.sleep, 2)
        if retry_state.next_action
        else None,
        error=str(exc) if exc else None,
    )


class ConditionSyncClient:
    def __init__(
        self,
        api: ConditionApi,
        push_channel: Optional[PushChannel] = None,
        cache: Optional[TTLCache] = None,
        max_backoff_seconds: Optional[float] = None,
    ):
        self.api = api
        self.push_channel = push_channel
        self.cache: TTLCache[uuid.UUID, ConditionResponse] = (
            cache
            if cache is not None
            else TTLCache(settings.CONDITION_CACHE_TTL_SECONDS)
        )
        self.max_backoff_seconds = (
            max_backoff_seconds or settings.SYNC_RECONNECT_MAX_BACKOFF_SECONDS
        )
        self._optimistic: Dict[uuid.UUID, ConditionResponse] = {}
        self._observers: Dict[uuid.UUID, List[StateCallback]] = {}
        self._push_task: Optional[asyncio.Task] = None
        self.connected = False

    # Local view

    def view(self, condition_id: uuid.UUID) -> Optional[ConditionResponse]:
        """Optimistic state if a mutation is in flight, else the last confirmed
        state even when it is older than the cache TTL"""
        return self._optimistic.get(condition_id) or self.cache.peek(condition_id)

    def subscribe(
        self, condition_id: uuid.UUID, callback: StateCallback
    ) -> Callable[[], None]:
        self._observers.setdefault(condition_id, []).append(callback)

        def unsubscribe():
            callbacks = self._observers.get(condition_id, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def _notify(self, state: ConditionResponse):
        for callback in list(self._observers.get(state.id, [])):
            try:
                callback(state)
            except Exception as e:
                logger.warning(
                    "Condition observer failed", condition_id=str(state.id), error=str(e)
                )

    def _store_confirmed(self, state: ConditionResponse) -> ConditionResponse:
        cached = self.cache.peek(state.id)
        if cached is not None and cached.version > state.version:
            # An out-of-order response must not roll back a newer state
            return cached
        self._optimistic.pop(state.id, None)
        self.cache.set(state.id, state)
        self._notify(state)
        return state

    # Reads

    async def get_condition(
        self, condition_id: uuid.UUID, force_refresh: bool = False
    ) -> ConditionResponse:
        if not force_refresh:
            cached = self.cache.get(condition_id)
            if cached is not None:
                return cached
        return self._store_confirmed(await self.api.fetch(condition_id))

    # Mutations

    async def _mutate(
        self,
        condition_id: uuid.UUID,
        optimistic: Callable[[ConditionResponse], ConditionResponse],
        call: Callable[[uuid.UUID], Awaitable[ConditionResponse]],
    ) -> ConditionResponse:
        previous = self.cache.peek(condition_id)
        self.cache.invalidate(condition_id)

        if previous is not None:
            guess = optimistic(previous)
            self._optimistic[condition_id] = guess
            self._notify(guess)

        try:
            confirmed = await call(condition_id)
        except Exception as e:
            self._optimistic.pop(condition_id, None)
            if previous is not None:
                # A conflict means the cached state is known stale
                if not isinstance(e, ConflictError):
                    self.cache.set(condition_id, previous)
                self._notify(previous)
            raise

        return self._store_confirmed(confirmed)

    async def arm(self, condition_id: uuid.UUID) -> ConditionResponse:
        return await self._mutate(
            condition_id,
            lambda state: state.model_copy(update={"active": True}),
            self.api.arm,
        )

    async def disarm(self, condition_id: uuid.UUID) -> ConditionResponse:
        return await self._mutate(
            condition_id,
            lambda state: state.model_copy(update={"active": False}),
            self.api.disarm,
        )

    async def check_in(self, condition_id: uuid.UUID) -> ConditionResponse:
        return await self._mutate(
            condition_id,
            lambda state: state.model_copy(update={"last_checked": naive_utc_now()}),
            self.api.check_in,
        )

    # Push reconciliation

    async def handle_event(self, event: ConditionEvent):
        cached = self.cache.peek(event.condition_id)
        if (
            cached is not None
            and event.version is not None
            and cached.version >= event.version
            and event.condition_id not in self._optimistic
        ):
            return

        self.cache.invalidate(event.condition_id)
        if not self._observers.get(event.condition_id):
            return

        try:
            await self.get_condition(event.condition_id, force_refresh=True)
        except (httpx.HTTPError, NotFoundError, BusinessLogicError) as e:
            # Cache is already invalidated; the next read refetches
            logger.warning(
                "Failed to refresh condition after push event",
                condition_id=str(event.condition_id),
                error=str(e),
            )

    async def _listen_once(self):
        self.connected = True
        try:
            async for event in self.push_channel.listen():
                await self.handle_event(event)
        finally:
            self.connected = False
        raise PushChannelClosed("Push channel stream ended")

    async def _run_push(self):
        first_attempt = True
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            wait=wait_random_exponential(multiplier=1, max=self.max_backoff_seconds),
            before_sleep=_log_reconnect,
        ):
            with attempt:
                if not first_attempt:
                    # Events may have been missed while disconnected
                    self.cache.clear()
                first_attempt = False
                await self._listen_once()

    def start(self) -> Optional[asyncio.Task]:
        """Connect the push channel in the background. Requires a running loop."""
        if self.push_channel is None:
            return None
        if self._push_task is None or self._push_task.done():
            self._push_task = asyncio.get_running_loop().create_task(self._run_push())
        return self._push_task

    async def stop(self):
        if self._push_task is None:
            return
        self._push_task.cancel()
        try:
            await self._push_task
        except asyncio.CancelledError:
            pass
        self._push_task = None
