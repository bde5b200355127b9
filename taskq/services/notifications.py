from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Literal

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from ..core.config import NotificationSettings
from ..core.logging import get_logger
from ..utils.json_encoding import encode_json

logger = get_logger(name=__name__)

NotificationEventType = Literal[
    "tasks.discarded",
    "tasks.error",
    "queue.stats",
    "queue.final_stats",
]


@dataclass(slots=True)
class DiscardedTaskInfo:
    count: int
    last_24_hour_total: int | None = None


@dataclass(slots=True)
class TaskErrorInfo:
    error: str
    context: str


@dataclass(slots=True)
class TaskQueueStats:
    queue_name: str
    success: int
    failed: int
    async_count: int
    ignored: int
    instance_id: str


class TaskNotificationProvider:
    """Receives operational notifications from the task handler. Hooks default to no-ops."""

    async def on_tasks_discarded(self, info: DiscardedTaskInfo) -> None:
        return

    async def on_task_error(self, info: TaskErrorInfo) -> None:
        return

    async def on_queue_stats(self, stats: TaskQueueStats) -> None:
        return

    async def on_final_stats(self, stats: list[TaskQueueStats]) -> None:
        return


@dataclass(slots=True)
class NotificationEvent:
    event: NotificationEventType
    payload: Any

    def to_payload(self) -> dict[str, object]:
        if isinstance(self.payload, list):
            body: object = [asdict(item) for item in self.payload]
        else:
            body = asdict(self.payload)
        return {"event": self.event, "data": body}


Subscriber = Callable[[NotificationEvent], Awaitable[None]]


class TaskNotificationService(TaskNotificationProvider):
    """Fans notifications out to in-process subscribers and an optional webhook."""

    def __init__(self, settings: NotificationSettings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._subscribers: set[Subscriber] = set()
        self._webhook_url = settings.webhook_url
        self._http_timeout = settings.timeout_seconds
        self._max_attempts = settings.max_attempts
        self._transport = transport

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.add(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)

    async def on_tasks_discarded(self, info: DiscardedTaskInfo) -> None:
        await self.publish(NotificationEvent(event="tasks.discarded", payload=info))

    async def on_task_error(self, info: TaskErrorInfo) -> None:
        await self.publish(NotificationEvent(event="tasks.error", payload=info))

    async def on_queue_stats(self, stats: TaskQueueStats) -> None:
        await self.publish(NotificationEvent(event="queue.stats", payload=stats))

    async def on_final_stats(self, stats: list[TaskQueueStats]) -> None:
        await self.publish(NotificationEvent(event="queue.final_stats", payload=list(stats)))

    async def publish(self, event: NotificationEvent) -> None:
        if not self._settings.enabled:
            return

        deliveries: list[Awaitable[object]] = [
            self._safe_invoke(subscriber, event) for subscriber in list(self._subscribers)
        ]
        if self._webhook_url:
            deliveries.append(self._post_webhook(event.to_payload()))

        if not deliveries:
            logger.debug("task_notification_skipped", notification=event.event)
            return

        results = await asyncio.gather(*deliveries, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("task_notification_error", notification=event.event, error=str(result))

    async def _safe_invoke(self, subscriber: Subscriber, event: NotificationEvent) -> None:
        try:
            await subscriber(event)
        except Exception as exc:
            logger.warning(
                "task_notification_subscriber_failed",
                subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                error=str(exc),
            )

    async def _post_webhook(self, payload: dict[str, object]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout, transport=self._transport) as client:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self._max_attempts),
                    wait=wait_random_exponential(multiplier=0.2, max=2.0),
                    retry=retry_if_exception_type(httpx.HTTPError),
                    reraise=True,
                ):
                    with attempt:
                        response = await client.post(
                            self._webhook_url,  # type: ignore[arg-type]
                            content=encode_json(payload),
                            headers={"Content-Type": "application/json"},
                        )
                        response.raise_for_status()
        except Exception as exc:
            logger.warning("task_notification_webhook_failed", error=str(exc))


async def log_notification(event: NotificationEvent) -> None:
    logger.info("task_notification", notification=event.event, payload=event.to_payload())
