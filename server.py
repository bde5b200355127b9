"""taskq worker entry point."""

from __future__ import annotations

import asyncio
import signal

from prometheus_client import start_http_server

from taskq.core.config import Settings, get_settings
from taskq.core.logging import bind_worker_context, configure_logging, get_logger
from taskq.queue.async_manager import AsyncTaskManager
from taskq.queue.handler import TaskHandler
from taskq.queue.registry import TaskQueuesManager
from taskq.queue.store import InMemoryTaskStorageAdapter
from taskq.queue.transport import InMemoryMessageQueue
from taskq.services.cache import RedisCacheProvider
from taskq.services.notifications import TaskNotificationService, log_notification

logger = get_logger(name=__name__)


def register_executors(queues: TaskQueuesManager) -> None:
    """Hook for deployments to register their executors before the worker starts."""
    logger.info("task_executors_registered", queues=queues.get_queues())


async def run_worker(settings: Settings) -> None:
    transport = InMemoryMessageQueue(
        poll_interval_seconds=settings.queues.poll_interval_seconds,
        batch_size=settings.queues.batch_size,
    )
    queues = TaskQueuesManager.from_settings(settings, transport)
    register_executors(queues)

    notifications = TaskNotificationService(settings.notifications)
    notifications.subscribe(log_notification)
    async_manager = AsyncTaskManager.from_settings(settings)
    storage = InMemoryTaskStorageAdapter()
    cache = RedisCacheProvider.from_settings(settings)

    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cancel.set)

    async with cache.lifecycle(), storage.lifecycle():
        handler = TaskHandler.from_settings(
            settings,
            transport=transport,
            queues=queues,
            storage=storage,
            cache=cache,
            async_manager=async_manager,
            notification_provider=notifications,
        )
        bind_worker_context(worker_id=handler.worker_id, instance_id=settings.instance_id)
        logger.info("worker_starting", environment=settings.environment)
        try:
            await handler.task_process_server(cancel)
        finally:
            await async_manager.shutdown(settings.async_tasks.shutdown_grace_seconds)
            logger.info("worker_stopped")


def main() -> None:
    settings = get_settings()
    configure_logging(settings.observability.log_level)
    if settings.observability.prometheus_enabled and settings.observability.metrics_port:
        start_http_server(settings.observability.metrics_port)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
