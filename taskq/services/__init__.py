"""Infrastructure collaborators: cache backends and notifications."""

from .cache import CacheProvider, InMemoryCacheProvider, RedisCacheProvider
from .notifications import (
    DiscardedTaskInfo,
    NotificationEvent,
    TaskErrorInfo,
    TaskNotificationProvider,
    TaskNotificationService,
    TaskQueueStats,
)

__all__ = [
    "CacheProvider",
    "InMemoryCacheProvider",
    "RedisCacheProvider",
    "DiscardedTaskInfo",
    "NotificationEvent",
    "TaskErrorInfo",
    "TaskNotificationProvider",
    "TaskNotificationService",
    "TaskQueueStats",
]
