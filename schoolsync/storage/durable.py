"""Async facade over SQLiteStore.

Durable I/O is a suspension point: each call runs the blocking SQLiteStore
method in a worker thread so the event loop keeps serving cache reads and
timers. The short names (get/set/delete, add/list_all/delete_by_id) are the
key/value and queue primitives the rest of the core is written against.
"""

import asyncio
import functools
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from schoolsync.types import (
    CacheEntry,
    NotificationKind,
    QueueItem,
    ScheduledNotification,
    StoreStatus,
)

from .sqlite import SQLiteStore

logger = logging.getLogger(__name__)


class DurableStore:
    """Async key/value store plus queue, settings and notification tables."""

    def __init__(self, backend: SQLiteStore):
        self._backend = backend

    @property
    def backend(self) -> SQLiteStore:
        return self._backend

    async def _run(self, fn, *args, **kwargs):
        return await asyncio.to_thread(functools.partial(fn, *args, **kwargs))

    # === Key/value ===

    async def get(self, key: str, now: Optional[datetime] = None) -> Optional[str]:
        return await self._run(self._backend.cache_get, key, now)

    async def get_entry(self, key: str, now: Optional[datetime] = None) -> Optional[CacheEntry]:
        return await self._run(self._backend.cache_get_entry, key, now)

    async def set(
        self,
        key: str,
        value_json: str,
        ttl_minutes: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> None:
        await self._run(self._backend.cache_set, key, value_json, ttl_minutes, now)

    async def delete(self, key: str) -> None:
        await self._run(self._backend.cache_delete, key)

    async def clear(self) -> int:
        return await self._run(self._backend.cache_clear)

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        return await self._run(self._backend.cleanup_expired_cache, now)

    # === Queue ===

    async def add(self, kind: str, payload_json: str) -> int:
        return await self._run(self._backend.queue_add, kind, payload_json)

    async def list_all(self, kind: Optional[str] = None) -> List[QueueItem]:
        return await self._run(self._backend.queue_all, kind)

    async def delete_by_id(self, item_id: int) -> None:
        await self._run(self._backend.queue_delete, item_id)

    async def queue_clear(self, kind: Optional[str] = None) -> int:
        return await self._run(self._backend.queue_clear, kind)

    async def queue_counts(self) -> Dict[str, int]:
        return await self._run(self._backend.queue_counts)

    # === Settings ===

    async def get_settings_subset(self, keys: Iterable[str]) -> Dict[str, Any]:
        return await self._run(self._backend.get_settings_subset, list(keys))

    async def get_all_settings(self) -> Dict[str, Any]:
        return await self._run(self._backend.get_all_settings)

    async def merge_settings(self, patch: Dict[str, Any]) -> None:
        await self._run(self._backend.merge_settings, dict(patch))

    # === Notifications ===

    async def schedule_notification(
        self,
        subject_entity_id: int,
        kind: NotificationKind,
        fires_at: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        return await self._run(
            self._backend.schedule_notification, subject_entity_id, kind, fires_at, now
        )

    async def get_due_notifications(self, now: datetime) -> List[ScheduledNotification]:
        return await self._run(self._backend.get_due_notifications, now)

    async def mark_notification_sent(
        self, notification_id: int, now: Optional[datetime] = None
    ) -> bool:
        return await self._run(self._backend.mark_notification_sent, notification_id, now)

    async def get_notifications_for(self, subject_entity_id: int) -> List[ScheduledNotification]:
        return await self._run(self._backend.get_notifications_for, subject_entity_id)

    async def list_notifications(self, include_sent: bool = True) -> List[ScheduledNotification]:
        return await self._run(self._backend.list_notifications, include_sent)

    async def cleanup_sent_notifications(self, cutoff: datetime) -> int:
        return await self._run(self._backend.cleanup_sent_notifications, cutoff)

    async def delete_notifications_for(self, subject_entity_id: int) -> int:
        return await self._run(self._backend.delete_notifications_for, subject_entity_id)

    # === Metadata / status ===

    async def get_meta(self, key: str) -> Optional[str]:
        return await self._run(self._backend.get_meta, key)

    async def set_meta(self, key: str, value: str) -> None:
        await self._run(self._backend.set_meta, key, value)

    async def get_status(self) -> StoreStatus:
        return await self._run(self._backend.get_status)
