"""Tiered cache: an in-process TTL memory layer over the durable store.

Reads are served from memory when possible, fall back to the durable cache
table, and repopulate memory on a durable hit. Writes land in memory
synchronously and are persisted by a detached task; a failed durable write
degrades the entry to memory-only and is logged, never raised.

TTLs are minutes and chosen by the caller. TTLPolicy collects the per-family
choices (weather readings, timetables, slowly changing extracted values) so
call sites and the startup warm-up agree on them.
"""

import dataclasses
import json
import logging
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from schoolsync.storage import DurableStore
from schoolsync.tasks import BackgroundTasks
from schoolsync.types import CacheEntry, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 10


class _Miss:
    """Sentinel returned by TieredCache.get when neither layer has the key."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


class TTLPolicy:
    """Maps cache keys to TTLs (minutes) by exact key or key prefix."""

    def __init__(
        self,
        default_minutes: float = DEFAULT_TTL_MINUTES,
        exact: Optional[Dict[str, float]] = None,
        prefixes: Optional[List[Tuple[str, float]]] = None,
    ):
        self.default_minutes = default_minutes
        self.exact: Dict[str, float] = dict(exact or {})
        # Longest prefix wins
        self.prefixes: List[Tuple[str, float]] = sorted(
            prefixes or [], key=lambda item: len(item[0]), reverse=True
        )

    def ttl_for(self, key: str) -> float:
        if key in self.exact:
            return self.exact[key]
        for prefix, minutes in self.prefixes:
            if key.startswith(prefix):
                return minutes
        return self.default_minutes


def default_ttl_policy(default_minutes: float = DEFAULT_TTL_MINUTES) -> TTLPolicy:
    """TTLs chosen by how volatile each key family is."""
    return TTLPolicy(
        default_minutes=default_minutes,
        exact={
            "lesson_colours": 10,
            "assessments_overview_data": 10,
            "upcoming_assessments_data": 10,
            "notices_labels": 60,
            "folios_settings_enabled": 60,
            "goals_settings_enabled": 60,
            "forums_settings_enabled": 60,
            "goals_years": 30,
            "forums_list": 15,
        },
        prefixes=[
            ("weather_", 15),
            ("timetable_", 30),
            ("notices_", 30),
            ("weighting_", 60 * 24 * 30),  # extracted from PDFs, rarely changes
        ],
    )


def _plain_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_plain_json(value: Any) -> str:
    """Serialize value to plain JSON text.

    Raises:
        TypeError / ValueError: for unserializable or cyclic values.
    """
    return json.dumps(value, default=_plain_default, check_circular=True)


class TieredCache:
    """Memory-over-durable cache.

    Args:
        store: Durable layer.
        tasks: Registry for detached durable writes.
        default_ttl_minutes: TTL used when a caller supplies none.
        now_fn: Clock, injectable for tests.
    """

    def __init__(
        self,
        store: DurableStore,
        tasks: Optional[BackgroundTasks] = None,
        default_ttl_minutes: float = DEFAULT_TTL_MINUTES,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._tasks = tasks if tasks is not None else BackgroundTasks()
        self._memory: Dict[str, CacheEntry] = {}
        self.default_ttl_minutes = default_ttl_minutes
        self._now = now_fn

    def __contains__(self, key: str) -> bool:
        return self.peek(key) is not MISS

    def _expiry(self, ttl_minutes: Optional[float]) -> Optional[datetime]:
        minutes = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        if minutes is None:
            return None
        return self._now() + timedelta(minutes=minutes)

    # === Memory layer (synchronous) ===

    def peek(self, key: str) -> Any:
        """Memory-only lookup. Expired entries are purged and reported as MISS."""
        entry = self._memory.get(key)
        if entry is None:
            return MISS
        if entry.is_expired(self._now()):
            del self._memory[key]
            return MISS
        return entry.value

    def _remember(self, key: str, value: Any, expires_at: Optional[datetime]) -> None:
        self._memory[key] = CacheEntry(key=key, value=value, expires_at=expires_at)

    def purge_expired(self) -> int:
        """Drop expired memory entries."""
        now = self._now()
        expired = [key for key, entry in self._memory.items() if entry.is_expired(now)]
        for key in expired:
            del self._memory[key]
        return len(expired)

    # === Tiered operations ===

    async def get(self, key: str, ttl_minutes: Optional[float] = None) -> Any:
        """Return the cached value or MISS; never raises for absence or store errors."""
        value = self.peek(key)
        if value is not MISS:
            return value

        try:
            entry = await self._store.get_entry(key, now=self._now())
        except Exception as e:
            logger.warning(f"Durable cache read failed for {key!r}: {e}")
            return MISS
        if entry is None:
            return MISS

        try:
            value = json.loads(entry.value)
        except (TypeError, ValueError) as e:
            logger.error(f"Corrupt durable cache entry {key!r}, ignoring: {e}")
            return MISS

        expires_at = self._expiry(ttl_minutes)
        # Memory never outlives the durable row it shadows
        if entry.expires_at is not None and (expires_at is None or entry.expires_at < expires_at):
            expires_at = entry.expires_at
        self._remember(key, value, expires_at)
        logger.debug(f"Durable cache hit for {key!r}; memory repopulated")
        return value

    def set(self, key: str, value: Any, ttl_minutes: Optional[float] = None) -> None:
        """Write memory now and durable storage in the background.

        The durable write is a detached task; outside a running event loop the
        entry is kept in memory only.
        """
        minutes = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        self._remember(key, value, self._expiry(minutes))

        try:
            payload = to_plain_json(value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache value for {key!r} is not plain data, kept in memory only: {e}")
            return

        try:
            self._tasks.spawn(self._persist(key, payload, minutes), name=f"cache-write:{key}")
        except RuntimeError as e:
            logger.warning(f"Durable cache write for {key!r} not scheduled, kept in memory only: {e}")

    async def _persist(self, key: str, payload: str, ttl_minutes: Optional[float]) -> None:
        try:
            await self._store.set(key, payload, ttl_minutes, now=self._now())
        except Exception as e:
            logger.error(f"Durable cache write failed for {key!r}, entry is memory-only: {e}")

    async def delete(self, key: str) -> None:
        self._memory.pop(key, None)
        try:
            await self._store.delete(key)
        except Exception as e:
            logger.error(f"Durable cache delete failed for {key!r}: {e}")

    async def clear(self) -> None:
        self._memory.clear()
        try:
            removed = await self._store.clear()
            logger.info(f"Cleared {removed} durable cache entries")
        except Exception as e:
            logger.error(f"Durable cache clear failed: {e}")

    async def cleanup_expired(self) -> int:
        """Purge expired entries from both layers."""
        purged = self.purge_expired()
        try:
            purged += await self._store.cleanup_expired(now=self._now())
        except Exception as e:
            logger.error(f"Durable cache cleanup failed: {e}")
        return purged

    # === Loading helpers ===

    async def load(
        self,
        key: str,
        fetcher: Callable[[], Any],
        ttl_minutes: Optional[float] = None,
        refresh: bool = True,
        is_online: Optional[Callable[[], bool]] = None,
    ) -> Any:
        """Cached value if any (refreshing it in the background), else fetch.

        Order: memory, durable, then ``await fetcher()``. A cached value is
        returned immediately and, when ``refresh`` is set and the client is
        online, a background fetch replaces it. Returns None if nothing is
        cached and the fetch fails.
        """
        cached = await self.get(key, ttl_minutes)
        if cached is not MISS:
            if refresh and (is_online is None or is_online()):
                self._tasks.spawn(
                    self._refresh(key, fetcher, ttl_minutes), name=f"cache-refresh:{key}"
                )
            return cached

        try:
            fresh = await fetcher()
        except Exception as e:
            logger.warning(f"Fetch for {key!r} failed with nothing cached: {e}")
            return None
        self.set(key, fresh, ttl_minutes)
        return fresh

    async def _refresh(self, key: str, fetcher: Callable[[], Any], ttl_minutes: Optional[float]):
        try:
            fresh = await fetcher()
        except Exception as e:
            logger.debug(f"Background refresh of {key!r} failed silently: {e}")
            return
        self.set(key, fresh, ttl_minutes)
        logger.debug(f"Background refresh of {key!r} completed")

    async def warm_up(self, keys: Iterable[str], policy: Optional[TTLPolicy] = None) -> int:
        """Restore durable entries into memory so the first render is instant.

        Returns:
            Number of keys loaded.
        """
        policy = policy or default_ttl_policy(self.default_ttl_minutes)
        loaded = 0
        for key in keys:
            if self.peek(key) is not MISS:
                continue
            value = await self.get(key, ttl_minutes=policy.ttl_for(key))
            if value is not MISS:
                loaded += 1
        logger.info(f"Cache warm-up restored {loaded} entries")
        return loaded
