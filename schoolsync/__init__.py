"""
schoolsync - offline resilience and sync core for the student client.

Tiered cache, write-behind queue, settings reconciliation and assessment
reminders over one local SQLite store.
"""

from .cache import MISS, TieredCache, TTLPolicy
from .notifications import NotificationScheduler
from .queue import WriteBehindQueue
from .runtime import SyncRuntime
from .settings import SettingKey, SettingsPatch
from .storage import DurableStore, SQLiteStore
from .sync import ReconcileSession, SyncCoordinator

try:
    from importlib.metadata import version

    __version__ = version("schoolsync")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "DurableStore",
    "MISS",
    "NotificationScheduler",
    "ReconcileSession",
    "SQLiteStore",
    "SettingKey",
    "SettingsPatch",
    "SyncCoordinator",
    "SyncRuntime",
    "TTLPolicy",
    "TieredCache",
    "WriteBehindQueue",
]
