"""Wires the offline core together from a SyncConfig.

SyncRuntime is what a host (the desktop shell, the CLI) holds on to: one
durable store, the tiered cache on top of it, the write-behind queue, the
connectivity monitor, the cloud client, the sync coordinator and the
notification scheduler, all sharing one BackgroundTasks registry.
"""

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from schoolsync.cache import TieredCache, default_ttl_policy
from schoolsync.cloud import CloudSettingsClient, CredentialsIdentityProvider
from schoolsync.config import SyncConfig
from schoolsync.connectivity import ConnectivityMonitor
from schoolsync.notifications import LogNotifier, NotificationScheduler
from schoolsync.protocols import (
    HeartbeatProbe,
    IdentityProvider,
    Notifier,
    RemoteSettings,
    ReplayFn,
    SubjectResolver,
)
from schoolsync.queue import WriteBehindQueue
from schoolsync.storage import DurableStore, SQLiteStore
from schoolsync.sync import ReconcileSession, SyncCoordinator
from schoolsync.tasks import BackgroundTasks
from schoolsync.types import utc_now

logger = logging.getLogger(__name__)

SHUTDOWN_JOIN_TIMEOUT = 5.0

# Keys the first screens need before any network round-trip
STARTUP_CACHE_KEYS = [
    "assessments_overview_data",
    "upcoming_assessments_data",
    "lesson_colours",
    "notices_labels",
    "folios_settings_enabled",
    "goals_settings_enabled",
    "goals_years",
    "forums_settings_enabled",
    "forums_list",
]


def startup_cache_keys(today: Optional[date] = None) -> List[str]:
    """Startup keys plus this week's timetable and today's notices."""
    today = today or date.today()
    monday = today - timedelta(days=today.weekday())
    friday = monday + timedelta(days=4)
    return STARTUP_CACHE_KEYS + [
        f"timetable_{monday.isoformat()}_{friday.isoformat()}",
        f"notices_{today.isoformat()}",
    ]


class SyncRuntime:
    """Owns every component of the offline core for one profile."""

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        remote: Optional[RemoteSettings] = None,
        identity: Optional[IdentityProvider] = None,
        notifier: Optional[Notifier] = None,
        resolver: Optional[SubjectResolver] = None,
        replay_message: Optional[ReplayFn] = None,
        probe: Optional[HeartbeatProbe] = None,
        session: Optional[ReconcileSession] = None,
        now_fn=utc_now,
    ):
        self.config = config if config is not None else SyncConfig()
        cfg = self.config

        self.tasks = BackgroundTasks()
        self.backend = SQLiteStore(cfg.resolved_db_path(), now_fn=now_fn)
        self.store = DurableStore(self.backend)
        self.cache = TieredCache(self.store, self.tasks, cfg.default_ttl_minutes, now_fn=now_fn)
        self.queue = WriteBehindQueue(self.store, drain_timeout=cfg.drain_timeout)
        self.connectivity = ConnectivityMonitor(
            self.tasks, probe=probe, heartbeat_interval=cfg.heartbeat_interval_seconds
        )

        self._owns_remote = remote is None
        if remote is None:
            remote = CloudSettingsClient(cfg.cloud_base_url, timeout=cfg.request_timeout)
        self.remote = remote
        self.identity = identity if identity is not None else CredentialsIdentityProvider()

        self.coordinator = SyncCoordinator(
            self.store,
            self.queue,
            remote=self.remote,
            identity=self.identity,
            replay_message=replay_message,
            tasks=self.tasks,
            connectivity=self.connectivity,
            session=session,
            reload_guard_seconds=cfg.reload_guard_seconds,
            now_fn=now_fn,
            profile=cfg.profile,
        )
        self.scheduler = NotificationScheduler(
            self.store,
            notifier if notifier is not None else LogNotifier(),
            resolver=resolver,
            interval=cfg.sweep_interval_seconds,
            spacing=cfg.notification_spacing_seconds,
            retention_days=cfg.retention_days,
            now_fn=now_fn,
            profile=cfg.profile,
        )

        self.queue.add_size_listener(self.connectivity.set_queued_count)
        self.connectivity.add_restored_listener(self.coordinator.handle_connectivity_restored)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, warm_keys: Optional[List[str]] = None, run_scheduler: bool = True) -> None:
        """Restore cached data, start timers and kick off a background reconcile."""
        if self._started:
            return
        logger.info(f"Starting schoolsync runtime (profile={self.config.profile})")

        await self.cache.cleanup_expired()
        await self.cache.warm_up(
            warm_keys if warm_keys is not None else startup_cache_keys(),
            default_ttl_policy(self.config.default_ttl_minutes),
        )
        self.connectivity.set_queued_count((await self.queue.summary()).total)

        if run_scheduler:
            self.scheduler.start()
        self.connectivity.start_heartbeat()
        self.tasks.spawn(self.coordinator.reconcile_with_remote(), name="startup-reconcile")
        self._started = True

    async def stop(self) -> None:
        """Stop timers, let in-flight background work finish, close the HTTP client."""
        await self.scheduler.stop()
        await self.connectivity.stop_heartbeat()
        await self.tasks.join(timeout=SHUTDOWN_JOIN_TIMEOUT)
        await self.tasks.cancel_all()
        if self._owns_remote and isinstance(self.remote, CloudSettingsClient):
            await self.remote.aclose()
        self.backend.close()
        self._started = False
        logger.info("schoolsync runtime stopped")

    async def status(self) -> Dict[str, Any]:
        summary = await self.queue.summary()
        try:
            store_status = await self.store.get_status()
        except Exception as e:
            logger.error(f"Could not read store status: {e}")
            store_status = None

        status: Dict[str, Any] = {
            "profile": self.config.profile,
            "connectivity": self.connectivity.status.value,
            "sync_state": self.coordinator.state.value,
            "push_pending": await self.coordinator.is_push_pending(),
            "queue": {
                "settings_patches": summary.settings_patches,
                "message_drafts": summary.message_drafts,
                "total": summary.total,
            },
            "background_tasks": self.tasks.pending,
            "scheduler_running": self.scheduler.is_running,
        }
        if store_status is not None:
            status["store"] = {
                "db_path": store_status.extra.get("db_path"),
                "cache_entries": store_status.cache_entries,
                "queued_items": store_status.queued_items,
                "settings_keys": store_status.settings_keys,
                "notifications_pending": store_status.notifications_pending,
                "notifications_sent": store_status.notifications_sent,
            }
        return status
