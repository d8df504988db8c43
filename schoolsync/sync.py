"""Settings synchronization between the local store and the cloud.

SyncCoordinator owns three flows:

write(patch)
    Local-first merge-write. On success the full settings document is pushed
    to the cloud in the background; if the local write fails the patch goes
    to the write-behind queue instead.

reconcile_with_remote()
    Pull the cloud snapshot and merge it locally when it differs. Local changes
    the cloud has not received yet (queued patches, a pending push) are pushed
    first; if that fails nothing is pulled. Two guards
    stop a reconcile -> apply -> reload -> reconcile loop:
      * a fingerprint memo of the last reconciled snapshot
      * a short window after a reload during which no new reload is signalled
    Both live in a ReconcileSession, which the host keeps across view rebuilds.

flush(user_triggered)
    Replay queued settings patches and message drafts, in that order.

Conflicts are whole-document last-writer-wins: whichever reconciliation or
write ran most recently determines the stored value.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from schoolsync.connectivity import ConnectivityMonitor
from schoolsync.errors import InvalidSettingError
from schoolsync.logging_config import log_drain, log_reconcile
from schoolsync.protocols import (
    IdentityProvider,
    NoticeListener,
    ReloadListener,
    RemoteSettings,
    ReplayFn,
)
from schoolsync.queue import WriteBehindQueue
from schoolsync.settings import SettingsPatch, coerce_patch, diff_keys, fingerprint, is_local_only
from schoolsync.storage import DurableStore
from schoolsync.tasks import BackgroundTasks
from schoolsync.types import (
    DrainResult,
    FlushResult,
    QueueKind,
    ReconcileOutcome,
    SyncState,
    WriteOutcome,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_RELOAD_GUARD_SECONDS = 5.0

# sync_meta key: "1" while local settings have changes the cloud has not received
PUSH_PENDING_META = "settings_push_pending"


@dataclass
class ReconcileSession:
    """Process-scoped reconciliation memory. Never persisted."""

    last_fingerprint: Optional[str] = None
    last_reload_at: Optional[datetime] = None

    def reloaded_within(self, now: datetime, seconds: float) -> bool:
        if self.last_reload_at is None:
            return False
        return now - self.last_reload_at < timedelta(seconds=seconds)

    def reset(self) -> None:
        self.last_fingerprint = None
        self.last_reload_at = None


class SyncCoordinator:
    """Local-first settings writes, cloud reconciliation and queue flushing.

    Args:
        store: Durable store holding the settings table.
        queue: Write-behind queue for patches and message drafts.
        remote: Cloud settings service; None disables cloud sync.
        identity: Resolves the signed-in cloud identity.
        replay_message: Remote write for one queued message draft.
        tasks: Registry for background pushes.
        connectivity: Online state and the "syncing" indicator.
        session: Reconcile memory; pass the same one across view rebuilds.
        reload_guard_seconds: Window in which a second reload is suppressed.
        now_fn: Clock, injectable for tests.
        profile: Name used in the sync-events log.
    """

    def __init__(
        self,
        store: DurableStore,
        queue: WriteBehindQueue,
        remote: Optional[RemoteSettings] = None,
        identity: Optional[IdentityProvider] = None,
        replay_message: Optional[ReplayFn] = None,
        tasks: Optional[BackgroundTasks] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        session: Optional[ReconcileSession] = None,
        reload_guard_seconds: float = DEFAULT_RELOAD_GUARD_SECONDS,
        now_fn: Callable[[], datetime] = utc_now,
        profile: str = "default",
    ):
        self._store = store
        self._queue = queue
        self._remote = remote
        self._identity = identity
        self._replay_message = replay_message
        self._tasks = tasks if tasks is not None else BackgroundTasks()
        self._connectivity = connectivity
        self.session = session if session is not None else ReconcileSession()
        self.reload_guard_seconds = reload_guard_seconds
        self._now = now_fn
        self.profile = profile
        self._state = SyncState.IDLE
        self._reload_listeners: List[ReloadListener] = []
        self._notice_listeners: List[NoticeListener] = []

    @property
    def state(self) -> SyncState:
        return self._state

    def _is_online(self) -> bool:
        return self._connectivity is None or self._connectivity.is_online

    # === Listeners ===

    def add_reload_listener(self, listener: ReloadListener) -> None:
        self._reload_listeners.append(listener)

    def add_notice_listener(self, listener: NoticeListener) -> None:
        self._notice_listeners.append(listener)

    def _emit_reload(self) -> None:
        logger.info("Signalling settings reload")
        for listener in self._reload_listeners:
            try:
                listener()
            except Exception as e:
                logger.warning(f"Reload listener raised: {e}")

    def _emit_notice(self, level: str, message: str) -> None:
        for listener in self._notice_listeners:
            try:
                listener(level, message)
            except Exception as e:
                logger.warning(f"Notice listener raised: {e}")

    # === Local writes ===

    async def write(self, patch: Union[SettingsPatch, Mapping[str, Any]]) -> WriteOutcome:
        """Merge a settings patch locally, then sync it to the cloud in the background."""
        try:
            patch = coerce_patch(patch)
        except (InvalidSettingError, TypeError) as e:
            logger.error(f"Rejected settings patch: {e}")
            return WriteOutcome.REJECTED

        data = patch.to_dict()
        if not data:
            return WriteOutcome.APPLIED

        # Older queued patches go first so a replay cannot overwrite this one
        if (await self._queue.summary()).settings_patches:
            drained = await self._queue.drain(QueueKind.SETTINGS_PATCH, self._apply_settings_patch)
            if drained.stopped:
                return await self._enqueue_patch(data)

        try:
            await self._store.merge_settings(data)
        except Exception as e:
            logger.error(f"Local settings write failed, queueing patch: {e}")
            return await self._enqueue_patch(data)

        if is_local_only(data):
            logger.debug("Temporary layout saved locally; not syncing to cloud")
            return WriteOutcome.APPLIED

        self._tasks.spawn(self.push_full_settings(), name="settings-push")
        return WriteOutcome.APPLIED

    async def _enqueue_patch(self, data: Dict[str, Any]) -> WriteOutcome:
        item_id = await self._queue.enqueue(QueueKind.SETTINGS_PATCH, data)
        return WriteOutcome.QUEUED if item_id is not None else WriteOutcome.LOST

    async def _apply_settings_patch(self, payload: Dict[str, Any]) -> bool:
        await self._store.merge_settings(payload)
        return True

    async def _set_push_pending(self, pending: bool) -> None:
        try:
            await self._store.set_meta(PUSH_PENDING_META, "1" if pending else "0")
        except Exception as e:
            logger.error(f"Could not record pending cloud push: {e}")

    async def is_push_pending(self) -> bool:
        try:
            return await self._store.get_meta(PUSH_PENDING_META) == "1"
        except Exception as e:
            logger.error(f"Could not read pending cloud push flag: {e}")
            return False

    async def push_full_settings(self) -> bool:
        """Upload the complete local settings document.

        A push that cannot happen (offline, remote failure) is remembered and
        retried by the next flush.
        """
        if self._remote is None or self._identity is None:
            return False
        identity = await self._identity.get_identity()
        if identity is None:
            return False
        if not self._is_online():
            await self._set_push_pending(True)
            logger.info("Offline; cloud push deferred")
            return False

        try:
            settings = await self._store.get_all_settings()
        except Exception as e:
            logger.error(f"Could not read local settings for cloud push: {e}")
            await self._set_push_pending(True)
            return False

        try:
            pushed = await self._remote.push_remote_settings(identity, settings)
        except Exception as e:
            logger.warning(f"Cloud push failed: {e}")
            pushed = False
        if not pushed:
            await self._set_push_pending(True)
            return False

        await self._set_push_pending(False)
        # The cloud now holds exactly this document
        self.session.last_fingerprint = fingerprint(settings)
        return True

    # === Reconciliation ===

    async def reconcile_with_remote(self) -> ReconcileOutcome:
        """Bring local settings in line with the cloud snapshot. Never raises."""
        if self._state is SyncState.RECONCILING:
            logger.debug("Reconciliation already running")
            return ReconcileOutcome.BUSY

        self._state = SyncState.RECONCILING
        try:
            outcome = await self._reconcile()
        except Exception as e:
            logger.warning(f"Reconciliation failed (non-critical): {e}")
            outcome = ReconcileOutcome.FAILED
        finally:
            self._state = SyncState.IDLE

        log_reconcile(self.profile, outcome.value, self.session.last_fingerprint)
        return outcome

    async def _reconcile(self) -> ReconcileOutcome:
        if self._remote is None or self._identity is None:
            return ReconcileOutcome.NO_IDENTITY
        identity = await self._identity.get_identity()
        if identity is None:
            return ReconcileOutcome.NO_IDENTITY
        if not self._is_online():
            logger.debug("Skipping reconciliation while offline")
            return ReconcileOutcome.UNAVAILABLE

        # Unsynced local edits are newer than the cloud copy; never merge over them
        if not await self._push_unsynced_changes():
            logger.info("Local settings not yet in the cloud; reconciliation deferred")
            return ReconcileOutcome.DEFERRED

        remote = await self._remote.fetch_remote_settings(identity)
        if not isinstance(remote, dict):
            logger.debug("No cloud settings available")
            return ReconcileOutcome.UNAVAILABLE

        remote_fp = fingerprint(remote)
        if remote_fp == self.session.last_fingerprint:
            logger.debug("Cloud settings unchanged since last reconciliation")
            return ReconcileOutcome.UNCHANGED

        local = await self._store.get_settings_subset(remote.keys())
        differing = diff_keys(local, remote)
        if not differing:
            self.session.last_fingerprint = remote_fp
            return ReconcileOutcome.IN_SYNC

        logger.info(f"Cloud settings differ in {len(differing)} keys: {', '.join(differing)}")
        await self._store.merge_settings(remote)
        self.session.last_fingerprint = remote_fp

        now = self._now()
        if self.session.reloaded_within(now, self.reload_guard_seconds):
            logger.info("Settings applied; reload suppressed (recently reloaded)")
            return ReconcileOutcome.APPLIED_RELOAD_SUPPRESSED

        self.session.last_reload_at = now
        self._emit_reload()
        return ReconcileOutcome.APPLIED

    async def _push_unsynced_changes(self) -> bool:
        """Replay queued patches and push any pending document.

        Returns True when the cloud holds every local settings change.
        """
        drained_any = False
        if (await self._queue.summary()).settings_patches:
            drained = await self._queue.drain(QueueKind.SETTINGS_PATCH, self._apply_settings_patch)
            if drained.stopped:
                return False
            drained_any = drained.applied > 0
        if drained_any or await self.is_push_pending():
            return await self.push_full_settings()
        return True

    # === Queue flushing ===

    async def flush(self, user_triggered: bool = False) -> FlushResult:
        """Replay queued settings patches, then queued message drafts."""
        result = FlushResult()
        if self._connectivity is not None:
            self._connectivity.set_syncing(True)
        try:
            settings = await self._queue.drain(QueueKind.SETTINGS_PATCH, self._apply_settings_patch)
            result.drains.append(settings)
            log_drain(self.profile, settings.kind, settings.applied, settings.remaining, settings.error)

            if settings.applied or await self.is_push_pending():
                await self.push_full_settings()

            if self._replay_message is not None:
                drafts = await self._queue.drain(QueueKind.MESSAGE_DRAFT, self._replay_message)
                result.drains.append(drafts)
                log_drain(self.profile, drafts.kind, drafts.applied, drafts.remaining, drafts.error)
        except Exception as e:
            logger.error(f"Flush failed: {e}")
            result.drains.append(DrainResult(kind="*", stopped=True, error=str(e)))
        finally:
            if self._connectivity is not None:
                self._connectivity.set_syncing(False)

        if user_triggered:
            if result.success:
                self._emit_notice("success", f"Synced {result.applied} offline item(s)")
            else:
                self._emit_notice("error", "Sync failed")
        return result

    async def handle_connectivity_restored(self) -> None:
        """Connectivity-restored signal: flush the queue, then reconcile."""
        await self.flush()
        await self.reconcile_with_remote()
