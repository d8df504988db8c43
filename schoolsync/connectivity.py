"""Connectivity tracking and the "network restored" signal.

The host feeds in the OS online flag (``set_online``); the monitor combines
it with the forced-offline developer flag, the number of queued mutations
and an optional heartbeat probe into a single ConnectivityStatus. Listeners
registered with ``add_restored_listener`` run as detached tasks whenever
the client comes back online.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional

from schoolsync.protocols import HeartbeatProbe
from schoolsync.tasks import BackgroundTasks
from schoolsync.types import ConnectivityStatus

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 60.0

RestoredListener = Callable[[], Any]
StatusListener = Callable[[ConnectivityStatus], None]


class ConnectivityMonitor:
    def __init__(
        self,
        tasks: Optional[BackgroundTasks] = None,
        probe: Optional[HeartbeatProbe] = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        online: bool = True,
    ):
        self._tasks = tasks if tasks is not None else BackgroundTasks()
        self._probe = probe
        self.heartbeat_interval = heartbeat_interval
        self._online = online
        self._forced_offline = False
        self._syncing = False
        self._degraded = False
        self._queued = 0
        self._restored_listeners: List[RestoredListener] = []
        self._status_listeners: List[StatusListener] = []
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._last_status = self.status

    # === Inputs ===

    @property
    def is_online(self) -> bool:
        return self._online and not self._forced_offline

    @property
    def queued_count(self) -> int:
        return self._queued

    def set_online(self, online: bool) -> None:
        """Record the OS online flag; a transition to online fires the restored signal."""
        was_online = self.is_online
        self._online = online
        if online:
            self._degraded = False
        logger.info(f"Network {'online' if online else 'offline'}")
        if not was_online and self.is_online:
            self._fire_restored()
        self._status_changed()

    def force_offline(self, forced: bool) -> None:
        """Developer override that makes the client behave as if offline."""
        was_online = self.is_online
        self._forced_offline = forced
        if not was_online and self.is_online:
            self._fire_restored()
        self._status_changed()

    def set_syncing(self, syncing: bool) -> None:
        self._syncing = syncing
        self._status_changed()

    def set_queued_count(self, count: int) -> None:
        self._queued = max(0, int(count))
        self._status_changed()

    def set_degraded(self, degraded: bool) -> None:
        self._degraded = degraded
        self._status_changed()

    # === Output ===

    @property
    def status(self) -> ConnectivityStatus:
        if not self.is_online:
            return ConnectivityStatus.OFFLINE
        if self._syncing:
            return ConnectivityStatus.SYNCING
        if self._degraded:
            return ConnectivityStatus.DEGRADED
        if self._queued > 0:
            return ConnectivityStatus.QUEUED
        return ConnectivityStatus.ONLINE

    def add_restored_listener(self, listener: RestoredListener) -> None:
        self._restored_listeners.append(listener)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def _status_changed(self) -> None:
        status = self.status
        if status == self._last_status:
            return
        self._last_status = status
        logger.debug(f"Connectivity status -> {status.value}")
        for listener in self._status_listeners:
            try:
                listener(status)
            except Exception as e:
                logger.warning(f"Connectivity status listener raised: {e}")

    def _fire_restored(self) -> None:
        logger.info("Connectivity restored")
        for listener in self._restored_listeners:
            name = getattr(listener, "__name__", "listener")
            try:
                self._tasks.spawn(self._call(listener), name=f"connectivity-restored:{name}")
            except RuntimeError as e:
                logger.warning(f"Restored listener {name} not scheduled: {e}")

    async def _call(self, listener: RestoredListener) -> None:
        result = listener()
        if inspect.isawaitable(result):
            await result

    # === Heartbeat ===

    async def check_heartbeat(self) -> bool:
        """Run the probe once and update the degraded flag. Returns reachability.

        Recovering from degraded fires the restored signal, same as an OS
        offline -> online transition.
        """
        if self._probe is None or not self.is_online:
            return self.is_online
        try:
            reachable = bool(await self._probe())
        except Exception as e:
            logger.info(f"Heartbeat probe failed: {e}")
            reachable = False
        was_degraded = self._degraded
        self.set_degraded(not reachable)
        if was_degraded and reachable:
            self._fire_restored()
        return reachable

    async def _heartbeat_loop(self) -> None:
        while True:
            await self.check_heartbeat()
            await asyncio.sleep(self.heartbeat_interval)

    def start_heartbeat(self) -> None:
        if self._probe is None or self._heartbeat_task is not None:
            return
        self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop())
        self._heartbeat_task.set_name("connectivity-heartbeat")

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
