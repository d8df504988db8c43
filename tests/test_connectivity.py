"""Tests for ConnectivityMonitor."""

import asyncio

import pytest

from schoolsync.connectivity import ConnectivityMonitor
from schoolsync.types import ConnectivityStatus


@pytest.fixture
def monitor(tasks):
    return ConnectivityMonitor(tasks)


class TestStatus:
    def test_defaults_to_online(self, monitor):
        assert monitor.is_online
        assert monitor.status is ConnectivityStatus.ONLINE

    def test_priority(self, monitor):
        monitor.set_queued_count(3)
        assert monitor.status is ConnectivityStatus.QUEUED
        monitor.set_degraded(True)
        assert monitor.status is ConnectivityStatus.DEGRADED
        monitor.set_syncing(True)
        assert monitor.status is ConnectivityStatus.SYNCING
        monitor.set_online(False)
        assert monitor.status is ConnectivityStatus.OFFLINE

    def test_forced_offline_wins(self, monitor):
        monitor.force_offline(True)
        assert not monitor.is_online
        assert monitor.status is ConnectivityStatus.OFFLINE

    def test_negative_queue_count_clamped(self, monitor):
        monitor.set_queued_count(-2)
        assert monitor.queued_count == 0

    def test_status_listener_only_on_change(self, monitor):
        seen = []
        monitor.add_status_listener(seen.append)
        monitor.set_queued_count(1)
        monitor.set_queued_count(2)
        monitor.set_queued_count(0)
        assert seen == [ConnectivityStatus.QUEUED, ConnectivityStatus.ONLINE]

    def test_status_listener_error_is_contained(self, monitor):
        def bad(status):
            raise RuntimeError("ui gone")

        monitor.add_status_listener(bad)
        monitor.set_online(False)
        assert monitor.status is ConnectivityStatus.OFFLINE


class TestRestored:
    @pytest.mark.asyncio
    async def test_fires_on_offline_to_online(self, monitor, tasks):
        calls = []

        async def on_restored():
            calls.append("async")

        monitor.add_restored_listener(on_restored)
        monitor.add_restored_listener(lambda: calls.append("sync"))

        monitor.set_online(True)  # already online: no transition
        await tasks.join()
        assert calls == []

        monitor.set_online(False)
        monitor.set_online(True)
        await tasks.join()
        assert sorted(calls) == ["async", "sync"]

    @pytest.mark.asyncio
    async def test_lifting_forced_offline_fires(self, monitor, tasks):
        calls = []
        monitor.add_restored_listener(lambda: calls.append(1))
        monitor.force_offline(True)
        monitor.force_offline(False)
        await tasks.join()
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_os_online_while_forced_offline_does_not_fire(self, monitor, tasks):
        calls = []
        monitor.add_restored_listener(lambda: calls.append(1))
        monitor.force_offline(True)
        monitor.set_online(False)
        monitor.set_online(True)
        await tasks.join()
        assert calls == []

    @pytest.mark.asyncio
    async def test_listener_failure_goes_to_task_registry(self, monitor, tasks):
        async def broken():
            raise RuntimeError("flush exploded")

        monitor.add_restored_listener(broken)
        monitor.set_online(False)
        monitor.set_online(True)
        await tasks.join()
        assert tasks.failures == ["connectivity-restored:broken"]


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_unreachable_probe_degrades(self, tasks):
        reachable = [False]

        async def probe():
            return reachable[0]

        monitor = ConnectivityMonitor(tasks, probe=probe)
        assert await monitor.check_heartbeat() is False
        assert monitor.status is ConnectivityStatus.DEGRADED

        reachable[0] = True
        assert await monitor.check_heartbeat() is True
        assert monitor.status is ConnectivityStatus.ONLINE

    @pytest.mark.asyncio
    async def test_recovery_from_degraded_fires_restored(self, tasks):
        reachable = [False]

        async def probe():
            return reachable[0]

        calls = []
        monitor = ConnectivityMonitor(tasks, probe=probe)
        monitor.add_restored_listener(lambda: calls.append(1))

        await monitor.check_heartbeat()
        await monitor.check_heartbeat()
        await tasks.join()
        assert calls == []

        reachable[0] = True
        await monitor.check_heartbeat()
        await monitor.check_heartbeat()  # already healthy: no second signal
        await tasks.join()
        assert calls == [1]
        assert monitor.status is ConnectivityStatus.ONLINE

    @pytest.mark.asyncio
    async def test_probe_exception_counts_as_unreachable(self, tasks):
        async def probe():
            raise OSError("no route to host")

        monitor = ConnectivityMonitor(tasks, probe=probe)
        assert await monitor.check_heartbeat() is False
        assert monitor.status is ConnectivityStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_no_probe_reports_online_flag(self, monitor):
        assert await monitor.check_heartbeat() is True
        monitor.set_online(False)
        assert await monitor.check_heartbeat() is False

    @pytest.mark.asyncio
    async def test_heartbeat_loop_start_stop(self, tasks):
        probes = []

        async def probe():
            probes.append(1)
            return True

        monitor = ConnectivityMonitor(tasks, probe=probe, heartbeat_interval=0.01)
        monitor.start_heartbeat()
        for _ in range(100):
            if len(probes) >= 2:
                break
            await asyncio.sleep(0.01)
        await monitor.stop_heartbeat()
        assert len(probes) >= 2
        await monitor.stop_heartbeat()
