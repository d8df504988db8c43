"""Tests for reminder scheduling and delivery."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from schoolsync.notifications import (
    LogNotifier,
    NotificationScheduler,
    candidate_fire_times,
    fallback_body,
    notification_body,
    notification_title,
)
from schoolsync.types import Assessment, NotificationKind


class Crash(BaseException):
    """Stands in for the process dying mid-sweep."""


def make_assessment(due, id=7, overdue=False):
    return Assessment(id=id, title="Algebra test", due=due, subject="Mathematics", overdue=overdue)


@pytest.fixture
def assessment(start):
    return make_assessment(start + timedelta(days=5))


@pytest.fixture
def scheduler(store, notifier, resolver, assessment, clock):
    resolver.add(assessment)
    return NotificationScheduler(store, notifier, resolver=resolver, spacing=0, now_fn=clock)


class TestCandidateFireTimes:
    def test_all_offsets_in_future(self, assessment, start):
        due = assessment.due
        assert candidate_fire_times(assessment, start) == [
            (NotificationKind.REMINDER_3DAY, due - timedelta(days=3)),
            (NotificationKind.REMINDER_1DAY, due - timedelta(days=1)),
            (NotificationKind.DUE_NOW, due),
        ]

    def test_past_offsets_are_skipped(self, start):
        due = start + timedelta(hours=12)
        assert candidate_fire_times(make_assessment(due), start) == [(NotificationKind.DUE_NOW, due)]

    def test_past_due_gets_immediate_overdue(self, start):
        past = make_assessment(start - timedelta(hours=1))
        assert candidate_fire_times(past, start) == [(NotificationKind.OVERDUE, start)]

    def test_overdue_flag(self, start):
        flagged = make_assessment(start + timedelta(days=2), overdue=True)
        kinds = [kind for kind, _ in candidate_fire_times(flagged, start)]
        assert kinds == [NotificationKind.REMINDER_1DAY, NotificationKind.DUE_NOW, NotificationKind.OVERDUE]


class TestText:
    def test_titles(self):
        assert notification_title(NotificationKind.REMINDER_3DAY) == "Assessment Reminder"
        assert notification_title(NotificationKind.REMINDER_1DAY) == "Assessment Due Tomorrow"
        assert notification_title(NotificationKind.DUE_NOW) == "Assessment Due Today"
        assert notification_title(NotificationKind.OVERDUE) == "Assessment Overdue"

    def test_bodies(self, assessment):
        assert notification_body(NotificationKind.REMINDER_3DAY, assessment) == (
            "Algebra test (Mathematics) is due in 3 days!"
        )
        assert notification_body(NotificationKind.OVERDUE, assessment) == (
            "Algebra test (Mathematics) is overdue!"
        )

    def test_missing_title_and_subject(self, start):
        bare = Assessment(id=1, title=None, due=start)
        assert notification_body(NotificationKind.DUE_NOW, bare) == (
            "Untitled Assessment (Unknown Subject) is due today!"
        )

    def test_fallback(self):
        assert fallback_body(42) == "Assessment #42"


class TestSchedule:
    @pytest.mark.asyncio
    async def test_schedule_creates_one_row_per_kind(self, scheduler, assessment):
        assert await scheduler.schedule([assessment]) == 3
        rows = await scheduler.list_for_subject(assessment.id)
        assert [row.kind for row in rows] == [
            NotificationKind.REMINDER_3DAY,
            NotificationKind.REMINDER_1DAY,
            NotificationKind.DUE_NOW,
        ]

    @pytest.mark.asyncio
    async def test_scheduling_twice_is_idempotent(self, scheduler, assessment):
        await scheduler.schedule([assessment])
        await scheduler.schedule([assessment])
        assert len(await scheduler.list_for_subject(assessment.id)) == 3

    @pytest.mark.asyncio
    async def test_moved_due_date_updates_pending_rows(self, scheduler, assessment):
        await scheduler.schedule([assessment])
        moved = make_assessment(assessment.due + timedelta(days=2))
        await scheduler.schedule([moved])
        rows = await scheduler.list_for_subject(assessment.id)
        assert [row.fires_at for row in rows][-1] == moved.due

    @pytest.mark.asyncio
    async def test_store_error_is_logged_not_raised(self, scheduler, assessment, backend, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(backend, "schedule_notification", broken)
        assert await scheduler.schedule([assessment]) == 0

    @pytest.mark.asyncio
    async def test_delete_for_subject(self, scheduler, assessment):
        await scheduler.schedule([assessment])
        assert await scheduler.delete_for_subject(assessment.id) == 3
        assert await scheduler.pending() == []


class TestSweep:
    @pytest.mark.asyncio
    async def test_nothing_due(self, scheduler, assessment, notifier):
        await scheduler.schedule([assessment])
        result = await scheduler.sweep()
        assert result.due == 0
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_reminders_fire_once_as_time_passes(self, scheduler, assessment, notifier, clock):
        await scheduler.schedule([assessment])

        clock.set(assessment.due - timedelta(days=3))
        result = await scheduler.sweep()
        assert (result.due, result.sent) == (1, 1)
        assert notifier.sent == [
            ("Assessment Reminder", "Algebra test (Mathematics) is due in 3 days!", None)
        ]

        # a later sweep and a fresh schedule call do not send it again
        await scheduler.schedule([assessment])
        assert (await scheduler.sweep()).due == 0

        clock.set(assessment.due - timedelta(days=1))
        await scheduler.sweep()
        assert [title for title, _, _ in notifier.sent] == [
            "Assessment Reminder",
            "Assessment Due Tomorrow",
        ]
        assert len(await scheduler.pending()) == 1

    @pytest.mark.asyncio
    async def test_overdue_uses_sound(self, store, notifier, resolver, start, clock):
        past = make_assessment(start - timedelta(days=1))
        resolver.add(past)
        scheduler = NotificationScheduler(store, notifier, resolver=resolver, spacing=0, now_fn=clock)
        await scheduler.schedule([past])
        await scheduler.sweep()
        assert notifier.sent == [("Assessment Overdue", "Algebra test (Mathematics) is overdue!", "default")]

    @pytest.mark.asyncio
    async def test_resolver_failure_falls_back(self, store, start, clock):
        notifier = MagicMock()
        notifier.send = AsyncMock(return_value=True)
        resolver = MagicMock()
        resolver.resolve = AsyncMock(side_effect=TimeoutError("school API slow"))
        scheduler = NotificationScheduler(store, notifier, resolver=resolver, spacing=0, now_fn=clock)
        await scheduler.schedule([make_assessment(start - timedelta(hours=1), id=5)])

        assert (await scheduler.sweep()).sent == 1
        resolver.resolve.assert_awaited_once_with(5)
        notifier.send.assert_awaited_once_with("Assessment Overdue", "Assessment #5", "default")

    @pytest.mark.asyncio
    async def test_unresolvable_subject_gets_fallback_body(self, store, notifier, assessment, clock):
        scheduler = NotificationScheduler(store, notifier, spacing=0, now_fn=clock)
        await scheduler.schedule([assessment])
        clock.set(assessment.due)
        await scheduler.sweep()
        assert {body for _, body, _ in notifier.sent} == {"Assessment #7"}
        assert await scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_rejected_send_stays_scheduled(self, scheduler, assessment, notifier, clock):
        await scheduler.schedule([assessment])
        clock.set(assessment.due - timedelta(days=3))
        notifier.result = False
        result = await scheduler.sweep()
        assert (result.sent, result.failed) == (0, 1)

        notifier.result = True
        assert (await scheduler.sweep()).sent == 1

    @pytest.mark.asyncio
    async def test_failing_send_does_not_block_others(self, store, notifier, resolver, start, clock):
        first = make_assessment(start - timedelta(hours=1), id=1)
        second = make_assessment(start - timedelta(hours=1), id=2)
        second.title = "Essay"
        resolver.add(first, second)
        scheduler = NotificationScheduler(store, notifier, resolver=resolver, spacing=0, now_fn=clock)
        await scheduler.schedule([first, second])
        notifier.fail_for.add("Algebra test (Mathematics) is overdue!")

        result = await scheduler.sweep()
        assert (result.sent, result.failed) == (1, 1)
        assert len(result.errors) == 1
        assert [n.subject_entity_id for n in await scheduler.pending()] == [1]

    @pytest.mark.asyncio
    async def test_interrupted_sweep_does_not_resend(self, store, start, clock):
        sends = []

        class CrashingNotifier:
            crash_on_call = 2

            async def send(self, title, body, sound=None):
                sends.append(body)
                if len(sends) == self.crash_on_call:
                    raise Crash()
                return True

        notifier = CrashingNotifier()
        scheduler = NotificationScheduler(store, notifier, spacing=0, now_fn=clock)
        await scheduler.schedule([make_assessment(start - timedelta(hours=1), id=n) for n in (1, 2, 3)])

        with pytest.raises(Crash):
            await scheduler.sweep()
        assert not scheduler.is_sweeping

        notifier.crash_on_call = None
        await scheduler.sweep()
        assert sends == ["Assessment #1", "Assessment #2", "Assessment #2", "Assessment #3"]

    @pytest.mark.asyncio
    async def test_overlapping_sweep_is_skipped(self, store, start, clock):
        class SlowNotifier:
            def __init__(self):
                self.gate = asyncio.Event()
                self.started = asyncio.Event()

            async def send(self, title, body, sound=None):
                self.started.set()
                await self.gate.wait()
                return True

        notifier = SlowNotifier()
        scheduler = NotificationScheduler(store, notifier, spacing=0, now_fn=clock)
        await scheduler.schedule([make_assessment(start - timedelta(hours=1))])

        first = asyncio.ensure_future(scheduler.sweep())
        await notifier.started.wait()
        assert scheduler.is_sweeping
        assert (await scheduler.sweep()).skipped

        notifier.gate.set()
        assert (await first).sent == 1
        assert not scheduler.is_sweeping


class TestCleanup:
    @pytest.mark.asyncio
    async def test_removes_old_sent_rows(self, store, notifier, start, clock):
        scheduler = NotificationScheduler(store, notifier, spacing=0, now_fn=clock)
        await scheduler.schedule([make_assessment(start - timedelta(hours=1), id=1)])
        await scheduler.sweep()
        await scheduler.schedule([make_assessment(start + timedelta(days=60), id=2)])

        clock.advance(days=29)
        assert await scheduler.cleanup() == 0
        clock.advance(days=2)
        assert await scheduler.cleanup() == 1
        assert {n.subject_entity_id for n in await store.list_notifications()} == {2}

    @pytest.mark.asyncio
    async def test_custom_retention(self, store, notifier, start, clock):
        scheduler = NotificationScheduler(store, notifier, spacing=0, now_fn=clock)
        await scheduler.schedule([make_assessment(start - timedelta(hours=1))])
        await scheduler.sweep()
        clock.advance(days=2)
        assert await scheduler.cleanup(retention_days=1) == 1


class TestTimer:
    @pytest.mark.asyncio
    async def test_start_sweeps_and_stop_cancels(self, store, notifier, start, clock):
        scheduler = NotificationScheduler(store, notifier, interval=3600, spacing=0, now_fn=clock)
        await scheduler.schedule([make_assessment(start - timedelta(hours=1))])

        scheduler.start()
        assert scheduler.is_running
        scheduler.start()  # second start is ignored
        for _ in range(200):
            if notifier.sent:
                break
            await asyncio.sleep(0.01)
        assert len(notifier.sent) == 1

        await scheduler.stop()
        assert not scheduler.is_running
        await scheduler.stop()


class TestLogNotifier:
    @pytest.mark.asyncio
    async def test_logs_and_succeeds(self, caplog):
        caplog.set_level("INFO", logger="schoolsync.notifications")
        assert await LogNotifier().send("Assessment Overdue", "Essay", "default")
        assert "NOTIFY Assessment Overdue: Essay [sound=default]" in caplog.text
