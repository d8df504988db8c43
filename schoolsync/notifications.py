"""Assessment reminder scheduling and delivery.

Each (subject entity, kind) pair has at most one row and moves
Scheduled -> Sent exactly once. Scheduling upserts rows for the reminders
still in the future; a periodic sweep sends every row that has come due and
marks it sent straight after its own send, so a crash part-way through a
sweep never re-sends what already went out.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from schoolsync.logging_config import log_notification
from schoolsync.protocols import Notifier, SubjectResolver
from schoolsync.storage import DurableStore
from schoolsync.types import (
    Assessment,
    NotificationKind,
    ScheduledNotification,
    SweepResult,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 300.0
DEFAULT_SPACING = 0.1
DEFAULT_RETENTION_DAYS = 30
CLEANUP_EVERY = timedelta(days=1)

OVERDUE_SOUND = "default"

TITLES = {
    NotificationKind.REMINDER_3DAY: "Assessment Reminder",
    NotificationKind.REMINDER_1DAY: "Assessment Due Tomorrow",
    NotificationKind.DUE_NOW: "Assessment Due Today",
    NotificationKind.OVERDUE: "Assessment Overdue",
}

BODY_TEMPLATES = {
    NotificationKind.REMINDER_3DAY: "{title} ({subject}) is due in 3 days!",
    NotificationKind.REMINDER_1DAY: "{title} ({subject}) is due tomorrow!",
    NotificationKind.DUE_NOW: "{title} ({subject}) is due today!",
    NotificationKind.OVERDUE: "{title} ({subject}) is overdue!",
}


def notification_title(kind: NotificationKind) -> str:
    return TITLES.get(kind, "Assessment Notification")


def notification_body(kind: NotificationKind, assessment: Assessment) -> str:
    title = assessment.title or "Untitled Assessment"
    subject = assessment.subject or "Unknown Subject"
    template = BODY_TEMPLATES.get(kind, "{title} ({subject})")
    return template.format(title=title, subject=subject)


def fallback_body(subject_entity_id: int) -> str:
    return f"Assessment #{subject_entity_id}"


def candidate_fire_times(
    assessment: Assessment, now: datetime
) -> List[Tuple[NotificationKind, datetime]]:
    """Reminders to schedule for one assessment as of ``now``.

    Offsets from the due instant that are still strictly in the future, plus
    an immediate overdue reminder when the assessment is past due.
    """
    due = assessment.due
    candidates = []
    for kind, offset in (
        (NotificationKind.REMINDER_3DAY, timedelta(days=3)),
        (NotificationKind.REMINDER_1DAY, timedelta(days=1)),
        (NotificationKind.DUE_NOW, timedelta(0)),
    ):
        fires_at = due - offset
        if fires_at > now:
            candidates.append((kind, fires_at))
    if assessment.overdue or due < now:
        candidates.append((NotificationKind.OVERDUE, now))
    return candidates


class LogNotifier:
    """Notifier that writes notifications to the log (headless hosts, CLI)."""

    async def send(self, title: str, body: str, sound: Optional[str] = None) -> bool:
        logger.info(f"NOTIFY {title}: {body}" + (f" [sound={sound}]" if sound else ""))
        return True


class NotificationScheduler:
    """Schedules reminder rows and delivers them on a timer.

    Args:
        store: Durable store holding the notifications table.
        notifier: OS notification sink.
        resolver: Looks assessments up again at send time; optional.
        interval: Seconds between sweeps when started.
        spacing: Pause between two sends within a sweep.
        retention_days: Sent rows older than this are purged.
        now_fn: Clock, injectable for tests.
        profile: Name used in the sync-events log.
    """

    def __init__(
        self,
        store: DurableStore,
        notifier: Notifier,
        resolver: Optional[SubjectResolver] = None,
        interval: float = DEFAULT_SWEEP_INTERVAL,
        spacing: float = DEFAULT_SPACING,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        now_fn: Callable[[], datetime] = utc_now,
        profile: str = "default",
    ):
        self._store = store
        self._notifier = notifier
        self._resolver = resolver
        self.interval = interval
        self.spacing = spacing
        self.retention_days = retention_days
        self._now = now_fn
        self.profile = profile
        self._is_sweeping = False
        self._timer: Optional[asyncio.Task] = None
        self._last_cleanup: Optional[datetime] = None

    @property
    def is_sweeping(self) -> bool:
        return self._is_sweeping

    @property
    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    # === Scheduling ===

    async def schedule(self, assessments: Iterable[Assessment]) -> int:
        """Schedule reminders for each assessment. Returns rows upserted."""
        now = self._now()
        count = 0
        total = 0
        for assessment in assessments:
            total += 1
            count += await self.schedule_entity(assessment, now)
        logger.info(f"Scheduled notifications for {total} assessments ({count} rows)")
        return count

    async def schedule_entity(self, assessment: Assessment, now: Optional[datetime] = None) -> int:
        now = now or self._now()
        count = 0
        for kind, fires_at in candidate_fire_times(assessment, now):
            try:
                if await self._store.schedule_notification(assessment.id, kind, fires_at, now=now):
                    count += 1
            except Exception as e:
                logger.error(
                    f"Failed to schedule {kind.value} notification for assessment {assessment.id}: {e}"
                )
        return count

    # === Delivery ===

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Send every due, unsent notification once. Overlapping calls are skipped."""
        if self._is_sweeping:
            logger.debug("Notification sweep already running")
            return SweepResult(skipped=True)

        self._is_sweeping = True
        try:
            return await self._sweep(now or self._now())
        finally:
            self._is_sweeping = False

    async def _sweep(self, now: datetime) -> SweepResult:
        result = SweepResult()
        try:
            due = await self._store.get_due_notifications(now)
        except Exception as e:
            logger.error(f"Failed to read due notifications: {e}")
            result.errors.append(str(e))
            return result

        result.due = len(due)
        if not due:
            return result
        logger.info(f"Found {len(due)} due notifications")

        for index, notification in enumerate(due):
            if await self._deliver(notification, result):
                result.sent += 1
            else:
                result.failed += 1
            if self.spacing and index < len(due) - 1:
                await asyncio.sleep(self.spacing)
        return result

    async def _render(self, notification: ScheduledNotification) -> Tuple[str, str]:
        title = notification_title(notification.kind)
        assessment = None
        if self._resolver is not None:
            try:
                assessment = await self._resolver.resolve(notification.subject_entity_id)
            except Exception as e:
                logger.warning(f"Could not resolve assessment {notification.subject_entity_id}: {e}")
        if assessment is None:
            logger.warning(
                f"Assessment {notification.subject_entity_id} not found, sending basic notification"
            )
            return title, fallback_body(notification.subject_entity_id)
        return title, notification_body(notification.kind, assessment)

    async def _deliver(self, notification: ScheduledNotification, result: SweepResult) -> bool:
        title, body = await self._render(notification)
        sound = OVERDUE_SOUND if notification.kind is NotificationKind.OVERDUE else None
        try:
            sent = await self._notifier.send(title, body, sound)
        except Exception as e:
            sent = False
            result.errors.append(f"notification {notification.id}: {e}")
            logger.error(f"Failed to send notification {notification.id}: {e}")
        if sent is False:
            log_notification(self.profile, notification.subject_entity_id, notification.kind.value, False)
            return False

        # Mark straight away so a later crash in this sweep cannot re-send it
        try:
            await self._store.mark_notification_sent(notification.id, now=self._now())
        except Exception as e:
            result.errors.append(f"notification {notification.id} sent but not marked: {e}")
            logger.error(f"Notification {notification.id} sent but could not be marked sent: {e}")
        log_notification(self.profile, notification.subject_entity_id, notification.kind.value, True)
        logger.info(
            f"Sent {notification.kind.value} notification for assessment "
            f"{notification.subject_entity_id}"
        )
        return True

    # === Housekeeping ===

    async def cleanup(self, retention_days: Optional[int] = None) -> int:
        """Delete rows sent more than ``retention_days`` ago."""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = self._now() - timedelta(days=days)
        try:
            removed = await self._store.cleanup_sent_notifications(cutoff)
        except Exception as e:
            logger.error(f"Notification cleanup failed: {e}")
            return 0
        self._last_cleanup = self._now()
        if removed:
            logger.info(f"Cleaned up {removed} old notifications")
        return removed

    async def delete_for_subject(self, subject_entity_id: int) -> int:
        try:
            return await self._store.delete_notifications_for(subject_entity_id)
        except Exception as e:
            logger.error(f"Could not delete notifications for assessment {subject_entity_id}: {e}")
            return 0

    async def pending(self) -> List[ScheduledNotification]:
        try:
            return await self._store.list_notifications(include_sent=False)
        except Exception as e:
            logger.error(f"Could not list pending notifications: {e}")
            return []

    async def list_for_subject(self, subject_entity_id: int) -> List[ScheduledNotification]:
        try:
            return await self._store.get_notifications_for(subject_entity_id)
        except Exception as e:
            logger.error(f"Could not list notifications for assessment {subject_entity_id}: {e}")
            return []

    # === Timer ===

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
                if self._last_cleanup is None or self._now() - self._last_cleanup >= CLEANUP_EVERY:
                    await self.cleanup()
            except Exception as e:
                logger.error(f"Periodic notification check failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start the background checker: one sweep now, then every ``interval``."""
        if self.is_running:
            logger.warning("Background notification checker is already running")
            return
        self._timer = asyncio.ensure_future(self._run())
        self._timer.set_name("notification-sweeper")
        logger.info("Background notification checker started")

    async def stop(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None:
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass
        logger.info("Background notification checker stopped")
