"""
Shared types for schoolsync.

These dataclasses and enums are the vocabulary shared by the store, the
cache, the write-behind queue, the sync coordinator and the notification
scheduler. Timestamps are always timezone-aware UTC datetimes in Python;
the SQLite layer stores them as epoch seconds.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_epoch(dt: Optional[datetime]) -> Optional[float]:
    """Convert a datetime to epoch seconds (naive values are taken as UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def from_epoch(value: Optional[float]) -> Optional[datetime]:
    """Convert epoch seconds back to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


# === Enums ===


class QueueKind(str, Enum):
    """Kinds of mutation the write-behind queue can hold."""

    SETTINGS_PATCH = "settings_patch"
    MESSAGE_DRAFT = "message_draft"


class NotificationKind(str, Enum):
    """Reminder kinds scheduled relative to a subject's due instant."""

    REMINDER_3DAY = "reminder_3days"
    REMINDER_1DAY = "reminder_1day"
    DUE_NOW = "due_date"
    OVERDUE = "overdue"


class ConnectivityStatus(str, Enum):
    """Aggregate connectivity state shown to the UI layer."""

    ONLINE = "online"
    OFFLINE = "offline"
    SYNCING = "syncing"
    DEGRADED = "degraded"
    QUEUED = "queued"


class SyncState(str, Enum):
    """Reconciliation state machine: IDLE -> RECONCILING -> IDLE."""

    IDLE = "idle"
    RECONCILING = "reconciling"


class ReconcileOutcome(str, Enum):
    """Result of one reconcile_with_remote() call."""

    NO_IDENTITY = "no_identity"
    UNAVAILABLE = "unavailable"
    DEFERRED = "deferred"  # local changes could not be pushed first
    UNCHANGED = "unchanged"  # fingerprint memo hit
    IN_SYNC = "in_sync"  # field comparison found no difference
    APPLIED = "applied"
    APPLIED_RELOAD_SUPPRESSED = "applied_reload_suppressed"
    BUSY = "busy"  # a reconciliation is already running
    FAILED = "failed"


class WriteOutcome(str, Enum):
    """Result of one SyncCoordinator.write() call."""

    APPLIED = "applied"
    QUEUED = "queued"
    REJECTED = "rejected"  # invalid patch, caller bug
    LOST = "lost"  # local write and queue append both failed


# === Records ===


@dataclass
class CacheEntry:
    """A cached value with an optional expiry instant."""

    key: str
    value: Any
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass
class QueueItem:
    """A mutation that could not be applied immediately."""

    id: int
    kind: str  # QueueKind value, kept as str so unknown kinds survive a read
    payload: Optional[str]  # JSON text as stored
    created_at: Optional[datetime] = None


@dataclass
class ScheduledNotification:
    """A reminder row: Scheduled while sent_at is None, Sent afterwards."""

    id: int
    subject_entity_id: int
    kind: NotificationKind
    fires_at: datetime
    sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_sent(self) -> bool:
        return self.sent_at is not None


@dataclass
class Assessment:
    """A subject entity with a due instant that reminders refer to."""

    id: int
    title: Optional[str]
    due: datetime
    subject: Optional[str] = None
    overdue: bool = False


@dataclass
class CloudIdentity:
    """Authenticated identity used against the cloud profile service."""

    user_id: str
    token: str


# === Results ===


@dataclass
class DrainResult:
    """Outcome of draining one queue kind."""

    kind: str
    applied: int = 0
    dropped: int = 0  # malformed rows skipped
    remaining: int = 0
    stopped: bool = False  # True when a remote failure halted the drain
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.stopped


@dataclass
class QueueSummary:
    """Queued item counts per kind."""

    settings_patches: int = 0
    message_drafts: int = 0

    @property
    def total(self) -> int:
        return self.settings_patches + self.message_drafts


@dataclass
class FlushResult:
    """Outcome of a flush across all queue kinds."""

    drains: List[DrainResult] = field(default_factory=list)

    @property
    def applied(self) -> int:
        return sum(d.applied for d in self.drains)

    @property
    def remaining(self) -> int:
        return sum(d.remaining for d in self.drains)

    @property
    def success(self) -> bool:
        return all(d.success for d in self.drains)


@dataclass
class SweepResult:
    """Outcome of one notification delivery sweep."""

    due: int = 0
    sent: int = 0
    failed: int = 0
    skipped: bool = False  # another sweep was already running
    errors: List[str] = field(default_factory=list)


@dataclass
class StoreStatus:
    """Row counts reported by the durable store."""

    cache_entries: int = 0
    queued_items: int = 0
    settings_keys: int = 0
    notifications_pending: int = 0
    notifications_sent: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)
