"""Exception taxonomy for schoolsync.

Nothing in this package lets these escape into the UI layer; they are raised
at internal seams and converted into logged, non-throwing fallbacks at every
public boundary.
"""

from typing import Optional


class SchoolSyncError(Exception):
    """Base class for schoolsync errors."""


class RemoteError(SchoolSyncError):
    """A remote call failed (timeout, 5xx, offline, bad response)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedPayloadError(SchoolSyncError):
    """A queued payload could not be decoded or failed validation."""

    def __init__(self, item_id: int, kind: str, reason: str):
        super().__init__(f"Malformed {kind} payload in queue item {item_id}: {reason}")
        self.item_id = item_id
        self.kind = kind
        self.reason = reason


class InvalidSettingError(SchoolSyncError, ValueError):
    """A known setting key was given a value of the wrong type."""

    def __init__(self, key: str, expected: str, value: object):
        super().__init__(
            f"Setting {key!r} expects {expected}, got {type(value).__name__}"
        )
        self.key = key
        self.expected = expected
