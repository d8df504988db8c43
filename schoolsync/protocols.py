"""
Collaborator contracts for the schoolsync core.

The core never talks to the school API, the UI or the OS directly. It is
handed objects (or plain async callables) satisfying these protocols:

    RemoteSettings   cloud profile service: fetch/push the settings document
    IdentityProvider resolves the authenticated cloud identity, if any
    Notifier         OS notification sink
    SubjectResolver  turns a subject entity id back into an Assessment
    ReplayFn         performs the remote write for one queued payload
    Fetcher          produces a fresh value for a cache key
    HeartbeatProbe   cheap reachability check for the school API
"""

from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, runtime_checkable

from schoolsync.types import Assessment, CloudIdentity

# apply(payload) -> True/None on success, False on failure (exceptions count as failure)
ReplayFn = Callable[[Any], Awaitable[Optional[bool]]]

Fetcher = Callable[[], Awaitable[Any]]

HeartbeatProbe = Callable[[], Awaitable[bool]]

ReloadListener = Callable[[], None]

# notice(level, message): "success" / "error" toast-style notices for the UI
NoticeListener = Callable[[str, str], None]


@runtime_checkable
class RemoteSettings(Protocol):
    """Remote settings interface (the cloud profile service)."""

    async def fetch_remote_settings(self, identity: CloudIdentity) -> Optional[Dict[str, Any]]:
        """Return the remote settings snapshot, or None if unavailable."""
        ...

    async def push_remote_settings(self, identity: CloudIdentity, settings: Dict[str, Any]) -> bool:
        """Upload the full settings document. Returns True on success."""
        ...


@runtime_checkable
class IdentityProvider(Protocol):
    async def get_identity(self) -> Optional[CloudIdentity]:
        ...


@runtime_checkable
class Notifier(Protocol):
    """OS notification interface."""

    async def send(self, title: str, body: str, sound: Optional[str] = None) -> bool:
        """Deliver one notification. Returns True (or raises) to signal the outcome."""
        ...


@runtime_checkable
class SubjectResolver(Protocol):
    async def resolve(self, subject_entity_id: int) -> Optional[Assessment]:
        ...
