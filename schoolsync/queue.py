"""Write-behind queue for mutations that could not be applied immediately.

Rows live in the durable ``sync_queue`` table and are replayed per kind in
id (creation) order. A failed replay stops the drain for that kind so
ordering is preserved and a downed endpoint is not hammered; only payloads
that cannot be decoded or fail their schema are skipped (and logged loudly).
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Union

import jsonschema

from schoolsync.errors import MalformedPayloadError
from schoolsync.protocols import ReplayFn
from schoolsync.storage import DurableStore
from schoolsync.types import DrainResult, QueueItem, QueueKind, QueueSummary

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_TIMEOUT = 15.0

# Payload shapes per kind. Settings patches are free-form top-level objects;
# message drafts must carry what the school messaging endpoint needs.
PAYLOAD_SCHEMAS: Dict[str, Dict[str, Any]] = {
    QueueKind.SETTINGS_PATCH.value: {
        "type": "object",
        "minProperties": 1,
    },
    QueueKind.MESSAGE_DRAFT.value: {
        "type": "object",
        "required": ["subject", "contents", "recipients"],
        "properties": {
            "subject": {"type": "string"},
            "contents": {"type": "string"},
            "recipients": {"type": "array"},
            "blind": {"type": "boolean"},
            "files": {"type": "array"},
        },
    },
}

SizeListener = Callable[[int], None]


def decode_payload(item: QueueItem) -> Any:
    """Decode and validate a queued row's payload.

    Raises:
        MalformedPayloadError: if the payload is missing, not JSON, or does
            not match the schema for its kind.
    """
    if item.payload is None:
        raise MalformedPayloadError(item.id, item.kind, "payload is empty")
    try:
        payload = json.loads(item.payload)
    except (TypeError, ValueError) as e:
        raise MalformedPayloadError(item.id, item.kind, f"invalid JSON: {e}") from e

    schema = PAYLOAD_SCHEMAS.get(item.kind)
    if schema is None:
        raise MalformedPayloadError(item.id, item.kind, "unknown queue kind")
    try:
        jsonschema.validate(instance=payload, schema=schema)
    except jsonschema.ValidationError as e:
        raise MalformedPayloadError(item.id, item.kind, e.message) from e
    return payload


class WriteBehindQueue:
    """Durable FIFO-per-kind queue of pending remote mutations."""

    def __init__(self, store: DurableStore, drain_timeout: float = DEFAULT_DRAIN_TIMEOUT):
        self._store = store
        self.drain_timeout = drain_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._size_listeners: List[SizeListener] = []

    def _lock_for(self, kind: str) -> asyncio.Lock:
        lock = self._locks.get(kind)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[kind] = lock
        return lock

    def is_draining(self, kind: Union[QueueKind, str]) -> bool:
        lock = self._locks.get(QueueKind(kind).value)
        return lock is not None and lock.locked()

    def add_size_listener(self, listener: SizeListener) -> None:
        self._size_listeners.append(listener)

    async def _notify_size(self) -> None:
        if not self._size_listeners:
            return
        total = (await self.summary()).total
        for listener in self._size_listeners:
            try:
                listener(total)
            except Exception as e:
                logger.warning(f"Queue size listener raised: {e}")

    async def enqueue(self, kind: Union[QueueKind, str], payload: Any) -> Optional[int]:
        """Append one mutation. Returns its id, or None if it was lost."""
        try:
            kind = QueueKind(kind)
        except ValueError:
            logger.error(f"LOST mutation: unknown queue kind {kind!r}")
            return None
        try:
            payload_json = json.dumps(payload)
        except (TypeError, ValueError) as e:
            logger.error(f"LOST {kind.value} mutation: payload not serializable: {e}")
            return None
        try:
            item_id = await self._store.add(kind.value, payload_json)
        except Exception as e:
            logger.error(f"LOST {kind.value} mutation: queue append failed: {e}")
            return None

        logger.info(f"Queued {kind.value} #{item_id}")
        await self._notify_size()
        return item_id

    async def pending(self, kind: Optional[Union[QueueKind, str]] = None) -> List[QueueItem]:
        kind_value = QueueKind(kind).value if kind is not None else None
        try:
            return await self._store.list_all(kind_value)
        except Exception as e:
            logger.error(f"Could not list queued items: {e}")
            return []

    async def summary(self) -> QueueSummary:
        try:
            counts = await self._store.queue_counts()
        except Exception as e:
            logger.error(f"Could not count queued items: {e}")
            return QueueSummary()
        return QueueSummary(
            settings_patches=counts.get(QueueKind.SETTINGS_PATCH.value, 0),
            message_drafts=counts.get(QueueKind.MESSAGE_DRAFT.value, 0),
        )

    async def clear(self, kind: Optional[Union[QueueKind, str]] = None) -> int:
        kind_value = QueueKind(kind).value if kind is not None else None
        try:
            removed = await self._store.queue_clear(kind_value)
        except Exception as e:
            logger.error(f"Could not clear queue: {e}")
            return 0
        logger.info(f"Cleared {removed} queued items" + (f" of kind {kind_value}" if kind_value else ""))
        await self._notify_size()
        return removed

    async def drain(
        self,
        kind: Union[QueueKind, str],
        apply_fn: ReplayFn,
        timeout: Optional[float] = None,
    ) -> DrainResult:
        """Replay queued rows of one kind in creation order.

        ``apply_fn(payload)`` returning True or None counts as success and the
        row is deleted. False, an exception or a timeout stops the drain and
        leaves that row and everything after it queued.
        """
        kind = QueueKind(kind)
        timeout = self.drain_timeout if timeout is None else timeout
        result = DrainResult(kind=kind.value)

        async with self._lock_for(kind.value):
            items = await self.pending(kind)
            for index, item in enumerate(items):
                try:
                    payload = decode_payload(item)
                except MalformedPayloadError as e:
                    logger.error(f"Dropping malformed queue row: {e}")
                    if await self._delete(item):
                        result.dropped += 1
                    continue

                ok, error = await self._apply(apply_fn, payload, timeout)
                if not ok:
                    logger.warning(f"Replay of {kind.value} #{item.id} failed, stopping drain: {error}")
                    result.stopped = True
                    result.error = error
                    result.remaining = len(items) - index
                    break

                if not await self._delete(item):
                    # Applied but still queued; stop so it is not applied twice this pass
                    result.applied += 1
                    result.stopped = True
                    result.error = f"could not delete applied row #{item.id}"
                    result.remaining = len(items) - index
                    break
                result.applied += 1

        if result.applied or result.dropped:
            logger.info(
                f"Drained {kind.value}: applied={result.applied} dropped={result.dropped} "
                f"remaining={result.remaining}"
            )
            await self._notify_size()
        return result

    async def _apply(self, apply_fn: ReplayFn, payload: Any, timeout: float):
        try:
            outcome = await asyncio.wait_for(apply_fn(payload), timeout=timeout)
        except asyncio.TimeoutError:
            return False, f"timed out after {timeout}s"
        except Exception as e:
            return False, str(e) or type(e).__name__
        if outcome is False:
            return False, "replay reported failure"
        return True, None

    async def _delete(self, item: QueueItem) -> bool:
        try:
            await self._store.delete_by_id(item.id)
        except Exception as e:
            logger.error(f"Could not delete queue row #{item.id} ({item.kind}): {e}")
            return False
        return True
