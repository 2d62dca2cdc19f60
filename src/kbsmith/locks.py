"""Non-blocking leases over string keys.

Two namespaces are in use: one lease per note (``node:<id>``) serializes
mutation of that note, one lease per knowledge type (``type:<Type>``)
serializes duplicate scans within that type bucket.

Acquisition never waits. A held key is reported straight back to the caller,
which decides what to do about it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

log = logging.getLogger(__name__)

NODE_PREFIX = "node:"
TYPE_PREFIX = "type:"


def node_key(node_id: str) -> str:
    return f"{NODE_PREFIX}{node_id}"


def type_key(concept_type: str) -> str:
    return f"{TYPE_PREFIX}{concept_type}"


@dataclass(frozen=True)
class LockHandle:
    """A held lease."""

    key: str
    holder: str
    acquired_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class LockConflict:
    """Returned when the key is already leased."""

    key: str
    holder: str


class LockCoordinator:
    """In-process lease table."""

    def __init__(self) -> None:
        self._locks: dict[str, LockHandle] = {}

    def acquire(self, key: str, holder: str = "") -> LockHandle | LockConflict:
        """Lease key for holder, or report who holds it."""
        current = self._locks.get(key)
        if current is not None:
            log.debug("Lock %s busy (held by %s, wanted by %s)", key, current.holder, holder)
            return LockConflict(key=key, holder=current.holder)

        handle = LockHandle(key=key, holder=holder)
        self._locks[key] = handle
        log.debug("Lock %s acquired by %s", key, holder)
        return handle

    def try_acquire(self, key: str, holder: str = "") -> bool:
        return isinstance(self.acquire(key, holder), LockHandle)

    def release(self, key: str) -> None:
        """Release key. Unknown or already released keys are ignored."""
        if self._locks.pop(key, None) is not None:
            log.debug("Lock %s released", key)

    def is_locked(self, key: str) -> bool:
        return key in self._locks

    def holder_of(self, key: str) -> str | None:
        handle = self._locks.get(key)
        return handle.holder if handle else None

    def active_locks(self) -> list[LockHandle]:
        return list(self._locks.values())

    def release_all(self) -> None:
        if self._locks:
            log.info("Releasing %d held locks", len(self._locks))
        self._locks.clear()
