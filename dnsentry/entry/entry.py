"""
Entries and the concurrent entry registry.

Each Entry owns a cancellable lock. Operations touching several entries lock
an EntryList, which always acquires the locks in the order of the entry keys
so that overlapping batches cannot deadlock. The registry mutex only guards
membership. It is never held while an entry lock is acquired and never taken
while an entry lock is held.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from dnsentry.entry.version import EntryVersion
from dnsentry.entry.validation import target_list
from dnsentry.models.errors import LockCancelledError
from dnsentry.models.models import (
    EVENT_NORMAL,
    LOCK_KIND,
    STATE_STALE,
    EntryStatistic,
    ObjectName,
    Targets,
    ZonedDNSName,
    now,
)


def _release_when_acquired(lock: asyncio.Lock) -> Callable[[asyncio.Future], None]:
    def callback(fut: asyncio.Future) -> None:
        if not fut.cancelled() and fut.exception() is None:
            lock.release()

    return callback


class EntryLock:
    """
    Mutual exclusion lock whose acquisition can be aborted by a shutdown event.
    """

    def __init__(self, cancel: Optional[asyncio.Event] = None):
        self._lock = asyncio.Lock()
        self._cancel = cancel

    def locked(self) -> bool:
        return self._lock.locked()

    async def acquire(self) -> None:
        """
        Acquire the lock.

        Raises:
            LockCancelledError: If the shutdown event is set before the lock
                could be acquired
        """
        if self._cancel is None:
            await self._lock.acquire()
            return
        if self._cancel.is_set():
            raise LockCancelledError("lock acquisition cancelled")

        acquire = asyncio.ensure_future(self._lock.acquire())
        cancelled = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            cancelled.cancel()
            self._abandon(acquire)
            raise
        cancelled.cancel()
        if acquire.done() and not acquire.cancelled() and acquire.exception() is None:
            return
        self._abandon(acquire)
        raise LockCancelledError("lock acquisition cancelled")

    def _abandon(self, acquire: asyncio.Future) -> None:
        # a lock granted after giving up must be handed back
        if acquire.done():
            if not acquire.cancelled() and acquire.exception() is None:
                self._lock.release()
            return
        acquire.add_done_callback(_release_when_acquired(self._lock))
        acquire.cancel()

    def release(self) -> None:
        self._lock.release()

    async def __aenter__(self) -> "EntryLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class Entry:
    """
    Identity of a DNS entry across reconciliation passes.
    """

    def __init__(self, version: EntryVersion, context):
        """
        Initialize an Entry.

        Args:
            version: Initial entry version
            context: Reconciliation context
        """
        self.logger = logging.getLogger("dnsentry.entry")
        self.lock = EntryLock(context.cancel)
        self.key = version.key
        self.version = version
        self.context = context
        self.modified = True
        self.created_at: datetime = now()
        self.active_zone = version.zone_id()
        self.premise = None

    @property
    def object_name(self) -> ObjectName:
        return self.version.object_name

    @property
    def dns_name(self) -> str:
        return self.version.dns_name

    @property
    def targets(self) -> Targets:
        return self.version.targets

    def zoned_dns_name(self) -> ZonedDNSName:
        return self.version.zoned_dns_name()

    def state(self) -> str:
        return self.version.state()

    def is_valid(self) -> bool:
        return self.version.is_valid()

    def is_responsible(self) -> bool:
        return self.version.is_responsible()

    def is_deleting(self) -> bool:
        return self.version.is_deleting()

    def owner_id(self) -> str:
        return self.version.owner_id()

    def provider_type(self) -> str:
        return self.version.provider_type()

    def provider_name(self) -> str:
        if self.version.provider_name is None:
            return ""
        return str(self.version.provider_name)

    def is_modified(self) -> bool:
        return self.modified

    async def remove_finalizer(self) -> None:
        await self.context.store.remove_finalizer(self.key)

    def is_active(self) -> bool:
        """Check whether this process is responsible for the entry's owner id."""
        owner_id = self.owner_id() or self.context.config.ident
        return self.version.kind == LOCK_KIND or self.context.owners.is_responsible_for(owner_id)

    def update(self, new: EntryVersion) -> "Entry":
        """
        Install a new version.

        Args:
            new: The new version

        Returns:
            Entry: This entry, or a new entry if the zoned DNS name changed
        """
        if self.zoned_dns_name() != new.zoned_dns_name():
            return Entry(new, self.context)

        reasons = self.version.requires_update_for(new)
        if reasons:
            self.logger.info(f"update actual entry {self.key}: valid: {new.is_valid()} {reasons}")
            if self.version.targets.differ_from(new.targets) and not new.is_deleting():
                self.logger.info("targets differ from internal state")
                store = self.context.store
                for w in new.warnings:
                    self.logger.warning(w)
                    store.event(self.key, EVENT_NORMAL, "reconcile", w)
                for name, addresses in new.mappings.items():
                    msg = f"mapping cname {name!r} to {addresses}"
                    self.logger.info(msg)
                    store.event(self.key, EVENT_NORMAL, "dnslookup", msg)
                _, msg = target_list(new.targets)
                self.logger.info(msg)
            self.modified = True
        self.version = new

        if new.is_valid() and new.state() == STATE_STALE:
            self.modified = True
        return self

    def before(self, other: Optional["Entry"]) -> bool:
        """Order entries by creation time, then by key."""
        if other is None:
            return True
        mine = self.version.object.creation_timestamp
        theirs = other.version.object.creation_timestamp
        if mine == theirs:
            return self.key < other.key
        return mine < theirs

    def update_statistic(self, statistic: EntryStatistic) -> None:
        """Count this entry. The caller must hold the entry lock."""
        statistic.inc_owner(self.owner_id(), self.provider_type(), self.provider_name())
        statistic.inc_provider(self.provider_type(), self.provider_name())


class EntryList(list):
    """
    Batch of entries that can be locked together without deadlocks.
    """

    def sort_by_key(self) -> None:
        unique: Dict[int, Entry] = {}
        for entry in self:
            unique.setdefault(id(entry), entry)
        self[:] = sorted(unique.values(), key=lambda e: e.key)

    async def lock(self) -> None:
        """
        Lock all entries in key order.

        Either all locks are acquired or, if an acquisition fails, the locks
        acquired so far are released in reverse order before the error is
        raised.
        """
        self.sort_by_key()
        for i, entry in enumerate(self):
            try:
                await entry.lock.acquire()
            except BaseException:
                for j in range(i - 1, -1, -1):
                    self[j].lock.release()
                raise

    def unlock(self) -> None:
        for entry in reversed(self):
            entry.lock.release()

    @asynccontextmanager
    async def locked(self):
        await self.lock()
        try:
            yield self
        finally:
            self.unlock()

    async def update_statistic(self, statistic: EntryStatistic) -> None:
        async with self.locked():
            for entry in self:
                entry.update_statistic(statistic)


class Entries(dict):
    """
    Mapping of entry keys to entries.
    """

    def add_responsible_to(self, entries: EntryList) -> None:
        for e in self.values():
            if e.is_responsible():
                entries.append(e)

    def add_active_zone_to(self, zone_id: str, entries: EntryList) -> None:
        for e in self.values():
            if e.active_zone == zone_id:
                entries.append(e)

    def add_entry(self, entry: Entry) -> Optional[Entry]:
        """
        Add or replace an entry.

        Returns:
            Optional[Entry]: The replaced entry, if a different one was registered
        """
        old = self.get(entry.key)
        self[entry.key] = entry
        if old is not None and old is not entry:
            return old
        return None

    def delete(self, entry: Entry) -> None:
        if self.get(entry.key) is entry:
            del self[entry.key]


class SynchronizedEntries:
    """
    Entries guarded by a single mutex held for membership operations only.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries = Entries()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[Entry]:
        with self._lock:
            return self._entries.get(key)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def add_responsible_to(self, entries: EntryList) -> None:
        with self._lock:
            self._entries.add_responsible_to(entries)

    def add_active_zone_to(self, zone_id: str, entries: EntryList) -> None:
        with self._lock:
            self._entries.add_active_zone_to(zone_id, entries)

    def add_entry(self, entry: Entry) -> Optional[Entry]:
        with self._lock:
            return self._entries.add_entry(entry)

    def delete(self, entry: Entry) -> None:
        with self._lock:
            self._entries.delete(entry)

    def select(self, predicate: Callable[[Entry], bool]) -> EntryList:
        """Return the entries matching a predicate."""
        with self._lock:
            candidates: Iterable[Entry] = list(self._entries.values())
        return EntryList(e for e in candidates if predicate(e))
