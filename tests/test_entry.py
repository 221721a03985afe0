"""Unit tests for entries, entry locks and the entry registry."""

import asyncio
import logging
from datetime import timedelta

import pytest

from dnsentry.entry.entry import Entry, EntryList, EntryLock, SynchronizedEntries
from dnsentry.entry.version import EntryVersion
from dnsentry.models.errors import LockCancelledError
from dnsentry.models.models import LOCK_KIND, RS_A, EntryStatistic, Target, now


@pytest.fixture
def make_entry(context, make_object):
    """Factory for entries assigned to zone example.com."""

    def factory(name, dns_name=None, zone="example.com", **spec):
        obj = make_object(name, dns_name or f"{name.split('/')[-1]}.example.com", **spec)
        version = EntryVersion(obj)
        version.status.zone = zone
        version.status.provider_type = "mock"
        version.status.provider = "default/mock"
        version.responsible = True
        return Entry(version, context)

    return factory


class TestEntryLock:
    """Tests for the cancellable entry lock."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self) -> None:
        lock = EntryLock(asyncio.Event())

        async with lock:
            assert lock.locked()
        assert not lock.locked()

    @pytest.mark.asyncio
    async def test_waiter_gets_lock_after_release(self) -> None:
        lock = EntryLock(asyncio.Event())
        await lock.acquire()
        waiter = asyncio.create_task(lock.acquire())
        await asyncio.sleep(0)
        assert not waiter.done()

        lock.release()
        await asyncio.wait_for(waiter, 1)

        assert lock.locked()

    @pytest.mark.asyncio
    async def test_cancel_aborts_waiting_acquisition(self) -> None:
        """Test setting the shutdown event aborts a waiting acquisition without leaking the lock."""
        cancel = asyncio.Event()
        lock = EntryLock(cancel)
        await lock.acquire()
        waiter = asyncio.create_task(lock.acquire())
        await asyncio.sleep(0)

        cancel.set()
        with pytest.raises(LockCancelledError):
            await asyncio.wait_for(waiter, 1)

        lock.release()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert not lock.locked()

    @pytest.mark.asyncio
    async def test_acquire_after_shutdown_fails(self) -> None:
        cancel = asyncio.Event()
        cancel.set()
        lock = EntryLock(cancel)

        with pytest.raises(LockCancelledError):
            await lock.acquire()
        assert not lock.locked()

    @pytest.mark.asyncio
    async def test_task_cancellation_does_not_leak_lock(self) -> None:
        lock = EntryLock(asyncio.Event())
        await lock.acquire()
        waiter = asyncio.create_task(lock.acquire())
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        lock.release()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert not lock.locked()


class TestEntry:
    """Tests for entry identity and bookkeeping."""

    def test_update_keeps_identity_for_same_zoned_name(self, make_entry, make_object) -> None:
        entry = make_entry("default/www", targets=["1.2.3.4"])
        new = EntryVersion(make_object("default/www", "www.example.com", targets=["5.6.7.8"]))
        new.status.zone = "example.com"

        assert entry.update(new) is entry
        assert entry.version is new
        assert entry.is_modified()

    def test_update_with_new_zone_creates_entry(self, make_entry, make_object) -> None:
        entry = make_entry("default/www", targets=["1.2.3.4"])
        new = EntryVersion(make_object("default/www", "www.example.com", targets=["1.2.3.4"]))
        new.status.zone = "other.example.com"

        updated = entry.update(new)

        assert updated is not entry
        assert updated.key == entry.key
        assert updated.active_zone == "other.example.com"
        assert entry.version is not new

    def test_update_reports_mappings(self, make_entry, make_object, store, caplog) -> None:
        entry = make_entry("default/www", targets=["1.2.3.4"])
        new = EntryVersion(make_object("default/www", "www.example.com", targets=["a.example.org", "b.example.org"]))
        new.status.zone = "example.com"
        new.targets.append(Target(RS_A, "10.0.0.1", 300))
        new.mappings = {"a.example.org": ["10.0.0.1"]}
        new.warnings = ["dns entry 'default/www' has duplicate target 'A(10.0.0.1)'"]

        with caplog.at_level(logging.INFO, logger="dnsentry.entry"):
            entry.update(new)

        reasons = {e.reason for e in store.events("default/www")}
        assert reasons == {"reconcile", "dnslookup"}
        messages = [r.getMessage() for r in caplog.records if r.name == "dnsentry.entry"]
        assert "mapping cname 'a.example.org' to ['10.0.0.1']" in messages

    def test_before_orders_by_creation_then_key(self, make_entry) -> None:
        a = make_entry("default/a")
        b = make_entry("default/b")
        a.version.object.creation_timestamp = b.version.object.creation_timestamp

        assert a.before(b) and not b.before(a)
        assert a.before(None)

        b.version.object.creation_timestamp = now() - timedelta(hours=1)
        assert b.before(a)

    def test_is_active(self, make_entry, context) -> None:
        """Test activity follows the owner registry, defaulting to the controller identity."""
        plain = make_entry("default/plain")
        owned = make_entry("default/owned", owner_id="team-x")
        lock = make_entry("default/lock", kind=LOCK_KIND, owner_id="team-x")

        assert plain.is_active()
        assert not owned.is_active()
        assert lock.is_active()

        context.owners.register("team-x")
        assert owned.is_active()


class TestEntryList:
    """Tests for locking batches of entries."""

    @pytest.mark.asyncio
    async def test_sort_by_key_removes_duplicates(self, make_entry) -> None:
        a, b = make_entry("default/a"), make_entry("default/b")
        batch = EntryList([b, a, b])

        batch.sort_by_key()

        assert [e.key for e in batch] == ["default/a", "default/b"]

    @pytest.mark.asyncio
    async def test_overlapping_batches_do_not_deadlock(self, make_entry) -> None:
        """Test batches locking overlapping entries in different order all complete."""
        a, b, c = make_entry("default/a"), make_entry("default/b"), make_entry("default/c")
        held = []

        async def work(batch):
            async with batch.locked():
                held.append([e.key for e in batch])
                await asyncio.sleep(0.01)

        await asyncio.wait_for(
            asyncio.gather(
                work(EntryList([c, a, b])),
                work(EntryList([b, c])),
                work(EntryList([c, a])),
            ),
            timeout=2,
        )

        assert len(held) == 3
        assert not any(e.lock.locked() for e in (a, b, c))

    @pytest.mark.asyncio
    async def test_failed_lock_releases_acquired_entries(self, make_entry, context) -> None:
        """Test a batch either holds all locks or none."""
        a, b = make_entry("default/a"), make_entry("default/b")
        await b.lock.acquire()
        batch = EntryList([b, a])
        task = asyncio.create_task(batch.lock())
        await asyncio.sleep(0.01)
        assert a.lock.locked()

        context.cancel.set()
        with pytest.raises(LockCancelledError):
            await asyncio.wait_for(task, 1)

        assert not a.lock.locked()
        assert b.lock.locked()

    @pytest.mark.asyncio
    async def test_update_statistic(self, make_entry) -> None:
        batch = EntryList([make_entry("default/a"), make_entry("default/b", owner_id="team-x")])
        statistic = EntryStatistic()

        await batch.update_statistic(statistic)

        assert statistic.providers[("mock", "")] == 2
        assert statistic.owners[("team-x", "mock", "")] == 1


class TestSynchronizedEntries:
    """Tests for the concurrent entry registry."""

    def test_add_replace_delete(self, make_entry) -> None:
        entries = SynchronizedEntries()
        first = make_entry("default/www")
        second = make_entry("default/www")

        assert entries.add_entry(first) is None
        assert entries.add_entry(first) is None
        assert entries.add_entry(second) is first
        assert entries.get("default/www") is second

        entries.delete(first)
        assert len(entries) == 1
        entries.delete(second)
        assert len(entries) == 0

    def test_selections(self, make_entry) -> None:
        entries = SynchronizedEntries()
        a = make_entry("default/a")
        b = make_entry("default/b", zone="other.com")
        c = make_entry("default/c")
        c.version.responsible = False
        for e in (a, b, c):
            entries.add_entry(e)

        zone = EntryList()
        entries.add_active_zone_to("example.com", zone)
        responsible = EntryList()
        entries.add_responsible_to(responsible)

        assert {e.key for e in zone} == {"default/a", "default/c"}
        assert {e.key for e in responsible} == {"default/a", "default/b"}
        assert [e.key for e in entries.select(lambda e: e.dns_name == "b.example.com")] == ["default/b"]
