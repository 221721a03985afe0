"""Unit tests for the in-memory object store."""

import pytest

from dnsentry.models.errors import ConflictError, NotFoundError
from dnsentry.models.models import FINALIZER, EntrySpec
from dnsentry.source.memory import ACTION_ADDED, ACTION_DELETED, ACTION_MODIFIED


def set_state(state):
    def mutate(status):
        changed = status.state != state
        status.state = state
        return status, changed

    return mutate


class TestObjects:
    """Tests for object lifecycle operations."""

    def test_create_twice_conflicts(self, store, make_object) -> None:
        store.create(make_object("default/www", "www.example.com"))

        with pytest.raises(ConflictError):
            store.create(make_object("default/www", "www.example.com"))

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, store, make_object) -> None:
        store.create(make_object("default/www", "www.example.com"))

        obj = await store.get("default/www")
        obj.status.state = "Ready"

        assert (await store.get("default/www")).status.state == ""

    @pytest.mark.asyncio
    async def test_get_missing(self, store) -> None:
        with pytest.raises(NotFoundError):
            await store.get("default/none")

    def test_update_spec_increases_generation(self, store, make_object) -> None:
        store.create(make_object("default/www", "www.example.com", targets=["1.2.3.4"]))

        same = store.update_spec("default/www", EntrySpec(dns_name="www.example.com", targets=["1.2.3.4"]))
        changed = store.update_spec("default/www", EntrySpec(dns_name="www.example.com", targets=["5.6.7.8"]))

        assert same.generation == 1
        assert changed.generation == 2

    def test_event_queue(self, store, make_object) -> None:
        store.create(make_object("default/a", "a.example.com"))
        store.update_spec("default/a", EntrySpec(dns_name="b.example.com"))
        store.delete("default/a")

        events = [store.event_queue.get_nowait() for _ in range(store.event_queue.qsize())]

        assert events == [
            (ACTION_ADDED, "default/a"),
            (ACTION_MODIFIED, "default/a"),
            (ACTION_DELETED, "default/a"),
        ]

    def test_recorded_events(self, store) -> None:
        store.event("default/a", "Normal", "reconcile", "one")
        store.event("default/b", "Warning", "dnslookup", "two")

        assert [e.message for e in store.events("default/b")] == ["two"]
        assert len(store.events()) == 2


class TestFinalizers:
    """Tests for deletion with finalizers."""

    @pytest.mark.asyncio
    async def test_delete_with_finalizer_marks_deletion(self, store, make_object) -> None:
        store.create(make_object("default/www", "www.example.com"))
        assert await store.add_finalizer("default/www")
        assert not await store.add_finalizer("default/www")

        store.delete("default/www")

        obj = await store.get("default/www")
        assert obj.is_deleting()
        assert obj.finalizers == [FINALIZER]

    @pytest.mark.asyncio
    async def test_removing_last_finalizer_purges_deleted_object(self, store, make_object) -> None:
        store.create(make_object("default/www", "www.example.com"))
        await store.add_finalizer("default/www")
        store.delete("default/www")

        assert await store.remove_finalizer("default/www")

        assert not store.exists("default/www")
        assert not await store.remove_finalizer("default/www")

    @pytest.mark.asyncio
    async def test_remove_finalizer_keeps_live_object(self, store, make_object) -> None:
        store.create(make_object("default/www", "www.example.com"))
        await store.add_finalizer("default/www")

        assert await store.remove_finalizer("default/www")

        assert store.exists("default/www")
        assert (await store.get("default/www")).finalizers == []


class TestModifyStatus:
    """Tests for optimistic status updates."""

    @pytest.mark.asyncio
    async def test_unchanged_status_is_not_written(self, store, make_object) -> None:
        store.create(make_object("default/www", "www.example.com"))
        version = (await store.get("default/www")).resource_version

        assert not await store.modify_status("default/www", set_state(""))

        assert (await store.get("default/www")).resource_version == version

    @pytest.mark.asyncio
    async def test_conflict_is_retried_on_fresh_status(self, store, make_object) -> None:
        """Test a concurrent modification makes the mutation run again."""
        store.create(make_object("default/www", "www.example.com"))
        calls = []

        def mutate(status):
            calls.append(status.state)
            if len(calls) == 1:
                store.annotate("default/www", {"touched": "yes"})
            status.state = "Ready"
            return status, True

        assert await store.modify_status("default/www", mutate)

        assert len(calls) == 2
        obj = await store.get("default/www")
        assert obj.status.state == "Ready"
        assert obj.annotations == {"touched": "yes"}

    @pytest.mark.asyncio
    async def test_persistent_conflict(self, store, make_object) -> None:
        store.create(make_object("default/www", "www.example.com"))

        def mutate(status):
            store.annotate("default/www", {"touched": "again"})
            status.state = "Ready"
            return status, True

        with pytest.raises(ConflictError):
            await store.modify_status("default/www", mutate)
        assert (await store.get("default/www")).status.state == ""

    @pytest.mark.asyncio
    async def test_missing_object(self, store) -> None:
        with pytest.raises(NotFoundError):
            await store.modify_status("default/none", set_state("Ready"))
