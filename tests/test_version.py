"""Unit tests for the entry state machine."""

import logging

import pytest
import pytest_asyncio

from dnsentry.entry.version import EntryVersion
from dnsentry.models.errors import OwnerError, ValidationError
from dnsentry.models.models import (
    FINALIZER,
    LOCK_KIND,
    STATE_DELETING,
    STATE_ERROR,
    STATE_INVALID,
    STATE_PENDING,
    STATE_READY,
    STATE_STALE,
    EntryStatus,
    now,
)

READY_STATUS = dict(
    state=STATE_READY,
    provider_type="mock",
    provider="default/mock",
    zone="example.com",
    observed_generation=1,
    targets=["1.2.3.4"],
)


async def run_setup(context, providers, obj, old=None):
    """Store an object and run the setup of a fresh version of it."""
    context.store.create(obj)
    version = EntryVersion(await context.store.get(obj.key), old)
    premise, err = providers.lookup_premise(version.dns_name, context.config.provider_types)
    status = await version.setup(context, premise, "test", err, context.config, old)
    return version, status


@pytest_asyncio.fixture
async def provider(providers, make_provider):
    provider = make_provider("example.com", default_ttl=300)
    await provider.refresh()
    providers.add(provider)
    return provider


class TestSetupResponsibility:
    """Tests for the assignment of entries to providers."""

    @pytest.mark.asyncio
    async def test_new_entry_is_assigned(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"])

        version, status = await run_setup(context, providers, obj)

        assert status.completed and not status.failed
        assert version.is_responsible() and version.is_valid()
        assert version.targets.host_names() == ["1.2.3.4"]
        assert version.ttl() == 300
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_PENDING
        assert stored.status.provider_type == "mock"
        assert stored.status.provider == "default/mock"
        assert stored.status.zone == "example.com"

    @pytest.mark.asyncio
    async def test_assignment_is_logged(self, context, providers, provider, make_object, caplog) -> None:
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"])

        with caplog.at_level(logging.INFO, logger="dnsentry.entry.version"):
            await run_setup(context, providers, obj)

        messages = [r.getMessage() for r in caplog.records if r.name == "dnsentry.entry.version"]
        assert any("assigned to provider type 'mock' for zone example.com" in m for m in messages)

    @pytest.mark.asyncio
    async def test_spec_ttl_overrides_default(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"], ttl=42)

        version, _ = await run_setup(context, providers, obj)

        assert version.ttl() == 42
        assert version.targets[0].ttl == 42

    @pytest.mark.asyncio
    async def test_unassigned_entry_within_grace_period(self, context, providers, make_object) -> None:
        """Test a young entry without provider is rescheduled and its finalizer dropped."""
        obj = make_object("default/www", "www.other.org", targets=["1.2.3.4"])
        obj.finalizers.append(FINALIZER)

        version, status = await run_setup(context, providers, obj)

        assert status.completed and status.interval == context.config.reschedule_delay_seconds
        assert not version.is_responsible()
        stored = await context.store.get("default/www")
        assert stored.status.state == ""
        assert stored.finalizers == []

    @pytest.mark.asyncio
    async def test_unassigned_entry_after_grace_period(self, context, providers, make_object) -> None:
        obj = make_object("default/www", "www.other.org", targets=["1.2.3.4"], age=3600)

        version, status = await run_setup(context, providers, obj)

        assert not status.failed
        assert not version.is_responsible()
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_ERROR
        assert stored.status.message == "No responsible provider found"

    @pytest.mark.asyncio
    async def test_upstream_error_is_reported(self, context, providers, make_provider, make_object) -> None:
        broken = make_provider("example.com")
        broken.handler.fail_listing = "credentials rejected"
        await broken.refresh()
        providers.add(broken)
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"], age=3600)

        await run_setup(context, providers, obj)

        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_ERROR
        assert stored.status.message.startswith("No responsible provider found: ")
        assert "credentials rejected" in stored.status.message

    @pytest.mark.asyncio
    async def test_assignment_is_revoked(self, context, providers, make_object) -> None:
        """Test an entry of a claimed type loses its provider when no zone matches anymore."""
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"])
        obj.status = EntryStatus(**READY_STATUS)

        version, status = await run_setup(context, providers, obj)

        assert not version.is_responsible()
        assert status.completed
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_ERROR
        assert "releasing provider type mock" in stored.status.message
        assert stored.status.provider_type is None
        assert stored.status.zone is None
        assert stored.status.targets == []

    @pytest.mark.asyncio
    async def test_foreign_type_is_kept(self, context, providers, make_object) -> None:
        """Test an entry assigned to an unclaimed type is left alone."""
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"])
        obj.status = EntryStatus(**dict(READY_STATUS, provider_type="foreign"))

        version, status = await run_setup(context, providers, obj)

        assert not version.is_responsible()
        assert status.completed
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_READY
        assert stored.status.provider_type == "foreign"


class TestSetupValidation:
    """Tests for validation outcomes of the setup."""

    @pytest.mark.asyncio
    async def test_unknown_owner_is_stale(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"], owner_id="team-x")

        version, status = await run_setup(context, providers, obj)

        assert isinstance(status.error, OwnerError)
        assert version.is_responsible() and not version.is_valid()
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_STALE
        assert stored.status.message == "unknown owner id 'team-x'"

    @pytest.mark.asyncio
    async def test_invalid_spec(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/www", "www.example.com")

        version, status = await run_setup(context, providers, obj)

        assert isinstance(status.error, ValidationError)
        assert status.completed
        assert not version.keep_records()
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_INVALID
        assert stored.status.message == "no target or text specified"

    @pytest.mark.asyncio
    async def test_name_outside_domain_selection(self, context, providers, make_provider, make_object) -> None:
        """Test a fallback match is an error naming the provider."""
        fallback = make_provider("example.com", include_domains=["app.example.com"])
        await fallback.refresh()
        providers.add(fallback)
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"])

        version, _ = await run_setup(context, providers, obj)

        assert version.is_responsible() and not version.is_valid()
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_ERROR
        assert stored.status.message == (
            "dns name 'www.example.com' not included in domain selection of provider default/mock"
        )

    @pytest.mark.asyncio
    async def test_invalid_provider_makes_ready_entry_stale(self, context, providers, provider, make_object) -> None:
        provider.handler.fail_listing = "rate limited"
        await provider.refresh()
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"])
        obj.status = EntryStatus(**READY_STATUS)

        version, _ = await run_setup(context, providers, obj)

        assert not version.is_valid()
        assert version.keep_records()
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_STALE
        assert "rate limited" in stored.status.message

    @pytest.mark.asyncio
    async def test_new_generation_returns_to_pending(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/www", "www.example.com", targets=["5.6.7.8"])
        obj.status = EntryStatus(**READY_STATUS)
        obj.generation = 2

        version, _ = await run_setup(context, providers, obj)

        assert version.is_valid()
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_PENDING

    @pytest.mark.asyncio
    async def test_deleting_entry(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"])
        obj.finalizers.append(FINALIZER)
        obj.deletion_timestamp = now()

        version, _ = await run_setup(context, providers, obj)

        assert version.is_valid() and version.is_deleting()
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_DELETING

    @pytest.mark.asyncio
    async def test_lock_status_is_not_persisted(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/lock", "lock.example.com", kind=LOCK_KIND, text=["owner=me"])

        version, status = await run_setup(context, providers, obj)

        assert status.completed and version.is_valid()
        assert version.state() == STATE_PENDING
        stored = await context.store.get("default/lock")
        assert stored.status.state == ""


class TestSetupCnameLookup:
    """Tests for entries with multiple CNAME targets."""

    @pytest.mark.asyncio
    async def test_resolved_targets_schedule_lookup(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/www", "www.example.com", targets=["wikipedia.org", "www.wikipedia.org"])

        version, status = await run_setup(context, providers, obj)

        assert version.is_valid()
        assert len(version.targets) == 2
        assert version.interval == context.config.cname_lookup_interval
        assert set(version.mappings) == {"wikipedia.org", "www.wikipedia.org"}
        assert not status.failed

    @pytest.mark.asyncio
    async def test_spec_lookup_interval(self, context, providers, provider, make_object) -> None:
        obj = make_object(
            "default/www", "www.example.com", targets=["wikipedia.org", "google.com"], cname_lookup_interval=30
        )

        version, _ = await run_setup(context, providers, obj)

        assert version.interval == 30

    @pytest.mark.asyncio
    async def test_unresolvable_targets(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/www", "www.example.com", targets=["a.unknown.test", "b.unknown.test"])

        version, status = await run_setup(context, providers, obj)

        assert not version.is_valid()
        assert status.completed and status.interval == 600
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_INVALID
        assert stored.status.message == "targets cannot be resolved to any valid IPv4 address"

    @pytest.mark.asyncio
    async def test_unresolvable_targets_of_ready_entry_are_stale(
        self, context, providers, provider, make_object
    ) -> None:
        obj = make_object("default/www", "www.example.com", targets=["a.unknown.test", "b.unknown.test"])
        obj.status = EntryStatus(**READY_STATUS)

        await run_setup(context, providers, obj)

        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_STALE
        assert stored.status.targets == ["1.2.3.4"]

    @pytest.mark.asyncio
    async def test_too_many_targets(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/www", "www.example.com", targets=[f"h{i}.example.org" for i in range(12)])

        _, status = await run_setup(context, providers, obj)

        assert status.interval == 84600
        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_INVALID
        assert stored.status.message == "too many targets"


class TestUpdateStatus:
    """Tests for persisting the outcome of a zone reconciliation."""

    @pytest.mark.asyncio
    async def test_ready_acknowledges_targets(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"])
        version, _ = await run_setup(context, providers, obj)

        assert await version.update_status(context, STATE_READY, "dns entry active")

        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_READY
        assert stored.status.targets == ["1.2.3.4"]
        assert stored.status.ttl == 300
        assert stored.status.observed_generation == 1
        assert not await version.update_status(context, STATE_READY, "dns entry active")

    @pytest.mark.asyncio
    async def test_pending_does_not_override_state(self, context, providers, provider, make_object) -> None:
        obj = make_object("default/www", "www.example.com", targets=["1.2.3.4"])
        version, _ = await run_setup(context, providers, obj)
        await version.update_status(context, STATE_READY, "dns entry active")

        assert not await version.update_status(context, STATE_PENDING, "again")

        stored = await context.store.get("default/www")
        assert stored.status.state == STATE_READY
        assert version.state() == STATE_READY
