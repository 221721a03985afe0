"""
Controller module for dnsentry.

This module drives the reconciliation of DNS entries: it takes entry keys
from a work queue, computes the state of each entry, keeps the registry of
live entries and brings the records of the affected zones in line with the
entries active in them.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from dnsentry.config.config import Config
from dnsentry.controller.plan import Plan, endpoints_for_entry
from dnsentry.controller.queue import QueueShutDown, WorkQueue
from dnsentry.entry.context import ReconcileContext
from dnsentry.entry.entry import Entry, EntryList, SynchronizedEntries
from dnsentry.entry.resolver import AddressResolver
from dnsentry.entry.version import EntryVersion
from dnsentry.models.errors import DNSEntryError, LockCancelledError, NotFoundError
from dnsentry.models.models import (
    EVENT_NORMAL,
    EVENT_WARNING,
    OUTCOME_INVALID,
    OUTCOME_SUCCEEDED,
    STATE_ERROR,
    STATE_INVALID,
    STATE_READY,
    EntryObject,
    EntryStatistic,
    ObjectName,
)
from dnsentry.models.reconcile import ReconcileStatus
from dnsentry.provider.registry import DNSProvider, ProviderRegistry
from dnsentry.registry.access import RealmAccessControl
from dnsentry.registry.owners import OwnerRegistry
from dnsentry.registry.references import ReferenceIndex
from dnsentry.utils.recheck_tracker import RecheckTracker

MSG_ACTIVE = "dns entry active"


class Controller:
    """
    Controller reconciling the entries of an object store against the DNS providers.
    """

    def __init__(
        self,
        config: Config,
        store,
        providers: ProviderRegistry,
        owners: Optional[OwnerRegistry] = None,
        references: Optional[ReferenceIndex] = None,
        access: Optional[RealmAccessControl] = None,
        resolver=None,
    ):
        """
        Initialize a Controller.

        Args:
            config: Controller configuration
            store: Object store holding the entry objects
            providers: Registry of the DNS providers
            owners: Owner registry (defaults to the configured owner ids)
            references: Reverse index of entry references
            access: Access control for entry references
            resolver: Address resolver for CNAME targets
        """
        self.config = config
        self.store = store
        self.providers = providers
        self.owners = owners or OwnerRegistry(config.ident, config.owner_ids)
        self.context = ReconcileContext(
            store=store,
            references=references or ReferenceIndex(),
            owners=self.owners,
            access=access or RealmAccessControl(),
            resolver=resolver or AddressResolver(),
            config=config,
        )
        self.entries = SynchronizedEntries()
        self.queue = WorkQueue()
        self.tracker = RecheckTracker()
        self.interval = config.interval_seconds
        self._zone_locks: Dict[str, asyncio.Lock] = {}
        self._managed: Dict[str, Set[str]] = {}
        self.logger = logging.getLogger("dnsentry.controller")
        self.owners.add_listener(self._owner_changed)

    @property
    def references(self) -> ReferenceIndex:
        return self.context.references

    # --- Triggers ---

    def enqueue(self, *keys: str) -> None:
        """Queue entries for reconciliation (all stored entries if no key is given)."""
        for key in keys or self.store.list_keys():
            self.queue.add(key)

    def _owner_changed(self, owner_id: str) -> None:
        selected = self.entries.select(lambda e: e.owner_id() == owner_id)
        self.logger.info(f"Responsibility for owner id {owner_id} changed, reconciling {len(selected)} entries")
        for e in selected:
            self.queue.add(e.key)

    async def add_provider(self, provider: DNSProvider) -> None:
        """Register a provider and reconcile all entries."""
        await provider.refresh()
        self.providers.add(provider)
        self.enqueue()

    async def remove_provider(self, name: ObjectName) -> None:
        """Remove a provider and reconcile all entries."""
        if self.providers.remove(name) is not None:
            self.enqueue()

    async def refresh_providers(self) -> None:
        """Reload the zones of all providers, reconciling all entries if a provider changed."""
        changed = False
        for provider in self.providers.list():
            before = (provider.is_valid(), [z.id for z in provider.zones])
            await provider.refresh()
            if before != (provider.is_valid(), [z.id for z in provider.zones]):
                changed = True
        if changed:
            self.enqueue()

    # --- Entry reconciliation ---

    async def reconcile(self, key: str) -> ReconcileStatus:
        """
        Perform a reconciliation pass for a single entry.

        Args:
            key: Key of the entry object

        Returns:
            ReconcileStatus: Result of the pass
        """
        try:
            obj = await self.store.get(key)
        except NotFoundError:
            return await self._entry_removed(key)

        old = self.entries.get(key)
        if old is not None:
            try:
                await old.lock.acquire()
            except LockCancelledError as e:
                return ReconcileStatus.delay(e)
        try:
            status, entry, changed = await self._update_entry(obj, old)
        finally:
            if old is not None:
                old.lock.release()

        # registry changes happen with no entry lock held
        if entry is not None:
            self.entries.add_entry(entry)
        elif old is not None:
            self.logger.info(f"Dropping entry {key}: no longer responsible")
            self.entries.delete(old)

        zones = set()
        if old is not None and old is not entry and old.active_zone:
            zones.add(old.active_zone)
        if entry is not None:
            await self._check_duplicates(entry)
            if entry.active_zone:
                zones.add(entry.active_zone)
        for zone_id in sorted(zones):
            await self._reconcile_zone(zone_id)

        if changed:
            for referrer in self.references.referrers(key):
                self.logger.debug(f"Reconciling {referrer} referencing {key}")
                self.queue.add(referrer)
        return status

    async def _update_entry(self, obj: EntryObject, old: Optional[Entry]):
        """
        Compute a new version of an entry. The caller holds the lock of the
        old entry and installs the result in the registry once released.
        A result entry of None drops the old entry.
        """
        key = obj.key
        version = EntryVersion(obj, old)
        premise, err = self.providers.lookup_premise(version.dns_name, self.config.provider_types)
        if old is not None and old.premise is not None:
            msg = old.premise.notify_change(premise)
            if msg:
                self.logger.info(f"{key}: {msg}")
                self.store.event(key, EVENT_NORMAL, "reconcile", msg)

        status = await version.setup(self.context, premise, "reconcile", err, self.config, old)
        if status.interval is None and version.interval > 0:
            status.interval = version.interval

        if not version.is_responsible():
            return status, None, old is not None

        changed = old is None or bool(old.version.requires_update_for(version))
        if old is None:
            entry = Entry(version, self.context)
        else:
            entry = old.update(version)
        entry.premise = premise

        if not obj.is_deleting():
            try:
                await self.store.add_finalizer(key)
            except DNSEntryError as e:
                return ReconcileStatus.delay(e), entry, changed
        return status, entry, changed

    async def _entry_removed(self, key: str) -> ReconcileStatus:
        self.references.del_ref(key)
        self.tracker.unmark(key)
        self.tracker.forget(key)
        entry = self.entries.get(key)
        if entry is None:
            return ReconcileStatus.succeeded()
        # wait for a pass in flight
        try:
            await entry.lock.acquire()
        except LockCancelledError as e:
            return ReconcileStatus.delay(e)
        entry.lock.release()
        self.logger.info(f"Entry {key} removed")
        self.entries.delete(entry)

        self._requeue_related(entry)
        if entry.active_zone:
            await self._reconcile_zone(entry.active_zone)
        return ReconcileStatus.succeeded()

    def _requeue_related(self, entry: Entry) -> None:
        """Queue the entries claiming the same DNS name and those referencing a removed entry."""
        zoned = entry.zoned_dns_name()
        for other in self.entries.select(lambda e: e is not entry and e.zoned_dns_name() == zoned):
            self.queue.add(other.key)
        for referrer in self.references.referrers(entry.key):
            self.queue.add(referrer)

    async def _check_duplicates(self, entry: Entry) -> None:
        """
        Make sure only one entry claims a DNS name in a zone. The oldest
        entry keeps the name, all others are marked as erroneous.
        """
        zoned = entry.zoned_dns_name()
        claimants = self.entries.select(
            lambda e: e.is_responsible() and not e.is_deleting() and e.zoned_dns_name() == zoned
        )
        if len(claimants) < 2:
            if entry.version.duplicate:
                entry.version.duplicate = False
            return

        try:
            await claimants.lock()
        except LockCancelledError:
            return
        try:
            winner = None
            for e in claimants:
                if e.before(winner):
                    winner = e
            for e in claimants:
                if e is winner:
                    if e.version.duplicate:
                        e.version.duplicate = False
                        e.modified = True
                        if e is not entry:
                            self.queue.add(e.key)
                    continue
                e.version.duplicate = True
                msg = f"DNS name already busy for entry {winner.key!r}"
                self.logger.warning(f"{e.key}: {msg}")
                self.store.event(e.key, EVENT_WARNING, "reconcile", msg)
                try:
                    await e.version.update_state(self.context, STATE_ERROR, msg)
                except DNSEntryError as err:
                    self.logger.warning(f"Cannot update state of {e.key}: {err}")
            keys = [e.key for e in claimants]
        finally:
            claimants.unlock()

        provider = self.providers.provider_for_zone(zoned.zone_id)
        if provider is not None:
            await provider.handler.report_conflict(zoned.zone_id, zoned.dns_name, keys)

    # --- Zone reconciliation ---

    async def _reconcile_zone(self, zone_id: str) -> None:
        """
        Bring the records of a zone in line with the entries active in it.

        Args:
            zone_id: Id of the hosted zone
        """
        provider = self.providers.provider_for_zone(zone_id)
        if provider is None:
            self.logger.debug(f"No provider for zone {zone_id}, skipping zone reconciliation")
            return
        lock = self._zone_locks.setdefault(zone_id, asyncio.Lock())
        async with lock:
            batch = EntryList()
            self.entries.add_active_zone_to(zone_id, batch)
            try:
                await batch.lock()
            except LockCancelledError:
                return
            try:
                removed = await self._apply_zone(provider, zone_id, batch)
            finally:
                batch.unlock()
            for e in removed:
                self.entries.delete(e)
                self.references.del_ref(e.key)
                self._requeue_related(e)

    async def _apply_zone(self, provider: DNSProvider, zone_id: str, batch: EntryList) -> List[Entry]:
        """Apply the records of a locked batch and return the entries whose deletion completed."""
        desired = []
        preserved: Set[str] = set()
        applying: List[Entry] = []
        deleting: List[Entry] = []
        for e in batch:
            if not e.is_active():
                preserved.add(e.dns_name)
            elif e.is_deleting():
                deleting.append(e)
            elif e.version.duplicate:
                continue
            elif e.is_valid():
                desired.extend(endpoints_for_entry(e))
                applying.append(e)
            elif e.version.keep_records():
                self.logger.debug(f"Preserving records of {e.key} ({e.state()})")
                preserved.add(e.dns_name)

        managed = self._managed.setdefault(zone_id, set())
        managed.update(e.dns_name for e in batch)
        try:
            current = [ep for ep in await provider.handler.fetch_zone_state(zone_id) if ep.dnsname in managed]
        except DNSEntryError as e:
            self.logger.error(f"Cannot read zone {zone_id}: {e}")
            for entry in applying + deleting:
                self._retry_later(entry.key)
            return []

        changes = Plan(current, desired, preserved).calculate_changes()
        failed: Dict[str, str] = {}
        invalid: Dict[str, str] = {}
        if changes.has_changes():
            if self.config.dry_run:
                self.logger.info(
                    f"Dry run: zone {zone_id} would create {len(changes.create)}, "
                    f"update {len(changes.update_new)}, delete {len(changes.delete)} record sets"
                )
                return []
            self.logger.info(f"Applying changes to zone {zone_id}")
            for result in await provider.handler.apply_changes(zone_id, changes):
                if result.outcome == OUTCOME_SUCCEEDED:
                    continue
                msg = result.error or result.outcome
                if result.outcome == OUTCOME_INVALID:
                    invalid[result.endpoint.dnsname] = msg
                else:
                    failed[result.endpoint.dnsname] = msg

        for e in applying:
            try:
                if e.dns_name in invalid:
                    await e.version.update_status(self.context, STATE_INVALID, invalid[e.dns_name])
                elif e.dns_name in failed:
                    await e.version.update_status(self.context, STATE_ERROR, failed[e.dns_name])
                    self._retry_later(e.key)
                else:
                    await e.version.update_status(self.context, STATE_READY, MSG_ACTIVE)
                    e.modified = False
                    self.tracker.forget(e.key)
            except DNSEntryError as err:
                self.logger.warning(f"Cannot update status of {e.key}: {err}")
                self._retry_later(e.key)

        removed: List[Entry] = []
        for e in deleting:
            if e.dns_name in failed:
                self._retry_later(e.key)
                continue
            try:
                await e.remove_finalizer()
            except DNSEntryError as err:
                self.logger.warning(f"Cannot remove finalizer of {e.key}: {err}")
                self._retry_later(e.key)
                continue
            self.logger.info(f"Entry {e.key} deleted")
            removed.append(e)

        desired_names = {ep.dnsname for ep in desired}
        for endpoint in changes.delete:
            name = endpoint.dnsname
            if name not in failed and name not in desired_names and name not in preserved:
                managed.discard(name)
        return removed

    # --- Scheduling ---

    def _retry_later(self, key: str) -> None:
        delay = self.tracker.backoff(key, self.config.retry_delay_seconds, self.config.max_retry_delay_seconds)
        self.tracker.mark(key, delay)

    def _schedule(self, key: str, status: ReconcileStatus) -> None:
        if not status.completed:
            if status.interval == 0:
                self.tracker.mark(key, 0)
            else:
                self._retry_later(key)
            return
        if status.interval:
            self.tracker.mark(key, status.interval)

    async def process(self, key: str) -> Optional[ReconcileStatus]:
        """
        Reconcile an entry and schedule follow-up passes.

        Args:
            key: Key of the entry object

        Returns:
            Optional[ReconcileStatus]: Result of the pass
        """
        try:
            status = await self.reconcile(key)
        except LockCancelledError:
            self.logger.debug(f"Reconciliation of {key} cancelled")
            return None
        except Exception as e:
            self.logger.error(f"Error reconciling {key}: {e}", exc_info=True)
            status = ReconcileStatus.delay(e)
        if status.failed:
            self.logger.debug(f"Reconciliation of {key} reported: {status.error}")
        self._schedule(key, status)
        return status

    async def drain(self) -> None:
        """Process queued entries until the queue is empty."""
        while True:
            key = self.queue.get_nowait()
            if key is None:
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def sync(self, *keys: str) -> None:
        """Reconcile the given entries (all entries if none is given) and everything they trigger."""
        self.enqueue(*keys)
        await self.drain()

    async def run_once(self) -> None:
        """
        Performs a single reconciliation run over all entries.
        """
        await self.refresh_providers()
        await self.sync()

    async def worker(self, number: int) -> None:
        self.logger.debug(f"Worker {number} started.")
        while True:
            try:
                key = await self.queue.get()
            except QueueShutDown:
                self.logger.debug(f"Worker {number} stopped.")
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped. Returns False once the controller is stopped."""
        try:
            await asyncio.wait_for(self.context.cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def run_reconciliation_loop(self) -> None:
        """
        Queues all entries at the configured interval.
        """
        self.logger.debug(f"Reconciliation loop starting with interval {self.interval} seconds")

        while True:
            try:
                await self.refresh_providers()
                self.enqueue()
            except Exception as e:
                self.logger.error(f"Error in reconciliation loop: {e}", exc_info=True)

            if not await self._sleep(self.interval):
                return

    async def run_recheck_tracker(self) -> None:
        """
        Queues entries whose recheck is due.
        """
        self.logger.debug("Recheck tracker task started.")

        while True:
            for key in self.tracker.get_due():
                self.queue.add(key)
            delay = self.tracker.next_due()
            if not await self._sleep(1 if delay is None else min(max(delay, 0.1), 1)):
                return

    async def watch_events(self) -> None:
        """
        Watch for store events and queue the affected entries.
        """
        self.logger.debug("Controller event watcher task started.")

        while not self.context.cancel.is_set():
            action, key = await self.store.event_queue.get()
            self.logger.debug(f"Store event {action} for {key}")
            self.queue.add(key)
            self.store.event_queue.task_done()

    async def run(self) -> None:
        """
        Run workers and background loops until stopped.
        """
        tasks = [asyncio.create_task(self.worker(i)) for i in range(self.config.workers)]
        tasks.append(asyncio.create_task(self.run_reconciliation_loop()))
        tasks.append(asyncio.create_task(self.run_recheck_tracker()))
        watcher = asyncio.create_task(self.watch_events())
        try:
            await asyncio.gather(*tasks)
        finally:
            watcher.cancel()
            for task in tasks:
                task.cancel()

    def stop(self) -> None:
        """Stop all workers and loops; pending entry lock acquisitions are aborted."""
        self.logger.info("Stopping controller")
        self.context.cancel.set()
        self.queue.shut_down()

    async def statistic(self) -> EntryStatistic:
        """Count the responsible entries per owner id and per provider."""
        statistic = EntryStatistic()
        batch = EntryList()
        self.entries.add_responsible_to(batch)
        await batch.update_statistic(statistic)
        return statistic
