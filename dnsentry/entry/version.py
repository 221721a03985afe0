"""
Entry versions and the entry state machine.

An EntryVersion is the snapshot of one entry built for a single
reconciliation pass. Its setup derives the state of the entry from the
responsibility premise and the validation result and persists it.
"""

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Dict, List, Optional

from dnsentry.config.config import Config
from dnsentry.entry.premise import EntryPremise, provider_name
from dnsentry.entry.validation import (
    normalize_targets,
    target_list,
    validate,
    validate_owner,
)
from dnsentry.models.errors import DNSEntryError, OwnerError, ValidationError
from dnsentry.models.models import (
    EVENT_NORMAL,
    LOCK_KIND,
    STATE_DELETING,
    STATE_ERROR,
    STATE_INVALID,
    STATE_PENDING,
    STATE_READY,
    STATE_STALE,
    EntryObject,
    EntryStatus,
    ObjectName,
    Targets,
    ZonedDNSName,
    normalize_dns_name,
    now,
)
from dnsentry.models.reconcile import ReconcileStatus
from dnsentry.utils.modification import ModificationState

if TYPE_CHECKING:
    from dnsentry.entry.context import ReconcileContext
    from dnsentry.entry.entry import Entry

MSG_PRESERVED = "errorneous entry preserved in provider"


class EntryVersion:
    """
    Snapshot of an entry's desired state and derived status for one pass.
    """

    def __init__(self, obj: EntryObject, old: Optional["Entry"] = None):
        """
        Initialize an EntryVersion.

        Args:
            obj: Snapshot of the stored object
            old: Entry known from previous passes, if any
        """
        self.logger = logging.getLogger("dnsentry.entry.version")
        self.object = obj
        self.provider_name: Optional[ObjectName] = None
        self.dns_name = normalize_dns_name(obj.get_dns_name())
        self.targets = Targets()
        self.mappings: Dict[str, List[str]] = {}
        self.warnings: List[str] = []
        if old is not None:
            self.status = old.version.status.copy()
        else:
            self.status = obj.status.copy()
        self.interval = 0
        self.responsible = False
        self.valid = False
        self.duplicate = False

    @property
    def kind(self) -> str:
        return self.object.kind

    @property
    def key(self) -> str:
        return self.object.key

    @property
    def object_name(self) -> ObjectName:
        return self.object.name

    def requires_update_for(self, other: "EntryVersion") -> List[str]:
        """
        List the reasons why another version differs from this one.

        Args:
            other: The new version

        Returns:
            List[str]: Reasons, empty if no update is required
        """
        reasons = []
        if self.dns_name != other.dns_name:
            reasons.append("dnsname changed")
        if self.status.ttl != other.status.ttl:
            reasons.append("ttl changed")
        if self.valid != other.valid:
            reasons.append("validation state changed")
        if self.zone_id() != other.zone_id():
            reasons.append("zone changed")
        if self.owner_id() != other.owner_id():
            reasons.append("ownerid changed")
        if self.targets.differ_from(other.targets):
            reasons.append("targets changed")
        if self.state() != other.state() and other.state() != STATE_READY:
            reasons.append("state changed")
        return reasons

    def is_valid(self) -> bool:
        return self.valid

    def is_responsible(self) -> bool:
        return self.responsible

    def keep_records(self) -> bool:
        """Records are kept in the provider unless the entry is invalid."""
        return self.valid or self.status.state != STATE_INVALID

    def is_deleting(self) -> bool:
        return self.object.is_deleting()

    def message(self) -> str:
        return self.status.message or ""

    def zone_id(self) -> str:
        return self.status.zone or ""

    def state(self) -> str:
        return self.status.state

    def zoned_dns_name(self) -> ZonedDNSName:
        return ZonedDNSName(self.zone_id(), self.dns_name)

    def ttl(self) -> int:
        return self.status.ttl or 0

    def provider_type(self) -> str:
        return self.status.provider_type or ""

    def owner_id(self) -> str:
        return self.object.get_owner_id() or ""

    async def setup(
        self,
        ctx: "ReconcileContext",
        p: EntryPremise,
        op: str,
        err: Optional[BaseException],
        config: Config,
        old: Optional["Entry"] = None,
    ) -> ReconcileStatus:
        """
        Derive and persist the state of this version.

        Args:
            ctx: Reconciliation context
            p: Responsibility premise of the entry
            op: Operation name used in log messages
            err: Upstream error reported by the provider registry
            config: Controller configuration
            old: Entry known from previous passes, if any

        Returns:
            ReconcileStatus: Result of the pass
        """
        hello = (
            f"{op} ENTRY {self.key}: {self.object.status.state}, zoneid: {p.zoneid}, "
            f"handler: {p.ptype}, provider: {provider_name(p.provider)}, "
            f"ref {self.object.get_reference()}"
        )

        self.valid = False
        self.responsible = False
        spec = self.object

        # --- Responsibility ---

        if self.object.status.provider_type and not p.ptype:
            self.status.provider_type = self.object.status.provider_type

        if not self.status.provider_type or (p.zoneid and self.status.provider_type != p.ptype):
            if not p.zoneid:
                grace = timedelta(seconds=config.reschedule_delay_seconds)
                if self.object.creation_timestamp + grace > now():
                    await ctx.remove_finalizer(self.object)
                    return ReconcileStatus.reschedule_after(config.reschedule_delay_seconds)
                if err is not None:
                    self.logger.info(f"{hello}: no provider responsible ({err}), marking as error")
                else:
                    self.logger.info(f"{hello}: no provider responsible, marking as error")
                self.status.provider = None
                self.status.provider_type = None
                self.status.zone = None
                msg = "No responsible provider found"
                if err is not None:
                    msg = f"{msg}: {err}"
                try:
                    await self._update_status_fields(ctx, STATE_ERROR, msg)
                except DNSEntryError as e:
                    return ReconcileStatus.delay(e)
            else:
                self.logger.info(f"{hello}: assigned to provider type {p.ptype!r} for zone {p.zoneid}")
                self.status.state = STATE_PENDING
                self.status.message = "waiting for dns reconciliation"

        if not p.zoneid and self.status.provider_type and self.status.provider_type in p.ptypes:
            # a claimed type lost the zone
            old_type = self.status.provider_type
            self.logger.info(f"{hello}: releasing provider type {old_type}")
            self.status.provider = None
            self.status.provider_type = None
            self.status.zone = None
            try:
                await self._update_status_fields(
                    ctx,
                    STATE_ERROR,
                    f"not valid for known provider anymore -> releasing provider type {old_type}",
                )
            except DNSEntryError as e:
                return ReconcileStatus.delay(e)

        if not p.zoneid or not p.ptype:
            return ReconcileStatus.repeat_on_error(await ctx.remove_finalizer(self.object))

        self.status.zone = p.zoneid
        self.status.provider_type = p.ptype
        self.responsible = True
        if p.provider is not None:
            self.provider_name = p.provider.name
            self.status.provider = str(p.provider.name)
            self.status.ttl = p.provider.default_ttl
            if spec.get_ttl() is not None:
                self.status.ttl = spec.get_ttl()
        else:
            self.provider_name = None
            self.status.provider = None
            self.status.ttl = None

        # --- Validation ---

        try:
            validate_owner(ctx, self)
        except OwnerError as verr:
            self.logger.info(f"{hello}: owner validation failed: {verr}")
            await self._try_update_status(ctx, STATE_STALE, str(verr))
            return ReconcileStatus.failed_with(verr)

        try:
            effspec, targets, warnings = await validate(ctx, self, p)
        except DNSEntryError as verr:
            self.logger.info(f"{hello}: validation failed: {verr}")
            await self._try_update_status(ctx, STATE_INVALID, str(verr))
            return ReconcileStatus.failed_with(verr)
        if p.provider is not None and effspec.get_ttl() is not None:
            self.status.ttl = effspec.get_ttl()

        # --- Targets ---

        self.logger.info(f"{hello}: validation ok")

        if self.is_deleting():
            self.logger.info(f"update state to {STATE_DELETING}")
            self.status.state = STATE_DELETING
            self.status.message = "entry is scheduled to be deleted"
            self.valid = True
        else:
            self.warnings = warnings
            targets, multi_cname, multi_ok, mappings = await normalize_targets(ctx, self.object, targets)
            if multi_cname:
                self.interval = config.cname_lookup_interval
                lookup = effspec.get_cname_lookup_interval()
                if lookup is not None and lookup > 0:
                    self.interval = lookup
                if not targets:
                    msg = "targets cannot be resolved to any valid IPv4 address"
                    if not multi_ok:
                        msg = "too many targets"
                        self.interval = config.too_many_targets_interval
                    self.logger.info(f"{hello}: {msg}")

                    state = STATE_INVALID
                    # published records stay while lookups fail
                    if self.status.state in (STATE_READY, STATE_STALE):
                        state = STATE_STALE
                    await self._try_update_status(ctx, state, msg)
                    return ReconcileStatus.recheck(ValidationError(msg), self.interval)
            else:
                self.interval = 0

            self.targets = targets
            self.mappings = mappings
            if err is not None:
                if self.status.state != STATE_STALE:
                    if self.status.state == STATE_READY and p.provider is not None and not p.provider.is_valid():
                        self.status.state = STATE_STALE
                    else:
                        self.status.state = STATE_ERROR
                    self.status.message = str(err)
                elif (self.status.message or "").startswith(MSG_PRESERVED):
                    self.status.message = f"{MSG_PRESERVED}: {err}"
                else:
                    self.status.message = str(err)
            elif not p.zoneid:
                self.status.state = STATE_ERROR
                self.status.provider = None
                self.status.message = f"no provider found for {self.dns_name!r}"
            elif p.provider is None:
                self.status.state = STATE_ERROR
                self.status.message = (
                    f"dns name {self.dns_name!r} not included in domain selection "
                    f"of provider {provider_name(p.fallback)}"
                )
            elif p.provider.is_valid():
                self.valid = True
            else:
                self.status.state = STATE_STALE
                self.status.message = f"provider {str(p.provider.name)!r} not valid"

            if self.status.state == STATE_READY and self.object.generation != self.object.status.observed_generation:
                self.status.state = STATE_PENDING

        if self.kind == LOCK_KIND:
            return ReconcileStatus.succeeded()

        self.logger.info(
            f"{self.key}: {self.status.state}: valid: {self.valid}, message: {self.message()}"
            + (f", err: {err}" if err is not None else "")
        )
        desired = self.status.copy()

        def mutate(status: EntryStatus):
            mod = ModificationState()
            if p.zoneid:
                mod.assure(status, "provider_type", p.ptype)
            mod.assure(status, "state", desired.state)
            mod.assure(status, "message", desired.message)
            mod.assure(status, "zone", desired.zone)
            mod.assure(status, "provider", desired.provider)
            if mod.is_modified():
                status.last_update_time = now()
            return status, mod.is_modified()

        try:
            if await ctx.store.modify_status(self.key, mutate):
                self.logger.info(f"update entry status of {self.key}")
        except DNSEntryError as e:
            return ReconcileStatus.delay_on_error(e)
        return ReconcileStatus.succeeded()

    async def _update_status_fields(self, ctx: "ReconcileContext", state: str, msg: str) -> None:
        """
        Persist the responsibility fields together with a state and message.

        Raises:
            DNSEntryError: If the status could not be persisted
        """
        desired = self.status.copy()
        generation = self.object.generation

        def mutate(status: EntryStatus):
            mod = ModificationState()
            mod.assure(status, "provider_type", desired.provider_type)
            mod.assure(status, "state", state)
            mod.assure(status, "message", msg)
            mod.assure(status, "zone", desired.zone)
            mod.assure(status, "provider", desired.provider)
            mod.assure(status, "ttl", desired.ttl)
            if state and status.observed_generation < generation:
                mod.assure(status, "observed_generation", generation)
            if not desired.provider:
                mod.assure(status, "targets", [])
            if mod.is_modified():
                status.last_update_time = now()
            return status, mod.is_modified()

        self.status.state = state
        self.status.message = msg
        try:
            if await ctx.store.modify_status(self.key, mutate):
                self.logger.info(f"update state of {self.key!r} to {state} ({msg})")
        finally:
            ctx.store.event(self.key, EVENT_NORMAL, "reconcile", msg)

    async def update_status(self, ctx: "ReconcileContext", state: str, msg: str) -> bool:
        """
        Persist a state and message, acknowledging targets for ready entries.

        Args:
            ctx: Reconciliation context
            state: New state
            msg: Status message

        Returns:
            bool: True if the persisted status was changed

        Raises:
            DNSEntryError: If the status could not be persisted
        """
        desired = self.status.copy()
        generation = self.object.generation
        hosts, targets_msg = target_list(self.targets)
        keep_message = desired.state == STATE_STALE and state == STATE_STALE
        skipped = []

        def mutate(status: EntryStatus):
            if state == STATE_PENDING and status.state != "":
                skipped.append(True)
                return status, False
            mod = ModificationState()
            if state == STATE_READY:
                mod.assure(status, "ttl", desired.ttl)
                if status.targets != hosts:
                    self.logger.info(targets_msg)
                mod.assure(status, "targets", hosts)
                if desired.provider is not None:
                    mod.assure(status, "provider", desired.provider)
            elif state != STATE_STALE:
                mod.assure(status, "targets", [])
            mod.assure(status, "observed_generation", generation)
            if not keep_message:
                mod.assure(status, "message", msg)
            mod.assure(status, "state", state)
            if mod.is_modified():
                status.last_update_time = now()
            return status, mod.is_modified()

        changed = await ctx.store.modify_status(self.key, mutate)
        if not skipped:
            if not keep_message:
                self.status.message = msg
            self.status.state = state
            if state == STATE_READY:
                self.status.targets = hosts
            self.status.observed_generation = generation
        if changed:
            self.logger.info(f"update state of {self.key!r} to {state} ({msg})")
        return changed

    async def update_state(self, ctx: "ReconcileContext", state: str, msg: str) -> bool:
        """
        Persist only a state and message.

        Returns:
            bool: True if the persisted status was changed
        """

        def mutate(status: EntryStatus):
            mod = ModificationState()
            mod.assure(status, "message", msg)
            mod.assure(status, "state", state)
            if mod.is_modified():
                status.last_update_time = now()
            return status, mod.is_modified()

        changed = await ctx.store.modify_status(self.key, mutate)
        self.status.message = msg
        self.status.state = state
        if changed:
            self.logger.info(f"update state of {self.key!r} to {state} ({msg})")
        return changed

    async def _try_update_status(self, ctx: "ReconcileContext", state: str, msg: str) -> None:
        try:
            await self.update_status(ctx, state, msg)
        except DNSEntryError as e:
            self.logger.warning(f"cannot update status of {self.key!r}: {e}")
