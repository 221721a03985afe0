"""
Validation of DNS entry specs.

This module checks domain names, completes specs that borrow their targets
from a referenced entry, parses targets and text into typed targets and
resolves multiple CNAME targets to addresses.
"""

import ipaddress
import logging
import re
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Set, Tuple

import dns.exception
import dns.name

from dnsentry.models.errors import (
    AccessDeniedError,
    EntryReferenceError,
    HostLookupError,
    NotFoundError,
    OwnerError,
    ValidationError,
)
from dnsentry.models.models import (
    EVENT_NORMAL,
    EVENT_WARNING,
    LOCK_KIND,
    RS_A,
    RS_AAAA,
    RS_CNAME,
    RS_TXT,
    EntryObject,
    EntryReference,
    ObjectName,
    Target,
    Targets,
)

if TYPE_CHECKING:
    from dnsentry.entry.context import ReconcileContext
    from dnsentry.entry.premise import EntryPremise
    from dnsentry.entry.version import EntryVersion

LABEL_PATTERN = re.compile(r"^[a-z0-9_]([-a-z0-9_]*[a-z0-9_])?$", re.IGNORECASE)


def validate_domain_name(name: str) -> None:
    """
    Check the syntax of a DNS name. A leading wildcard label is allowed.

    Args:
        name: DNS name to check

    Raises:
        ValidationError: If the name is not a valid DNS name
    """
    check = name[2:] if name.startswith("*.") else name
    check = check.rstrip(".")
    if not check:
        raise ValidationError(f"{name!r} is no valid domain name: empty name")
    try:
        dns.name.from_text(check)
    except dns.exception.DNSException as e:
        raise ValidationError(f"{name!r} is no valid domain name: {e}") from e

    labels = check.split(".")
    if len(labels) < 2:
        raise ValidationError(f"{name!r} is no valid domain name: at least two labels required")
    for label in labels:
        if not LABEL_PATTERN.match(label):
            raise ValidationError(f"{name!r} is no valid domain name: invalid label {label!r}")


class SpecModification:
    """
    A spec completed from a referenced entry.

    Each accessor returns the override if it is set and otherwise delegates to
    the wrapped spec.
    """

    def __init__(self, spec):
        self.spec = spec
        self.targets: Optional[List[str]] = None
        self.text: Optional[List[str]] = None
        self.ttl: Optional[int] = None
        self.owner_id: Optional[str] = None
        self.lookup: Optional[int] = None

    def get_dns_name(self) -> str:
        return self.spec.get_dns_name()

    def get_reference(self) -> Optional[EntryReference]:
        return self.spec.get_reference()

    def get_targets(self) -> Optional[List[str]]:
        if self.targets is not None:
            return self.targets
        return self.spec.get_targets()

    def get_text(self) -> Optional[List[str]]:
        if self.text is not None:
            return self.text
        return self.spec.get_text()

    def get_ttl(self) -> Optional[int]:
        if self.ttl is not None:
            return self.ttl
        return self.spec.get_ttl()

    def get_owner_id(self) -> Optional[str]:
        if self.owner_id is not None:
            return self.owner_id
        return self.spec.get_owner_id()

    def get_cname_lookup_interval(self) -> Optional[int]:
        if self.lookup is not None:
            return self.lookup
        return self.spec.get_cname_lookup_interval()

    def is_modified(self) -> bool:
        return (
            self.targets is not None
            or self.text is not None
            or self.ttl is not None
            or self.owner_id is not None
            or self.lookup is not None
        )


async def complete(
    ctx: "ReconcileContext",
    spec,
    obj: EntryObject,
    prefix: str = "",
    visited: Optional[Set[str]] = None,
):
    """
    Complete a spec by following its entry reference chain.

    Args:
        ctx: Reconciliation context
        spec: Spec to complete
        obj: Object the spec belongs to
        prefix: Reference chain used in messages
        visited: Keys already seen on the chain

    Returns:
        The completed spec, or the spec itself if nothing was borrowed

    Raises:
        EntryReferenceError: If the reference is missing, cyclic or combined
            with targets or text
        AccessDeniedError: If the referencing object may not use the reference
    """
    logger = logging.getLogger("dnsentry.entry.validation")
    visited = set(visited or ())
    visited.add(obj.key)

    ref = spec.get_reference()
    if ref is None or not ref.name:
        ctx.references.del_ref(obj.key)
        return spec

    mod = SpecModification(spec)
    dnsref = ObjectName(ref.namespace or obj.name.namespace, ref.name)
    logger.info(f"completing spec by reference: {prefix}{dnsref}")

    ctx.references.add_ref(obj.key, str(dnsref))
    if str(dnsref) in visited:
        raise EntryReferenceError(f"cyclic entry reference {prefix}{dnsref}")

    try:
        referenced = await ctx.store.get(str(dnsref))
    except NotFoundError as e:
        err = EntryReferenceError(f"entry reference {prefix}{str(dnsref)!r} not found")
        logger.warning(str(err))
        raise err from e
    try:
        ctx.access.check_access(obj, "use", referenced, ctx.realms)
    except AccessDeniedError as e:
        raise AccessDeniedError(f"{prefix}{e}") from e

    rspec = await complete(ctx, referenced, referenced, f"{prefix}{dnsref}->", visited)

    if spec.get_targets() is not None:
        raise EntryReferenceError(f"{prefix}targets specified together with entry reference")
    if spec.get_text() is not None:
        raise EntryReferenceError(f"{prefix}text specified together with entry reference")
    mod.targets = rspec.get_targets()
    mod.text = rspec.get_text()

    if spec.get_ttl() is None:
        mod.ttl = rspec.get_ttl()
    if spec.get_owner_id() is None:
        mod.owner_id = rspec.get_owner_id()
    if spec.get_cname_lookup_interval() is None:
        mod.lookup = rspec.get_cname_lookup_interval()
    if mod.is_modified():
        return mod
    return spec


def new_host_target(host: str, ttl: int) -> Target:
    """
    Create a target for a host value, typed by its syntax.

    Args:
        host: IP address or host name
        ttl: TTL of the target

    Returns:
        Target: A, AAAA or CNAME target
    """
    host = host.strip()
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return Target(RS_CNAME, host.rstrip("."), ttl)
    if address.version == 4:
        return Target(RS_A, str(address), ttl)
    return Target(RS_AAAA, str(address), ttl)


async def validate(
    ctx: "ReconcileContext", entry: "EntryVersion", premise: "EntryPremise"
) -> Tuple[object, Targets, List[str]]:
    """
    Validate the spec of an entry version and compute its targets.

    Args:
        ctx: Reconciliation context
        entry: Entry version to validate
        premise: Responsibility premise of the entry

    Returns:
        Tuple of the effective (completed) spec, the targets and the warnings

    Raises:
        ValidationError: If the spec is invalid
        AccessDeniedError: If a reference may not be used
    """
    targets = Targets()
    warnings: List[str] = []

    validate_domain_name(entry.object.get_dns_name())
    entry.object.validate_special()
    effspec = await complete(ctx, entry.object, entry.object)

    if premise.zonedomain == entry.dns_name:
        raise ValidationError(
            f"usage of dns name ({premise.zonedomain}) identical to domain of hosted zone "
            f"({premise.zoneid}) is not supported"
        )
    if effspec.get_targets() and effspec.get_text():
        raise ValidationError("only text or targets possible")
    ttl = effspec.get_ttl()
    if ttl is not None and ttl <= 0:
        raise ValidationError("TTL must be greater than zero")
    if ttl is None:
        ttl = entry.ttl()

    for i, t in enumerate(effspec.get_targets() or []):
        if not t.strip():
            raise ValidationError(f"target {i + 1} must not be empty")
        new = new_host_target(t, ttl)
        if targets.has(new):
            warnings.append(f"dns entry {entry.key!r} has duplicate target {str(new)!r}")
        else:
            targets.append(new)

    text = effspec.get_text() or []
    tcnt = 0
    for t in text:
        if t == "":
            warnings.append(f"dns entry {entry.key!r} has empty text")
            continue
        new = Target(RS_TXT, t, ttl)
        if targets.has(new):
            warnings.append(f"dns entry {entry.key!r} has duplicate text {str(new)!r}")
        else:
            targets.append(new)
            tcnt += 1
    if text and tcnt == 0:
        raise ValidationError("dns entry has only empty text")

    if not targets:
        raise ValidationError("no target or text specified")
    return effspec, targets, warnings


def validate_owner(ctx: "ReconcileContext", entry: "EntryVersion") -> None:
    """
    Check that the owner id of an entry is handled by this controller.

    Raises:
        OwnerError: If the owner id is unknown
    """
    owner_id = entry.owner_id()
    if not owner_id or entry.kind == LOCK_KIND:
        return
    owners = ctx.owners
    if not owners.is_responsible_for(owner_id) and not owners.is_responsible_pending_for(owner_id):
        raise OwnerError(f"unknown owner id '{owner_id}'")


async def normalize_targets(
    ctx: "ReconcileContext", obj: EntryObject, targets: Sequence[Target]
) -> Tuple[Targets, bool, bool, Dict[str, List[str]]]:
    """
    Resolve multiple CNAME targets to their addresses.

    More than one target with a CNAME first target means all targets are host
    names to be looked up. Hosts that cannot be resolved are skipped.

    Args:
        ctx: Reconciliation context
        obj: Object the targets belong to (used for events)
        targets: Validated targets

    Returns:
        Tuple of the effective targets, whether CNAME resolution applied,
        whether the number of targets was acceptable and the mapping of
        host names to addresses
    """
    multi_cname = len(targets) > 1 and targets[0].record_type == RS_CNAME
    if not multi_cname:
        return Targets(targets), False, False, {}

    logger = logging.getLogger("dnsentry.entry.validation")

    result = Targets()
    limit = ctx.config.max_cname_targets
    if len(targets) > limit:
        w = f"too many CNAME targets: {len(targets)}"
        logger.warning(w)
        ctx.store.event(obj.key, EVENT_WARNING, "dnslookup restriction", w)
        return result, True, False, {}

    mappings: Dict[str, List[str]] = {}
    for t in targets:
        if t.record_type in (RS_A, RS_AAAA):
            if t.host not in result.host_names():
                result.append(Target(t.record_type, t.host, t.ttl))
            continue
        try:
            ipv4addrs, ipv6addrs = await ctx.resolver.lookup_hosts(t.host)
        except HostLookupError as e:
            w = f"cannot lookup '{t.host}': {e}"
            logger.warning(w)
            ctx.store.event(obj.key, EVENT_NORMAL, "dnslookup", w)
            continue
        for addr in ipv4addrs:
            if addr not in result.host_names():
                result.append(Target(RS_A, addr, t.ttl))
        for addr in ipv6addrs:
            if addr not in result.host_names():
                result.append(Target(RS_AAAA, addr, t.ttl))
        mappings[t.host] = list(ipv4addrs) + list(ipv6addrs)
    return result, True, True, mappings


def target_list(targets: Targets) -> Tuple[List[str], str]:
    """Return the host values of targets and a log message listing them."""
    hosts = targets.host_names()
    msg = "update effective targets: [" + ", ".join(str(t) for t in targets) + "]"
    return hosts, msg
