"""
Data models for dnsentry.
"""

import copy
import dataclasses
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, NamedTuple, Optional

from pydantic import BaseModel

from dnsentry.models.errors import ValidationError

# Record types
RS_A = "A"
RS_AAAA = "AAAA"
RS_CNAME = "CNAME"
RS_TXT = "TXT"

SUPPORTED_RECORD_TYPES = (RS_A, RS_AAAA, RS_CNAME, RS_TXT)

# Entry states
STATE_PENDING = "Pending"
STATE_READY = "Ready"
STATE_STALE = "Stale"
STATE_INVALID = "Invalid"
STATE_ERROR = "Error"
STATE_DELETING = "Deleting"

# Object kinds
ENTRY_KIND = "DNSEntry"
LOCK_KIND = "DNSLock"

FINALIZER = "dnsentry/finalizer"

# Event types
EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

# Outcomes of applied change requests
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_INVALID = "invalid"


def now() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(tz=timezone.utc)


def normalize_dns_name(name: str) -> str:
    """Return a lower case DNS name without trailing dot."""
    return name.strip().rstrip(".").lower()


@dataclass(frozen=True)
class ObjectName:
    """
    Namespaced name of a stored object.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str, default_namespace: str = "default") -> "ObjectName":
        """
        Parse a key of the form 'namespace/name'.

        Args:
            key: Object key
            default_namespace: Namespace used if the key has none

        Returns:
            ObjectName: Parsed object name
        """
        if "/" in key:
            namespace, name = key.split("/", 1)
            return cls(namespace, name)
        return cls(default_namespace, key)


class ZonedDNSName(NamedTuple):
    """Identity of a DNS name within a hosted zone."""

    zone_id: str
    dns_name: str


@dataclass(frozen=True)
class Target:
    """
    A single resolved record value.
    """

    record_type: str
    host: str
    ttl: int = 0

    def __str__(self) -> str:
        return f"{self.record_type}({self.host})"


class Targets(list):
    """
    Ordered collection of targets.
    """

    def has(self, target: Target) -> bool:
        """
        Check whether a target with the same record type and value is contained.

        Args:
            target: Target to look for

        Returns:
            bool: True if an equal target is contained
        """
        for t in self:
            if t.record_type == target.record_type and t.host == target.host:
                return True
        return False

    def differ_from(self, other: "Targets") -> bool:
        """Check whether both collections hold different target values."""
        if len(self) != len(other):
            return True
        for t in self:
            if not other.has(t):
                return True
        return False

    def host_names(self) -> List[str]:
        return [t.host for t in self]


class EntryReference(BaseModel):
    """Reference to another entry the targets are taken from."""

    name: str
    namespace: Optional[str] = None


class EntrySpec(BaseModel):
    """
    Desired state of a DNS entry.

    Unset lists (None) differ from empty lists: an empty list counts as
    explicitly specified.
    """

    dns_name: str
    targets: Optional[List[str]] = None
    text: Optional[List[str]] = None
    ttl: Optional[int] = None
    owner_id: Optional[str] = None
    cname_lookup_interval: Optional[int] = None
    reference: Optional[EntryReference] = None


@dataclass
class EntryStatus:
    """
    Persisted status of a DNS entry.
    """

    state: str = ""
    message: Optional[str] = None
    zone: Optional[str] = None
    provider_type: Optional[str] = None
    provider: Optional[str] = None
    ttl: Optional[int] = None
    observed_generation: int = 0
    last_update_time: Optional[datetime] = None
    targets: List[str] = field(default_factory=list)

    def copy(self) -> "EntryStatus":
        return dataclasses.replace(self, targets=list(self.targets))


@dataclass
class EntryObject:
    """
    A stored DNS entry object: metadata, desired spec and persisted status.
    """

    name: ObjectName
    spec: EntrySpec
    kind: str = ENTRY_KIND
    generation: int = 1
    creation_timestamp: datetime = field(default_factory=now)
    deletion_timestamp: Optional[datetime] = None
    finalizers: List[str] = field(default_factory=list)
    annotations: Dict[str, str] = field(default_factory=dict)
    resource_version: int = 0
    status: EntryStatus = field(default_factory=EntryStatus)

    @property
    def key(self) -> str:
        return str(self.name)

    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def deep_copy(self) -> "EntryObject":
        return copy.deepcopy(self)

    def get_dns_name(self) -> str:
        return self.spec.dns_name

    def get_targets(self) -> Optional[List[str]]:
        return self.spec.targets

    def get_text(self) -> Optional[List[str]]:
        return self.spec.text

    def get_ttl(self) -> Optional[int]:
        return self.spec.ttl

    def get_owner_id(self) -> Optional[str]:
        return self.spec.owner_id

    def get_cname_lookup_interval(self) -> Optional[int]:
        return self.spec.cname_lookup_interval

    def get_reference(self) -> Optional[EntryReference]:
        return self.spec.reference

    def validate_special(self) -> None:
        """
        Kind specific validation.

        Raises:
            ValidationError: If the spec is not valid for the object kind
        """
        if self.kind == LOCK_KIND:
            if self.spec.targets:
                raise ValidationError("lock entries must not specify targets")
            if self.spec.reference is not None:
                raise ValidationError("lock entries must not use entry references")


@dataclass(frozen=True)
class HostedZone:
    """
    A DNS zone hosted by a provider.
    """

    id: str
    domain: str
    provider_type: str = ""


@dataclass
class Endpoint:
    """
    Represents a DNS record set published for an entry.
    """

    dnsname: str
    targets: List[str]
    record_type: str
    record_ttl: Optional[int] = None
    entry: Optional[str] = None

    @property
    def id(self) -> str:
        """
        Generate a unique identifier for this endpoint.

        Returns:
            str: Unique identifier
        """
        return f"{self.dnsname}:{self.record_type}"


@dataclass
class Changes:
    """
    Represents changes to be applied to DNS records.
    """

    create: List[Endpoint] = field(default_factory=list)
    update_old: List[Endpoint] = field(default_factory=list)
    update_new: List[Endpoint] = field(default_factory=list)
    delete: List[Endpoint] = field(default_factory=list)

    def has_changes(self) -> bool:
        """
        Check if there are any changes to be applied.

        Returns:
            bool: True if there are changes, False otherwise
        """
        return bool(self.create or self.update_old or self.delete)


@dataclass
class ChangeResult:
    """Outcome of a single applied change request."""

    action: str
    endpoint: Endpoint
    outcome: str = OUTCOME_SUCCEEDED
    error: Optional[str] = None


@dataclass
class StoreEvent:
    """An event recorded for a stored object."""

    key: str
    type: str
    reason: str
    message: str
    timestamp: datetime = field(default_factory=now)


@dataclass
class EntryStatistic:
    """
    Entry counts per owner id and per provider.
    """

    owners: Counter = field(default_factory=Counter)
    providers: Counter = field(default_factory=Counter)

    def inc_owner(self, owner_id: str, provider_type: str, provider: str) -> None:
        self.owners[(owner_id, provider_type, provider)] += 1

    def inc_provider(self, provider_type: str, provider: str) -> None:
        self.providers[(provider_type, provider)] += 1
