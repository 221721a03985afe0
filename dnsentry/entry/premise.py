"""
Responsibility premise of a DNS entry.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, FrozenSet, Optional

if TYPE_CHECKING:
    from dnsentry.provider.registry import DNSProvider


def provider_name(provider: Optional["DNSProvider"]) -> str:
    """Return a printable provider name."""
    if provider is None:
        return "<none>"
    return str(provider.name)


def _same_provider(a: Optional["DNSProvider"], b: Optional["DNSProvider"]) -> bool:
    if a is None or b is None:
        return a is b
    return a.name == b.name


@dataclass
class EntryPremise:
    """
    Which provider type, provider and zone are responsible for a DNS name.

    Attributes:
        ptypes: Provider types claimed by this controller
        ptype: Provider type of the matched zone
        provider: Provider selected for the name
        fallback: Provider with the correct zone but outside its domain
            selection (only set if provider is None)
        zoneid: Id of the matched hosted zone
        zonedomain: Domain of the matched hosted zone (not identifying)
    """

    ptypes: FrozenSet[str] = field(default_factory=frozenset)
    ptype: str = ""
    provider: Optional["DNSProvider"] = None
    fallback: Optional["DNSProvider"] = None
    zoneid: str = ""
    zonedomain: str = ""

    def match(self, other: "EntryPremise") -> bool:
        return (
            self.ptype == other.ptype
            and _same_provider(self.provider, other.provider)
            and self.zoneid == other.zoneid
            and _same_provider(self.fallback, other.fallback)
        )

    def notify_change(self, other: "EntryPremise") -> str:
        """
        Describe the identifying fields changed from this premise to another.

        Args:
            other: The new premise

        Returns:
            str: Description of the change, empty if nothing changed
        """
        changes = []
        if self.ptype != other.ptype:
            changes.append(f"provider type ({self.ptype} -> {other.ptype})")
        if not _same_provider(self.provider, other.provider):
            changes.append(
                f"provider ({provider_name(self.provider)} -> {provider_name(other.provider)})"
            )
        if self.zoneid != other.zoneid:
            changes.append(f"zone ({self.zoneid} -> {other.zoneid})")
        if not _same_provider(self.fallback, other.fallback):
            changes.append(
                f"fallback ({provider_name(self.fallback)} -> {provider_name(other.fallback)})"
            )
        if not changes:
            return ""
        return "premise changed: " + ", ".join(changes)
