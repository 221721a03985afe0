"""
Capability interface implemented by DNS provider handlers.
"""

from abc import ABC, abstractmethod
from typing import List

from dnsentry.models.models import Changes, ChangeResult, Endpoint, HostedZone


class DNSHandler(ABC):
    """
    A DNS provider handler: lists zones, reads zone state and applies changes.
    """

    provider_type: str = ""

    @abstractmethod
    async def list_zones(self) -> List[HostedZone]:
        """Return the hosted zones accessible with this handler."""

    @abstractmethod
    async def fetch_zone_state(self, zone_id: str) -> List[Endpoint]:
        """Return the record sets currently published in a zone."""

    @abstractmethod
    async def apply_changes(self, zone_id: str, changes: Changes) -> List[ChangeResult]:
        """Apply changes to a zone and report the outcome of every request."""

    @abstractmethod
    async def report_conflict(self, zone_id: str, dns_name: str, keys: List[str]) -> None:
        """Report several entries claiming the same DNS name in a zone."""
