"""
In-memory mock provider module for dnsentry.

This module keeps DNS zones in memory. It is used for tests and for running
the controller without any cloud DNS account.
"""

import logging
import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from dnsentry.models.errors import ProviderError
from dnsentry.models.models import (
    OUTCOME_FAILED,
    OUTCOME_INVALID,
    OUTCOME_SUCCEEDED,
    SUPPORTED_RECORD_TYPES,
    Changes,
    ChangeResult,
    Endpoint,
    HostedZone,
)
from dnsentry.provider.handler import DNSHandler

TYPE_CODE = "mock"


class InMemoryDNS:
    """
    Zone contents shared by all mock handlers.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._zones: Dict[str, Dict[Tuple[str, str], Endpoint]] = {}

    def add_zone(self, domain: str) -> None:
        with self._lock:
            self._zones.setdefault(domain, {})

    def has_zone(self, domain: str) -> bool:
        with self._lock:
            return domain in self._zones

    def records(self, domain: str) -> List[Endpoint]:
        with self._lock:
            zone = self._zones.get(domain, {})
            return [replace(e, targets=list(e.targets)) for e in zone.values()]

    def find(self, dnsname: str, record_type: Optional[str] = None) -> List[Endpoint]:
        """Return the record sets of a DNS name in any zone."""
        with self._lock:
            return [
                replace(e, targets=list(e.targets))
                for zone in self._zones.values()
                for (name, rtype), e in zone.items()
                if name == dnsname and (record_type is None or rtype == record_type)
            ]

    def put(self, domain: str, endpoint: Endpoint) -> None:
        with self._lock:
            self._zones.setdefault(domain, {})[(endpoint.dnsname, endpoint.record_type)] = replace(
                endpoint, targets=list(endpoint.targets)
            )

    def remove(self, domain: str, endpoint: Endpoint) -> None:
        with self._lock:
            self._zones.get(domain, {}).pop((endpoint.dnsname, endpoint.record_type), None)


class MockHandler(DNSHandler):
    """
    Provider handler serving zones from an InMemoryDNS.
    """

    provider_type = TYPE_CODE

    def __init__(
        self,
        backend: InMemoryDNS,
        zones: Iterable[str],
        fail_names: Optional[Iterable[str]] = None,
    ):
        """
        Initialize a MockHandler.

        Args:
            backend: Shared zone contents
            zones: Domains of the zones served by this handler
            fail_names: DNS names whose change requests fail
        """
        self.backend = backend
        self.domains = [d.rstrip(".").lower() for d in zones]
        self.fail_names: Set[str] = set(fail_names or ())
        self.fail_listing: Optional[str] = None
        self.conflicts: List[Tuple[str, str, List[str]]] = []
        self.logger = logging.getLogger("dnsentry.provider.mock")
        for domain in self.domains:
            backend.add_zone(domain)

    async def list_zones(self) -> List[HostedZone]:
        if self.fail_listing:
            raise ProviderError(self.fail_listing)
        return [HostedZone(id=domain, domain=domain, provider_type=TYPE_CODE) for domain in self.domains]

    async def fetch_zone_state(self, zone_id: str) -> List[Endpoint]:
        if zone_id not in self.domains:
            raise ProviderError(f"zone {zone_id} not served by this provider")
        return self.backend.records(zone_id)

    async def apply_changes(self, zone_id: str, changes: Changes) -> List[ChangeResult]:
        results = []
        for endpoint in changes.delete:
            results.append(self._apply(zone_id, "delete", endpoint))
        for endpoint in changes.update_new:
            results.append(self._apply(zone_id, "update", endpoint))
        for endpoint in changes.create:
            results.append(self._apply(zone_id, "create", endpoint))
        return results

    def _apply(self, zone_id: str, action: str, endpoint: Endpoint) -> ChangeResult:
        if endpoint.record_type not in SUPPORTED_RECORD_TYPES:
            return ChangeResult(
                action, endpoint, OUTCOME_INVALID, f"record type {endpoint.record_type} not supported"
            )
        if endpoint.dnsname in self.fail_names:
            self.logger.warning(f"Simulated failure for {action} of {endpoint.id} in zone {zone_id}")
            return ChangeResult(action, endpoint, OUTCOME_FAILED, f"{action} of {endpoint.id} failed")
        if action == "delete":
            self.backend.remove(zone_id, endpoint)
        else:
            self.backend.put(zone_id, endpoint)
        self.logger.info(f"{action} {endpoint.id} -> {endpoint.targets} in zone {zone_id}")
        return ChangeResult(action, endpoint, OUTCOME_SUCCEEDED)

    async def report_conflict(self, zone_id: str, dns_name: str, keys: List[str]) -> None:
        self.logger.warning(f"DNS name {dns_name} in zone {zone_id} claimed by {', '.join(keys)}")
        self.conflicts.append((zone_id, dns_name, list(keys)))
