"""
Provider registry module for dnsentry.

This module keeps the configured DNS providers with their hosted zones and
decides which provider and zone are responsible for a DNS name.
"""

import logging
import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from dnsentry.entry.premise import EntryPremise
from dnsentry.models.errors import DNSEntryError, ProviderError
from dnsentry.models.models import HostedZone, ObjectName, normalize_dns_name
from dnsentry.provider.handler import DNSHandler


def matches_domain(dns_name: str, domain: str) -> bool:
    """
    Check whether a DNS name equals a domain or lies below it.

    Args:
        dns_name: Normalized DNS name
        domain: Domain, optionally starting with '*.' to match subdomains only

    Returns:
        bool: True if the name is covered by the domain
    """
    if domain.startswith("*."):
        pattern = "^.*\\." + re.escape(domain[2:]) + "$"
        return re.match(pattern, dns_name) is not None
    return dns_name == domain or dns_name.endswith("." + domain)


def _matches_any(dns_name: str, domains: Iterable[str]) -> bool:
    for domain in domains:
        if matches_domain(dns_name, domain):
            return True
    return False


class DNSProvider:
    """
    A configured DNS provider: a handler plus its hosted zones and domain selection.
    """

    def __init__(
        self,
        name: ObjectName,
        handler: DNSHandler,
        default_ttl: int = 300,
        include_domains: Optional[List[str]] = None,
        exclude_domains: Optional[List[str]] = None,
    ):
        """
        Initialize a DNSProvider.

        Args:
            name: Name of the provider object
            handler: Handler talking to the DNS backend
            default_ttl: TTL for entries not specifying one
            include_domains: Domains this provider may serve (empty: all)
            exclude_domains: Domains this provider must not serve
        """
        self.name = name
        self.handler = handler
        self.provider_type = handler.provider_type
        self.default_ttl = default_ttl
        self.include_domains = [normalize_dns_name(d) for d in include_domains or []]
        self.exclude_domains = [normalize_dns_name(d) for d in exclude_domains or []]
        self.zones: List[HostedZone] = []
        self.valid = False
        self.error: Optional[str] = None
        self.logger = logging.getLogger("dnsentry.provider")

    def __repr__(self) -> str:
        return f"DNSProvider({self.name}, type={self.provider_type})"

    async def refresh(self) -> bool:
        """
        Reload the hosted zones from the handler.

        Zones of a previous successful listing are kept if the listing fails.

        Returns:
            bool: True if the provider is valid afterwards
        """
        try:
            zones = await self.handler.list_zones()
        except DNSEntryError as e:
            self.mark_invalid(str(e))
            return False
        self.zones = [
            HostedZone(z.id, normalize_dns_name(z.domain), z.provider_type or self.provider_type)
            for z in zones
        ]
        self.valid = True
        self.error = None
        self.logger.info(f"Provider {self.name} serves zones {[z.domain for z in self.zones]}")
        return True

    def mark_invalid(self, error: str) -> None:
        self.logger.warning(f"Provider {self.name} invalid: {error}")
        self.valid = False
        self.error = error

    def is_valid(self) -> bool:
        return self.valid

    def includes(self, dns_name: str) -> bool:
        """Check whether the domain selection of this provider admits a DNS name."""
        if _matches_any(dns_name, self.exclude_domains):
            return False
        if not self.include_domains:
            return True
        return _matches_any(dns_name, self.include_domains)

    def find_zone(self, dns_name: str) -> Optional[HostedZone]:
        """
        Find the most specific hosted zone for a DNS name.

        Args:
            dns_name: Normalized DNS name

        Returns:
            Optional[HostedZone]: Zone with the longest matching domain, if any
        """
        found = None
        for zone in self.zones:
            if matches_domain(dns_name, zone.domain):
                if found is None or len(zone.domain) > len(found.domain):
                    found = zone
        return found

    def zone(self, zone_id: str) -> Optional[HostedZone]:
        for zone in self.zones:
            if zone.id == zone_id:
                return zone
        return None


class ProviderRegistry:
    """
    Registry of the configured DNS providers.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._providers: Dict[ObjectName, DNSProvider] = {}
        self.logger = logging.getLogger("dnsentry.provider.registry")

    def add(self, provider: DNSProvider) -> None:
        with self._lock:
            self._providers[provider.name] = provider
        self.logger.info(f"Added provider {provider.name} of type {provider.provider_type}")

    def remove(self, name: ObjectName) -> Optional[DNSProvider]:
        with self._lock:
            provider = self._providers.pop(name, None)
        if provider is not None:
            self.logger.info(f"Removed provider {name}")
        return provider

    def get(self, name: ObjectName) -> Optional[DNSProvider]:
        with self._lock:
            return self._providers.get(name)

    def list(self) -> List[DNSProvider]:
        with self._lock:
            return sorted(self._providers.values(), key=lambda p: str(p.name))

    def provider_for_zone(self, zone_id: str) -> Optional[DNSProvider]:
        """Return a valid provider serving a zone, or any provider serving it."""
        candidates = [p for p in self.list() if p.zone(zone_id) is not None]
        for provider in candidates:
            if provider.is_valid():
                return provider
        return candidates[0] if candidates else None

    def lookup_premise(
        self, dns_name: str, ptypes: Iterable[str]
    ) -> Tuple[EntryPremise, Optional[DNSEntryError]]:
        """
        Determine the responsible provider and zone for a DNS name.

        Only providers of the given types are considered. The zone with the
        longest domain covering the name wins. Among the providers of that
        zone, the first one whose domain selection admits the name is
        selected, otherwise the first one becomes the fallback.

        Args:
            dns_name: DNS name of the entry
            ptypes: Provider types claimed by this controller

        Returns:
            Tuple of the premise and an upstream error, if the responsible
            provider is invalid or a provider of a claimed type failed
        """
        dns_name = normalize_dns_name(dns_name)
        premise = EntryPremise(ptypes=frozenset(ptypes))

        best: Optional[HostedZone] = None
        matching: List[DNSProvider] = []
        failed: List[DNSProvider] = []
        for provider in self.list():
            if provider.provider_type not in premise.ptypes:
                continue
            if not provider.is_valid() and not provider.zones:
                failed.append(provider)
                continue
            zone = provider.find_zone(dns_name)
            if zone is None:
                continue
            if best is None or len(zone.domain) > len(best.domain):
                best = zone
                matching = [provider]
            elif zone.domain == best.domain:
                matching.append(provider)

        if best is None:
            if failed:
                details = ", ".join(f"{p.name}: {p.error}" for p in failed)
                return premise, ProviderError(f"providers not ready ({details})")
            return premise, None

        premise.zoneid = best.id
        premise.zonedomain = best.domain
        premise.ptype = best.provider_type
        for provider in matching:
            if provider.includes(dns_name):
                premise.provider = provider
                break
        if premise.provider is None:
            premise.fallback = matching[0]
            return premise, None
        if not premise.provider.is_valid():
            return premise, ProviderError(
                f"provider {premise.provider.name} not valid: {premise.provider.error}"
            )
        return premise, None
