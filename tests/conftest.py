"""Shared fixtures for the dnsentry tests."""

from datetime import timedelta
from typing import Dict, List, Tuple

import pytest

from dnsentry.config.config import Config
from dnsentry.controller.controller import Controller
from dnsentry.entry.context import ReconcileContext
from dnsentry.models.errors import HostLookupError
from dnsentry.models.models import ENTRY_KIND, EntryObject, EntrySpec, ObjectName, now
from dnsentry.provider.mock import InMemoryDNS, MockHandler
from dnsentry.provider.registry import DNSProvider, ProviderRegistry
from dnsentry.registry.access import RealmAccessControl
from dnsentry.registry.owners import OwnerRegistry
from dnsentry.registry.references import ReferenceIndex
from dnsentry.source.memory import InMemoryObjectStore

WIKIPEDIA_V4 = "185.15.59.224"
WIKIPEDIA_V6 = "2a02:ec80:300:ed1a::1"


class FakeResolver:
    """Resolver answering from a fixed host table."""

    def __init__(self, hosts: Dict[str, Tuple[List[str], List[str]]]):
        self.hosts = hosts
        self.lookups: List[str] = []

    async def lookup_hosts(self, hostname: str):
        self.lookups.append(hostname)
        if hostname not in self.hosts:
            raise HostLookupError(f"no such host {hostname}")
        ipv4, ipv6 = self.hosts[hostname]
        return list(ipv4), list(ipv6)


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver(
        {
            "wikipedia.org": ([WIKIPEDIA_V4], [WIKIPEDIA_V6]),
            "www.wikipedia.org": ([WIKIPEDIA_V4], [WIKIPEDIA_V6]),
            "google.com": (["142.250.185.78"], []),
        }
    )


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def backend() -> InMemoryDNS:
    return InMemoryDNS()


@pytest.fixture
def providers() -> ProviderRegistry:
    return ProviderRegistry()


@pytest.fixture
def make_object():
    """Factory for entry objects; age is the number of seconds since creation."""

    def factory(name, dns_name, kind=ENTRY_KIND, age=0, annotations=None, **spec):
        return EntryObject(
            name=ObjectName.parse(name),
            spec=EntrySpec(dns_name=dns_name, **spec),
            kind=kind,
            creation_timestamp=now() - timedelta(seconds=age),
            annotations=annotations or {},
        )

    return factory


@pytest.fixture
def make_provider(backend):
    """Factory for mock providers sharing the backend fixture."""

    def factory(*zones, name="default/mock", fail_names=None, **kwargs):
        handler = MockHandler(backend, zones, fail_names=fail_names)
        return DNSProvider(ObjectName.parse(name), handler, **kwargs)

    return factory


@pytest.fixture
def context(store, config, resolver) -> ReconcileContext:
    return ReconcileContext(
        store=store,
        references=ReferenceIndex(),
        owners=OwnerRegistry(config.ident, config.owner_ids),
        access=RealmAccessControl(),
        resolver=resolver,
        config=config,
    )


@pytest.fixture
def controller(config, store, providers, resolver) -> Controller:
    return Controller(config, store, providers, resolver=resolver)
