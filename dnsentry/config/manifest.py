"""
Manifest module for dnsentry.

A manifest is a YAML document listing the providers and entries to seed
into the controller.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field

from dnsentry.models.errors import ConflictError, ValidationError
from dnsentry.models.models import ENTRY_KIND, EntryObject, EntrySpec, ObjectName
from dnsentry.provider import mock
from dnsentry.provider.registry import DNSProvider


class ProviderManifest(BaseModel):
    """A provider to create."""

    name: str
    type: str = mock.TYPE_CODE
    zones: List[str] = Field(default_factory=list)
    default_ttl: int = 300
    include: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)
    fail_names: List[str] = Field(default_factory=list)


class EntryManifest(BaseModel):
    """An entry object to create."""

    name: str
    kind: str = ENTRY_KIND
    annotations: Dict[str, str] = Field(default_factory=dict)
    spec: EntrySpec


class Manifest(BaseModel):
    """Providers and entries to seed."""

    providers: List[ProviderManifest] = Field(default_factory=list)
    entries: List[EntryManifest] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "Manifest":
        """
        Load a manifest from a YAML file.

        Args:
            path: Path to the manifest

        Returns:
            Manifest: Parsed manifest
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def create_providers(self, backend: Optional[mock.InMemoryDNS] = None) -> List[DNSProvider]:
        """
        Create the providers of this manifest.

        Args:
            backend: Zone backend shared by the mock handlers

        Returns:
            List[DNSProvider]: Providers, not yet refreshed

        Raises:
            ValidationError: If a provider type is not supported
        """
        backend = backend or mock.InMemoryDNS()
        providers = []
        for p in self.providers:
            if p.type != mock.TYPE_CODE:
                raise ValidationError(f"provider {p.name}: unsupported provider type {p.type!r}")
            handler = mock.MockHandler(backend, p.zones, fail_names=p.fail_names)
            providers.append(
                DNSProvider(
                    ObjectName.parse(p.name),
                    handler,
                    default_ttl=p.default_ttl,
                    include_domains=p.include,
                    exclude_domains=p.exclude,
                )
            )
        return providers

    def create_entries(self, store) -> List[str]:
        """
        Store the entries of this manifest. Existing entries get the new spec.

        Args:
            store: Object store

        Returns:
            List[str]: Keys of the stored entries
        """
        logger = logging.getLogger("dnsentry.manifest")
        keys = []
        for e in self.entries:
            obj = EntryObject(
                name=ObjectName.parse(e.name),
                spec=e.spec,
                kind=e.kind,
                annotations=dict(e.annotations),
            )
            try:
                store.create(obj)
            except ConflictError:
                store.update_spec(obj.key, e.spec)
            logger.debug(f"Seeded {e.kind} {obj.key}")
            keys.append(obj.key)
        return keys
