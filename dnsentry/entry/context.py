"""
Collaborators shared by all reconciliation passes.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from dnsentry.config.config import Config
from dnsentry.models.errors import DNSEntryError
from dnsentry.models.models import EntryObject


@dataclass
class ReconcileContext:
    """
    Bundle of the collaborators a reconciliation pass talks to.

    Attributes:
        store: Object store holding the entry objects
        references: Reverse index of entry references
        owners: Owner registry deciding owner id responsibility
        access: Access control for following references
        resolver: Address resolver for CNAME targets
        config: Controller configuration
        cancel: Set on shutdown; aborts pending entry lock acquisitions
    """

    store: object
    references: object
    owners: object
    access: object
    resolver: object
    config: Config = field(default_factory=Config)
    cancel: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def realms(self) -> List[str]:
        return self.config.realms

    async def remove_finalizer(self, obj: EntryObject) -> Optional[DNSEntryError]:
        """
        Remove the finalizer of an object.

        Args:
            obj: Object to remove the finalizer from

        Returns:
            Optional[DNSEntryError]: Error if the finalizer could not be removed
        """
        try:
            await self.store.remove_finalizer(obj.key)
        except DNSEntryError as e:
            return e
        return None
