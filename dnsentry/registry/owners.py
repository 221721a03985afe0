"""
Owner registry module for dnsentry.

This module keeps track of the owner ids this controller instance is
responsible for.
"""

import logging
import threading
from typing import Callable, Iterable, List, Set


class OwnerRegistry:
    """
    Registry of the owner ids handled by this controller.
    """

    def __init__(self, ident: str = "dnsentry", owner_ids: Iterable[str] = ()):
        """
        Initialize an OwnerRegistry.

        Args:
            ident: Identity of this controller, always responsible
            owner_ids: Additional owner ids this controller is responsible for
        """
        self.ident = ident
        self._lock = threading.Lock()
        self._active: Set[str] = {ident, *owner_ids}
        self._pending: Set[str] = set()
        self._listeners: List[Callable[[str], None]] = []
        self.logger = logging.getLogger("dnsentry.registry.owners")

    def add_listener(self, listener: Callable[[str], None]) -> None:
        """
        Register a callback invoked with the owner id whenever its
        responsibility changes.
        """
        self._listeners.append(listener)

    def is_responsible_for(self, owner_id: str) -> bool:
        with self._lock:
            return owner_id in self._active

    def is_responsible_pending_for(self, owner_id: str) -> bool:
        with self._lock:
            return owner_id in self._pending

    def active_ids(self) -> Set[str]:
        with self._lock:
            return set(self._active)

    def register(self, owner_id: str, pending: bool = False) -> bool:
        """
        Mark an owner id as handled, or as pending activation.

        Args:
            owner_id: Owner id
            pending: Whether the owner id is only about to become active

        Returns:
            bool: True if the responsibility changed
        """
        with self._lock:
            if pending:
                if owner_id in self._pending or owner_id in self._active:
                    return False
                self._pending.add(owner_id)
            else:
                if owner_id in self._active:
                    return False
                self._pending.discard(owner_id)
                self._active.add(owner_id)
        self.logger.info(f"Owner id {owner_id} registered{' (pending)' if pending else ''}")
        self._notify(owner_id)
        return True

    def unregister(self, owner_id: str) -> bool:
        """
        Drop the responsibility for an owner id. The controller identity
        cannot be dropped.

        Returns:
            bool: True if the responsibility changed
        """
        if owner_id == self.ident:
            self.logger.warning(f"Cannot unregister controller identity {owner_id}")
            return False
        with self._lock:
            if owner_id not in self._active and owner_id not in self._pending:
                return False
            self._active.discard(owner_id)
            self._pending.discard(owner_id)
        self.logger.info(f"Owner id {owner_id} unregistered")
        self._notify(owner_id)
        return True

    def _notify(self, owner_id: str) -> None:
        for listener in self._listeners:
            listener(owner_id)
