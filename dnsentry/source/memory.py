"""
In-memory object store for dnsentry.

This module holds the entry objects with their metadata, spec and status.
Status changes are applied with optimistic concurrency on the resource
version. Object changes are published on an event queue for watchers.
"""

import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from dnsentry.models.errors import ConflictError, NotFoundError
from dnsentry.models.models import (
    FINALIZER,
    EntryObject,
    EntrySpec,
    EntryStatus,
    StoreEvent,
    now,
)

# Change notifications put on the event queue
ACTION_ADDED = "added"
ACTION_MODIFIED = "modified"
ACTION_DELETED = "deleted"

StatusMutator = Callable[[EntryStatus], Tuple[EntryStatus, bool]]


class InMemoryObjectStore:
    """
    Thread safe store of entry objects.
    """

    def __init__(self, conflict_retries: int = 5):
        """
        Initialize an InMemoryObjectStore.

        Args:
            conflict_retries: Attempts of a status modification before a
                ConflictError is raised
        """
        self.conflict_retries = conflict_retries
        self._lock = threading.Lock()
        self._objects: Dict[str, EntryObject] = {}
        self._events: List[StoreEvent] = []
        self.event_queue: asyncio.Queue = asyncio.Queue()
        self.logger = logging.getLogger("dnsentry.source.memory")

    def _notify(self, action: str, key: str) -> None:
        self.event_queue.put_nowait((action, key))

    def create(self, obj: EntryObject) -> EntryObject:
        """
        Store a new object.

        Args:
            obj: Object to store

        Returns:
            EntryObject: Copy of the stored object

        Raises:
            ConflictError: If an object with the same key exists
        """
        with self._lock:
            if obj.key in self._objects:
                raise ConflictError(f"object {obj.key} already exists")
            stored = obj.deep_copy()
            stored.resource_version = 1
            self._objects[stored.key] = stored
            result = stored.deep_copy()
        self.logger.debug(f"Created {stored.kind} {stored.key}")
        self._notify(ACTION_ADDED, stored.key)
        return result

    def update_spec(self, key: str, spec: EntrySpec) -> EntryObject:
        """
        Replace the spec of an object and increase its generation.

        Raises:
            NotFoundError: If the object does not exist
        """
        with self._lock:
            stored = self._get_locked(key)
            if stored.spec == spec:
                return stored.deep_copy()
            stored.spec = spec.model_copy(deep=True)
            stored.generation += 1
            stored.resource_version += 1
            result = stored.deep_copy()
        self.logger.debug(f"Updated spec of {key} (generation {result.generation})")
        self._notify(ACTION_MODIFIED, key)
        return result

    def annotate(self, key: str, annotations: Dict[str, str]) -> EntryObject:
        """
        Merge annotations into an object's metadata.

        Raises:
            NotFoundError: If the object does not exist
        """
        with self._lock:
            stored = self._get_locked(key)
            stored.annotations.update(annotations)
            stored.resource_version += 1
            result = stored.deep_copy()
        self._notify(ACTION_MODIFIED, key)
        return result

    def delete(self, key: str) -> None:
        """
        Delete an object. Objects with finalizers are only marked for deletion.

        Raises:
            NotFoundError: If the object does not exist
        """
        with self._lock:
            stored = self._get_locked(key)
            if stored.finalizers:
                if stored.deletion_timestamp is None:
                    stored.deletion_timestamp = now()
                    stored.resource_version += 1
                action = ACTION_MODIFIED
            else:
                del self._objects[key]
                action = ACTION_DELETED
        self.logger.debug(f"Delete {key}: {action}")
        self._notify(action, key)

    def _get_locked(self, key: str) -> EntryObject:
        stored = self._objects.get(key)
        if stored is None:
            raise NotFoundError(f"object {key} not found")
        return stored

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    async def get(self, key: str) -> EntryObject:
        """
        Get a copy of an object.

        Raises:
            NotFoundError: If the object does not exist
        """
        with self._lock:
            return self._get_locked(key).deep_copy()

    def list_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._objects.keys())

    async def modify_status(self, key: str, mutator: StatusMutator) -> bool:
        """
        Apply a status mutation with optimistic concurrency.

        The mutator gets a copy of the current status and returns the new
        status and whether it changed. If the object was modified meanwhile,
        the mutation is repeated on the fresh status.

        Args:
            key: Object key
            mutator: Pure function (status) -> (status, changed)

        Returns:
            bool: True if the status was changed

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the object kept changing concurrently
        """
        for attempt in range(self.conflict_retries):
            with self._lock:
                stored = self._get_locked(key)
                version = stored.resource_version
                status = stored.status.copy()

            status, changed = mutator(status)
            if not changed:
                return False

            with self._lock:
                stored = self._get_locked(key)
                if stored.resource_version == version:
                    stored.status = status.copy()
                    stored.resource_version += 1
                    return True
            self.logger.debug(f"Status update of {key} conflicted (attempt {attempt + 1})")
            await asyncio.sleep(0)
        raise ConflictError(f"status update of {key} failed: object modified concurrently")

    async def add_finalizer(self, key: str) -> bool:
        """
        Add the controller finalizer to an object.

        Returns:
            bool: True if the finalizer was added

        Raises:
            NotFoundError: If the object does not exist
        """
        with self._lock:
            stored = self._get_locked(key)
            if FINALIZER in stored.finalizers or stored.is_deleting():
                return False
            stored.finalizers.append(FINALIZER)
            stored.resource_version += 1
        self.logger.debug(f"Added finalizer to {key}")
        return True

    async def remove_finalizer(self, key: str) -> bool:
        """
        Remove the controller finalizer from an object. An object marked for
        deletion is removed once no finalizer is left.

        Returns:
            bool: True if the finalizer was removed
        """
        purged = False
        with self._lock:
            stored = self._objects.get(key)
            if stored is None:
                return False
            if FINALIZER not in stored.finalizers:
                return False
            stored.finalizers.remove(FINALIZER)
            stored.resource_version += 1
            if stored.is_deleting() and not stored.finalizers:
                del self._objects[key]
                purged = True
        self.logger.debug(f"Removed finalizer from {key}")
        if purged:
            self._notify(ACTION_DELETED, key)
        return True

    def event(self, key: str, type: str, reason: str, message: str) -> None:
        """Record an event for an object."""
        self.logger.debug(f"Event {type} {reason} for {key}: {message}")
        with self._lock:
            self._events.append(StoreEvent(key, type, reason, message))

    def events(self, key: Optional[str] = None) -> List[StoreEvent]:
        with self._lock:
            return [e for e in self._events if key is None or e.key == key]
