"""Reverse index of entry references."""

import threading
from typing import Dict, Optional, Set


class ReferenceIndex:
    """
    Tracks which entry references which other entry, so that referencing
    entries can be reconciled again when a referenced entry changes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._refs: Dict[str, str] = {}

    def add_ref(self, source: str, target: str) -> None:
        with self._lock:
            self._refs[source] = target

    def del_ref(self, source: str) -> None:
        with self._lock:
            self._refs.pop(source, None)

    def get_ref(self, source: str) -> Optional[str]:
        with self._lock:
            return self._refs.get(source)

    def referrers(self, target: str) -> Set[str]:
        """Return the keys of all entries referencing the target."""
        with self._lock:
            return {source for source, t in self._refs.items() if t == target}
