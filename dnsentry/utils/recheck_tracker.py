"""
Recheck tracker module for dnsentry.

This module keeps track of entries that have to be reconciled again after a
delay, e.g. to repeat CNAME lookups or to retry failed passes.
"""

import logging
import time
from typing import Dict, List, Optional


class RecheckTracker:
    """
    Tracks entries scheduled for a later reconciliation and determines when they are due.
    """

    def __init__(self):
        self.scheduled: Dict[str, float] = {}  # Map of entry key to due time
        self.failures: Dict[str, int] = {}
        self.logger = logging.getLogger("dnsentry.recheck-tracker")

    def mark(self, key: str, delay: float) -> None:
        """
        Schedule an entry for reconciliation after a delay. An earlier
        schedule of the same entry wins.

        Args:
            key: Entry key
            delay: Delay in seconds
        """
        due = time.monotonic() + max(delay, 0)
        current = self.scheduled.get(key)
        if current is not None and current <= due:
            self.logger.debug(f"Entry {key} is already scheduled earlier.")
            return
        self.scheduled[key] = due
        self.logger.debug(f"Scheduled entry {key} for recheck in {delay:.0f}s")

    def unmark(self, key: str) -> None:
        """
        Drop the schedule of an entry.

        Args:
            key: Entry key
        """
        if self.scheduled.pop(key, None) is not None:
            self.logger.debug(f"Unscheduled entry {key}")

    def backoff(self, key: str, base: float, limit: float) -> float:
        """
        Return the next retry delay for a failing entry, doubling per failure.

        Args:
            key: Entry key
            base: Delay of the first retry
            limit: Maximum delay

        Returns:
            float: Delay in seconds
        """
        count = self.failures.get(key, 0)
        self.failures[key] = count + 1
        return min(base * (2**count), limit)

    def forget(self, key: str) -> None:
        """Reset the failure count of an entry."""
        self.failures.pop(key, None)

    def get_due(self) -> List[str]:
        """
        Get the entries whose schedule has expired and drop their schedule.

        Returns:
            List[str]: Keys of the due entries
        """
        due = []
        now = time.monotonic()

        for key, timestamp in list(self.scheduled.items()):
            if timestamp <= now:
                due.append(key)
                del self.scheduled[key]
        if due:
            self.logger.debug(f"Entries due for recheck: {due}")
        return due

    def next_due(self) -> Optional[float]:
        """Seconds until the next entry is due, or None if nothing is scheduled."""
        if not self.scheduled:
            return None
        return max(min(self.scheduled.values()) - time.monotonic(), 0)

    def get_pending_status(self) -> Dict[str, float]:
        """Returns a dictionary mapping scheduled entry keys to remaining seconds."""
        now = time.monotonic()
        return {key: due - now for key, due in self.scheduled.items()}
