"""
Results of a reconciliation pass.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class ReconcileStatus:
    """
    Result of reconciling one entry.

    Attributes:
        completed: False if the pass should be retried with backoff
        error: Error reported by the pass, if any
        interval: Seconds after which the entry should be reconciled again
    """

    completed: bool = True
    error: Optional[BaseException] = None
    interval: Optional[float] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @classmethod
    def succeeded(cls) -> "ReconcileStatus":
        return cls()

    @classmethod
    def failed_with(cls, error: BaseException) -> "ReconcileStatus":
        """Completed with an error; retrying is left to the next change."""
        return cls(completed=True, error=error)

    @classmethod
    def delay(cls, error: BaseException) -> "ReconcileStatus":
        """Not completed; the pass is retried with backoff."""
        return cls(completed=False, error=error)

    @classmethod
    def recheck(cls, error: BaseException, interval: float) -> "ReconcileStatus":
        return cls(completed=True, error=error, interval=interval)

    @classmethod
    def reschedule_after(cls, interval: float) -> "ReconcileStatus":
        return cls(completed=True, interval=interval)

    @classmethod
    def repeat_on_error(cls, error: Optional[BaseException]) -> "ReconcileStatus":
        """Not completed on error; the pass is repeated without backoff."""
        if error is not None:
            return cls(completed=False, error=error, interval=0)
        return cls.succeeded()

    @classmethod
    def delay_on_error(cls, error: Optional[BaseException]) -> "ReconcileStatus":
        if error is not None:
            return cls.delay(error)
        return cls.succeeded()
