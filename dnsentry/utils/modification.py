"""
Helper to track modifications made to a status object.
"""

from typing import Any


class ModificationState:
    """
    Records whether any field assured on an object actually changed.
    """

    def __init__(self):
        self.modified = False

    def assure(self, obj: Any, attr: str, value: Any) -> "ModificationState":
        """
        Set an attribute if its value differs.

        Args:
            obj: Object to modify
            attr: Attribute name
            value: Desired value

        Returns:
            ModificationState: self, for chaining
        """
        if getattr(obj, attr) != value:
            setattr(obj, attr, value)
            self.modified = True
        return self

    def modify(self, modified: bool) -> "ModificationState":
        self.modified = self.modified or modified
        return self

    def is_modified(self) -> bool:
        return self.modified
