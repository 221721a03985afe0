"""
Access control for entry references.

Objects may always use objects of their own namespace. Cross-namespace use is
governed by realms: a target can list the namespaces allowed to use it in the
realms annotation ("*" allows all). Without that annotation, use is allowed
if the controller runs without realms or both namespaces belong to its
realms.
"""

import logging
from typing import Iterable, Optional, Set

from dnsentry.models.errors import AccessDeniedError
from dnsentry.models.models import EntryObject

REALMS_ANNOTATION = "dnsentry/realms"


def _parse_realms(value: Optional[str]) -> Optional[Set[str]]:
    if value is None:
        return None
    return {realm.strip() for realm in value.split(",") if realm.strip()}


class RealmAccessControl:
    """
    Realm based access checks.
    """

    def __init__(self):
        self.logger = logging.getLogger("dnsentry.registry.access")

    def check_access(
        self, subject: EntryObject, verb: str, target: EntryObject, realms: Iterable[str]
    ) -> None:
        """
        Check whether the subject may apply a verb to the target.

        Args:
            subject: Object requesting access
            verb: Requested operation
            target: Object accessed
            realms: Realms of this controller

        Raises:
            AccessDeniedError: If access is not granted
        """
        source_ns = subject.name.namespace
        target_ns = target.name.namespace
        if source_ns == target_ns:
            return

        allowed = _parse_realms(target.annotations.get(REALMS_ANNOTATION))
        if allowed is not None:
            if "*" in allowed or source_ns in allowed:
                return
            raise AccessDeniedError(
                f"{subject.key} may not {verb} {target.key}: namespace {source_ns} not in realms of target"
            )

        realms = set(realms)
        if not realms or (source_ns in realms and target_ns in realms):
            return
        self.logger.debug(f"Denied {verb} of {target.key} for {subject.key} (realms: {sorted(realms)})")
        raise AccessDeniedError(f"{subject.key} may not {verb} {target.key}: outside of realms")
