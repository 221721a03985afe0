"""
Plan module for dnsentry.

This module is responsible for calculating the changes needed to bring the
records of a zone in line with the targets of the entries active in it.
"""

import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set

from dnsentry.models.models import Changes, Endpoint

if TYPE_CHECKING:
    from dnsentry.entry.entry import Entry


def endpoints_for_entry(entry: "Entry") -> List[Endpoint]:
    """
    Group the targets of an entry into one endpoint per record type.

    Args:
        entry: Entry with resolved targets

    Returns:
        List[Endpoint]: Desired record sets of the entry
    """
    by_type: Dict[str, Endpoint] = {}
    for target in entry.targets:
        endpoint = by_type.get(target.record_type)
        if endpoint is None:
            endpoint = Endpoint(
                dnsname=entry.dns_name,
                targets=[],
                record_type=target.record_type,
                record_ttl=target.ttl or None,
                entry=entry.key,
            )
            by_type[target.record_type] = endpoint
        endpoint.targets.append(target.host)
    return list(by_type.values())


class Plan:
    """
    Plan calculates the changes needed to bring the current state in line with the desired state.
    """

    def __init__(
        self,
        current: List[Endpoint],
        desired: List[Endpoint],
        preserved: Optional[Iterable[str]] = None,
    ):
        """
        Initialize a Plan.

        Args:
            current: Current endpoints
            desired: Desired endpoints
            preserved: DNS names whose records must be left untouched
        """
        self.current = current
        self.desired = desired
        self.preserved: Set[str] = set(preserved or ())
        self.logger = logging.getLogger("dnsentry.plan")

    def calculate_changes(self) -> Changes:
        """
        Calculate the changes needed to bring the current state in line with the desired state.

        Returns:
            Changes: Changes to be applied
        """
        changes = Changes()

        current_by_id: Dict[str, Endpoint] = {endpoint.id: endpoint for endpoint in self.current}

        for desired_endpoint in self.desired:
            if desired_endpoint.dnsname in self.preserved:
                continue
            current_endpoint = current_by_id.get(desired_endpoint.id)

            if current_endpoint:
                if self._needs_update(current_endpoint, desired_endpoint):
                    self.logger.info(f"Endpoint {desired_endpoint.id} needs update")
                    changes.update_old.append(current_endpoint)
                    changes.update_new.append(desired_endpoint)
                else:
                    self.logger.debug(f"Endpoint {desired_endpoint.id} is up-to-date")
            else:
                self.logger.info(f"Endpoint {desired_endpoint.id} will be created")
                changes.create.append(desired_endpoint)

        desired_ids = {endpoint.id for endpoint in self.desired}
        for current_endpoint in self.current:
            if current_endpoint.id in desired_ids:
                continue
            if current_endpoint.dnsname in self.preserved:
                self.logger.debug(f"Endpoint {current_endpoint.id} preserved")
                continue
            self.logger.info(f"Endpoint {current_endpoint.id} no longer desired, will be deleted")
            changes.delete.append(current_endpoint)

        return changes

    @staticmethod
    def _needs_update(current: Endpoint, desired: Endpoint) -> bool:
        """
        Check if an endpoint needs to be updated.

        Args:
            current: Current endpoint
            desired: Desired endpoint

        Returns:
            bool: True if the endpoint needs to be updated, False otherwise
        """
        if set(current.targets) != set(desired.targets):
            return True

        if desired.record_ttl is not None and current.record_ttl != desired.record_ttl:
            return True

        return False
