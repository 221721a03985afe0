"""
Address resolution for CNAME targets, built on dnspython.
"""

import ipaddress
import logging
from typing import List, Optional, Tuple

import dns.asyncresolver
import dns.exception
import dns.resolver

from dnsentry.models.errors import HostLookupError


class AddressResolver:
    """
    Resolves host names to their IPv4 and IPv6 addresses.
    """

    def __init__(self, timeout: float = 5.0, nameservers: Optional[List[str]] = None):
        """
        Initialize an AddressResolver.

        Args:
            timeout: Lifetime of a single query in seconds
            nameservers: Name servers to use instead of the system configuration
        """
        self.timeout = timeout
        self.nameservers = nameservers
        self._resolver: Optional[dns.asyncresolver.Resolver] = None
        self.logger = logging.getLogger("dnsentry.entry.resolver")

    def _get_resolver(self) -> dns.asyncresolver.Resolver:
        if self._resolver is None:
            try:
                resolver = dns.asyncresolver.Resolver(configure=not self.nameservers)
            except dns.exception.DNSException as e:
                raise HostLookupError(f"cannot configure resolver: {e}") from e
            if self.nameservers:
                resolver.nameservers = self.nameservers
            resolver.lifetime = self.timeout
            self._resolver = resolver
        return self._resolver

    async def lookup_hosts(self, hostname: str) -> Tuple[List[str], List[str]]:
        """
        Look up the addresses of a host. IP literals are returned as is.

        Args:
            hostname: Host name or IP address to resolve

        Returns:
            Tuple of IPv4 and IPv6 addresses

        Raises:
            HostLookupError: If the host has no address or the lookup failed
        """
        try:
            address = ipaddress.ip_address(hostname)
        except ValueError:
            pass
        else:
            if address.version == 4:
                return [str(address)], []
            return [], [str(address)]

        ipv4addrs = await self._query(hostname, "A")
        ipv6addrs = await self._query(hostname, "AAAA")
        if not ipv4addrs and not ipv6addrs:
            raise HostLookupError(f"{hostname} has no IPv4/IPv6 address")
        self.logger.debug(f"Resolved {hostname} to {ipv4addrs + ipv6addrs}")
        return ipv4addrs, ipv6addrs

    async def _query(self, hostname: str, rdtype: str) -> List[str]:
        resolver = self._get_resolver()
        try:
            answer = await resolver.resolve(hostname, rdtype)
        except dns.resolver.NoAnswer:
            return []
        except dns.resolver.NXDOMAIN as e:
            raise HostLookupError(f"no such host {hostname}") from e
        except dns.exception.DNSException as e:
            raise HostLookupError(f"lookup of {hostname} ({rdtype}) failed: {e}") from e
        return [rdata.to_text() for rdata in answer]
