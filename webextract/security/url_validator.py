"""
SSRF protection for fetch targets.

Every url handed to an ingestor passes through ``UrlValidator`` first. A
rejection is final: callers must not retry a rejected url.
"""

import asyncio
import ipaddress
import socket
from typing import Iterable, List, Optional, Union
from urllib.parse import urlparse

from webextract.utils.errors import BlockedUrlError, InvalidUrlError, UnsupportedSchemeError
from webextract.utils.logging import get_logger

logger = get_logger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

ALLOWED_SCHEMES = frozenset({"http", "https"})

BLOCKED_HOSTS = frozenset(
    {
        "localhost",
        "localhost.localdomain",
        "127.0.0.1",
        "::1",
        "[::1]",
        "0.0.0.0",
        "metadata.google.internal",
        "metadata.gke.internal",
        "instance-data",
        "instance-data.ec2.internal",
    }
)

BLOCKED_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)


class UrlValidator:
    """
    Reject unsafe or disallowed fetch targets.

    Checks, in order:
    - scheme is http or https
    - a host is present
    - host is not a blocked name (loopback, cloud metadata services)
    - a literal IP host is not in a private, loopback, link-local or reserved range
    - (``validate_with_dns`` only) every address the host resolves to passes
      the same range check

    Hosts listed in ``allow_hosts`` skip the host and address checks, which
    lets tests and trusted intranet deployments fetch local targets.
    """

    def __init__(self, allow_hosts: Optional[Iterable[str]] = None) -> None:
        """
        Initialize the validator.

        Args:
            allow_hosts: Hostnames exempt from host and address checks
        """
        self.allow_hosts = {h.lower() for h in (allow_hosts or [])}

    def validate(self, url: str) -> str:
        """
        Validate a url without touching the network.

        Args:
            url: Target url

        Returns:
            The lowercased hostname

        Raises:
            InvalidUrlError: If the url cannot be parsed or has no host
            UnsupportedSchemeError: If the scheme is not http/https
            BlockedUrlError: If the host is blocked
        """
        try:
            parsed = urlparse(url)
            host = parsed.hostname
        except ValueError as e:
            raise InvalidUrlError(url, str(e)) from e

        scheme = (parsed.scheme or "").lower()
        if scheme not in ALLOWED_SCHEMES:
            raise UnsupportedSchemeError(url, scheme or "<none>")
        if not host:
            raise InvalidUrlError(url, "missing host")

        host = host.lower().rstrip(".")
        if host in self.allow_hosts:
            return host

        if host in BLOCKED_HOSTS or f"[{host}]" in BLOCKED_HOSTS:
            raise BlockedUrlError(url, f"blocked host '{host}'")

        address = _parse_ip(host)
        if address is not None and is_blocked_address(address):
            raise BlockedUrlError(url, f"address {address} is in a blocked range")

        return host

    async def validate_with_dns(self, url: str) -> str:
        """
        Validate a url and every address its host resolves to.

        Resolution failures are not treated as rejections; the fetch will
        fail on its own and be reported as a fetch error.

        Raises:
            ValidationError: If the url or any resolved address is rejected
        """
        host = self.validate(url)
        if host in self.allow_hosts or _parse_ip(host) is not None:
            return host

        for address in await self.resolve(host):
            if is_blocked_address(address):
                raise BlockedUrlError(url, f"host '{host}' resolves to blocked address {address}")
        return host

    async def resolve(self, host: str) -> List[IPAddress]:
        """Resolve a hostname to its addresses using the running loop's resolver."""
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.debug(f"DNS resolution failed for {host}: {e}")
            return []

        addresses = []
        for info in infos:
            parsed = _parse_ip(info[4][0])
            if parsed is not None:
                addresses.append(parsed)
        return addresses

    def is_allowed(self, url: str) -> bool:
        """Non-raising form of ``validate``."""
        try:
            self.validate(url)
        except (InvalidUrlError, UnsupportedSchemeError, BlockedUrlError):
            return False
        return True


def _parse_ip(host: str) -> Optional[IPAddress]:
    host = host.strip("[]")
    # Drop an IPv6 zone id (fe80::1%eth0)
    host = host.split("%", 1)[0]
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def is_blocked_address(address: IPAddress) -> bool:
    """Whether an address falls in a private, loopback, link-local or reserved range."""
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped

    if any(address in network for network in BLOCKED_NETWORKS if network.version == address.version):
        return True

    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )
