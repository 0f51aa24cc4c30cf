"""Host validation that keeps outbound fetches away from local/private networks."""

import asyncio
import ipaddress
import logging
import socket
from typing import FrozenSet, Optional, Union

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

DISALLOWED_HOST_SUFFIXES = (".local", ".internal", ".localhost")

BLOCKED_IPV4_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.168.0.0/16",
        "198.18.0.0/15",
        "240.0.0.0/4",
    )
)


def _unwrap_mapped(address: IPAddress) -> IPAddress:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def is_blocked_address(address: IPAddress) -> bool:
    address = _unwrap_mapped(address)
    if isinstance(address, ipaddress.IPv4Address):
        if any(address in network for network in BLOCKED_IPV4_NETWORKS):
            return True
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_multicast
        or address.is_reserved
        or address.is_unspecified
    )


def _parse_ip_literal(hostname: str) -> Optional[IPAddress]:
    candidate = hostname[1:-1] if hostname.startswith("[") and hostname.endswith("]") else hostname
    try:
        return ipaddress.ip_address(candidate)
    except ValueError:
        return None


def is_disallowed_hostname(hostname: str) -> bool:
    normalized = (hostname or "").strip().lower().rstrip(".")
    if not normalized:
        return True
    if normalized == "localhost" or normalized.endswith(DISALLOWED_HOST_SUFFIXES):
        return True
    literal = _parse_ip_literal(normalized)
    return literal is not None and is_blocked_address(literal)


async def _resolve_addresses(hostname: str) -> FrozenSet[IPAddress]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    addresses = set()
    for _family, _type, _proto, _canonname, sockaddr in infos:
        # Strip IPv6 zone ids ("fe80::1%eth0")
        addresses.add(ipaddress.ip_address(str(sockaddr[0]).split("%", 1)[0]))
    return frozenset(addresses)


async def resolve_public_host_addresses(hostname: str) -> Optional[FrozenSet[IPAddress]]:
    """
    Resolve hostname and return its addresses, or None if the name or any
    resolved address points at a local, private or otherwise non-public target.
    """
    normalized = (hostname or "").strip().lower().rstrip(".")
    if is_disallowed_hostname(normalized):
        return None

    literal = _parse_ip_literal(normalized)
    if literal is not None:
        return frozenset({literal})

    try:
        addresses = await _resolve_addresses(normalized)
    except (OSError, UnicodeError) as exc:
        logger.info("[HOST_SAFETY] Could not resolve %s: %s", normalized, exc)
        return None

    if not addresses or any(is_blocked_address(address) for address in addresses):
        return None
    return addresses


def has_address_intersection(left: FrozenSet[IPAddress], right: FrozenSet[IPAddress]) -> bool:
    return bool(left & right)
