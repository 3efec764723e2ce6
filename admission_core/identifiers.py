"""
Identifier Builder
==================
Derives rate limit identifiers and client IPs from request context, and
matches IPs against the trusted whitelist.
"""

import ipaddress
from typing import Iterable, List, Mapping, Optional, Union

import structlog

from .models import UNKNOWN_IP, RateLimitContext

logger = structlog.get_logger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def build_identifier(context: RateLimitContext) -> str:
    """
    Stable identifier under which quota is tracked.

    Authenticated callers are keyed by user id plus IP, anonymous callers by
    IP alone.
    """
    if context.user_id:
        return f"user:{context.user_id}:{context.ip}"
    return f"ip:{context.ip}"


def get_client_ip(headers: Mapping[str, str], client_host: Optional[str] = None) -> str:
    """Extract the real client IP, preferring proxy headers."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return client_host or UNKNOWN_IP


def parse_whitelist(entries: Iterable[str]) -> List[IPNetwork]:
    """Parse exact IPs and CIDR ranges; invalid entries are skipped."""
    networks: List[IPNetwork] = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            logger.warning("rate_limit_whitelist_entry_invalid", entry=entry)
    return networks


def is_whitelisted(ip: str, networks: Iterable[IPNetwork]) -> bool:
    """Check if IP falls inside any trusted network."""
    if not ip or ip == UNKNOWN_IP:
        return False
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(address in network for network in networks)
