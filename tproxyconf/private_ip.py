"""Detection of private, loopback and link-local addresses."""

from __future__ import annotations

import re
from ipaddress import IPv4Address, IPv4Network, IPv6Address, ip_address

_BENCHMARKING = IPv4Network("198.18.0.0/15")
_RFC1918 = (
    IPv4Network("10.0.0.0/8"),
    IPv4Network("172.16.0.0/12"),
    IPv4Network("192.168.0.0/16"),
)
_LOOPBACK = IPv4Network("127.0.0.0/8")
_LINK_LOCAL = IPv4Network("169.254.0.0/16")

_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"^(::f{4}:)?10\.([0-9]{1,3})\.([0-9]{1,3})\.([0-9]{1,3})$",
        r"^(::f{4}:)?192\.168\.([0-9]{1,3})\.([0-9]{1,3})$",
        r"^(::f{4}:)?172\.(1[6-9]|2\d|30|31)\.([0-9]{1,3})\.([0-9]{1,3})$",
        r"^(::f{4}:)?127\.([0-9]{1,3})\.([0-9]{1,3})\.([0-9]{1,3})$",
        r"^(::f{4}:)?169\.254\.([0-9]{1,3})\.([0-9]{1,3})$",
        r"^f[cd][0-9a-f]{2}:",
        r"^fe80:",
        r"^::1$",
        r"^::$",
    )
)


def _ipv4_is_private(addr: IPv4Address) -> bool:
    return (
        addr in _BENCHMARKING
        or any(addr in net for net in _RFC1918)
        or addr in _LOOPBACK
        or addr in _LINK_LOCAL
    )


def _display(addr: IPv4Address | IPv6Address) -> str:
    if isinstance(addr, IPv6Address):
        mapped = addr.ipv4_mapped
        if mapped is not None:
            return f"::ffff:{mapped}"
        return addr.compressed
    return str(addr)


def is_private_ip(ip: str | IPv4Address | IPv6Address) -> bool:
    """Tell whether ``ip`` is in a private, loopback or link-local range."""
    addr = ip if isinstance(ip, (IPv4Address, IPv6Address)) else ip_address(ip)
    if isinstance(addr, IPv4Address) and _ipv4_is_private(addr):
        return True
    text = _display(addr)
    return any(pattern.search(text) for pattern in _PATTERNS)