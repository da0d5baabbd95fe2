"""Parameters describing a transparent proxy setup."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from ipaddress import (
    IPv4Address,
    IPv4Network,
    IPv6Address,
    IPv6Network,
    ip_address,
    ip_network,
)
from typing import Any, Union

from .common import (
    PROXY_ADDR,
    SOCKET_FWMARK_TABLE,
    TUN_DNS,
    TUN_GATEWAY,
    TUN_IPV4,
    TUN_MTU,
    TUN_NAME,
    TUN_NETMASK,
)

IPAddress = Union[IPv4Address, IPv6Address]
IPNetwork = Union[IPv4Network, IPv6Network]
SocketAddress = tuple[IPAddress, int]

_IP_FIELDS = ("tun_ip", "tun_netmask", "tun_gateway", "tun_dns")
_BOOL_FIELDS = ("ipv4_default_route", "ipv6_default_route", "gateway_mode")


def _parse_ip(value: Any) -> IPAddress:
    if isinstance(value, (IPv4Address, IPv6Address)):
        return value
    if not isinstance(value, str):
        raise ValueError(f"invalid IP address: {value!r}")
    return ip_address(value)


def _check_uint(name: str, value: Any, bits: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if not 0 <= value < 2**bits:
        raise ValueError(f"{name} out of range: {value}")
    return value


def _parse_port(text: str) -> int:
    if not text.isascii() or not text.isdigit():
        raise ValueError(f"invalid port: {text!r}")
    return _check_uint("port", int(text), 16)


def _parse_socket_addr(value: Any) -> SocketAddress:
    if isinstance(value, tuple):
        ip, port = value
        return _parse_ip(ip), _check_uint("port", port, 16)
    if not isinstance(value, str):
        raise ValueError(f"invalid socket address: {value!r}")
    if value.startswith("["):
        host, sep, port = value[1:].partition("]:")
        if not sep:
            raise ValueError(f"invalid socket address: {value!r}")
        return IPv6Address(host), _parse_port(port)
    host, sep, port = value.rpartition(":")
    if not sep:
        raise ValueError(f"invalid socket address: {value!r}")
    return IPv4Address(host), _parse_port(port)


def _format_socket_addr(addr: SocketAddress) -> str:
    ip, port = addr
    if isinstance(ip, IPv6Address):
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def _parse_cidr(value: Any) -> IPNetwork:
    if isinstance(value, (IPv4Network, IPv6Network)):
        return value
    if not isinstance(value, str):
        raise ValueError(f"invalid CIDR: {value!r}")
    return ip_network(value, strict=True)


def _format_cidr(net: IPNetwork) -> str:
    if net.prefixlen == net.max_prefixlen:
        return str(net.network_address)
    return str(net)


@dataclass(frozen=True)
class TproxyArgs:
    """Settings for routing traffic through a TUN device to a proxy.

    Address fields accept strings and are normalised to ``ipaddress`` objects.
    Use ``dataclasses.replace`` to derive modified copies.
    """

    tun_ip: IPAddress = TUN_IPV4
    tun_netmask: IPAddress = TUN_NETMASK
    tun_gateway: IPAddress = TUN_GATEWAY
    tun_dns: IPAddress = TUN_DNS
    tun_mtu: int = TUN_MTU
    tun_name: str = TUN_NAME
    proxy_addr: SocketAddress = PROXY_ADDR
    bypass_ips: tuple[IPNetwork, ...] = field(default_factory=tuple)
    ipv4_default_route: bool = True
    ipv6_default_route: bool = False
    gateway_mode: bool = False
    socket_fwmark: int | None = None
    socket_fwmark_table: str = SOCKET_FWMARK_TABLE

    def __post_init__(self) -> None:
        for name in _IP_FIELDS:
            object.__setattr__(self, name, _parse_ip(getattr(self, name)))
        object.__setattr__(self, "proxy_addr", _parse_socket_addr(self.proxy_addr))
        object.__setattr__(
            self, "bypass_ips", tuple(_parse_cidr(c) for c in self.bypass_ips)
        )
        _check_uint("tun_mtu", self.tun_mtu, 16)
        if self.socket_fwmark is not None:
            _check_uint("socket_fwmark", self.socket_fwmark, 32)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready mapping of the settings."""
        return {
            "tun_ip": str(self.tun_ip),
            "tun_netmask": str(self.tun_netmask),
            "tun_gateway": str(self.tun_gateway),
            "tun_dns": str(self.tun_dns),
            "tun_mtu": self.tun_mtu,
            "tun_name": self.tun_name,
            "proxy_addr": _format_socket_addr(self.proxy_addr),
            "bypass_ips": [_format_cidr(c) for c in self.bypass_ips],
            "ipv4_default_route": self.ipv4_default_route,
            "ipv6_default_route": self.ipv6_default_route,
            "gateway_mode": self.gateway_mode,
            "socket_fwmark": self.socket_fwmark,
            "socket_fwmark_table": self.socket_fwmark_table,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TproxyArgs:
        """Build settings from a mapping produced by :meth:`to_dict`."""
        if not isinstance(data, dict):
            raise ValueError("expected a mapping of settings")
        values: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                if f.name == "socket_fwmark":
                    values[f.name] = None
                    continue
                raise ValueError(f"missing field `{f.name}`")
            values[f.name] = data[f.name]
        for name in _BOOL_FIELDS:
            if not isinstance(values[name], bool):
                raise ValueError(f"{name} must be a boolean")
        for name in ("tun_name", "socket_fwmark_table"):
            if not isinstance(values[name], str):
                raise ValueError(f"{name} must be a string")
        if not isinstance(values["bypass_ips"], list):
            raise ValueError("bypass_ips must be a list")
        for name in (*_IP_FIELDS, "proxy_addr"):
            if not isinstance(values[name], str):
                raise ValueError(f"{name} must be a string")
        return cls(**values)