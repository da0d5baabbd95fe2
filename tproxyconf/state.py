"""State recorded while a proxy setup is active, used to undo it."""

from __future__ import annotations

import json
from dataclasses import dataclass
from ipaddress import IPv4Address, IPv6Address, ip_address
from typing import Any, Union

from .args import TproxyArgs
from .common import get_state_file_path

IPAddress = Union[IPv4Address, IPv6Address]

_BOOL_FIELDS = ("umount_resolvconf", "tproxy_removed_done", "restore_ip_forwarding")
_LIST_FIELDS = (
    "restore_ipv4_route",
    "restore_ipv6_route",
    "restore_gateway_mode",
    "restore_socket_fwmark",
)


def _load_ip(value: Any) -> IPAddress:
    if not isinstance(value, str):
        raise ValueError(f"invalid IP address: {value!r}")
    return ip_address(value)


def _load_str_list(name: str, value: Any) -> list[str] | None:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{name} must be a list of strings")
    return list(value)


@dataclass
class TproxyState:
    """Everything needed to restore the network settings changed by a setup."""

    tproxy_args: TproxyArgs | None = None
    original_dns_servers: list[IPAddress] | None = None
    gateway: IPAddress | None = None
    gw_scope: str | None = None
    umount_resolvconf: bool = False
    restore_resolvconf_content: bytes | None = None
    tproxy_removed_done: bool = False
    restore_ipv4_route: list[str] | None = None
    restore_ipv6_route: list[str] | None = None
    restore_gateway_mode: list[str] | None = None
    restore_ip_forwarding: bool = False
    restore_socket_fwmark: list[str] | None = None

    def to_json(self) -> str:
        """Serialise the state to a compact JSON document."""
        data = {
            "tproxy_args": self.tproxy_args.to_dict() if self.tproxy_args else None,
            "original_dns_servers": (
                None
                if self.original_dns_servers is None
                else [str(ip) for ip in self.original_dns_servers]
            ),
            "gateway": None if self.gateway is None else str(self.gateway),
            "gw_scope": self.gw_scope,
            "umount_resolvconf": self.umount_resolvconf,
            "restore_resolvconf_content": (
                None
                if self.restore_resolvconf_content is None
                else list(self.restore_resolvconf_content)
            ),
            "tproxy_removed_done": self.tproxy_removed_done,
            "restore_ipv4_route": self.restore_ipv4_route,
            "restore_ipv6_route": self.restore_ipv6_route,
            "restore_gateway_mode": self.restore_gateway_mode,
            "restore_ip_forwarding": self.restore_ip_forwarding,
            "restore_socket_fwmark": self.restore_socket_fwmark,
        }
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> TproxyState:
        """Parse a document produced by :meth:`to_json`."""
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("state document must be a JSON object")
        for name in _BOOL_FIELDS:
            if name not in data:
                raise ValueError(f"missing field `{name}`")
            if not isinstance(data[name], bool):
                raise ValueError(f"{name} must be a boolean")

        args = data.get("tproxy_args")
        dns = data.get("original_dns_servers")
        if dns is not None and not isinstance(dns, list):
            raise ValueError("original_dns_servers must be a list")
        gateway = data.get("gateway")
        gw_scope = data.get("gw_scope")
        if gw_scope is not None and not isinstance(gw_scope, str):
            raise ValueError("gw_scope must be a string")
        content = data.get("restore_resolvconf_content")
        if content is not None and not (
            isinstance(content, list) and all(type(b) is int for b in content)
        ):
            raise ValueError("restore_resolvconf_content must be a list of bytes")

        return cls(
            tproxy_args=None if args is None else TproxyArgs.from_dict(args),
            original_dns_servers=None if dns is None else [_load_ip(ip) for ip in dns],
            gateway=None if gateway is None else _load_ip(gateway),
            gw_scope=gw_scope,
            umount_resolvconf=data["umount_resolvconf"],
            restore_resolvconf_content=None if content is None else bytes(content),
            tproxy_removed_done=data["tproxy_removed_done"],
            restore_ip_forwarding=data["restore_ip_forwarding"],
            **{name: _load_str_list(name, data.get(name)) for name in _LIST_FIELDS},
        )


def store_intermediate_state(state: TproxyState) -> None:
    """Write ``state`` to the platform's state file."""
    get_state_file_path().write_text(state.to_json(), encoding="utf-8")


def retrieve_intermediate_state() -> TproxyState:
    """Read the state saved by :func:`store_intermediate_state`."""
    path = get_state_file_path()
    if not path.exists():
        raise FileNotFoundError("No state file found")
    return TproxyState.from_json(path.read_text(encoding="utf-8"))