"""Transparent proxy setup and teardown using Windows command-line tools."""

from __future__ import annotations

import logging
from ipaddress import (
    IPv4Address,
    IPv4Network,
    IPv6Address,
    IPv6Network,
    ip_address,
    ip_network,
)
from typing import Union

from .args import TproxyArgs
from .common import get_state_file_path, run_command
from .private_ip import is_private_ip
from .state import TproxyState, retrieve_intermediate_state

logger = logging.getLogger(__name__)

IPAddress = Union[IPv4Address, IPv6Address]
IPNetwork = Union[IPv4Network, IPv6Network]

_IPV4_UNSPECIFIED = "0.0.0.0"
_IPV6_UNSPECIFIED = "::"

_GATEWAY_CMD = (
    "Get-WmiObject -Class Win32_NetworkAdapterConfiguration -Filter IPEnabled=TRUE"
    " | ForEach-Object { $_.DefaultIPGateway }"
)
_INTERFACE_CMD = (
    "Get-WmiObject -Class Win32_NetworkAdapter"
    " | Where-Object { $_.NetConnectionStatus -eq 2 }"
    " | Select-Object -First 1 -ExpandProperty NetConnectionID"
)


def _cidr_text(net: IPNetwork) -> str:
    if net.prefixlen == net.max_prefixlen:
        return str(net.network_address)
    return str(net)


def _lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _strict_ip(text: str) -> IPAddress | None:
    if not text or "%" in text or text != text.strip():
        return None
    try:
        return ip_address(text)
    except ValueError:
        return None


def parse_gateway_lines(text: str) -> IPAddress:
    """Pick the default gateway from one-address-per-line command output.

    The first IPv4 address wins; otherwise the last IPv6 address is used.
    Raises ``OSError`` when no address is found.
    """
    ipv6_gateway: IPAddress | None = None
    for line in _lines(text):
        ip = _strict_ip(line)
        if ip is None:
            continue
        if isinstance(ip, IPv4Address):
            return ip
        ipv6_gateway = ip
    if ipv6_gateway is None:
        raise OSError("No default gateway found")
    return ipv6_gateway


def _powershell(cmd: str) -> str:
    try:
        out = run_command("powershell", ["-Command", cmd])
    except OSError as exc:
        raise OSError(f'Command "powershell -Command {cmd}" error: {exc}') from exc
    return out.decode("utf-8", errors="replace")


def get_default_gateway_ip() -> IPAddress:
    """Return the default gateway of the enabled network adapters."""
    return parse_gateway_lines(_powershell(_GATEWAY_CMD))


def get_default_gateway_interface() -> str:
    """Return the connection name of the first connected adapter."""
    return _powershell(_INTERFACE_CMD).strip()


def get_default_gateway() -> tuple[IPAddress, str]:
    """Return the default gateway address and its interface name."""
    return get_default_gateway_ip(), get_default_gateway_interface()


def flush_dns_cache() -> None:
    """Flush the resolver cache."""
    run_command("ipconfig", ["/flushdns"])


def set_dns_server(iface: str, dns_server) -> None:
    """Make ``dns_server`` the static DNS server of interface ``iface``."""
    run_command(
        "netsh",
        ["interface", "ip", "set", "dns", f'"{iface}"', "static", str(dns_server)],
    )


def _proxy_bypass_cidr(args: TproxyArgs) -> IPNetwork | None:
    proxy_ip = args.proxy_addr[0]
    if not args.bypass_ips and not is_private_ip(proxy_ip):
        return ip_network(proxy_ip)
    return None


def _do_bypass_ip(bypass_ip: IPNetwork, original_gateway: IPAddress) -> None:
    run_command(
        "route",
        ["add", _cidr_text(bypass_ip), str(original_gateway), "metric", "1"],
    )


def tproxy_setup(tproxy_args: TproxyArgs) -> TproxyState:
    """Route traffic through the TUN adapter and return the state to undo it."""
    logger.debug("Setting up transparent proxy...")
    flush_dns_cache()

    logger.debug(
        'Route all traffic to the gateway of adapter "%s"...', tproxy_args.tun_name
    )
    unspecified = (
        _IPV4_UNSPECIFIED
        if isinstance(tproxy_args.tun_gateway, IPv4Address)
        else _IPV6_UNSPECIFIED
    )
    gateway = str(tproxy_args.tun_gateway)
    run_command(
        "route", ["add", unspecified, "mask", unspecified, gateway, "metric", "6"]
    )

    logger.debug("Get default gateway...")
    original_gateway = get_default_gateway_ip()

    logger.debug("Setting bypass IPs...")
    for bypass_ip in tproxy_args.bypass_ips:
        _do_bypass_ip(bypass_ip, original_gateway)
    proxy_cidr = _proxy_bypass_cidr(tproxy_args)
    if proxy_cidr is not None:
        _do_bypass_ip(proxy_cidr, original_gateway)

    logger.debug(
        "Setting \"%s\"'s DNS to %s...", tproxy_args.tun_name, tproxy_args.tun_gateway
    )
    set_dns_server(tproxy_args.tun_name, tproxy_args.tun_gateway)

    logger.debug("Transparent proxy setup done")
    return TproxyState(tproxy_args=tproxy_args, gateway=original_gateway)


def tproxy_remove(state: TproxyState | None) -> None:
    """Undo a setup described by ``state``.

    With ``None`` the state saved in the state file, if any, is used.
    """
    if state is not None:
        _tproxy_remove(state)
        return
    try:
        saved = retrieve_intermediate_state()
    except (OSError, ValueError):
        return
    _tproxy_remove(saved)
    try:
        get_state_file_path().unlink()
    except OSError:
        pass


def _run_quietly(command: str, args: list[str]) -> None:
    try:
        run_command(command, args)
    except OSError as exc:
        logger.debug('command "%s %s" error: %s', command, " ".join(args), exc)


def _tproxy_remove(state: TproxyState) -> None:
    if state.tproxy_removed_done:
        return
    state.tproxy_removed_done = True
    args = state.tproxy_args
    if args is None:
        raise ValueError("tproxy_args is None")
    original_gateway = state.gateway
    if original_gateway is None:
        raise OSError("No default gateway found")
    state.gateway = None
    unspecified = _IPV4_UNSPECIFIED

    _run_quietly(
        "route",
        ["-p", "delete", unspecified, "mask", unspecified, str(args.tun_gateway)],
    )

    for bypass_ip in args.bypass_ips:
        _run_quietly("route", ["delete", _cidr_text(bypass_ip)])
    proxy_cidr = _proxy_bypass_cidr(args)
    if proxy_cidr is not None:
        _run_quietly("route", ["delete", _cidr_text(proxy_cidr)])

    _run_quietly("route", ["delete", unspecified, "mask", unspecified])
    _run_quietly(
        "route",
        ["add", unspecified, "mask", unspecified, str(original_gateway), "metric", "200"],
    )

    flush_dns_cache()