"""Transparent proxy setup and teardown using Linux routing tools."""

from __future__ import annotations

import logging
import os
import tempfile
from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network
from typing import Union

from .args import TproxyArgs
from .common import ETC_RESOLV_CONF_FILE, get_state_file_path, run_command
from .private_ip import is_private_ip
from .state import TproxyState, retrieve_intermediate_state

logger = logging.getLogger(__name__)

IPNetwork = Union[IPv4Network, IPv6Network]
Route = tuple[IPNetwork, list[str]]

_DEFAULT_NAMESERVER = "198.18.0.1"
_IPV4_DEFAULT = ip_network("0.0.0.0/0")
_IPV6_DEFAULT = ip_network("::/0")


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"error converting bytes to string: {exc}") from exc


def _lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _cidr_text(net: IPNetwork) -> str:
    if net.prefixlen == net.max_prefixlen:
        return str(net.network_address)
    return str(net)


def _host_cidr(ip) -> IPNetwork:
    return ip_network(ip_address(ip))


def _route_exists(route: str, ipv6: bool, table: str) -> bool:
    family = "-6" if ipv6 else "-4"
    out = run_command("ip", [family, "route", "show", route, "table", table])
    return bool(_decode(out).strip())


def _parse_prefix_len(text: str) -> int:
    if not text.isascii() or not text.isdigit() or int(text) > 255:
        raise ValueError(f'failed to parse prefix len "{text}"')
    return int(text)


def _make_cidr(addr_text: str, prefix_text: str) -> IPNetwork:
    if "%" in addr_text:
        raise ValueError(f'failed to parse IP address "{addr_text}"')
    try:
        addr = ip_address(addr_text)
    except ValueError as exc:
        raise ValueError(f'failed to parse IP address "{addr_text}": {exc}') from exc
    length = _parse_prefix_len(prefix_text)
    try:
        return ip_network(f"{addr}/{length}", strict=True)
    except ValueError as exc:
        raise ValueError(f"failed to convert {addr}/{length} to CIDR") from exc


def parse_routes(text: str, is_ipv6: bool) -> list[Route]:
    """Parse ``ip route show`` output into (destination, components) pairs.

    Continuation lines, multicast and unreachable routes are skipped.
    """
    routes: list[Route] = []
    for line in _lines(text):
        if line.startswith((" ", "\t")):
            continue
        parts = line.split()
        if not parts:
            raise ValueError(f"failed to parse route {line}")
        dst, components = parts[0], parts[1:]
        if dst in ("multicast", "unreachable"):
            continue
        if dst == "default":
            dst = "::/0" if is_ipv6 else "0.0.0.0/0"
        addr_text, sep, prefix_text = dst.partition("/")
        if not sep:
            prefix_text = "128" if is_ipv6 else "32"
        routes.append((_make_cidr(addr_text, prefix_text), components))
    return routes


def route_show(is_ipv6: bool) -> list[Route]:
    """Return the routes of the main table for one address family."""
    family = "-6" if is_ipv6 else "-4"
    return parse_routes(_decode(run_command("ip", [family, "route", "show"])), is_ipv6)


def do_bypass_ip(ip: IPNetwork) -> bool:
    """Route ``ip`` through the current default route.

    Returns ``True`` when a route was added, ``False`` when the network is
    already covered by a more specific route or no default route exists.
    """
    routes = sorted(route_show(ip.version == 6), key=lambda r: -r[0].prefixlen)
    first, last = ip.network_address, ip.broadcast_address
    for route_cidr, components in routes:
        if first not in route_cidr or last not in route_cidr:
            continue
        if route_cidr.prefixlen != 0:
            break
        run_command("ip", ["route", "add", _cidr_text(ip), *components])
        return True
    return False


def get_route_components(cidr: IPNetwork) -> list[str] | None:
    """Return the arguments that recreate the route for ``cidr``, if any."""
    for route_cidr, components in route_show(cidr.version == 6):
        if route_cidr == cidr:
            return [_cidr_text(cidr), *components]
    return None


def restore_route(route_components: list[str]) -> None:
    """Add back a route saved by :func:`get_route_components`."""
    run_command("ip", ["route", "add", *route_components])


def _ip_forwarding_file_path(ipv6: bool) -> str:
    if ipv6:
        return "/proc/sys/net/ipv6/conf/all/forwarding"
    return "/proc/sys/net/ipv4/ip_forward"


def _ip_forwarding_enabled(ipv6: bool) -> bool:
    with open(_ip_forwarding_file_path(ipv6), "rb") as fh:
        return _decode(fh.read()).strip() == "1"


def _configure_ip_forwarding(ipv6: bool, enable: bool) -> None:
    with open(_ip_forwarding_file_path(ipv6), "w", encoding="ascii") as fh:
        fh.write("1\n" if enable else "0\n")


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        view = view[os.write(fd, view):]


def _write_nameserver(fd: int, tun_gateway) -> None:
    gateway = tun_gateway if tun_gateway is not None else _DEFAULT_NAMESERVER
    os.fchmod(fd, 0o444)
    _write_all(fd, f"nameserver {gateway}\n".encode())


def _setup_resolv_conf(state: TproxyState) -> None:
    tun_gateway = state.tproxy_args.tun_gateway if state.tproxy_args else None
    # A read-only bind mount keeps network managers from rewriting the file.
    fd, path = tempfile.mkstemp()
    mounted = False
    try:
        os.fchmod(fd, 0o644)
        _write_nameserver(fd, tun_gateway)
        try:
            run_command("mount", ["--bind", path, ETC_RESOLV_CONF_FILE])
            mounted = True
        except OSError as exc:
            logger.debug("bind mount failed: %s", exc)
        if mounted:
            state.umount_resolvconf = True
            try:
                run_command(
                    "mount", ["-o", "remount,ro,bind", ETC_RESOLV_CONF_FILE]
                )
            except OSError:
                logger.warning("failed to remount /etc/resolv.conf as readonly")
    finally:
        os.close(fd)
        os.unlink(path)

    if not mounted:
        logger.warning(
            "failed to bind mount custom resolv.conf onto /etc/resolv.conf, "
            "resorting to direct write"
        )
        with open(ETC_RESOLV_CONF_FILE, "rb") as fh:
            state.restore_resolvconf_content = fh.read()
        out = os.open(
            ETC_RESOLV_CONF_FILE, os.O_WRONLY | os.O_CLOEXEC | os.O_TRUNC, 0o644
        )
        try:
            _write_nameserver(out, tun_gateway)
        finally:
            os.close(out)


def _setup_gateway_mode(tun_name: str, state: TproxyState) -> None:
    run_command(
        "iptables",
        ["-t", "nat", "-A", "POSTROUTING", "-o", tun_name, "-j", "MASQUERADE"],
    )
    run_command("iptables", ["-A", "FORWARD", "-o", tun_name, "-j", "ACCEPT"])
    run_command(
        "iptables",
        [
            "-A", "FORWARD", "-i", tun_name, "-m", "state",
            "--state", "RELATED,ESTABLISHED", "-j", "ACCEPT",
        ],
    )
    if not _ip_forwarding_enabled(False):
        logger.debug("IP forwarding not enabled")
        _configure_ip_forwarding(False, True)
        state.restore_ip_forwarding = True
    state.restore_gateway_mode = [
        f"-t nat -D POSTROUTING -o {tun_name} -j MASQUERADE",
        f"-D FORWARD -o {tun_name} -j ACCEPT",
        f"-D FORWARD -i {tun_name} -m state --state RELATED,ESTABLISHED -j ACCEPT",
    ]
    logger.debug("restore gateway mode: %s", state.restore_gateway_mode)


def _setup_socket_fwmark(fwmark: int, table: str, state: TproxyState) -> None:
    mark = str(fwmark)
    run_command("ip", ["rule", "add", "fwmark", mark, "table", table])
    try:
        run_command("ip", ["route", "flush", "table", table])
    except OSError:
        pass
    components = get_route_components(_IPV4_DEFAULT)
    if components is None:
        raise OSError("failed to get default route components")
    args = ["route", "add", "table", table, *components]
    run_command("ip", args)
    logger.debug("fwmark default route: ip %s", " ".join(args))
    state.restore_socket_fwmark = [
        f"rule del fwmark {mark}",
        f"route flush table {table}",
    ]
    logger.debug("restore socket fwmark: %s", state.restore_socket_fwmark)


def _proxy_bypass_cidr(args: TproxyArgs) -> IPNetwork | None:
    proxy_ip = args.proxy_addr[0]
    if not args.bypass_ips and not is_private_ip(proxy_ip):
        return _host_cidr(proxy_ip)
    return None


def _setup_default_route(
    tun_name: str, ipv6: bool, enabled: bool, state: TproxyState
) -> None:
    default, halves = (
        ("::/0", ("::/1", "8000::/1")) if ipv6 else ("0.0.0.0/0", ("128.0.0.0/1", "0.0.0.0/1"))
    )
    if enabled:
        if not _route_exists(default, ipv6, "main"):
            run_command("ip", ["route", "add", default, "dev", tun_name])
        else:
            for half in halves:
                run_command("ip", ["route", "add", half, "dev", tun_name])
        return
    # Keep traffic of a disabled family from leaking past the proxy.
    saved = get_route_components(_IPV6_DEFAULT if ipv6 else _IPV4_DEFAULT)
    if ipv6:
        state.restore_ipv6_route = saved
    else:
        state.restore_ipv4_route = saved
    logger.debug("restore %s route: %s", "ipv6" if ipv6 else "ipv4", saved)
    try:
        run_command("ip", ["route", "del", default])
    except OSError as exc:
        logger.debug('command "ip route del %s" error: %s', default, exc)


def tproxy_setup(tproxy_args: TproxyArgs) -> TproxyState:
    """Route traffic through the TUN device and return the state to undo it."""
    tun_name = tproxy_args.tun_name
    state = TproxyState(tproxy_args=tproxy_args)

    flush_dns_cache()

    if tproxy_args.gateway_mode:
        _setup_gateway_mode(tun_name, state)

    if tproxy_args.socket_fwmark is not None:
        _setup_socket_fwmark(
            tproxy_args.socket_fwmark, tproxy_args.socket_fwmark_table, state
        )

    run_command("ip", ["link", "set", tun_name, "up"])

    for ip in tproxy_args.bypass_ips:
        do_bypass_ip(ip)
    proxy_cidr = _proxy_bypass_cidr(tproxy_args)
    if proxy_cidr is not None:
        do_bypass_ip(proxy_cidr)

    _setup_default_route(tun_name, False, tproxy_args.ipv4_default_route, state)
    _setup_default_route(tun_name, True, tproxy_args.ipv6_default_route, state)

    _setup_resolv_conf(state)
    return state


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

    for bypass_ip in args.bypass_ips:
        _run_quietly("ip", ["route", "del", _cidr_text(bypass_ip)])
    proxy_cidr = _proxy_bypass_cidr(args)
    if proxy_cidr is not None:
        _run_quietly("ip", ["route", "del", _cidr_text(proxy_cidr)])

    for components in (state.restore_ipv4_route, state.restore_ipv6_route):
        if components is not None:
            logger.debug("restore route: %s", components)
            try:
                restore_route(components)
            except OSError as exc:
                logger.debug("restore_route error: %s", exc)

    for restore in state.restore_gateway_mode or ():
        _run_quietly("iptables", restore.split(" "))

    for restore in state.restore_socket_fwmark or ():
        _run_quietly("ip", restore.split(" "))

    if state.restore_ip_forwarding:
        logger.debug("restore ip forwarding")
        try:
            _configure_ip_forwarding(False, False)
        except OSError as exc:
            logger.debug("error restoring IP forwarding: %s", exc)

    _run_quietly("ip", ["link", "del", args.tun_name])

    if state.umount_resolvconf:
        run_command("umount", [ETC_RESOLV_CONF_FILE])

    if state.restore_resolvconf_content is not None:
        with open(ETC_RESOLV_CONF_FILE, "wb") as fh:
            fh.write(state.restore_resolvconf_content)

    flush_dns_cache()


def flush_dns_cache() -> None:
    """Nothing to flush on Linux."""


def get_default_gateway() -> tuple:
    """Return the default gateway address and its interface name."""
    out = run_command("sh", ["-c", "ip route | grep default | awk '{print $3}'"])
    addr = ip_address(out.decode("utf-8", errors="replace").strip())
    out = run_command("sh", ["-c", "ip route | grep default | awk '{print $5}'"])
    iface = out.decode("utf-8", errors="replace").strip()
    return addr, iface