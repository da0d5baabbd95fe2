import dataclasses
import json
from ipaddress import IPv4Address, IPv6Address, ip_network

import pytest

from tproxyconf.args import TproxyArgs
from tproxyconf.common import (
    PROXY_ADDR,
    SOCKET_FWMARK_TABLE,
    TUN_DNS,
    TUN_GATEWAY,
    TUN_IPV4,
    TUN_MTU,
    TUN_NAME,
    TUN_NETMASK,
)


def test_defaults_match_constants():
    args = TproxyArgs()
    assert args.tun_ip == TUN_IPV4
    assert args.tun_netmask == TUN_NETMASK
    assert args.tun_gateway == TUN_GATEWAY
    assert args.tun_dns == TUN_DNS
    assert args.tun_mtu == TUN_MTU
    assert args.tun_name == TUN_NAME
    assert args.proxy_addr == PROXY_ADDR
    assert args.bypass_ips == ()
    assert args.ipv4_default_route is True
    assert args.ipv6_default_route is False
    assert args.gateway_mode is False
    assert args.socket_fwmark is None
    assert args.socket_fwmark_table == SOCKET_FWMARK_TABLE


def test_default_dict_values():
    data = TproxyArgs().to_dict()
    assert data["tun_ip"] == "10.0.0.33"
    assert data["proxy_addr"] == "127.0.0.1:1080"
    assert data["socket_fwmark_table"] == "100"


def test_strings_are_normalised():
    args = TproxyArgs(tun_ip="10.1.0.2", proxy_addr="[::1]:1080", bypass_ips=["1.2.3.0/24"])
    assert args.tun_ip == IPv4Address("10.1.0.2")
    assert args.proxy_addr == (IPv6Address("::1"), 1080)
    assert args.bypass_ips == (ip_network("1.2.3.0/24"),)


def test_round_trip_through_json():
    args = TproxyArgs(
        tun_name="tunx",
        proxy_addr="[2001:db8::5]:9050",
        bypass_ips=["203.0.113.0/24", "2001:db8::/32", "198.51.100.7"],
        gateway_mode=True,
        ipv6_default_route=True,
        socket_fwmark=42,
        socket_fwmark_table="200",
    )
    restored = TproxyArgs.from_dict(json.loads(json.dumps(args.to_dict())))
    assert restored == args


def test_ipv6_socket_addr_is_bracketed():
    args = TproxyArgs(proxy_addr=(IPv6Address("::1"), 1080))
    assert args.to_dict()["proxy_addr"] == "[::1]:1080"


def test_replace_builds_modified_copy():
    base = TproxyArgs()
    changed = dataclasses.replace(base, tun_mtu=9000, gateway_mode=True)
    assert changed.tun_mtu == 9000
    assert changed.gateway_mode is True
    assert base.tun_mtu == TUN_MTU


def test_equal_args_hash_equal():
    a = TproxyArgs(bypass_ips=["10.0.0.0/8"])
    b = TproxyArgs(bypass_ips=["10.0.0.0/8"])
    assert a == b
    assert hash(a) == hash(b)
    assert len({a, b}) == 1


def test_missing_fwmark_defaults_to_none():
    data = TproxyArgs(socket_fwmark=7).to_dict()
    del data["socket_fwmark"]
    assert TproxyArgs.from_dict(data).socket_fwmark is None


def test_missing_required_field():
    data = TproxyArgs().to_dict()
    del data["tun_name"]
    with pytest.raises(ValueError, match="tun_name"):
        TproxyArgs.from_dict(data)


@pytest.mark.parametrize(
    "key, value",
    [
        ("tun_mtu", 70000),
        ("tun_mtu", -1),
        ("socket_fwmark", -5),
        ("socket_fwmark", 2**32),
        ("bypass_ips", ["10.0.0.1/24"]),
        ("tun_ip", "300.1.1.1"),
        ("proxy_addr", "127.0.0.1"),
        ("proxy_addr", "127.0.0.1:99999"),
        ("gateway_mode", "yes"),
    ],
)
def test_invalid_values_rejected(key, value):
    data = TproxyArgs().to_dict()
    data[key] = value
    with pytest.raises(ValueError):
        TproxyArgs.from_dict(data)


def test_constructor_rejects_bad_mtu():
    with pytest.raises(ValueError):
        TproxyArgs(tun_mtu=65536)