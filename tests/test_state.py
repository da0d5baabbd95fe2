import json
import sys
from ipaddress import ip_address

import pytest

from tproxyconf.args import TproxyArgs
from tproxyconf.common import STATE_FILE_NAME
from tproxyconf.state import (
    TproxyState,
    retrieve_intermediate_state,
    store_intermediate_state,
)


@pytest.fixture
def state_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path))
    return tmp_path


def _full_state():
    return TproxyState(
        tproxy_args=TproxyArgs(bypass_ips=["203.0.113.0/24"], socket_fwmark=3),
        original_dns_servers=[ip_address("192.0.2.53"), ip_address("2001:db8::53")],
        gateway=ip_address("192.0.2.1"),
        gw_scope="en0",
        umount_resolvconf=True,
        restore_resolvconf_content=b"nameserver 192.0.2.53\n",
        tproxy_removed_done=False,
        restore_ipv4_route=["0.0.0.0/0", "via", "192.0.2.1", "dev", "eth0"],
        restore_ipv6_route=None,
        restore_gateway_mode=["-D FORWARD -o tun0 -j ACCEPT"],
        restore_ip_forwarding=True,
        restore_socket_fwmark=["rule del fwmark 3", "route flush table 100"],
    )


def test_default_state_is_empty():
    state = TproxyState()
    assert state.tproxy_args is None
    assert state.gateway is None
    assert state.umount_resolvconf is False
    assert state.tproxy_removed_done is False
    assert state.restore_ip_forwarding is False


def test_json_round_trip():
    state = _full_state()
    assert TproxyState.from_json(state.to_json()) == state


def test_default_round_trip():
    assert TproxyState.from_json(TproxyState().to_json()) == TproxyState()


def test_content_serialised_as_byte_list():
    state = _full_state()
    data = json.loads(state.to_json())
    assert data["restore_resolvconf_content"] == list(state.restore_resolvconf_content)
    assert data["gateway"] == "192.0.2.1"


def test_missing_optional_fields_become_none():
    text = json.dumps(
        {
            "umount_resolvconf": False,
            "tproxy_removed_done": True,
            "restore_ip_forwarding": False,
        }
    )
    state = TproxyState.from_json(text)
    assert state.tproxy_removed_done is True
    assert state.restore_ipv4_route is None
    assert state.original_dns_servers is None


def test_missing_bool_field_rejected():
    text = json.dumps({"umount_resolvconf": False, "tproxy_removed_done": False})
    with pytest.raises(ValueError, match="restore_ip_forwarding"):
        TproxyState.from_json(text)


def test_invalid_json_rejected():
    with pytest.raises(ValueError):
        TproxyState.from_json("{not json")


def test_out_of_range_byte_rejected():
    data = json.loads(TproxyState().to_json())
    data["restore_resolvconf_content"] = [1, 256]
    with pytest.raises(ValueError):
        TproxyState.from_json(json.dumps(data))


def test_store_and_retrieve(state_dir):
    state = _full_state()
    store_intermediate_state(state)
    assert (state_dir / STATE_FILE_NAME).exists()
    assert retrieve_intermediate_state() == state


def test_retrieve_without_file(state_dir):
    with pytest.raises(FileNotFoundError):
        retrieve_intermediate_state()