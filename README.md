# tproxyconf

Set up and tear down a transparent proxy on the host. The package points the
default routes at a TUN device and keeps traffic to the proxy server itself on
the original gateway. It also directs DNS at the tunnel. Everything it changes
is recorded in a `TproxyState`, which is then used to undo the changes.

Two platforms are supported:

- Linux, through `ip`, `iptables`, `mount`/`umount` and `/etc/resolv.conf`, in
  `tproxyconf.linux`.
- Windows, through `route`, `netsh`, `ipconfig` and `powershell`, in
  `tproxyconf.windows`.

Changing routes needs administrator rights. The package has no runtime
dependencies beyond the standard library.

## Installation

```
pip install .
```

To install the test dependencies as well:

```
pip install .[test]
```

## Usage

Describe the tunnel with `tproxyconf.args.TproxyArgs`, a frozen dataclass in
which every field has a default:

| Field | Default |
| --- | --- |
| device name | `tun0` on Linux, `wintun` on Windows |
| address | `10.0.0.33` |
| netmask | `255.255.255.0` |
| gateway | `10.0.0.1` |
| DNS | `8.8.8.8` |
| MTU | 1500 |
| proxy | `127.0.0.1:1080` |
| IPv4 default route | on |
| IPv6 default route | off |

Address fields also accept strings. Use `dataclasses.replace` to derive a
modified copy.

```python
from ipaddress import ip_address, ip_network

from tproxyconf.args import TproxyArgs
from tproxyconf.linux import tproxy_setup, tproxy_remove

args = TproxyArgs(
    tun_name="tun0",
    proxy_addr=(ip_address("203.0.113.7"), 1080),
    bypass_ips=[ip_network("203.0.113.0/24")],
)

state = tproxy_setup(args)
try:
    ...  # run the proxy client that serves the TUN device
finally:
    tproxy_remove(state)
```

On Windows, import `tproxy_setup` and `tproxy_remove` from
`tproxyconf.windows` instead.

### Bypass routes

Each network in `bypass_ips` is routed through the original gateway. If
`bypass_ips` is empty and the proxy address is not private, a host route to
the proxy is added automatically.

### Default routes on Linux

When `ipv4_default_route` (or `ipv6_default_route`) is on, traffic is sent
through the device. If a default route already exists, this is done with two
half routes (`0.0.0.0/1` and `128.0.0.0/1`, or `::/1` and `8000::/1`).
Otherwise the default route itself is used.

When the option is off, the existing default route for that family is saved
and deleted, so that its traffic does not pass around the proxy.
`tproxy_remove` adds the saved route back.

### Other Linux options

- `gateway_mode=True` adds `iptables` masquerading and forwarding rules for
  the device. It also turns on IPv4 forwarding if it was off.
- `socket_fwmark` adds an `ip rule` that sends marked packets to the table
  `socket_fwmark_table` (default `"100"`). The current IPv4 default route is
  copied into that table.

### DNS on Linux

`/etc/resolv.conf` is replaced with a single `nameserver` line naming the
tunnel gateway. The package first tries a read-only bind mount. If that
fails, it writes the file directly and keeps the old contents so they can be
put back.

### DNS on Windows

`set_dns_server` sets the adapter's static DNS server with `netsh`.

### Removing the setup

`tproxy_remove(state)` does its work only once per state; later calls on the
same state return at once. Most individual failures during removal are logged
and skipped.

## Saving state across processes

`tproxy_setup` does not write the state anywhere. To let another process undo
the setup, store the state yourself:

```python
from tproxyconf.state import store_intermediate_state

store_intermediate_state(state)
```

Later, `tproxy_remove(None)` reads the saved state, undoes the setup and
deletes the file. It does nothing if no valid state file exists. You can also
load the state explicitly with `retrieve_intermediate_state()`, which raises
`FileNotFoundError` when there is no file.

`TproxyState.to_json()` and `TproxyState.from_json()` give the JSON form.
`TproxyArgs.to_dict()` and `TproxyArgs.from_dict()` give the mapping form.

`tproxyconf.common.get_state_file_path()` gives the file's location:

- on Linux, `$XDG_RUNTIME_DIR`, or the temporary directory if that is unset;
- on Windows, the temporary directory;
- on other systems, `/var/run`.

## Helpers

- `tproxyconf.private_ip.is_private_ip(ip)` tells whether an address is
  private, loopback, link-local or in the `198.18.0.0/15` range.
- `tproxyconf.linux.parse_routes(text, is_ipv6)` parses `ip route show`
  output into `(network, components)` pairs. `route_show`, `do_bypass_ip`,
  `get_route_components` and `restore_route` build on it.
- `tproxyconf.windows.parse_gateway_lines(text)` picks a gateway from
  one-address-per-line output. The first IPv4 address wins; otherwise the
  last IPv6 address is used.
- `tproxyconf.linux.get_default_gateway()` and
  `tproxyconf.windows.get_default_gateway()` return the default gateway
  address and interface name.
- `tproxyconf.common.run_command(command, args)` runs a program and returns
  its standard output.
- `tproxyconf.common.compare_version(v1, v2)` compares dotted version strings.

## Errors

A command that exits with a non-zero status raises
`tproxyconf.common.CommandError`, a subclass of `OSError`. A command that
cannot be started raises `OSError`.

## What it does not do

- There is no command-line tool; the package is a library.
- macOS is not supported.
- On Windows, DNS is set only through `netsh`, and the previous DNS setting
  is not restored on removal.