"""Shared defaults, command execution and small helpers."""

from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
import tempfile
from collections.abc import Iterable
from ipaddress import IPv4Address
from itertools import repeat, zip_longest
from pathlib import Path

logger = logging.getLogger(__name__)

if sys.platform.startswith("linux"):
    TUN_NAME = "tun0"
elif sys.platform == "win32":
    TUN_NAME = "wintun"
elif sys.platform == "darwin":
    TUN_NAME = "utun5"
else:
    TUN_NAME = "unknown-tun"

TUN_MTU = 1500
PROXY_ADDR = (IPv4Address("127.0.0.1"), 1080)
TUN_IPV4 = IPv4Address("10.0.0.33")
TUN_NETMASK = IPv4Address("255.255.255.0")
TUN_GATEWAY = IPv4Address("10.0.0.1")
TUN_DNS = IPv4Address("8.8.8.8")
SOCKET_FWMARK_TABLE = "100"

ETC_RESOLV_CONF_FILE = "/etc/resolv.conf"
STATE_FILE_NAME = "tproxy_config_restore_state.json"

_I32_RE = re.compile(r"[+-]?[0-9]+")
_I32_MIN = -(2**31)
_I32_MAX = 2**31 - 1


class CommandError(OSError):
    """A command ran but exited with a failing status."""


def run_command(command: str, args: Iterable[str]) -> bytes:
    """Run ``command`` with ``args`` and return its standard output.

    Raises ``OSError`` when the command cannot be started and
    ``CommandError`` when it exits with a non-zero status.
    """
    args = list(args)
    full_cmd = f"{command} {' '.join(args)}"
    logger.debug('Running command: "%s"...', full_cmd)
    try:
        out = subprocess.run([command, *args], capture_output=True, check=False)
    except OSError as exc:
        logger.debug('Run command: "%s" failed with: %s', full_cmd, exc)
        raise
    if out.returncode != 0:
        err = (out.stderr or out.stdout).decode("utf-8", errors="replace")
        info = f'Run command: "{full_cmd}" failed with {err}'
        logger.debug("%s", info)
        raise CommandError(info)
    return out.stdout


def get_state_file_path() -> Path:
    """Return where the restore state is kept for the current platform."""
    if sys.platform.startswith("linux"):
        runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
        if runtime_dir is not None:
            return Path(runtime_dir) / STATE_FILE_NAME
        return Path(tempfile.gettempdir()) / STATE_FILE_NAME
    if sys.platform == "win32":
        return Path(tempfile.gettempdir()) / STATE_FILE_NAME
    return Path("/var/run") / STATE_FILE_NAME


def _parse_i32(part: str) -> int | None:
    if not _I32_RE.fullmatch(part):
        return None
    value = int(part)
    if not _I32_MIN <= value <= _I32_MAX:
        return None
    return value


def compare_version(v1: str, v2: str) -> int:
    """Compare two dotted version strings.

    Returns 1 if ``v1 > v2``, -1 if ``v1 < v2`` and 0 if they are equal.
    Components that are not integers are ignored; the shorter list is
    padded with zeros.
    """
    pad = abs(len(v1) - len(v2))

    def split_parse(ver: str) -> list[int]:
        parts = [n for n in map(_parse_i32, ver.split(".")) if n is not None]
        parts.extend(repeat(0, pad))
        return parts

    for a, b in zip(split_parse(v1), split_parse(v2)):
        if a != b:
            return 1 if a > b else -1
    return 0


__all__ = [
    "CommandError",
    "ETC_RESOLV_CONF_FILE",
    "PROXY_ADDR",
    "SOCKET_FWMARK_TABLE",
    "STATE_FILE_NAME",
    "TUN_DNS",
    "TUN_GATEWAY",
    "TUN_IPV4",
    "TUN_MTU",
    "TUN_NAME",
    "TUN_NETMASK",
    "compare_version",
    "get_state_file_path",
    "run_command",
]

# zip_longest kept available for callers comparing unequal sequences
del zip_longest