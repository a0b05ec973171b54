from __future__ import annotations

import logging
import os
import subprocess
from typing import List

# One-shot host network setup so random addresses from the CIDR can be bound locally.

logger = logging.getLogger("ipv6egress.sys")


class SystemSetupError(RuntimeError):
    pass


def _run(cmd: List[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, check=False)
    except FileNotFoundError as e:
        raise SystemSetupError(f"{cmd[0]} not found: {e}") from e


def ensure_root() -> None:
    if os.geteuid() != 0:
        raise SystemSetupError("root privileges are required for network setup (or disable the --auto-* flags)")


def add_v6_route(cidr: str) -> None:
    """Route the whole CIDR to the loopback device as local addresses."""
    ensure_root()
    res = _run(["ip", "route", "del", "local", cidr, "dev", "lo"])
    if res.returncode != 0:
        logger.debug("sys: no existing local route for %s (%s)", cidr, res.stderr.strip())
    res = _run(["ip", "route", "add", "local", cidr, "dev", "lo"])
    if res.returncode != 0:
        raise SystemSetupError(f"adding local route {cidr} failed: {res.stderr.strip()}")
    logger.info("sys: added local route %s dev lo", cidr)


def _sysctl(key: str, value: str) -> None:
    ensure_root()
    res = _run(["sysctl", "-w", f"{key}={value}"])
    if res.returncode != 0:
        raise SystemSetupError(f"sysctl {key}={value} failed: {res.stderr.strip()}")
    logger.info("sys: %s=%s", key, value)


def set_v6_forwarding() -> None:
    _sysctl("net.ipv6.conf.all.forwarding", "1")


def set_ip_nonlocal_bind() -> None:
    _sysctl("net.ipv6.ip_nonlocal_bind", "1")
