from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass
from typing import List, Tuple

from .addrgen import AddressGenerationError, parse_cidr


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class FixedEgressConfig:
    ipv4: str
    port: int


@dataclass(frozen=True)
class ProxyConfig:
    # Rotation egress
    cidr: str
    resolver: str
    # Listen config
    bind: str
    random_ipv6_port: int
    real_ipv4_port: int
    # Fixed IPv4 egress (single, or several ip:port listeners)
    real_ipv4: str
    multi_ipv4: Tuple[FixedEgressConfig, ...]
    # Basic proxy auth; disabled when either is empty
    username: str
    password: str
    # Timeouts and request limits
    dial_timeout: float
    io_timeout: float
    max_header_bytes: int
    max_line_bytes: int
    # Host network setup at startup
    auto_route: bool
    auto_forwarding: bool
    auto_ip_nonlocal_bind: bool
    # Logging / status
    verbose: bool
    log_level: str
    status_interval: float


def _env_bool(key: str, default: str) -> bool:
    return os.environ.get(key, default).strip().lower() not in ("0", "false", "no", "off", "")


def parse_multi_ipv4(value: str, default_port: int) -> Tuple[FixedEgressConfig, ...]:
    """
    Parse "ip1:port1,ip2:port2". An empty port falls back to `default_port`;
    entries with an empty ip, a bad port or the wrong shape are skipped.
    """
    out: List[FixedEgressConfig] = []
    for pair in (value or "").split(","):
        parts = pair.strip().split(":")
        if len(parts) != 2 or not parts[0].strip():
            continue
        port = int(default_port)
        port_s = parts[1].strip()
        if port_s:
            try:
                port = int(port_s)
            except ValueError:
                continue
            if not (0 < port <= 65535):
                continue
        out.append(FixedEgressConfig(ipv4=parts[0].strip(), port=port))
    return tuple(out)


def load_config_from_env() -> ProxyConfig:
    cidr = os.environ.get("IPV6EGRESS_CIDR", "").strip()
    resolver = os.environ.get("IPV6EGRESS_RESOLVER", "system").strip().lower()

    bind = os.environ.get("IPV6EGRESS_BIND", "0.0.0.0")
    random_ipv6_port = int(os.environ.get("IPV6EGRESS_RANDOM_IPV6_PORT", "100"))
    real_ipv4_port = int(os.environ.get("IPV6EGRESS_REAL_IPV4_PORT", "101"))

    real_ipv4 = os.environ.get("IPV6EGRESS_REAL_IPV4", "").strip()
    multi_ipv4 = parse_multi_ipv4(os.environ.get("IPV6EGRESS_MULTI_IPV4", ""), real_ipv4_port)

    username = os.environ.get("IPV6EGRESS_USERNAME", "")
    password = os.environ.get("IPV6EGRESS_PASSWORD", "")

    dial_timeout = float(os.environ.get("IPV6EGRESS_DIAL_TIMEOUT", "30"))
    io_timeout = float(os.environ.get("IPV6EGRESS_IO_TIMEOUT", "30"))
    max_header_bytes = int(os.environ.get("IPV6EGRESS_MAX_HEADER_BYTES", str(64 * 1024)))
    max_line_bytes = int(os.environ.get("IPV6EGRESS_MAX_LINE_BYTES", "8192"))

    auto_route = _env_bool("IPV6EGRESS_AUTO_ROUTE", "1")
    auto_forwarding = _env_bool("IPV6EGRESS_AUTO_FORWARDING", "1")
    auto_ip_nonlocal_bind = _env_bool("IPV6EGRESS_AUTO_IP_NONLOCAL_BIND", "1")

    verbose = _env_bool("IPV6EGRESS_VERBOSE", "0")
    log_level = os.environ.get("IPV6EGRESS_LOG_LEVEL", "INFO").strip().upper()
    status_interval = float(os.environ.get("IPV6EGRESS_STATUS_INTERVAL_SECONDS", "30"))

    return ProxyConfig(
        cidr=cidr,
        resolver=resolver,
        bind=bind,
        random_ipv6_port=random_ipv6_port,
        real_ipv4_port=real_ipv4_port,
        real_ipv4=real_ipv4,
        multi_ipv4=multi_ipv4,
        username=username,
        password=password,
        dial_timeout=dial_timeout,
        io_timeout=io_timeout,
        max_header_bytes=max_header_bytes,
        max_line_bytes=max_line_bytes,
        auto_route=auto_route,
        auto_forwarding=auto_forwarding,
        auto_ip_nonlocal_bind=auto_ip_nonlocal_bind,
        verbose=verbose,
        log_level=log_level,
        status_interval=status_interval,
    )


def validate_config(cfg: ProxyConfig) -> None:
    """Raise ConfigError unless cfg describes at least one usable egress path."""
    if cfg.cidr:
        try:
            parse_cidr(cfg.cidr)
        except AddressGenerationError as e:
            raise ConfigError(str(e)) from e
    if cfg.resolver not in ("system", "doh", "dot"):
        raise ConfigError(f"unknown resolver {cfg.resolver!r} (expected system, doh or dot)")

    fixed = [e.ipv4 for e in cfg.multi_ipv4] or ([cfg.real_ipv4] if cfg.real_ipv4 else [])
    for ip in fixed:
        try:
            ipaddress.IPv4Address(ip)
        except ValueError as e:
            raise ConfigError(f"invalid IPv4 egress address {ip!r}") from e

    if not cfg.cidr and not fixed:
        raise ConfigError("no egress configured: set a CIDR and/or --real-ipv4 / --multi-ipv4")
    for port in [cfg.random_ipv6_port, cfg.real_ipv4_port] + [e.port for e in cfg.multi_ipv4]:
        if not (0 <= int(port) <= 65535):
            raise ConfigError(f"invalid port {port}")
