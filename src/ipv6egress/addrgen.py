from __future__ import annotations

import ipaddress
import random
import secrets
import threading
from typing import Optional, Protocol

__all__ = [
    "AddressGenerationError",
    "EntropySource",
    "SystemEntropy",
    "SeededEntropy",
    "parse_cidr",
    "random_ipv6",
]


class AddressGenerationError(ValueError):
    pass


class EntropySource(Protocol):
    def token_bytes(self, n: int) -> bytes: ...


class SystemEntropy:
    """OS CSPRNG; safe to share between threads and tasks."""

    def token_bytes(self, n: int) -> bytes:
        return secrets.token_bytes(n)


class SeededEntropy:
    """
    Reproducible byte source for tests.
    A lock keeps concurrent callers from interleaving inside one draw.
    """

    def __init__(self, seed: int = 0) -> None:
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

    def token_bytes(self, n: int) -> bytes:
        with self._lock:
            return self._rng.randbytes(n)


_DEFAULT_ENTROPY = SystemEntropy()


def parse_cidr(cidr: str) -> ipaddress.IPv6Network:
    """Parse an IPv6 CIDR that leaves at least one host bit."""
    try:
        net = ipaddress.ip_network((cidr or "").strip(), strict=False)
    except ValueError as e:
        raise AddressGenerationError(f"invalid CIDR {cidr!r}: {e}") from e
    if net.max_prefixlen != 128:
        raise AddressGenerationError(f"CIDR {cidr!r} is not an IPv6 network (mask size {net.max_prefixlen})")
    if net.prefixlen >= 128:
        raise AddressGenerationError(f"CIDR {cidr!r} has no host bits")
    return net  # type: ignore[return-value]


def random_ipv6(cidr: str, entropy: Optional[EntropySource] = None) -> ipaddress.IPv6Address:
    """
    Draw a uniformly random host address from the IPv6 network `cidr`.

    Prefix bits are copied from the network address. A partial prefix byte keeps
    its high bits and takes random low bits through the mask 0xFF >> (prefix % 8);
    every byte after it is random.
    """
    net = parse_cidr(cidr)
    prefix = net.prefixlen
    src = entropy or _DEFAULT_ENTROPY

    buf = bytearray(net.network_address.packed)
    start = prefix // 8
    bit = prefix % 8
    if bit:
        mask = 0xFF >> bit
        rnd = src.token_bytes(1)[0]
        buf[start] = (buf[start] & ~mask & 0xFF) | (rnd & mask)
        start += 1
    tail = 16 - start
    if tail > 0:
        buf[start:] = src.token_bytes(tail)

    addr = ipaddress.IPv6Address(bytes(buf))
    if addr not in net:
        raise AddressGenerationError(f"generated address {addr} is outside {net}")
    return addr
