from __future__ import annotations

import asyncio
import ipaddress
import socket
from dataclasses import dataclass
from typing import Optional, Tuple

import aiohttp

from .addrgen import AddressGenerationError, EntropySource, SystemEntropy, parse_cidr, random_ipv6
from .config import ConfigError
from .resolvers import Ipv6Resolver, ResolveError, SystemResolver

__all__ = [
    "EgressError",
    "EgressDecision",
    "EgressResolver",
    "RotatingEgress",
    "FixedEgress",
]

DIAL_TIMEOUT = 30.0


class EgressError(Exception):
    pass


@dataclass(frozen=True)
class EgressDecision:
    """Local address chosen for one request. The source port is always left to the OS."""

    local_ip: str
    family: int
    target_ip: str = ""

    @property
    def local_addr(self) -> Tuple[str, int]:
        return (self.local_ip, 0)

    async def open_connection(
        self, host: str, port: int, timeout: float = DIAL_TIMEOUT
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.wait_for(
            asyncio.open_connection(host=host, port=port, family=self.family, local_addr=self.local_addr),
            timeout=timeout,
        )

    def connector(self) -> aiohttp.TCPConnector:
        # One connector per request; never pooled or shared.
        return aiohttp.TCPConnector(
            local_addr=self.local_addr,
            family=self.family,
            force_close=True,
            limit=1,
            ttl_dns_cache=None,
            use_dns_cache=False,
        )


class EgressResolver:
    mode = "base"

    async def resolve(self, host: str) -> EgressDecision:
        raise NotImplementedError

    def describe(self) -> str:
        return self.mode


class RotatingEgress(EgressResolver):
    """
    Fresh random IPv6 from `cidr` per request.

    The target's own IPv6 address is looked up for logging only; failing to find
    one fails the request.
    """

    mode = "rotation"

    def __init__(
        self,
        cidr: str,
        resolver: Optional[Ipv6Resolver] = None,
        entropy: Optional[EntropySource] = None,
    ) -> None:
        self.cidr = cidr
        self.resolver = resolver or SystemResolver()
        self.entropy = entropy or SystemEntropy()
        try:
            parse_cidr(cidr)
        except AddressGenerationError as e:
            raise ConfigError(str(e)) from e

    async def resolve(self, host: str) -> EgressDecision:
        try:
            target_ip = await self.resolver.resolve(host)
        except ResolveError as e:
            raise EgressError(f"resolving IPv6 of {host} failed: {e}") from e
        try:
            local = random_ipv6(self.cidr, self.entropy)
        except AddressGenerationError as e:
            raise EgressError(f"generating egress address in {self.cidr} failed: {e}") from e
        return EgressDecision(local_ip=str(local), family=socket.AF_INET6, target_ip=target_ip)

    def describe(self) -> str:
        return f"rotation cidr={self.cidr}"


class FixedEgress(EgressResolver):
    mode = "fixed"

    def __init__(self, ipv4: str) -> None:
        try:
            ip = ipaddress.IPv4Address((ipv4 or "").strip())
        except ValueError as e:
            raise ConfigError(f"invalid IPv4 egress address {ipv4!r}") from e
        self._decision = EgressDecision(local_ip=str(ip), family=socket.AF_INET)

    @property
    def ipv4(self) -> str:
        return self._decision.local_ip

    async def resolve(self, host: str) -> EgressDecision:
        return self._decision

    def describe(self) -> str:
        return f"fixed ipv4={self.ipv4}"
