from __future__ import annotations

import asyncio
import ipaddress
import socket
from typing import Optional, Protocol

import aiohttp
import dns.asyncquery
import dns.exception
import dns.message
import dns.rcode
import dns.rdatatype

# IPv6 lookup collaborators used by rotation mode to log the target's address.
# Contract: literal IPv6 is returned as-is, literal IPv4 is rejected,
# hostnames are looked up for AAAA and fail when none exist.

__all__ = [
    "ResolveError",
    "Ipv6Resolver",
    "SystemResolver",
    "DohResolver",
    "DotResolver",
    "make_resolver",
]

DOH_URL = "https://cloudflare-dns.com/dns-query"
DOT_SERVER = "1.1.1.1"
DOT_PORT = 853
DOT_SERVER_NAME = "dns.cloudflare.com"
LOOKUP_TIMEOUT = 5.0
_TYPE_AAAA = 28


class ResolveError(Exception):
    pass


class Ipv6Resolver(Protocol):
    async def resolve(self, host: str) -> str: ...


def _literal(host: str) -> Optional[str]:
    """Return the canonical IPv6 text for a literal, None for hostnames; raise for IPv4 literals."""
    h = (host or "").strip().strip("[]")
    if not h:
        raise ResolveError("empty host")
    try:
        ip = ipaddress.ip_address(h)
    except ValueError:
        return None
    if ip.version != 6:
        raise ResolveError(f"address {h} is not an IPv6 address")
    return str(ip)


class SystemResolver:
    """getaddrinfo() restricted to AF_INET6."""

    async def resolve(self, host: str) -> str:
        lit = _literal(host)
        if lit is not None:
            return lit
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, None, family=socket.AF_INET6, type=socket.SOCK_STREAM)
        except (socket.gaierror, OSError) as e:
            raise ResolveError(f"lookup of {host} failed: {e}") from e
        for family, _t, _p, _c, sockaddr in infos:
            if family == socket.AF_INET6 and sockaddr:
                return str(ipaddress.IPv6Address(sockaddr[0].split("%", 1)[0]))
        raise ResolveError(f"no IPv6 address found for {host}")


class DohResolver:
    """DNS-over-HTTPS using the JSON API (application/dns-json)."""

    def __init__(self, url: str = DOH_URL, timeout: float = LOOKUP_TIMEOUT) -> None:
        self.url = url
        self.timeout = float(timeout)

    async def resolve(self, host: str) -> str:
        lit = _literal(host)
        if lit is not None:
            return lit
        params = {"name": host, "type": "AAAA"}
        headers = {"accept": "application/dns-json"}
        timeout_cfg = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout_cfg, trust_env=False) as session:
                async with session.get(self.url, params=params, headers=headers) as resp:
                    if resp.status != 200:
                        raise ResolveError(f"DoH query for {host} returned status {resp.status}")
                    payload = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ResolveError(f"DoH query for {host} timed out") from e
        except aiohttp.ClientError as e:
            raise ResolveError(f"DoH query for {host} failed: {e}") from e
        except ValueError as e:
            raise ResolveError(f"DoH response for {host} is not valid JSON: {e}") from e
        addr = first_aaaa_from_json(payload)
        if addr is None:
            raise ResolveError(f"no AAAA record found for {host}")
        return addr


def first_aaaa_from_json(payload: object) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for answer in payload.get("Answer") or []:
        if isinstance(answer, dict) and answer.get("type") == _TYPE_AAAA and answer.get("data"):
            return str(answer["data"])
    return None


class DotResolver:
    """DNS-over-TLS via dnspython."""

    def __init__(
        self,
        server: str = DOT_SERVER,
        port: int = DOT_PORT,
        server_name: str = DOT_SERVER_NAME,
        timeout: float = LOOKUP_TIMEOUT,
    ) -> None:
        self.server = server
        self.port = int(port)
        self.server_name = server_name
        self.timeout = float(timeout)

    async def resolve(self, host: str) -> str:
        lit = _literal(host)
        if lit is not None:
            return lit
        query = dns.message.make_query(host, dns.rdatatype.AAAA)
        try:
            resp = await dns.asyncquery.tls(
                query,
                self.server,
                timeout=self.timeout,
                port=self.port,
                server_hostname=self.server_name,
            )
        except (dns.exception.DNSException, OSError) as e:
            raise ResolveError(f"DoT query for {host} failed: {e}") from e
        if resp.rcode() != dns.rcode.NOERROR:
            raise ResolveError(f"DoT query for {host} failed: {dns.rcode.to_text(resp.rcode())}")
        for rrset in resp.answer:
            if rrset.rdtype == dns.rdatatype.AAAA:
                for rd in rrset:
                    return rd.to_text()
        raise ResolveError(f"no AAAA record found for {host}")


def make_resolver(kind: str) -> Ipv6Resolver:
    k = (kind or "system").strip().lower()
    if k == "doh":
        return DohResolver()
    if k == "dot":
        return DotResolver()
    if k == "system":
        return SystemResolver()
    raise ValueError(f"unknown resolver {kind!r} (expected system, doh or dot)")
