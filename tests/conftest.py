from __future__ import annotations

import asyncio
import socket
import struct
import sys
from dataclasses import replace
from typing import List, Optional

import pytest

from ipv6egress.config import ProxyConfig
from ipv6egress.resolvers import ResolveError

ENV_KEYS = (
    "IPV6EGRESS_CIDR",
    "IPV6EGRESS_RESOLVER",
    "IPV6EGRESS_BIND",
    "IPV6EGRESS_RANDOM_IPV6_PORT",
    "IPV6EGRESS_REAL_IPV4_PORT",
    "IPV6EGRESS_REAL_IPV4",
    "IPV6EGRESS_MULTI_IPV4",
    "IPV6EGRESS_USERNAME",
    "IPV6EGRESS_PASSWORD",
    "IPV6EGRESS_DIAL_TIMEOUT",
    "IPV6EGRESS_IO_TIMEOUT",
    "IPV6EGRESS_MAX_HEADER_BYTES",
    "IPV6EGRESS_MAX_LINE_BYTES",
    "IPV6EGRESS_AUTO_ROUTE",
    "IPV6EGRESS_AUTO_FORWARDING",
    "IPV6EGRESS_AUTO_IP_NONLOCAL_BIND",
    "IPV6EGRESS_VERBOSE",
    "IPV6EGRESS_LOG_LEVEL",
    "IPV6EGRESS_STATUS_INTERVAL_SECONDS",
)

linux_only = pytest.mark.skipif(not sys.platform.startswith("linux"), reason="needs the whole 127.0.0.0/8 on lo")


def _has_ipv6_loopback() -> bool:
    if not socket.has_ipv6:
        return False
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_STREAM) as s:
            s.bind(("::1", 0))
    except OSError:
        return False
    return True


ipv6_only = pytest.mark.skipif(not _has_ipv6_loopback(), reason="needs ::1")


BASE_CONFIG = ProxyConfig(
    cidr="",
    resolver="system",
    bind="127.0.0.1",
    random_ipv6_port=0,
    real_ipv4_port=0,
    real_ipv4="",
    multi_ipv4=(),
    username="",
    password="",
    dial_timeout=5.0,
    io_timeout=5.0,
    max_header_bytes=64 * 1024,
    max_line_bytes=8192,
    auto_route=False,
    auto_forwarding=False,
    auto_ip_nonlocal_bind=False,
    verbose=True,
    log_level="DEBUG",
    status_interval=0,
)


def make_config(**overrides) -> ProxyConfig:
    return replace(BASE_CONFIG, **overrides)


class StaticResolver:
    def __init__(self, answer: str = "2001:db8::53") -> None:
        self.answer = answer
        self.calls: List[str] = []

    async def resolve(self, host: str) -> str:
        self.calls.append(host)
        return self.answer


class FailingResolver:
    async def resolve(self, host: str) -> str:
        raise ResolveError(f"no IPv6 address found for {host}")


class EchoTarget:
    """TCP echo server recording peer addresses and when each connection ended.

    With reset_on_data the first received chunk is answered with a TCP reset.
    """

    def __init__(
        self,
        greeting: bytes = b"",
        close_after_greeting: bool = False,
        host: str = "127.0.0.1",
        reset_on_data: bool = False,
    ) -> None:
        self.host = host
        self.reset_on_data = reset_on_data
        self.greeting = greeting
        self.close_after_greeting = close_after_greeting
        self.peers: List[str] = []
        self.closed = asyncio.Event()
        self.server: Optional[asyncio.Server] = None

    async def _handle(self, r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        self.peers.append(w.get_extra_info("peername")[0])
        try:
            if self.greeting:
                w.write(self.greeting)
                await w.drain()
            if self.close_after_greeting:
                return
            while True:
                data = await r.read(65536)
                if not data:
                    break
                if self.reset_on_data:
                    sock = w.get_extra_info("socket")
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
                    w.transport.abort()
                    return
                w.write(data)
                await w.drain()
        except (ConnectionError, OSError):
            pass
        finally:
            w.close()
            self.closed.set()

    async def start(self) -> int:
        self.server = await asyncio.start_server(self._handle, self.host, 0)
        return self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()


@pytest.fixture
async def echo_target():
    target = EchoTarget()
    port = await target.start()
    yield target, port
    await target.stop()


@pytest.fixture
def closed_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    return monkeypatch
