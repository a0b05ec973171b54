from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from .addrgen import EntropySource
from .config import ConfigError, ProxyConfig
from .egress import EgressResolver, FixedEgress, RotatingEgress
from .proxy_server import ProxyServer
from .resolvers import Ipv6Resolver, make_resolver

logger = logging.getLogger("ipv6egress.listeners")


@dataclass(frozen=True)
class ListenerSpec:
    name: str
    host: str
    port: int
    egress: EgressResolver
    # A fatal listener that cannot bind aborts startup; others are skipped with a log line
    fatal: bool = True


def build_listener_specs(
    cfg: ProxyConfig,
    resolver: Optional[Ipv6Resolver] = None,
    entropy: Optional[EntropySource] = None,
) -> List[ListenerSpec]:
    """
    Rotation listener on bind:random_ipv6_port when a CIDR is set, plus either one
    listener per multi-ipv4 entry (bound on that ipv4) or a single fixed listener
    on bind:real_ipv4_port. Raises ConfigError when no egress path exists.
    """
    specs: List[ListenerSpec] = []
    if cfg.cidr:
        rot = RotatingEgress(cfg.cidr, resolver=resolver or make_resolver(cfg.resolver), entropy=entropy)
        specs.append(ListenerSpec("random-ipv6", cfg.bind, cfg.random_ipv6_port, rot, fatal=True))

    if cfg.multi_ipv4:
        for entry in cfg.multi_ipv4:
            specs.append(
                ListenerSpec(f"ipv4-{entry.ipv4}:{entry.port}", entry.ipv4, entry.port, FixedEgress(entry.ipv4), fatal=False)
            )
    elif cfg.real_ipv4:
        specs.append(ListenerSpec("real-ipv4", cfg.bind, cfg.real_ipv4_port, FixedEgress(cfg.real_ipv4), fatal=True))

    if not specs:
        raise ConfigError("no egress configured: set a CIDR and/or --real-ipv4 / --multi-ipv4")
    return specs


class ListenerSet:
    """Independent proxy listeners sharing one event loop and the read-only config."""

    def __init__(
        self,
        specs: List[ListenerSpec],
        cfg: ProxyConfig,
        emit: Optional[Callable[[dict], None]] = None,
    ) -> None:
        if not specs:
            raise ConfigError("no listeners configured")
        self.specs = list(specs)
        self.servers: List[ProxyServer] = [
            ProxyServer(
                host=s.host,
                port=s.port,
                egress=s.egress,
                username=cfg.username,
                password=cfg.password,
                name=s.name,
                emit=emit,
                dial_timeout=cfg.dial_timeout,
                io_timeout=cfg.io_timeout,
                max_header_bytes=cfg.max_header_bytes,
                max_line_bytes=cfg.max_line_bytes,
                verbose=cfg.verbose,
            )
            for s in self.specs
        ]
        self.running: List[ProxyServer] = []

    async def start(self) -> None:
        for spec, srv in zip(self.specs, self.servers):
            try:
                await srv.start()
            except OSError as e:
                if spec.fatal:
                    logger.error("listeners: %s failed to bind %s:%d: %s", spec.name, spec.host, spec.port, e)
                    await self.stop()
                    raise
                logger.warning("listeners: %s stopped, cannot bind %s:%d: %s", spec.name, spec.host, spec.port, e)
                continue
            self.running.append(srv)
        if not self.running:
            raise OSError("no listener could be started")

    async def stop(self) -> None:
        servers, self.running = self.running, []
        await asyncio.gather(*(s.stop() for s in servers), return_exceptions=True)

    async def serve_until(self, stop_evt: threading.Event) -> None:
        await self.start()
        try:
            while not stop_evt.is_set():
                await asyncio.sleep(0.2)
        finally:
            await self.stop()


def run_listeners(
    stop_event: threading.Event,
    cfg: ProxyConfig,
    emit: Optional[Callable[[dict], None]] = None,
    specs: Optional[List[ListenerSpec]] = None,
) -> None:
    """
    Blocking entry-point: runs every configured listener until stop_event is set.
    """
    if specs is None:
        specs = build_listener_specs(cfg)
    listeners = ListenerSet(specs, cfg, emit=emit)
    asyncio.run(listeners.serve_until(stop_event))
