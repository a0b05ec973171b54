from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict

from colorama import Fore, Style, init as colorama_init

colorama_init(autoreset=True)
logger = logging.getLogger("ipv6egress.status")

__all__ = [
    "Health",
    "humanize_bytes",
    "humanize_duration",
    "make_emitter",
    "status_consumer",
    "status_ticker",
]


def humanize_bytes(n: int) -> str:
    try:
        n = int(n)
    except (TypeError, ValueError):
        return "0B"
    units = ["B", "KB", "MB", "GB", "TB"]
    f = float(n)
    u = 0
    while f >= 1024.0 and u < len(units) - 1:
        f /= 1024.0
        u += 1
    if u == 0:
        return f"{int(f)}{units[u]}"
    return f"{f:.1f}{units[u]}"


def humanize_duration(seconds: float) -> str:
    try:
        s = float(seconds)
    except (TypeError, ValueError):
        s = 0.0
    s = max(0.0, s)
    m, s = divmod(int(round(s)), 60)
    h, m = divmod(m, 60)
    if h:
        return f"{h}h{m}m{s}s"
    if m:
        return f"{m}m{s}s"
    return f"{s}s"


@dataclass
class Health:
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    started_at: float = field(default_factory=time.time)
    # Listener name -> "host:port"
    listeners: Dict[str, str] = field(default_factory=dict)
    tunnels_open: int = 0
    tunnels_total: int = 0
    http_total: int = 0
    auth_failures: int = 0
    resolve_failures: int = 0
    dial_failures: int = 0
    upstream_failures: int = 0
    bytes_up: int = 0
    bytes_down: int = 0
    last_egress: str = ""

    def apply(self, evt: dict) -> None:
        typ = evt.get("type")
        with self.lock:
            if typ == "listener_started":
                self.listeners[str(evt.get("name") or "?")] = str(evt.get("addr") or "")
            elif typ == "listener_stopped":
                self.listeners.pop(str(evt.get("name") or "?"), None)
            elif typ == "tunnel_open":
                self.tunnels_open += 1
                self.tunnels_total += 1
                self.last_egress = str(evt.get("egress") or self.last_egress)
            elif typ == "tunnel_close":
                self.tunnels_open = max(0, self.tunnels_open - 1)
                self.bytes_up += int(evt.get("up") or 0)
                self.bytes_down += int(evt.get("down") or 0)
            elif typ == "http_forward":
                self.http_total += 1
                self.bytes_down += int(evt.get("down") or 0)
                self.last_egress = str(evt.get("egress") or self.last_egress)
            elif typ == "auth_fail":
                self.auth_failures += 1
            elif typ == "resolve_fail":
                self.resolve_failures += 1
            elif typ == "dial_fail":
                self.dial_failures += 1
            elif typ == "upstream_fail":
                self.upstream_failures += 1
            # Other event types are informational


def make_emitter(status_q: "queue.Queue[dict]") -> Callable[[dict], None]:
    def emit(evt: dict) -> None:
        try:
            status_q.put_nowait(evt)
        except queue.Full:
            pass

    return emit


def status_consumer(status_q: "queue.Queue[dict]", health: Health, stop_evt: threading.Event) -> None:
    while not stop_evt.is_set():
        try:
            evt = status_q.get(timeout=1.0)
        except queue.Empty:
            continue
        if isinstance(evt, dict):
            health.apply(evt)


def format_status(health: Health) -> str:
    with health.lock:
        listeners = len(health.listeners)
        tunnels_open = health.tunnels_open
        tunnels_total = health.tunnels_total
        http_total = health.http_total
        auth_f = health.auth_failures
        resolve_f = health.resolve_failures
        dial_f = health.dial_failures
        upstream_f = health.upstream_failures
        up = health.bytes_up
        down = health.bytes_down
        last_egress = health.last_egress
        started = health.started_at

    state = (Fore.GREEN + f"UP listeners={listeners}" + Style.RESET_ALL) if listeners else (Fore.RED + "DOWN" + Style.RESET_ALL)
    return (
        f"{state} uptime={humanize_duration(time.time() - started)} "
        f"| {Fore.CYAN}tunnels{Style.RESET_ALL}={tunnels_open}/{tunnels_total} "
        f"| {Fore.YELLOW}http{Style.RESET_ALL}={http_total} "
        f"| {Fore.MAGENTA}fail{Style.RESET_ALL}=auth:{auth_f} resolve:{resolve_f} dial:{dial_f} upstream:{upstream_f} "
        f"| {Fore.BLUE}bytes{Style.RESET_ALL}=up:{humanize_bytes(up)} down:{humanize_bytes(down)} "
        f"| last_egress={last_egress or '-'}"
    )


def status_ticker(health: Health, stop_evt: threading.Event, interval_s: float) -> None:
    if interval_s <= 0:
        return
    while not stop_evt.wait(interval_s):
        logger.info(format_status(health))
