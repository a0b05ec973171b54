from __future__ import annotations

import argparse
import logging
import os
import queue
import signal
import threading
import time
from typing import List, Optional

# Keep main minimal: wire-up config, host setup, listeners, status
from .config import ConfigError, ProxyConfig, load_config_from_env, validate_config
from .listeners import ListenerSpec, build_listener_specs, run_listeners
from .status import Health, make_emitter, status_consumer, status_ticker
from .sysutils import SystemSetupError, add_v6_route, set_ip_nonlocal_bind, set_v6_forwarding

logger = logging.getLogger("ipv6egress.main")
if not logger.handlers:
    logging.basicConfig(
        level=os.environ.get("IPV6EGRESS_LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(processName)s(%(process)d)/%(threadName)s: %(message)s",
    )


def _parse_cli_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    CLI to override environment variables. Precedence: CLI > env > defaults.
    """
    ap = argparse.ArgumentParser(
        prog="ipv6egress",
        description="Forward proxy that egresses from a random IPv6 in a CIDR, or from fixed IPv4 addresses.",
    )
    # Only set values when flags are provided (no default), so env/defaults remain if omitted.
    ap.add_argument("--cidr", dest="cidr", help="IPv6 CIDR to draw egress addresses from (IPV6EGRESS_CIDR)")
    ap.add_argument("--bind", dest="bind", help="Listen address (IPV6EGRESS_BIND, default 0.0.0.0)")
    ap.add_argument("--random-ipv6-port", dest="random_ipv6_port", type=int, help="Rotation listener port (default 100)")
    ap.add_argument("--real-ipv4-port", dest="real_ipv4_port", type=int, help="Fixed IPv4 listener port (default 101)")
    ap.add_argument("--real-ipv4", dest="real_ipv4", help="Fixed IPv4 egress address")
    ap.add_argument("--multi-ipv4", dest="multi_ipv4", help="Several fixed IPv4 egresses: ip1:port1,ip2:port2")
    ap.add_argument("--username", dest="username", help="Basic proxy auth username")
    ap.add_argument("--password", dest="password", help="Basic proxy auth password")
    ap.add_argument("--resolver", dest="resolver", choices=("system", "doh", "dot"), help="Target IPv6 lookup (default system)")
    ap.add_argument("--verbose", dest="verbose", action="store_const", const="1", help="Verbose per-connection logging")
    ap.add_argument("--log-level", dest="log_level", help="Override IPV6EGRESS_LOG_LEVEL (e.g., WARNING, INFO)")
    ap.add_argument("--status-interval", dest="status_interval", type=float, help="Status line interval in seconds (0 = off)")
    for flag, attr in (
        ("auto-route", "auto_route"),
        ("auto-forwarding", "auto_forwarding"),
        ("auto-ip-nonlocal-bind", "auto_ip_nonlocal_bind"),
    ):
        ap.add_argument(f"--{flag}", dest=attr, action="store_const", const="1")
        ap.add_argument(f"--no-{flag}", dest=attr, action="store_const", const="0")
    return ap.parse_args(argv)


_CLI_TO_ENV = {
    "cidr": "IPV6EGRESS_CIDR",
    "bind": "IPV6EGRESS_BIND",
    "random_ipv6_port": "IPV6EGRESS_RANDOM_IPV6_PORT",
    "real_ipv4_port": "IPV6EGRESS_REAL_IPV4_PORT",
    "real_ipv4": "IPV6EGRESS_REAL_IPV4",
    "multi_ipv4": "IPV6EGRESS_MULTI_IPV4",
    "username": "IPV6EGRESS_USERNAME",
    "password": "IPV6EGRESS_PASSWORD",
    "resolver": "IPV6EGRESS_RESOLVER",
    "verbose": "IPV6EGRESS_VERBOSE",
    "log_level": "IPV6EGRESS_LOG_LEVEL",
    "status_interval": "IPV6EGRESS_STATUS_INTERVAL_SECONDS",
    "auto_route": "IPV6EGRESS_AUTO_ROUTE",
    "auto_forwarding": "IPV6EGRESS_AUTO_FORWARDING",
    "auto_ip_nonlocal_bind": "IPV6EGRESS_AUTO_IP_NONLOCAL_BIND",
}


def apply_cli_to_env(args: argparse.Namespace) -> None:
    for attr, env_key in _CLI_TO_ENV.items():
        if getattr(args, attr, None) is not None:
            os.environ[env_key] = str(getattr(args, attr))


def _configure_logging(cfg: ProxyConfig) -> None:
    level = "DEBUG" if cfg.verbose else cfg.log_level
    logging.getLogger().setLevel(level)


def _setup_host(cfg: ProxyConfig) -> None:
    if cfg.auto_forwarding:
        set_v6_forwarding()
    if cfg.auto_route and cfg.cidr:
        add_v6_route(cfg.cidr)
    if cfg.auto_ip_nonlocal_bind:
        set_ip_nonlocal_bind()


def _describe(specs: List[ListenerSpec]) -> str:
    return ", ".join(f"{s.name}@{s.host}:{s.port}({s.egress.describe()})" for s in specs)


def main(argv: Optional[List[str]] = None) -> int:
    # Parse CLI and map provided flags to environment variables before loading config.
    apply_cli_to_env(_parse_cli_args(argv))
    try:
        cfg = load_config_from_env()
        _configure_logging(cfg)
        validate_config(cfg)
        specs = build_listener_specs(cfg)
    except (ConfigError, ValueError) as e:
        logger.error("config: %s", e)
        return 2

    try:
        _setup_host(cfg)
    except SystemSetupError as e:
        logger.error("sys: %s", e)
        return 1

    logger.info(
        "config: cidr='%s' resolver=%s auth=%s listeners=[%s] status_interval=%ss",
        cfg.cidr or "-",
        cfg.resolver,
        "on" if (cfg.username and cfg.password) else "off",
        _describe(specs),
        cfg.status_interval,
    )

    stop = threading.Event()

    def handle_signal(signum, _frame):
        logger.info("signal %s received, shutting down", signum)
        stop.set()

    for sig in ("SIGINT", "SIGTERM"):
        if hasattr(signal, sig):
            signal.signal(getattr(signal, sig), handle_signal)

    status_q: "queue.Queue[dict]" = queue.Queue(maxsize=10000)
    health = Health()
    consumer_t = threading.Thread(target=status_consumer, name="status-consumer", args=(status_q, health, stop), daemon=True)
    ticker_t = threading.Thread(target=status_ticker, name="status-ticker", args=(health, stop, cfg.status_interval), daemon=True)

    failure: List[BaseException] = []

    def _proxy_thread():
        try:
            run_listeners(stop, cfg, emit=make_emitter(status_q), specs=specs)
        except Exception as e:
            logger.exception("listeners: failed: %s", e)
            failure.append(e)
        finally:
            stop.set()

    proxy_t = threading.Thread(target=_proxy_thread, name="proxy", daemon=True)

    consumer_t.start()
    if cfg.status_interval > 0:
        ticker_t.start()
    proxy_t.start()

    try:
        while not stop.is_set():
            time.sleep(0.5)
    except KeyboardInterrupt:
        stop.set()

    proxy_t.join(timeout=5.0)
    logger.info("stopped")
    return 1 if failure else 0


if __name__ == "__main__":
    raise SystemExit(main())
