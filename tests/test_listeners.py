import asyncio

import pytest

from conftest import StaticResolver, make_config
from ipv6egress.config import ConfigError, FixedEgressConfig
from ipv6egress.egress import FixedEgress, RotatingEgress
from ipv6egress.listeners import ListenerSet, ListenerSpec, build_listener_specs


def test_rotation_plus_single_fixed_listener():
    cfg = make_config(cidr="2001:db8::/32", real_ipv4="192.0.2.10", random_ipv6_port=100, real_ipv4_port=101)
    specs = build_listener_specs(cfg, resolver=StaticResolver())
    assert [(s.name, s.host, s.port) for s in specs] == [
        ("random-ipv6", "127.0.0.1", 100),
        ("real-ipv4", "127.0.0.1", 101),
    ]
    assert isinstance(specs[0].egress, RotatingEgress)
    assert isinstance(specs[1].egress, FixedEgress) and specs[1].egress.ipv4 == "192.0.2.10"


def test_multi_ipv4_listeners_bind_on_their_own_address():
    cfg = make_config(
        cidr="2001:db8::/32",
        real_ipv4="192.0.2.99",
        multi_ipv4=(FixedEgressConfig("192.0.2.1", 3001), FixedEgressConfig("192.0.2.2", 3002)),
    )
    specs = build_listener_specs(cfg, resolver=StaticResolver())
    assert [(s.host, s.port, s.fatal) for s in specs[1:]] == [("192.0.2.1", 3001, False), ("192.0.2.2", 3002, False)]
    assert [s.egress.ipv4 for s in specs[1:]] == ["192.0.2.1", "192.0.2.2"]


def test_multi_ipv4_same_address_on_two_ports_gets_distinct_names():
    cfg = make_config(multi_ipv4=(FixedEgressConfig("192.0.2.1", 3001), FixedEgressConfig("192.0.2.1", 3002)))
    names = [s.name for s in build_listener_specs(cfg)]
    assert names == ["ipv4-192.0.2.1:3001", "ipv4-192.0.2.1:3002"]


def test_fixed_only_configuration():
    specs = build_listener_specs(make_config(real_ipv4="192.0.2.10"))
    assert len(specs) == 1 and isinstance(specs[0].egress, FixedEgress)


def test_no_egress_path_is_fatal_before_binding():
    with pytest.raises(ConfigError):
        build_listener_specs(make_config())


def test_invalid_fixed_address_is_fatal():
    with pytest.raises(ConfigError):
        build_listener_specs(make_config(cidr="2001:db8::/32", real_ipv4="nope"))


async def _connect_ok(host: str, port: int, target_port: int) -> bytes:
    r, w = await asyncio.open_connection(host, port)
    w.write(f"CONNECT 127.0.0.1:{target_port} HTTP/1.1\r\n\r\n".encode())
    await w.drain()
    line = await asyncio.wait_for(r.readline(), 5)
    w.close()
    return line


async def test_listener_set_runs_independent_listeners(echo_target):
    _, target_port = echo_target
    cfg = make_config()
    specs = [
        ListenerSpec("a", "127.0.0.1", 0, FixedEgress("127.0.0.1")),
        ListenerSpec("b", "127.0.0.1", 0, FixedEgress("127.0.0.1"), fatal=False),
    ]
    listeners = ListenerSet(specs, cfg)
    await listeners.start()
    try:
        assert len(listeners.running) == 2
        for srv in listeners.running:
            host, port = srv.address
            assert (await _connect_ok(host, port, target_port)).startswith(b"HTTP/1.1 200")
    finally:
        await listeners.stop()
    assert listeners.running == []


async def test_non_fatal_listener_that_cannot_bind_is_skipped():
    cfg = make_config()
    specs = [
        ListenerSpec("ok", "127.0.0.1", 0, FixedEgress("127.0.0.1")),
        # TEST-NET-1 address is not assigned locally
        ListenerSpec("unbindable", "192.0.2.1", 0, FixedEgress("192.0.2.1"), fatal=False),
    ]
    listeners = ListenerSet(specs, cfg)
    await listeners.start()
    try:
        assert [s.name for s in listeners.running] == ["ok"]
    finally:
        await listeners.stop()


async def test_fatal_listener_that_cannot_bind_aborts_startup():
    cfg = make_config()
    specs = [
        ListenerSpec("ok", "127.0.0.1", 0, FixedEgress("127.0.0.1")),
        ListenerSpec("unbindable", "192.0.2.1", 0, FixedEgress("192.0.2.1"), fatal=True),
    ]
    listeners = ListenerSet(specs, cfg)
    with pytest.raises(OSError):
        await listeners.start()
    assert listeners.running == []
