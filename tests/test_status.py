import queue
import threading
import time

from ipv6egress.status import Health, format_status, humanize_bytes, humanize_duration, make_emitter, status_consumer


def test_humanize():
    assert humanize_bytes(512) == "512B"
    assert humanize_bytes(2048) == "2.0KB"
    assert humanize_bytes("junk") == "0B"
    assert humanize_duration(5) == "5s"
    assert humanize_duration(125) == "2m5s"
    assert humanize_duration(3725) == "1h2m5s"


def test_health_counts_events():
    h = Health()
    for evt in (
        {"type": "listener_started", "name": "random-ipv6", "addr": "0.0.0.0:100"},
        {"type": "tunnel_open", "egress": "2001:db8::1"},
        {"type": "tunnel_close", "up": 10, "down": 20},
        {"type": "http_forward", "egress": "192.0.2.1", "down": 5},
        {"type": "auth_fail"},
        {"type": "resolve_fail"},
        {"type": "dial_fail"},
        {"type": "upstream_fail"},
        {"type": "something_else"},
    ):
        h.apply(evt)
    assert h.listeners == {"random-ipv6": "0.0.0.0:100"}
    assert (h.tunnels_open, h.tunnels_total, h.http_total) == (0, 1, 1)
    assert (h.bytes_up, h.bytes_down) == (10, 25)
    assert (h.auth_failures, h.resolve_failures, h.dial_failures, h.upstream_failures) == (1, 1, 1, 1)
    assert h.last_egress == "192.0.2.1"
    line = format_status(h)
    assert "listeners=1" in line and "tunnels" in line and "192.0.2.1" in line
    h.apply({"type": "listener_stopped", "name": "random-ipv6"})
    assert "DOWN" in format_status(h)


def test_consumer_drains_emitted_events():
    q = queue.Queue()
    emit = make_emitter(q)
    h = Health()
    stop = threading.Event()
    t = threading.Thread(target=status_consumer, args=(q, h, stop), daemon=True)
    t.start()
    emit({"type": "tunnel_open", "egress": "2001:db8::2"})
    emit({"type": "dial_fail"})
    deadline = time.time() + 5
    while time.time() < deadline and h.dial_failures == 0:
        time.sleep(0.01)
    stop.set()
    t.join(timeout=5)
    assert h.tunnels_total == 1 and h.dial_failures == 1


def test_emitter_drops_when_full():
    q = queue.Queue(maxsize=1)
    emit = make_emitter(q)
    emit({"type": "auth_fail"})
    emit({"type": "auth_fail"})
    assert q.qsize() == 1
