from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from http import HTTPStatus
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urlsplit

import aiohttp

from .auth import PROXY_AUTHENTICATE, check_auth
from .egress import DIAL_TIMEOUT, EgressDecision, EgressError, EgressResolver

# Forward proxy whose outbound connections are bound to a chosen egress address.
# - CONNECT: dial target from the egress address, then relay raw bytes (no MITM).
# - Plain HTTP: one aiohttp transport per request, pinned to the egress address.
# - One request per inbound connection for plain HTTP; responses carry Connection: close.

logger = logging.getLogger("ipv6egress.tunnel")
if not logger.handlers:
    logging.basicConfig(
        level=os.environ.get("IPV6EGRESS_LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(processName)s(%(process)d)/%(threadName)s: %(message)s",
    )

# Peer went away; normal end of a relay, not worth an error line.
_EXPECTED_CLOSE = (
    ConnectionResetError,
    ConnectionAbortedError,
    BrokenPipeError,
    asyncio.IncompleteReadError,
)

_HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-connection",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


def _new_cid() -> str:
    n = time.time_ns() ^ os.getpid() ^ threading.get_ident()
    return f"{n & 0xFFFFFFFFFFFF:012x}"


def _close_writer(w: asyncio.StreamWriter) -> None:
    # Safe to call any number of times from either relay direction.
    if not w.is_closing():
        w.close()


class ProxyServer:
    """
    Inbound HTTP/1.1 proxy listener wired to one egress resolver.

    HTTPS: CONNECT tunnels dialed from the egress address.
    HTTP:  absolute-form (or Host-based origin-form) requests forwarded through a
           per-request transport bound to the egress address.
    """

    def __init__(
        self,
        host: str,
        port: int,
        egress: EgressResolver,
        username: str = "",
        password: str = "",
        name: str = "proxy",
        emit: Optional[Callable[[dict], None]] = None,
        dial_timeout: float = DIAL_TIMEOUT,
        io_timeout: float = 30.0,
        max_header_bytes: int = 64 * 1024,
        max_line_bytes: int = 8192,
        verbose: bool = False,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.egress = egress
        self.username = username or ""
        self.password = password or ""
        self.name = name
        self.emit = emit
        self.dial_timeout = float(dial_timeout)
        self.io_timeout = float(io_timeout)
        self.max_header_bytes = int(max_header_bytes)
        self.max_line_bytes = int(max_line_bytes)
        self.verbose = bool(verbose)
        self._server: Optional[asyncio.Server] = None
        # Track active client handler tasks for graceful shutdown
        self._client_tasks: Set[asyncio.Task] = set()

    def _emit(self, evt: dict) -> None:
        if self.emit is None:
            return
        evt.setdefault("listener", self.name)
        self.emit(evt)

    @property
    def address(self) -> Tuple[str, int]:
        """Actual bound (host, port); useful when started with port 0."""
        if self._server and self._server.sockets:
            sockname = self._server.sockets[0].getsockname()
            return sockname[0], sockname[1]
        return self.host, self.port

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port, start_serving=True)
        addrs = ", ".join(str(s.getsockname()) for s in (self._server.sockets or []))
        logger.info("tunnel: %s listening on %s (%s)", self.name, addrs, self.egress.describe())
        host, port = self.address
        self._emit({"type": "listener_started", "name": self.name, "addr": f"{host}:{port}"})

    async def stop(self) -> None:
        srv = self._server
        if srv:
            srv.close()
            await srv.wait_closed()
            self._server = None
            self._emit({"type": "listener_stopped", "name": self.name})
        # Cancel and await active client tasks to avoid "Task was destroyed but it is pending!"
        tasks = list(self._client_tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        cid = _new_cid()
        version = "HTTP/1.1"
        cur = asyncio.current_task()
        if cur is not None:
            self._client_tasks.add(cur)
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=self.io_timeout)
            if not line:
                return
            if len(line) > self.max_line_bytes:
                await self._respond(writer, version, 414)
                return
            req_line = line.decode("latin1", "replace").rstrip("\r\n")
            parts = req_line.split(" ")
            if len(parts) != 3:
                if self.verbose:
                    logger.info("tunnel[%s]: reject peer=%s reason=bad_request_line line=%r", cid, peer, req_line[:256])
                await self._respond(writer, version, 400)
                return
            method, target, version = parts[0].upper(), parts[1], parts[2]
            if not version.upper().startswith("HTTP/1."):
                version = "HTTP/1.1"
                await self._respond(writer, version, 505)
                return
            if self.verbose:
                logger.info("tunnel[%s]: accept peer=%s %s %s %s", cid, peer, method, target, version)

            headers: List[str] = []
            total = len(line)
            while True:
                h = await asyncio.wait_for(reader.readline(), timeout=self.io_timeout)
                if not h:
                    break
                total += len(h)
                if total > self.max_header_bytes:
                    await self._respond(writer, version, 431)
                    return
                if h in (b"\r\n", b"\n"):
                    break
                headers.append(h.decode("latin1", "replace").rstrip("\r\n"))

            hdr_map: Dict[str, str] = {}
            for h in headers:
                if ":" in h:
                    k, v = h.split(":", 1)
                    hdr_map[k.strip().lower()] = v.strip()

            if method == "CONNECT":
                await self._handle_connect(target, version, hdr_map, reader, writer, cid=cid)
            else:
                await self._handle_http(method, target, version, headers, hdr_map, reader, writer, cid=cid)
        except asyncio.TimeoutError:
            if self.verbose:
                logger.info("tunnel[%s]: client_timeout peer=%s", cid, peer)
            await self._respond(writer, version, 408)
        except _EXPECTED_CLOSE as e:
            logger.debug("tunnel[%s]: client closed peer=%s err=%r", cid, peer, e)
        except Exception as e:
            logger.warning("tunnel[%s]: client error peer=%s err=%s", cid, peer, e)
            await self._respond(writer, version, 400)
        finally:
            _close_writer(writer)
            try:
                await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
            except (OSError, asyncio.TimeoutError):
                pass
            if cur is not None:
                self._client_tasks.discard(cur)

    def _log_egress(self, cid: str, kind: str, authority: str, decision: EgressDecision) -> None:
        if decision.target_ip:
            logger.info(
                "tunnel[%s]: %s %s [%s] via %s (%s)",
                cid, kind, authority, decision.target_ip, decision.local_ip, self.egress.describe(),
            )
        else:
            logger.info("tunnel[%s]: %s %s via %s", cid, kind, authority, decision.local_ip)

    async def _handle_connect(
        self,
        target: str,
        version: str,
        hdr_map: Dict[str, str],
        client_r: asyncio.StreamReader,
        client_w: asyncio.StreamWriter,
        cid: str = "-",
    ) -> None:
        host, port = self._split_host_port(target)
        if not host or port is None:
            await self._respond(client_w, version, 400, "bad CONNECT target")
            return

        if not check_auth(self.username, self.password, hdr_map):
            logger.debug("tunnel[%s]: CONNECT %s proxy auth required", cid, target)
            self._emit({"type": "auth_fail"})
            await self._respond(
                client_w, version, 407, "proxy authentication required",
                extra=(f"Proxy-Authenticate: {PROXY_AUTHENTICATE}",),
            )
            return

        try:
            decision = await self.egress.resolve(host)
        except EgressError as e:
            logger.warning("tunnel[%s]: CONNECT %s egress failed (%s): %s", cid, target, self.egress.describe(), e)
            self._emit({"type": "resolve_fail"})
            await self._respond(client_w, version, 500, "proxy internal error")
            return
        self._log_egress(cid, "CONNECT", target, decision)

        try:
            up_r, up_w = await decision.open_connection(host, port, timeout=self.dial_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("tunnel[%s]: dial %s from %s failed: %r", cid, target, decision.local_ip, e)
            self._emit({"type": "dial_fail"})
            await self._respond(client_w, version, 502, "cannot connect to target")
            return

        try:
            client_w.write(f"{version} 200 Connection established\r\n\r\n".encode("latin1"))
            await asyncio.wait_for(client_w.drain(), timeout=self.io_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("tunnel[%s]: client gone before relay: %r", cid, e)
            _close_writer(up_w)
            return

        self._emit({"type": "tunnel_open", "egress": decision.local_ip})
        up = down = 0
        try:
            up, down, _, _ = await self._pipe_bidirectional(
                client_r, client_w, up_r, up_w, cid=cid, label=f"CONNECT {target} via {decision.local_ip}",
            )
        finally:
            self._emit({"type": "tunnel_close", "up": up, "down": down})

    async def _handle_http(
        self,
        method: str,
        target: str,
        version: str,
        raw_headers: List[str],
        hdr_map: Dict[str, str],
        client_r: asyncio.StreamReader,
        client_w: asyncio.StreamWriter,
        cid: str = "-",
    ) -> None:
        if target.startswith("http://") or target.startswith("https://"):
            abs_uri = target
        else:
            host_hdr = hdr_map.get("host", "")
            if not host_hdr:
                await self._respond(client_w, version, 400, "missing Host")
                return
            abs_uri = f"http://{host_hdr}{target}"

        u = urlsplit(abs_uri)
        host = u.hostname or ""
        authority = u.netloc or "-"
        if not host:
            await self._respond(client_w, version, 400, "bad request target")
            return

        if not check_auth(self.username, self.password, hdr_map):
            logger.debug("tunnel[%s]: HTTP %s proxy auth required", cid, authority)
            self._emit({"type": "auth_fail"})
            await self._respond(
                client_w, version, 407, "proxy authentication required",
                extra=(f"Proxy-Authenticate: {PROXY_AUTHENTICATE}",),
            )
            return

        try:
            decision = await self.egress.resolve(host)
        except EgressError as e:
            logger.warning("tunnel[%s]: HTTP %s egress failed (%s): %s", cid, authority, self.egress.describe(), e)
            self._emit({"type": "resolve_fail"})
            await self._respond(client_w, version, 502, "failed to resolve target host")
            return
        self._log_egress(cid, "HTTP", authority, decision)

        out_headers: List[Tuple[str, str]] = []
        for h in raw_headers:
            if ":" not in h:
                continue
            k, v = h.split(":", 1)
            kn = k.strip()
            kln = kn.lower()
            if kln in _HOP_BY_HOP or kln.startswith("proxy-"):
                continue
            out_headers.append((kn, v.strip()))

        te = hdr_map.get("transfer-encoding", "").lower()
        body: Optional[AsyncIterator[bytes]] = None
        if "chunked" in te:
            body = self._iter_chunked(client_r)
            out_headers = [(k, v) for k, v in out_headers if k.lower() != "content-length"]
        elif hdr_map.get("content-length"):
            try:
                length = int(hdr_map["content-length"])
            except ValueError:
                length = -1
            if length < 0:
                await self._respond(client_w, version, 400, "bad Content-Length")
                return
            if length > 0:
                body = self._iter_exact(client_r, length)

        timeout_cfg = aiohttp.ClientTimeout(total=None, sock_connect=self.dial_timeout)
        started = False
        down = 0
        t0 = time.monotonic()
        try:
            async with aiohttp.ClientSession(
                connector=decision.connector(),
                timeout=timeout_cfg,
                trust_env=False,
                auto_decompress=False,
                skip_auto_headers=("User-Agent", "Accept-Encoding"),
            ) as session:
                async with session.request(
                    method, abs_uri, headers=out_headers, data=body, allow_redirects=False,
                ) as resp:
                    reason = resp.reason or ""
                    head = [f"{version} {resp.status} {reason}"]
                    for k, v in resp.raw_headers:
                        kn = k.decode("latin1")
                        if kn.lower() in _HOP_BY_HOP:
                            continue
                        head.append(f"{kn}: {v.decode('latin1')}")
                    head.append("Connection: close")
                    started = True
                    client_w.write(("\r\n".join(head) + "\r\n\r\n").encode("latin1"))
                    await client_w.drain()
                    async for chunk in resp.content.iter_any():
                        down += len(chunk)
                        client_w.write(chunk)
                        await client_w.drain()
        except (aiohttp.ClientError, asyncio.TimeoutError, asyncio.IncompleteReadError, OSError) as e:
            if started and isinstance(e, _EXPECTED_CLOSE):
                logger.debug("tunnel[%s]: HTTP %s closed mid-transfer: %r", cid, authority, e)
                return
            logger.warning(
                "tunnel[%s]: HTTP %s %s from %s failed: %r", cid, method, authority, decision.local_ip, e,
            )
            self._emit({"type": "upstream_fail"})
            if not started:
                await self._respond(client_w, version, 502, "upstream request failed")
            return
        except Exception as e:
            if not started:
                raise
            # Status line already sent; the client only sees a truncated body.
            logger.warning("tunnel[%s]: HTTP %s %s broke mid-response: %r", cid, method, authority, e)
            self._emit({"type": "upstream_fail"})
            return
        self._emit({"type": "http_forward", "egress": decision.local_ip, "down": down})
        if self.verbose:
            logger.info(
                "tunnel[%s]: http forward closed %s %s bytes=%d dur_ms=%.0f",
                cid, method, authority, down, (time.monotonic() - t0) * 1000.0,
            )

    async def _iter_exact(self, r: asyncio.StreamReader, n: int, bufsize: int = 65536) -> AsyncIterator[bytes]:
        left = n
        while left > 0:
            chunk = await r.read(min(bufsize, left))
            if not chunk:
                raise asyncio.IncompleteReadError(b"", left)
            left -= len(chunk)
            yield chunk

    async def _iter_chunked(self, r: asyncio.StreamReader) -> AsyncIterator[bytes]:
        while True:
            size_line = await asyncio.wait_for(r.readline(), timeout=self.io_timeout)
            if not size_line:
                raise asyncio.IncompleteReadError(b"", None)
            size = int(size_line.split(b";", 1)[0].strip() or b"0", 16)
            if size == 0:
                # Skip trailers up to the terminating blank line
                while True:
                    t = await asyncio.wait_for(r.readline(), timeout=self.io_timeout)
                    if t in (b"\r\n", b"\n", b""):
                        return
            async for chunk in self._iter_exact(r, size):
                yield chunk
            await r.readline()

    async def _pipe_bidirectional(
        self,
        a_r: asyncio.StreamReader,
        a_w: asyncio.StreamWriter,
        b_r: asyncio.StreamReader,
        b_w: asyncio.StreamWriter,
        bufsize: int = 65536,
        cid: Optional[str] = None,
        label: str = "",
    ) -> Tuple[int, int, str, str]:
        """
        Relay data in both directions until EOF or error.
        Each direction closes both writers when it ends, so the peer pump sees EOF
        promptly. There is no idle timeout.
        """

        async def pump(name: str, src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> Tuple[str, int, str]:
            total = 0
            reason = "eof"
            try:
                while True:
                    chunk = await src.read(bufsize)
                    if not chunk:
                        break
                    total += len(chunk)
                    dst.write(chunk)
                    await dst.drain()
            except _EXPECTED_CLOSE:
                reason = "closed"
            except Exception as e:
                reason = "error"
                logger.warning("tunnel[%s]: relay %s error (%s): %r", cid, name, label or "-", e)
            finally:
                _close_writer(a_w)
                _close_writer(b_w)
            return name, total, reason

        t1 = asyncio.create_task(pump("a->b", a_r, b_w))
        t2 = asyncio.create_task(pump("b->a", b_r, a_w))
        try:
            (_, a2b, end_a), (_, b2a, end_b) = await asyncio.gather(t1, t2)
        except asyncio.CancelledError:
            # Handler cancelled; make sure both pumps are cancelled and awaited
            t1.cancel()
            t2.cancel()
            await asyncio.gather(t1, t2, return_exceptions=True)
            _close_writer(a_w)
            _close_writer(b_w)
            raise
        for w in (a_w, b_w):
            try:
                await asyncio.wait_for(w.wait_closed(), timeout=1.0)
            except (OSError, asyncio.TimeoutError):
                pass
        if self.verbose and cid is not None:
            logger.info(
                "tunnel[%s]: pipe_summary label=%s a2b=%d b2a=%d end=%s|%s",
                cid, (label or "-"), a2b, b2a, end_a, end_b,
            )
        return a2b, b2a, end_a, end_b

    async def _respond(
        self,
        w: asyncio.StreamWriter,
        version: str,
        code: int,
        message: str = "",
        extra: Tuple[str, ...] = (),
    ) -> None:
        # Written straight to the socket: CONNECT connections are already raw at this point.
        status = HTTPStatus(code)
        body = (message or status.phrase).encode("utf-8")
        lines = [f"{version} {code} {status.phrase}", *extra]
        lines.append("Content-Type: text/plain; charset=utf-8")
        lines.append(f"Content-Length: {len(body)}")
        lines.append("Proxy-Agent: ipv6egress")
        lines.append("Connection: close")
        data = ("\r\n".join(lines) + "\r\n\r\n").encode("latin1") + body
        try:
            w.write(data)
            await asyncio.wait_for(w.drain(), timeout=self.io_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("tunnel: respond %d failed: %r", code, e)

    def _split_host_port(self, hp: str) -> Tuple[str, Optional[int]]:
        s = (hp or "").strip()
        if not s:
            return "", None
        if s.startswith("["):
            host, sep, rest = s[1:].partition("]")
            if not sep:
                return "", None
            port_s = rest[1:] if rest.startswith(":") else ""
        elif ":" in s:
            host, port_s = s.rsplit(":", 1)
        else:
            return s, None
        try:
            port = int(port_s.strip())
        except ValueError:
            return host.strip(), None
        if not (0 < port <= 65535):
            return host.strip(), None
        return host.strip(), port
