"""
Shared fixtures: loopback target server, minimal SOCKS5 proxy, config
factory and a supervisor runner that always tears down.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import socket
from typing import List, Optional, Tuple

import pytest
import pytest_asyncio

from tcptunnel.config import TunnelConfig, parse_address
from tcptunnel.supervisor import TunnelSupervisor

IO_TIMEOUT = 5.0


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def open_client(address: str) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    host, port = parse_address(address)
    return await asyncio.wait_for(asyncio.open_connection(host, port), timeout=IO_TIMEOUT)


async def exchange(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, payload: bytes) -> bytes:
    """Send payload while reading the same amount back, so large payloads never deadlock."""

    async def _send() -> None:
        writer.write(payload)
        await writer.drain()

    send_task = asyncio.ensure_future(_send())
    try:
        data = await asyncio.wait_for(reader.readexactly(len(payload)), timeout=IO_TIMEOUT)
    finally:
        await send_task
    return data


async def close_writer(writer: asyncio.StreamWriter) -> None:
    if not writer.is_closing():
        writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
    except (OSError, asyncio.TimeoutError):
        pass


class TargetServer:
    """
    Echo target. Sends `greeting` on connect, echoes everything, closes its
    side when it reads b"QUIT" and records when each peer disconnects.
    """

    def __init__(self, greeting: bytes = b"") -> None:
        self.greeting = greeting
        self.server: Optional[asyncio.base_events.Server] = None
        self.port = 0
        self.connections = 0
        self.disconnected = asyncio.Event()
        self._writers: List[asyncio.StreamWriter] = []

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.port}"

    async def start(self, port: int = 0) -> "TargetServer":
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", port)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.append(writer)
        try:
            if self.greeting:
                writer.write(self.greeting)
                await writer.drain()
            while True:
                chunk = await reader.read(65536)
                if not chunk or chunk == b"QUIT":
                    break
                writer.write(chunk)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            self.disconnected.set()
            await close_writer(writer)

    async def stop(self) -> None:
        if self.server is None:
            return
        self.server.close()
        for w in self._writers:
            await close_writer(w)
        try:
            await asyncio.wait_for(self.server.wait_closed(), timeout=2.0)
        except asyncio.TimeoutError:
            pass


class StalledTarget:
    """Accepts connections and never reads from them."""

    def __init__(self) -> None:
        self.server: Optional[asyncio.base_events.Server] = None
        self.port = 0
        self.writers: List[asyncio.StreamWriter] = []
        self.accepted = asyncio.Event()

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.port}"

    async def start(self) -> "StalledTarget":
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0, limit=4096)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writers.append(writer)
        self.accepted.set()

    async def stop(self) -> None:
        if self.server is None:
            return
        self.server.close()
        for w in self.writers:
            w.transport.abort()
        try:
            await asyncio.wait_for(self.server.wait_closed(), timeout=2.0)
        except asyncio.TimeoutError:
            pass


class Flooder:
    """Writes to a stream until the tunnel stops taking bytes."""

    def __init__(self, writer: asyncio.StreamWriter, chunk: int = 65536) -> None:
        self.writer = writer
        self.chunk = b"\xab" * chunk
        self.sent = 0
        self.task: Optional[asyncio.Task] = None

    def start(self) -> "Flooder":
        self.task = asyncio.ensure_future(self._run())
        return self

    async def _run(self) -> None:
        try:
            while True:
                self.writer.write(self.chunk)
                await self.writer.drain()
                self.sent += len(self.chunk)
        except ConnectionError:
            pass

    async def wait_stalled(self, quiet: float = 0.3, timeout: float = 20.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        last = -1
        while self.sent == 0 or self.sent != last:
            if loop.time() > deadline:
                raise AssertionError("writer never stalled")
            last = self.sent
            await asyncio.sleep(quiet)

    async def stop(self) -> None:
        if self.task is not None:
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)
        self.writer.transport.abort()


class Socks5Proxy:
    """No-auth SOCKS5 CONNECT proxy, enough to exercise the proxy dialer."""

    def __init__(self) -> None:
        self.server: Optional[asyncio.base_events.Server] = None
        self.port = 0
        self.requests: List[Tuple[str, int]] = []
        self._writers: List[asyncio.StreamWriter] = []

    @property
    def url(self) -> str:
        return f"socks5://127.0.0.1:{self.port}"

    async def start(self) -> "Socks5Proxy":
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        up_w = None
        try:
            _ver, nmethods = await reader.readexactly(2)
            await reader.readexactly(nmethods)
            writer.write(b"\x05\x00")
            await writer.drain()

            hdr = await reader.readexactly(4)
            atyp = hdr[3]
            if atyp == 0x01:
                host = socket.inet_ntoa(await reader.readexactly(4))
            elif atyp == 0x03:
                n = (await reader.readexactly(1))[0]
                host = (await reader.readexactly(n)).decode("idna")
            else:
                host = socket.inet_ntop(socket.AF_INET6, await reader.readexactly(16))
            port = int.from_bytes(await reader.readexactly(2), "big")
            self.requests.append((host, port))

            try:
                up_r, up_w = await asyncio.open_connection(host, port)
            except OSError:
                writer.write(b"\x05\x05\x00\x01" + bytes(6))
                await writer.drain()
                return
            writer.write(b"\x05\x00\x00\x01" + socket.inet_aton("127.0.0.1") + b"\x00\x00")
            await writer.drain()

            async def pipe(src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> None:
                try:
                    while True:
                        chunk = await src.read(65536)
                        if not chunk:
                            break
                        dst.write(chunk)
                        await dst.drain()
                finally:
                    await close_writer(dst)

            await asyncio.gather(pipe(reader, up_w), pipe(up_r, writer), return_exceptions=True)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            if up_w is not None:
                await close_writer(up_w)
            await close_writer(writer)

    async def stop(self) -> None:
        if self.server is None:
            return
        self.server.close()
        for w in self._writers:
            await close_writer(w)
        try:
            await asyncio.wait_for(self.server.wait_closed(), timeout=2.0)
        except asyncio.TimeoutError:
            pass


@pytest_asyncio.fixture
async def target_server():
    srv = await TargetServer(greeting=b"hello").start()
    yield srv
    await srv.stop()


@pytest_asyncio.fixture
async def stalled_target():
    srv = await StalledTarget().start()
    yield srv
    await srv.stop()


@pytest_asyncio.fixture
async def socks5_proxy():
    proxy = await Socks5Proxy().start()
    yield proxy
    await proxy.stop()


@pytest.fixture
def make_config():
    def _make(target: str, **overrides) -> TunnelConfig:
        base = TunnelConfig(
            listen_address="127.0.0.1:0",
            target_address=target,
            proxy_url=None,
            dial_timeout=2.0,
            keepalive_interval=30.0,
            buffer_size=65536,
            shutdown_grace=2.0,
            log_level="DEBUG",
            debug=True,
        )
        return dataclasses.replace(base, **overrides)

    return _make


@pytest_asyncio.fixture
async def run_supervisor():
    """Start a supervisor and serve it in the background; shut it down afterwards."""
    started: List[Tuple[TunnelSupervisor, asyncio.Task]] = []

    async def _run(config: TunnelConfig, **kwargs) -> Tuple[TunnelSupervisor, asyncio.Task]:
        sup = TunnelSupervisor(config, **kwargs)
        await sup.start()
        task = asyncio.create_task(sup.serve())
        started.append((sup, task))
        return sup, task

    yield _run

    for sup, task in started:
        sup.request_shutdown("teardown")
        await asyncio.wait({task}, timeout=10.0)
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        leftovers = sup.pool.tasks
        for t in leftovers:
            t.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)


@pytest.fixture
def reset_logging():
    yield
    root = logging.getLogger("tcptunnel")
    for h in list(root.handlers):
        if getattr(h, "_tcptunnel", False):
            root.removeHandler(h)
    root.setLevel(logging.NOTSET)
