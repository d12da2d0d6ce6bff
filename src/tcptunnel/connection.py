from __future__ import annotations

import asyncio
import logging
import socket
from typing import Any, Optional

logger = logging.getLogger("tcptunnel.connection")


def format_address(addr: Any) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = addr[0], addr[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    if not addr:
        return "-"
    return str(addr)


class Connection:
    """
    One end of a tunnel: an asyncio stream pair plus peer metadata.

    close() is idempotent; the underlying transport is closed once no matter
    how many exit paths call it.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.remote_address = format_address(writer.get_extra_info("peername"))
        self.local_address = format_address(writer.get_extra_info("sockname"))
        self._closed = False

    @classmethod
    async def from_socket(cls, sock: socket.socket) -> "Connection":
        reader, writer = await asyncio.open_connection(sock=sock)
        return cls(reader, writer)

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()

    @property
    def closed_locally(self) -> bool:
        """True once close() was called here; a peer reset alone does not count."""
        return self._closed

    def set_keepalive(self, interval: float) -> None:
        """Enable TCP keep-alive with idle time and probe interval of `interval` seconds."""
        if interval <= 0:
            return
        sock = self.writer.get_extra_info("socket")
        if sock is None or sock.family not in (socket.AF_INET, socket.AF_INET6):
            return
        secs = max(1, int(interval))
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            if hasattr(socket, "TCP_KEEPIDLE"):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, secs)
            elif hasattr(socket, "TCP_KEEPALIVE"):
                # macOS spelling
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, secs)
            if hasattr(socket, "TCP_KEEPINTVL"):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, secs)
        except OSError as e:
            logger.debug("keepalive: could not configure %s: %s", self.remote_address, e)

    async def close(self, timeout: Optional[float] = 1.0) -> None:
        if self._closed:
            return
        self._closed = True
        if not self.writer.is_closing():
            self.writer.close()
        # A peer that stops reading holds the flush open; drop the buffer then
        try:
            await asyncio.wait_for(self.writer.wait_closed(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug("close: %s did not drain within %ss, aborting", self.remote_address, timeout)
            self.abort()
        except OSError:
            pass

    def abort(self) -> None:
        self._closed = True
        transport = self.writer.transport
        if transport is not None:
            transport.abort()

    def __repr__(self) -> str:
        return f"Connection({self.local_address} <-> {self.remote_address})"
