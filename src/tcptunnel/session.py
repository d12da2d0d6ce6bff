from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from .connection import Connection
from .copier import DEFAULT_BUFSIZE, DuplexCopier, SpawnFn
from .dialer import Dialer
from .errors import DialError
from .lifecycle import StopSignal
from .status import TunnelStats, describe_transfer

logger = logging.getLogger("tcptunnel.session")


class TunnelSession:
    """
    Owns one accepted connection and the outbound connection dialed for it.

    handle() dials the target, relays until the copier finishes or the stop
    signal fires, and closes both connections on every exit path.
    """

    def __init__(
        self,
        accepted: Connection,
        dialer: Dialer,
        target_host: str,
        target_port: int,
        stop: StopSignal,
        spawn: Optional[SpawnFn] = None,
        stats: Optional[TunnelStats] = None,
        log: Optional[logging.Logger] = None,
        bufsize: int = DEFAULT_BUFSIZE,
        cid: str = "-",
    ) -> None:
        self.accepted = accepted
        self.remote: Optional[Connection] = None
        self.dialer = dialer
        self.target_host = target_host
        self.target_port = int(target_port)
        self.stop = stop
        self.stats = stats
        self.logger = log or logger
        self.cid = cid
        self.copier = DuplexCopier(spawn=spawn, log=self.logger, bufsize=bufsize, cid=cid)
        self.end_reason = "-"

    @property
    def target(self) -> str:
        return f"{self.target_host}:{self.target_port}"

    async def handle(self) -> None:
        t0 = time.monotonic()
        try:
            try:
                self.remote = await self.dialer.dial(self.target_host, self.target_port)
            except DialError as e:
                self.end_reason = "dial-failed"
                if self.stats is not None:
                    self.stats.dial_failures += 1
                self.logger.error("tunnel[%s]: error dialing remote target %s: %s", self.cid, self.target, e)
                return

            if self.stats is not None:
                self.stats.session_opened()
            self.logger.info(
                "tunnel[%s]: tunneling connection from %s to %s",
                self.cid, self.accepted.remote_address, self.remote.remote_address,
            )
            self.end_reason = await self._relay(self.remote)
        finally:
            if self.remote is None:
                await self.accepted.close()
            else:
                await asyncio.gather(self.accepted.close(), self.remote.close())
                await self.copier.cancel()
                self._summarize(time.monotonic() - t0)

    async def _relay(self, remote: Connection) -> str:
        copy_task = asyncio.ensure_future(self.copier.run(self.accepted, remote))
        stop_task = asyncio.ensure_future(self.stop.wait())
        try:
            done, _ = await asyncio.wait({copy_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [t for t in (copy_task, stop_task) if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        if copy_task in done:
            res = copy_task.result()
            return f"{res.direction}:{res.reason}"
        return "stop"

    def _summarize(self, elapsed: float) -> None:
        up = self.copier.transferred["a->b"]
        down = self.copier.transferred["b->a"]
        if self.stats is not None:
            self.stats.session_closed(up, down)
        self.logger.info(
            "tunnel[%s]: closed %s end=%s %s",
            self.cid, self.accepted.remote_address, self.end_reason,
            describe_transfer(up, down, elapsed),
        )
