from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Dict, List, Optional

from .connection import Connection

logger = logging.getLogger("tcptunnel.copier")

DEFAULT_BUFSIZE = 65536

SpawnFn = Callable[[Coroutine[Any, Any, Any]], "asyncio.Task"]

# Pump end reasons
END_EOF = "eof"
END_CLOSED = "closed"
END_ERROR = "error"


@dataclass(frozen=True)
class PumpResult:
    direction: str
    reason: str


def is_expected_close(op: str, dst: Connection) -> bool:
    """
    Failures on the read side are what a peer or local close looks like.
    A write failure only counts when close() was already called on the
    destination here; a write broken by the peer (reset, broken pipe) is
    reported.
    """
    if op == "read":
        return True
    return dst.closed_locally


class DuplexCopier:
    """
    Relays bytes between two connections, one pump task per direction.

    run() returns as soon as the first direction ends; the caller closes both
    connections, which unblocks the other pump.
    """

    def __init__(
        self,
        spawn: Optional[SpawnFn] = None,
        log: Optional[logging.Logger] = None,
        bufsize: int = DEFAULT_BUFSIZE,
        cid: str = "-",
    ) -> None:
        self.spawn = spawn or asyncio.ensure_future
        self.logger = log or logger
        self.bufsize = max(1, int(bufsize))
        self.cid = cid
        self.transferred: Dict[str, int] = {"a->b": 0, "b->a": 0}
        self.pumps: List[asyncio.Future] = []

    async def run(self, a: Connection, b: Connection) -> PumpResult:
        t1 = self.spawn(self._pump("a->b", a, b))
        t2 = self.spawn(self._pump("b->a", b, a))
        self.pumps = [t1, t2]
        done, _ = await asyncio.wait({t1, t2}, return_when=asyncio.FIRST_COMPLETED)
        first = t1 if t1 in done else t2
        return first.result()

    async def cancel(self) -> None:
        """Cancel pumps still running once both connections are closed."""
        pending = [t for t in self.pumps if not t.done()]
        for t in pending:
            self.logger.debug("tunnel[%s]: cancelling stalled pump %s", self.cid, t)
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _pump(self, direction: str, src: Connection, dst: Connection) -> PumpResult:
        op = "read"
        try:
            while True:
                op = "read"
                chunk = await src.reader.read(self.bufsize)
                if not chunk:
                    return PumpResult(direction, END_EOF)
                op = "write"
                dst.writer.write(chunk)
                self.transferred[direction] += len(chunk)
                await dst.writer.drain()
        except Exception as e:
            if is_expected_close(op, dst):
                self.logger.debug("tunnel[%s]: %s %s ended: %s", self.cid, direction, op, e)
                return PumpResult(direction, END_CLOSED)
            self.logger.error(
                "tunnel[%s]: failed to copy connection from %s to %s: %s",
                self.cid, src.remote_address, dst.remote_address, e,
            )
            return PumpResult(direction, END_ERROR)
