from __future__ import annotations

import asyncio
import functools
import itertools
import logging
import socket
from enum import Enum
from typing import Optional, Tuple

from .config import TunnelConfig, parse_address
from .connection import Connection, format_address
from .dialer import Dialer, build_dialer
from .errors import ListenerFatalError, TunnelError
from .lifecycle import StopSignal, TaskPool
from .session import TunnelSession
from .status import TunnelStats

logger = logging.getLogger("tcptunnel.supervisor")


class SupervisorState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class TunnelSupervisor:
    """
    Owns the listener, the dialer chain and every in-flight tunnel.

    Lifecycle: start() binds (STARTING), serve() accepts until the shutdown
    trigger or the internal stop signal fires (RUNNING), then stops accepting
    and waits up to `shutdown_grace` seconds for sessions to finish
    (SHUTTING_DOWN) before returning (STOPPED). A fatal accept error is kept
    as the terminal error and re-raised from serve().
    """

    def __init__(
        self,
        config: TunnelConfig,
        shutdown_trigger: Optional[asyncio.Event] = None,
        dialer: Optional[Dialer] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.shutdown_trigger = shutdown_trigger
        self.dialer = dialer
        self.logger = log or logger
        self._session_log = log
        self.state = SupervisorState.STARTING
        self.stop = StopSignal()
        self.pool = TaskPool("tunnel", log=self.logger)
        self.stats = TunnelStats()
        self.listen_address: Optional[str] = None
        self._target: Optional[Tuple[str, int]] = None
        self._listener: Optional[socket.socket] = None
        self._accept_task: Optional[asyncio.Task] = None
        self._error: Optional[TunnelError] = None
        self._ids = itertools.count(1)

    @property
    def error(self) -> Optional[TunnelError]:
        return self._error

    def _record_error(self, err: TunnelError) -> bool:
        # Single slot: the first error wins
        if self._error is not None:
            return False
        self._error = err
        return True

    async def start(self) -> None:
        if self._listener is not None or self.state is not SupervisorState.STARTING:
            raise RuntimeError("supervisor already started")
        host, port = parse_address(self.config.listen_address)
        self._target = parse_address(self.config.target_address)
        if self.dialer is None:
            self.dialer = build_dialer(
                self.config.proxy_url,
                dial_timeout=self.config.dial_timeout,
                keepalive=self.config.keepalive_interval,
            )

        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            sock = socket.create_server((host, port), family=family)
        except OSError as e:
            self.logger.critical("could not start listening on %s: %s", self.config.listen_address, e)
            raise ListenerFatalError(f"could not start listening on {self.config.listen_address}: {e}", cause=e) from e
        sock.setblocking(False)
        self._listener = sock
        self.listen_address = format_address(sock.getsockname())
        self.logger.info(
            "listening port opened on %s (target=%s:%d dialer=%r)",
            self.listen_address, self._target[0], self._target[1], self.dialer,
        )

    async def run(self) -> None:
        await self.start()
        await self.serve()

    async def serve(self) -> None:
        if self._listener is None:
            raise RuntimeError("start() must succeed before serve()")
        self.state = SupervisorState.RUNNING
        self._accept_task = asyncio.create_task(self._accept_loop(), name="tcptunnel-accept")
        try:
            await self._wait_for_stop()
            await self._shutdown()
        finally:
            await self._close_listener()
        if self._error is not None:
            raise self._error

    def request_shutdown(self, reason: str = "requested") -> bool:
        fired = self.stop.trigger(reason)
        if fired:
            self.logger.info("shutdown requested (%s)", reason)
        return fired

    async def _wait_for_stop(self) -> None:
        stop_task = asyncio.ensure_future(self.stop.wait())
        waiters = {stop_task}
        trigger_task = None
        if self.shutdown_trigger is not None:
            trigger_task = asyncio.ensure_future(self.shutdown_trigger.wait())
            waiters.add(trigger_task)
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [t for t in waiters if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        if trigger_task is not None and trigger_task in done:
            self.logger.info("received shutdown signal")
            self.request_shutdown("signal")

    async def _shutdown(self) -> None:
        self.state = SupervisorState.SHUTTING_DOWN
        self.logger.info(
            "stopping tunnel: %s (reason=%s, outstanding=%d)",
            self.listen_address, self.stop.reason, len(self.pool),
        )
        await self._close_listener()
        grace = float(self.config.shutdown_grace)
        if not await self.pool.wait_all(grace):
            self.logger.warning(
                "some tunnels did not finish within %.1fs grace period; abandoning %d task(s)",
                grace, len(self.pool),
            )
        self.state = SupervisorState.STOPPED
        self.logger.info("stopped: %s", self.stats.summary())

    async def _close_listener(self) -> None:
        task = self._accept_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        sock = self._listener
        self._listener = None
        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                self.logger.error("failed to close listener: %s", e)

    async def _accept(self) -> Tuple[socket.socket, object]:
        return await asyncio.get_running_loop().sock_accept(self._listener)

    async def _accept_loop(self) -> None:
        while not self.stop.is_set():
            try:
                sock, _addr = await self._accept()
            except OSError as e:
                if self.stop.is_set():
                    return
                # No backoff: any accept failure ends listening
                self.logger.critical("error accepting connection: %s", e)
                self._record_error(ListenerFatalError(f"error accepting connection: {e}", cause=e))
                self.request_shutdown("accept-error")
                return
            cid = f"{next(self._ids):06d}"
            self.stats.accepted += 1
            self.pool.spawn(self._run_session(sock, cid), name=f"tunnel-{cid}")

    async def _run_session(self, sock: socket.socket, cid: str) -> None:
        try:
            accepted = await Connection.from_socket(sock)
        except OSError as e:
            sock.close()
            self.logger.error("tunnel[%s]: could not set up accepted connection: %s", cid, e)
            return
        if self.stop.is_set():
            await accepted.close()
            return
        accepted.set_keepalive(self.config.keepalive_interval)
        self.logger.info(
            "tunnel[%s]: accepted connection from %s on %s",
            cid, accepted.remote_address, accepted.local_address,
        )
        host, port = self._target
        session = TunnelSession(
            accepted,
            self.dialer,
            host,
            port,
            self.stop,
            spawn=functools.partial(self.pool.spawn, name=f"tunnel-{cid}-pump"),
            stats=self.stats,
            log=self._session_log,
            bufsize=self.config.buffer_size,
            cid=cid,
        )
        await session.handle()
