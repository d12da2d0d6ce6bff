from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from typing import List, Optional, Tuple

from .config import TunnelConfig, load_config_from_env
from .errors import ConfigurationError, ListenerFatalError
from .log import setup_logging
from .supervisor import TunnelSupervisor

logger = logging.getLogger("tcptunnel.main")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def _build_parser() -> argparse.ArgumentParser:
    """
    CLI to override environment variables. Precedence: CLI > env > defaults.
    Flags take one or two dashes (-listen or --listen).
    """
    ap = argparse.ArgumentParser(
        prog="tcptunnel",
        description="Transparent TCP tunnel: relay each accepted connection to a fixed target, directly or via an upstream proxy.",
        add_help=False,
    )
    # Only set values when flags are provided (no default), so env/defaults remain if omitted.
    ap.add_argument("-listen", "--listen", dest="listen", metavar="HOST:PORT", help="listening address (<host>:<port>)")
    ap.add_argument("-target", "--target", dest="target", metavar="HOST:PORT", help="remote target (<host>:<port>)")
    ap.add_argument(
        "-proxy", "--proxy", dest="proxy", metavar="URL",
        help="proxy address (<proto>://[user[:password]@]<host>:<port>/), proto: socks5, socks5h, socks4, socks4a, http",
    )
    ap.add_argument("-timeout", "--timeout", dest="timeout", type=int, metavar="SECONDS", help="dial timeout (default 10)")
    ap.add_argument("-keepalive", "--keepalive", dest="keepalive", type=int, metavar="SECONDS", help="keep-alive interval (default 30)")
    ap.add_argument("-grace", "--grace", dest="grace", type=float, metavar="SECONDS", help="shutdown grace period (default 10)")
    ap.add_argument("-debug", "--debug", dest="debug", action="store_true", default=None, help="more verbose logging")
    ap.add_argument("-help", "--help", "-h", dest="help", action="store_true", help="show usage")
    return ap


def _parse_cli_args(argv: Optional[List[str]] = None) -> Tuple[argparse.ArgumentParser, argparse.Namespace]:
    ap = _build_parser()
    return ap, ap.parse_args(argv)


CLI_TO_ENV = {
    "listen": "TCPTUNNEL_LISTEN",
    "target": "TCPTUNNEL_TARGET",
    "proxy": "TCPTUNNEL_PROXY",
    "timeout": "TCPTUNNEL_DIAL_TIMEOUT",
    "keepalive": "TCPTUNNEL_KEEPALIVE",
    "grace": "TCPTUNNEL_SHUTDOWN_GRACE",
    "debug": "TCPTUNNEL_DEBUG",
}


async def _serve(cfg: TunnelConfig) -> None:
    trigger = asyncio.Event()
    supervisor = TunnelSupervisor(cfg, shutdown_trigger=trigger)
    await supervisor.start()

    loop = asyncio.get_running_loop()

    def handle_signal(name: str) -> None:
        logger.info("signal %s received, shutting down", name)
        trigger.set()

    installed = []
    previous = {}
    for name in ("SIGINT", "SIGTERM"):
        if not hasattr(signal, name):
            continue
        signum = getattr(signal, name)
        try:
            loop.add_signal_handler(signum, handle_signal, name)
            installed.append(signum)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            previous[signum] = signal.signal(
                signum, lambda _s, _f, n=name: loop.call_soon_threadsafe(handle_signal, n)
            )
    try:
        await supervisor.serve()
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
        for signum, handler in previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


def main(argv: Optional[List[str]] = None) -> int:
    ap, args = _parse_cli_args(argv)
    if args.help:
        ap.print_help()
        return EXIT_OK

    for attr, env_key in CLI_TO_ENV.items():
        if getattr(args, attr, None) is not None:
            os.environ[env_key] = str(getattr(args, attr))

    try:
        cfg = load_config_from_env()
    except ConfigurationError as e:
        setup_logging("INFO")
        logger.error("invalid configuration: %s", e)
        return EXIT_CONFIG

    setup_logging(cfg.log_level)

    if not cfg.listen_address or not cfg.target_address:
        ap.print_help()
        return EXIT_OK

    logger.info(
        "config: listen=%s target=%s proxy=%s timeout=%.0fs keepalive=%.0fs grace=%.0fs",
        cfg.listen_address,
        cfg.target_address,
        "yes" if cfg.proxy_url else "none",
        cfg.dial_timeout,
        cfg.keepalive_interval,
        cfg.shutdown_grace,
    )

    try:
        asyncio.run(_serve(cfg))
    except ConfigurationError as e:
        logger.error("invalid configuration: %s", e)
        return EXIT_CONFIG
    except ListenerFatalError as e:
        logger.critical("exiting on error: %s", e)
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.info("interrupted")
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
