from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol
from urllib.parse import urlsplit, urlunsplit

from python_socks import ProxyConnectionError, ProxyError, ProxyTimeoutError, parse_proxy_url
from python_socks.async_.asyncio import Proxy

from .connection import Connection
from .errors import ConfigurationError, DialError

logger = logging.getLogger("tcptunnel.dialer")

# scheme -> (scheme understood by python-socks, resolve names on the proxy)
_SCHEMES = {
    "socks5": ("socks5", False),
    "socks5h": ("socks5", True),
    "socks4": ("socks4", False),
    "socks4a": ("socks4", True),
    "http": ("http", False),
}


class Dialer(Protocol):
    async def dial(self, host: str, port: int) -> Connection:
        ...


class DirectDialer:
    """Plain TCP dial with an optional deadline and keep-alive on the result."""

    def __init__(self, timeout: float = 10.0, keepalive: float = 30.0) -> None:
        self.timeout = float(timeout)
        self.keepalive = float(keepalive)

    @property
    def deadline(self) -> Optional[float]:
        return self.timeout if self.timeout > 0 else None

    async def dial(self, host: str, port: int) -> Connection:
        address = f"{host}:{port}"
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(host=host, port=port), timeout=self.deadline)
        except asyncio.TimeoutError as e:
            raise DialError(address, f"dial {address}: timed out after {self.timeout:.1f}s", cause=e) from e
        except OSError as e:
            raise DialError(address, f"dial {address}: {e}", cause=e) from e
        return self.prepare(Connection(reader, writer))

    def prepare(self, conn: Connection) -> Connection:
        conn.set_keepalive(self.keepalive)
        return conn

    def __repr__(self) -> str:
        return f"DirectDialer(timeout={self.timeout}, keepalive={self.keepalive})"


class ProxyDialer:
    """
    Routes connection establishment through an upstream proxy.

    The proxy handshake (SOCKS4/4a, SOCKS5/5h, HTTP CONNECT) is done by
    python-socks; the wrapped direct dialer supplies deadline and keep-alive.
    """

    def __init__(self, url: str, forward: DirectDialer, rdns: bool = False) -> None:
        self.url = url
        self.forward = forward
        self.rdns = rdns

    @property
    def display_url(self) -> str:
        u = urlsplit(self.url)
        if u.username is None:
            return self.url
        netloc = f"{u.username}:***@{u.hostname}:{u.port}"
        return urlunsplit((u.scheme, netloc, u.path, u.query, u.fragment))

    async def dial(self, host: str, port: int) -> Connection:
        address = f"{host}:{port}"
        kwargs = {"rdns": True} if self.rdns else {}
        proxy = Proxy.from_url(self.url, **kwargs)
        try:
            sock = await proxy.connect(dest_host=host, dest_port=port, timeout=self.forward.deadline)
            reader, writer = await asyncio.open_connection(sock=sock)
        except ProxyTimeoutError as e:
            raise DialError(address, f"dial {address} via {self.display_url}: timed out", cause=e) from e
        except (ProxyConnectionError, ProxyError, OSError) as e:
            raise DialError(address, f"dial {address} via {self.display_url}: {e}", cause=e) from e
        return self.forward.prepare(Connection(reader, writer))

    def __repr__(self) -> str:
        return f"ProxyDialer({self.display_url}, forward={self.forward!r})"


def _normalize_proxy_url(raw: str) -> tuple[str, bool]:
    s = raw.strip()
    if "://" not in s:
        raise ConfigurationError(f"could not parse proxy URL {raw!r}: missing scheme")
    try:
        u = urlsplit(s)
        port = u.port
    except ValueError as e:
        raise ConfigurationError(f"could not parse proxy URL {raw!r}: {e}") from e
    scheme = (u.scheme or "").lower()
    if scheme not in _SCHEMES:
        raise ConfigurationError(f"could not construct proxy: unsupported scheme {scheme!r}")
    if not u.hostname:
        raise ConfigurationError(f"could not parse proxy URL {raw!r}: missing host")
    if port is None:
        raise ConfigurationError(f"could not parse proxy URL {raw!r}: missing port")
    lib_scheme, rdns = _SCHEMES[scheme]
    return urlunsplit((lib_scheme, u.netloc, "", "", "")), rdns


def build_dialer(proxy_url: Optional[str], dial_timeout: float = 10.0, keepalive: float = 30.0) -> Dialer:
    """
    Build the dial capability used by every session.

    - No proxy: direct dial.
    - Proxy URL: direct dial wrapped by the proxy (proxy -> direct).
    Raises ConfigurationError for malformed URLs or unsupported schemes.
    """
    direct = DirectDialer(timeout=dial_timeout, keepalive=keepalive)
    if proxy_url is None or not proxy_url.strip():
        return direct

    url, rdns = _normalize_proxy_url(proxy_url)
    try:
        parse_proxy_url(url)
    except ValueError as e:
        raise ConfigurationError(f"could not construct proxy: {e}") from e
    dialer = ProxyDialer(url, direct, rdns=rdns)
    logger.debug("dialer: chained %r", dialer)
    return dialer
