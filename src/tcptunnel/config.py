from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import ConfigurationError


@dataclass(frozen=True)
class TunnelConfig:
    # Endpoints
    listen_address: str
    target_address: str
    proxy_url: str | None
    # Outbound dial
    dial_timeout: float
    keepalive_interval: float
    # Relay
    buffer_size: int
    # Shutdown
    shutdown_grace: float
    # Logging
    log_level: str
    debug: bool


def _env_bool(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() not in ("", "0", "false", "no", "off")


def _env_float(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name}: not a number: {raw!r}") from None


def _env_int(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name}: not an integer: {raw!r}") from None


def load_config_from_env() -> TunnelConfig:
    listen_address = os.environ.get("TCPTUNNEL_LISTEN", "").strip()
    target_address = os.environ.get("TCPTUNNEL_TARGET", "").strip()
    proxy_url = os.environ.get("TCPTUNNEL_PROXY", "").strip() or None

    dial_timeout = _env_float("TCPTUNNEL_DIAL_TIMEOUT", "10")
    keepalive_interval = _env_float("TCPTUNNEL_KEEPALIVE", "30")
    buffer_size = _env_int("TCPTUNNEL_BUFFER_SIZE", "65536")
    if buffer_size <= 0:
        raise ConfigurationError(f"TCPTUNNEL_BUFFER_SIZE: must be positive, got {buffer_size}")
    shutdown_grace = max(0.0, _env_float("TCPTUNNEL_SHUTDOWN_GRACE", "10"))

    debug = _env_bool("TCPTUNNEL_DEBUG")
    log_level = "DEBUG" if debug else os.environ.get("TCPTUNNEL_LOG_LEVEL", "INFO").strip().upper()

    return TunnelConfig(
        listen_address=listen_address,
        target_address=target_address,
        proxy_url=proxy_url,
        dial_timeout=dial_timeout,
        keepalive_interval=keepalive_interval,
        buffer_size=buffer_size,
        shutdown_grace=shutdown_grace,
        log_level=log_level,
        debug=debug,
    )


def parse_address(address: Optional[str]) -> Tuple[str, int]:
    """
    Split "host:port" into (host, port).

    Accepts "[v6addr]:port" and ":port" (empty host binds every interface).
    """
    s = (address or "").strip()
    if not s or ":" not in s:
        raise ConfigurationError(f"invalid address {address!r}: expected <host>:<port>")
    if s.startswith("["):
        end = s.find("]")
        if end < 0 or s[end + 1:end + 2] != ":":
            raise ConfigurationError(f"invalid address {address!r}: bad bracketed host")
        host, port_s = s[1:end], s[end + 2:]
    else:
        host, port_s = s.rsplit(":", 1)
        if ":" in host:
            raise ConfigurationError(f"invalid address {address!r}: IPv6 hosts must be bracketed")
    try:
        port = int(port_s)
    except ValueError:
        raise ConfigurationError(f"invalid address {address!r}: bad port {port_s!r}") from None
    if not (0 <= port <= 65535):
        raise ConfigurationError(f"invalid address {address!r}: port out of range")
    return host.strip(), port
