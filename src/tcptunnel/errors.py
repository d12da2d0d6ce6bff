from __future__ import annotations

from typing import Optional

__all__ = [
    "TunnelError",
    "ConfigurationError",
    "ListenerFatalError",
    "DialError",
]


class TunnelError(Exception):
    """
    Base class for tunnel errors.

    Only ConfigurationError and ListenerFatalError ever reach the process
    boundary; everything else is absorbed where it happens.
    """

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause


class ConfigurationError(TunnelError):
    """Bad proxy URL, unsupported scheme, unparseable address or setting."""


class ListenerFatalError(TunnelError):
    """Bind or accept failure. Ends the supervisor."""


class DialError(TunnelError):
    """Target or proxy unreachable. Recovered per session."""

    def __init__(self, address: str, message: str = "", *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message or f"dial {address} failed", cause=cause)
        self.address = address
