"""
tcptunnel - transparent TCP tunnel with graceful, bounded shutdown.

Exports:
- TunnelSupervisor / SupervisorState: accept loop and shutdown coordination
- TunnelSession: one accepted connection relayed to the target
- DuplexCopier: bidirectional byte relay
- build_dialer / DirectDialer / ProxyDialer: outbound dial chain
- TunnelConfig / load_config_from_env / parse_address: configuration
- TunnelError and subclasses
"""

from .config import TunnelConfig, load_config_from_env, parse_address
from .connection import Connection
from .copier import DuplexCopier, PumpResult
from .dialer import DirectDialer, ProxyDialer, build_dialer
from .errors import ConfigurationError, DialError, ListenerFatalError, TunnelError
from .lifecycle import StopSignal, TaskPool
from .session import TunnelSession
from .supervisor import SupervisorState, TunnelSupervisor

__version__ = "0.1.0"

__all__ = [
    "TunnelConfig",
    "load_config_from_env",
    "parse_address",
    "Connection",
    "DuplexCopier",
    "PumpResult",
    "DirectDialer",
    "ProxyDialer",
    "build_dialer",
    "ConfigurationError",
    "DialError",
    "ListenerFatalError",
    "TunnelError",
    "StopSignal",
    "TaskPool",
    "TunnelSession",
    "SupervisorState",
    "TunnelSupervisor",
]
