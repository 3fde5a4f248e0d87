"""Tunnel orchestration: models, workers, registry and status store."""

from .backoff import RetryPolicy
from .classify import classify_exception, classify_message
from .commands import forward_command, keepalive_command, probe_command, to_shell
from .models import (
    AuthMethod,
    ErrorType,
    HostConfig,
    StatusRecord,
    TunnelConfig,
    TunnelState,
)
from .registry import TunnelRegistry
from .session import (
    CommandStream,
    ParamikoSession,
    RemoteSession,
    SessionFactory,
    paramiko_session_factory,
)
from .sources import ConfigSource, JsonFileConfigSource, StaticConfigSource
from .status import StatusStore
from .worker import TunnelWorker

__all__ = [
    # Models
    "AuthMethod",
    "ErrorType",
    "HostConfig",
    "StatusRecord",
    "TunnelConfig",
    "TunnelState",
    # Orchestration
    "TunnelRegistry",
    "TunnelWorker",
    "StatusStore",
    "RetryPolicy",
    # Sessions
    "RemoteSession",
    "CommandStream",
    "ParamikoSession",
    "SessionFactory",
    "paramiko_session_factory",
    # Commands and classification
    "forward_command",
    "probe_command",
    "keepalive_command",
    "to_shell",
    "classify_message",
    "classify_exception",
    # Configuration sources
    "ConfigSource",
    "StaticConfigSource",
    "JsonFileConfigSource",
]
