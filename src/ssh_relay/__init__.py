"""SSH Relay - supervised reverse port forwards across two SSH hops."""

from .api import create_app

# Common utilities
from .common.exceptions import (
    AuthError,
    ChannelError,
    ConfigurationError,
    InvalidTunnelConfigError,
    NetworkError,
    RelayError,
    SessionError,
    TunnelError,
    UnknownTunnelError,
)
from .common.logging import get_logger, setup_logging
from .common.settings import BackoffStrategy, RelaySettings
from .common.utils import (
    mask_sensitive_data,
    sanitize_log_data,
    validate_non_empty_string,
    validate_port,
)

# Tunnel orchestration
from .tunnels import (
    AuthMethod,
    ErrorType,
    HostConfig,
    JsonFileConfigSource,
    RetryPolicy,
    StaticConfigSource,
    StatusRecord,
    StatusStore,
    TunnelConfig,
    TunnelRegistry,
    TunnelState,
    TunnelWorker,
)

# Setup logging on package initialization
setup_logging(level="INFO")

# Package level logger
logger = get_logger(__name__)

__version__ = "0.1.0"


__all__ = [
    # Orchestration
    "TunnelRegistry",
    "TunnelWorker",
    "StatusStore",
    "RetryPolicy",
    "create_app",
    # Models
    "TunnelConfig",
    "HostConfig",
    "AuthMethod",
    "TunnelState",
    "ErrorType",
    "StatusRecord",
    # Configuration
    "RelaySettings",
    "BackoffStrategy",
    "StaticConfigSource",
    "JsonFileConfigSource",
    # Exceptions
    "RelayError",
    "ConfigurationError",
    "InvalidTunnelConfigError",
    "TunnelError",
    "UnknownTunnelError",
    "SessionError",
    "AuthError",
    "NetworkError",
    "ChannelError",
    # Utilities
    "get_logger",
    "setup_logging",
    "validate_port",
    "validate_non_empty_string",
    "mask_sensitive_data",
    "sanitize_log_data",
]
