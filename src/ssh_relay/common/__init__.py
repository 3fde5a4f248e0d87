"""Common utilities and shared functionality."""

from .exceptions import (
    AuthError,
    ChannelError,
    ConfigurationError,
    InvalidTunnelConfigError,
    NetworkError,
    RelayError,
    SessionError,
    TunnelError,
    TunnelRegistryError,
    UnknownTunnelError,
)
from .logging import get_logger, setup_logging
from .settings import BackoffStrategy, RelaySettings
from .utils import (
    MAX_PORT,
    MIN_PORT,
    mask_sensitive_data,
    redact_argv,
    sanitize_log_data,
    validate_non_empty_string,
    validate_port,
)

__all__ = [
    # Settings
    "RelaySettings",
    "BackoffStrategy",
    # Exceptions
    "RelayError",
    "ConfigurationError",
    "InvalidTunnelConfigError",
    "TunnelError",
    "TunnelRegistryError",
    "UnknownTunnelError",
    "SessionError",
    "AuthError",
    "NetworkError",
    "ChannelError",
    # Logging
    "get_logger",
    "setup_logging",
    # Utils
    "validate_port",
    "validate_non_empty_string",
    "mask_sensitive_data",
    "sanitize_log_data",
    "redact_argv",
    "MIN_PORT",
    "MAX_PORT",
]
