"""Custom exceptions for the SSH relay orchestrator."""


class RelayError(Exception):
    """Base exception for all SSH relay errors."""
    pass


class ConfigurationError(RelayError):
    """Raised when configuration is invalid."""
    pass


class InvalidTunnelConfigError(ConfigurationError):
    """Raised when a tunnel configuration is rejected before a worker exists."""
    pass


class TunnelError(RelayError):
    """Base exception for tunnel orchestration errors."""
    pass


class TunnelRegistryError(TunnelError):
    """Raised for tunnel registry operations."""
    pass


class UnknownTunnelError(TunnelRegistryError):
    """Raised when a lookup requires a live worker that does not exist."""
    pass


class SessionError(RelayError):
    """Raised by the remote session adapter."""

    def __init__(self, message: str, host: str | None = None):
        self.host = host
        host_info = f" (host: {host})" if host else ""
        super().__init__(f"{message}{host_info}")


class AuthError(SessionError):
    """Raised when a hop rejects the supplied credentials."""
    pass


class NetworkError(SessionError):
    """Raised on connection refused, reset or timeout."""
    pass


class ChannelError(SessionError):
    """Raised when a command channel cannot be opened on a live session."""
    pass
