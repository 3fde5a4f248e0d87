from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackoffStrategy(str, Enum):
    """Delay schedule between reconnect attempts"""
    FIXED = "fixed"              # Always wait retry_interval_ms
    EXPONENTIAL = "exponential"  # Double per attempt, capped at backoff_cap_ms


class RelaySettings(BaseSettings):
    """Orchestrator timing and service settings.

    Every field can be overridden by an ``SSH_RELAY_<FIELD_NAME>`` environment
    variable, e.g. ``SSH_RELAY_PORT=9000``. Empty variables keep the default.
    """

    model_config = SettingsConfigDict(
        env_prefix='SSH_RELAY_',
        env_ignore_empty=True,
        str_strip_whitespace=True,
        validate_assignment=True,
        extra='forbid'
    )

    session_open_timeout: float = Field(default=20.0, ge=0.1, le=120.0, description="SSH connect and auth timeout in seconds")
    probe_timeout: float = Field(default=5.0, ge=0.01, le=60.0, description="Timeout for one verification probe run")
    verify_timeout: float = Field(default=15.0, ge=0.01, le=300.0, description="Deadline for the relay to pass a probe")
    probe_interval: float = Field(default=0.5, ge=0.001, le=10.0, description="Pause between verification probes")
    close_timeout: float = Field(default=5.0, ge=0.01, le=30.0, description="Hard timeout when closing a session")
    keepalive_interval: float = Field(default=30.0, ge=0.01, le=3600.0, description="Interval between keep-alive pings while connected")
    monitor_interval: float = Field(default=0.5, ge=0.001, le=10.0, description="How often a connected relay is checked for drops")
    join_timeout: float = Field(default=5.0, ge=0.01, le=60.0, description="Grace period when joining worker threads on shutdown")
    transport_keepalive: int = Field(default=5, ge=0, le=300, description="SSH transport keep-alive interval in seconds (0 disables)")

    backoff_strategy: BackoffStrategy = Field(default=BackoffStrategy.FIXED)
    backoff_cap_ms: int = Field(default=60_000, ge=0, description="Upper bound on exponential backoff delay")
    autostart_stagger: float = Field(default=0.0, ge=0.0, le=60.0, description="Delay between auto-started tunnels")

    host: str = Field(default="0.0.0.0", min_length=1, description="HTTP interface bind address")
    port: int = Field(default=8083, ge=1, le=65535, description="HTTP interface port")
    tunnels_file: str | None = Field(default=None, description="JSON file with tunnel records for auto-start")
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the level is one the logging module knows"""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

