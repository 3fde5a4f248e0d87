"""Tunnel models for the relay orchestrator.

This module defines the tunnel configuration supplied by callers, the
connection states a worker moves through, and the status snapshot it
publishes for pollers.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from ..common.utils import validate_non_empty_string


class AuthMethod(str, Enum):
    """How a hop authenticates."""

    PASSWORD = "password"
    KEY = "key"


class TunnelState(str, Enum):
    """Tunnel connection state enumeration."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    VERIFYING = "verifying"
    CONNECTED = "connected"
    UNSTABLE = "unstable"
    RETRYING = "retrying"
    FAILED = "failed"
    DISCONNECTING = "disconnecting"


class ErrorType(str, Enum):
    """Failure taxonomy reported alongside a status."""

    AUTH = "authentication"
    NETWORK = "network"
    FORWARD_REJECTED = "forward_rejected"
    VERIFICATION_TIMEOUT = "verification_timeout"
    RETRY_EXHAUSTED = "retry_exhausted"
    UNKNOWN = "unknown"


# States from which connect() starts a fresh worker instead of reusing one
RESTARTABLE_STATES = frozenset({TunnelState.DISCONNECTED, TunnelState.FAILED})


class HostConfig(BaseModel):
    """Connection details for one hop."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    host: str = Field(
        min_length=1,
        validation_alias=AliasChoices("host", "ip", "hostname"),
        description="Hostname or IP address",
    )
    port: int = Field(
        default=22,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("port", "sshPort"),
        description="SSH port",
    )
    username: str = Field(min_length=1, description="Login user")
    auth_method: AuthMethod = Field(
        default=AuthMethod.PASSWORD,
        validation_alias=AliasChoices("auth_method", "authMethod"),
    )
    password: str | None = Field(default=None, repr=False)
    private_key: str | None = Field(
        default=None,
        repr=False,
        validation_alias=AliasChoices("private_key", "privateKey", "sshKey"),
        description="PEM encoded private key",
    )
    key_passphrase: str | None = Field(
        default=None,
        repr=False,
        validation_alias=AliasChoices("key_passphrase", "keyPassword", "passphrase"),
    )

    @field_validator("host", "username")
    @classmethod
    def strip_identity(cls, v: str) -> str:
        """Strip whitespace from host and user; credentials are left untouched."""
        return validate_non_empty_string(v, "Host field")

    @model_validator(mode="after")
    def check_credentials(self) -> "HostConfig":
        """Require the credential matching the auth method."""
        if self.auth_method == AuthMethod.PASSWORD and not self.password:
            raise ValueError(f"password required for {self.username}@{self.host}")
        if self.auth_method == AuthMethod.KEY and not self.private_key:
            raise ValueError(f"private key required for {self.username}@{self.host}")
        return self

    @property
    def address(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def to_public(self) -> dict[str, Any]:
        """Serialize without credentials."""
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "authMethod": self.auth_method.value,
        }


class TunnelConfig(BaseModel):
    """Configuration of one named relay tunnel.

    Immutable for the lifetime of a connect attempt. Accepts both snake_case
    field names and the camelCase names used on the wire.
    """

    model_config = ConfigDict(
        frozen=True, str_strip_whitespace=True, populate_by_name=True
    )

    name: str = Field(min_length=1, max_length=128, description="Unique tunnel name")
    source: HostConfig = Field(description="Hop on which the forwarded port is bound")
    endpoint: HostConfig = Field(description="Hop whose local service is exposed")
    source_port: int = Field(
        ge=1, le=65535, validation_alias=AliasChoices("source_port", "sourcePort")
    )
    endpoint_port: int = Field(
        ge=1, le=65535, validation_alias=AliasChoices("endpoint_port", "endpointPort")
    )
    max_retries: int = Field(
        default=3, ge=0, validation_alias=AliasChoices("max_retries", "maxRetries")
    )
    retry_interval_ms: int = Field(
        default=5000,
        ge=0,
        validation_alias=AliasChoices(
            "retry_interval_ms", "retryIntervalMs", "retryInterval"
        ),
    )
    auto_start: bool = Field(
        default=False, validation_alias=AliasChoices("auto_start", "autoStart")
    )
    pinned: bool = Field(
        default=False,
        validation_alias=AliasChoices("pinned", "isPinned"),
        description="UI ordering hint, no effect on orchestration",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate tunnel name."""
        v = validate_non_empty_string(v, "Tunnel name")

        MIN_PRINTABLE_CHAR = 32
        if any(ord(char) < MIN_PRINTABLE_CHAR for char in v):
            raise ValueError("Tunnel name cannot contain control characters")

        return v

    @classmethod
    def from_flat(cls, record: dict[str, Any]) -> "TunnelConfig":
        """Build a config from the flat record layout of the storage service.

        The flat layout prefixes every hop field with ``source``/``endpoint``
        (``sourceIP``, ``sourceSSHPort``, ``endpointSSHKey``, ...).
        """

        def hop(prefix: str) -> dict[str, Any]:
            auth = record.get(f"{prefix}AuthMethod") or AuthMethod.PASSWORD.value
            return {
                "host": record.get(f"{prefix}IP"),
                "port": record.get(f"{prefix}SSHPort") or 22,
                "username": record.get(f"{prefix}Username"),
                "auth_method": auth,
                "password": record.get(f"{prefix}Password") or None,
                "private_key": record.get(f"{prefix}SSHKey") or None,
                "key_passphrase": record.get(f"{prefix}KeyPassword") or None,
            }

        data: dict[str, Any] = {
            "name": record.get("name"),
            "source": hop("source"),
            "endpoint": hop("endpoint"),
            "source_port": record.get("sourcePort"),
            "endpoint_port": record.get("endpointPort"),
        }
        for wire, field in (
            ("maxRetries", "max_retries"),
            ("retryInterval", "retry_interval_ms"),
            ("autoStart", "auto_start"),
            ("isPinned", "pinned"),
        ):
            if record.get(wire) is not None:
                data[field] = record[wire]

        return cls.model_validate(data)

    @classmethod
    def parse_record(cls, record: dict[str, Any]) -> "TunnelConfig":
        """Validate either the nested or the flat record layout."""
        if "source" in record or "endpoint" in record:
            return cls.model_validate(record)
        return cls.from_flat(record)

    def to_public(self) -> dict[str, Any]:
        """Serialize in wire naming with credentials removed."""
        return {
            "name": self.name,
            "source": self.source.to_public(),
            "endpoint": self.endpoint.to_public(),
            "sourcePort": self.source_port,
            "endpointPort": self.endpoint_port,
            "maxRetries": self.max_retries,
            "retryIntervalMs": self.retry_interval_ms,
            "autoStart": self.auto_start,
            "pinned": self.pinned,
        }


class StatusRecord(BaseModel):
    """Immutable status snapshot published for one tunnel."""

    model_config = ConfigDict(frozen=True)

    state: TunnelState = Field(default=TunnelState.DISCONNECTED)
    reason: str | None = Field(default=None, description="Human readable cause")
    error_type: ErrorType | None = Field(default=None)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int | None = Field(default=None, ge=0)
    next_retry_in_ms: int | None = Field(default=None, ge=0)
    retry_exhausted: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def connected(self) -> bool:
        return self.state == TunnelState.CONNECTED

    def to_payload(self) -> dict[str, Any]:
        """Render the stable external status contract.

        ``nextRetryIn`` is expressed in seconds.
        """
        next_retry_in = (
            self.next_retry_in_ms / 1000 if self.next_retry_in_ms is not None else None
        )
        return {
            "state": self.state.value,
            "connected": self.connected,
            "reason": self.reason,
            "errorType": self.error_type.value if self.error_type else None,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "nextRetryIn": next_retry_in,
            "retryExhausted": self.retry_exhausted,
        }
