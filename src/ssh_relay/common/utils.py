"""Utility functions for the SSH relay orchestrator."""

from typing import Any

# Port range constants
MIN_PORT = 1
MAX_PORT = 65535

SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "passphrase",
        "private_key",
        "privatekey",
        "sshkey",
        "secret",
        "token",
    }
)


def validate_port(port: int, port_name: str = "Port") -> int:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Returns:
        The validated port

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if (
        isinstance(port, bool)
        or not isinstance(port, int)
        or not (MIN_PORT <= port <= MAX_PORT)
    ):
        raise ValueError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")
    return port


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Validate that a string is not empty or only whitespace.

    Args:
        value: String value to validate
        field_name: Name of the field for error messages

    Returns:
        Stripped string value

    Raises:
        ValueError: If string is empty or only whitespace
    """
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value.strip()


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 4
) -> str:
    """Mask sensitive data for logging while preserving some characters for debugging.

    Args:
        value: Sensitive string to mask (e.g., password, key passphrase)
        mask_char: Character to use for masking
        show_chars: Number of characters to show at the end

    Returns:
        Masked string safe for logging
    """
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    visible = value[-show_chars:] if show_chars > 0 else ""
    return mask_char * masked_length + visible


def _is_sensitive(key: str) -> bool:
    normalized = key.lower().replace("_", "").replace("-", "")
    return any(field.replace("_", "") in normalized for field in SENSITIVE_FIELDS)


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Sanitize dictionary data for safe logging by masking sensitive fields.

    Nested dictionaries (such as a hop inside a tunnel record) are sanitized
    recursively. Private keys are replaced outright rather than tail-masked.

    Args:
        data: Dictionary potentially containing sensitive data

    Returns:
        Sanitized dictionary safe for logging
    """
    sanitized: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            sanitized[key] = sanitize_log_data(value)
        elif _is_sensitive(key):
            if value and "key" in key.lower() and "pass" not in key.lower():
                sanitized[key] = "<redacted>"
            else:
                sanitized[key] = mask_sensitive_data(str(value) if value else None)
        else:
            sanitized[key] = value

    return sanitized


def redact_argv(argv: list[str], secrets: list[str | None]) -> list[str]:
    """Replace every occurrence of a secret in an argument vector.

    Args:
        argv: Command argument vector
        secrets: Values that must not appear in logs

    Returns:
        Copy of argv with secrets masked
    """
    hidden = {secret for secret in secrets if secret}
    return [mask_sensitive_data(arg, show_chars=0) if arg in hidden else arg for arg in argv]
