"""Map adapter failures and remote stderr onto the error taxonomy."""

from ..common.exceptions import AuthError, ChannelError, NetworkError
from .models import ErrorType

AUTH_PHRASES = (
    "authentication failed",
    "permission denied",
    "incorrect password",
    "no supported authentication methods",
    "too many authentication failures",
    "host key verification failed",
)

FORWARD_PHRASES = (
    "remote port forwarding failed",
    "port forwarding failed",
    "failed for listen port",
    "address already in use",
    "administratively prohibited",
    "forwarding disabled",
    "sshpass: command not found",
    "ssh: command not found",
)

TIMEOUT_PHRASES = ("etimedout", "timed out", "timeout")

NETWORK_PHRASES = (
    "closed by remote host",
    "connection reset",
    "connection refused",
    "broken pipe",
    "no route to host",
    "network is unreachable",
    "could not resolve hostname",
    "name or service not known",
)


def classify_message(message: str | None) -> ErrorType:
    """Classify free-form error text.

    Forwarding refusals are checked before auth phrases because OpenSSH
    reports some refusals as "permission denied" for the listen port.
    """
    if not message:
        return ErrorType.UNKNOWN

    text = message.lower()

    if any(phrase in text for phrase in FORWARD_PHRASES):
        return ErrorType.FORWARD_REJECTED
    if any(phrase in text for phrase in AUTH_PHRASES):
        return ErrorType.AUTH
    if any(phrase in text for phrase in NETWORK_PHRASES):
        return ErrorType.NETWORK
    if any(phrase in text for phrase in TIMEOUT_PHRASES):
        return ErrorType.NETWORK

    return ErrorType.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorType:
    if isinstance(exc, AuthError):
        return ErrorType.AUTH
    if isinstance(exc, NetworkError):
        return ErrorType.NETWORK
    if isinstance(exc, ChannelError):
        error_type = classify_message(str(exc))
        return ErrorType.FORWARD_REJECTED if error_type == ErrorType.UNKNOWN else error_type
    return classify_message(str(exc))
