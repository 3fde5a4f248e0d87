"""Remote session adapter.

Wraps one authenticated SSH connection to a single hop. The orchestrator only
sees three outcomes from it: ``open`` either succeeds or raises
``AuthError``/``NetworkError``, ``exec`` yields a ``CommandStream`` or raises
``ChannelError``, and ``close`` always returns within its timeout.
"""

import io
import socket
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

import paramiko

from ..common.exceptions import AuthError, ChannelError, NetworkError
from ..common.logging import get_logger
from ..common.settings import RelaySettings
from .commands import to_shell
from .models import AuthMethod, HostConfig

logger = get_logger(__name__)

# Supported in-memory key types, tried in order
KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)

STREAM_POLL_INTERVAL = 0.05


class CommandStream(ABC):
    """Output stream of a command running on a hop."""

    @property
    @abstractmethod
    def exited(self) -> bool:
        """True once the remote command has finished or its channel closed."""

    @abstractmethod
    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the command to exit.

        Returns:
            Exit code, -1 if the channel closed without one, or None on timeout
        """

    @abstractmethod
    def stderr_text(self) -> str:
        """Everything the command has written to stderr so far."""

    @abstractmethod
    def close(self) -> None:
        ...


class RemoteSession(ABC):
    """One SSH session to one hop, exclusively owned by a worker."""

    def __init__(self, host: HostConfig):
        self.host = host

    @abstractmethod
    def open(self, timeout: float) -> None:
        """Connect and authenticate.

        Raises:
            AuthError: Credentials rejected
            NetworkError: Unreachable, refused, reset or timed out
        """

    @abstractmethod
    def exec(self, argv: list[str]) -> CommandStream:
        """Start a command on the hop.

        Raises:
            ChannelError: The hop refused to run the command
        """

    @abstractmethod
    def close(self, timeout: float = 5.0) -> None:
        """Close the session. Idempotent, callable from any thread, bounded."""

    @property
    @abstractmethod
    def is_active(self) -> bool:
        ...

    def run(self, argv: list[str], timeout: float) -> tuple[int | None, str]:
        """Run a short command to completion.

        Returns:
            Tuple of exit code (None on timeout) and stderr text
        """
        stream = self.exec(argv)
        try:
            code = stream.wait(timeout)
            return code, stream.stderr_text()
        finally:
            stream.close()


SessionFactory = Callable[[HostConfig], RemoteSession]


def load_private_key(pem: str, passphrase: str | None = None) -> paramiko.PKey:
    """Parse a PEM/OpenSSH private key held in memory.

    Raises:
        AuthError: If no supported key type can read it
    """
    last_error: Exception | None = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(pem), password=passphrase)
        except paramiko.PasswordRequiredException as e:
            raise AuthError(f"Private key is encrypted and no passphrase given: {e}") from e
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
    raise AuthError(f"Unsupported or undecryptable private key: {last_error}")


class ParamikoCommandStream(CommandStream):
    """CommandStream backed by a paramiko channel."""

    def __init__(self, channel: paramiko.Channel):
        self._channel = channel
        self._stderr = bytearray()

    @property
    def exited(self) -> bool:
        return self._channel.exit_status_ready() or self._channel.closed

    def wait(self, timeout: float | None = None) -> int | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.exited:
            if deadline is not None and time.monotonic() >= deadline:
                return None
            self._drain_stderr()
            time.sleep(STREAM_POLL_INTERVAL)

        self._drain_stderr()
        if self._channel.exit_status_ready():
            return self._channel.recv_exit_status()
        return -1

    def _drain_stderr(self) -> None:
        try:
            while self._channel.recv_stderr_ready():
                chunk = self._channel.recv_stderr(4096)
                if not chunk:
                    break
                self._stderr.extend(chunk)
        except (OSError, EOFError, paramiko.SSHException):
            pass

    def stderr_text(self) -> str:
        self._drain_stderr()
        return self._stderr.decode("utf-8", errors="replace").strip()

    def close(self) -> None:
        try:
            self._channel.close()
        except (OSError, EOFError, paramiko.SSHException) as e:
            logger.debug("Error closing channel", error=str(e))


class ParamikoSession(RemoteSession):
    """RemoteSession implemented with paramiko.

    The TCP socket is created here rather than by paramiko so that ``close``
    from another thread can abort a handshake that is still in progress.
    """

    def __init__(self, host: HostConfig, keepalive: int = 5):
        super().__init__(host)
        self._keepalive = keepalive
        self._client: paramiko.SSHClient | None = None
        self._sock: socket.socket | None = None
        self._closed = threading.Event()
        self._lock = threading.Lock()

    def open(self, timeout: float) -> None:
        if self._closed.is_set():
            raise NetworkError("Session closed before open", host=self.host.address)

        pkey = None
        if self.host.auth_method == AuthMethod.KEY and self.host.private_key:
            pkey = load_private_key(self.host.private_key, self.host.key_passphrase)

        logger.debug("Opening SSH session", host=self.host.address)
        try:
            sock = socket.create_connection((self.host.host, self.host.port), timeout=timeout)
        except TimeoutError as e:
            raise NetworkError(f"Connection timed out: {e}", host=self.host.address) from e
        except OSError as e:
            raise NetworkError(f"Connection failed: {e}", host=self.host.address) from e

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        with self._lock:
            if self._closed.is_set():
                sock.close()
                raise NetworkError("Session closed during open", host=self.host.address)
            self._sock = sock
            self._client = client

        try:
            client.connect(
                hostname=self.host.host,
                port=self.host.port,
                username=self.host.username,
                password=self.host.password if pkey is None else None,
                pkey=pkey,
                sock=sock,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            self.close()
            raise AuthError(f"Authentication failed: {e}", host=self.host.address) from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            aborted = self._closed.is_set()
            self.close()
            if aborted:
                raise NetworkError("Session closed during open", host=self.host.address) from e
            raise NetworkError(f"SSH handshake failed: {e}", host=self.host.address) from e

        transport = client.get_transport()
        if transport is not None and self._keepalive:
            transport.set_keepalive(self._keepalive)
        logger.debug("SSH session ready", host=self.host.address)

    def exec(self, argv: list[str]) -> CommandStream:
        transport = self._client.get_transport() if self._client else None
        if transport is None or not transport.is_active():
            raise ChannelError("Session is not active", host=self.host.address)

        try:
            channel = transport.open_session()
            channel.exec_command(to_shell(argv))
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ChannelError(f"Command rejected: {e}", host=self.host.address) from e

        return ParamikoCommandStream(channel)

    @property
    def is_active(self) -> bool:
        if self._closed.is_set() or self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            client, sock = self._client, self._sock

        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass

        if client is None:
            return

        # paramiko joins its transport thread without a timeout; bound it here
        closer = threading.Thread(
            target=client.close, name=f"ssh-close-{self.host.host}", daemon=True
        )
        closer.start()
        closer.join(timeout)
        if closer.is_alive():
            logger.warning(
                "SSH session did not close in time, abandoning it",
                host=self.host.address,
                timeout=timeout,
            )


def paramiko_session_factory(settings: RelaySettings) -> SessionFactory:
    """Session factory producing paramiko sessions configured from settings."""

    def factory(host: HostConfig) -> RemoteSession:
        return ParamikoSession(host, keepalive=settings.transport_keepalive)

    return factory
