"""Remote command builders.

Every builder returns an argument vector. Quoting happens once, in
``to_shell``, when the adapter hands the command to the remote shell, so a
credential can never break out of its argument.
"""

import shlex

from ..common.utils import validate_port
from .models import AuthMethod, TunnelConfig

SSH_OPTIONS = (
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "ExitOnForwardFailure=yes",
    "-o", "ServerAliveInterval=30",
    "-o", "ServerAliveCountMax=3",
)


def forward_command(config: TunnelConfig) -> list[str]:
    """Reverse forward run on the endpoint hop.

    Binds ``source_port`` on the source host and relays every inbound
    connection back to ``endpoint_port`` on the endpoint's loopback. The
    endpoint logs in to the source with the source hop's credentials.
    """
    source = config.source
    argv = ["ssh", "-N", "-T", *SSH_OPTIONS]

    if source.auth_method == AuthMethod.KEY:
        # Key material stays on the endpoint; never prompt inside a non-tty channel
        argv += ["-o", "BatchMode=yes"]
    else:
        argv += ["-o", "PreferredAuthentications=password,keyboard-interactive"]

    argv += [
        "-p", str(source.port),
        "-R", f"{config.source_port}:127.0.0.1:{config.endpoint_port}",
        f"{source.username}@{source.host}",
    ]

    if source.auth_method == AuthMethod.PASSWORD and source.password:
        return ["sshpass", "-p", source.password, *argv]
    return argv


def probe_command(port: int) -> list[str]:
    """Check that something accepts connections on a loopback port."""
    validate_port(port, "Probe port")
    return ["nc", "-z", "-w", "2", "127.0.0.1", str(port)]


def keepalive_command() -> list[str]:
    return ["echo", "ping"]


def to_shell(argv: list[str]) -> str:
    """Quote an argument vector into a single POSIX shell command line."""
    if not argv:
        raise ValueError("Command cannot be empty")
    return shlex.join(argv)
