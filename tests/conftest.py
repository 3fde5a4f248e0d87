"""Shared pytest fixtures for SSH relay tests."""

import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass, field

import pytest

from ssh_relay.common.exceptions import ChannelError, NetworkError
from ssh_relay.common.settings import RelaySettings
from ssh_relay.tunnels.models import HostConfig, StatusRecord, TunnelConfig
from ssh_relay.tunnels.session import CommandStream, RemoteSession
from ssh_relay.tunnels.status import StatusStore


@dataclass
class HopPlan:
    """Scripted behavior of one fake hop session."""

    open_error: Exception | None = None
    block_open: bool = False
    exec_error: Exception | None = None
    relay_exit: tuple[int, str] | None = None
    probe_codes: list[int] = field(default_factory=lambda: [0])
    keepalive_code: int = 0
    close_delay: float = 0.0


class FakeStream(CommandStream):
    """Command stream whose exit is driven by the test."""

    def __init__(self, argv: list[str], code: int | None = None, stderr: str = ""):
        self.argv = argv
        self._code = code
        self._stderr = stderr
        self._done = threading.Event()
        self.closed = False
        if code is not None:
            self._done.set()

    @property
    def exited(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> int | None:
        if not self._done.wait(timeout):
            return None
        return self._code if self._code is not None else -1

    def stderr_text(self) -> str:
        return self._stderr

    def close(self) -> None:
        self.closed = True

    def finish(self, code: int = 255, stderr: str = "") -> None:
        self._code = code
        self._stderr = stderr
        self._done.set()


class FakeSession(RemoteSession):
    """RemoteSession recording its lifecycle in the factory ledger."""

    def __init__(self, host: HostConfig, plan: HopPlan, factory: "FakeSessionFactory"):
        super().__init__(host)
        self.plan = plan
        self.factory = factory
        self.opened = False
        self.dropped = False
        self.commands: list[list[str]] = []
        self.relays: list[FakeStream] = []
        self._closed = threading.Event()
        self._probes = deque(plan.probe_codes)
        self._lock = threading.Lock()

    def open(self, timeout: float) -> None:
        with self._lock:
            if self._closed.is_set():
                raise NetworkError("Session closed before open", host=self.host.address)
            self.opened = True
        self.factory.record("open", self)

        if self.plan.block_open:
            if not self._closed.wait(timeout):
                raise NetworkError("Connection timed out", host=self.host.address)
            raise NetworkError("Session closed during open", host=self.host.address)

        if self.plan.open_error is not None:
            raise self.plan.open_error

    def exec(self, argv: list[str]) -> CommandStream:
        if not self.is_active:
            raise ChannelError("Session is not active", host=self.host.address)
        self.commands.append(list(argv))

        if argv[0] == "nc":
            code = self._probes.popleft() if len(self._probes) > 1 else self._probes[0]
            return FakeStream(argv, code=code)
        if argv[0] == "echo":
            return FakeStream(argv, code=self.plan.keepalive_code)

        if self.plan.exec_error is not None:
            raise self.plan.exec_error
        relay = FakeStream(argv)
        if self.plan.relay_exit is not None:
            relay.finish(*self.plan.relay_exit)
        self.relays.append(relay)
        return relay

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            opened = self.opened
        if self.plan.close_delay:
            time.sleep(min(self.plan.close_delay, timeout))
        if opened:
            self.factory.record("close", self)

    @property
    def is_active(self) -> bool:
        return self.opened and not self._closed.is_set() and not self.dropped

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def drop(self) -> None:
        """Simulate the remote end going away."""
        self.dropped = True


class FakeSessionFactory:
    """Session factory handing out scripted sessions per host.

    Plans queued for a host are consumed one per session; once the queue is
    empty the default plan for that host (or a succeeding one) is used.
    """

    def __init__(self) -> None:
        self.sessions: list[FakeSession] = []
        self.opens = 0
        self.closes = 0
        self._plans: dict[str, deque[HopPlan]] = defaultdict(deque)
        self._defaults: dict[str, HopPlan] = {}
        self._lock = threading.Lock()

    def __call__(self, host: HostConfig) -> RemoteSession:
        with self._lock:
            queue = self._plans[host.host]
            plan = queue.popleft() if queue else self._defaults.get(host.host, HopPlan())
            session = FakeSession(host, plan, self)
            self.sessions.append(session)
        return session

    def queue(self, host: str, *plans: HopPlan) -> None:
        with self._lock:
            self._plans[host].extend(plans)

    def default(self, host: str, plan: HopPlan) -> None:
        with self._lock:
            self._defaults[host] = plan

    def record(self, event: str, session: FakeSession) -> None:
        with self._lock:
            if event == "open":
                self.opens += 1
            else:
                self.closes += 1

    def sessions_for(self, host: str) -> list[FakeSession]:
        with self._lock:
            return [s for s in self.sessions if s.host.host == host]

    def live_relays(self) -> list[FakeStream]:
        with self._lock:
            sessions = list(self.sessions)
        return [r for s in sessions if not s.closed for r in s.relays if not r.exited]


class StatusHistory:
    """Every record published to a store, in order."""

    def __init__(self, store: StatusStore):
        self.records: list[tuple[str, StatusRecord]] = []
        self._lock = threading.Lock()
        store.subscribe(self)

    def __call__(self, name: str, record: StatusRecord) -> None:
        with self._lock:
            self.records.append((name, record))

    def for_tunnel(self, name: str) -> list[StatusRecord]:
        with self._lock:
            return [record for n, record in self.records if n == name]

    def states(self, name: str) -> list[str]:
        return [record.state.value for record in self.for_tunnel(name)]


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll until predicate is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


SOURCE_HOST = "10.0.0.1"
ENDPOINT_HOST = "10.0.0.2"


def make_config(name: str = "db-tunnel", **overrides) -> TunnelConfig:
    """Build a valid tunnel config with password auth on both hops."""
    data = {
        "name": name,
        "source": {
            "host": SOURCE_HOST,
            "username": "relay",
            "password": "s3cret pass'word",
        },
        "endpoint": {
            "host": ENDPOINT_HOST,
            "port": 2222,
            "username": "app",
            "password": "endpoint-pass",
        },
        "sourcePort": 15432,
        "endpointPort": 5432,
        "maxRetries": 2,
        "retryIntervalMs": 10,
    }
    data.update(overrides)
    return TunnelConfig.model_validate(data)


@pytest.fixture
def fast_settings():
    """Settings with tiny intervals so worker tests run quickly."""
    return RelaySettings(
        session_open_timeout=2.0,
        probe_timeout=0.5,
        verify_timeout=0.3,
        probe_interval=0.01,
        close_timeout=0.5,
        keepalive_interval=60.0,
        monitor_interval=0.01,
        join_timeout=2.0,
    )


@pytest.fixture
def session_factory():
    return FakeSessionFactory()


@pytest.fixture
def store():
    return StatusStore()


@pytest.fixture
def history(store):
    return StatusHistory(store)


@pytest.fixture
def tunnel_config():
    return make_config()


@pytest.fixture
def tunnel_record():
    """Raw wire record for a tunnel, as the storage collaborator sends it."""
    return {
        "name": "web-tunnel",
        "source": {"host": SOURCE_HOST, "username": "relay", "password": "pw1"},
        "endpoint": {"host": ENDPOINT_HOST, "username": "app", "password": "pw2"},
        "sourcePort": 18080,
        "endpointPort": 8080,
        "maxRetries": 1,
        "retryIntervalMs": 10,
    }
