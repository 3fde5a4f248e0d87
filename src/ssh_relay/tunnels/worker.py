"""Tunnel worker: drives one tunnel's connection state machine.

Each worker runs on its own thread and owns the two hop sessions its relay
needs. Every state change is published to the status store before the worker
moves on, so pollers never see a stale state for longer than one transition.
"""

import threading
import time
from collections.abc import Callable
from enum import Enum

from ..common.exceptions import ChannelError, SessionError
from ..common.logging import get_logger
from ..common.settings import RelaySettings
from ..common.utils import redact_argv
from .backoff import RetryPolicy
from .classify import classify_exception, classify_message
from .commands import forward_command, keepalive_command, probe_command
from .models import ErrorType, HostConfig, StatusRecord, TunnelConfig, TunnelState
from .session import CommandStream, RemoteSession, SessionFactory
from .status import StatusStore

SOURCE_HOP = "source"
ENDPOINT_HOP = "endpoint"

# States a worker may still publish after a stop was requested
STOP_STATES = frozenset({TunnelState.DISCONNECTING, TunnelState.DISCONNECTED})


class StopMode(str, Enum):
    """Why a worker is shutting down."""

    NONE = "none"
    DISCONNECT = "disconnect"
    CANCEL = "cancel"


class AttemptFailed(Exception):
    """A connect attempt or an established relay failed."""

    def __init__(self, error_type: ErrorType, reason: str):
        self.error_type = error_type
        self.reason = reason
        super().__init__(reason)


class _Stopped(Exception):
    """Raised inside the worker thread when disconnect or cancel interrupts it."""


class TunnelWorker:
    """State machine for a single tunnel.

    Lifecycle: ``start`` publishes ``connecting`` and launches the worker
    thread. The thread alternates between connect attempts and retry waits
    until the relay is verified, retries are exhausted (the worker then parks
    in ``failed``), or ``disconnect``/``cancel`` stops it.
    """

    def __init__(
        self,
        config: TunnelConfig,
        store: StatusStore,
        session_factory: SessionFactory,
        settings: RelaySettings | None = None,
        retry_policy: RetryPolicy | None = None,
        on_finished: Callable[["TunnelWorker"], None] | None = None,
    ):
        self.config = config
        self.name = config.name
        self._store = store
        self._session_factory = session_factory
        self._settings = settings or RelaySettings()
        self._retry_policy = retry_policy or RetryPolicy(
            strategy=self._settings.backoff_strategy,
            cap_ms=self._settings.backoff_cap_ms,
        )
        self._on_finished = on_finished

        self._state = TunnelState.DISCONNECTED
        self._record = StatusRecord(max_retries=config.max_retries)
        self._retry_count = 0
        self._last_error: ErrorType | None = None

        self._sessions: dict[str, RemoteSession] = {}
        self._relay: CommandStream | None = None

        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._stop_mode = StopMode.NONE
        self._running = False
        self._finalized = False
        self._thread: threading.Thread | None = None

        self._log = get_logger(__name__, tunnel=self.name)

    @property
    def state(self) -> TunnelState:
        with self._lock:
            return self._state

    @property
    def status(self) -> StatusRecord:
        with self._lock:
            return self._record

    @property
    def retry_count(self) -> int:
        with self._lock:
            return self._retry_count

    @property
    def last_error(self) -> ErrorType | None:
        with self._lock:
            return self._last_error

    @property
    def finalized(self) -> bool:
        """True once the worker has published its last record."""
        with self._lock:
            return self._finalized

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> StatusRecord:
        """Publish ``connecting`` and launch the worker thread.

        Returns immediately; progress is observable through the status store.
        """
        with self._lock:
            if self._thread is not None:
                raise RuntimeError(f"Worker for tunnel {self.name} already started")
            self._transition(TunnelState.CONNECTING)
            self._running = True
            self._thread = threading.Thread(
                target=self._run, name=f"tunnel-{self.name}", daemon=True
            )
            self._thread.start()
            return self._record

    def disconnect(self) -> StatusRecord:
        """Graceful stop: ``disconnecting`` now, ``disconnected`` once the hops are closed."""
        with self._lock:
            if self._finalized or self._stop_mode != StopMode.NONE:
                return self._record
            self._stop_mode = StopMode.DISCONNECT
            self._stop_event.set()
            self._transition(TunnelState.DISCONNECTING, reason="Disconnect requested")
            finish_inline = not self._running

        self._log.info("Disconnect requested")
        if finish_inline:
            self._finish_disconnect()
        return self.status

    def cancel(self) -> StatusRecord:
        """Forceful stop from any state.

        Closes the hop sessions from the calling thread, which aborts a
        blocked open or probe, and publishes ``disconnected`` directly.
        """
        with self._lock:
            if self._finalized:
                return self._record
            self._stop_mode = StopMode.CANCEL
            self._stop_event.set()
            relay, sessions = self._release_resources()

        self._log.info("Cancel requested", open_sessions=len(sessions))
        self._close_resources(relay, sessions)
        with self._lock:
            self._retry_count = 0
        self._transition(TunnelState.DISCONNECTED, reason="Cancelled")
        self._notify_finished()
        return self.status

    def retire(self) -> None:
        """Silence a parked worker that is being replaced by a new one."""
        with self._lock:
            self._stop_mode = StopMode.CANCEL
            self._stop_event.set()
            self._finalized = True
            relay, sessions = self._release_resources()
        self._close_resources(relay, sessions)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker thread to exit.

        Returns:
            True if the thread is no longer running
        """
        if self._thread is not None:
            self._thread.join(timeout)
        return not self.is_alive

    # State machine

    def _transition(
        self,
        state: TunnelState,
        *,
        reason: str | None = None,
        error_type: ErrorType | None = None,
        next_retry_in_ms: int | None = None,
        retry_exhausted: bool = False,
    ) -> bool:
        """Publish a new state. Returns False if the worker may no longer write."""
        with self._lock:
            if self._finalized:
                return False
            if self._stop_mode != StopMode.NONE and state not in STOP_STATES:
                return False

            self._state = state
            self._record = StatusRecord(
                state=state,
                reason=reason,
                error_type=error_type,
                retry_count=self._retry_count,
                max_retries=self.config.max_retries,
                next_retry_in_ms=next_retry_in_ms,
                retry_exhausted=retry_exhausted,
            )
            self._store.publish(self.name, self._record)

            if state == TunnelState.DISCONNECTED and self._stop_mode != StopMode.NONE:
                self._finalized = True

        self._log.debug(
            "State transition",
            state=state.value,
            reason=reason,
            error_type=error_type.value if error_type else None,
            retry_count=self._retry_count,
        )
        return True

    def _run(self) -> None:
        try:
            self._lifecycle()
        except Exception as e:
            self._log.exception("Tunnel worker crashed")
            self._teardown()
            self._transition(
                TunnelState.FAILED,
                reason=f"Internal error: {e}",
                error_type=ErrorType.UNKNOWN,
            )
        finally:
            self._teardown()
            with self._lock:
                self._running = False
                mode = self._stop_mode
            if mode == StopMode.DISCONNECT:
                self._finish_disconnect()

    def _lifecycle(self) -> None:
        first_attempt = True
        while not self._stop_event.is_set():
            if not first_attempt:
                self._transition(TunnelState.CONNECTING)
            first_attempt = False

            failure = self._attempt()
            if failure is None:
                return

            with self._lock:
                self._last_error = failure.error_type
            self._teardown()
            if self._stop_event.is_set() or not self._schedule_retry(failure):
                return

    def _attempt(self) -> AttemptFailed | None:
        """One connect attempt, followed by monitoring if it succeeds.

        Returns:
            The failure that ended the attempt, or None if the worker was stopped
        """
        try:
            self._establish()
        except _Stopped:
            return None
        except AttemptFailed as failure:
            if self._stop_event.is_set():
                return None
            self._log.warning(
                "Connect attempt failed",
                error_type=failure.error_type.value,
                reason=failure.reason,
                retry_count=self._retry_count,
            )
            return failure

        with self._lock:
            self._last_error = None
        self._transition(TunnelState.CONNECTED)
        self._log.info("Tunnel connected", retry_count=self._retry_count)

        failure = self._monitor()
        if failure is None or self._stop_event.is_set():
            return None

        self._log.warning(
            "Connected tunnel dropped",
            error_type=failure.error_type.value,
            reason=failure.reason,
        )
        self._transition(
            TunnelState.UNSTABLE, reason=failure.reason, error_type=failure.error_type
        )
        # Retries after a verified connection count from zero again
        with self._lock:
            self._retry_count = 0
        return failure

    def _schedule_retry(self, failure: AttemptFailed) -> bool:
        """Publish ``retrying`` and wait, or park in ``failed`` when exhausted.

        Returns:
            True if another attempt should start
        """
        max_retries = self.config.max_retries
        if self._retry_policy.exhausted(self._retry_count, max_retries):
            self._log.error(
                "Retries exhausted",
                max_retries=max_retries,
                error_type=failure.error_type.value,
                reason=failure.reason,
            )
            self._transition(
                TunnelState.FAILED,
                reason=f"Max retries exhausted ({max_retries}): {failure.reason}",
                error_type=ErrorType.RETRY_EXHAUSTED,
                retry_exhausted=True,
            )
            return False

        with self._lock:
            self._retry_count += 1
        delay_ms = self._retry_policy.delay_ms(
            self.config.retry_interval_ms, self._retry_count
        )
        self._transition(
            TunnelState.RETRYING,
            reason=failure.reason,
            error_type=failure.error_type,
            next_retry_in_ms=delay_ms,
        )
        self._log.info(
            "Retry scheduled",
            retry_count=self._retry_count,
            max_retries=max_retries,
            delay_ms=delay_ms,
        )
        return not self._stop_event.wait(delay_ms / 1000)

    # Connect attempt steps

    def _establish(self) -> None:
        source = self._open_hop(SOURCE_HOP, self.config.source)
        endpoint = self._open_hop(ENDPOINT_HOP, self.config.endpoint)
        relay = self._start_relay(endpoint)
        self._transition(TunnelState.VERIFYING)
        self._verify(source, relay)

    def _open_hop(self, hop: str, host: HostConfig) -> RemoteSession:
        session = self._session_factory(host)
        with self._lock:
            stopped = self._stop_event.is_set()
            if not stopped:
                self._sessions[hop] = session
        if stopped:
            session.close(self._settings.close_timeout)
            raise _Stopped()

        try:
            session.open(self._settings.session_open_timeout)
        except SessionError as e:
            if self._stop_event.is_set():
                raise _Stopped() from e
            raise AttemptFailed(classify_exception(e), f"{hop} hop: {e}") from e

        self._log.debug("Hop session open", hop=hop, host=host.address)
        return session

    def _start_relay(self, endpoint: RemoteSession) -> CommandStream:
        argv = forward_command(self.config)
        self._log.info(
            "Starting reverse forward",
            command=redact_argv(argv, [self.config.source.password]),
        )
        try:
            relay = endpoint.exec(argv)
        except ChannelError as e:
            if self._stop_event.is_set():
                raise _Stopped() from e
            raise AttemptFailed(
                classify_exception(e), f"Forward command rejected: {e}"
            ) from e

        with self._lock:
            stopped = self._stop_event.is_set()
            if not stopped:
                self._relay = relay
        if stopped:
            relay.close()
            raise _Stopped()
        return relay

    def _verify(self, source: RemoteSession, relay: CommandStream) -> None:
        """Probe the bound port on the source hop until it answers or time runs out."""
        port = self.config.source_port
        deadline = time.monotonic() + self._settings.verify_timeout

        while True:
            if self._stop_event.is_set():
                raise _Stopped()

            failure = self._check_relay(relay, ErrorType.FORWARD_REJECTED)
            if failure is not None:
                raise failure

            try:
                code, _ = source.run(probe_command(port), self._settings.probe_timeout)
            except ChannelError as e:
                failure = self._check_relay(relay, ErrorType.FORWARD_REJECTED)
                raise failure or AttemptFailed(
                    ErrorType.NETWORK, f"Verification probe failed: {e}"
                ) from e

            if code == 0:
                return

            if time.monotonic() >= deadline:
                raise AttemptFailed(
                    ErrorType.VERIFICATION_TIMEOUT,
                    f"Port {port} on {self.config.source.host} did not accept "
                    f"connections within {self._settings.verify_timeout:g}s",
                )

            if self._stop_event.wait(self._settings.probe_interval):
                raise _Stopped()

    def _monitor(self) -> AttemptFailed | None:
        """Watch a connected relay until it drops or the worker is stopped."""
        with self._lock:
            relay = self._relay
            source = self._sessions.get(SOURCE_HOP)
        if relay is None or source is None:
            return None

        interval = self._settings.keepalive_interval
        next_ping = time.monotonic() + interval

        while not self._stop_event.wait(self._settings.monitor_interval):
            failure = self._check_relay(relay, ErrorType.NETWORK)
            if failure is not None:
                return failure

            if time.monotonic() >= next_ping:
                failure = self._keepalive(source)
                if failure is not None:
                    return failure
                next_ping = time.monotonic() + interval

        return None

    def _check_relay(
        self, relay: CommandStream, exit_error: ErrorType
    ) -> AttemptFailed | None:
        """Check both hops and the relay command.

        The source hop is checked first, so when both hops die at once the
        reported reason is the source's.
        """
        with self._lock:
            source = self._sessions.get(SOURCE_HOP)
            endpoint = self._sessions.get(ENDPOINT_HOP)

        if source is None or not source.is_active:
            return AttemptFailed(ErrorType.NETWORK, "Source hop session closed")
        if endpoint is None or not endpoint.is_active:
            return AttemptFailed(ErrorType.NETWORK, "Endpoint hop session closed")

        if relay.exited:
            code = relay.wait(0)
            stderr = relay.stderr_text()
            error_type = classify_message(stderr)
            if error_type == ErrorType.UNKNOWN:
                error_type = exit_error
            reason = stderr or f"Reverse forward exited with status {code}"
            return AttemptFailed(error_type, reason)

        return None

    def _keepalive(self, source: RemoteSession) -> AttemptFailed | None:
        try:
            code, stderr = source.run(keepalive_command(), self._settings.probe_timeout)
        except ChannelError as e:
            return AttemptFailed(ErrorType.NETWORK, f"Keep-alive failed: {e}")
        if code != 0:
            return AttemptFailed(
                ErrorType.NETWORK, stderr or "Keep-alive ping got no answer"
            )
        return None

    # Resource handling

    def _release_resources(self) -> tuple[CommandStream | None, list[RemoteSession]]:
        """Detach relay and sessions from the worker. Caller holds the lock."""
        relay, self._relay = self._relay, None
        sessions = list(self._sessions.values())
        self._sessions.clear()
        return relay, sessions

    def _close_resources(
        self, relay: CommandStream | None, sessions: list[RemoteSession]
    ) -> None:
        if relay is not None:
            relay.close()
        # Endpoint first: the relay lives there
        for session in reversed(sessions):
            session.close(self._settings.close_timeout)

    def _teardown(self) -> None:
        with self._lock:
            relay, sessions = self._release_resources()
        self._close_resources(relay, sessions)

    def _finish_disconnect(self) -> None:
        self._teardown()
        with self._lock:
            self._retry_count = 0
            self._last_error = None
        self._transition(TunnelState.DISCONNECTED, reason="Disconnected")
        self._log.info("Tunnel disconnected")
        self._notify_finished()

    def _notify_finished(self) -> None:
        if self._on_finished is not None:
            self._on_finished(self)
