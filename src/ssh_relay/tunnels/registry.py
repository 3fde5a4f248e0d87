"""Tunnel registry: supervises one worker per tunnel name."""

import logging
import threading
import time
from collections.abc import Iterable
from types import TracebackType
from typing import Any, Literal

from pydantic import ValidationError

from ..common.exceptions import InvalidTunnelConfigError, UnknownTunnelError
from ..common.settings import RelaySettings
from ..common.utils import sanitize_log_data
from .backoff import RetryPolicy
from .models import RESTARTABLE_STATES, StatusRecord, TunnelConfig, TunnelState
from .session import SessionFactory, paramiko_session_factory
from .status import StatusStore
from .worker import TunnelWorker

logger = logging.getLogger(__name__)


class TunnelRegistry:
    """Orchestrator for all configured tunnels.

    Owns the name -> worker map and routes control commands to workers. The
    map is only touched under a short lock; no network I/O happens while it
    is held. Control operations return as soon as the work is scheduled and
    callers follow progress through ``status``/``status_all``.
    """

    def __init__(
        self,
        settings: RelaySettings | None = None,
        session_factory: SessionFactory | None = None,
        store: StatusStore | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        """Initialize tunnel registry.

        Args:
            settings: Timing and backoff settings
            session_factory: Builds hop sessions (paramiko if None)
            store: Status store shared with pollers (new store if None)
            retry_policy: Backoff schedule (derived from settings if None)
        """
        self.settings = settings or RelaySettings()
        self.store = store or StatusStore()
        self._session_factory = session_factory or paramiko_session_factory(self.settings)
        self._retry_policy = retry_policy or RetryPolicy(
            strategy=self.settings.backoff_strategy,
            cap_ms=self.settings.backoff_cap_ms,
        )
        self._workers: dict[str, TunnelWorker] = {}
        self._configs: dict[str, TunnelConfig] = {}
        self._lock = threading.Lock()
        logger.info(
            f"Initialized TunnelRegistry with backoff={self._retry_policy.strategy.value}"
        )

    @staticmethod
    def validate(config: TunnelConfig | dict[str, Any]) -> TunnelConfig:
        """Coerce caller input into a TunnelConfig.

        Raises:
            InvalidTunnelConfigError: If the input is malformed
        """
        if isinstance(config, TunnelConfig):
            return config
        if not isinstance(config, dict):
            raise InvalidTunnelConfigError(
                f"Expected a tunnel configuration, got {type(config).__name__}"
            )
        try:
            return TunnelConfig.parse_record(config)
        except ValidationError as e:
            name = config.get("name", "<unnamed>")
            raise InvalidTunnelConfigError(
                f"Invalid configuration for tunnel '{name}': {e}"
            ) from e

    def connect(self, config: TunnelConfig | dict[str, Any]) -> StatusRecord:
        """Start a tunnel, or return the status of the one already running.

        A worker that is parked in ``failed`` or has finished is replaced by
        a fresh one. Returns without waiting for the outcome.

        Raises:
            InvalidTunnelConfigError: If the configuration is malformed
        """
        config = self.validate(config)
        logger.debug(
            f"Connect requested: {sanitize_log_data(config.model_dump(mode='json'))}"
        )

        with self._lock:
            existing = self._workers.get(config.name)
            if existing is not None and existing.state not in RESTARTABLE_STATES:
                logger.info(
                    f"Tunnel {config.name} already active ({existing.state.value})"
                )
                return existing.status

            worker = TunnelWorker(
                config,
                self.store,
                self._session_factory,
                settings=self.settings,
                retry_policy=self._retry_policy,
                on_finished=self._worker_finished,
            )
            self._workers[config.name] = worker
            self._configs[config.name] = config
            status = worker.start()

        if existing is not None:
            existing.retire()
        logger.info(f"Connect scheduled for tunnel {config.name}")
        return status

    def disconnect(self, name: str) -> StatusRecord:
        """Gracefully tear down a tunnel. No-op for unknown names."""
        with self._lock:
            worker = self._workers.get(name)

        if worker is None:
            logger.debug(f"Disconnect for unknown tunnel {name} ignored")
            return self.store.get(name)

        return worker.disconnect()

    def cancel(self, name: str) -> StatusRecord:
        """Forcefully abort a tunnel in any state. No-op for unknown names.

        The worker stays registered until it has published ``disconnected``,
        so a concurrent ``connect`` sees the tunnel as still active instead
        of starting a second writer for the same name.
        """
        with self._lock:
            worker = self._workers.get(name)

        if worker is None:
            logger.debug(f"Cancel for unknown tunnel {name} ignored")
            return self.store.get(name)

        worker.cancel()
        logger.info(f"Cancelled tunnel {name}")
        return self.store.get(name)

    def update(self, config: TunnelConfig | dict[str, Any]) -> StatusRecord:
        """Replace a tunnel's configuration.

        A live tunnel is cancelled and reconnected with the new settings; an
        idle one only has its stored configuration replaced.
        """
        config = self.validate(config)

        with self._lock:
            worker = self._workers.get(config.name)
            self._configs[config.name] = config

        was_live = worker is not None and worker.state not in RESTARTABLE_STATES
        if worker is not None:
            worker.cancel()

        logger.info(f"Updated configuration for tunnel {config.name}, live={was_live}")
        if was_live:
            return self.connect(config)
        return self.store.get(config.name)

    def remove(self, name: str) -> None:
        """Cancel a tunnel and forget its configuration and status."""
        self.cancel(name)
        with self._lock:
            self._configs.pop(name, None)
        self.store.discard(name)
        logger.info(f"Removed tunnel {name}")

    def status(self, name: str) -> StatusRecord:
        return self.store.get(name)

    def status_all(self) -> dict[str, StatusRecord]:
        return self.store.snapshot()

    def worker(self, name: str) -> TunnelWorker:
        """Get the live worker for a tunnel.

        Raises:
            UnknownTunnelError: If no worker exists for the name
        """
        with self._lock:
            worker = self._workers.get(name)
        if worker is None:
            raise UnknownTunnelError(f"Tunnel '{name}' not found")
        return worker

    def workers(self) -> list[TunnelWorker]:
        with self._lock:
            return list(self._workers.values())

    def configs(self) -> list[TunnelConfig]:
        """Last configuration seen for every known tunnel."""
        with self._lock:
            return list(self._configs.values())

    def health(self) -> dict[str, int]:
        snapshot = self.store.snapshot()
        with self._lock:
            worker_count = len(self._workers)
        return {
            "workers": worker_count,
            "connected": sum(
                1 for record in snapshot.values() if record.state == TunnelState.CONNECTED
            ),
        }

    def start_auto(self, configs: Iterable[TunnelConfig | dict[str, Any]]) -> int:
        """Connect every configuration flagged ``auto_start``.

        Invalid records are logged and skipped so one bad tunnel does not
        keep the others down.

        Returns:
            Number of tunnels scheduled
        """
        started = 0
        for config in configs:
            try:
                tunnel = self.validate(config)
            except InvalidTunnelConfigError as e:
                logger.error(f"Skipping auto-start record: {e}")
                continue

            if not tunnel.auto_start:
                continue

            if started and self.settings.autostart_stagger:
                time.sleep(self.settings.autostart_stagger)
            self.connect(tunnel)
            started += 1

        logger.info(f"Auto-started {started} tunnels")
        return started

    def shutdown(self, timeout: float | None = None) -> bool:
        """Cancel every tunnel and wait for worker threads to exit.

        Returns:
            True if every worker thread exited within the timeout
        """
        with self._lock:
            workers = list(self._workers.values())

        for worker in workers:
            worker.cancel()

        join_timeout = self.settings.join_timeout if timeout is None else timeout
        success = all(worker.join(join_timeout) for worker in workers)
        logger.info(f"Shutdown {len(workers)} tunnels, success={success}")
        return success

    def _worker_finished(self, worker: TunnelWorker) -> None:
        with self._lock:
            if self._workers.get(worker.name) is worker:
                del self._workers[worker.name]

    def __enter__(self) -> "TunnelRegistry":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        try:
            self.shutdown()
        except Exception as e:
            logger.error(f"Error during registry shutdown: {e}")
        return False
