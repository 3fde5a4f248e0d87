"""In-memory status store polled by the HTTP interface."""

import logging
import threading
from collections.abc import Callable
from typing import Any

from .models import StatusRecord

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, StatusRecord], None]


class StatusStore:
    """Latest status record per tunnel name.

    Each name holds exactly one record, always the most recent write. Only
    the worker owning a name writes it; any thread may read.
    """

    def __init__(self) -> None:
        self._records: dict[str, StatusRecord] = {}
        self._listeners: list[StatusListener] = []
        self._lock = threading.Lock()

    def publish(self, name: str, record: StatusRecord) -> None:
        """Replace the record for a tunnel and notify listeners.

        Args:
            name: Tunnel name
            record: New status snapshot
        """
        with self._lock:
            self._records[name] = record
            listeners = list(self._listeners)

        logger.debug(f"Published status {record.state.value} for tunnel {name}")

        for listener in listeners:
            try:
                listener(name, record)
            except Exception as e:
                logger.error(f"Status listener failed for tunnel {name}: {e}")

    def get(self, name: str) -> StatusRecord:
        """Get the record for a tunnel.

        Unknown names yield an implicit disconnected record rather than an
        error.
        """
        with self._lock:
            record = self._records.get(name)
        return record if record is not None else StatusRecord()

    def snapshot(self) -> dict[str, StatusRecord]:
        with self._lock:
            return dict(self._records)

    def payload(self) -> dict[str, dict[str, Any]]:
        """Snapshot rendered in the external status contract."""
        return {name: record.to_payload() for name, record in self.snapshot().items()}

    def discard(self, name: str) -> None:
        with self._lock:
            self._records.pop(name, None)

    def subscribe(self, listener: StatusListener) -> None:
        """Register a callback invoked after every publish."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: StatusListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
        logger.info("Cleared all tunnel statuses")

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
