"""Tests for the in-memory status store."""

import threading
from unittest.mock import Mock

from ssh_relay.tunnels.models import StatusRecord, TunnelState
from ssh_relay.tunnels.status import StatusStore


class TestStatusStore:
    """Test StatusStore reads and writes."""

    def test_unknown_name_is_disconnected(self):
        store = StatusStore()

        record = store.get("missing")

        assert record.state == TunnelState.DISCONNECTED
        assert "missing" not in store
        assert len(store) == 0

    def test_publish_keeps_latest_only(self):
        store = StatusStore()
        store.publish("a", StatusRecord(state=TunnelState.CONNECTING))
        store.publish("a", StatusRecord(state=TunnelState.CONNECTED))

        assert store.get("a").state == TunnelState.CONNECTED
        assert len(store) == 1

    def test_snapshot_is_a_copy(self):
        store = StatusStore()
        store.publish("a", StatusRecord())

        snapshot = store.snapshot()
        store.publish("b", StatusRecord())

        assert set(snapshot) == {"a"}

    def test_payload(self):
        store = StatusStore()
        store.publish("a", StatusRecord(state=TunnelState.RETRYING, next_retry_in_ms=500))

        payload = store.payload()

        assert payload["a"]["state"] == "retrying"
        assert payload["a"]["nextRetryIn"] == 0.5

    def test_discard_and_clear(self):
        store = StatusStore()
        store.publish("a", StatusRecord())
        store.publish("b", StatusRecord())

        store.discard("a")
        store.discard("never-existed")
        assert set(store.snapshot()) == {"b"}

        store.clear()
        assert len(store) == 0

    def test_listeners_notified(self):
        store = StatusStore()
        listener = Mock()
        store.subscribe(listener)
        record = StatusRecord(state=TunnelState.CONNECTED)

        store.publish("a", record)
        store.unsubscribe(listener)
        store.publish("a", StatusRecord())

        listener.assert_called_once_with("a", record)

    def test_failing_listener_does_not_block_publish(self):
        store = StatusStore()
        good = Mock()
        store.subscribe(Mock(side_effect=RuntimeError("boom")))
        store.subscribe(good)

        store.publish("a", StatusRecord())

        assert "a" in store
        good.assert_called_once()

    def test_listener_may_read_store(self):
        """Test listeners run outside the store lock."""
        store = StatusStore()
        seen = []
        store.subscribe(lambda name, record: seen.append(store.get(name).state))

        store.publish("a", StatusRecord(state=TunnelState.VERIFYING))

        assert seen == [TunnelState.VERIFYING]

    def test_concurrent_writers(self):
        store = StatusStore()

        def write(name):
            for _ in range(200):
                store.publish(name, StatusRecord(state=TunnelState.CONNECTING))

        threads = [threading.Thread(target=write, args=(f"t{i}",)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(store) == 8
