"""
LivenessMonitor / PeriodicTask のテスト

ハートビートのマーク&スイープ、古い通話レコードの削除、
着信タイムアウトの定期実行を検証します。
"""

import threading
from unittest.mock import patch

import pytest

from academy_calls.liveness import LivenessMonitor, PeriodicTask
from academy_calls.models import CallState

from conftest import FakeSocket


@pytest.fixture
def monitor(registry, dispatcher, store, controller, config, clock):
    return LivenessMonitor(registry, dispatcher, store, controller, config, clock)


class TestHeartbeat:
    """heartbeat_cycle() のテスト"""

    def test_first_cycle_pings_and_marks(self, monitor, registry, observer):
        socket, handle = observer
        assert monitor.heartbeat_cycle() == []
        assert socket.messages == [{"type": "ping"}]
        assert registry.get(handle).is_alive is False

    def test_silent_observer_removed_on_second_cycle(self, monitor, registry, observer):
        socket, handle = observer
        monitor.heartbeat_cycle()
        assert monitor.heartbeat_cycle() == [handle]
        assert registry.get(handle) is None
        assert socket.closed is True

    def test_responsive_observer_survives(self, monitor, registry, observer):
        _, handle = observer
        for _ in range(5):
            monitor.heartbeat_cycle()
            registry.mark_alive(handle)
        assert registry.get(handle) is not None

    def test_broken_socket_removed_on_ping(self, monitor, registry):
        socket = FakeSocket(fail=True)
        registry.register(socket)
        monitor.heartbeat_cycle()
        assert registry.flush() is True
        assert len(registry) == 0
        assert socket.closed is True

    def test_ping_goes_through_mark_pending(self, monitor, registry, observer):
        _, handle = observer
        with patch.object(registry, "mark_pending", wraps=registry.mark_pending) as mark_pending:
            monitor.heartbeat_cycle()
        mark_pending.assert_called_once_with(handle)

    def test_unanswered_ping_still_receives_broadcasts(self, monitor, registry, dispatcher, controller, observer):
        """
        ping 送信後、応答前の接続にもイベントは配信される
        """
        socket, _ = observer
        monitor.heartbeat_cycle()
        controller.place_call("+15551234567", "Aisha")
        assert [m["type"] for m in socket.messages] == ["ping", "call_status_update"]


class TestGarbageCollection:
    """collect_garbage() のテスト"""

    def test_removes_terminal_after_retention(self, monitor, controller, store, clock):
        record = controller.place_call("+15551234567", "Aisha")
        controller.hangup_call(record.id)

        clock.advance(599)
        assert monitor.collect_garbage() == []
        clock.advance(1)
        assert monitor.collect_garbage() == [record.id]
        assert store.find(record.id) is None

    def test_removes_stuck_call_after_max_age(self, monitor, controller, store, clock):
        record = controller.place_call("+15551234567", "Aisha")
        clock.advance(7200)
        assert monitor.collect_garbage() == [record.id]
        assert len(store) == 0

    def test_keeps_active_call(self, monitor, controller, clock):
        controller.place_call("+15551234567", "Aisha")
        clock.advance(3600)
        assert monitor.collect_garbage() == []


class TestRingTimeout:
    """ring_timeout_cycle() のテスト"""

    def test_delegates_to_controller(self, monitor, controller, clock):
        controller.handle_incoming_call("CAin", "+15559998888")
        clock.advance(45)
        assert monitor.ring_timeout_cycle() == ["CAin"]
        assert controller.get_call("CAin").state == CallState.NO_ANSWER


class TestPeriodicTask:
    """PeriodicTask のテスト"""

    def test_tick_passes_time(self, clock):
        seen = []
        task = PeriodicTask("test", 60, seen.append, clock)
        assert task.tick() is True
        assert seen == [clock.now]

    def test_tick_logs_callback_failure(self, clock):
        def boom(now):
            raise RuntimeError("boom")

        task = PeriodicTask("test", 60, boom, clock)
        assert task.tick() is False

    def test_thread_runs_until_stopped(self):
        fired = threading.Event()
        task = PeriodicTask("test", 0.01, lambda now: fired.set())

        task.start()
        try:
            assert task.is_running is True
            assert fired.wait(2.0) is True
        finally:
            task.stop()

        assert task.is_running is False

    def test_monitor_exposes_three_tasks(self, monitor, config):
        assert [t.name for t in monitor.tasks] == ["heartbeat", "call-gc", "ring-timeout"]
        assert monitor.tasks[0].interval == config.heartbeat_interval
        assert monitor.tasks[2].interval == config.ring_check_interval
