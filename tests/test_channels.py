"""
PushChannelRegistry / BroadcastDispatcher / ClientMessageHandler のテスト

接続の登録と上限、購読フィルターによる配信先の絞り込み、
送信失敗時の登録解除、クライアントフレームの処理を検証します。
"""

import json
import time

import pytest

from academy_calls.channels import CapacityError, ObserverOutbox, PushChannelRegistry
from academy_calls.dispatcher import BroadcastDispatcher, ClientMessageHandler
from academy_calls.events import (
    CallStatusUpdateEvent,
    ErrorEvent,
    MessageReceivedEvent,
    RecordingReadyEvent,
    encode_event,
    event_to_message,
)

from conftest import BlockingSocket, FakeSocket


class TestRegistry:
    """PushChannelRegistry のテスト"""

    def test_register_returns_unique_handles(self, registry):
        first = registry.register(FakeSocket())
        second = registry.register(FakeSocket())
        assert first != second
        assert len(registry) == 2

    def test_new_connection_is_alive_and_unfiltered(self, registry, observer):
        _, handle = observer
        connection = registry.get(handle)
        assert connection.is_alive is True
        assert connection.closed is False
        assert connection.subscription_filter is None

    def test_capacity_rejects_extra_observer(self, clock):
        registry = PushChannelRegistry(max_connections=2, clock=clock)
        registry.register(FakeSocket())
        registry.register(FakeSocket())
        with pytest.raises(CapacityError) as exc_info:
            registry.register(FakeSocket())
        assert exc_info.value.max_connections == 2
        assert len(registry) == 2

    def test_unregister_closes_socket(self, registry, observer):
        socket, handle = observer
        connection = registry.get(handle)
        assert registry.unregister(handle) is True
        assert socket.closed is True
        assert connection.closed is True
        assert registry.get(handle) is None

    def test_unregister_twice_is_noop(self, registry, observer):
        _, handle = observer
        registry.unregister(handle)
        assert registry.unregister(handle) is False

    def test_unregister_tolerates_close_failure(self, registry):
        class BrokenSocket(FakeSocket):
            def close(self):
                raise RuntimeError("already closed")

        handle = registry.register(BrokenSocket())
        assert registry.unregister(handle) is True
        assert len(registry) == 0

    def test_for_each_alive_skips_closed(self, registry):
        handles = [registry.register(FakeSocket()) for _ in range(3)]
        registry.get(handles[1]).closed = True

        visited = []
        registry.for_each_alive(lambda c: visited.append(c.id))
        assert visited == [handles[0], handles[2]]

    def test_for_each_alive_allows_unregister_in_callback(self, registry):
        for _ in range(3):
            registry.register(FakeSocket())
        registry.for_each_alive(lambda c: registry.unregister(c.id))
        assert len(registry) == 0

    def test_mark_alive_updates_activity(self, registry, observer, clock):
        _, handle = observer
        registry.mark_pending(handle)
        clock.advance(5)
        assert registry.mark_alive(handle) is True
        connection = registry.get(handle)
        assert connection.is_alive is True
        assert connection.last_activity_at == clock.now

    def test_mark_alive_unknown_handle(self, registry):
        assert registry.mark_alive("missing") is False

    def test_mark_pending_clears_alive(self, registry, observer):
        _, handle = observer
        assert registry.mark_pending(handle) is True
        assert registry.get(handle).is_alive is False
        assert registry.mark_pending("missing") is False

    def test_set_filter_and_clear(self, registry, observer):
        _, handle = observer
        registry.set_filter(handle, "CA1")
        assert registry.get(handle).subscription_filter == "CA1"
        registry.set_filter(handle, "")
        assert registry.get(handle).subscription_filter is None


class TestObserverOutbox:
    """接続ごとの送信キューのテスト"""

    @pytest.fixture
    def small_registry(self, clock):
        registry = PushChannelRegistry(max_connections=10, clock=clock, outbox_size=2)
        FakeSocket.registries.append(registry)
        return registry

    def test_frames_written_in_order(self):
        socket = FakeSocket()
        failures = []
        outbox = ObserverOutbox("h1", socket, 10, lambda handle, e: failures.append(handle))
        for n in range(5):
            assert outbox.offer(str(n)) is True
        assert outbox.wait_idle(1.0) is True
        assert socket._sent == ["0", "1", "2", "3", "4"]
        assert failures == []

    def test_closed_outbox_rejects_frames(self):
        outbox = ObserverOutbox("h1", FakeSocket(), 10, lambda handle, e: None)
        outbox.close()
        assert outbox.offer("x") is False
        assert outbox.closed is True

    def test_send_failure_reports_handle(self):
        failures = []
        outbox = ObserverOutbox("h1", FakeSocket(fail=True), 10, lambda handle, e: failures.append((handle, e)))
        outbox.offer("x")
        assert outbox.wait_idle(1.0) is True
        assert [handle for handle, _ in failures] == ["h1"]
        assert isinstance(failures[0][1], ConnectionError)
        assert outbox.closed is True

    def test_full_outbox_evicts_observer(self, small_registry):
        socket = BlockingSocket()
        handle = small_registry.register(socket)
        try:
            assert small_registry.deliver(handle, "1") is True
            assert socket.entered.wait(1.0)
            assert small_registry.deliver(handle, "2") is True
            assert small_registry.deliver(handle, "3") is True
            assert small_registry.deliver(handle, "4") is False
            assert small_registry.get(handle) is None
        finally:
            socket.release()
        assert socket.closed is True
        assert small_registry.deliver(handle, "5") is False

    def test_slow_observer_does_not_block_publish(self, registry, dispatcher):
        slow = BlockingSocket()
        fast = FakeSocket()
        registry.register(slow)
        registry.register(fast)
        try:
            dispatcher.publish(CallStatusUpdateEvent("CA1", "ringing", 0))
            assert slow.entered.wait(1.0)
            assert dispatcher.publish(CallStatusUpdateEvent("CA1", "in-progress", 0)) == 2
            deadline = time.monotonic() + 1.0
            while len(fast._sent) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert [json.loads(f)["status"] for f in fast._sent] == ["ringing", "in-progress"]
        finally:
            slow.release()
        assert [m["status"] for m in slow.messages] == ["ringing", "in-progress"]


class TestEvents:
    """イベントのエンコードのテスト"""

    def test_status_update_omits_missing_recording(self):
        message = event_to_message(CallStatusUpdateEvent("CA1", "ringing", 0))
        assert message == {"type": "call_status_update", "callId": "CA1", "status": "ringing", "durationSeconds": 0}

    def test_status_update_includes_recording(self):
        message = event_to_message(CallStatusUpdateEvent("CA1", "completed", 5, "https://rec"))
        assert message["recordingUrl"] == "https://rec"

    def test_encode_is_json_text(self):
        frame = encode_event(MessageReceivedEvent("SM1", "+1555", "salaam"))
        assert json.loads(frame) == {"type": "message_received", "messageId": "SM1", "from": "+1555", "body": "salaam"}

    def test_unknown_event_type_raises(self):
        with pytest.raises(TypeError):
            event_to_message(object())

    def test_scope_call_id(self):
        assert RecordingReadyEvent("CA1", "u", 1).scope_call_id == "CA1"
        assert MessageReceivedEvent("SM1", "+1", "").scope_call_id is None


class TestBroadcastDispatcher:
    """BroadcastDispatcher のテスト"""

    def test_publish_reaches_all_unfiltered(self, registry, dispatcher):
        sockets = [FakeSocket() for _ in range(3)]
        for socket in sockets:
            registry.register(socket)

        queued = dispatcher.publish(CallStatusUpdateEvent("CA1", "ringing", 0))

        assert queued == 3
        for socket in sockets:
            assert socket.messages == [{"type": "call_status_update", "callId": "CA1", "status": "ringing", "durationSeconds": 0}]

    def test_filter_restricts_scoped_events(self, registry, dispatcher):
        """
        購読フィルター X の接続は X の通話イベントと全体イベントだけを受け取る
        """
        filtered = FakeSocket()
        unfiltered = FakeSocket()
        registry.set_filter(registry.register(filtered), "CA1")
        registry.register(unfiltered)

        dispatcher.publish(CallStatusUpdateEvent("CA1", "ringing", 0))
        dispatcher.publish(CallStatusUpdateEvent("CA2", "ringing", 0))
        dispatcher.publish(MessageReceivedEvent("SM1", "+1", "hi"))

        assert [m.get("callId") for m in filtered.messages] == ["CA1", None]
        assert [m.get("callId") for m in unfiltered.messages] == ["CA1", "CA2", None]

    def test_failed_send_unregisters_only_that_observer(self, registry, dispatcher):
        healthy = FakeSocket()
        broken = FakeSocket(fail=True)
        registry.register(healthy)
        broken_handle = registry.register(broken)

        queued = dispatcher.publish(CallStatusUpdateEvent("CA1", "ringing", 0))

        assert queued == 2
        assert registry.flush() is True
        assert registry.get(broken_handle) is None
        assert broken.closed is True
        assert len(healthy.sent) == 1

    def test_publish_preserves_order_per_observer(self, registry, dispatcher, observer):
        socket, _ = observer
        for status in ["initiated", "ringing", "in-progress", "completed"]:
            dispatcher.publish(CallStatusUpdateEvent("CA1", status, 0))
        assert [m["status"] for m in socket.messages] == ["initiated", "ringing", "in-progress", "completed"]

    def test_send_to_single_observer(self, registry, dispatcher, observer):
        socket, handle = observer
        other = FakeSocket()
        registry.register(other)

        assert dispatcher.send_to(handle, ErrorEvent("boom")) is True
        assert socket.messages == [{"type": "error", "reason": "boom"}]
        assert other.sent == []

    def test_send_to_unknown_handle(self, dispatcher):
        assert dispatcher.send_to("missing", ErrorEvent("boom")) is False

    def test_send_to_failure_unregisters(self, registry, dispatcher):
        socket = FakeSocket(fail=True)
        handle = registry.register(socket)
        assert dispatcher.send_to(handle, ErrorEvent("boom")) is True
        assert registry.flush() is True
        assert registry.get(handle) is None
        assert socket.closed is True

    def test_send_to_after_unregister(self, registry, dispatcher, observer):
        _, handle = observer
        registry.unregister(handle)
        assert dispatcher.send_to(handle, ErrorEvent("boom")) is False


class TestClientMessageHandler:
    """ClientMessageHandler のテスト"""

    @pytest.fixture
    def handler(self, registry, dispatcher):
        return ClientMessageHandler(registry, dispatcher)

    def test_ping_gets_pong(self, handler, observer):
        socket, handle = observer
        handler.handle(handle, json.dumps({"type": "ping"}))
        assert socket.messages == [{"type": "pong"}]

    def test_any_frame_marks_alive(self, handler, registry, observer):
        _, handle = observer
        registry.mark_pending(handle)
        handler.handle(handle, "not json")
        assert registry.get(handle).is_alive is True

    def test_pong_marks_alive_without_reply(self, handler, registry, observer):
        socket, handle = observer
        registry.mark_pending(handle)
        handler.handle(handle, json.dumps({"type": "pong"}))
        assert registry.get(handle).is_alive is True
        assert socket.sent == []

    def test_subscribe_call_sets_filter(self, handler, registry, observer):
        _, handle = observer
        handler.handle(handle, json.dumps({"type": "subscribe_call", "callId": "CA9"}))
        assert registry.get(handle).subscription_filter == "CA9"

        handler.handle(handle, json.dumps({"type": "subscribe_call", "callId": None}))
        assert registry.get(handle).subscription_filter is None

    def test_subscribe_call_rejects_invalid_id(self, handler, registry, observer):
        socket, handle = observer
        handler.handle(handle, json.dumps({"type": "subscribe_call", "callId": 42}))
        assert socket.messages == [{"type": "error", "reason": "invalid_call_id"}]
        assert registry.get(handle).subscription_filter is None

    def test_bytes_frame_is_decoded(self, handler, observer):
        socket, handle = observer
        handler.handle(handle, b'{"type": "ping"}')
        assert socket.of_type("pong")

    def test_malformed_and_unknown_frames_are_ignored(self, handler, observer):
        socket, handle = observer
        handler.handle(handle, "{broken")
        handler.handle(handle, json.dumps(["list"]))
        handler.handle(handle, json.dumps({"type": "dance"}))
        assert socket.sent == []
