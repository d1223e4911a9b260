"""
ブロードキャストディスパッチャーモジュール (Broadcast Dispatcher Module)

イベントを購読条件に一致するオブザーバーの送信キューへ積みます。
クライアントから受信したフレームの処理もここで行います。
"""

import json
import threading
from typing import Optional

import structlog

from .channels import PushChannelRegistry
from .events import ErrorEvent, PongEvent, PushEvent, encode_event


class BroadcastDispatcher:
    """
    イベント配信器

    送信キューへの投入はロックで直列化するため、オブザーバーごとの受信順序は
    publish の呼び出し順と一致します。ソケットへの書き込みは接続ごとの
    送信スレッドが行うので、publish が遅いオブザーバーを待つことはありません。
    配信はベストエフォートで、失敗した接続は再送せずに登録解除されます。
    """

    def __init__(self, registry: PushChannelRegistry):
        self.registry = registry
        self._dispatch_lock = threading.Lock()
        self.logger = structlog.get_logger(__name__)

    def publish(self, event: PushEvent) -> int:
        """
        イベントを配信

        購読フィルターが未設定、またはイベントのスコープ通話 ID と一致する
        オブザーバーにのみ配信します。スコープのないイベントは全員に届きます。

        Args:
            event: プッシュイベント

        Returns:
            送信キューに積めたオブザーバー数
        """
        frame = encode_event(event)
        scope_call_id = event.scope_call_id
        queued = 0
        dropped = 0

        with self._dispatch_lock:
            for connection in self.registry.snapshot():
                if connection.closed or not connection.wants(scope_call_id):
                    continue
                if self.registry.deliver(connection.id, frame):
                    queued += 1
                else:
                    dropped += 1

        self.logger.debug(
            "event_published",
            event_type=type(event).__name__,
            call_id=scope_call_id,
            queued=queued,
            dropped=dropped
        )
        return queued

    def send_to(self, handle: str, event: PushEvent) -> bool:
        """
        特定のオブザーバーにだけイベントを送信

        Returns:
            送信キューに積めた場合はTrue
        """
        connection = self.registry.get(handle)
        if connection is None or connection.closed:
            return False

        frame = encode_event(event)
        with self._dispatch_lock:
            return self.registry.deliver(handle, frame)


class ClientMessageHandler:
    """
    クライアントから受信したフレームを処理

    受信したフレームはすべて生存の証拠として扱います。

    対応するメッセージ:
        - {"type": "ping"}: pong を返す
        - {"type": "pong"}: ハートビート応答
        - {"type": "subscribe_call", "callId": ...}: 購読フィルターを設定
    """

    def __init__(self, registry: PushChannelRegistry, dispatcher: BroadcastDispatcher):
        self.registry = registry
        self.dispatcher = dispatcher
        self.logger = structlog.get_logger(__name__)

    def handle(self, handle: str, raw: Optional[str]) -> None:
        self.registry.mark_alive(handle)

        if raw is None:
            return
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")

        try:
            message = json.loads(raw)
        except ValueError:
            self.logger.warning("client_message_malformed", connection_id=handle)
            return

        if not isinstance(message, dict):
            self.logger.warning("client_message_malformed", connection_id=handle)
            return

        message_type = message.get("type")
        if message_type == "ping":
            self.dispatcher.send_to(handle, PongEvent())
        elif message_type == "pong":
            pass
        elif message_type == "subscribe_call":
            call_id = message.get("callId")
            if call_id is not None and not isinstance(call_id, str):
                self.dispatcher.send_to(handle, ErrorEvent(reason="invalid_call_id"))
                return
            self.registry.set_filter(handle, call_id)
        else:
            self.logger.debug(
                "client_message_unknown_type",
                connection_id=handle,
                message_type=message_type
            )
