"""
プッシュチャネルレジストリモジュール (Push Channel Registry Module)

ライブなオブザーバー接続、その生存状態、購読フィルター、
接続ごとの送信キューを管理します。
"""

import threading
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

from .call_store import Clock, utc_now
from .models import ObserverConnection


class CapacityError(Exception):
    """
    接続数上限エラー

    オブザーバー数が上限に達している場合に発生します。
    通常の失敗であり、クライアントには接続拒否として見えます。

    Attributes:
        max_connections: 設定された上限
    """

    def __init__(self, max_connections: int):
        super().__init__(f"Observer limit reached ({max_connections})")
        self.max_connections = max_connections


class ObserverOutbox:
    """
    オブザーバー 1 本分の送信キュー

    フレームは offer() で積まれ、送信スレッドが積まれた順にソケットへ
    書き込みます。送信スレッドはフレームが届いたときに起動し、キューが
    空になると終了します。遅いオブザーバーが詰まっても、ブロックするのは
    その接続の送信スレッドだけです。

    Attributes:
        handle: 接続ハンドル
        socket: send(str) を持つ WebSocket オブジェクト
        max_pending: 未送信フレームの上限
    """

    def __init__(
        self,
        handle: str,
        socket: Any,
        max_pending: int,
        on_failure: Callable[[str, Exception], None]
    ):
        self.handle = handle
        self.socket = socket
        self.max_pending = max_pending
        self._on_failure = on_failure
        self._frames: Deque[str] = deque()
        self._condition = threading.Condition()
        self._writing = False
        self._closed = False

    @property
    def pending(self) -> int:
        with self._condition:
            return len(self._frames)

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    def offer(self, frame: str) -> bool:
        """
        フレームを送信キューに積む

        Returns:
            積めた場合はTrue (閉じている、または上限に達している場合はFalse)
        """
        with self._condition:
            if self._closed or len(self._frames) >= self.max_pending:
                return False
            self._frames.append(frame)
            if not self._writing:
                self._writing = True
                threading.Thread(
                    target=self._drain,
                    name=f"academy-calls-outbox-{self.handle[:8]}",
                    daemon=True
                ).start()
            return True

    def close(self) -> None:
        """未送信のフレームを破棄し、以降の offer を拒否"""
        with self._condition:
            self._closed = True
            self._frames.clear()
            self._condition.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        送信スレッドが止まるまで待つ

        Returns:
            タイムアウト前に止まった場合はTrue
        """
        with self._condition:
            return self._condition.wait_for(lambda: not self._writing, timeout)

    def _drain(self) -> None:
        while True:
            with self._condition:
                if self._closed or not self._frames:
                    self._writing = False
                    self._condition.notify_all()
                    return
                frame = self._frames.popleft()

            try:
                self.socket.send(frame)
            except Exception as e:
                # 書き込み中にチャネルが閉じられた
                self._on_failure(self.handle, e)
                with self._condition:
                    self._closed = True
                    self._frames.clear()
                    self._writing = False
                    self._condition.notify_all()
                return


class PushChannelRegistry:
    """
    オブザーバー接続のレジストリ

    ObserverConnection インスタンスと送信キューを排他的に所有します。
    ディスパッチャーは deliver() でフレームを積むだけで、ソケットへの
    書き込みは接続ごとの送信スレッドが行います。送信に失敗した接続と
    送信キューが溢れた接続は登録解除されます。

    Attributes:
        max_connections: 同時接続数の上限
        outbox_size: 接続ごとの未送信フレームの上限
    """

    def __init__(
        self,
        max_connections: int = 1000,
        clock: Optional[Clock] = None,
        outbox_size: int = 100
    ):
        self.max_connections = max_connections
        self.outbox_size = outbox_size
        self._clock = clock or utc_now
        self._connections: Dict[str, ObserverConnection] = {}
        self._outboxes: Dict[str, ObserverOutbox] = {}
        self._lock = threading.Lock()
        self.logger = structlog.get_logger(__name__)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def register(self, socket: Any) -> str:
        """
        接続を登録

        Args:
            socket: send(str) / close() を持つ WebSocket オブジェクト

        Returns:
            接続ハンドル

        Raises:
            CapacityError: 接続数が上限に達している場合
        """
        with self._lock:
            if len(self._connections) >= self.max_connections:
                self.logger.warning(
                    "observer_rejected_capacity",
                    max_connections=self.max_connections
                )
                raise CapacityError(self.max_connections)

            now = self._clock()
            handle = uuid.uuid4().hex
            self._connections[handle] = ObserverConnection(
                id=handle,
                socket=socket,
                connected_at=now,
                last_activity_at=now,
            )
            self._outboxes[handle] = ObserverOutbox(
                handle,
                socket,
                self.outbox_size,
                self._handle_send_failure
            )
            count = len(self._connections)

        self.logger.info("observer_registered", connection_id=handle, observers=count)
        return handle

    def unregister(self, handle: str) -> bool:
        """
        接続の登録を解除してソケットを閉じる

        未送信のフレームは破棄されます。既に解除済みの場合は何もしません。

        Returns:
            解除した場合はTrue
        """
        with self._lock:
            connection = self._connections.pop(handle, None)
            outbox = self._outboxes.pop(handle, None)
            if connection is None:
                return False
            connection.closed = True
            count = len(self._connections)

        if outbox is not None:
            outbox.close()
        try:
            connection.socket.close()
        except Exception as e:
            self.logger.debug("observer_close_failed", connection_id=handle, error=str(e))

        self.logger.info("observer_unregistered", connection_id=handle, observers=count)
        return True

    def deliver(self, handle: str, frame: str) -> bool:
        """
        接続の送信キューにフレームを積む

        送信キューが上限に達している接続は、追いつけないオブザーバーとして
        登録解除します。

        Returns:
            積めた場合はTrue
        """
        with self._lock:
            outbox = self._outboxes.get(handle)
        if outbox is None:
            return False
        if outbox.offer(frame):
            return True

        if not outbox.closed:
            self.logger.warning(
                "observer_outbox_full",
                connection_id=handle,
                max_pending=outbox.max_pending
            )
        self.unregister(handle)
        return False

    def flush(self, timeout: float = 1.0) -> bool:
        """
        登録中の全接続の送信キューが空になるまで待つ

        Returns:
            タイムアウト前にすべて送信された場合はTrue
        """
        deadline = time.monotonic() + timeout
        with self._lock:
            outboxes = list(self._outboxes.values())
        for outbox in outboxes:
            if not outbox.wait_idle(max(0.0, deadline - time.monotonic())):
                return False
        return True

    def get(self, handle: str) -> Optional[ObserverConnection]:
        with self._lock:
            return self._connections.get(handle)

    def snapshot(self) -> List[ObserverConnection]:
        """登録中の接続の一覧 (スナップショット)"""
        with self._lock:
            return list(self._connections.values())

    def for_each_alive(self, fn: Callable[[ObserverConnection], None]) -> None:
        """
        登録中かつ閉じられていない接続ごとに fn を呼び出す

        スナップショットに対して反復するため、fn の中で登録解除しても安全です。
        """
        for connection in self.snapshot():
            if not connection.closed:
                fn(connection)

    def mark_alive(self, handle: str) -> bool:
        """
        クライアントからの受信 (ハートビート応答を含む) を記録

        Returns:
            接続が登録中の場合はTrue
        """
        with self._lock:
            connection = self._connections.get(handle)
            if connection is None:
                return False
            connection.is_alive = True
            connection.last_activity_at = self._clock()
            return True

    def mark_pending(self, handle: str) -> bool:
        """
        ハートビート応答待ちにする

        次のサイクルまでに mark_alive されなければ切断対象になります。

        Returns:
            接続が登録中の場合はTrue
        """
        with self._lock:
            connection = self._connections.get(handle)
            if connection is None:
                return False
            connection.is_alive = False
            return True

    def set_filter(self, handle: str, call_id: Optional[str]) -> bool:
        """
        購読フィルターを設定 (None で解除)

        Returns:
            接続が登録中の場合はTrue
        """
        with self._lock:
            connection = self._connections.get(handle)
            if connection is None:
                return False
            connection.subscription_filter = call_id or None
            connection.last_activity_at = self._clock()

        self.logger.debug("observer_filter_set", connection_id=handle, call_id=call_id)
        return True

    def _handle_send_failure(self, handle: str, error: Exception) -> None:
        self.logger.info(
            "observer_send_failed",
            connection_id=handle,
            error_type=type(error).__name__,
            error=str(error)
        )
        self.unregister(handle)
