"""
生存監視モジュール (Liveness Monitor Module)

バックグラウンドの定期タスクで以下を行います:
    - ハートビート: 応答のないオブザーバー接続の検出と切断
    - ガベージコレクション: 古い通話レコードの削除
    - 着信タイムアウト: 応答されない着信の no-answer 化
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog

from .call_store import CallRecordStore, Clock, utc_now
from .channels import PushChannelRegistry
from .config import Config
from .dispatcher import BroadcastDispatcher
from .events import PingEvent
from .lifecycle import CallLifecycleController


class PeriodicTask:
    """
    一定間隔でコールバックを実行するデーモンスレッド

    コールバックの例外はログに残し、ループは継続します。
    テストでは tick() を直接呼び出して 1 回分を実行できます。

    Attributes:
        name: タスク名（ログ用）
        interval: 実行間隔（秒）
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[datetime], None],
        clock: Optional[Clock] = None
    ):
        self.name = name
        self.interval = interval
        self._callback = callback
        self._clock = clock or utc_now
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.logger = structlog.get_logger(__name__)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"academy-calls-{self.name}",
            daemon=True
        )
        self._thread.start()
        self.logger.info("periodic_task_started", task=self.name, interval=self.interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        self.logger.info("periodic_task_stopped", task=self.name)

    def tick(self, now: Optional[datetime] = None) -> bool:
        """
        コールバックを 1 回実行

        Returns:
            例外なく完了した場合はTrue
        """
        try:
            self._callback(now or self._clock())
            return True
        except Exception as e:
            self.logger.error(
                "periodic_task_failed",
                task=self.name,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=True
            )
            return False

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.tick()


class LivenessMonitor:
    """
    オブザーバー接続と通話レコードの生存監視

    ハートビートは 2 段階のマーク&スイープです。各サイクルで、前回の ping
    以降に何も受信していない接続を切断し、残りの接続を未応答にしてから
    ping を送ります。2 サイクル続けて無応答の接続は 2 間隔以内に消えます。
    """

    def __init__(
        self,
        registry: PushChannelRegistry,
        dispatcher: BroadcastDispatcher,
        store: CallRecordStore,
        controller: CallLifecycleController,
        config: Config,
        clock: Optional[Clock] = None
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.store = store
        self.controller = controller
        self.config = config
        self._clock = clock or utc_now
        self.logger = structlog.get_logger(__name__)

        self.tasks: List[PeriodicTask] = [
            PeriodicTask("heartbeat", config.heartbeat_interval, self.heartbeat_cycle, self._clock),
            PeriodicTask("call-gc", config.call_gc_interval, self.collect_garbage, self._clock),
            PeriodicTask("ring-timeout", config.ring_check_interval, self.ring_timeout_cycle, self._clock),
        ]

    def start(self) -> None:
        for task in self.tasks:
            task.start()

    def stop(self) -> None:
        for task in self.tasks:
            task.stop()

    def heartbeat_cycle(self, now: Optional[datetime] = None) -> List[str]:
        """
        ハートビートを 1 サイクル実行

        Returns:
            切断した接続ハンドルのリスト
        """
        terminated = []
        pinged = 0

        for connection in self.registry.snapshot():
            if connection.closed:
                continue
            if not connection.is_alive:
                if self.registry.unregister(connection.id):
                    terminated.append(connection.id)
                continue

            self.registry.mark_pending(connection.id)
            if self.dispatcher.send_to(connection.id, PingEvent()):
                pinged += 1
            else:
                terminated.append(connection.id)

        if terminated:
            self.logger.info("observers_terminated", connection_ids=terminated)
        self.logger.debug("heartbeat_cycle", pinged=pinged, terminated=len(terminated))
        return terminated

    def collect_garbage(self, now: Optional[datetime] = None) -> List[str]:
        """
        古い通話レコードを削除

        終了から terminal_call_retention 秒経過したレコードと、作成から
        max_call_age 秒経過したレコード（終了状態に達していないものも含む）を
        削除します。

        Returns:
            削除した通話 ID のリスト
        """
        stale = self.store.list_stale(
            terminal_older_than=timedelta(seconds=self.config.terminal_call_retention),
            max_age=timedelta(seconds=self.config.max_call_age),
            now=now or self._clock()
        )
        removed = [call_id for call_id in stale if self.store.delete(call_id)]
        if removed:
            self.logger.info("stale_calls_removed", call_ids=removed, remaining=len(self.store))
        return removed

    def ring_timeout_cycle(self, now: Optional[datetime] = None) -> List[str]:
        return self.controller.reject_unanswered(now or self._clock())
