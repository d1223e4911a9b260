"""
通話レコードストアモジュール (Call Record Store Module)

通話 ID をキーに通話レコードを保持し、状態遷移の唯一の更新窓口
apply_if_legal を提供します。Webhook、ポーリング、切断、タイマーの
各スレッドから同時に呼ばれるため、読み込み・検査・書き込みは
ロックの内側で一度に行います。
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .models import CallRecord, CallState, DIRECTION_OUTBOUND


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """タイムゾーン付きの現在時刻 (UTC)"""
    return datetime.now(timezone.utc)


class CallNotFoundError(Exception):
    """
    通話が見つからないエラー

    Attributes:
        call_id: 見つからなかった通話 ID
    """

    def __init__(self, call_id: str):
        super().__init__(f"Call not found: {call_id}")
        self.call_id = call_id


@dataclass
class TransitionResult:
    """
    apply_if_legal の結果

    Attributes:
        changed: 観測可能な変化があったか (True の場合のみブロードキャストする)
        record: 適用後のレコードのコピー
        previous_state: 適用前のステータス
    """
    changed: bool
    record: CallRecord
    previous_state: CallState


class CallRecordStore:
    """
    通話レコードストア

    CallRecord インスタンスを排他的に所有します。呼び出し元へは常に
    コピーを返すため、ストア外から内部状態が書き換えられることはありません。
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now
        self._records: Dict[str, CallRecord] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def create(
        self,
        call_id: str,
        counterparty_address: str,
        display_name: str,
        direction: str = DIRECTION_OUTBOUND,
        state: CallState = CallState.INITIATED
    ) -> Tuple[CallRecord, bool]:
        """
        通話レコードを作成

        同じ ID のレコードが既に存在する場合（発信 API の応答より先に
        Webhook が届いた場合など）は既存レコードを返します。

        Args:
            call_id: 通話 ID
            counterparty_address: 相手の電話番号
            display_name: 表示名
            direction: 通話方向
            state: 初期ステータス

        Returns:
            (レコードのコピー, 新規作成したか) のタプル
        """
        with self._lock:
            existing = self._records.get(call_id)
            if existing is not None:
                if display_name and not existing.display_name:
                    existing.display_name = display_name
                if counterparty_address and not existing.counterparty_address:
                    existing.counterparty_address = counterparty_address
                return replace(existing), False

            now = self._clock()
            record = CallRecord(
                id=call_id,
                counterparty_address=counterparty_address,
                display_name=display_name,
                state=state,
                direction=direction,
                created_at=now,
                last_updated_at=now,
            )
            self._records[call_id] = record
            return replace(record), True

    def get(self, call_id: str) -> CallRecord:
        """
        通話レコードを取得

        Raises:
            CallNotFoundError: 通話が存在しない場合
        """
        record = self.find(call_id)
        if record is None:
            raise CallNotFoundError(call_id)
        return record

    def find(self, call_id: str) -> Optional[CallRecord]:
        with self._lock:
            record = self._records.get(call_id)
            return replace(record) if record is not None else None

    def apply_if_legal(
        self,
        call_id: str,
        candidate_state: CallState,
        observed_at: Optional[datetime] = None,
        duration_seconds: Optional[int] = None
    ) -> TransitionResult:
        """
        候補ステータスを適用 (唯一の更新窓口)

        以下の場合は何もせず changed=False を返します（エラーではありません）:
            - 現在のステータスが終了状態（吸収状態）
            - 候補ステータスがライフサイクル上で現在と同じかそれより前

        in-progress への最初の遷移で answered_at を設定し、終了状態への遷移で
        通話時間を確定します（報告値を優先し、なければ answered_at から算出）。

        Args:
            call_id: 通話 ID
            candidate_state: 候補ステータス
            observed_at: 遷移を観測した日時（省略時は現在時刻）
            duration_seconds: プロバイダーが報告した通話時間

        Returns:
            TransitionResult

        Raises:
            CallNotFoundError: 通話が存在しない場合
        """
        with self._lock:
            record = self._records.get(call_id)
            if record is None:
                raise CallNotFoundError(call_id)

            previous_state = record.state
            if record.state.is_terminal or candidate_state.rank <= record.state.rank:
                return TransitionResult(
                    changed=False,
                    record=replace(record),
                    previous_state=previous_state
                )

            now = observed_at or self._clock()
            record.state = candidate_state

            if candidate_state == CallState.IN_PROGRESS and record.answered_at is None:
                record.answered_at = now

            if candidate_state.is_terminal:
                record.duration_seconds = self._final_duration(record, now, duration_seconds)

            record.last_updated_at = now
            return TransitionResult(
                changed=True,
                record=replace(record),
                previous_state=previous_state
            )

    @staticmethod
    def _final_duration(
        record: CallRecord,
        ended_at: datetime,
        reported: Optional[int]
    ) -> int:
        if reported is not None and reported >= 0:
            return reported
        if record.answered_at is None:
            return 0
        return max(0, int((ended_at - record.answered_at).total_seconds()))

    def attach_recording(
        self,
        call_id: str,
        recording_url: str,
        duration_seconds: Optional[int] = None
    ) -> TransitionResult:
        """
        録音 URL を付与

        ステータスは変更しない注釈のため、終了済みのレコードにも付与できます。
        URL が変わった場合のみ changed=True になります。

        Raises:
            CallNotFoundError: 通話が存在しない場合
        """
        with self._lock:
            record = self._records.get(call_id)
            if record is None:
                raise CallNotFoundError(call_id)

            changed = record.recording_url != recording_url
            if changed:
                record.recording_url = recording_url
                if duration_seconds and not record.duration_seconds:
                    record.duration_seconds = duration_seconds
                record.last_updated_at = self._clock()

            return TransitionResult(
                changed=changed,
                record=replace(record),
                previous_state=record.state
            )

    def delete(self, call_id: str) -> bool:
        with self._lock:
            return self._records.pop(call_id, None) is not None

    def list_stale(
        self,
        terminal_older_than: timedelta,
        max_age: timedelta,
        now: Optional[datetime] = None
    ) -> List[str]:
        """
        削除対象の通話 ID を列挙

        Args:
            terminal_older_than: 終了済みレコードの保持期間（最終更新日時から）
            max_age: 全レコードの最大保持期間（作成日時から）
            now: 基準時刻（省略時は現在時刻）

        Returns:
            削除対象の通話 ID リスト
        """
        now = now or self._clock()
        with self._lock:
            stale = []
            for record in self._records.values():
                if record.is_terminal and now - record.last_updated_at >= terminal_older_than:
                    stale.append(record.id)
                elif now - record.created_at >= max_age:
                    stale.append(record.id)
            return stale

    def list_active(self) -> List[CallRecord]:
        """終了していない通話を作成日時順に取得"""
        with self._lock:
            active = [replace(r) for r in self._records.values() if not r.is_terminal]
        return sorted(active, key=lambda r: r.created_at)

    def list_all(self) -> List[CallRecord]:
        with self._lock:
            records = [replace(r) for r in self._records.values()]
        return sorted(records, key=lambda r: r.created_at)
