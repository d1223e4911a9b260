"""
データモデルモジュール (Data Models Module)

通話レコード、オブザーバー接続、永続化用の履歴ドキュメントの
データモデルを定義します。
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class CallState(str, Enum):
    """
    通話ステータス

    値は Twilio のステータス語彙をそのまま使用します。
    完了系 (completed, busy, no-answer, canceled, failed) は吸収状態で、
    一度遷移するとそれ以降の遷移は受け付けません。
    """
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def rank(self) -> int:
        """ライフサイクル上の順序 (initiated < ringing < in-progress < 終了)"""
        return _STATE_RANK[self]


TERMINAL_STATES = frozenset({
    CallState.COMPLETED,
    CallState.BUSY,
    CallState.NO_ANSWER,
    CallState.CANCELED,
    CallState.FAILED,
})

_STATE_RANK = {
    CallState.INITIATED: 0,
    CallState.RINGING: 1,
    CallState.IN_PROGRESS: 2,
    CallState.COMPLETED: 3,
    CallState.BUSY: 3,
    CallState.NO_ANSWER: 3,
    CallState.CANCELED: 3,
    CallState.FAILED: 3,
}

DIRECTION_OUTBOUND = "outbound-api"
DIRECTION_INBOUND = "inbound"
# <Dial> が作る子レッグ
DIRECTION_OUTBOUND_DIAL = "outbound-dial"


@dataclass
class CallRecord:
    """
    通話レコード

    1 回の発信 (または着信) 試行について、現在把握している状態を保持します。
    CallRecordStore のみがインスタンスを所有し、
    CallLifecycleController のみが更新します。

    Attributes:
        id: プロバイダーの通話 SID (シミュレーション時はローカル生成 ID)
        counterparty_address: 相手の電話番号
        display_name: UI 表示用の名前 (生徒名)
        state: 通話ステータス
        direction: 通話方向 (outbound-api, inbound)
        answered_at: 初めて in-progress に遷移した日時 (一度だけ設定)
        duration_seconds: 通話時間（秒）
        recording_url: 録音ファイル URL
        created_at: 作成日時
        last_updated_at: 最終更新日時
    """
    id: str
    counterparty_address: str
    display_name: str
    state: CallState
    created_at: datetime
    last_updated_at: datetime
    direction: str = DIRECTION_OUTBOUND
    answered_at: Optional[datetime] = None
    duration_seconds: int = 0
    recording_url: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """
        ブラウザ / オペレーター向けの JSON 互換辞書に変換

        Returns:
            Dict[str, Any]: 通話レコードの辞書表現
        """
        return {
            "callId": self.id,
            "to": self.counterparty_address,
            "name": self.display_name,
            "direction": self.direction,
            "status": self.state.value,
            "durationSeconds": self.duration_seconds,
            "recordingUrl": self.recording_url,
            "answeredAt": self.answered_at.isoformat() if self.answered_at else None,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.last_updated_at.isoformat(),
        }


@dataclass
class ObserverConnection:
    """
    オブザーバー接続

    ブラウザクライアントとのライブなプッシュチャネル 1 本を表します。
    PushChannelRegistry のみがインスタンスを所有します。

    Attributes:
        id: 内部ハンドル
        socket: send(str) / close() を持つ WebSocket オブジェクト
        connected_at: 接続日時
        last_activity_at: 最後にクライアントから受信した日時
        is_alive: 直近のハートビート以降に生存が確認されたか
        closed: 登録解除済みか
        subscription_filter: 購読中の通話 ID (None の場合は全イベント)
    """
    id: str
    socket: Any
    connected_at: datetime
    last_activity_at: datetime
    is_alive: bool = True
    closed: bool = False
    subscription_filter: Optional[str] = None

    def wants(self, scope_call_id: Optional[str]) -> bool:
        """スコープ付きイベントをこの接続に配信すべきか判定"""
        if self.subscription_filter is None or scope_call_id is None:
            return True
        return self.subscription_filter == scope_call_id


@dataclass
class MessageRecord:
    """
    SMS メッセージデータモデル

    Attributes:
        id: プロバイダーのメッセージ SID
        direction: 方向 (outbound-api, inbound)
        counterparty_address: 相手の電話番号
        body: 本文
        status: 配信ステータス
        created_at: 作成日時
        updated_at: 更新日時
    """
    id: str
    direction: str
    counterparty_address: str
    body: str
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.updated_at is None:
            self.updated_at = self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction,
            "counterpartyAddress": self.counterparty_address,
            "body": self.body,
            "status": self.status,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
