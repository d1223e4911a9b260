"""
プッシュイベントモジュール (Push Event Module)

ブラウザクライアントへ配信するイベントの種類を固定のデータクラス群として
定義し、ワイヤー形式 (JSON) への変換を一箇所で行います。
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .models import CallRecord


@dataclass(frozen=True)
class ConnectedEvent:
    """チャネル接続直後に送信するイベント"""
    connection_id: str
    scope_call_id: Optional[str] = None


@dataclass(frozen=True)
class CallStatusUpdateEvent:
    """
    通話ステータス更新イベント

    Attributes:
        call_id: 通話 ID
        status: ステータス (Twilio の語彙)
        duration_seconds: 通話時間（秒）
        recording_url: 録音 URL（あれば）
    """
    call_id: str
    status: str
    duration_seconds: int
    recording_url: Optional[str] = None

    @property
    def scope_call_id(self) -> Optional[str]:
        return self.call_id

    @classmethod
    def from_record(cls, record: CallRecord) -> 'CallStatusUpdateEvent':
        return cls(
            call_id=record.id,
            status=record.state.value,
            duration_seconds=record.duration_seconds,
            recording_url=record.recording_url,
        )


@dataclass(frozen=True)
class RecordingReadyEvent:
    """録音完了イベント (ステータスを変更しない注釈)"""
    call_id: str
    url: str
    duration_seconds: int

    @property
    def scope_call_id(self) -> Optional[str]:
        return self.call_id


@dataclass(frozen=True)
class IncomingCallEvent:
    """着信イベント"""
    call_id: str
    from_number: str

    @property
    def scope_call_id(self) -> Optional[str]:
        return self.call_id


@dataclass(frozen=True)
class MessageReceivedEvent:
    """SMS 受信イベント (全オブザーバー向け)"""
    message_id: str
    from_number: str
    body: str
    scope_call_id: Optional[str] = None


@dataclass(frozen=True)
class MessageStatusEvent:
    """SMS 配信ステータス更新イベント (全オブザーバー向け)"""
    message_id: str
    status: str
    scope_call_id: Optional[str] = None


@dataclass(frozen=True)
class PingEvent:
    scope_call_id: Optional[str] = None


@dataclass(frozen=True)
class PongEvent:
    scope_call_id: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent:
    reason: str
    scope_call_id: Optional[str] = None


PushEvent = Union[
    ConnectedEvent,
    CallStatusUpdateEvent,
    RecordingReadyEvent,
    IncomingCallEvent,
    MessageReceivedEvent,
    MessageStatusEvent,
    PingEvent,
    PongEvent,
    ErrorEvent,
]


def event_to_message(event: PushEvent) -> Dict[str, Any]:
    """
    イベントをワイヤー形式の辞書に変換

    Args:
        event: プッシュイベント

    Returns:
        JSON 互換の辞書

    Raises:
        TypeError: 未知のイベント型が渡された場合
    """
    if isinstance(event, CallStatusUpdateEvent):
        message = {
            "type": "call_status_update",
            "callId": event.call_id,
            "status": event.status,
            "durationSeconds": event.duration_seconds,
        }
        if event.recording_url:
            message["recordingUrl"] = event.recording_url
        return message
    if isinstance(event, RecordingReadyEvent):
        return {
            "type": "recording_ready",
            "callId": event.call_id,
            "url": event.url,
            "durationSeconds": event.duration_seconds,
        }
    if isinstance(event, IncomingCallEvent):
        return {"type": "incoming_call", "callId": event.call_id, "from": event.from_number}
    if isinstance(event, MessageReceivedEvent):
        return {
            "type": "message_received",
            "messageId": event.message_id,
            "from": event.from_number,
            "body": event.body,
        }
    if isinstance(event, MessageStatusEvent):
        return {"type": "message_status", "messageId": event.message_id, "status": event.status}
    if isinstance(event, ConnectedEvent):
        return {"type": "connected", "connectionId": event.connection_id}
    if isinstance(event, PingEvent):
        return {"type": "ping"}
    if isinstance(event, PongEvent):
        return {"type": "pong"}
    if isinstance(event, ErrorEvent):
        return {"type": "error", "reason": event.reason}
    raise TypeError(f"Unknown push event type: {type(event).__name__}")


def encode_event(event: PushEvent) -> str:
    """イベントを JSON テキストフレームにエンコード"""
    return json.dumps(event_to_message(event), ensure_ascii=False)
