"""
Webhook ペイロードモジュール (Webhook Payload Module)

プロバイダーから届く Webhook のボディを境界で一度だけ解析し、
型付きの構造体に変換します。不正なボディは WebhookValidationError になります。
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Mapping, Optional, Tuple


class WebhookValidationError(Exception):
    """
    Webhook 検証エラー

    不正な Webhook / API リクエストを検出した場合に発生します。

    Attributes:
        message: エラーメッセージ
        error_type: エラーの種類
    """

    def __init__(self, message: str, error_type: str = "validation_error"):
        super().__init__(message)
        self.message = message
        self.error_type = error_type


@dataclass(frozen=True)
class CallStatusCallback:
    """通話ステータス Webhook"""
    call_id: str
    status: str
    duration_seconds: Optional[int] = None
    recording_url: Optional[str] = None
    to: str = ""
    from_number: str = ""
    direction: str = ""
    parent_call_id: Optional[str] = None


@dataclass(frozen=True)
class RecordingStatusCallback:
    """録音ステータス Webhook"""
    recording_id: str
    url: str
    status: str
    duration_seconds: int
    call_id: str


@dataclass(frozen=True)
class InboundMessageCallback:
    """SMS 受信 Webhook"""
    message_id: str
    from_number: str
    body: str


@dataclass(frozen=True)
class MessageStatusCallback:
    """SMS 配信ステータス Webhook"""
    message_id: str
    status: str


@dataclass(frozen=True)
class IncomingCallCallback:
    """着信 Webhook"""
    call_id: str
    from_number: str
    to: str


def _require(data: Mapping[str, Any], *names: str) -> None:
    missing = [name for name in names if not _text(data, name)]
    if missing:
        raise WebhookValidationError(
            message=f"Missing required fields: {', '.join(missing)}",
            error_type="missing_fields"
        )


def _text(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if value is None:
        return ""
    if not isinstance(value, (str, int, float)):
        raise WebhookValidationError(
            message=f"Field {name} must be a scalar value",
            error_type="invalid_field"
        )
    return str(value).strip()


def _optional_int(data: Mapping[str, Any], name: str) -> Optional[int]:
    raw = _text(data, name)
    if not raw:
        return None
    try:
        value = int(float(raw))
    except ValueError:
        raise WebhookValidationError(
            message=f"Field {name} must be an integer: {raw}",
            error_type="invalid_field"
        )
    if value < 0:
        raise WebhookValidationError(
            message=f"Field {name} must not be negative: {raw}",
            error_type="invalid_field"
        )
    return value


def _ensure_mapping(data: Any) -> Mapping[str, Any]:
    if data is None:
        raise WebhookValidationError(
            message="Invalid body: request body is empty or malformed",
            error_type="invalid_body"
        )
    if not isinstance(data, Mapping):
        raise WebhookValidationError(
            message="Invalid body: request body must be an object",
            error_type="invalid_body"
        )
    return data


def parse_call_status(data: Any) -> CallStatusCallback:
    """
    通話ステータス Webhook を解析

    Twilio のフィールド名 (CallSid, CallStatus, CallDuration, RecordingUrl,
    To, From, Direction, ParentCallSid) を受け付けます。
    ParentCallSid は <Dial> で発生した子レッグの Webhook にだけ含まれます。

    Raises:
        WebhookValidationError: 必須フィールドの欠落または不正な値
    """
    data = _ensure_mapping(data)
    _require(data, "CallSid", "CallStatus")
    return CallStatusCallback(
        call_id=_text(data, "CallSid"),
        status=_text(data, "CallStatus").lower(),
        duration_seconds=_optional_int(data, "CallDuration"),
        recording_url=_text(data, "RecordingUrl") or None,
        to=_text(data, "To"),
        from_number=_text(data, "From"),
        direction=_text(data, "Direction"),
        parent_call_id=_text(data, "ParentCallSid") or None,
    )


def parse_recording_status(data: Any) -> RecordingStatusCallback:
    """
    録音ステータス Webhook を解析

    Raises:
        WebhookValidationError: 必須フィールドの欠落または不正な値
    """
    data = _ensure_mapping(data)
    _require(data, "RecordingSid", "RecordingUrl", "CallSid")
    return RecordingStatusCallback(
        recording_id=_text(data, "RecordingSid"),
        url=_text(data, "RecordingUrl"),
        status=(_text(data, "RecordingStatus") or "completed").lower(),
        duration_seconds=_optional_int(data, "RecordingDuration") or 0,
        call_id=_text(data, "CallSid"),
    )


def parse_inbound_message(data: Any) -> InboundMessageCallback:
    """
    SMS 受信 Webhook を解析

    Raises:
        WebhookValidationError: 必須フィールドの欠落
    """
    data = _ensure_mapping(data)
    _require(data, "MessageSid", "From")
    return InboundMessageCallback(
        message_id=_text(data, "MessageSid"),
        from_number=_text(data, "From"),
        body=_text(data, "Body"),
    )


def parse_message_status(data: Any) -> MessageStatusCallback:
    """
    SMS 配信ステータス Webhook を解析

    Raises:
        WebhookValidationError: 必須フィールドの欠落
    """
    data = _ensure_mapping(data)
    _require(data, "MessageSid", "MessageStatus")
    return MessageStatusCallback(
        message_id=_text(data, "MessageSid"),
        status=_text(data, "MessageStatus").lower(),
    )


def parse_incoming_call(data: Any) -> IncomingCallCallback:
    """
    着信 Webhook を解析

    Raises:
        WebhookValidationError: 必須フィールドの欠落
    """
    data = _ensure_mapping(data)
    _require(data, "CallSid", "From")
    return IncomingCallCallback(
        call_id=_text(data, "CallSid"),
        from_number=_text(data, "From"),
        to=_text(data, "To"),
    )


def parse_moment(value: str, name: str, end_of_day: bool = False) -> datetime:
    """
    ISO 8601 の日付または日時を UTC の datetime に変換

    日付だけの値は、その日の始まり (end_of_day=True の場合は終わり) を表します。
    タイムゾーンのない日時は UTC とみなします。

    Raises:
        WebhookValidationError: 解釈できない値
    """
    try:
        if len(value) == 10:
            moment = datetime.combine(date.fromisoformat(value), time.max if end_of_day else time.min)
        else:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise WebhookValidationError(
            message=f"Field {name} must be an ISO 8601 date or datetime: {value}",
            error_type="invalid_field"
        )
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def parse_history_range(data: Any) -> Tuple[datetime, datetime]:
    """
    通話履歴の期間指定 (startDate, endDate) を解析

    endDate が日付だけの場合はその日の終わりまでを含みます。

    Raises:
        WebhookValidationError: 欠落、不正な値、または開始が終了より後の場合
    """
    data = _ensure_mapping(data)
    _require(data, "startDate", "endDate")
    start = parse_moment(_text(data, "startDate"), "startDate")
    end = parse_moment(_text(data, "endDate"), "endDate", end_of_day=True)
    if start > end:
        raise WebhookValidationError(
            message="startDate must not be later than endDate",
            error_type="invalid_field"
        )
    return start, end
