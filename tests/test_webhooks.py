"""
Webhook ペイロード解析のテスト

Twilio のフィールド名から型付き構造体への変換と、
不正なボディに対する WebhookValidationError を検証します。
"""

from datetime import datetime, timezone

import pytest

from academy_calls.webhooks import (
    WebhookValidationError,
    parse_call_status,
    parse_history_range,
    parse_inbound_message,
    parse_incoming_call,
    parse_message_status,
    parse_moment,
    parse_recording_status,
)


class TestParseCallStatus:
    """parse_call_status() のテスト"""

    def test_full_payload(self):
        callback = parse_call_status({
            "CallSid": "CA1",
            "CallStatus": "Completed",
            "CallDuration": "42",
            "RecordingUrl": "https://rec/RE1",
            "To": "+15551234567",
            "From": "+15550000000",
            "Direction": "outbound-api",
        })
        assert callback.call_id == "CA1"
        assert callback.status == "completed"
        assert callback.duration_seconds == 42
        assert callback.recording_url == "https://rec/RE1"
        assert callback.to == "+15551234567"
        assert callback.from_number == "+15550000000"
        assert callback.direction == "outbound-api"

    def test_minimal_payload(self):
        callback = parse_call_status({"CallSid": "CA1", "CallStatus": "ringing"})
        assert callback.duration_seconds is None
        assert callback.recording_url is None
        assert callback.to == ""
        assert callback.parent_call_id is None

    def test_child_leg_payload(self):
        callback = parse_call_status({
            "CallSid": "CAchild",
            "CallStatus": "in-progress",
            "ParentCallSid": "CAparent",
            "Direction": "outbound-dial",
        })
        assert callback.call_id == "CAchild"
        assert callback.parent_call_id == "CAparent"
        assert callback.direction == "outbound-dial"

    def test_numeric_duration_from_json(self):
        assert parse_call_status({"CallSid": "CA1", "CallStatus": "completed", "CallDuration": 7}).duration_seconds == 7

    @pytest.mark.parametrize("payload", [
        {"CallStatus": "ringing"},
        {"CallSid": "CA1"},
        {"CallSid": "  ", "CallStatus": "ringing"},
    ])
    def test_missing_required_fields(self, payload):
        with pytest.raises(WebhookValidationError) as exc_info:
            parse_call_status(payload)
        assert exc_info.value.error_type == "missing_fields"

    @pytest.mark.parametrize("duration", ["abc", "-5"])
    def test_invalid_duration(self, duration):
        with pytest.raises(WebhookValidationError) as exc_info:
            parse_call_status({"CallSid": "CA1", "CallStatus": "completed", "CallDuration": duration})
        assert exc_info.value.error_type == "invalid_field"

    def test_nested_value_rejected(self):
        with pytest.raises(WebhookValidationError):
            parse_call_status({"CallSid": {"nested": True}, "CallStatus": "ringing"})

    @pytest.mark.parametrize("body", [None, [], "text"])
    def test_non_object_body(self, body):
        with pytest.raises(WebhookValidationError) as exc_info:
            parse_call_status(body)
        assert exc_info.value.error_type == "invalid_body"


class TestParseOtherWebhooks:
    """その他の Webhook 解析のテスト"""

    def test_recording_status(self):
        callback = parse_recording_status({
            "RecordingSid": "RE1",
            "RecordingUrl": "https://rec/RE1",
            "RecordingStatus": "completed",
            "RecordingDuration": "15",
            "CallSid": "CA1",
        })
        assert callback.recording_id == "RE1"
        assert callback.duration_seconds == 15
        assert callback.call_id == "CA1"

    def test_recording_status_defaults(self):
        callback = parse_recording_status({"RecordingSid": "RE1", "RecordingUrl": "https://rec", "CallSid": "CA1"})
        assert callback.status == "completed"
        assert callback.duration_seconds == 0

    def test_recording_status_requires_call(self):
        with pytest.raises(WebhookValidationError):
            parse_recording_status({"RecordingSid": "RE1", "RecordingUrl": "https://rec"})

    def test_inbound_message(self):
        callback = parse_inbound_message({"MessageSid": "SM1", "From": "+15559998888", "Body": " salaam "})
        assert callback.message_id == "SM1"
        assert callback.from_number == "+15559998888"
        assert callback.body == "salaam"

    def test_inbound_message_without_body(self):
        assert parse_inbound_message({"MessageSid": "SM1", "From": "+1"}).body == ""

    def test_message_status(self):
        callback = parse_message_status({"MessageSid": "SM1", "MessageStatus": "Delivered"})
        assert callback.status == "delivered"

    def test_message_status_missing(self):
        with pytest.raises(WebhookValidationError):
            parse_message_status({"MessageSid": "SM1"})

    def test_incoming_call(self):
        callback = parse_incoming_call({"CallSid": "CAin", "From": "+15559998888", "To": "+15550000000"})
        assert callback.call_id == "CAin"
        assert callback.from_number == "+15559998888"
        assert callback.to == "+15550000000"

    def test_incoming_call_requires_caller(self):
        with pytest.raises(WebhookValidationError):
            parse_incoming_call({"CallSid": "CAin"})


class TestParseHistoryRange:
    """parse_history_range() / parse_moment() のテスト"""

    def test_date_only_range_covers_whole_end_day(self):
        start, end = parse_history_range({"startDate": "2024-01-01", "endDate": "2024-01-31"})
        assert start == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert end.date() == datetime(2024, 1, 31).date()
        assert (end.hour, end.minute, end.second) == (23, 59, 59)
        assert end.tzinfo == timezone.utc

    def test_datetime_with_z_suffix(self):
        assert parse_moment("2024-01-01T09:30:00Z", "startDate") == datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)

    def test_naive_datetime_is_utc(self):
        assert parse_moment("2024-01-01T09:30:00", "startDate").tzinfo == timezone.utc

    def test_offset_is_kept(self):
        moment = parse_moment("2024-01-01T09:30:00+05:00", "startDate")
        assert moment == datetime(2024, 1, 1, 4, 30, tzinfo=timezone.utc)

    def test_missing_dates(self):
        with pytest.raises(WebhookValidationError) as exc_info:
            parse_history_range({"startDate": "2024-01-01"})
        assert exc_info.value.error_type == "missing_fields"

    @pytest.mark.parametrize("value", ["yesterday", "2024-13-01", "2024-01-01T25:00"])
    def test_invalid_value(self, value):
        with pytest.raises(WebhookValidationError) as exc_info:
            parse_history_range({"startDate": value, "endDate": "2024-01-31"})
        assert exc_info.value.error_type == "invalid_field"

    def test_start_after_end(self):
        with pytest.raises(WebhookValidationError) as exc_info:
            parse_history_range({"startDate": "2024-02-01", "endDate": "2024-01-31"})
        assert exc_info.value.error_type == "invalid_field"
