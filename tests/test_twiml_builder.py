"""
TwiMLBuilder クラスのユニットテスト

発信応答・着信・空応答の TwiML を XML として解析して検証します。
"""

import xml.etree.ElementTree as ET
from dataclasses import replace

import pytest

from academy_calls.twiml_builder import TwiMLBuilder


def parse(twiml):
    assert twiml.startswith('<?xml version="1.0" encoding="UTF-8"?>')
    root = ET.fromstring(twiml.split("?>", 1)[1])
    assert root.tag == "Response"
    return root


@pytest.fixture
def builder(config):
    return TwiMLBuilder(config)


class TestTwiMLBuilder:
    """TwiMLBuilder のテスト"""

    def test_outbound_answer_says_greeting(self, builder, config):
        root = parse(builder.build_outbound_answer())
        assert [child.tag for child in root] == ["Say"]
        say = root.find("Say")
        assert say.text == config.greeting_message
        assert say.get("voice") == "alice"
        assert say.get("language") == "en-US"

    def test_outbound_answer_records_when_enabled(self, config):
        builder = TwiMLBuilder(replace(config, record_calls=True))
        root = parse(builder.build_outbound_answer())
        assert [child.tag for child in root] == ["Say", "Record"]
        record = root.find("Record")
        assert record.get("recordingStatusCallback") == "https://example.com/webhooks/recording-status"
        assert record.get("maxLength") == str(config.max_call_age)
        assert record.get("playBeep") == "false"

    def test_inbound_answer_dials_operator(self, builder, config):
        root = parse(builder.build_inbound_answer("CAin"))
        assert [child.tag for child in root] == ["Say", "Dial"]
        dial = root.find("Dial")
        assert dial.get("timeout") == str(config.inbound_ring_timeout)
        client = dial.find("Client")
        assert client.text == config.operator_identity
        assert client.get("statusCallback") == "https://example.com/webhooks/call-status"
        assert client.get("statusCallbackEvent") == "initiated ringing answered completed"

    def test_greeting_text_is_escaped(self, config):
        builder = TwiMLBuilder(replace(config, greeting_message="Q&A <today>"))
        root = parse(builder.build_outbound_answer())
        assert root.find("Say").text == "Q&A <today>"

    def test_empty_response(self, builder):
        root = parse(builder.build_empty_response())
        assert list(root) == []
