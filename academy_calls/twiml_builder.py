"""
TwiML Builder モジュール (TwiML Builder Module)

Twilio Voice の通話フローを制御する TwiML (Twilio Markup Language) を構築します。
"""

from typing import TYPE_CHECKING

from twilio.twiml.messaging_response import MessagingResponse
from twilio.twiml.voice_response import Dial, VoiceResponse

if TYPE_CHECKING:
    from academy_calls.config import Config


# Say の音声設定
SAY_VOICE = "alice"
SAY_LANGUAGE = "en-US"

# 転送先クライアントで通知を受けるイベント
CLIENT_STATUS_EVENTS = "initiated ringing answered completed"


class TwiMLBuilder:
    """
    TwiML を構築するビルダークラス

    設定に基づいて発信・着信それぞれの通話フローを生成します。

    Attributes:
        config: アプリケーション設定オブジェクト
    """

    def __init__(self, config: 'Config'):
        self.config = config

    def build_outbound_answer(self) -> str:
        """
        発信通話が応答されたときの TwiML を構築

        グリーティング（Say）を再生し、録音が有効な場合は Record を続けます。

        Returns:
            TwiML 文字列
        """
        response = self._greeting()
        if self.config.record_calls:
            response.record(
                recording_status_callback=self.config.recording_status_callback_url,
                max_length=self.config.max_call_age,
                play_beep=False
            )
        return str(response)

    def build_inbound_answer(self, call_id: str) -> str:
        """
        着信通話の TwiML を構築

        グリーティングの後、オペレーターのブラウザクライアントを呼び出します。
        呼び出し時間は inbound_ring_timeout に従います。転送先の子レッグの
        ステータスは ParentCallSid 付きで通話ステータス Webhook に届きます。

        Args:
            call_id: 通話 ID（ログ記録やトラッキング用）

        Returns:
            TwiML 文字列
        """
        response = self._greeting()
        dial = Dial(timeout=self.config.inbound_ring_timeout)
        dial.client(
            self.config.operator_identity,
            status_callback=self.config.status_callback_url,
            status_callback_event=CLIENT_STATUS_EVENTS
        )
        response.append(dial)
        return str(response)

    def build_empty_response(self) -> str:
        """何も実行しない TwiML (SMS Webhook の応答用)"""
        return str(MessagingResponse())

    def _greeting(self) -> VoiceResponse:
        response = VoiceResponse()
        response.say(self.config.greeting_message, voice=SAY_VOICE, language=SAY_LANGUAGE)
        return response
