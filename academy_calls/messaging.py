"""
SMS メッセージングモジュール (Messaging Module)

SMS の送信、受信 SMS と配信ステータスの記録、オブザーバーへの通知を行います。
"""

from typing import Optional

import structlog

from .call_store import Clock, utc_now
from .config import Config
from .dispatcher import BroadcastDispatcher
from .events import MessageReceivedEvent, MessageStatusEvent
from .models import DIRECTION_INBOUND, DIRECTION_OUTBOUND, MessageRecord
from .storage import Storage, StorageError
from .telephony import TelephonyProvider
from .webhooks import InboundMessageCallback, MessageStatusCallback


MESSAGES_COLLECTION = "messages"


class MessageService:
    """
    SMS メッセージサービス

    送信時のプロバイダーエラーはオペレーターに伝えます。
    Webhook 経由の記録では保存エラーをログに残すだけにします。
    """

    def __init__(
        self,
        provider: TelephonyProvider,
        storage: Storage,
        dispatcher: BroadcastDispatcher,
        config: Config,
        clock: Optional[Clock] = None
    ):
        self.provider = provider
        self.storage = storage
        self.dispatcher = dispatcher
        self.config = config
        self._clock = clock or utc_now
        self.logger = structlog.get_logger(__name__)

    def send_message(self, to: str, body: str) -> MessageRecord:
        """
        SMS を送信

        Raises:
            ProviderError: 送信に失敗した場合
            StorageError: 送信記録の保存に失敗した場合
        """
        message_id = self.provider.send_message(
            to,
            self.config.twilio_phone_number,
            body,
            self.config.message_status_callback_url
        )
        message = MessageRecord(
            id=message_id,
            direction=DIRECTION_OUTBOUND,
            counterparty_address=to,
            body=body,
            status="queued",
            created_at=self._clock(),
        )
        self.storage.upsert(MESSAGES_COLLECTION, message.id, message.to_dict())
        self.logger.info("message_sent", message_id=message_id, to=to)
        return message

    def record_inbound(self, callback: InboundMessageCallback) -> MessageRecord:
        """受信 SMS を保存し、message_received を全オブザーバーに配信"""
        message = MessageRecord(
            id=callback.message_id,
            direction=DIRECTION_INBOUND,
            counterparty_address=callback.from_number,
            body=callback.body,
            status="received",
            created_at=self._clock(),
        )
        try:
            self.storage.upsert(MESSAGES_COLLECTION, message.id, message.to_dict())
        except StorageError as e:
            self.logger.error("inbound_message_persist_failed", message_id=message.id, error=str(e))

        self.dispatcher.publish(MessageReceivedEvent(
            message_id=message.id,
            from_number=message.counterparty_address,
            body=message.body
        ))
        self.logger.info("inbound_message_recorded", message_id=message.id, from_number=message.counterparty_address)
        return message

    def update_status(self, callback: MessageStatusCallback) -> bool:
        """
        配信ステータスを更新し、message_status を配信

        Returns:
            保存済みのメッセージを更新した場合はTrue
        """
        updated = False
        try:
            document = self.storage.get(MESSAGES_COLLECTION, callback.message_id)
            if document is not None:
                document["status"] = callback.status
                document["updatedAt"] = self._clock().isoformat()
                self.storage.upsert(MESSAGES_COLLECTION, callback.message_id, document)
                updated = True
        except StorageError as e:
            self.logger.error("message_status_persist_failed", message_id=callback.message_id, error=str(e))

        if not updated:
            self.logger.warning("message_status_unknown_message", message_id=callback.message_id)

        self.dispatcher.publish(MessageStatusEvent(message_id=callback.message_id, status=callback.status))
        return updated
