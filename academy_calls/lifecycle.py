"""
通話ライフサイクル制御モジュール (Call Lifecycle Controller Module)

発信、プロバイダー Webhook、クライアントのポーリング / 切断、
着信タイムアウトの各入口から届く候補遷移を、共通のゲート
(apply_if_legal → 変化した場合のみ配信・永続化) に通します。
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from .call_store import CallNotFoundError, CallRecordStore, Clock, TransitionResult, utc_now
from .config import Config
from .dispatcher import BroadcastDispatcher
from .events import CallStatusUpdateEvent, IncomingCallEvent, RecordingReadyEvent
from .models import CallRecord, CallState, DIRECTION_INBOUND, DIRECTION_OUTBOUND, DIRECTION_OUTBOUND_DIAL
from .storage import Storage, StorageError
from .telephony import ProviderError, RecordingInfo, TelephonyProvider
from .webhooks import CallStatusCallback


CALL_HISTORY_COLLECTION = "call_history"

# Twilio のステータス語彙 → 内部ステータス
PROVIDER_STATUS_MAP: Dict[str, CallState] = {
    "queued": CallState.INITIATED,
    "initiated": CallState.INITIATED,
    "ringing": CallState.RINGING,
    "answered": CallState.IN_PROGRESS,
    "in-progress": CallState.IN_PROGRESS,
    "completed": CallState.COMPLETED,
    "busy": CallState.BUSY,
    "no-answer": CallState.NO_ANSWER,
    "canceled": CallState.CANCELED,
    "cancelled": CallState.CANCELED,
    "failed": CallState.FAILED,
}


def map_provider_status(status: str) -> Optional[CallState]:
    """プロバイダーのステータス文字列を内部ステータスに変換 (未知の場合は None)"""
    return PROVIDER_STATUS_MAP.get((status or "").strip().lower())


@dataclass(frozen=True)
class TransitionPlan:
    """
    Webhook 1 件から導かれる候補遷移と副作用

    Attributes:
        target_call_id: 遷移を適用する通話 ID (子レッグの場合は親通話)
        candidate_state: 適用を試みるステータス (未知の語彙の場合は None)
        duration_seconds: プロバイダーが報告した通話時間
        adopt_record: 未知の通話としてレコードを作成するか
        recording_url: 付与する録音 URL
    """
    target_call_id: str
    candidate_state: Optional[CallState]
    duration_seconds: Optional[int] = None
    adopt_record: bool = False
    recording_url: Optional[str] = None


def plan_status_transition(
    record: Optional[CallRecord],
    callback: CallStatusCallback
) -> TransitionPlan:
    """
    現在のレコードと通話ステータス Webhook から遷移計画を作る純粋関数

    ParentCallSid を持つ子レッグ (着信を <Dial> で転送した先) の
    ステータスは親通話に適用します。子レッグ自体はレコードになりません。
    実際の適用可否は apply_if_legal が判断します。

    Args:
        record: 適用先 (子レッグの場合は親通話) の現在のレコード
        callback: 通話ステータス Webhook
    """
    recording_url = callback.recording_url
    if record is not None and recording_url == record.recording_url:
        recording_url = None

    is_child_leg = bool(callback.parent_call_id) or callback.direction == DIRECTION_OUTBOUND_DIAL

    return TransitionPlan(
        target_call_id=callback.parent_call_id or callback.call_id,
        candidate_state=map_provider_status(callback.status),
        duration_seconds=callback.duration_seconds,
        adopt_record=record is None and bool(callback.to) and not is_child_leg,
        recording_url=recording_url,
    )


class CallLifecycleController:
    """
    通話ライフサイクルコントローラー

    CallRecord を更新する唯一のコンポーネントです。遷移の適用、通話履歴の
    永続化、配信キューへの投入は同じロックの内側で行い、オブザーバーが
    受け取る順序と通話履歴の最終状態を適用順序と一致させます。
    ソケットへの書き込みは接続ごとの送信スレッドが行うため、ロック中に
    ブロックすることはありません。プロバイダー呼び出しはロックの外で行います。
    """

    def __init__(
        self,
        store: CallRecordStore,
        dispatcher: BroadcastDispatcher,
        provider: TelephonyProvider,
        config: Config,
        storage: Optional[Storage] = None,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.provider = provider
        self.config = config
        self.storage = storage
        self._clock = clock or utc_now
        self._transition_lock = threading.RLock()
        self.logger = structlog.get_logger(__name__)

    # ------------------------------------------------------------------
    # 共通ゲート
    # ------------------------------------------------------------------

    def _apply(
        self,
        call_id: str,
        candidate_state: CallState,
        origin: str,
        observed_at: Optional[datetime] = None,
        duration_seconds: Optional[int] = None
    ) -> TransitionResult:
        with self._transition_lock:
            result = self.store.apply_if_legal(
                call_id,
                candidate_state,
                observed_at=observed_at,
                duration_seconds=duration_seconds
            )
            if result.changed:
                self._persist(result.record)
                self.dispatcher.publish(CallStatusUpdateEvent.from_record(result.record))

        if result.changed:
            self.logger.info(
                "call_state_changed",
                call_id=call_id,
                origin=origin,
                previous_status=result.previous_state.value,
                status=result.record.state.value,
                duration_seconds=result.record.duration_seconds
            )
        else:
            self.logger.debug(
                "call_transition_ignored",
                call_id=call_id,
                origin=origin,
                current_status=result.record.state.value,
                candidate_status=candidate_state.value
            )
        return result

    def _create(
        self,
        call_id: str,
        counterparty_address: str,
        display_name: str,
        direction: str = DIRECTION_OUTBOUND,
        state: CallState = CallState.INITIATED
    ) -> CallRecord:
        with self._transition_lock:
            record, created = self.store.create(
                call_id,
                counterparty_address,
                display_name,
                direction=direction,
                state=state
            )
            self._persist(record)
            if created:
                if direction == DIRECTION_INBOUND:
                    self.dispatcher.publish(IncomingCallEvent(call_id=call_id, from_number=counterparty_address))
                self.dispatcher.publish(CallStatusUpdateEvent.from_record(record))

        self.logger.info(
            "call_record_created" if created else "call_record_exists",
            call_id=call_id,
            direction=direction,
            status=record.state.value
        )
        return record

    def _persist(self, record: CallRecord) -> None:
        if self.storage is None:
            return
        try:
            self.storage.upsert(CALL_HISTORY_COLLECTION, record.id, record.to_dict())
        except StorageError as e:
            self.logger.error(
                "call_history_persist_failed",
                call_id=record.id,
                error=str(e),
                exc_info=True
            )

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    def place_call(self, to: str, name: str = "") -> CallRecord:
        """
        発信 (オペレーター操作)

        プロバイダーへの発信が成功した場合のみ initiated のレコードを作成し、
        ステータス更新イベントを 1 件配信します。失敗した場合はレコードを
        作成せず、ProviderError をそのまま呼び出し元に伝えます。

        Args:
            to: 発信先電話番号
            name: 表示名（生徒名）

        Returns:
            作成された通話レコード

        Raises:
            ProviderError: プロバイダーへの発信に失敗した場合
        """
        self.logger.info("call_placement_requested", to=to, name=name)

        options: Dict[str, Any] = {
            "voice_url": self.config.outbound_voice_url,
            "record": self.config.record_calls,
            "recording_status_callback": self.config.recording_status_callback_url,
        }
        try:
            call_id = self.provider.place_call(
                to,
                self.config.twilio_phone_number,
                self.config.status_callback_url,
                options
            )
        except ProviderError as e:
            self.logger.error(
                "call_placement_failed",
                to=to,
                error_code=e.code,
                error_message=e.message,
                status_code=e.status_code
            )
            raise

        self._create(call_id, to, name)
        return self.store.get(call_id)

    def handle_status_callback(self, callback: CallStatusCallback) -> Optional[TransitionResult]:
        """
        通話ステータス Webhook を適用

        未知のステータス語彙や未知の通話はログに残して無視します。
        プロバイダーの再送を防ぐため、呼び出し元は結果に関わらず成功を返します。
        子レッグの Webhook は親通話に適用されます。
        """
        target_id = callback.parent_call_id or callback.call_id
        record = self.store.find(target_id)
        plan = plan_status_transition(record, callback)

        if callback.parent_call_id:
            self.logger.debug(
                "child_leg_status",
                call_id=target_id,
                child_call_id=callback.call_id,
                status=callback.status
            )

        if record is None:
            if not plan.adopt_record:
                self.logger.warning(
                    "status_callback_unknown_call",
                    call_id=target_id,
                    child_call_id=callback.call_id if callback.parent_call_id else None,
                    status=callback.status
                )
                return None
            direction = DIRECTION_INBOUND if callback.direction == DIRECTION_INBOUND else DIRECTION_OUTBOUND
            counterparty = callback.from_number if direction == DIRECTION_INBOUND else callback.to
            self._create(target_id, counterparty, "", direction=direction)

        result = None
        if plan.candidate_state is None:
            self.logger.warning(
                "status_callback_unknown_status",
                call_id=target_id,
                status=callback.status
            )
        else:
            result = self._apply(
                target_id,
                plan.candidate_state,
                origin="webhook",
                duration_seconds=plan.duration_seconds
            )

        if plan.recording_url:
            self.attach_recording(target_id, plan.recording_url, plan.duration_seconds)

        return result

    def poll_call(self, call_id: str) -> CallRecord:
        """
        通話状態の問い合わせ (ポーリング / 照合)

        キャッシュが終了状態でなければプロバイダーに現在の状態を問い合わせ、
        同じゲートに候補遷移として通します。取りこぼした Webhook はここで補正
        されます。プロバイダーのエラーはキャッシュ値へのフォールバックとなります。

        Raises:
            CallNotFoundError: 通話が存在しない場合
        """
        record = self.store.get(call_id)
        if record.is_terminal:
            return record

        try:
            snapshot = self.provider.fetch_call_status(call_id)
        except ProviderError as e:
            self.logger.warning(
                "call_poll_provider_failed",
                call_id=call_id,
                error_code=e.code,
                error_message=e.message
            )
            return record

        candidate = map_provider_status(snapshot.status)
        if candidate is None:
            self.logger.warning("call_poll_unknown_status", call_id=call_id, status=snapshot.status)
            return record

        return self._apply(
            call_id,
            candidate,
            origin="poll",
            duration_seconds=snapshot.duration_seconds
        ).record

    def hangup_call(self, call_id: str) -> CallRecord:
        """
        クライアントからの切断

        まずローカルで completed を適用して UI を更新し、その後ベストエフォートで
        プロバイダーに切断を依頼します。プロバイダーのエラーはログに残すだけで、
        呼び出し元には失敗として伝えません。

        Raises:
            CallNotFoundError: 通話が存在しない場合
        """
        result = self._apply(call_id, CallState.COMPLETED, origin="hangup")

        if result.previous_state.is_terminal:
            return result.record

        try:
            self.provider.update_call(call_id, "completed")
        except ProviderError as e:
            self.logger.warning(
                "hangup_provider_update_failed",
                call_id=call_id,
                error_code=e.code,
                error_message=e.message
            )
        return result.record

    def attach_recording(
        self,
        call_id: str,
        url: str,
        duration_seconds: Optional[int] = None
    ) -> Optional[TransitionResult]:
        """
        録音 URL を付与し、通話にスコープした recording_ready を配信

        ステータスは変更しません。終了済みの通話にも付与できます。
        """
        with self._transition_lock:
            try:
                result = self.store.attach_recording(call_id, url, duration_seconds)
            except CallNotFoundError:
                self.logger.warning("recording_for_unknown_call", call_id=call_id, recording_url=url)
                return None
            if result.changed:
                self._persist(result.record)
                self.dispatcher.publish(RecordingReadyEvent(
                    call_id=call_id,
                    url=url,
                    duration_seconds=duration_seconds or result.record.duration_seconds
                ))

        if result.changed:
            self.logger.info("recording_attached", call_id=call_id, recording_url=url)
        return result

    def handle_incoming_call(self, call_id: str, from_number: str, to_number: str = "") -> CallRecord:
        """
        着信を登録

        ringing の着信レコードを作成し、incoming_call を配信します。
        inbound_ring_timeout 秒以内に応答されない着信は reject_unanswered で
        no-answer になります。
        """
        self.logger.info("incoming_call_received", call_id=call_id, from_number=from_number, to=to_number)
        return self._create(
            call_id,
            from_number,
            from_number,
            direction=DIRECTION_INBOUND,
            state=CallState.RINGING
        )

    def reject_unanswered(self, now: Optional[datetime] = None) -> List[str]:
        """
        応答されないまま期限を過ぎた着信を no-answer にする

        Returns:
            拒否した通話 ID のリスト
        """
        now = now or self._clock()
        deadline = timedelta(seconds=self.config.inbound_ring_timeout)
        rejected = []

        for record in self.store.list_active():
            if record.direction != DIRECTION_INBOUND:
                continue
            if record.state.rank >= CallState.IN_PROGRESS.rank:
                continue
            if now - record.created_at < deadline:
                continue

            try:
                result = self._apply(record.id, CallState.NO_ANSWER, origin="ring_timeout", observed_at=now)
            except CallNotFoundError:
                continue
            if not result.changed:
                continue

            rejected.append(record.id)
            try:
                self.provider.update_call(record.id, "completed")
            except ProviderError as e:
                self.logger.warning(
                    "ring_timeout_provider_update_failed",
                    call_id=record.id,
                    error_code=e.code,
                    error_message=e.message
                )

        if rejected:
            self.logger.info("unanswered_calls_rejected", call_ids=rejected)
        return rejected

    # ------------------------------------------------------------------
    # 参照系
    # ------------------------------------------------------------------

    def get_call(self, call_id: str) -> CallRecord:
        return self.store.get(call_id)

    def list_active_calls(self) -> List[CallRecord]:
        return self.store.list_active()

    def list_recordings(self, call_id: str) -> List[RecordingInfo]:
        """
        プロバイダー上の録音一覧

        Raises:
            ProviderError: 取得に失敗した場合
        """
        return self.provider.list_recordings(call_id)

    def call_history(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        counterparty: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        永続化された通話履歴 (更新の新しい順)

        Args:
            start: この日時以降に作成された通話のみ (境界を含む)
            end: この日時以前に作成された通話のみ (境界を含む)
            counterparty: 相手の電話番号で絞り込む
        """
        if self.storage is None:
            return []

        history = []
        for document in self.storage.list(CALL_HISTORY_COLLECTION):
            if counterparty is not None and document.get("to") != counterparty:
                continue
            if start is not None or end is not None:
                created_at = datetime.fromisoformat(document["createdAt"])
                if start is not None and created_at < start:
                    continue
                if end is not None and created_at > end:
                    continue
            history.append(document)
        return history
