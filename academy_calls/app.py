"""
Flask アプリケーションモジュール (Flask Application Module)

Academy Calls の Flask アプリケーションを提供します。
オペレーター API、Twilio Webhook、WebSocket プッシュチャネルと
構造化ロギングを設定します。
"""

import logging
import sys
import traceback
from typing import Any, Dict, Optional, Tuple

import structlog
from flask import Flask, jsonify, request, Response
from flask_sock import Sock
from simple_websocket import ConnectionClosed

from .call_store import CallNotFoundError, CallRecordStore, Clock, utc_now
from .channels import CapacityError, PushChannelRegistry
from .config import Config, ConfigurationError
from .dispatcher import BroadcastDispatcher, ClientMessageHandler
from .events import ConnectedEvent, ErrorEvent, encode_event
from .lifecycle import CallLifecycleController
from .liveness import LivenessMonitor
from .messaging import MessageService
from .recording_manager import RecordingManager, RecordingMetadata
from .scheduler import CallScheduler, ScheduleNotFoundError, parse_repeat, parse_run_at, parse_targets
from .storage import SQLiteStorage, Storage, StorageError
from .telephony import ProviderError, TelephonyProvider, build_provider
from .twiml_builder import TwiMLBuilder
from .webhooks import (
    WebhookValidationError,
    parse_call_status,
    parse_history_range,
    parse_inbound_message,
    parse_incoming_call,
    parse_message_status,
    parse_recording_status,
)


# WebSocket のクローズコード (Try Again Later)
CLOSE_CODE_TRY_AGAIN_LATER = 1013


def configure_structlog(log_level: str = "INFO") -> None:
    """
    structlog を設定

    JSON フォーマットの構造化ロギングを設定します。
    すべてのログ出力は timestamp, level, event フィールドを含みます。

    Args:
        log_level: ログレベル (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    # 標準ライブラリの logging を設定
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """
    構造化ロガーを取得

    Args:
        name: ロガー名

    Returns:
        構造化ロガーインスタンス
    """
    return structlog.get_logger(name)


def validate_json_request(data: Any, required_fields: Optional[list] = None) -> Tuple[bool, Optional[str]]:
    """
    JSON リクエストを検証

    Args:
        data: 検証するデータ
        required_fields: 必須フィールドのリスト（オプション）

    Returns:
        (検証結果, エラーメッセージ) のタプル
    """
    if data is None:
        return False, "Invalid JSON: request body is empty or malformed"

    if not isinstance(data, dict):
        return False, "Invalid JSON: request body must be a JSON object"

    if required_fields:
        missing_fields = [field for field in required_fields if not data.get(field)]
        if missing_fields:
            return False, f"Missing required fields: {', '.join(missing_fields)}"

    return True, None


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None
) -> Tuple[Response, int]:
    """
    エラーレスポンスを作成

    Args:
        error_type: エラーの種類
        message: エラーメッセージ
        status_code: HTTP ステータスコード
        details: 追加の詳細情報（オプション）

    Returns:
        (JSON レスポンス, ステータスコード) のタプル
    """
    response_body = {
        "error": error_type,
        "message": message,
        "status_code": status_code
    }
    if details:
        response_body["details"] = details

    return jsonify(response_body), status_code


def _request_data() -> Any:
    """フォーム (Twilio の既定) または JSON のボディを取得"""
    if request.is_json:
        return request.get_json(silent=True)
    if request.method == "GET":
        return request.args.to_dict()
    return request.form.to_dict()


def _operator_json(required_fields: list) -> Dict[str, Any]:
    data = request.get_json(silent=True)
    is_valid, error_message = validate_json_request(data, required_fields)
    if not is_valid:
        raise WebhookValidationError(message=error_message, error_type="invalid_request")
    return data


class WebhookHandler:
    """
    Twilio Webhook を処理するハンドラー

    通話ステータス、録音完了、SMS 受信 / 配信ステータス、着信の Webhook を
    処理します。プロバイダーの再送を防ぐため、不正なボディや内部エラーは
    ログに残すだけで、常に成功として応答します。

    Attributes:
        controller: 通話ライフサイクルコントローラー
        message_service: SMS メッセージサービス
        recording_manager: 録音データを管理するマネージャー
        twiml_builder: TwiML を構築するビルダー
        logger: 構造化ロガー
    """

    def __init__(
        self,
        controller: CallLifecycleController,
        message_service: MessageService,
        recording_manager: RecordingManager,
        twiml_builder: TwiMLBuilder,
        clock: Optional[Clock] = None
    ):
        self.controller = controller
        self.message_service = message_service
        self.recording_manager = recording_manager
        self.twiml_builder = twiml_builder
        self._clock = clock or utc_now
        self.logger = get_logger(__name__)

    def _acknowledge_failure(self, webhook: str, error: Exception) -> None:
        if isinstance(error, WebhookValidationError):
            self.logger.warning(
                "webhook_rejected",
                webhook=webhook,
                error_type=error.error_type,
                error_message=error.message
            )
        else:
            self.logger.error(
                "webhook_processing_failed",
                webhook=webhook,
                error_type=type(error).__name__,
                error_message=str(error),
                stack_trace=traceback.format_exc(),
                exc_info=True
            )

    def handle_call_status(self, data: Any) -> None:
        """
        通話ステータス Webhook を処理

        Args:
            data: Twilio から送信されるパラメータ
                - CallSid: 通話 ID
                - CallStatus: 通話ステータス
                - CallDuration: 通話時間（秒、終了時のみ）
                - RecordingUrl: 録音 URL（録音がある場合）
        """
        try:
            callback = parse_call_status(data)
            self.logger.info(
                "call_status_webhook_received",
                call_id=callback.call_id,
                status=callback.status,
                duration_seconds=callback.duration_seconds
            )
            self.controller.handle_status_callback(callback)
        except Exception as e:
            self._acknowledge_failure("call-status", e)

    def handle_recording_status(self, data: Any) -> None:
        """
        録音ステータス Webhook を処理

        録音メタデータを保存し、完了した録音の URL を通話に付与します。
        """
        try:
            callback = parse_recording_status(data)
            self.logger.info(
                "recording_webhook_received",
                call_id=callback.call_id,
                recording_id=callback.recording_id,
                status=callback.status
            )

            metadata = RecordingMetadata(
                id=callback.recording_id,
                call_id=callback.call_id,
                recording_url=callback.url,
                duration=callback.duration_seconds,
                status=callback.status,
                timestamp=self._clock()
            )
            try:
                self.recording_manager.save_recording(metadata)
            except StorageError as e:
                self.logger.error(
                    "recording_metadata_persist_failed",
                    recording_id=callback.recording_id,
                    error=str(e)
                )

            if callback.status == "completed":
                self.controller.attach_recording(callback.call_id, callback.url, callback.duration_seconds)
            else:
                self.logger.warning(
                    "recording_not_completed",
                    call_id=callback.call_id,
                    recording_id=callback.recording_id,
                    status=callback.status
                )
        except Exception as e:
            self._acknowledge_failure("recording-status", e)

    def handle_incoming_message(self, data: Any) -> None:
        try:
            self.message_service.record_inbound(parse_inbound_message(data))
        except Exception as e:
            self._acknowledge_failure("sms-incoming", e)

    def handle_message_status(self, data: Any) -> None:
        try:
            self.message_service.update_status(parse_message_status(data))
        except Exception as e:
            self._acknowledge_failure("sms-status", e)

    def handle_incoming_call(self, data: Any) -> str:
        """
        着信 Webhook を処理

        着信レコードを作成し、オペレーターのブラウザクライアントを呼び出す
        TwiML を返します。

        Returns:
            TwiML 文字列
        """
        try:
            callback = parse_incoming_call(data)
            self.controller.handle_incoming_call(callback.call_id, callback.from_number, callback.to)
            return self.twiml_builder.build_inbound_answer(callback.call_id)
        except Exception as e:
            self._acknowledge_failure("voice-incoming", e)
            return self.twiml_builder.build_empty_response()

    def handle_outbound_answer(self, data: Any) -> str:
        """発信通話の応答時に再生する TwiML を返す"""
        call_id = data.get("CallSid", "") if isinstance(data, dict) else ""
        self.logger.info("outbound_call_answered", call_id=call_id)
        return self.twiml_builder.build_outbound_answer()


def serve_push_channel(
    ws: Any,
    registry: PushChannelRegistry,
    dispatcher: BroadcastDispatcher,
    client_handler: ClientMessageHandler
) -> Optional[str]:
    """
    WebSocket プッシュチャネル 1 本を処理

    接続を登録して connected を送信し、切断されるまでクライアントからの
    フレームを処理します。上限に達している場合は error フレームを送って
    1013 で閉じます。

    Returns:
        接続ハンドル (上限で拒否した場合は None)
    """
    logger = get_logger(__name__)

    try:
        handle = registry.register(ws)
    except CapacityError as e:
        try:
            ws.send(encode_event(ErrorEvent(reason="capacity")))
            ws.close(reason=CLOSE_CODE_TRY_AGAIN_LATER, message=str(e))
        except ConnectionClosed:
            logger.debug("observer_gone_before_rejection")
        return None

    try:
        dispatcher.send_to(handle, ConnectedEvent(connection_id=handle))
        while registry.get(handle) is not None:
            client_handler.handle(handle, ws.receive())
    except ConnectionClosed:
        logger.debug("observer_disconnected", connection_id=handle)
    finally:
        registry.unregister(handle)
    return handle


def create_app(
    config: Optional[Config] = None,
    provider: Optional[TelephonyProvider] = None,
    storage: Optional[Storage] = None,
    clock: Optional[Clock] = None
) -> Flask:
    """
    Flask アプリケーションを作成

    すべてのコンポーネントを初期化して app.config に登録し、
    エラーハンドラーとエンドポイントを設定します。
    生存監視と定期発信のバックグラウンドタスクはここでは開始しません
    (app.config["LIVENESS_MONITOR"].start() と app.config["CALL_SCHEDULER"].start()
    で開始します)。

    Args:
        config: アプリケーション設定（None の場合は環境変数から読み込み）
        provider: テレフォニープロバイダー（None の場合は設定から生成）
        storage: ストレージレイヤー（None の場合は SQLite）
        clock: 現在時刻を返す関数（テスト用）

    Returns:
        設定済みの Flask アプリケーション
    """
    app = Flask(__name__)

    if config is None:
        config = Config.from_env()

    app.config["ACADEMY_CALLS_CONFIG"] = config

    configure_structlog(config.log_level)

    logger = get_logger(__name__)
    logger.info(
        "application_initialized",
        log_level=config.log_level,
        webhook_base_url=config.webhook_base_url,
        simulate_provider=config.simulate_provider
    )

    if storage is None:
        storage = SQLiteStorage(config.database_path)
    app.config["STORAGE"] = storage

    if provider is None:
        provider = build_provider(config)
    app.config["PROVIDER"] = provider

    if not config.media_tokens_enabled and not config.simulate_provider:
        logger.warning(
            "media_tokens_disabled",
            reason="Missing TWILIO_API_KEY / TWILIO_API_SECRET"
        )

    store = CallRecordStore(clock)
    registry = PushChannelRegistry(config.max_observers, clock, config.observer_outbox_size)
    dispatcher = BroadcastDispatcher(registry)
    client_handler = ClientMessageHandler(registry, dispatcher)
    controller = CallLifecycleController(store, dispatcher, provider, config, storage, clock)
    message_service = MessageService(provider, storage, dispatcher, config, clock)
    recording_manager = RecordingManager(storage)
    twiml_builder = TwiMLBuilder(config)
    monitor = LivenessMonitor(registry, dispatcher, store, controller, config, clock)
    scheduler = CallScheduler(controller, storage, config, clock)
    webhook_handler = WebhookHandler(controller, message_service, recording_manager, twiml_builder, clock)

    app.config["CALL_STORE"] = store
    app.config["PUSH_REGISTRY"] = registry
    app.config["DISPATCHER"] = dispatcher
    app.config["LIFECYCLE_CONTROLLER"] = controller
    app.config["MESSAGE_SERVICE"] = message_service
    app.config["RECORDING_MANAGER"] = recording_manager
    app.config["TWIML_BUILDER"] = twiml_builder
    app.config["LIVENESS_MONITOR"] = monitor
    app.config["CALL_SCHEDULER"] = scheduler
    app.config["WEBHOOK_HANDLER"] = webhook_handler

    # ==========================================================================
    # エラーハンドラー (Error Handlers)
    # ==========================================================================

    @app.errorhandler(400)
    def handle_bad_request(error):
        logger.error(
            "bad_request_error",
            error_type="bad_request",
            error_message=str(error),
            path=request.path,
            method=request.method,
            content_type=request.content_type
        )
        return create_error_response(
            error_type="bad_request",
            message=str(error.description) if hasattr(error, 'description') else "Bad Request",
            status_code=400
        )

    @app.errorhandler(404)
    def handle_not_found(error):
        logger.warning("not_found_error", path=request.path, method=request.method)
        return create_error_response(
            error_type="not_found",
            message=str(error.description) if hasattr(error, 'description') else "Not Found",
            status_code=404
        )

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        logger.warning(
            "method_not_allowed_error",
            error_type="method_not_allowed",
            error_message=str(error),
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type="method_not_allowed",
            message=str(error.description) if hasattr(error, 'description') else "Method Not Allowed",
            status_code=405
        )

    @app.errorhandler(500)
    def handle_internal_error(error):
        logger.error(
            "internal_server_error",
            error_type="internal_error",
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc(),
            exc_info=True
        )
        return create_error_response(
            error_type="internal_error",
            message="Internal Server Error",
            status_code=500
        )

    @app.errorhandler(WebhookValidationError)
    def handle_webhook_validation_error(error):
        """不正な API リクエスト"""
        logger.warning(
            "request_validation_error",
            error_type=error.error_type,
            error_message=error.message,
            path=request.path,
            method=request.method,
            content_type=request.content_type
        )
        return create_error_response(
            error_type=error.error_type,
            message=error.message,
            status_code=400
        )

    @app.errorhandler(CallNotFoundError)
    def handle_call_not_found(error):
        logger.warning("call_not_found", call_id=error.call_id, path=request.path)
        return create_error_response(
            error_type="call_not_found",
            message=str(error),
            status_code=404,
            details={"callId": error.call_id}
        )

    @app.errorhandler(ScheduleNotFoundError)
    def handle_schedule_not_found(error):
        logger.warning("schedule_not_found", schedule_id=error.schedule_id, path=request.path)
        return create_error_response(
            error_type="schedule_not_found",
            message=str(error),
            status_code=404,
            details={"scheduleId": error.schedule_id}
        )

    @app.errorhandler(ProviderError)
    def handle_provider_error(error):
        """
        ProviderError エラーハンドラー

        Twilio API のエラーを 502 Bad Gateway として返します。
        """
        logger.error(
            "provider_error",
            error_type="provider_error",
            error_message=error.message,
            error_code=error.code,
            provider_status_code=error.status_code,
            path=request.path,
            method=request.method
        )
        details = {"code": error.code} if error.code is not None else None
        return create_error_response(
            error_type="provider_error",
            message=error.message,
            status_code=502,
            details=details
        )

    @app.errorhandler(ConfigurationError)
    def handle_configuration_error(error):
        logger.error("feature_not_configured", error_message=str(error), path=request.path)
        return create_error_response(
            error_type="not_configured",
            message=str(error),
            status_code=503
        )

    @app.errorhandler(Exception)
    def handle_generic_exception(error):
        """
        汎用例外ハンドラー

        予期しない例外 (StorageError を含む) を処理し、スタックトレースをログ出力します。
        """
        logger.error(
            "unhandled_exception",
            error_type=type(error).__name__,
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc(),
            exc_info=True
        )
        return create_error_response(
            error_type="storage_error" if isinstance(error, StorageError) else "internal_error",
            message="An unexpected error occurred",
            status_code=500
        )

    # ==========================================================================
    # オペレーター API (Operator API)
    # ==========================================================================

    @app.route("/health", methods=["GET"])
    def health_check():
        """
        ヘルスチェックエンドポイント

        Returns:
            JSON レスポンス: {"status": "healthy", "observers", "activeCalls"}
        """
        logger.debug("health_check_requested")
        return jsonify({
            "status": "healthy",
            "observers": len(registry),
            "activeCalls": len(store.list_active())
        }), 200

    @app.route("/api/calls", methods=["POST"])
    def place_call():
        """
        発信エンドポイント

        Request Body (JSON):
            - to: 発信先電話番号 (必須)
            - name: 表示名

        Returns:
            JSON レスポンス: {"success", "callSid", "message", "status", "call"}
        """
        data = _operator_json(["to"])
        to = str(data["to"]).strip()
        name = str(data.get("name") or "").strip()

        record = controller.place_call(to, name)
        return jsonify({
            "success": True,
            "callSid": record.id,
            "message": f"Calling {name or to}",
            "status": record.state.value,
            "call": record.to_dict()
        }), 200

    @app.route("/api/calls", methods=["GET"])
    def list_calls():
        calls = controller.list_active_calls()
        return jsonify({"calls": [record.to_dict() for record in calls]}), 200

    @app.route("/api/calls/<call_id>", methods=["GET"])
    def get_call(call_id: str):
        """通話状態の問い合わせ (プロバイダーと照合して返す)"""
        record = controller.poll_call(call_id)
        return jsonify({"call": record.to_dict()}), 200

    @app.route("/api/calls/<call_id>/hangup", methods=["POST"])
    def hangup_call(call_id: str):
        record = controller.hangup_call(call_id)
        return jsonify({"success": True, "call": record.to_dict()}), 200

    @app.route("/api/calls/<call_id>/recordings", methods=["GET"])
    def list_call_recordings(call_id: str):
        recordings = controller.list_recordings(call_id)
        return jsonify({
            "callId": call_id,
            "recordings": [recording.to_dict() for recording in recordings]
        }), 200

    @app.route("/api/history", methods=["GET"])
    def call_history():
        return jsonify({"calls": controller.call_history()}), 200

    @app.route("/api/history/range", methods=["GET"])
    def call_history_range():
        """
        期間を指定した通話履歴

        Query Parameters:
            - startDate: 開始 (ISO 8601 の日付または日時、必須)
            - endDate: 終了 (日付だけの場合はその日の終わりまで、必須)
        """
        start, end = parse_history_range(request.args.to_dict())
        return jsonify({
            "calls": controller.call_history(start=start, end=end),
            "startDate": start.isoformat(),
            "endDate": end.isoformat()
        }), 200

    @app.route("/api/history/contact/<path:number>", methods=["GET"])
    def call_history_for_contact(number: str):
        """相手の電話番号を指定した通話履歴"""
        return jsonify({"number": number, "calls": controller.call_history(counterparty=number)}), 200

    # ==========================================================================
    # 発信予約 (Schedules)
    # ==========================================================================

    @app.route("/api/schedules", methods=["GET"])
    def list_schedules():
        return jsonify({"schedules": [s.to_dict() for s in scheduler.list_schedules()]}), 200

    @app.route("/api/schedules", methods=["POST"])
    def create_schedule():
        """
        発信予約の作成

        Request Body (JSON):
            - targets: 電話番号、または {"phone", "name"} のリスト (必須)
            - runAt: 発信日時 (ISO 8601)、または date と time の組
            - repeat: once, daily, weekly, monthly (デフォルト: once)
        """
        data = _operator_json(["targets"])
        schedule = scheduler.create_schedule(
            parse_targets(data["targets"]),
            parse_run_at(data),
            parse_repeat(data.get("repeat"))
        )
        return jsonify({"success": True, "schedule": schedule.to_dict()}), 200

    @app.route("/api/schedules/<schedule_id>", methods=["GET"])
    def get_schedule(schedule_id: str):
        return jsonify({"schedule": scheduler.get_schedule(schedule_id).to_dict()}), 200

    @app.route("/api/schedules/<schedule_id>", methods=["PUT"])
    def update_schedule(schedule_id: str):
        """発信予約の部分更新 (targets, runAt / date+time, repeat, active)"""
        data = _operator_json([])
        active = data.get("active")
        if active is not None and not isinstance(active, bool):
            raise WebhookValidationError(message="active must be a boolean", error_type="invalid_field")

        has_run_at = any(data.get(key) for key in ("runAt", "date", "time"))
        schedule = scheduler.update_schedule(
            schedule_id,
            targets=parse_targets(data["targets"]) if "targets" in data else None,
            run_at=parse_run_at(data) if has_run_at else None,
            repeat=parse_repeat(data["repeat"]) if "repeat" in data else None,
            active=active
        )
        return jsonify({"success": True, "schedule": schedule.to_dict()}), 200

    @app.route("/api/schedules/<schedule_id>", methods=["DELETE"])
    def delete_schedule(schedule_id: str):
        scheduler.delete_schedule(schedule_id)
        return jsonify({"success": True}), 200

    @app.route("/api/schedules/<schedule_id>/trigger", methods=["POST"])
    def trigger_schedule(schedule_id: str):
        """発信予約を今すぐ実行 (次回の日時は変わらない)"""
        schedule = scheduler.trigger(schedule_id)
        return jsonify({
            "success": True,
            "results": schedule.last_results,
            "schedule": schedule.to_dict()
        }), 200

    @app.route("/api/messages", methods=["POST"])
    def send_message():
        """
        SMS 送信エンドポイント

        Request Body (JSON):
            - to: 送信先電話番号 (必須)
            - body: 本文 (必須)
        """
        data = _operator_json(["to", "body"])
        message = message_service.send_message(str(data["to"]).strip(), str(data["body"]))
        return jsonify({
            "success": True,
            "messageId": message.id,
            "message": message.to_dict()
        }), 200

    @app.route("/api/video/token", methods=["POST"])
    def issue_video_token():
        """
        ビデオルームのアクセストークンを発行

        Request Body (JSON):
            - roomName: ルーム名 (必須)
            - identity: 参加者 ID (省略時はオペレーター ID)
        """
        data = _operator_json(["roomName"])
        identity = str(data.get("identity") or config.operator_identity)
        room_name = str(data["roomName"])
        token = provider.issue_media_access_token(identity, room_name)
        logger.info("video_token_issued", identity=identity, room_name=room_name)
        return jsonify({"token": token, "identity": identity, "roomName": room_name}), 200

    # ==========================================================================
    # プロバイダー Webhook (Provider Webhooks)
    # ==========================================================================

    @app.route("/webhooks/call-status", methods=["POST"])
    def call_status_webhook():
        webhook_handler.handle_call_status(_request_data())
        return jsonify({"status": "ok"}), 200

    @app.route("/webhooks/recording-status", methods=["POST"])
    def recording_status_webhook():
        webhook_handler.handle_recording_status(_request_data())
        return jsonify({"status": "ok"}), 200

    @app.route("/webhooks/sms/incoming", methods=["POST"])
    def sms_incoming_webhook():
        webhook_handler.handle_incoming_message(_request_data())
        return Response(twiml_builder.build_empty_response(), status=200, mimetype="text/xml")

    @app.route("/webhooks/sms/status", methods=["POST"])
    def sms_status_webhook():
        webhook_handler.handle_message_status(_request_data())
        return jsonify({"status": "ok"}), 200

    @app.route("/webhooks/voice/incoming", methods=["GET", "POST"])
    def voice_incoming_webhook():
        twiml = webhook_handler.handle_incoming_call(_request_data())
        return Response(twiml, status=200, mimetype="text/xml")

    @app.route("/webhooks/voice/outbound", methods=["GET", "POST"])
    def voice_outbound_webhook():
        twiml = webhook_handler.handle_outbound_answer(_request_data())
        return Response(twiml, status=200, mimetype="text/xml")

    # ==========================================================================
    # プッシュチャネル (Push Channel)
    # ==========================================================================

    sock = Sock(app)

    @sock.route("/ws")
    def push_channel(ws):
        serve_push_channel(ws, registry, dispatcher, client_handler)

    logger.info(
        "application_ready",
        endpoints=[
            "/health", "/api/calls", "/api/history", "/api/schedules", "/api/messages", "/api/video/token",
            "/webhooks/call-status", "/webhooks/recording-status", "/webhooks/sms/incoming",
            "/webhooks/sms/status", "/webhooks/voice/incoming", "/webhooks/voice/outbound", "/ws"
        ]
    )

    return app
