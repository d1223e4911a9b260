"""
設定管理モジュール (Configuration Management Module)

環境変数からアプリケーション設定を読み込み、検証を行います。
"""

from dataclasses import dataclass, field
from typing import Optional
import os


class ConfigurationError(Exception):
    """設定エラー例外クラス"""
    pass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} は整数である必要があります: {raw}") from e


@dataclass
class Config:
    """
    アプリケーション設定

    環境変数から設定を読み込み、必須設定のバリデーションを行います。
    SIMULATE_PROVIDER が有効な場合、Twilio 認証情報は不要になり、
    オフラインのシミュレーションプロバイダーが使用されます。
    """
    # Twilio API認証情報 (シミュレーションモード以外では必須)
    twilio_account_sid: str
    twilio_auth_token: str
    twilio_phone_number: str

    # Webhook URL設定
    webhook_base_url: str

    # ビデオ用 API キー (オプション、未設定の場合ビデオトークン発行は無効)
    twilio_api_key: Optional[str] = None
    twilio_api_secret: Optional[str] = None

    # 通話設定
    operator_identity: str = "academy-operator"
    greeting_message: str = "Assalamu alaikum. This is a call from the academy."
    record_calls: bool = False
    simulate_provider: bool = False
    provider_timeout: int = 15

    # プッシュチャネル / 生存監視設定
    max_observers: int = 1000
    observer_outbox_size: int = 100
    heartbeat_interval: int = 30
    call_gc_interval: int = 300
    terminal_call_retention: int = 600
    max_call_age: int = 7200
    inbound_ring_timeout: int = 45
    ring_check_interval: int = 5

    # 定期発信設定
    schedule_check_interval: int = 30

    # ストレージ設定
    database_path: str = "academy_calls.db"

    # ロギング設定
    log_level: str = "INFO"

    # 派生 Webhook URL (__post_init__ で生成)
    status_callback_url: str = field(default="", init=False)
    recording_status_callback_url: str = field(default="", init=False)
    message_status_callback_url: str = field(default="", init=False)
    outbound_voice_url: str = field(default="", init=False)

    def __post_init__(self) -> None:
        base = self.webhook_base_url.rstrip("/")
        self.status_callback_url = f"{base}/webhooks/call-status"
        self.recording_status_callback_url = f"{base}/webhooks/recording-status"
        self.message_status_callback_url = f"{base}/webhooks/sms/status"
        self.outbound_voice_url = f"{base}/webhooks/voice/outbound"

    @property
    def media_tokens_enabled(self) -> bool:
        """ビデオトークン発行に必要な認証情報が揃っているか"""
        return bool(self.twilio_api_key and self.twilio_api_secret)

    @classmethod
    def from_env(cls) -> 'Config':
        """
        環境変数から設定を読み込む

        必須の環境変数 (SIMULATE_PROVIDER=true の場合は不要):
            - TWILIO_ACCOUNT_SID: Twilio アカウント SID
            - TWILIO_AUTH_TOKEN: Twilio 認証トークン
            - TWILIO_PHONE_NUMBER: 発信元の Twilio 電話番号
            - WEBHOOK_BASE_URL: Webhook のベース URL

        オプションの環境変数:
            - TWILIO_API_KEY / TWILIO_API_SECRET: ビデオトークン用 API キー
            - OPERATOR_IDENTITY: 着信を受けるブラウザクライアントの識別子
            - GREETING_MESSAGE: 発信通話の応答時に再生するメッセージ
            - RECORD_CALLS: 通話を録音するか (デフォルト: false)
            - SIMULATE_PROVIDER: シミュレーションモード (デフォルト: false)
            - PROVIDER_TIMEOUT: プロバイダー API のタイムアウト秒 (デフォルト: 15)
            - MAX_OBSERVERS: 同時接続オブザーバー上限 (デフォルト: 1000)
            - OBSERVER_OUTBOX_SIZE: オブザーバーごとの未送信フレーム上限 (デフォルト: 100)
            - HEARTBEAT_INTERVAL: ハートビート間隔秒 (デフォルト: 30)
            - CALL_GC_INTERVAL: 通話レコード掃除間隔秒 (デフォルト: 300)
            - TERMINAL_CALL_RETENTION: 終了済み通話の保持秒 (デフォルト: 600)
            - MAX_CALL_AGE: 通話レコードの最大保持秒 (デフォルト: 7200)
            - INBOUND_RING_TIMEOUT: 着信の自動拒否までの秒 (デフォルト: 45)
            - RING_CHECK_INTERVAL: 着信タイムアウト確認間隔秒 (デフォルト: 5)
            - SCHEDULE_CHECK_INTERVAL: 定期発信の確認間隔秒 (デフォルト: 30)
            - DATABASE_PATH: SQLite ファイルパス (デフォルト: academy_calls.db)
            - LOG_LEVEL: ログレベル (デフォルト: INFO)

        Returns:
            Config: 設定オブジェクト

        Raises:
            ConfigurationError: 必須設定が欠落している場合
        """
        config = cls(
            twilio_account_sid=os.environ.get("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.environ.get("TWILIO_AUTH_TOKEN", ""),
            twilio_phone_number=os.environ.get("TWILIO_PHONE_NUMBER", ""),
            webhook_base_url=os.environ.get("WEBHOOK_BASE_URL", ""),
            twilio_api_key=os.environ.get("TWILIO_API_KEY") or None,
            twilio_api_secret=os.environ.get("TWILIO_API_SECRET") or None,
            operator_identity=os.environ.get("OPERATOR_IDENTITY", "academy-operator"),
            greeting_message=os.environ.get(
                "GREETING_MESSAGE",
                "Assalamu alaikum. This is a call from the academy."
            ),
            record_calls=_env_bool("RECORD_CALLS"),
            simulate_provider=_env_bool("SIMULATE_PROVIDER"),
            provider_timeout=_env_int("PROVIDER_TIMEOUT", 15),
            max_observers=_env_int("MAX_OBSERVERS", 1000),
            observer_outbox_size=_env_int("OBSERVER_OUTBOX_SIZE", 100),
            heartbeat_interval=_env_int("HEARTBEAT_INTERVAL", 30),
            call_gc_interval=_env_int("CALL_GC_INTERVAL", 300),
            terminal_call_retention=_env_int("TERMINAL_CALL_RETENTION", 600),
            max_call_age=_env_int("MAX_CALL_AGE", 7200),
            inbound_ring_timeout=_env_int("INBOUND_RING_TIMEOUT", 45),
            ring_check_interval=_env_int("RING_CHECK_INTERVAL", 5),
            schedule_check_interval=_env_int("SCHEDULE_CHECK_INTERVAL", 30),
            database_path=os.environ.get("DATABASE_PATH", "academy_calls.db"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

        # バリデーション実行
        config.validate()

        return config

    def validate(self) -> None:
        """
        設定の妥当性を検証

        必須設定が欠落している場合、明確なエラーメッセージで
        ConfigurationError を発生させます。

        Raises:
            ConfigurationError: 必須設定が欠落または無効な場合
        """
        missing_fields = []

        if not self.simulate_provider:
            if not self.twilio_account_sid:
                missing_fields.append("TWILIO_ACCOUNT_SID")
            if not self.twilio_auth_token:
                missing_fields.append("TWILIO_AUTH_TOKEN")
            if not self.twilio_phone_number:
                missing_fields.append("TWILIO_PHONE_NUMBER")
            if not self.webhook_base_url:
                missing_fields.append("WEBHOOK_BASE_URL")

        if missing_fields:
            error_message = (
                f"必須の設定が欠落しています。以下の環境変数を設定してください: "
                f"{', '.join(missing_fields)}"
            )
            raise ConfigurationError(error_message)

        # 数値設定の妥当性検証
        positive_fields = {
            "PROVIDER_TIMEOUT": self.provider_timeout,
            "MAX_OBSERVERS": self.max_observers,
            "OBSERVER_OUTBOX_SIZE": self.observer_outbox_size,
            "HEARTBEAT_INTERVAL": self.heartbeat_interval,
            "CALL_GC_INTERVAL": self.call_gc_interval,
            "TERMINAL_CALL_RETENTION": self.terminal_call_retention,
            "MAX_CALL_AGE": self.max_call_age,
            "INBOUND_RING_TIMEOUT": self.inbound_ring_timeout,
            "RING_CHECK_INTERVAL": self.ring_check_interval,
            "SCHEDULE_CHECK_INTERVAL": self.schedule_check_interval,
        }
        for name, value in positive_fields.items():
            if value <= 0:
                raise ConfigurationError(
                    f"{name} は正の整数である必要があります: {value}"
                )

        if self.max_call_age < self.terminal_call_retention:
            raise ConfigurationError(
                f"MAX_CALL_AGE は TERMINAL_CALL_RETENTION 以上である必要があります: "
                f"{self.max_call_age} < {self.terminal_call_retention}"
            )

        # ビデオ用 API キーは両方揃っている必要がある
        if bool(self.twilio_api_key) != bool(self.twilio_api_secret):
            raise ConfigurationError(
                "TWILIO_API_KEY と TWILIO_API_SECRET は両方設定する必要があります"
            )

        # ログレベルの検証
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"LOG_LEVEL は {valid_log_levels} のいずれかである必要があります: {self.log_level}"
            )
