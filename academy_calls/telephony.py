"""
テレフォニープロバイダーモジュール (Telephony Provider Module)

外部の通話・SMS・ビデオプロバイダーへの操作を抽象化します。
本番用の Twilio 実装 (REST API) と、認証情報なしで動作する
オフライン用のシミュレーション実装を提供します。
"""

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
import structlog
from twilio.jwt.access_token import AccessToken
from twilio.jwt.access_token.grants import VideoGrant

from .config import Config, ConfigurationError


class ProviderError(Exception):
    """
    プロバイダー API エラー

    外部の通話制御操作が失敗した場合に発生します。
    オペレーターによる再試行は可能ですが、自動再試行は行いません。

    Attributes:
        message: エラーメッセージ
        code: プロバイダーのエラーコード
        status_code: HTTP ステータスコード (通信失敗時は None)
    """

    def __init__(self, message: str, code: Optional[Any] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


@dataclass
class CallStatusSnapshot:
    """プロバイダーが報告する通話状態"""
    status: str
    duration_seconds: Optional[int] = None


@dataclass
class RecordingInfo:
    """プロバイダー上の録音情報"""
    recording_id: str
    url: str
    duration_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordingId": self.recording_id,
            "url": self.url,
            "durationSeconds": self.duration_seconds,
        }


class TelephonyProvider(ABC):
    """
    テレフォニープロバイダーの抽象基底クラス

    通話の発信・更新・状態取得、SMS 送信、録音一覧、
    ビデオ用アクセストークン発行のインターフェースを定義します。
    """

    name = "abstract"

    @abstractmethod
    def place_call(
        self,
        to: str,
        from_: str,
        callback_url: str,
        options: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        発信

        Returns:
            プロバイダーが割り当てた通話 ID

        Raises:
            ProviderError: 発信に失敗した場合（タイムアウトを含む）
        """
        pass

    @abstractmethod
    def update_call(self, call_id: str, status: str = "completed") -> None:
        """
        通話を更新 (通常は切断)

        Raises:
            ProviderError: 更新に失敗した場合
        """
        pass

    @abstractmethod
    def fetch_call_status(self, call_id: str) -> CallStatusSnapshot:
        """
        通話の現在の状態を取得

        Raises:
            ProviderError: 取得に失敗した場合
        """
        pass

    @abstractmethod
    def send_message(self, to: str, from_: str, body: str, status_callback_url: str) -> str:
        """
        SMS を送信

        Returns:
            メッセージ ID

        Raises:
            ProviderError: 送信に失敗した場合
        """
        pass

    @abstractmethod
    def list_recordings(self, call_id: str) -> List[RecordingInfo]:
        """
        通話の録音一覧を取得

        Raises:
            ProviderError: 取得に失敗した場合
        """
        pass

    @abstractmethod
    def issue_media_access_token(self, identity: str, room_name: str) -> str:
        """
        ビデオルーム参加用のアクセストークンを発行

        Raises:
            ConfigurationError: ビデオ用の認証情報が設定されていない場合
        """
        pass


class TwilioProvider(TelephonyProvider):
    """
    Twilio REST API 実装

    requests で Twilio REST API (2010-04-01) を直接呼び出します。
    通信エラー、タイムアウト、HTTP 4xx/5xx はすべて ProviderError に変換します。
    """

    name = "twilio"
    API_BASE_URL = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: int = 15
    ):
        """
        TwilioProviderを初期化

        Args:
            account_sid: Twilio アカウント SID
            auth_token: Twilio 認証トークン
            api_key: ビデオトークン用 API キー（オプション）
            api_secret: ビデオトークン用 API シークレット（オプション）
            timeout: API 呼び出しのタイムアウト（秒）
        """
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout
        self.logger = structlog.get_logger(__name__)

    @property
    def _account_url(self) -> str:
        return f"{self.API_BASE_URL}/Accounts/{self.account_sid}"

    def _request(self, method: str, path: str, data: Any = None) -> Dict[str, Any]:
        url = f"{self._account_url}{path}"
        try:
            response = requests.request(
                method,
                url,
                data=data,
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout
            )
        except requests.Timeout as e:
            raise ProviderError(f"Twilio request timed out: {e}", code="timeout") from e
        except requests.RequestException as e:
            raise ProviderError(f"Twilio request failed: {e}", code="transport_error") from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            raise ProviderError(
                body.get("message") or f"Twilio API returned HTTP {response.status_code}",
                code=body.get("code"),
                status_code=response.status_code
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                "Twilio API returned a malformed response",
                code="malformed_response",
                status_code=response.status_code
            ) from e

    def place_call(
        self,
        to: str,
        from_: str,
        callback_url: str,
        options: Optional[Dict[str, Any]] = None
    ) -> str:
        options = options or {}
        data = [
            ("To", to),
            ("From", from_),
            ("Url", options.get("voice_url", "")),
            ("StatusCallback", callback_url),
            ("StatusCallbackMethod", "POST"),
        ]
        for event in ("initiated", "ringing", "answered", "completed"):
            data.append(("StatusCallbackEvent", event))
        if options.get("record"):
            data.append(("Record", "true"))
            if options.get("recording_status_callback"):
                data.append(("RecordingStatusCallback", options["recording_status_callback"]))

        body = self._request("POST", "/Calls.json", data=data)
        call_sid = body.get("sid")
        if not call_sid:
            raise ProviderError("Twilio API response did not include a call sid", code="malformed_response")

        self.logger.info("twilio_call_placed", call_id=call_sid, to=to, status=body.get("status"))
        return call_sid

    def update_call(self, call_id: str, status: str = "completed") -> None:
        self._request("POST", f"/Calls/{call_id}.json", data={"Status": status})
        self.logger.info("twilio_call_updated", call_id=call_id, status=status)

    def fetch_call_status(self, call_id: str) -> CallStatusSnapshot:
        body = self._request("GET", f"/Calls/{call_id}.json")
        duration = body.get("duration")
        return CallStatusSnapshot(
            status=body.get("status", ""),
            duration_seconds=int(duration) if duration not in (None, "") else None
        )

    def send_message(self, to: str, from_: str, body: str, status_callback_url: str) -> str:
        data = {"To": to, "From": from_, "Body": body}
        if status_callback_url:
            data["StatusCallback"] = status_callback_url

        response = self._request("POST", "/Messages.json", data=data)
        message_sid = response.get("sid")
        if not message_sid:
            raise ProviderError("Twilio API response did not include a message sid", code="malformed_response")
        return message_sid

    def list_recordings(self, call_id: str) -> List[RecordingInfo]:
        body = self._request("GET", f"/Calls/{call_id}/Recordings.json")
        recordings = []
        for item in body.get("recordings", []):
            uri = item.get("uri", "")
            media_url = "https://api.twilio.com" + uri.replace(".json", ".mp3") if uri else ""
            duration = item.get("duration")
            recordings.append(RecordingInfo(
                recording_id=item.get("sid", ""),
                url=media_url,
                duration_seconds=int(duration) if duration not in (None, "") else 0
            ))
        return recordings

    def issue_media_access_token(self, identity: str, room_name: str) -> str:
        if not (self.api_key and self.api_secret):
            raise ConfigurationError(
                "ビデオトークンを発行するには TWILIO_API_KEY と TWILIO_API_SECRET が必要です"
            )

        token = AccessToken(self.account_sid, self.api_key, self.api_secret, identity=identity)
        token.add_grant(VideoGrant(room=room_name))
        jwt = token.to_jwt()
        if isinstance(jwt, bytes):
            jwt = jwt.decode("utf-8")
        return jwt


class SimulatedProvider(TelephonyProvider):
    """
    シミュレーションプロバイダー

    認証情報なしでローカル動作させるための実装です。通話 ID は
    SIM- で始まるローカル生成 ID となり、状態はメモリ上に保持します。
    fail_next で次の操作を ProviderError にすることができます。
    """

    name = "simulated"

    def __init__(self):
        self._lock = threading.Lock()
        self.calls: Dict[str, CallStatusSnapshot] = {}
        self.messages: Dict[str, Dict[str, str]] = {}
        self.recordings: Dict[str, List[RecordingInfo]] = {}
        self.updates: List[Dict[str, str]] = []
        self._failures: Dict[str, ProviderError] = {}
        self.logger = structlog.get_logger(__name__)

    def fail_next(self, operation: str, error: Optional[ProviderError] = None) -> None:
        """次の operation 呼び出しを失敗させる"""
        with self._lock:
            self._failures[operation] = error or ProviderError(
                f"Simulated {operation} failure", code="simulated"
            )

    def set_status(self, call_id: str, status: str, duration_seconds: Optional[int] = None) -> None:
        """プロバイダー側の通話状態を変更する（Webhook の取りこぼしを再現する用途）"""
        with self._lock:
            self.calls[call_id] = CallStatusSnapshot(status=status, duration_seconds=duration_seconds)

    def _raise_if_failing(self, operation: str) -> None:
        with self._lock:
            error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    def place_call(
        self,
        to: str,
        from_: str,
        callback_url: str,
        options: Optional[Dict[str, Any]] = None
    ) -> str:
        self._raise_if_failing("place_call")
        call_id = f"SIM-{uuid.uuid4().hex}"
        with self._lock:
            self.calls[call_id] = CallStatusSnapshot(status="queued")
        self.logger.info("simulated_call_placed", call_id=call_id, to=to)
        return call_id

    def update_call(self, call_id: str, status: str = "completed") -> None:
        with self._lock:
            self.updates.append({"call_id": call_id, "status": status})
        self._raise_if_failing("update_call")
        with self._lock:
            snapshot = self.calls.get(call_id)
            if snapshot is None:
                raise ProviderError(f"Unknown call: {call_id}", code=20404, status_code=404)
            snapshot.status = status

    def fetch_call_status(self, call_id: str) -> CallStatusSnapshot:
        self._raise_if_failing("fetch_call_status")
        with self._lock:
            snapshot = self.calls.get(call_id)
            if snapshot is None:
                raise ProviderError(f"Unknown call: {call_id}", code=20404, status_code=404)
            return CallStatusSnapshot(status=snapshot.status, duration_seconds=snapshot.duration_seconds)

    def send_message(self, to: str, from_: str, body: str, status_callback_url: str) -> str:
        self._raise_if_failing("send_message")
        message_id = f"SIMMSG-{uuid.uuid4().hex}"
        with self._lock:
            self.messages[message_id] = {"to": to, "from": from_, "body": body}
        return message_id

    def list_recordings(self, call_id: str) -> List[RecordingInfo]:
        self._raise_if_failing("list_recordings")
        with self._lock:
            return list(self.recordings.get(call_id, []))

    def issue_media_access_token(self, identity: str, room_name: str) -> str:
        self._raise_if_failing("issue_media_access_token")
        return f"simulated.{identity}.{room_name}"


def build_provider(config: Config) -> TelephonyProvider:
    """設定に応じたプロバイダーを生成"""
    if config.simulate_provider:
        return SimulatedProvider()
    return TwilioProvider(
        account_sid=config.twilio_account_sid,
        auth_token=config.twilio_auth_token,
        api_key=config.twilio_api_key,
        api_secret=config.twilio_api_secret,
        timeout=config.provider_timeout
    )
