"""
テスト共通フィクスチャ (Shared Test Fixtures)

手動で進める時計、送信フレームを記録するフェイクソケット、
シミュレーションプロバイダーを使った各コンポーネントを提供します。
"""

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from academy_calls.call_store import CallRecordStore
from academy_calls.channels import PushChannelRegistry
from academy_calls.config import Config
from academy_calls.dispatcher import BroadcastDispatcher
from academy_calls.lifecycle import CallLifecycleController
from academy_calls.storage import SQLiteStorage
from academy_calls.telephony import SimulatedProvider


class ManualClock:
    """テスト用の時計 (advance で進める)"""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeSocket:
    """
    送信フレームを記録するフェイク WebSocket

    フレームは送信スレッドから書き込まれるため、sent / closed を読む前に
    registries に登録されたレジストリの送信キューを flush します。
    """

    registries = []

    def __init__(self, fail=False):
        self._sent = []
        self._closed = False
        self.fail = fail

    @classmethod
    def settle(cls):
        for registry in cls.registries:
            registry.flush(timeout=2.0)

    def send(self, frame):
        if self.fail:
            raise ConnectionError("socket closed")
        self._sent.append(frame)

    def close(self):
        self._closed = True

    @property
    def sent(self):
        self.settle()
        return self._sent

    @property
    def closed(self):
        self.settle()
        return self._closed

    @property
    def messages(self):
        return [json.loads(frame) for frame in self.sent]

    def of_type(self, message_type):
        return [m for m in self.messages if m["type"] == message_type]


class BlockingSocket(FakeSocket):
    """release() されるまで send が戻らないソケット"""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self._gate = threading.Event()

    def send(self, frame):
        self.entered.set()
        self._gate.wait(timeout=5.0)
        super().send(frame)

    def release(self):
        self._gate.set()


@pytest.fixture(autouse=True)
def _settled_registries():
    yield
    FakeSocket.registries.clear()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config(tmp_path):
    """テスト用の設定 (シミュレーションモード)"""
    return Config(
        twilio_account_sid="ACtest",
        twilio_auth_token="test_token",
        twilio_phone_number="+15550000000",
        webhook_base_url="https://example.com",
        simulate_provider=True,
        database_path=str(tmp_path / "test.db"),
        log_level="DEBUG"
    )


@pytest.fixture
def storage(tmp_path):
    return SQLiteStorage(str(tmp_path / "store.db"))


@pytest.fixture
def provider():
    return SimulatedProvider()


@pytest.fixture
def store(clock):
    return CallRecordStore(clock)


@pytest.fixture
def registry(clock):
    registry = PushChannelRegistry(max_connections=1000, clock=clock)
    FakeSocket.registries.append(registry)
    return registry


@pytest.fixture
def dispatcher(registry):
    return BroadcastDispatcher(registry)


@pytest.fixture
def controller(store, dispatcher, provider, config, storage, clock):
    return CallLifecycleController(store, dispatcher, provider, config, storage, clock)


@pytest.fixture
def observer(registry):
    """登録済みのオブザーバー (ソケット, ハンドル)"""
    socket = FakeSocket()
    handle = registry.register(socket)
    return socket, handle
