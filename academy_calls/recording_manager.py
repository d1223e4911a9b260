"""
録音マネージャーモジュール (Recording Manager Module)

録音完了 Webhook で受け取った録音メタデータの保存と参照を担当します。
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .storage import Storage


RECORDINGS_COLLECTION = "recordings"


@dataclass
class RecordingMetadata:
    """
    録音メタデータ

    Attributes:
        id: 録音 ID (プロバイダーの RecordingSid)
        call_id: 通話 ID
        recording_url: 録音ファイル URL
        duration: 録音時間（秒）
        status: ステータス (completed, failed, absent など)
        timestamp: 受信日時
    """
    id: str
    call_id: str
    recording_url: str
    duration: int
    status: str
    timestamp: datetime

    def to_document(self) -> Dict[str, Any]:
        document = asdict(self)
        document["timestamp"] = self.timestamp.isoformat()
        return document

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> 'RecordingMetadata':
        return cls(
            id=document["id"],
            call_id=document["call_id"],
            recording_url=document["recording_url"],
            duration=int(document.get("duration", 0)),
            status=document.get("status", "completed"),
            timestamp=datetime.fromisoformat(document["timestamp"]),
        )


class RecordingManager:
    """
    録音データを管理するクラス

    録音メタデータの保存、取得、一覧表示を担当します。
    Storage レイヤーの recordings コレクションを使用します。
    """

    def __init__(self, storage: Storage):
        """
        RecordingManagerを初期化

        Args:
            storage: データ永続化に使用するStorageインスタンス
        """
        self.storage = storage

    def save_recording(self, metadata: RecordingMetadata) -> None:
        """
        録音メタデータを保存

        Raises:
            StorageError: 保存に失敗した場合
        """
        self.storage.upsert(RECORDINGS_COLLECTION, metadata.id, metadata.to_document())

    def get_recording(self, recording_id: str) -> Optional[RecordingMetadata]:
        """
        録音 ID で録音を取得

        Returns:
            録音メタデータ、見つからない場合はNone
        """
        document = self.storage.get(RECORDINGS_COLLECTION, recording_id)
        if document is None:
            return None
        return RecordingMetadata.from_document(document)

    def list_recordings(self, call_id: Optional[str] = None) -> List[RecordingMetadata]:
        """
        録音一覧を取得

        Args:
            call_id: 指定した場合、その通話の録音のみを返す

        Returns:
            録音メタデータのリスト（新しい順）
        """
        recordings = [
            RecordingMetadata.from_document(document)
            for document in self.storage.list(RECORDINGS_COLLECTION)
        ]
        if call_id is not None:
            recordings = [r for r in recordings if r.call_id == call_id]
        return recordings
