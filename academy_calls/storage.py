"""
ストレージモジュール (Storage Module)

通話履歴・録音メタデータ・SMS などのドキュメントを永続化する
プラガブルなレコードストアを提供します。
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class Storage(ABC):
    """
    ストレージの抽象基底クラス

    コレクション名とキーでドキュメントを取得 / 追加・更新 / 削除する
    最小限のインターフェースを定義します。
    具体的な実装（SQLite、PostgreSQL等）はこのクラスを継承して実装します。
    """

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """
        ドキュメントを取得

        Args:
            collection: コレクション名 (例: call_history)
            key: ドキュメントキー

        Returns:
            ドキュメント、見つからない場合はNone

        Raises:
            StorageError: 取得に失敗した場合
        """
        pass

    @abstractmethod
    def upsert(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        """
        ドキュメントを追加または置換

        Args:
            collection: コレクション名
            key: ドキュメントキー
            document: JSON 互換の辞書

        Raises:
            StorageError: 保存に失敗した場合
        """
        pass

    @abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        """
        ドキュメントを削除

        Returns:
            削除した場合はTrue、見つからない場合はFalse

        Raises:
            StorageError: 削除に失敗した場合
        """
        pass

    @abstractmethod
    def list(self, collection: str) -> List[Dict[str, Any]]:
        """
        コレクション内のドキュメントを更新日時の新しい順に取得

        Raises:
            StorageError: 取得に失敗した場合
        """
        pass


import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator


class StorageError(Exception):
    """
    ストレージエラー

    データベース操作中に発生したエラーを表す例外クラスです。
    """
    pass


class SQLiteStorage(Storage):
    """
    SQLite実装

    ドキュメントを JSON 文字列として 1 テーブルに保存する実装です。
    開発環境やシンプルなデプロイメントに適しています。
    """

    def __init__(self, db_path: str = "academy_calls.db"):
        """
        SQLiteStorageを初期化

        Args:
            db_path: SQLiteデータベースファイルのパス
        """
        self.db_path = db_path
        self._create_tables()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        データベース接続のコンテキストマネージャー

        Yields:
            SQLite接続オブジェクト

        Raises:
            StorageError: 接続に失敗した場合
        """
        conn = None
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database connection error: {e}") from e
        finally:
            if conn:
                conn.close()

    def _create_tables(self) -> None:
        """
        documents テーブルが存在しない場合に作成

        Raises:
            StorageError: テーブル作成に失敗した場合
        """
        create_documents_table = """
        CREATE TABLE IF NOT EXISTS documents (
            collection VARCHAR(64) NOT NULL,
            doc_key VARCHAR(128) NOT NULL,
            data TEXT NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            PRIMARY KEY (collection, doc_key)
        )
        """

        create_updated_at_index = """
        CREATE INDEX IF NOT EXISTS idx_documents_updated_at
        ON documents(collection, updated_at)
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(create_documents_table)
                cursor.execute(create_updated_at_index)
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create tables: {e}") from e

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        sql = "SELECT data FROM documents WHERE collection = ? AND doc_key = ?"

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (collection, key))
                row = cursor.fetchone()

                if row is None:
                    return None

                return json.loads(row["data"])
        except sqlite3.Error as e:
            raise StorageError(f"Failed to get document: {e}") from e

    def upsert(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        sql = """
        INSERT OR REPLACE INTO documents (collection, doc_key, data, updated_at)
        VALUES (?, ?, ?, ?)
        """

        try:
            payload = json.dumps(document, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Document is not JSON serializable: {e}") from e

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (
                    collection,
                    key,
                    payload,
                    datetime.now(timezone.utc).isoformat()
                ))
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save document: {e}") from e

    def delete(self, collection: str, key: str) -> bool:
        sql = "DELETE FROM documents WHERE collection = ? AND doc_key = ?"

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (collection, key))
                conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete document: {e}") from e

    def list(self, collection: str) -> List[Dict[str, Any]]:
        sql = """
        SELECT data FROM documents
        WHERE collection = ?
        ORDER BY updated_at DESC
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (collection,))
                rows = cursor.fetchall()

                return [json.loads(row["data"]) for row in rows]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list documents: {e}") from e
