"""
履歴ステートストレージ - ユーザー単位の永続レコード管理
SQLiteにユーザーごとのJSONレコード（履歴・待機キュー・カーソル・同期時刻）を保存
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiosqlite

from ...core.exceptions import PersistenceError

logger = logging.getLogger(__name__)

STORAGE_KEY_PREFIX = "analysis_history_v2"


def storage_key_for(user_id: str) -> str:
    """ユーザー単位のストレージキー"""
    return f"{STORAGE_KEY_PREFIX}:{user_id}"


def empty_record() -> Dict[str, Any]:
    """初回利用時の空レコード"""
    return {
        'historyItems': [],
        'lastSyncTimestamp': 0,
        'pendingQueue': [],
        'cursor': {'offset': 0, 'limit': 20, 'total': 0},
        'syncedIds': [],
        'pendingDeletes': [],
    }


class StateStorage(ABC):
    """永続化バックエンドの抽象"""

    @abstractmethod
    async def load(self, storage_key: str) -> Optional[str]:
        """保存済みペイロード（JSON文字列）を返す。無ければNone"""

    @abstractmethod
    async def save(self, storage_key: str, payload: str) -> None:
        """ペイロードを保存。失敗時はPersistenceError"""

    @abstractmethod
    async def delete(self, storage_key: str) -> None:
        """レコード削除。失敗時はPersistenceError"""


class SQLiteStateStorage(StateStorage):
    """SQLiteによるステート保存"""

    def __init__(self, database_path: Union[str, Path] = "data/history.db"):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    async def initialize(self) -> bool:
        """データベース初期化"""
        try:
            await self._create_tables()
            logger.info(f"History state storage initialized: {self.database_path}")
            return True

        except aiosqlite.Error as e:
            logger.error(f"Failed to initialize history state storage: {e}")
            return False

    async def _create_tables(self):
        """テーブル作成"""
        state_table_sql = """
        CREATE TABLE IF NOT EXISTS history_state (
            storage_key TEXT PRIMARY KEY,
            payload TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """

        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(state_table_sql)
            await db.commit()

    async def load(self, storage_key: str) -> Optional[str]:
        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT payload FROM history_state WHERE storage_key = ?", (storage_key,))
                row = await cursor.fetchone()
                return row['payload'] if row else None

        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to load state {storage_key}: {e}",
                                   {'storage_key': storage_key}) from e

    async def save(self, storage_key: str, payload: str) -> None:
        sql = """
        INSERT INTO history_state (storage_key, payload, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(storage_key) DO UPDATE SET
            payload = excluded.payload,
            updated_at = excluded.updated_at
        """
        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(sql, (storage_key, payload, datetime.now().isoformat()))
                await db.commit()

        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to save state {storage_key}: {e}",
                                   {'storage_key': storage_key}) from e

    async def delete(self, storage_key: str) -> None:
        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute("DELETE FROM history_state WHERE storage_key = ?", (storage_key,))
                await db.commit()

        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to delete state {storage_key}: {e}",
                                   {'storage_key': storage_key}) from e

    async def list_keys(self) -> List[str]:
        """保存済みキー一覧（診断用）"""
        try:
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute("SELECT storage_key FROM history_state ORDER BY storage_key")
                rows = await cursor.fetchall()
                return [row[0] for row in rows]

        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to list state keys: {e}") from e


class PersistedState:
    """ユーザー単位の永続レコード

    キャッシュ・待機キュー・同期エンジンが同じレコードの各セクションを共有する。
    書き込みはロックで直列化し、常に最新のメモリ上レコードを書き出す。
    """

    def __init__(self, storage: StateStorage, storage_key: str):
        self.storage = storage
        self.storage_key = storage_key
        self._record: Dict[str, Any] = empty_record()
        self._write_lock = asyncio.Lock()
        self.last_error: Optional[PersistenceError] = None

    async def load(self) -> Dict[str, Any]:
        """レコード読み込み（壊れている場合は空レコードで開始）"""
        try:
            payload = await self.storage.load(self.storage_key)
        except PersistenceError as e:
            logger.error(f"Failed to load persisted history, starting empty: {e}")
            self.last_error = e
            return self._record

        if payload:
            try:
                data = json.loads(payload)
                if not isinstance(data, dict):
                    raise ValueError(f"unexpected record type {type(data).__name__}")
                record = empty_record()
                record.update(data)
                self._record = record
            except ValueError as e:
                logger.error(f"Corrupted history record {self.storage_key}, starting empty: {e}")

        return self._record

    def get(self, section: str, default: Any = None) -> Any:
        return self._record.get(section, default)

    def update(self, sections: Dict[str, Any]):
        """メモリ上のレコードのみ更新"""
        self._record.update(sections)

    async def commit(self, sections: Optional[Dict[str, Any]] = None) -> bool:
        """セクションを更新して保存。失敗はログに残しFalseを返す"""
        if sections:
            self._record.update(sections)

        async with self._write_lock:
            try:
                try:
                    payload = json.dumps(self._record, ensure_ascii=False)
                except (TypeError, ValueError) as e:
                    raise PersistenceError(f"Failed to serialize state {self.storage_key}: {e}") from e
                await self.storage.save(self.storage_key, payload)
                self.last_error = None
                return True

            except PersistenceError as e:
                logger.error(f"History state not persisted (in-memory state kept): {e}")
                self.last_error = e
                return False

    async def erase(self) -> bool:
        """レコード全体を削除（サインアウト時）"""
        self._record = empty_record()
        async with self._write_lock:
            try:
                await self.storage.delete(self.storage_key)
                self.last_error = None
                return True
            except PersistenceError as e:
                logger.error(f"Failed to erase history state: {e}")
                self.last_error = e
                return False
