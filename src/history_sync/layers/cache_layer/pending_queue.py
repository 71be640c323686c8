"""
アップロード待機キュー - リモートへの書き込みに失敗したアイテムを保持
取り出しはpeek-then-ack方式（ack前のクラッシュでも失われない）
"""

import logging
from typing import Collection, Dict, Iterable, List, Optional

from ...core.models import HistoryItem
from .state_storage import PersistedState

logger = logging.getLogger(__name__)


class PendingOpQueue:
    """FIFO待機キュー（IDごとに最新版のみ保持）"""

    SECTION = 'pendingQueue'

    def __init__(self, state: PersistedState):
        self.state = state
        self._entries: List[HistoryItem] = []
        self._attempts: Dict[str, int] = {}

    def restore(self):
        """ロード済みレコードから復元"""
        entries = []
        self._attempts = {}
        for raw in self.state.get(self.SECTION, []):
            try:
                item = HistoryItem.from_dict(raw)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable pending entry: {e}")
                continue
            entries = [entry for entry in entries if entry.id != item.id]
            entries.append(item)
            self._attempts[item.id] = int(raw.get('attempts', 0))
        self._entries = entries
        if entries:
            logger.info(f"Restored {len(entries)} pending upload(s)")

    async def enqueue(self, item: HistoryItem) -> bool:
        """追加。同じIDが既にあれば位置を保ったまま置き換え"""
        self._put(item)
        return await self._persist()

    async def enqueue_all(self, items: Iterable[HistoryItem]) -> bool:
        """複数件をまとめて追加し1回で保存"""
        for item in items:
            self._put(item)
        return await self._persist()

    def _put(self, item: HistoryItem):
        for index, entry in enumerate(self._entries):
            if entry.id == item.id:
                self._entries[index] = item
                return
        self._entries.append(item)
        self._attempts.setdefault(item.id, 0)

    def drain_one(self, skip: Collection[str] = ()) -> Optional[HistoryItem]:
        """最も古いエントリを返す（ackされるまで削除しない）

        skipに含まれるIDは読み飛ばす（同じパス内で試行済みのもの等）。
        """
        return next((entry for entry in self._entries if entry.id not in skip), None)

    async def ack(self, item_id: str) -> bool:
        """リモート受理後に削除（未登録IDは何もしない）"""
        remaining = [entry for entry in self._entries if entry.id != item_id]
        if len(remaining) == len(self._entries):
            return True
        self._entries = remaining
        self._attempts.pop(item_id, None)
        return await self._persist()

    def ack_in_memory(self, item_ids: Iterable[str]):
        """メモリ上でのみ削除（保存は呼び出し側の一括コミットで行う）"""
        removed = set(item_ids)
        if not removed:
            return
        self._entries = [entry for entry in self._entries if entry.id not in removed]
        for item_id in removed:
            self._attempts.pop(item_id, None)

    async def defer(self, item_id: str) -> bool:
        """拒否されたエントリを末尾へ移動し試行回数を加算"""
        for index, entry in enumerate(self._entries):
            if entry.id == item_id:
                self._entries.append(self._entries.pop(index))
                self._attempts[item_id] = self._attempts.get(item_id, 0) + 1
                return await self._persist()
        return True

    def attempts(self, item_id: str) -> int:
        return self._attempts.get(item_id, 0)

    def size(self) -> int:
        return len(self._entries)

    def list(self) -> List[HistoryItem]:
        return list(self._entries)

    def __contains__(self, item_id: object) -> bool:
        return any(entry.id == item_id for entry in self._entries)

    async def clear(self) -> bool:
        """全削除（ユーザーの「すべてクリア」操作のみ）"""
        if self._entries:
            logger.warning(f"Clearing {len(self._entries)} pending upload(s) on user request")
        self._entries = []
        self._attempts = {}
        return await self._persist()

    def serialize(self) -> List[Dict]:
        return [dict(entry.to_dict(), attempts=self._attempts.get(entry.id, 0))
                for entry in self._entries]

    def update_in_memory(self):
        self.state.update({self.SECTION: self.serialize()})

    async def _persist(self) -> bool:
        return await self.state.commit({self.SECTION: self.serialize()})
