"""
ローカル履歴キャッシュ - 上限付き・新しい順・永続化
メモリ更新を先に行い、その後に永続化する（保存失敗でもロールバックしない）
"""

import logging
from typing import Iterable, List, Optional, Tuple

from ...core.models import AnalysisType, HistoryItem
from .state_storage import PersistedState

logger = logging.getLogger(__name__)

DEFAULT_CACHE_CAP = 49


class LocalCache:
    """ローカル履歴キャッシュ"""

    SECTION = 'historyItems'

    def __init__(self, state: PersistedState, cap: int = DEFAULT_CACHE_CAP):
        if cap < 1:
            raise ValueError("cache cap must be at least 1")
        self.state = state
        self.cap = cap
        self._items: List[HistoryItem] = []
        self.generation = 0

    def restore(self):
        """ロード済みレコードから復元"""
        items = []
        seen = set()
        for raw in self.state.get(self.SECTION, []):
            try:
                item = HistoryItem.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable cached history item: {e}")
                continue
            if item.id not in seen:
                seen.add(item.id)
                items.append(item)
        items.sort(key=lambda item: item.timestamp, reverse=True)
        self._items = items[:self.cap]
        logger.debug(f"Restored {len(self._items)} cached history items")

    @property
    def last_persist_error(self):
        return self.state.last_error

    async def add(self, item: HistoryItem) -> bool:
        """先頭に追加。上限を超えた古いアイテムは削除。戻り値は永続化の成否"""
        self._items = [item] + [existing for existing in self._items if existing.id != item.id]
        if len(self._items) > self.cap:
            dropped = self._items[self.cap:]
            self._items = self._items[:self.cap]
            logger.debug(f"Evicted {len(dropped)} oldest history item(s)")
        return await self._persist()

    async def remove(self, item_id: str) -> bool:
        """IDで削除（存在しなければ何もしない）"""
        remaining = [item for item in self._items if item.id != item_id]
        if len(remaining) == len(self._items):
            return True
        self._items = remaining
        return await self._persist()

    async def clear(self) -> bool:
        """全削除"""
        self._items = []
        self.generation += 1
        return await self._persist()

    def list(self, limit: Optional[int] = None) -> List[HistoryItem]:
        """新しい順に最大limit件"""
        if limit is None:
            return list(self._items)
        return self._items[:max(limit, 0)]

    def get(self, item_id: str) -> Optional[HistoryItem]:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def filter(self,
               type: Optional[AnalysisType] = None,
               search: Optional[str] = None,
               date_range: Optional[Tuple[int, int]] = None) -> List[HistoryItem]:
        """タイプ・入力テキスト・期間で絞り込み"""
        items = self._items
        if type is not None:
            items = [item for item in items if item.type == type]
        if search:
            search_lower = search.lower()
            items = [item for item in items if search_lower in item.input.lower()]
        if date_range:
            start, end = date_range
            items = [item for item in items if start <= item.timestamp <= end]
        return list(items)

    async def replace_all(self, items: Iterable[HistoryItem]) -> bool:
        """同期結果で内容を置き換え（重複除去・新しい順・上限適用）"""
        self.update_in_memory(items)
        return await self._persist()

    def update_in_memory(self, items: Iterable[HistoryItem]):
        unique = {}
        for item in items:
            current = unique.get(item.id)
            if current is None or item.timestamp > current.timestamp:
                unique[item.id] = item
        ordered = sorted(unique.values(), key=lambda item: (item.timestamp, item.id), reverse=True)
        self._items = ordered[:self.cap]
        self.state.update({self.SECTION: [item.to_dict() for item in self._items]})

    async def _persist(self) -> bool:
        return await self.state.commit({self.SECTION: [item.to_dict() for item in self._items]})

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return any(item.id == item_id for item in self._items)
