"""
競合解決システム - ローカルとリモートの同一ID履歴を比較
リモート（記録システム）優先。内容が異なる場合は競合として通知する
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ...core.models import HistoryConflict, HistoryItem

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """解決結果"""
    winner: HistoryItem
    conflict: Optional[HistoryConflict] = None
    from_remote: bool = False


def resolve(local: Optional[HistoryItem], remote: Optional[HistoryItem]) -> Resolution:
    """ローカル/リモートの一方または両方から勝者を決める

    - 片方のみ: その側が勝ち、競合なし
    - 両方あり: 常にリモートが勝つ。type/input/resultが異なれば競合を記録
      （タイムスタンプの新旧は問わない）
    """
    if local is None and remote is None:
        raise ValueError("resolve() needs at least one item")
    if remote is None:
        return Resolution(winner=local)
    if local is None:
        return Resolution(winner=remote, from_remote=True)

    if local.id != remote.id:
        raise ValueError(f"Cannot resolve different ids: {local.id} vs {remote.id}")

    if local.same_content(remote):
        return Resolution(winner=remote, from_remote=True)

    return Resolution(winner=remote, conflict=HistoryConflict(local=local, remote=remote),
                      from_remote=True)


def merge_items(*sources: Iterable[HistoryItem]) -> Tuple[List[HistoryItem], List[HistoryConflict]]:
    """複数ソースを重複なしに統合（新しいタイムスタンプ優先、同時刻は先のソース優先）

    破棄側と残った側で内容が異なる場合は競合として返す。
    """
    merged: Dict[str, HistoryItem] = {}
    conflicts: List[HistoryConflict] = []

    for source in sources:
        for item in source:
            current = merged.get(item.id)
            if current is None:
                merged[item.id] = item
                continue
            kept, discarded = (item, current) if item.timestamp > current.timestamp else (current, item)
            if not kept.same_content(discarded):
                conflicts.append(HistoryConflict(local=discarded, remote=kept))
            merged[item.id] = kept

    ordered = sorted(merged.values(), key=lambda item: (item.timestamp, item.id), reverse=True)
    return ordered, conflicts


class ConflictResolver:
    """コレクション単位の競合解決"""

    def __init__(self):
        # 統計情報
        self.items_compared = 0
        self.conflicts_detected = 0
        self.remote_wins = 0
        self.local_only = 0

    def resolve_collections(self,
                            local_items: Iterable[HistoryItem],
                            remote_items: Iterable[HistoryItem]) -> Tuple[Dict[str, Resolution], List[HistoryConflict]]:
        """全IDについてresolve()を適用"""
        local_map = {item.id: item for item in local_items}
        remote_map = {item.id: item for item in remote_items}

        resolutions: Dict[str, Resolution] = {}
        conflicts: List[HistoryConflict] = []

        for item_id in list(local_map) + [i for i in remote_map if i not in local_map]:
            resolution = resolve(local_map.get(item_id), remote_map.get(item_id))
            resolutions[item_id] = resolution
            self.items_compared += 1

            if item_id in remote_map:
                self.remote_wins += 1
            else:
                self.local_only += 1

            if resolution.conflict:
                conflicts.append(resolution.conflict)
                self.conflicts_detected += 1
                logger.info(f"Conflict detected, remote wins: {resolution.conflict}")

        return resolutions, conflicts

    def get_statistics(self) -> Dict[str, int]:
        """競合解決統計情報"""
        return {
            "items_compared": self.items_compared,
            "conflicts_detected": self.conflicts_detected,
            "remote_wins": self.remote_wins,
            "local_only": self.local_only,
        }
