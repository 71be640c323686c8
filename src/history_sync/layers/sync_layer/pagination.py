"""
ページングカーソル - リモート履歴のoffset/limitウィンドウ
Fresh -> Loading -> {Exhausted | HasMore}（取得結果でのみ遷移）
"""

from enum import Enum
from typing import Any, Dict


class CursorState(Enum):
    """カーソル状態"""
    FRESH = "fresh"
    LOADING = "loading"
    HAS_MORE = "has_more"
    EXHAUSTED = "exhausted"


class PaginationCursor:
    """ページングカーソル"""

    def __init__(self, limit: int = 20):
        if limit < 1:
            raise ValueError("page limit must be at least 1")
        self.limit = limit
        self.offset = 0
        self.total = 0
        self.has_more = True
        self.state = CursorState.FRESH
        self._state_before_load = CursorState.FRESH

    def reset(self):
        """最初のページに戻す（has_moreは楽観的にTrue）"""
        self.offset = 0
        self.total = 0
        self.has_more = True
        self.state = CursorState.FRESH

    def begin(self) -> bool:
        """取得開始。取得中・取得済みの場合はFalse"""
        if self.state in (CursorState.LOADING, CursorState.EXHAUSTED):
            return False
        self._state_before_load = self.state
        self.state = CursorState.LOADING
        return True

    def advance(self, page_size: int, server_has_more: bool, server_total: int):
        """取得成功後に進める"""
        self.offset += page_size
        self.has_more = bool(server_has_more)
        self.total = int(server_total)
        self.state = CursorState.HAS_MORE if self.has_more else CursorState.EXHAUSTED

    def fail(self):
        """取得失敗。offsetは変えず同じページを再試行できる状態に戻す"""
        if self.state == CursorState.LOADING:
            self.state = self._state_before_load

    @property
    def is_loading(self) -> bool:
        return self.state == CursorState.LOADING

    def to_dict(self) -> Dict[str, Any]:
        return {'offset': self.offset, 'limit': self.limit, 'total': self.total}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_limit: int = 20) -> "PaginationCursor":
        cursor = cls(int(data.get('limit') or default_limit))
        cursor.offset = max(int(data.get('offset', 0)), 0)
        cursor.total = max(int(data.get('total', 0)), 0)
        if cursor.offset == 0:
            cursor.state = CursorState.FRESH
            cursor.has_more = True
        else:
            cursor.has_more = cursor.offset < cursor.total
            cursor.state = CursorState.HAS_MORE if cursor.has_more else CursorState.EXHAUSTED
        return cursor

    def __repr__(self) -> str:
        return (f"PaginationCursor(offset={self.offset}, limit={self.limit}, "
                f"total={self.total}, has_more={self.has_more}, state={self.state.value})")
