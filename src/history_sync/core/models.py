"""データモデル定義"""

import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

MAX_INPUT_LENGTH = 10000

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Postgresのtimestamptz（小数部の桁数は可変、"+00"形式のオフセットあり）にも対応
ISO_TIMESTAMP = re.compile(
    r'^(\d{4})-(\d{2})-(\d{2})[T ](\d{2}):(\d{2}):(\d{2})'
    r'(?:\.(\d+))?'
    r'(Z|[+-]\d{2}(?::?\d{2})?)?$'
)


def now_ms() -> int:
    """現在時刻（エポックミリ秒）"""
    return int(time.time() * 1000)


def ms_to_iso(timestamp_ms: int) -> str:
    """エポックミリ秒をISO 8601文字列（UTC、ミリ秒精度）に変換"""
    moment = EPOCH + timedelta(milliseconds=timestamp_ms)
    return moment.strftime('%Y-%m-%dT%H:%M:%S') + f".{moment.microsecond // 1000:03d}Z"


def iso_to_ms(value: str) -> int:
    """ISO 8601文字列をエポックミリ秒に変換（整数演算のみ）

    タイムゾーン指定がない場合はUTCとみなす。ミリ秒未満は切り捨て。
    """
    match = ISO_TIMESTAMP.match(value.strip())
    if not match:
        raise ValueError(f"Invalid ISO timestamp: {value!r}")

    year, month, day, hour, minute, second = (int(part) for part in match.group(1, 2, 3, 4, 5, 6))
    fraction = match.group(7) or ''
    offset = match.group(8) or 'Z'

    moment = datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
    seconds = (moment - EPOCH) // timedelta(seconds=1)
    if offset != 'Z':
        sign = -1 if offset[0] == '-' else 1
        digits = offset[1:].replace(':', '')
        offset_minutes = int(digits[:2]) * 60 + int(digits[2:4] or 0)
        seconds -= sign * offset_minutes * 60

    return seconds * 1000 + int((fraction + '000')[:3])


def new_item_id() -> str:
    """クライアント側で生成するID"""
    return str(uuid.uuid4())


class AnalysisType(Enum):
    """解析タイプ"""
    WORD = "word"
    SENTENCE = "sentence"
    PARAGRAPH = "paragraph"


@dataclass
class HistoryItem:
    """解析履歴アイテム"""
    id: str
    type: AnalysisType
    input: str
    result: Any = None
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self):
        if not isinstance(self.type, AnalysisType):
            self.type = AnalysisType(self.type)
        if not self.id:
            raise ValueError("HistoryItem requires a non-empty id")
        if len(self.input) > MAX_INPUT_LENGTH:
            raise ValueError(
                f"Input for {self.id} exceeds {MAX_INPUT_LENGTH} characters ({len(self.input)})"
            )
        self.timestamp = int(self.timestamp)

    @classmethod
    def create(cls, type: AnalysisType, input: str, result: Any = None) -> "HistoryItem":
        """ローカル解析結果から新規アイテムを作成"""
        return cls(id=new_item_id(), type=type, input=input, result=result)

    def same_content(self, other: "HistoryItem") -> bool:
        """タイムスタンプ以外の内容が一致するか"""
        return (self.type == other.type and
                self.input == other.input and
                self.result == other.result)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'input': self.input,
            'result': self.result,
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryItem":
        return cls(
            id=str(data['id']),
            type=AnalysisType(data['type']),
            input=data.get('input') or '',
            result=data.get('result'),
            timestamp=int(data['timestamp']),
        )


@dataclass
class HistoryConflict:
    """同一IDでローカルとリモートの内容が異なる"""
    local: HistoryItem
    remote: HistoryItem

    @property
    def item_id(self) -> str:
        return self.remote.id

    def to_dict(self) -> Dict[str, Any]:
        return {'local': self.local.to_dict(), 'remote': self.remote.to_dict()}

    def __str__(self) -> str:
        return (f"{self.item_id}: local='{self.local.input[:40]}' ({self.local.timestamp}) "
                f"vs remote='{self.remote.input[:40]}' ({self.remote.timestamp})")


@dataclass
class SyncReport:
    """同期パスの結果"""
    uploaded: int = 0
    downloaded: int = 0
    conflicts: List[HistoryConflict] = field(default_factory=list)
    failed: int = 0
    skipped: bool = False

    def summary(self) -> str:
        if self.skipped:
            return "Sync skipped: another pass is in flight"
        return (f"Sync completed: {self.uploaded} uploaded, "
                f"{self.downloaded} downloaded, "
                f"{len(self.conflicts)} conflicts, "
                f"{self.failed} failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'uploaded': self.uploaded,
            'downloaded': self.downloaded,
            'conflicts': [conflict.to_dict() for conflict in self.conflicts],
            'failed': self.failed,
            'skipped': self.skipped,
        }


@dataclass
class HistoryQuery:
    """リモート履歴のページ取得条件"""
    limit: int = 20
    offset: int = 0
    type: Optional[AnalysisType] = None
    search: Optional[str] = None
    date_range: Optional[Tuple[int, int]] = None  # (start_ms, end_ms)
    sort_by: str = "created_at"
    sort_order: str = "desc"

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            'limit': self.limit,
            'offset': self.offset,
            'type': self.type.value if self.type else 'all',
            'sort_by': self.sort_by,
            'sort_order': self.sort_order,
        }
        if self.search:
            payload['search'] = self.search
        if self.date_range:
            start, end = self.date_range
            payload['date_range'] = {'start': ms_to_iso(start), 'end': ms_to_iso(end)}
        return payload


@dataclass
class HistoryPage:
    """ページ取得結果"""
    items: List[HistoryItem]
    total: int
    has_more: bool


@dataclass
class SyncStatusSnapshot:
    """UIバインディング用の状態"""
    is_syncing: bool
    last_sync_error: Optional[str]
    pending_count: int
    has_more: bool
    last_sync_timestamp: int
    cached_items: int
    conflicts: List[HistoryConflict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_syncing': self.is_syncing,
            'last_sync_error': self.last_sync_error,
            'pending_count': self.pending_count,
            'has_more': self.has_more,
            'last_sync_timestamp': self.last_sync_timestamp,
            'cached_items': self.cached_items,
            'conflicts': [conflict.to_dict() for conflict in self.conflicts],
        }
