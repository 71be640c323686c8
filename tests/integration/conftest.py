"""
テスト共通フィクスチャ - インメモリストレージとフェイクリモート
"""

import asyncio
import os
import sys
from typing import Dict, List, Optional, Set

import pytest

# テスト対象モジュールのパスを追加
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from history_sync.core.exceptions import AuthenticationError, RemoteRejectedError, RemoteUnavailableError
from history_sync.core.models import HistoryItem, HistoryPage, HistoryQuery
from history_sync.layers.cache_layer.state_storage import PersistedState, StateStorage, storage_key_for
from history_sync.layers.remote_layer.error_handler import ErrorHandler
from history_sync.layers.remote_layer.remote_client import HistoryRemote
from history_sync.layers.sync_layer.sync_engine import SyncEngine
from history_sync.utils import enhanced_logger


class InMemoryStateStorage(StateStorage):
    """テスト用インメモリストレージ"""

    def __init__(self):
        self.records: Dict[str, str] = {}
        self.saves = 0

    async def load(self, storage_key: str) -> Optional[str]:
        return self.records.get(storage_key)

    async def save(self, storage_key: str, payload: str) -> None:
        self.saves += 1
        self.records[storage_key] = payload

    async def delete(self, storage_key: str) -> None:
        self.records.pop(storage_key, None)


class FakeRemote(HistoryRemote):
    """テスト用リモート履歴ストア（IDで冪等）"""

    def __init__(self):
        self.items: Dict[str, HistoryItem] = {}
        self.online = True
        self.authenticated = True
        self.reject_upload_ids: Set[str] = set()
        self.reject_delete_ids: Set[str] = set()
        self.unavailable_upload_ids: Set[str] = set()
        self.unauthorized_upload_ids: Set[str] = set()
        self.calls: List[str] = []
        self.uploads: List[str] = []
        self.fetch_gate: Optional[asyncio.Event] = None
        self.page_gate: Optional[asyncio.Event] = None

    def seed(self, *items: HistoryItem):
        for item in items:
            self.items[item.id] = item

    def _check(self, operation: str):
        self.calls.append(operation)
        if not self.authenticated:
            raise AuthenticationError("session expired", 401)
        if not self.online:
            raise RemoteUnavailableError("remote unreachable")

    def _ordered(self) -> List[HistoryItem]:
        return sorted(self.items.values(), key=lambda item: (item.timestamp, item.id), reverse=True)

    async def fetch_recent(self, query: HistoryQuery) -> HistoryPage:
        if self.page_gate is not None:
            await self.page_gate.wait()
        self._check('fetch_recent')
        ordered = self._ordered()
        if query.type is not None:
            ordered = [item for item in ordered if item.type == query.type]
        page = ordered[query.offset:query.offset + query.limit]
        return HistoryPage(items=page, total=len(ordered),
                           has_more=query.offset + len(page) < len(ordered))

    async def fetch_since(self, timestamp: int) -> List[HistoryItem]:
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        self._check('fetch_since')
        return [item for item in self._ordered() if item.timestamp > timestamp]

    async def upload_item(self, item: HistoryItem) -> None:
        self._check('upload_item')
        if item.id in self.unauthorized_upload_ids:
            raise AuthenticationError("session expired", 401)
        if item.id in self.unavailable_upload_ids:
            raise RemoteUnavailableError(f"upload of {item.id} timed out")
        if item.id in self.reject_upload_ids:
            raise RemoteRejectedError(f"invalid item {item.id}", 400)
        self.uploads.append(item.id)
        self.items.setdefault(item.id, item)

    async def remove_item(self, item_id: str) -> None:
        self._check('remove_item')
        if item_id in self.reject_delete_ids:
            raise RemoteRejectedError(f"cannot delete {item_id}", 422)
        self.items.pop(item_id, None)


async def no_sleep(_delay: float):
    return None


def make_item(item_id: str, input: str = "cat", timestamp: int = 100,
              type: str = "word", result=None) -> HistoryItem:
    return HistoryItem(id=item_id, type=type, input=input, result=result, timestamp=timestamp)


@pytest.fixture(autouse=True)
def reset_global_logger(monkeypatch):
    """テストごとにグローバルロガーを破棄（閉じた捕捉ストリームの再利用を防ぐ）"""
    monkeypatch.setattr(enhanced_logger, "_global_logger", None)


@pytest.fixture
def memory_storage():
    return InMemoryStateStorage()


@pytest.fixture
def state(memory_storage):
    return PersistedState(memory_storage, storage_key_for("user-1"))


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def item_factory():
    return make_item


@pytest.fixture
def engine_factory(state, fake_remote):
    """同じ永続レコードを共有するエンジンを生成"""
    async def factory(**config) -> SyncEngine:
        engine = SyncEngine(
            state=state,
            remote=fake_remote,
            error_handler=ErrorHandler({'timeout_seconds': 5.0}, sleep=no_sleep),
            config=config,
        )
        await engine.load()
        return engine
    return factory


@pytest.fixture
async def engine(engine_factory):
    return await engine_factory(page_limit=2)
