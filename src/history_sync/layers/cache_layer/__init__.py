"""
キャッシュ層 - ローカル履歴・待機キュー・ユーザー単位の永続レコードを管理
"""

from .state_storage import PersistedState, SQLiteStateStorage, StateStorage, storage_key_for
from .local_cache import LocalCache, DEFAULT_CACHE_CAP
from .pending_queue import PendingOpQueue

__all__ = [
    'PersistedState', 'SQLiteStateStorage', 'StateStorage', 'storage_key_for',
    'LocalCache', 'DEFAULT_CACHE_CAP',
    'PendingOpQueue'
]
