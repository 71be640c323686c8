"""
同期層 - ローカルキャッシュ ↔ リモート履歴ストアの同期を管理
"""

from .sync_engine import SyncEngine, create_sync_engine
from .sync_scheduler import SyncScheduler
from .conflict_resolver import ConflictResolver, Resolution, merge_items, resolve
from .pagination import CursorState, PaginationCursor
from .history_migration import HistoryMigration, MigrationProgress, MigrationResult, MigrationStage

__all__ = [
    'SyncEngine', 'create_sync_engine', 'SyncScheduler',
    'ConflictResolver', 'Resolution', 'merge_items', 'resolve',
    'CursorState', 'PaginationCursor',
    'HistoryMigration', 'MigrationProgress', 'MigrationResult', 'MigrationStage'
]
