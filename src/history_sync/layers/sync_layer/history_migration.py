"""
履歴移行 - 旧形式のローカル履歴（analysis-store）をリモート履歴ストアへ移す
バックアップ → ダウンロード → アップロード → マージ → クリーンアップ の順に実行し、
各段階の進捗をリスナーへ通知する
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Set

from ...core.exceptions import HistorySyncError, RemoteRejectedError
from ...core.models import HistoryItem, HistoryQuery, now_ms
from ..remote_layer.remote_client import MAX_PAGE_LIMIT
from .conflict_resolver import ConflictResolver, merge_items
from .sync_engine import TRANSIENT_ERRORS, SyncEngine

logger = logging.getLogger(__name__)

LEGACY_STORE_KEY = "analysis-store"
BACKUP_KEY = "analysis_history_migration_backup"
BACKUP_VERSION = "1.0"
DEFAULT_BATCH_SIZE = 10


class MigrationStage(Enum):
    BACKUP = "backup"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    MERGE = "merge"
    CLEANUP = "cleanup"
    COMPLETE = "complete"


@dataclass
class MigrationProgress:
    """段階ごとの進捗"""
    stage: MigrationStage
    total: int
    processed: int
    current: str

    def to_dict(self) -> Dict[str, Any]:
        return {'stage': self.stage.value, 'total': self.total,
                'processed': self.processed, 'current': self.current}


@dataclass
class MigrationResult:
    """移行結果（dry_runでは件数は見込み）"""
    success: bool = True
    dry_run: bool = False
    uploaded: int = 0
    downloaded: int = 0
    merged: int = 0
    conflicts: int = 0
    queued: int = 0
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'dry_run': self.dry_run,
            'uploaded': self.uploaded,
            'downloaded': self.downloaded,
            'merged': self.merged,
            'conflicts': self.conflicts,
            'queued': self.queued,
            'errors': list(self.errors),
            'duration_seconds': round(self.duration_seconds, 3),
        }


ProgressListener = Callable[[MigrationProgress], None]


class HistoryMigration:
    """旧形式ローカル履歴の移行

    競合は同期パスと同じくリモート優先で解決する。
    アップロードの一時的な失敗は待機キューに回し、次回の同期パスで再送する。
    """

    def __init__(self, engine: SyncEngine, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.engine = engine
        self.storage = engine.state.storage
        self.batch_size = batch_size
        self.resolver = ConflictResolver()
        self._listeners: List[ProgressListener] = []

    def add_listener(self, listener: ProgressListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _report(self, stage: MigrationStage, total: int, processed: int, current: str):
        progress = MigrationProgress(stage, total, processed, current)
        logger.info(f"Migration progress: {stage.value} - {processed}/{total}")
        for listener in list(self._listeners):
            try:
                listener(progress)
            except Exception as e:
                logger.warning(f"Migration listener {listener!r} failed: {e}")

    async def needs_migration(self) -> bool:
        """旧形式の履歴が残っていればTrue"""
        return bool(await self._load_legacy_items())

    async def preview(self) -> MigrationResult:
        """書き込みなしで移行結果の見込みを返す"""
        return await self._run(dry_run=True)

    async def execute(self) -> MigrationResult:
        return await self._run(dry_run=False)

    async def _run(self, dry_run: bool) -> MigrationResult:
        result = MigrationResult(dry_run=dry_run)
        started = time.monotonic()
        operation = self.engine.structured_logger.log_operation_start('history_migration', dry_run=dry_run)

        if self.engine.is_syncing:
            result.success = False
            result.errors.append("A sync pass is in flight, try again after it finishes")
            self.engine.structured_logger.log_operation_end(operation, success=False,
                                                            error_message=result.errors[0])
            return result

        try:
            await self._migrate(result, dry_run)

        except (HistorySyncError, ValueError) as e:
            result.success = False
            result.errors.append(str(e))
            result.duration_seconds = time.monotonic() - started
            self.engine.structured_logger.log_operation_end(
                operation, success=False, error_type=e.__class__.__name__, error_message=str(e))
            if not dry_run:
                logger.warning("Migration failed, legacy history and its backup were kept")
            return result

        result.duration_seconds = time.monotonic() - started
        self.engine.structured_logger.log_operation_end(
            operation, success=True, uploaded=result.uploaded, downloaded=result.downloaded,
            merged=result.merged, conflicts=result.conflicts)
        return result

    async def _migrate(self, result: MigrationResult, dry_run: bool):
        # 1. バックアップ
        legacy_items = await self._load_legacy_items()
        if not dry_run and legacy_items:
            await self.storage.save(BACKUP_KEY, json.dumps({
                'data': [item.to_dict() for item in legacy_items],
                'timestamp': now_ms(),
                'version': BACKUP_VERSION,
            }, ensure_ascii=False))
        self._report(MigrationStage.BACKUP, len(legacy_items), len(legacy_items),
                     "Local history backed up")

        # 2. リモート全件取得
        remote_items = await self._download_all()
        result.downloaded = len(remote_items)
        self._report(MigrationStage.DOWNLOAD, len(remote_items), len(remote_items),
                     "Remote history downloaded")

        # 3. ローカルのみのアイテムをアップロード
        local_items, _ = merge_items(legacy_items, self.engine.cache.list())
        remote_ids = {item.id for item in remote_items}
        local_only = [item for item in local_items if item.id not in remote_ids]
        uploaded_ids = await self._upload_local_only(local_only, result, dry_run)
        self._report(MigrationStage.UPLOAD, len(local_only), result.uploaded,
                     f"Uploaded {result.uploaded} items")

        # 4. マージ（リモート優先）
        resolutions, conflicts = self.resolver.resolve_collections(local_items, remote_items)
        merged = sorted((resolution.winner for resolution in resolutions.values()),
                        key=lambda item: item.timestamp, reverse=True)
        result.merged = len(merged)
        result.conflicts = len(conflicts)
        if not dry_run:
            await self.engine.adopt_items(merged, remote_ids | uploaded_ids)
        self._report(MigrationStage.MERGE, len(local_items) + len(remote_items), len(merged),
                     f"Merged {len(merged)} items with {len(conflicts)} conflicts resolved")

        # 5. クリーンアップ
        if not dry_run:
            await self.storage.delete(LEGACY_STORE_KEY)
            await self.storage.delete(BACKUP_KEY)
        self._report(MigrationStage.CLEANUP, len(merged), len(merged), "Migration cleanup completed")

        self._report(MigrationStage.COMPLETE, len(merged), len(merged),
                     "Dry run finished" if dry_run else "Migration completed")

    async def _load_legacy_items(self) -> List[HistoryItem]:
        """旧形式レコード {"state": {"analysisHistory": [...]}} を読む"""
        raw = await self.storage.load(LEGACY_STORE_KEY)
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            raise ValueError(f"Legacy history record is not valid JSON: {e}") from e

        history = ((parsed.get('state') or {}).get('analysisHistory') or []) if isinstance(parsed, dict) else []
        items = []
        for entry in history:
            try:
                items.append(HistoryItem.from_dict(entry))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable legacy history entry: {e}")
        return items

    async def _download_all(self) -> List[HistoryItem]:
        items: List[HistoryItem] = []
        offset = 0
        while True:
            query = HistoryQuery(limit=MAX_PAGE_LIMIT, offset=offset)
            page = await self.engine.error_handler.execute(
                'migration fetch_recent', lambda: self.engine.remote.fetch_recent(query))
            items.extend(page.items)
            offset += len(page.items)
            if not page.has_more or not page.items:
                break
        unique, _ = merge_items(items)
        return unique

    async def _upload_local_only(self, items: List[HistoryItem],
                                 result: MigrationResult, dry_run: bool) -> Set[str]:
        uploaded_ids: Set[str] = set()
        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            batch_number = start // self.batch_size + 1

            if dry_run:
                logger.info(f"[DRY RUN] Would upload batch {batch_number} of {len(batch)} items")
                result.uploaded += len(batch)
                continue

            for item in batch:
                try:
                    await self.engine.error_handler.execute(
                        f"migration upload_item {item.id}", lambda: self.engine.remote.upload_item(item))
                except RemoteRejectedError as e:
                    result.errors.append(f"{item.id}: {e}")
                    continue
                except TRANSIENT_ERRORS as e:
                    logger.info(f"Migration upload of {item.id} deferred to the next sync pass: {e}")
                    await self.engine.queue.enqueue(item)
                    result.queued += 1
                    continue
                uploaded_ids.add(item.id)
                result.uploaded += 1

            logger.info(f"Uploaded migration batch {batch_number}: {len(uploaded_ids)} so far")
        return uploaded_ids
