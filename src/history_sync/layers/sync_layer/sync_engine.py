"""
履歴同期エンジン - ローカルキャッシュとリモート履歴ストアの調停
差分取得 → 競合解決 → アップロード → 一括コミット の順で1パスを実行する
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ...core.exceptions import (
    AuthenticationError,
    RemoteRejectedError,
    RemoteResponseError,
    RemoteUnavailableError,
)
from ...core.models import (
    AnalysisType,
    HistoryConflict,
    HistoryItem,
    HistoryQuery,
    SyncReport,
    SyncStatusSnapshot,
)
from ...utils.enhanced_logger import EnhancedLogger, get_logger
from ..cache_layer.local_cache import DEFAULT_CACHE_CAP, LocalCache
from ..cache_layer.pending_queue import PendingOpQueue
from ..cache_layer.state_storage import (
    PersistedState,
    SQLiteStateStorage,
    empty_record,
    storage_key_for,
)
from ..remote_layer.error_handler import ErrorHandler
from ..remote_layer.remote_client import HistoryRemote, HttpHistoryRemote, TokenProvider
from .conflict_resolver import ConflictResolver, merge_items
from .pagination import PaginationCursor

logger = logging.getLogger(__name__)

# 一時的エラー（待機キューに積んで次回パスで再試行）
TRANSIENT_ERRORS = (RemoteUnavailableError, RemoteResponseError)

StatusListener = Callable[[SyncStatusSnapshot], None]


class SyncEngine:
    """履歴同期エンジン

    共有状態はすべてこのインスタンスが持つ（グローバルストアなし）。
    メモリ上の変更はawaitの前に同期的に行う。
    """

    def __init__(self,
                 state: PersistedState,
                 remote: HistoryRemote,
                 error_handler: Optional[ErrorHandler] = None,
                 config: Optional[Dict[str, Any]] = None,
                 structured_logger: Optional[EnhancedLogger] = None):
        self.config = config or {}
        self.state = state
        self.remote = remote
        self.error_handler = error_handler or ErrorHandler(self.config.get('retry'))
        self.structured_logger = structured_logger or get_logger()

        self.page_limit = int(self.config.get('page_limit', 20))
        self.cache = LocalCache(state, cap=int(self.config.get('cache_cap', DEFAULT_CACHE_CAP)))
        self.queue = PendingOpQueue(state)
        self.cursor = PaginationCursor(self.page_limit)
        self.resolver = ConflictResolver()

        self.last_sync_timestamp = 0
        self.synced_ids: Set[str] = set()
        self.pending_deletes: List[str] = []
        self.conflicts: List[HistoryConflict] = []

        # 読み取り専用のリモート一覧（ページ取得結果）
        self.remote_view: List[HistoryItem] = []
        self.filters = HistoryQuery(limit=self.page_limit)
        self._view_generation = 0

        self._is_syncing = False
        self._last_sync_error: Optional[str] = None
        self._removed_during_pass: Set[str] = set()
        self._listeners: List[StatusListener] = []

    # ------------------------------------------------------------------
    # 初期化
    # ------------------------------------------------------------------

    async def load(self) -> bool:
        """永続レコードから状態を復元"""
        await self.state.load()
        self.cache.restore()
        self.queue.restore()
        previous_cursor = PaginationCursor.from_dict(self.state.get('cursor') or {}, self.page_limit)
        if previous_cursor.offset:
            # リモート一覧は永続化しないので先頭ページからやり直す
            logger.debug(f"Previous session stopped at {previous_cursor}, restarting from the first page")
        self.cursor = PaginationCursor(self.page_limit)
        self.last_sync_timestamp = int(self.state.get('lastSyncTimestamp') or 0)
        self.synced_ids = set(self.state.get('syncedIds') or [])
        self.pending_deletes = list(self.state.get('pendingDeletes') or [])

        logger.info(f"History engine loaded: {len(self.cache)} cached, "
                    f"{self.queue.size()} pending, watermark={self.last_sync_timestamp}")
        return self.state.last_error is None

    async def close(self):
        await self.remote.close()

    # ------------------------------------------------------------------
    # 状態公開
    # ------------------------------------------------------------------

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def last_sync_error(self) -> Optional[str]:
        return self._last_sync_error

    @property
    def pending_count(self) -> int:
        return self.queue.size()

    @property
    def has_more(self) -> bool:
        return self.cursor.has_more

    def status(self) -> SyncStatusSnapshot:
        return SyncStatusSnapshot(
            is_syncing=self._is_syncing,
            last_sync_error=self._last_sync_error,
            pending_count=self.queue.size(),
            has_more=self.cursor.has_more,
            last_sync_timestamp=self.last_sync_timestamp,
            cached_items=len(self.cache),
            conflicts=list(self.conflicts),
        )

    def add_listener(self, listener: StatusListener):
        """状態変化の通知先を登録（UIバインディング用）"""
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self):
        if not self._listeners:
            return
        snapshot = self.status()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Status listener {listener!r} failed: {e}")

    def _record_metrics(self, report: SyncReport):
        metrics = self.structured_logger.metrics
        if not metrics:
            return
        metrics.set_gauge('pending_queue_size', self.queue.size())
        metrics.set_gauge('cached_items', len(self.cache))
        metrics.record_event('history_conflicts', len(report.conflicts))

    def _engine_sections(self) -> Dict[str, Any]:
        return {
            'lastSyncTimestamp': self.last_sync_timestamp,
            'cursor': self.cursor.to_dict(),
            'syncedIds': sorted(self.synced_ids),
            'pendingDeletes': list(self.pending_deletes),
        }

    # ------------------------------------------------------------------
    # 同期パス
    # ------------------------------------------------------------------

    async def sync(self) -> SyncReport:
        """同期パスを1回実行

        既にパスが実行中ならskipped=Trueのレポートを即座に返す。
        失敗時は例外を送出し、同期時刻は更新しない。
        """
        if self._is_syncing:
            logger.debug("Sync pass already in flight, skipping trigger")
            if self.structured_logger.metrics:
                self.structured_logger.metrics.record_event('sync_pass_skipped')
            return SyncReport(skipped=True)

        self._is_syncing = True
        self._notify()
        operation = self.structured_logger.log_operation_start(
            'history_sync', pending=self.queue.size(), watermark=self.last_sync_timestamp)

        try:
            report = await self._run_pass()

        except Exception as e:
            self._last_sync_error = str(e)
            self.structured_logger.log_operation_end(
                operation, success=False, error_type=e.__class__.__name__, error_message=str(e))
            raise

        else:
            self._last_sync_error = None
            self.structured_logger.log_operation_end(
                operation, success=True, uploaded=report.uploaded, downloaded=report.downloaded,
                conflicts=len(report.conflicts), failed=report.failed)
            self._record_metrics(report)
            logger.info(report.summary())
            return report

        finally:
            self._is_syncing = False
            self._notify()

    async def _run_pass(self) -> SyncReport:
        report = SyncReport()
        generation = self.cache.generation
        watermark = self.last_sync_timestamp
        self._removed_during_pass = set(self.pending_deletes)

        # 1. リモート差分取得
        try:
            fetched = await self.error_handler.execute(
                'fetch_since', lambda: self.remote.fetch_since(watermark))
        except TRANSIENT_ERRORS:
            await self._enqueue_unsynced(self.cache.list())
            raise
        delta, _ = merge_items(fetched)
        remote_map = {item.id: item for item in delta}

        # 2. 競合解決（ローカル = キャッシュ ∪ 待機キュー）
        local_items, _ = merge_items(self.cache.list(), self.queue.list())
        local_map = {item.id: item for item in local_items}
        start_ids = {item.id for item in self.cache.list()}

        resolutions, conflicts = self.resolver.resolve_collections(local_items, delta)
        report.conflicts = conflicts

        # リモート版に置き換わる待機中アイテムはコミット時にまとめてack（競合記録と同時）
        superseded: Set[str] = set()
        for item in delta:
            local = local_map.get(item.id)
            if local is None or not local.same_content(item):
                report.downloaded += 1
            self.synced_ids.add(item.id)
            if item.id in self.queue:
                superseded.add(item.id)

        # 3. アップロード
        uploaded_timestamps = await self._upload_phase(report, remote_map, superseded)

        # 4. コミット
        if self.cache.generation != generation:
            logger.info("History was cleared during the sync pass, discarding merged result")
            await self.state.commit(self._engine_sections())
            return report

        current_items = self.cache.list()
        current_ids = {item.id for item in current_items}
        excluded = (start_ids - current_ids) | self._removed_during_pass | set(self.pending_deletes)
        remote_winners = [resolution.winner for item_id, resolution in resolutions.items()
                          if resolution.from_remote and item_id not in excluded]
        winner_ids = {item.id for item in remote_winners}
        merged = remote_winners + [item for item in current_items if item.id not in winner_ids]
        self.cache.update_in_memory(merged)

        observed = [item.timestamp for item in delta] + uploaded_timestamps
        if observed:
            self.last_sync_timestamp = max(self.last_sync_timestamp, max(observed))
        self.synced_ids &= {item.id for item in self.cache.list()}
        self.conflicts = conflicts

        self.queue.ack_in_memory(superseded)
        self.queue.update_in_memory()
        await self.state.commit(self._engine_sections())
        return report

    async def _upload_phase(self, report: SyncReport,
                            remote_map: Dict[str, HistoryItem],
                            superseded: Set[str]) -> List[int]:
        """削除の再送 → 待機キュー → 未同期キャッシュの順にリモートへ反映"""
        uploaded_timestamps: List[int] = []

        for item_id in list(self.pending_deletes):
            try:
                await self.error_handler.execute(
                    f"remove_item {item_id}", lambda: self.remote.remove_item(item_id))
            except RemoteRejectedError as e:
                logger.warning(f"Remote refused owed deletion of {item_id}, dropping it: {e}")
                report.failed += 1
            except TRANSIENT_ERRORS:
                await self._enqueue_unsynced(self.cache.list(), exclude=remote_map)
                raise
            self.pending_deletes.remove(item_id)
            self.synced_ids.discard(item_id)

        # peek-then-ack。今回試行済み・リモート版に置き換わるIDは飛ばす
        attempted: Set[str] = set()
        while True:
            item = self.queue.drain_one(skip=attempted | superseded)
            if item is None:
                break
            attempted.add(item.id)
            try:
                if await self._upload(item, report):
                    uploaded_timestamps.append(item.timestamp)
            except TRANSIENT_ERRORS:
                await self._enqueue_unsynced(self.cache.list(), exclude=remote_map)
                raise

        candidates = [item for item in reversed(self.cache.list())
                      if item.id not in self.synced_ids
                      and item.id not in remote_map
                      and item.id not in attempted
                      and item.id not in self.queue]
        for index, item in enumerate(candidates):
            try:
                if await self._upload(item, report):
                    uploaded_timestamps.append(item.timestamp)
            except TRANSIENT_ERRORS:
                await self._enqueue_unsynced(candidates[index:], exclude=remote_map)
                raise

        return uploaded_timestamps

    async def _upload(self, item: HistoryItem, report: SyncReport) -> bool:
        """1件アップロード。拒否はキュー末尾へ回してFalse、一時的エラーは送出"""
        try:
            await self.error_handler.execute(
                f"upload_item {item.id}", lambda: self.remote.upload_item(item))

        except RemoteRejectedError as e:
            logger.warning(f"Upload of {item.id} rejected, keeping it queued: {e}")
            report.failed += 1
            if item.id not in self.queue:
                await self.queue.enqueue(item)
            await self.queue.defer(item.id)
            return False

        report.uploaded += 1
        self.synced_ids.add(item.id)
        await self.queue.ack(item.id)
        return True

    async def _enqueue_unsynced(self, items: List[HistoryItem],
                                exclude: Optional[Dict[str, HistoryItem]] = None):
        """リモート未到達時、未同期のアイテムを待機キューへ退避"""
        exclude = exclude or {}
        unsynced = [item for item in sorted(items, key=lambda item: item.timestamp)
                    if item.id not in self.synced_ids and item.id not in exclude]
        self.state.update(self._engine_sections())
        if unsynced:
            logger.info(f"Remote unavailable, queued {len(unsynced)} unsynced item(s) for retry")
        await self.queue.enqueue_all(unsynced)

    # ------------------------------------------------------------------
    # ページング（読み取り専用のリモート一覧）
    # ------------------------------------------------------------------

    def set_filters(self,
                    type: Optional[AnalysisType] = None,
                    search: Optional[str] = None,
                    date_range: Optional[Tuple[int, int]] = None):
        """絞り込み条件を変更（ページングは先頭に戻る）"""
        self.filters = HistoryQuery(limit=self.page_limit, type=type, search=search,
                                    date_range=date_range)
        self._reset_view()

    def _reset_view(self):
        self.cursor.reset()
        self.remote_view = []
        self._view_generation += 1

    async def load_page(self) -> List[HistoryItem]:
        """次のページを取得してリモート一覧に追加。新規に加わったアイテムを返す"""
        if not self.cursor.begin():
            logger.debug(f"load_page ignored: {self.cursor}")
            return []

        generation = self._view_generation
        query = HistoryQuery(
            limit=self.cursor.limit,
            offset=self.cursor.offset,
            type=self.filters.type,
            search=self.filters.search,
            date_range=self.filters.date_range,
        )
        operation = self.structured_logger.log_operation_start(
            'load_page', offset=query.offset, limit=query.limit)
        self._notify()

        try:
            page = await self.error_handler.execute('fetch_recent', lambda: self.remote.fetch_recent(query))

        except Exception as e:
            if generation == self._view_generation:
                self.cursor.fail()
            self.structured_logger.log_operation_end(
                operation, success=False, error_type=e.__class__.__name__, error_message=str(e))
            self._notify()
            raise

        if generation != self._view_generation:
            logger.debug("Discarding page fetched before a refresh")
            self.structured_logger.log_operation_end(operation, success=True, discarded=True)
            return []

        known = {item.id for item in self.remote_view}
        added = []
        for item in page.items:
            if item.id not in known:
                known.add(item.id)
                added.append(item)
        self.remote_view.extend(added)
        self.cursor.advance(len(page.items), page.has_more, page.total)

        self.structured_logger.log_operation_end(
            operation, success=True, fetched=len(page.items), total=page.total)
        await self.state.commit({'cursor': self.cursor.to_dict()})
        self._notify()
        return added

    async def refresh(self) -> List[HistoryItem]:
        """カーソルとリモート一覧をリセットして先頭ページを再取得"""
        self._reset_view()
        return await self.load_page()

    # ------------------------------------------------------------------
    # アプリケーション操作
    # ------------------------------------------------------------------

    async def add_item(self, item: HistoryItem, upload: bool = True) -> bool:
        """ローカル解析結果を追加し、可能ならすぐにアップロード

        アップロードできなければ待機キューに積む。戻り値はローカル保存の成否。
        """
        self.synced_ids.discard(item.id)
        if item.id in self.pending_deletes:
            self.pending_deletes.remove(item.id)
        self.state.update(self._engine_sections())
        persisted = await self.cache.add(item)
        self._notify()

        if not upload:
            return persisted

        try:
            await self.error_handler.execute(
                f"upload_item {item.id}", lambda: self.remote.upload_item(item), attempts=1)
        except RemoteRejectedError as e:
            logger.warning(f"Upload of {item.id} rejected, queued for retry: {e}")
            await self.queue.enqueue(item)
            await self.queue.defer(item.id)
        except (AuthenticationError, *TRANSIENT_ERRORS) as e:
            logger.info(f"Remote write of {item.id} deferred: {e}")
            await self.queue.enqueue(item)
        else:
            self.synced_ids.add(item.id)
            await self.queue.ack(item.id)
            await self.state.commit(self._engine_sections())

        self._notify()
        return persisted

    async def remove_item(self, item_id: str) -> bool:
        """楽観的にローカルから削除し、リモート削除を試行

        リモートが明確に拒否した場合のみローカルを元に戻してRemoteRejectedErrorを送出する。
        結果不明（オフライン・認証切れ）の場合は削除を保留して次回同期で再送する。
        """
        removed = self.cache.get(item_id)
        view_index = next((i for i, item in enumerate(self.remote_view) if item.id == item_id), None)
        view_item = self.remote_view.pop(view_index) if view_index is not None else None
        self._removed_during_pass.add(item_id)
        await self.cache.remove(item_id)
        await self.queue.ack(item_id)
        self._notify()

        try:
            await self.error_handler.execute(
                f"remove_item {item_id}", lambda: self.remote.remove_item(item_id), attempts=1)

        except RemoteRejectedError:
            logger.warning(f"Remote refused to delete {item_id}, restoring local copy")
            if removed is not None:
                await self.cache.replace_all(self.cache.list() + [removed])
            if view_item is not None:
                self.remote_view.insert(view_index, view_item)
            self._notify()
            raise

        except (AuthenticationError, *TRANSIENT_ERRORS) as e:
            logger.info(f"Remote delete of {item_id} deferred: {e}")
            if item_id not in self.pending_deletes:
                self.pending_deletes.append(item_id)
            self.synced_ids.discard(item_id)
            await self.state.commit(self._engine_sections())
            self._notify()
            return removed is not None

        self.synced_ids.discard(item_id)
        await self.state.commit(self._engine_sections())
        return removed is not None

    async def adopt_items(self, items: List[HistoryItem], synced_ids: Iterable[str]) -> bool:
        """移行でマージした履歴をキャッシュに取り込み、リモートにあるIDを記録"""
        self.cache.update_in_memory(items)
        self.synced_ids.update(synced_ids)
        self.synced_ids &= {item.id for item in self.cache.list()}
        persisted = await self.state.commit(self._engine_sections())
        self._notify()
        return persisted

    async def clear_history(self) -> bool:
        """ローカル履歴のみ削除（待機キュー・リモートはそのまま）"""
        self.synced_ids.clear()
        self.conflicts = []
        self.state.update(self._engine_sections())
        persisted = await self.cache.clear()
        self._notify()
        return persisted

    async def clear_all(self) -> bool:
        """サインアウト時の全消去（待機キュー・同期時刻・永続レコードを含む）"""
        if self.queue.size():
            logger.warning(f"Discarding {self.queue.size()} pending upload(s) on sign-out")
        self.state.update(empty_record())
        self.cache.restore()
        self.cache.generation += 1
        self.queue.restore()
        self.last_sync_timestamp = 0
        self.synced_ids = set()
        self.pending_deletes = []
        self.conflicts = []
        self._reset_view()
        erased = await self.state.erase()
        self._notify()
        return erased


async def create_sync_engine(config,
                             user_id: Optional[str] = None,
                             token_provider: Optional[TokenProvider] = None,
                             structured_logger: Optional[EnhancedLogger] = None) -> SyncEngine:
    """設定からSQLiteストレージとHTTPクライアントを組み立ててエンジンを生成"""
    user_id = user_id or config.user_id

    storage = SQLiteStateStorage(config.cache.database_path)
    if not await storage.initialize():
        logger.warning("State storage unavailable, history will not survive restarts")

    if token_provider is None:
        async def token_provider() -> Optional[str]:
            return config.api_token

    remote = HttpHistoryRemote(
        base_url=config.remote.base_url,
        token_provider=token_provider,
        session_id=config.remote.session_id,
        timeout_seconds=config.remote.timeout_seconds,
    )
    error_handler = ErrorHandler({
        'base_delay_seconds': config.retry.base_delay_seconds,
        'max_delay_seconds': config.retry.max_delay_seconds,
        'timeout_seconds': config.remote.timeout_seconds,
        'max_attempts': config.retry.max_attempts,
    })

    engine = SyncEngine(
        state=PersistedState(storage, storage_key_for(user_id)),
        remote=remote,
        error_handler=error_handler,
        config={'cache_cap': config.cache.cap, 'page_limit': config.remote.page_limit},
        structured_logger=structured_logger,
    )
    await engine.load()
    return engine
