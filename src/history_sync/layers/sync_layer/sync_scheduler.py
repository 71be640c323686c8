"""
同期スケジューラー - 定期実行と接続復帰時の同期トリガー
重複トリガーはエンジン側の排他制御でスキップされる
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from ...core.exceptions import AuthenticationError
from ...core.models import SyncReport
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30.0
DEFAULT_ONLINE_DELAY_SECONDS = 1.0


class SyncScheduler:
    """バックグラウンド同期スケジューラー"""

    def __init__(self, engine: SyncEngine,
                 interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
                 online_delay_seconds: float = DEFAULT_ONLINE_DELAY_SECONDS):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.online_delay_seconds = online_delay_seconds

        self.is_running = False
        self.is_online = True
        self.background_tasks: Set[asyncio.Task] = set()
        # 実行中の同期パス（停止時もキャンセルせず完了を待つ）
        self.pass_tasks: Set[asyncio.Task] = set()

        # 統計情報
        self.passes_completed = 0
        self.passes_failed = 0
        self.passes_skipped = 0

    async def __aenter__(self) -> "SyncScheduler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self, sync_immediately: bool = True):
        """バックグラウンド同期開始"""
        if self.is_running:
            return

        self.is_running = True
        self._spawn(self._periodic_loop())
        if sync_immediately and self.is_online:
            self._spawn(self._shielded_trigger())

        logger.info(f"History sync scheduler started (every {self.interval_seconds:.0f}s)")

    async def stop(self):
        """バックグラウンド同期停止

        待機中のタイマーはキャンセルするが、実行中の同期パスは途中で止めずに完了を待つ。
        """
        self.is_running = False

        for task in self.background_tasks:
            task.cancel()

        await asyncio.gather(*self.background_tasks, return_exceptions=True)
        self.background_tasks.clear()

        if self.pass_tasks:
            logger.info("Waiting for the in-flight sync pass to finish")
            await asyncio.gather(*self.pass_tasks, return_exceptions=True)

        logger.info("History sync scheduler stopped")

    def notify_online(self):
        """接続復帰。少し待ってから同期する"""
        was_offline = not self.is_online
        self.is_online = True
        if self.is_running and was_offline:
            logger.info(f"Connection restored, syncing in {self.online_delay_seconds:.1f}s")
            self._spawn(self._delayed_sync(self.online_delay_seconds))

    def notify_offline(self):
        """接続断。定期同期を一時停止"""
        if self.is_online:
            logger.info("Connection lost, pausing scheduled sync")
        self.is_online = False

    async def trigger(self) -> Optional[SyncReport]:
        """同期を1回実行。エラーはログに残してNoneを返す"""
        try:
            report = await self.engine.sync()

        except AuthenticationError as e:
            self.passes_failed += 1
            logger.warning(f"Scheduled sync needs re-authentication: {e}")
            return None

        except Exception as e:
            self.passes_failed += 1
            logger.error(f"Scheduled sync failed: {e}")
            return None

        if report.skipped:
            self.passes_skipped += 1
        else:
            self.passes_completed += 1
        return report

    def _spawn(self, coroutine):
        task = asyncio.create_task(coroutine)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def _shielded_trigger(self):
        """タイマー側のキャンセルが同期パスに波及しないよう別タスクで実行"""
        task = asyncio.create_task(self.trigger())
        self.pass_tasks.add(task)
        task.add_done_callback(self.pass_tasks.discard)
        await asyncio.shield(task)

    async def _delayed_sync(self, delay: float):
        await asyncio.sleep(delay)
        if self.is_running and self.is_online:
            await self._shielded_trigger()

    async def _periodic_loop(self):
        """定期同期ワーカー"""
        while self.is_running:
            await asyncio.sleep(self.interval_seconds)
            if self.is_online:
                await self._shielded_trigger()

    def get_statistics(self) -> Dict[str, Any]:
        """スケジューラー統計情報"""
        return {
            "running": self.is_running,
            "online": self.is_online,
            "interval_seconds": self.interval_seconds,
            "passes_completed": self.passes_completed,
            "passes_failed": self.passes_failed,
            "passes_skipped": self.passes_skipped,
        }
