import argparse
import asyncio
import json
import sys
from typing import Iterable, Optional

from .config.sync_config import ConfigManager, SyncConfig
from .core.exceptions import HistorySyncError
from .core.models import AnalysisType, HistoryItem
from .layers.sync_layer.history_migration import HistoryMigration
from .layers.sync_layer.sync_engine import SyncEngine, create_sync_engine
from .layers.sync_layer.sync_scheduler import SyncScheduler
from .utils.enhanced_logger import setup_logging


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


async def _run_command(args: argparse.Namespace, config: SyncConfig) -> int:
    engine: SyncEngine = await create_sync_engine(config, user_id=args.user)
    try:
        if args.command == "sync":
            report = await engine.sync()
            _print_json(report.to_dict())

        elif args.command == "status":
            _print_json({**engine.status().to_dict(),
                         'health': engine.structured_logger.get_health_status()})

        elif args.command == "list":
            _print_json([item.to_dict() for item in engine.cache.list(args.limit)])

        elif args.command == "pages":
            await engine.refresh()
            for _ in range(args.pages - 1):
                if not engine.has_more:
                    break
                await engine.load_page()
            _print_json({
                'items': [item.to_dict() for item in engine.remote_view],
                'cursor': engine.cursor.to_dict(),
                'has_more': engine.has_more,
            })

        elif args.command == "add":
            result = json.loads(args.result) if args.result else None
            item = HistoryItem.create(AnalysisType(args.type), args.input, result)
            persisted = await engine.add_item(item, upload=not args.offline)
            _print_json({'id': item.id, 'persisted': persisted, 'pending': engine.pending_count})

        elif args.command == "remove":
            removed = await engine.remove_item(args.id)
            _print_json({'id': args.id, 'removed': removed})

        elif args.command == "clear":
            if args.all:
                await engine.clear_all()
            else:
                await engine.clear_history()
            _print_json(engine.status().to_dict())

        elif args.command == "migrate":
            migration = HistoryMigration(engine, batch_size=args.batch_size)
            migration.add_listener(lambda progress: print(
                f"[{progress.stage.value}] {progress.processed}/{progress.total} {progress.current}",
                file=sys.stderr))
            result = await (migration.preview() if args.dry_run else migration.execute())
            _print_json(result.to_dict())
            if not result.success:
                return 1

        elif args.command == "watch":
            scheduler = SyncScheduler(engine,
                                      interval_seconds=config.scheduler.interval_seconds,
                                      online_delay_seconds=config.scheduler.online_delay_seconds)
            async with scheduler:
                if args.duration:
                    await asyncio.sleep(args.duration)
                else:
                    await asyncio.Event().wait()
            _print_json(scheduler.get_statistics())

    finally:
        await engine.close()

    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Analysis history cache-and-sync")
    parser.add_argument("--config-dir", default="config", help="設定ディレクトリ（main.yaml / sync.yaml）")
    parser.add_argument("--user", help="ユーザーID（未指定時は設定値）")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("sync", help="同期パスを1回実行")
    subparsers.add_parser("status", help="同期状態を表示")

    list_parser = subparsers.add_parser("list", help="ローカル履歴を表示")
    list_parser.add_argument("--limit", type=int, default=None)

    pages_parser = subparsers.add_parser("pages", help="リモート履歴をページ取得")
    pages_parser.add_argument("--pages", type=int, default=1, help="取得するページ数")

    add_parser = subparsers.add_parser("add", help="解析結果を履歴に追加")
    add_parser.add_argument("--type", choices=[t.value for t in AnalysisType], required=True)
    add_parser.add_argument("--input", required=True, help="解析対象テキスト")
    add_parser.add_argument("--result", help="解析結果（JSON文字列）")
    add_parser.add_argument("--offline", action="store_true", help="アップロードせず次回の同期パスに任せる")

    remove_parser = subparsers.add_parser("remove", help="履歴アイテムを削除")
    remove_parser.add_argument("id")

    clear_parser = subparsers.add_parser("clear", help="ローカル履歴を削除")
    clear_parser.add_argument("--all", action="store_true", help="待機キュー・同期状態も含めて全消去")

    migrate_parser = subparsers.add_parser("migrate", help="旧形式のローカル履歴をリモートへ移行")
    migrate_parser.add_argument("--dry-run", action="store_true", help="書き込まずに結果の見込みだけ表示")
    migrate_parser.add_argument("--batch-size", type=int, default=10)

    watch_parser = subparsers.add_parser("watch", help="定期同期を実行")
    watch_parser.add_argument("--duration", type=float, default=None, help="実行秒数（未指定時は無期限）")

    args = parser.parse_args(list(argv) if argv is not None else None)

    config = ConfigManager(args.config_dir).load_config()
    setup_logging({
        'level': config.logging.level,
        'file_path': config.logging.file_path,
        'metrics_enabled': config.logging.metrics_enabled,
        # 標準出力はコマンド結果のJSON専用
        'stream': sys.stderr,
    })

    if args.command == "add" and args.result:
        try:
            json.loads(args.result)
        except ValueError:
            raise SystemExit("--result はJSON形式で指定してください")

    try:
        return asyncio.run(_run_command(args, config))
    except (HistorySyncError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
