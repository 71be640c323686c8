"""
CLIテスト（リモート未接続でのローカル操作）
"""

import json
import logging

import pytest

from history_sync import cli
from history_sync.utils import enhanced_logger


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    for key in ("HISTORY_SYNC_API_TOKEN", "HISTORY_SYNC_BASE_URL", "HISTORY_SYNC_USER_ID"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HISTORY_SYNC_DATABASE_PATH", str(tmp_path / "history.db"))
    # 到達不能なリモート・リトライなし
    monkeypatch.setenv("HISTORY_SYNC_BASE_URL", "http://127.0.0.1:9")
    monkeypatch.setenv("HISTORY_SYNC_MAX_ATTEMPTS", "1")
    monkeypatch.setattr(cli, "setup_logging", lambda config: None)
    return str(tmp_path / "config")


def run(capsys, *argv):
    exit_code = cli.main(list(argv))
    return exit_code, capsys.readouterr().out


class TestCli:
    """CLIコマンドのテスト"""

    def test_status_on_empty_store(self, config_dir, capsys):
        exit_code, out = run(capsys, "--config-dir", config_dir, "status")

        status = json.loads(out)
        assert exit_code == 0
        assert status['pending_count'] == 0
        assert status['cached_items'] == 0

    def test_offline_add_is_listed(self, config_dir, capsys):
        exit_code, out = run(capsys, "--config-dir", config_dir, "add",
                             "--type", "word", "--input", "cat", "--offline")
        added = json.loads(out)
        assert exit_code == 0
        assert added['persisted'] is True
        assert added['pending'] == 0

        _, out = run(capsys, "--config-dir", config_dir, "list")
        assert [item['id'] for item in json.loads(out)] == [added['id']]

    def test_sync_failure_returns_error_code(self, config_dir, capsys):
        exit_code = cli.main(["--config-dir", config_dir, "--user", "nobody", "sync"])

        assert exit_code == 1
        assert "Error:" in capsys.readouterr().err

    def test_migrate_preview_without_remote(self, config_dir, capsys):
        exit_code, out = run(capsys, "--config-dir", config_dir, "migrate", "--dry-run")

        result = json.loads(out)
        assert exit_code == 1
        assert result['success'] is False
        assert result['dry_run'] is True

    def test_logs_do_not_mix_into_json_output(self, config_dir, capsys, monkeypatch):
        """ログは標準エラーへ、標準出力はJSONのみ"""
        monkeypatch.setattr(cli, "setup_logging", enhanced_logger.setup_logging)
        try:
            exit_code = cli.main(["--config-dir", config_dir, "status"])
            out, err = capsys.readouterr()
        finally:
            for handler in list(logging.getLogger("history_sync").handlers):
                logging.getLogger("history_sync").removeHandler(handler)

        assert exit_code == 0
        assert json.loads(out)['cached_items'] == 0
        assert "History engine loaded" in err
