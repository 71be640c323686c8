"""
例外階層 - 履歴同期エンジン

HistorySyncError
├── RemoteError
│   ├── RemoteUnavailableError   一時的（ネットワーク・タイムアウト・5xx）→ リトライ
│   ├── AuthenticationError      認証切れ・未認証 → リトライなし
│   ├── RemoteRejectedError      4xx（アイテム単位の恒久的拒否）
│   └── RemoteResponseError      レスポンス形式不正
└── PersistenceError             ローカル保存失敗（ベストエフォート）
"""

from typing import Any, Dict, Optional


class HistorySyncError(Exception):
    """履歴同期エラーの基底クラス"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class RemoteError(HistorySyncError):
    """リモートストア呼び出しの失敗"""

    def __init__(self, message: str, status: Optional[int] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.status = status


class RemoteUnavailableError(RemoteError):
    """接続不可・タイムアウト・サーバー側エラー"""

    def __init__(self, message: str, status: Optional[int] = None,
                 retry_after: Optional[float] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, status, context)
        self.retry_after = retry_after


class AuthenticationError(RemoteError):
    """認証情報が無い、または期限切れ"""


class RemoteRejectedError(RemoteError):
    """リモートがリクエストを恒久的に拒否した"""


class RemoteResponseError(RemoteError):
    """レスポンスを解釈できない"""


class PersistenceError(HistorySyncError):
    """ローカルストレージへの保存失敗"""
