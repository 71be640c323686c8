"""
エラーハンドリング・リトライシステム
リモート呼び出しの分類、指数バックオフ付きリトライ、タイムアウト
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import aiohttp

from ...core.exceptions import (
    AuthenticationError,
    PersistenceError,
    RemoteRejectedError,
    RemoteResponseError,
    RemoteUnavailableError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorType(Enum):
    """エラータイプ分類"""
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "authentication_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    REJECTED_ERROR = "rejected_error"
    DATA_PARSING_ERROR = "data_parsing_error"
    PERSISTENCE_ERROR = "persistence_error"
    UNKNOWN_ERROR = "unknown_error"


@dataclass
class ErrorStrategy:
    """エラー対応戦略設定"""
    retry_attempts: int
    backoff_multiplier: float
    alert_threshold: int = 1
    escalation: Optional[str] = None


class ErrorHandler:
    """エラー分類・リトライ実行"""

    # エラータイプ別の対応戦略（retry_attemptsは初回を含む試行回数）
    STRATEGIES: Dict[ErrorType, ErrorStrategy] = {
        ErrorType.NETWORK_ERROR: ErrorStrategy(
            retry_attempts=3,
            backoff_multiplier=2.0,
            alert_threshold=3
        ),
        ErrorType.AUTHENTICATION_ERROR: ErrorStrategy(
            retry_attempts=1,
            backoff_multiplier=1.0,
            alert_threshold=1,
            escalation='immediate'
        ),
        ErrorType.RATE_LIMIT_ERROR: ErrorStrategy(
            retry_attempts=5,
            backoff_multiplier=4.0,
            alert_threshold=10
        ),
        ErrorType.REJECTED_ERROR: ErrorStrategy(
            retry_attempts=1,
            backoff_multiplier=1.0,
            alert_threshold=5
        ),
        ErrorType.DATA_PARSING_ERROR: ErrorStrategy(
            retry_attempts=2,
            backoff_multiplier=1.5,
            alert_threshold=5
        ),
        ErrorType.PERSISTENCE_ERROR: ErrorStrategy(
            retry_attempts=1,
            backoff_multiplier=1.0,
            alert_threshold=3
        ),
        ErrorType.UNKNOWN_ERROR: ErrorStrategy(
            retry_attempts=1,
            backoff_multiplier=1.0,
            alert_threshold=1
        ),
    }

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config or {}
        self.base_delay = float(self.config.get('base_delay_seconds', 1.0))
        self.max_delay = float(self.config.get('max_delay_seconds', 10.0))
        self.timeout = float(self.config.get('timeout_seconds', 15.0))
        max_attempts = self.config.get('max_attempts')
        self.max_attempts = int(max_attempts) if max_attempts is not None else None
        self._sleep = sleep
        self.error_counts: Dict[ErrorType, int] = {}

    def classify_error(self, error: BaseException) -> ErrorType:
        """エラーを分類してタイプを返す"""
        if isinstance(error, AuthenticationError):
            return ErrorType.AUTHENTICATION_ERROR
        if isinstance(error, RemoteUnavailableError):
            if error.status == 429:
                return ErrorType.RATE_LIMIT_ERROR
            return ErrorType.NETWORK_ERROR
        if isinstance(error, RemoteRejectedError):
            return ErrorType.REJECTED_ERROR
        if isinstance(error, RemoteResponseError):
            return ErrorType.DATA_PARSING_ERROR
        if isinstance(error, PersistenceError):
            return ErrorType.PERSISTENCE_ERROR
        if isinstance(error, (asyncio.TimeoutError, ConnectionError, aiohttp.ClientConnectionError)):
            return ErrorType.NETWORK_ERROR

        return ErrorType.UNKNOWN_ERROR

    def is_retryable(self, error_type: ErrorType) -> bool:
        return error_type in (ErrorType.NETWORK_ERROR, ErrorType.RATE_LIMIT_ERROR,
                              ErrorType.DATA_PARSING_ERROR)

    def backoff_delay(self, attempt: int, strategy: ErrorStrategy,
                      retry_after: Optional[float] = None) -> float:
        """attempt回目（0始まり）の失敗後の待機秒数"""
        if retry_after is not None:
            return min(float(retry_after), self.max_delay)
        return min(self.base_delay * (strategy.backoff_multiplier ** attempt), self.max_delay)

    def record_error(self, error: BaseException) -> ErrorType:
        """エラーカウント更新"""
        error_type = self.classify_error(error)
        strategy = self.STRATEGIES[error_type]
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        if self.error_counts[error_type] >= strategy.alert_threshold:
            logger.warning(f"Repeated {error_type.value}: {self.error_counts[error_type]} occurrences "
                           f"(latest: {error})")
        if strategy.escalation == 'immediate':
            logger.error(f"Non-retryable {error_type.value}: {error}")
        return error_type

    async def execute(self, operation: str, call: Callable[[], Awaitable[T]],
                      attempts: Optional[int] = None) -> T:
        """タイムアウト・リトライ付きでリモート呼び出しを実行

        認証エラーと恒久的拒否は即座に送出する。一時的エラーは戦略の試行回数まで
        指数バックオフでリトライし、使い切ったら最後の例外を送出する。
        attemptsを指定すると一時的エラーの試行回数を上書きする（1ならリトライなし）。
        """
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(call(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                error: BaseException = RemoteUnavailableError(
                    f"{operation} timed out after {self.timeout:.1f}s")
                error.__cause__ = e
            except (ConnectionError, aiohttp.ClientConnectionError) as e:
                error = RemoteUnavailableError(f"{operation} connection failed: {e}")
                error.__cause__ = e
            except (RemoteUnavailableError, AuthenticationError,
                    RemoteRejectedError, RemoteResponseError) as e:
                error = e

            error_type = self.record_error(error)
            strategy = self.STRATEGIES[error_type]
            attempts_allowed = strategy.retry_attempts
            if self.is_retryable(error_type):
                if attempts is not None:
                    attempts_allowed = attempts
                elif self.max_attempts is not None:
                    attempts_allowed = self.max_attempts

            if not self.is_retryable(error_type) or attempt + 1 >= attempts_allowed:
                logger.debug(f"{operation} giving up after {attempt + 1} attempt(s): {error}")
                raise error

            delay = self.backoff_delay(attempt, strategy, getattr(error, 'retry_after', None))
            logger.info(f"{operation} failed ({error_type.value}), retrying in {delay:.2f}s "
                        f"[attempt {attempt + 1}/{attempts_allowed}]")
            await self._sleep(delay)
            attempt += 1

    def get_statistics(self) -> Dict[str, int]:
        return {error_type.value: count for error_type, count in self.error_counts.items()}
