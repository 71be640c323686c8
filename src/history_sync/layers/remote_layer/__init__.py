"""
リモート層 - 履歴APIクライアントとエラー分類・リトライ
"""

from .remote_client import HistoryRemote, HttpHistoryRemote, generate_summary
from .error_handler import ErrorHandler, ErrorType

__all__ = ['HistoryRemote', 'HttpHistoryRemote', 'generate_summary', 'ErrorHandler', 'ErrorType']
