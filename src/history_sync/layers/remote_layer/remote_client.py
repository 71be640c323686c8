"""
リモート履歴APIクライアント
/api/analyses/* エンドポイント（ページ取得・差分取得・追加・削除）をaiohttpで呼び出す
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from ...core.exceptions import (
    AuthenticationError,
    RemoteRejectedError,
    RemoteResponseError,
    RemoteUnavailableError,
)
from ...core.models import AnalysisType, HistoryItem, HistoryPage, HistoryQuery, iso_to_ms

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]

TITLE_LENGTH = 100
RETRYABLE_STATUSES = {408, 425, 429, 500, 502, 503, 504}
# /api/analyses/recent の1ページ上限
MAX_PAGE_LIMIT = 100


class HistoryRemote(ABC):
    """リモート履歴ストアのインターフェース"""

    @abstractmethod
    async def fetch_recent(self, query: HistoryQuery) -> HistoryPage:
        """ページ単位で取得（新しい順）"""

    @abstractmethod
    async def fetch_since(self, timestamp: int) -> List[HistoryItem]:
        """timestampより新しいアイテムを取得（新しい順）"""

    @abstractmethod
    async def upload_item(self, item: HistoryItem) -> None:
        """ID単位で冪等な作成。失敗時は例外"""

    @abstractmethod
    async def remove_item(self, item_id: str) -> None:
        """削除。失敗時は例外"""

    async def close(self):
        """接続リソースの解放"""


def generate_summary(item: HistoryItem) -> str:
    """解析結果からサマリー文字列を生成"""
    result = item.result if isinstance(item.result, dict) else {}
    if item.type == AnalysisType.WORD:
        root_meaning = (result.get('definitions') or {}).get('root_meaning')
        if root_meaning:
            return f"Word: {item.input} - {root_meaning}"
    elif item.type == AnalysisType.SENTENCE:
        main_idea = (result.get('semantics') or {}).get('main_idea')
        if main_idea:
            return f"Sentence analysis: {main_idea}"
    elif item.type == AnalysisType.PARAGRAPH:
        main_topic = (result.get('content_analysis') or {}).get('main_topic')
        if main_topic:
            return f"Paragraph: {main_topic}"
    return f"{item.type.value} analysis of: {item.input[:50]}"


def remote_item_id(data: Dict[str, Any]) -> str:
    """アイテムID。クライアント発行ID（analysis_id）があればそれを使い、なければ行ID"""
    return str(data.get('analysis_id') or data['id'])


def parse_remote_item(data: Dict[str, Any]) -> HistoryItem:
    """APIレスポンスの1件をHistoryItemに変換

    整形済み（id/type/input/result/timestamp）とDB行形式
    （analysis_type/analysis_data/analysis_title/created_at）の両方に対応する。
    どちらも行IDとは別にanalysis_idを持つ場合はそちらをアイテムIDとする。
    """
    if 'type' in data and 'timestamp' in data:
        return HistoryItem.from_dict(dict(data, id=remote_item_id(data)))

    analysis_type = AnalysisType(data['analysis_type'])
    analysis_data = data.get('analysis_data')
    input_text = ''
    if isinstance(analysis_data, dict):
        meta = analysis_data.get('meta') or {}
        input_text = meta.get(analysis_type.value) or ''

    created_at = data.get('created_at')
    if not created_at:
        raise ValueError(f"remote item {data.get('id')} has no created_at")

    return HistoryItem(
        id=remote_item_id(data),
        type=analysis_type,
        input=input_text or data.get('analysis_title') or '',
        result=analysis_data,
        timestamp=iso_to_ms(created_at),
    )


def parse_remote_items(rows: List[Dict[str, Any]]) -> List[HistoryItem]:
    """パースできない行は警告を出してスキップ"""
    items = []
    for row in rows:
        try:
            items.append(parse_remote_item(row))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to parse remote history item {row.get('id') if isinstance(row, dict) else row!r}: {e}")
    return items


class HttpHistoryRemote(HistoryRemote):
    """HTTP経由のリモート履歴ストア"""

    def __init__(self, base_url: str, token_provider: TokenProvider,
                 session_id: Optional[str] = None,
                 timeout_seconds: float = 15.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip('/')
        self.token_provider = token_provider
        self.session_id = session_id
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "HttpHistoryRemote":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _headers(self) -> Dict[str, str]:
        token = await self.token_provider()
        if not token:
            raise AuthenticationError("Authentication required: no valid session available")
        return {
            'Content-Type': 'application/json',
            'Authorization': f"Bearer {token}",
        }

    async def _request(self, method: str, path: str,
                       payload: Optional[Dict[str, Any]] = None,
                       accept_statuses: tuple = ()) -> Dict[str, Any]:
        """リクエスト送信とステータスの例外変換"""
        headers = await self._headers()
        url = f"{self.base_url}{path}"

        try:
            async with self._get_session().request(method, url, json=payload, headers=headers) as response:
                body_text = await response.text()
                status = response.status

                if status in accept_statuses:
                    return {'status': status}
                if status in (401, 403):
                    raise AuthenticationError(f"Authentication failed ({status}) for {method} {path}", status)
                if status in RETRYABLE_STATUSES:
                    retry_after = response.headers.get('Retry-After')
                    raise RemoteUnavailableError(
                        f"{method} {path} returned {status}", status,
                        retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None)
                if status >= 400:
                    raise RemoteRejectedError(f"{method} {path} rejected ({status}): {body_text[:200]}", status)

        except aiohttp.ClientResponseError as e:
            raise RemoteUnavailableError(f"{method} {path} failed: {e}", e.status) from e
        except aiohttp.ClientError as e:
            raise RemoteUnavailableError(f"{method} {path} connection failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise RemoteUnavailableError(f"{method} {path} timed out") from e

        if not body_text:
            return {}
        try:
            body = json.loads(body_text)
        except ValueError as e:
            raise RemoteResponseError(f"{method} {path} returned invalid JSON", status) from e
        if not isinstance(body, dict):
            raise RemoteResponseError(f"{method} {path} returned unexpected body", status)
        if body.get('success') is False:
            raise RemoteRejectedError(body.get('error') or f"{method} {path} reported failure", status)
        return body

    async def fetch_recent(self, query: HistoryQuery) -> HistoryPage:
        body = await self._request('POST', '/api/analyses/recent', query.to_payload())
        data = body.get('data') or {}
        pagination = data.get('pagination')
        if not isinstance(data.get('analyses'), list) or not isinstance(pagination, dict):
            raise RemoteResponseError("recent analyses response missing analyses/pagination")

        items = parse_remote_items(data['analyses'])
        logger.debug(f"Fetched page offset={query.offset} limit={query.limit}: {len(items)} items")
        return HistoryPage(
            items=items,
            total=int(pagination.get('total', 0)),
            has_more=bool(pagination.get('has_more', False)),
        )

    async def fetch_since(self, timestamp: int) -> List[HistoryItem]:
        """新しい順にページを辿り、timestamp以前のアイテムに達したら終了

        /api/analyses/sync のmerged_historyはanalysis_idを返さないため、
        アイテムIDを保てる /api/analyses/recent を使う。
        """
        items: List[HistoryItem] = []
        offset = 0
        while True:
            page = await self.fetch_recent(HistoryQuery(limit=MAX_PAGE_LIMIT, offset=offset))
            items.extend(item for item in page.items if item.timestamp > timestamp)
            offset += len(page.items)

            reached_watermark = any(item.timestamp <= timestamp for item in page.items)
            if reached_watermark or not page.has_more or len(page.items) < MAX_PAGE_LIMIT:
                break

        items.sort(key=lambda item: item.timestamp, reverse=True)
        logger.debug(f"Fetched {len(items)} remote items newer than {timestamp}")
        return items

    async def upload_item(self, item: HistoryItem) -> None:
        payload = {
            'id': item.id,
            'session_id': self.session_id or item.id,
            'type': item.type.value,
            'input_text': item.input,
            'title': item.input[:TITLE_LENGTH],
            'summary': generate_summary(item),
            'result': item.result,
            'timestamp': item.timestamp,
        }
        result = await self._request('POST', '/api/analyses/add', payload, accept_statuses=(409,))
        if result.get('status') == 409:
            logger.debug(f"Item {item.id} already present remotely")

    async def remove_item(self, item_id: str) -> None:
        result = await self._request('DELETE', f"/api/analyses/{item_id}", accept_statuses=(404,))
        if result.get('status') == 404:
            logger.debug(f"Item {item_id} already absent remotely")
