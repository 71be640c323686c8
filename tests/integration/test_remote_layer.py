"""
リモート層テスト
履歴APIクライアント（aiohttpテストサーバー）とエラーハンドラーの動作確認
"""

import asyncio
import uuid

import pytest
from aiohttp import web
from aiohttp import test_utils

from history_sync.core.exceptions import (
    AuthenticationError,
    RemoteRejectedError,
    RemoteResponseError,
    RemoteUnavailableError,
)
from history_sync.core.models import AnalysisType, HistoryItem, HistoryQuery, iso_to_ms, ms_to_iso
from history_sync.layers.cache_layer.state_storage import PersistedState, storage_key_for
from history_sync.layers.remote_layer.error_handler import ErrorHandler, ErrorType
from history_sync.layers.remote_layer.remote_client import (
    HttpHistoryRemote,
    generate_summary,
    parse_remote_item,
)
from history_sync.layers.sync_layer.sync_engine import SyncEngine

TOKEN = "token-1"


def db_row(analysis_id: str, word: str, created_at: str) -> dict:
    """session_analyses テーブルの行（idは行ごとのUUID、analysis_idはクライアント発行ID）"""
    return {
        'id': str(uuid.uuid4()),
        'analysis_id': analysis_id,
        'session_id': 'session-1',
        'analysis_type': 'word',
        'analysis_title': word,
        'analysis_data': {'meta': {'word': word}, 'definitions': {'root_meaning': 'x'}},
        'created_at': created_at,
    }


def transformed(row: dict) -> dict:
    """/api/analyses/recent が返す整形済みアイテム"""
    meta = (row['analysis_data'] or {}).get('meta') or {}
    return {
        'id': row['id'],
        'type': row['analysis_type'],
        'input': meta.get(row['analysis_type']) or row['analysis_title'],
        'result': row['analysis_data'],
        'timestamp': iso_to_ms(row['created_at']),
        'session_id': row['session_id'],
        'analysis_id': row['analysis_id'],
        'created_at': row['created_at'],
    }


class FakeHistoryApi:
    """テスト用 /api/analyses/* サーバー"""

    def __init__(self):
        self.rows = [
            db_row("a1", "cat", "2025-01-01T00:00:00.000Z"),
            db_row("a2", "dog", "2025-01-02T00:00:00.000Z"),
            db_row("a3", "owl", "2025-01-03T00:00:00.000Z"),
        ]
        self.requests = []
        self.force_status = None
        self.force_body = None

    def _authorized(self, request: web.Request) -> bool:
        return request.headers.get('Authorization') == f"Bearer {TOKEN}"

    def _forced(self):
        if self.force_status is not None:
            return web.Response(status=self.force_status, text=self.force_body or '')
        if self.force_body is not None:
            return web.Response(status=200, text=self.force_body, content_type='application/json')
        return None

    def row_for(self, analysis_id: str):
        return next((row for row in self.rows if row['analysis_id'] == analysis_id), None)

    async def recent(self, request: web.Request):
        body = await request.json()
        self.requests.append(('recent', body))
        if not self._authorized(request):
            return web.json_response({'success': False, 'error': 'Unauthorized'}, status=401)
        forced = self._forced()
        if forced is not None:
            return forced
        rows = sorted(self.rows, key=lambda row: iso_to_ms(row['created_at']), reverse=True)
        page = rows[body['offset']:body['offset'] + body['limit']]
        return web.json_response({'success': True, 'data': {
            'analyses': [transformed(row) for row in page],
            'pagination': {'total': len(rows), 'limit': body['limit'], 'offset': body['offset'],
                           'has_more': body['offset'] + len(page) < len(rows)},
        }})

    async def add(self, request: web.Request):
        body = await request.json()
        self.requests.append(('add', body))
        forced = self._forced()
        if forced is not None:
            return forced
        if self.row_for(body['id']) is not None:
            return web.json_response({'success': False, 'error': 'Analysis already exists',
                                      'code': 'DUPLICATE_ID'}, status=409)
        row = {
            'id': str(uuid.uuid4()),
            'analysis_id': body['id'],
            'session_id': body['session_id'],
            'analysis_type': body['type'],
            'analysis_title': body.get('title') or f"{body['type']} Analysis",
            'analysis_data': body['result'],
            'created_at': ms_to_iso(body['timestamp']),
        }
        self.rows.append(row)
        return web.json_response({'success': True, 'data': row})

    async def delete(self, request: web.Request):
        item_id = request.match_info['item_id']
        self.requests.append(('delete', item_id))
        row = self.row_for(item_id)
        if row is None:
            return web.json_response({'success': False, 'error': 'NOT_FOUND'}, status=404)
        self.rows.remove(row)
        return web.json_response({'success': True})

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post('/api/analyses/recent', self.recent)
        app.router.add_post('/api/analyses/add', self.add)
        app.router.add_delete('/api/analyses/{item_id}', self.delete)
        return app


@pytest.fixture
async def api():
    fake_api = FakeHistoryApi()
    server = test_utils.TestServer(fake_api.app())
    await server.start_server()
    fake_api.base_url = str(server.make_url(''))
    yield fake_api
    await server.close()


@pytest.fixture
async def client(api):
    async def token_provider():
        return TOKEN

    remote = HttpHistoryRemote(api.base_url, token_provider, session_id="session-1", timeout_seconds=5)
    yield remote
    await remote.close()


class TestHttpHistoryRemote:
    """履歴APIクライアントのテスト"""

    async def test_fetch_recent_uses_client_ids(self, client, api):
        page = await client.fetch_recent(HistoryQuery(limit=2, offset=0))

        assert [item.id for item in page.items] == ["a3", "a2"]
        assert page.items[0].input == "owl"
        assert page.items[0].type == AnalysisType.WORD
        assert page.items[0].timestamp == iso_to_ms("2025-01-03T00:00:00.000Z")
        assert page.total == 3
        assert page.has_more
        assert api.requests[0][1]['type'] == 'all'

    async def test_fetch_since_stops_at_watermark(self, client, api):
        watermark = iso_to_ms(api.row_for("a1")['created_at'])

        items = await client.fetch_since(watermark)

        assert [item.id for item in items] == ["a3", "a2"]
        assert [kind for kind, _ in api.requests] == ['recent']
        assert api.requests[0][1]['offset'] == 0

    async def test_date_range_is_sent_as_iso(self, client, api):
        await client.fetch_recent(HistoryQuery(date_range=(0, 1500)))

        assert api.requests[0][1]['date_range'] == {
            'start': "1970-01-01T00:00:00.000Z",
            'end': "1970-01-01T00:00:01.500Z",
        }

    async def test_upload_is_idempotent(self, client, api):
        """409 DUPLICATE_ID は受理扱い"""
        item = HistoryItem(id="n1", type="word", input="serendipity",
                           result={'definitions': {'root_meaning': 'happy accident'}}, timestamp=5)

        await client.upload_item(item)
        await client.upload_item(item)

        added = [body for kind, body in api.requests if kind == 'add']
        assert len(added) == 2
        assert added[0]['input_text'] == "serendipity"
        assert added[0]['title'] == "serendipity"
        assert added[0]['summary'] == "Word: serendipity - happy accident"
        assert added[0]['session_id'] == "session-1"
        assert [row['analysis_id'] for row in api.rows].count("n1") == 1

    async def test_uploaded_item_reads_back_under_its_id(self, client, api):
        item = HistoryItem(id="n1", type="word", input="serendipity", timestamp=1767225600123)

        await client.upload_item(item)
        page = await client.fetch_recent(HistoryQuery(limit=1))

        assert api.row_for("n1")['id'] != "n1"
        assert page.items[0].id == "n1"
        assert page.items[0].timestamp == 1767225600123

    async def test_remove_missing_item_is_ok(self, client, api):
        """404 は削除済み扱い"""
        await client.remove_item("never-existed")
        assert api.requests == [('delete', 'never-existed')]

    async def test_unauthorized(self, api):
        async def bad_token():
            return "wrong"

        async with HttpHistoryRemote(api.base_url, bad_token) as remote:
            with pytest.raises(AuthenticationError):
                await remote.fetch_since(0)

    async def test_missing_token_fails_before_request(self, api):
        async def no_token():
            return None

        async with HttpHistoryRemote(api.base_url, no_token) as remote:
            with pytest.raises(AuthenticationError):
                await remote.fetch_recent(HistoryQuery())

        assert api.requests == []

    @pytest.mark.parametrize("status, error", [
        (500, RemoteUnavailableError),
        (503, RemoteUnavailableError),
        (429, RemoteUnavailableError),
        (400, RemoteRejectedError),
        (422, RemoteRejectedError),
    ])
    async def test_status_mapping(self, client, api, status, error):
        api.force_status = status
        with pytest.raises(error) as excinfo:
            await client.upload_item(HistoryItem(id="x", type="word", input="x"))
        assert excinfo.value.status == status

    async def test_malformed_body(self, client, api):
        api.force_body = "<html>oops</html>"
        with pytest.raises(RemoteResponseError):
            await client.fetch_since(0)

    async def test_missing_fields(self, client, api):
        api.force_body = '{"success": true, "data": {}}'
        with pytest.raises(RemoteResponseError):
            await client.fetch_recent(HistoryQuery())

    async def test_connection_refused(self):
        async def token_provider():
            return TOKEN

        remote = HttpHistoryRemote("http://127.0.0.1:9", token_provider, timeout_seconds=2)
        try:
            with pytest.raises(RemoteUnavailableError):
                await remote.fetch_since(0)
        finally:
            await remote.close()


class TestEngineOverHttp:
    """HTTPクライアント経由の同期エンジン"""

    @pytest.fixture
    async def http_engine(self, client, memory_storage):
        async def no_sleep(_delay):
            return None

        engine = SyncEngine(
            state=PersistedState(memory_storage, storage_key_for("user-1")),
            remote=client,
            error_handler=ErrorHandler({'timeout_seconds': 5.0}, sleep=no_sleep),
            config={'page_limit': 2},
        )
        await engine.load()
        return engine

    async def test_uploaded_item_is_not_duplicated(self, http_engine, api):
        """アップロード済みアイテムは同期後もキャッシュに1件だけ"""
        item = HistoryItem(id="local-1", type="word", input="serendipity", timestamp=1735948800000)
        await http_engine.add_item(item)

        report = await http_engine.sync()

        ids = [cached.id for cached in http_engine.cache.list()]
        assert ids.count("local-1") == 1
        assert set(ids) == {"local-1", "a1", "a2", "a3"}
        assert report.uploaded == 0
        assert [kind for kind, _ in api.requests].count('add') == 1

        await http_engine.sync()
        assert len(http_engine.cache) == 4


class TestRemoteRowParsing:
    """リモート行の正規化テスト"""

    def test_input_from_meta(self):
        item = parse_remote_item(db_row("a", "cat", "1970-01-01T00:00:01.500Z"))
        assert item.id == "a"
        assert item.input == "cat"
        assert item.timestamp == 1500

    def test_row_id_used_without_analysis_id(self):
        row = db_row("a", "cat", "1970-01-01T00:00:01Z")
        row['analysis_id'] = None
        assert parse_remote_item(row).id == row['id']

    def test_input_falls_back_to_title(self):
        row = db_row("a", "cat", "1970-01-01T00:00:01Z")
        row['analysis_data'] = {}
        row['analysis_title'] = "Cat title"
        assert parse_remote_item(row).input == "Cat title"

    def test_normalized_shape(self):
        item = parse_remote_item({'id': 'row-1', 'analysis_id': 'a', 'type': 'paragraph',
                                  'input': 'text', 'timestamp': 7})
        assert item.type == AnalysisType.PARAGRAPH
        assert item.id == "a"

    def test_summary_fallback(self):
        item = HistoryItem(id="s", type="sentence", input="The cat sat on the mat.")
        assert generate_summary(item) == "sentence analysis of: The cat sat on the mat."


class TestTimestampParsing:
    """ISO 8601 → エポックミリ秒"""

    def test_postgres_fractional_seconds(self):
        assert iso_to_ms("2025-01-01T00:00:00.12345+00:00") == 1735689600123
        assert iso_to_ms("2025-01-01 00:00:00.5+00") == 1735689600500

    def test_offsets(self):
        assert iso_to_ms("2025-01-01T09:00:00+09:00") == iso_to_ms("2025-01-01T00:00:00Z")
        assert iso_to_ms("2024-12-31T19:30:00-0430") == 1735689600000

    def test_millisecond_exact(self):
        assert iso_to_ms("2025-01-01T00:00:00.001Z") == 1735689600001
        assert iso_to_ms(ms_to_iso(1735689600999)) == 1735689600999
        assert ms_to_iso(1500) == "1970-01-01T00:00:01.500Z"

    def test_invalid(self):
        with pytest.raises(ValueError):
            iso_to_ms("yesterday")


class TestErrorHandler:
    """エラーハンドラーのテスト"""

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def handler(self, sleeps):
        async def record_sleep(delay):
            sleeps.append(delay)
        return ErrorHandler({'base_delay_seconds': 1.0, 'max_delay_seconds': 3.0,
                             'timeout_seconds': 1.0}, sleep=record_sleep)

    async def test_retries_transient_errors_with_backoff(self, handler, sleeps):
        calls = []

        async def flaky():
            calls.append(1)
            raise RemoteUnavailableError("down", 503)

        with pytest.raises(RemoteUnavailableError):
            await handler.execute("flaky", flaky)

        assert len(calls) == 3
        assert sleeps == [1.0, 2.0]
        assert handler.get_statistics() == {'network_error': 3}

    async def test_recovers_after_transient_error(self, handler):
        attempts = []

        async def recovers():
            attempts.append(1)
            if len(attempts) < 2:
                raise RemoteUnavailableError("blip")
            return "ok"

        assert await handler.execute("recovers", recovers) == "ok"

    async def test_authentication_is_not_retried(self, handler, sleeps):
        calls = []

        async def unauthorized():
            calls.append(1)
            raise AuthenticationError("expired", 401)

        with pytest.raises(AuthenticationError):
            await handler.execute("auth", unauthorized)

        assert len(calls) == 1
        assert sleeps == []

    async def test_backoff_is_capped_and_honors_retry_after(self, handler):
        strategy = handler.STRATEGIES[ErrorType.RATE_LIMIT_ERROR]
        assert handler.backoff_delay(3, strategy) == 3.0
        assert handler.backoff_delay(0, strategy, retry_after=2) == 2.0

    async def test_timeout_becomes_unavailable(self, sleeps):
        async def record_sleep(delay):
            sleeps.append(delay)
        handler = ErrorHandler({'timeout_seconds': 0.01}, sleep=record_sleep)

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(RemoteUnavailableError):
            await handler.execute("slow", slow, attempts=1)

    def test_classification(self):
        handler = ErrorHandler()
        assert handler.classify_error(RemoteUnavailableError("x", 429)) == ErrorType.RATE_LIMIT_ERROR
        assert handler.classify_error(RemoteRejectedError("x", 400)) == ErrorType.REJECTED_ERROR
        assert handler.classify_error(ConnectionResetError()) == ErrorType.NETWORK_ERROR
        assert handler.classify_error(RuntimeError("boom")) == ErrorType.UNKNOWN_ERROR
        assert handler.classify_error(RuntimeError("connection timeout")) == ErrorType.UNKNOWN_ERROR
