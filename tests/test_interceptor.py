"""Tests for ResponseInterceptor, driven with raw ASGI messages."""

from __future__ import annotations

import gzip
import json
from typing import Any
from unittest.mock import AsyncMock

import pytest

from proxy_cache.cacheability import ROUTE_CACHEABLE_STATE
from proxy_cache.config import ProxyCacheSettings
from proxy_cache.exceptions import OversizeError
from proxy_cache.interceptor import InterceptorState, ResponseInterceptor
from tests.conftest import make_route

LAYOUT = {"sitecore": {"context": {"cacheable": True}, "route": {"name": "home"}}}


class RecordingSend:
    """Collects every message forwarded to the real send channel."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    async def __call__(self, message: dict[str, Any]) -> None:
        self.messages.append(message)

    @property
    def start(self) -> dict[str, Any]:
        return next(m for m in self.messages if m["type"] == "http.response.start")

    @property
    def headers(self) -> dict[str, str]:
        return {k.decode(): v.decode() for k, v in self.start["headers"]}

    @property
    def body(self) -> bytes:
        return b"".join(m.get("body", b"") for m in self.messages if m["type"] == "http.response.body")


def _start(status: int = 200, headers: dict[str, str] | None = None) -> dict[str, Any]:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return {"type": "http.response.start", "status": status, "headers": raw}


def _body(chunk: bytes, more_body: bool = False) -> dict[str, Any]:
    return {"type": "http.response.body", "body": chunk, "more_body": more_body}


@pytest.fixture
def sink() -> RecordingSend:
    return RecordingSend()


def _interceptor(sink, store, settings, route_params=None, scope=None) -> ResponseInterceptor:
    return ResponseInterceptor(
        sink,
        scope if scope is not None else {"type": "http"},
        route_params or make_route("/home", is_api_request=True),
        store,
        settings,
    )


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_states_progress_in_order(self, sink, memory_store, fake_settings):
        interceptor = _interceptor(sink, memory_store, fake_settings)
        assert interceptor.state == InterceptorState.ARMED

        await interceptor(_start(headers={"content-type": "application/json"}))
        await interceptor(_body(b'{"a":', more_body=True))
        assert interceptor.state == InterceptorState.BUFFERING
        assert sink.messages == []

        await interceptor(_body(b"1}"))
        assert interceptor.state == InterceptorState.FINALIZED
        assert len(sink.messages) == 2

    @pytest.mark.asyncio
    async def test_write_after_finish_is_rejected(self, sink, memory_store, fake_settings):
        interceptor = _interceptor(sink, memory_store, fake_settings)
        await interceptor(_start())
        await interceptor(_body(b"{}"))
        with pytest.raises(RuntimeError):
            interceptor.write(b"more")

    @pytest.mark.asyncio
    async def test_miss_header_added(self, sink, memory_store, fake_settings):
        interceptor = _interceptor(sink, memory_store, fake_settings, make_route("/page"))
        await interceptor(_start(headers={"content-type": "text/html"}))
        await interceptor(_body(b"<p>x</p>"))
        assert sink.headers["x-proxy-cache"] == "MISS"

    @pytest.mark.asyncio
    async def test_miss_header_can_be_disabled(self, sink, memory_store):
        settings = ProxyCacheSettings(set_proxy_cache_headers=False)
        interceptor = _interceptor(sink, memory_store, settings, make_route("/page"))
        await interceptor(_start())
        await interceptor(_body(b"x"))
        assert "x-proxy-cache" not in sink.headers

    @pytest.mark.asyncio
    async def test_other_messages_pass_through(self, sink, memory_store, fake_settings):
        interceptor = _interceptor(sink, memory_store, fake_settings)
        message = {"type": "http.response.trailers", "headers": [], "more_trailers": False}
        await interceptor(message)
        assert sink.messages == [message]

    @pytest.mark.asyncio
    async def test_pathsend_forwards_held_start_first(self, sink, memory_store, fake_settings):
        route = make_route("/files/report.pdf")
        scope = {"type": "http", "state": {ROUTE_CACHEABLE_STATE: True}}
        interceptor = _interceptor(sink, memory_store, fake_settings, route, scope)

        await interceptor(_start(headers={"content-type": "application/pdf"}))
        await interceptor({"type": "http.response.pathsend", "path": "/tmp/report.pdf"})

        assert [m["type"] for m in sink.messages] == ["http.response.start", "http.response.pathsend"]
        assert interceptor.state == InterceptorState.FINALIZED
        assert await memory_store.get(route) is None

    @pytest.mark.asyncio
    async def test_explicit_finish_payload_replaces_buffer(self, sink, memory_store, fake_settings):
        route = make_route("/page")
        scope = {"type": "http", "state": {ROUTE_CACHEABLE_STATE: True}}
        interceptor = _interceptor(sink, memory_store, fake_settings, route, scope)

        await interceptor(_start(headers={"content-type": "text/html", "content-length": "3"}))
        await interceptor(_body(b"old", more_body=True))
        await interceptor.finish(b"<p>explicit</p>")

        assert interceptor.state == InterceptorState.FINALIZED
        assert sink.body == b"<p>explicit</p>"
        assert sink.headers["content-length"] == str(len(b"<p>explicit</p>"))
        entry = await memory_store.get(route)
        assert entry is not None
        assert entry.body == "<p>explicit</p>"

    @pytest.mark.asyncio
    async def test_explicit_finish_payload_is_decoded_for_layout_requests(self, sink, memory_store, fake_settings):
        route = make_route("/home", is_api_request=True)
        interceptor = _interceptor(sink, memory_store, fake_settings, route)

        await interceptor(_start(headers={"content-type": "application/json", "content-encoding": "gzip"}))
        await interceptor.finish(gzip.compress(json.dumps(LAYOUT).encode()))

        assert json.loads(sink.body) == LAYOUT
        assert "content-encoding" not in sink.headers
        assert await memory_store.get(route) is not None


class TestLayoutServiceResponses:
    @pytest.mark.asyncio
    async def test_cacheable_payload_is_stored(self, sink, memory_store, fake_settings):
        params = make_route("/home", is_api_request=True)
        interceptor = _interceptor(sink, memory_store, fake_settings, params)

        await interceptor(_start(headers={"content-type": "application/json", "x-test": "1"}))
        await interceptor(_body(json.dumps(LAYOUT).encode()))

        entry = await memory_store.get(params)
        assert entry is not None
        assert json.loads(entry.body) == LAYOUT
        assert entry.content_type == "application/json"
        assert entry.headers == {"x-test": "1"}
        assert interceptor.cached is True

    @pytest.mark.asyncio
    async def test_gzip_payload_delivered_decompressed(self, sink, memory_store, fake_settings):
        """The client gets plain JSON without content-encoding; the cache stores JSON."""
        params = make_route("/home", is_api_request=True)
        interceptor = _interceptor(sink, memory_store, fake_settings, params)
        compressed = gzip.compress(json.dumps(LAYOUT).encode())

        await interceptor(
            _start(
                headers={
                    "content-type": "application/json",
                    "content-encoding": "gzip",
                    "content-length": str(len(compressed)),
                }
            )
        )
        await interceptor(_body(compressed[:10], more_body=True))
        await interceptor(_body(compressed[10:]))

        assert "content-encoding" not in sink.headers
        assert json.loads(sink.body) == LAYOUT
        assert sink.headers["content-length"] == str(len(sink.body))
        entry = await memory_store.get(params)
        assert json.loads(entry.body) == LAYOUT

    @pytest.mark.asyncio
    async def test_gzip_non_cacheable_payload_not_stored(self, sink, memory_store, fake_settings):
        """The evaluator sees the decompressed JSON, not the compressed bytes."""
        params = make_route("/private", is_api_request=True)
        interceptor = _interceptor(sink, memory_store, fake_settings, params)
        payload = {"sitecore": {"context": {"cacheable": False}}}

        await interceptor(_start(headers={"content-encoding": "gzip"}))
        await interceptor(_body(gzip.compress(json.dumps(payload).encode())))

        assert await memory_store.get(params) is None
        assert json.loads(sink.body) == payload

    @pytest.mark.asyncio
    async def test_missing_context_is_not_stored(self, sink, memory_store, fake_settings):
        params = make_route("/home", is_api_request=True)
        interceptor = _interceptor(sink, memory_store, fake_settings, params)
        await interceptor(_start(headers={"content-type": "application/json"}))
        await interceptor(_body(b'{"sitecore": {"route": {}}}'))
        assert await memory_store.get(params) is None

    @pytest.mark.asyncio
    async def test_non_200_is_not_stored(self, sink, memory_store, fake_settings):
        params = make_route("/missing", is_api_request=True)
        interceptor = _interceptor(sink, memory_store, fake_settings, params)
        await interceptor(_start(status=404, headers={"content-type": "application/json"}))
        await interceptor(_body(json.dumps(LAYOUT).encode()))
        assert await memory_store.get(params) is None
        assert sink.start["status"] == 404

    @pytest.mark.asyncio
    async def test_corrupt_gzip_delivered_unmodified(self, sink, memory_store, fake_settings):
        """Decode failures leave the response untouched and uncached."""
        params = make_route("/home", is_api_request=True)
        interceptor = _interceptor(sink, memory_store, fake_settings, params)
        await interceptor(_start(headers={"content-encoding": "gzip"}))
        await interceptor(_body(b"not really gzip"))

        assert sink.body == b"not really gzip"
        assert sink.headers["content-encoding"] == "gzip"
        assert await memory_store.get(params) is None

    @pytest.mark.asyncio
    async def test_non_json_body_delivered_unmodified(self, sink, memory_store, fake_settings):
        params = make_route("/home", is_api_request=True)
        interceptor = _interceptor(sink, memory_store, fake_settings, params)
        await interceptor(_start(headers={"content-type": "text/html"}))
        await interceptor(_body(b"<html>error</html>"))
        assert sink.body == b"<html>error</html>"
        assert await memory_store.get(params) is None

    @pytest.mark.asyncio
    async def test_downstream_headers_disabled_stores_none(self, sink, memory_store):
        settings = ProxyCacheSettings(use_downstream_headers=False, allowed_downstream_headers=["x-test"])
        params = make_route("/home", is_api_request=True)
        interceptor = _interceptor(sink, memory_store, settings, params)
        await interceptor(_start(headers={"content-type": "application/json", "x-test": "1"}))
        await interceptor(_body(json.dumps(LAYOUT).encode()))
        entry = await memory_store.get(params)
        assert entry.headers == {}


class TestRenderedPages:
    @pytest.mark.asyncio
    async def test_page_cached_when_view_bag_marked_cacheable(self, sink, memory_store, fake_settings):
        params = make_route("/about")
        scope = {"type": "http", "state": {ROUTE_CACHEABLE_STATE: True}}
        interceptor = _interceptor(sink, memory_store, fake_settings, params, scope)

        await interceptor(_start(headers={"content-type": "text/html; charset=utf-8"}))
        await interceptor(_body(b"<h1>About</h1>"))

        entry = await memory_store.get(params)
        assert entry.body == "<h1>About</h1>"
        assert sink.body == b"<h1>About</h1>"

    @pytest.mark.asyncio
    async def test_page_without_decision_not_cached(self, sink, memory_store, fake_settings):
        params = make_route("/about")
        interceptor = _interceptor(sink, memory_store, fake_settings, params)
        await interceptor(_start())
        await interceptor(_body(b"<h1>About</h1>"))
        assert await memory_store.get(params) is None
        assert sink.body == b"<h1>About</h1>"

    @pytest.mark.asyncio
    async def test_encoded_page_not_cached(self, sink, memory_store, fake_settings):
        params = make_route("/about")
        scope = {"type": "http", "state": {ROUTE_CACHEABLE_STATE: True}}
        interceptor = _interceptor(sink, memory_store, fake_settings, params, scope)
        compressed = gzip.compress(b"<h1>About</h1>")
        await interceptor(_start(headers={"content-encoding": "gzip"}))
        await interceptor(_body(compressed))
        assert await memory_store.get(params) is None
        assert sink.body == compressed


class TestOversizeGuard:
    @pytest.mark.asyncio
    async def test_oversize_raises_and_writes_nothing(self, sink):
        settings = ProxyCacheSettings(max_body_size=16)
        store = AsyncMock()
        interceptor = _interceptor(sink, store, settings)

        await interceptor(_start())
        await interceptor(_body(b"x" * 10, more_body=True))
        with pytest.raises(OversizeError) as exc_info:
            await interceptor(_body(b"x" * 10))

        assert exc_info.value.limit == 16
        store.write.assert_not_called()
        assert sink.messages == []

    @pytest.mark.asyncio
    async def test_body_at_limit_is_accepted(self, sink, memory_store):
        settings = ProxyCacheSettings(max_body_size=2)
        interceptor = _interceptor(sink, memory_store, settings)
        await interceptor(_start())
        await interceptor(_body(b"{}"))
        assert sink.body == b"{}"


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_store_exception_does_not_break_response(self, sink, fake_settings):
        store = AsyncMock()
        store.write.side_effect = RuntimeError("disk full")
        interceptor = _interceptor(sink, store, fake_settings)

        await interceptor(_start(headers={"content-type": "application/json"}))
        await interceptor(_body(json.dumps(LAYOUT).encode()))

        store.write.assert_awaited_once()
        assert json.loads(sink.body) == LAYOUT
        assert interceptor.cached is False
