"""Per-request response interception.

A ResponseInterceptor stands in for the ASGI ``send`` callable of one
request. It holds back the response start message, buffers every body
chunk, and once the last chunk arrives decides whether the response may
be cached. The (possibly rewritten) response is then forwarded to the
real ``send`` exactly once.

States: ARMED -> BUFFERING -> FINALIZED

Layout service (API) responses are decoded from the raw buffered bytes,
evaluated for ``sitecore.context.cacheable`` and always delivered to the
client decompressed. Rendered pages rely on the view bag hook having
recorded a decision on the request state.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

import structlog
from starlette.datastructures import MutableHeaders
from starlette.types import Message, Scope, Send

from proxy_cache.backend import CacheStore
from proxy_cache.cacheability import is_layout_cacheable, route_cacheable
from proxy_cache.config import ProxyCacheSettings
from proxy_cache.decoding import decode_content, is_compressed, parse_layout_service
from proxy_cache.exceptions import DecodeError, OversizeError
from proxy_cache.headers import HeaderValue, allowed_subset
from proxy_cache.routing import RouteParams

log = structlog.get_logger(__name__)

CACHE_STATUS_HEADER = "x-proxy-cache"


class InterceptorState(StrEnum):
    ARMED = "armed"
    BUFFERING = "buffering"
    FINALIZED = "finalized"


class ResponseInterceptor:
    """Buffering wrapper around the ASGI send channel of a single request."""

    def __init__(
        self,
        send: Send,
        scope: Scope,
        route_params: RouteParams,
        store: CacheStore,
        settings: ProxyCacheSettings,
    ) -> None:
        self._send = send
        self._scope = scope
        self.route_params = route_params
        self._store = store
        self._settings = settings

        self.state = InterceptorState.ARMED
        self.status_code = 200
        self._start_message: Message = {"type": "http.response.start", "status": 200, "headers": []}
        self.headers = MutableHeaders(scope=self._start_message)
        self._buffer = bytearray()
        self._start_held = False
        self.cached = False

    async def __call__(self, message: Message) -> None:
        message_type = message["type"]
        if message_type == "http.response.start":
            self.start(message)
        elif message_type == "http.response.body" and self.state != InterceptorState.FINALIZED:
            self.write(message.get("body", b""))
            if not message.get("more_body", False):
                await self.finish()
        else:
            # e.g. http.response.pathsend or trailers: the start must precede them
            await self._release()
            await self._send(message)

    # ------------------------------------------------------------------
    # Sink operations
    # ------------------------------------------------------------------

    def start(self, message: Message) -> None:
        """Hold back the response start; headers stay editable until finish()."""
        message.setdefault("headers", [])
        self._start_message = message
        self._start_held = True
        self.status_code = message["status"]
        self.headers = MutableHeaders(scope=message)
        if self._settings.set_proxy_cache_headers:
            self.headers[CACHE_STATUS_HEADER] = "MISS"

    def write(self, chunk: bytes) -> None:
        """Append a body chunk, enforcing the buffered size limit."""
        if self.state == InterceptorState.FINALIZED:
            raise RuntimeError("Response body written after it was finalized")
        self.state = InterceptorState.BUFFERING
        if not chunk:
            return
        self._buffer.extend(chunk)
        if len(self._buffer) > self._settings.max_body_size:
            log.error(
                "cache.interceptor.oversize",
                size=len(self._buffer),
                limit=self._settings.max_body_size,
            )
            raise OversizeError(len(self._buffer), self._settings.max_body_size)

    async def finish(self, payload: bytes | None = None) -> None:
        """Decide cacheability, write through the store, forward the response.

        ``payload``, when given, is the complete response body and replaces
        whatever was buffered so far.
        """
        if self.state == InterceptorState.FINALIZED:
            raise RuntimeError("Response already finalized")
        if payload is not None:
            self._buffer = bytearray()
            self.write(payload)
        self.state = InterceptorState.FINALIZED

        raw = bytes(self._buffer)
        body = raw
        cacheable = route_cacheable(self._scope)

        if self.route_params.is_api_request:
            body, cacheable = self._decode_layout_response(raw)
        elif cacheable and "content-encoding" in self.headers:
            log.debug(
                "cache.interceptor.encoded_page_skipped",
                encoding=self.headers["content-encoding"],
            )
            cacheable = False

        if body is not raw or "content-length" in self.headers:
            self.headers["content-length"] = str(len(body))

        if self.status_code == 200 and cacheable:
            await self._store_response(body)

        self._start_held = False
        await self._send(self._start_message)
        await self._send({"type": "http.response.body", "body": body, "more_body": False})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _release(self) -> None:
        """Forward a held start (and buffered body) without caching anything."""
        if not self._start_held or self.state == InterceptorState.FINALIZED:
            return
        self.state = InterceptorState.FINALIZED
        self._start_held = False
        log.debug("cache.interceptor.passthrough", route=self.route_params.route)
        await self._send(self._start_message)
        if self._buffer:
            await self._send({"type": "http.response.body", "body": bytes(self._buffer), "more_body": True})

    def _decode_layout_response(self, raw: bytes) -> tuple[bytes, bool | None]:
        """Return the body to deliver and the payload's cacheability.

        On any decode failure the raw body is delivered untouched and the
        response is treated as not cacheable.
        """
        encoding = self.headers.get("content-encoding")
        try:
            text = decode_content(raw, encoding)
            layout_data = parse_layout_service(text)
        except DecodeError as exc:
            log.warning(
                "cache.interceptor.decode_failed",
                route=self.route_params.route,
                error=str(exc),
            )
            return raw, None

        if is_compressed(encoding):
            del self.headers["content-encoding"]
        body = _serialise(layout_data) if layout_data else text.encode("utf-8")
        return body, is_layout_cacheable(layout_data)

    async def _store_response(self, body: bytes) -> None:
        cached_headers: dict[str, HeaderValue] = {}
        if self._settings.use_downstream_headers:
            cached_headers = allowed_subset(self.headers, self._settings.allowed_downstream_headers)

        try:
            await self._store.write(
                self.route_params,
                self.headers.get("content-type"),
                cached_headers,
                body.decode("utf-8", errors="replace"),
            )
        except Exception as exc:
            log.warning("cache.interceptor.store_failed", error=str(exc))
            return
        self.cached = bool(body)
        log.debug("cache.interceptor.stored", route=self.route_params.route)


def _serialise(data: Any) -> bytes:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
