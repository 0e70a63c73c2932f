"""Proxy cache middleware for ASGI applications.

Sits in front of a server-side rendering host (or a proxy to one) and
serves previously rendered GET responses from a CacheStore.

Caching rules:
- Only GET requests are considered (every other method bypasses)
- URLs starting with a bypass prefix and listed user agents bypass
- Requests are keyed by RouteParams (language + route, or layout service
  item + language), never by the raw URL
- Only 200 responses whose payload / view bag marked them cacheable are
  stored

Headers added to responses:
- x-proxy-cache: HIT   - served from the cache
- x-proxy-cache: MISS  - rendered by the downstream application
"""

from __future__ import annotations

from collections.abc import Callable
from functools import partial
from typing import Any

import structlog
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

from proxy_cache.backend import CacheEntry, CacheStore, FileStore, MemoryStore, create_cache_store
from proxy_cache.cacheability import ViewBagHook, wrap_view_bag_hook
from proxy_cache.config import ProxyCacheSettings, get_settings
from proxy_cache.exceptions import ConfigurationError
from proxy_cache.headers import apply_cached
from proxy_cache.interceptor import CACHE_STATUS_HEADER, ResponseInterceptor
from proxy_cache.logging import bind_request_context, configure_logging
from proxy_cache.routing import RouteParams, RouteUrlParser, derive_cache_key, resolve_route_params

log = structlog.get_logger(__name__)


def _original_url(request: Request) -> str:
    """Path and query string as received, e.g. ``/about?x=1``."""
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


class ProxyCacheMiddleware:
    """Pure ASGI middleware caching rendered GET responses per route.

    Keyword options not covered by ``settings`` are applied on top of it,
    so ``app.add_middleware(ProxyCacheMiddleware, cache_duration=60)``
    works without building a settings object.
    """

    def __init__(
        self,
        app: ASGIApp,
        store: CacheStore | None = None,
        settings: ProxyCacheSettings | None = None,
        parse_route_url: RouteUrlParser | None = None,
        create_view_bag: ViewBagHook | None = None,
        **options: Any,
    ) -> None:
        self.app = app
        settings = settings or get_settings()
        if options:
            settings = ProxyCacheSettings(**{**settings.model_dump(), **options})
        self.settings = settings
        if settings.setup_logging:
            configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
        self.store = store if store is not None else create_cache_store(settings)
        self.parse_route_url = parse_route_url
        # Hand this to the rendering host in place of its own view bag hook.
        self.create_view_bag = wrap_view_bag_hook(create_view_bag)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        if self.should_bypass(request):
            await self.app(scope, receive, send)
            return

        url = _original_url(request)
        route_params = resolve_route_params(
            url,
            self.settings.layout_service_route,
            self.settings.default_language,
            self.parse_route_url,
        )
        bind_request_context(cache_key=derive_cache_key(route_params), path=url)

        entry = await self._lookup(route_params)
        if entry is None or not entry.body:
            interceptor = ResponseInterceptor(send, scope, route_params, self.store, self.settings)
            await self.app(scope, receive, interceptor)
            return

        log.debug("cache.middleware.hit", route=route_params.route, language=route_params.language)
        await self._cached_response(entry)(scope, receive, send)

    # ------------------------------------------------------------------
    # Bypass rules
    # ------------------------------------------------------------------

    def should_bypass(self, request: Request) -> bool:
        return (
            request.method != "GET"
            or self.is_excluded_path(_original_url(request))
            or self.is_excluded_user_agent(request.headers.get("user-agent"))
        )

    def is_excluded_path(self, url: str) -> bool:
        return any(url.startswith(prefix) for prefix in self.settings.bypass_cache_by_path)

    def is_excluded_user_agent(self, user_agent: str | None) -> bool:
        if not user_agent:
            return False
        user_agent = user_agent.lower()
        return any(user_agent == excluded.lower() for excluded in self.settings.bypass_cache_by_user_agents)

    # ------------------------------------------------------------------
    # Cache access
    # ------------------------------------------------------------------

    async def _lookup(self, route_params: RouteParams) -> CacheEntry | None:
        try:
            return await self.store.get(route_params)
        except ConfigurationError:
            raise
        except Exception as exc:
            log.warning("cache.middleware.lookup_failed", route=route_params.route, error=str(exc))
            return None

    def _cached_response(self, entry: CacheEntry) -> Response:
        response = Response(content=entry.body)
        if self.settings.set_proxy_cache_headers:
            response.headers[CACHE_STATUS_HEADER] = "HIT"
        if self.settings.use_downstream_headers:
            apply_cached(response.headers, entry.headers)
        if entry.content_type:
            response.headers["content-type"] = entry.content_type
        return response


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def create_cache_middleware(**options: Any) -> Callable[[ASGIApp], ProxyCacheMiddleware]:
    """Return a callable that wraps an ASGI app in a configured ProxyCacheMiddleware."""
    return partial(ProxyCacheMiddleware, **options)


def create_file_cache(**options: Any) -> FileStore:
    return FileStore(**options)


def create_memory_cache(**options: Any) -> MemoryStore:
    return MemoryStore(**options)
