"""Response cache for server-side rendering proxies.

Public API:
    ProxyCacheMiddleware    - ASGI middleware serving cached GET responses
    create_cache_middleware - Factory: configured middleware for an app
    ProxyCacheSettings      - pydantic-settings configuration
    get_settings            - Cached settings from the environment

    CacheStore              - Abstract base for all stores
    MemoryStore             - Process-local TTL store
    FileStore               - JSON-file store under a directory
    CacheEntry              - Stored response record
    create_cache_store      - Factory: selects store from settings
    create_file_cache       - Factory: FileStore from keyword options
    create_memory_cache     - Factory: MemoryStore from keyword options

    RouteParams             - Normalised request identity
    resolve_route_params    - URL -> RouteParams
    derive_cache_key        - RouteParams -> deterministic cache key

    ResponseInterceptor     - Buffering wrapper around ASGI send
    wrap_view_bag_hook      - Chain the cacheability recorder into a render hook
"""

from proxy_cache.backend import (
    CacheEntry,
    CacheStore,
    FileStore,
    MemoryStore,
    create_cache_store,
)
from proxy_cache.cacheability import is_layout_cacheable, wrap_view_bag_hook
from proxy_cache.config import ProxyCacheSettings, get_settings
from proxy_cache.exceptions import (
    ConfigurationError,
    DecodeError,
    OversizeError,
    ProxyCacheError,
    StorageError,
)
from proxy_cache.interceptor import ResponseInterceptor
from proxy_cache.middleware import (
    ProxyCacheMiddleware,
    create_cache_middleware,
    create_file_cache,
    create_memory_cache,
)
from proxy_cache.routing import RouteParams, derive_cache_key, resolve_route_params

__all__ = [
    "ProxyCacheMiddleware",
    "create_cache_middleware",
    "ProxyCacheSettings",
    "get_settings",
    "CacheStore",
    "MemoryStore",
    "FileStore",
    "CacheEntry",
    "create_cache_store",
    "create_file_cache",
    "create_memory_cache",
    "RouteParams",
    "resolve_route_params",
    "derive_cache_key",
    "ResponseInterceptor",
    "is_layout_cacheable",
    "wrap_view_bag_hook",
    "ProxyCacheError",
    "ConfigurationError",
    "StorageError",
    "DecodeError",
    "OversizeError",
]
