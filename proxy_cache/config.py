"""
Proxy cache configuration via pydantic-settings.

Every option can be supplied as a constructor keyword or through an
environment variable prefixed with PROXY_CACHE_ (or a .env file in dev).
List options are read from the environment as JSON arrays.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BYPASS_PATHS: list[str] = [
    "/layouts/system",
    "/sitecore/api/jss/dictionary",
    "/dist/",
    "/-/media",
    "/-/jssmedia",
    "/assets/",
    "/api/",
]


class CacheBackendKind(StrEnum):
    FILE = "file"
    MEMORY = "memory"


class ProxyCacheSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PROXY_CACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Response headers
    # ------------------------------------------------------------------ #
    set_proxy_cache_headers: bool = Field(
        default=True,
        description="Add x-proxy-cache: HIT / MISS to responses",
    )
    use_downstream_headers: bool = Field(
        default=True,
        description="Store and replay allow-listed headers set by the rendering host",
    )
    allowed_downstream_headers: list[str] = Field(
        default_factory=list,
        description="Response headers kept with a cached response (case-insensitive)",
    )

    # ------------------------------------------------------------------ #
    # Route resolution
    # ------------------------------------------------------------------ #
    default_language: str = Field(
        default="en",
        min_length=1,
        description="Language used when a request does not carry one",
    )
    layout_service_route: str = Field(
        default="/sitecore/api/layout/render/jss",
        min_length=1,
        description="URL fragment identifying layout service (API) requests",
    )

    # ------------------------------------------------------------------ #
    # Bypass rules
    # ------------------------------------------------------------------ #
    bypass_cache_by_path: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BYPASS_PATHS),
        description="URL prefixes that always skip the cache",
    )
    bypass_cache_by_user_agents: list[str] = Field(
        default_factory=list,
        description="User agents (exact, case-insensitive) that always skip the cache",
    )

    # ------------------------------------------------------------------ #
    # Storage
    # ------------------------------------------------------------------ #
    cache_backend: CacheBackendKind = CacheBackendKind.FILE
    cache_duration: int = Field(
        default=30,
        ge=1,
        description="Seconds a cached response stays valid",
    )
    cache_directory: str = Field(
        default=".cache",
        description="Directory for the file backend, relative to the working directory",
    )
    empty_on_startup: bool = Field(
        default=True,
        description="Purge the file backend directory when the store is created",
    )
    memory_max_entries: int = Field(default=10_000, ge=1)
    max_body_size: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        description="Largest response body (bytes) buffered for caching",
    )

    # ------------------------------------------------------------------ #
    # Logging
    # ------------------------------------------------------------------ #
    setup_logging: bool = Field(
        default=False,
        description="Let the middleware configure structlog from the two fields below",
    )
    log_level: str = "INFO"
    json_logs: bool = False

    @model_validator(mode="after")
    def _normalise_header_names(self) -> ProxyCacheSettings:
        self.allowed_downstream_headers = [
            name.strip().lower() for name in self.allowed_downstream_headers if name.strip()
        ]
        return self


@lru_cache(maxsize=1)
def get_settings() -> ProxyCacheSettings:
    """Return the cached settings instance (cleared in tests via cache_clear)."""
    return ProxyCacheSettings()
