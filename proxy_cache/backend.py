"""Cache store implementations.

Defines the CacheStore ABC and two concrete implementations:
- MemoryStore: process-local TTL table (cachetools), lost on restart
- FileStore: one JSON record per cache key under a directory

Stores are keyed by RouteParams; the cache key itself is derived with
derive_cache_key(). Neither store raises on I/O trouble: a failed read
is a miss and a failed write is logged and dropped.

The factory function create_cache_store() selects the implementation
from settings.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog
from cachetools import TTLCache

from proxy_cache.config import CacheBackendKind, ProxyCacheSettings
from proxy_cache.exceptions import StorageError
from proxy_cache.headers import HeaderValue
from proxy_cache.routing import RouteParams, derive_cache_key

log = structlog.get_logger(__name__)

DEFAULT_DURATION = 30


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class CacheEntry:
    """A stored response. Replaced wholesale on rewrite, never patched."""

    route_params: RouteParams
    body: str
    content_type: str | None
    expires_at: datetime
    headers: dict[str, HeaderValue] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return _utcnow() < self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "routeParams": self.route_params.to_dict(),
            "headers": dict(self.headers),
            "data": self.body,
            "contentType": self.content_type,
            "expires": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        expires_at = datetime.fromisoformat(data["expires"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return cls(
            route_params=RouteParams.from_dict(data["routeParams"]),
            body=data["data"],
            content_type=data.get("contentType"),
            expires_at=expires_at,
            headers=dict(data.get("headers") or {}),
        )


class CacheStore(ABC):
    """Interface every cache store must implement."""

    def __init__(self, duration: int = DEFAULT_DURATION) -> None:
        self.duration = duration

    @abstractmethod
    async def get(self, route_params: RouteParams) -> CacheEntry | None:
        """Return the valid entry for route_params, or None if missing / expired."""

    @abstractmethod
    async def write(
        self,
        route_params: RouteParams,
        content_type: str | None,
        headers: dict[str, HeaderValue] | None,
        body: str | bytes | None,
    ) -> None:
        """Store a response. No-op for an empty body; never raises on I/O errors."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every stored entry."""

    async def close(self) -> None:
        """Release resources held by the store."""

    def _build_entry(
        self,
        route_params: RouteParams,
        content_type: str | None,
        headers: dict[str, HeaderValue] | None,
        body: str | bytes,
    ) -> CacheEntry:
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="replace")
        return CacheEntry(
            route_params=route_params,
            body=body,
            content_type=content_type,
            expires_at=_utcnow() + timedelta(seconds=self.duration),
            headers=dict(headers or {}),
        )


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class MemoryStore(CacheStore):
    """Process-local store backed by a cachetools TTLCache.

    The table evicts entries on its own once the duration has passed.
    No lock is taken: every operation runs on the event loop thread and
    a single put is atomic there.
    """

    def __init__(
        self,
        duration: int = DEFAULT_DURATION,
        max_entries: int = 10_000,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(duration)
        self._table: TTLCache[str, CacheEntry] = TTLCache(maxsize=max_entries, ttl=duration, timer=timer)

    async def get(self, route_params: RouteParams) -> CacheEntry | None:
        key = derive_cache_key(route_params)
        entry = self._table.get(key)
        if entry is None or not entry.is_valid:
            return None
        return entry

    async def write(
        self,
        route_params: RouteParams,
        content_type: str | None,
        headers: dict[str, HeaderValue] | None,
        body: str | bytes | None,
    ) -> None:
        if not body:
            return
        key = derive_cache_key(route_params)
        self._table[key] = self._build_entry(route_params, content_type, headers, body)
        log.debug("cache.memory.stored", key=key, ttl=self.duration)

    async def clear(self) -> None:
        self._table.clear()
        log.info("cache.memory.cleared")

    async def close(self) -> None:
        self._table.clear()

    def __len__(self) -> int:
        self._table.expire()
        return len(self._table)


# ---------------------------------------------------------------------------
# File store
# ---------------------------------------------------------------------------


class FileStore(CacheStore):
    """Directory-backed store, one ``<cache key>.json`` record per route.

    Validity is judged from the ``expires`` field inside each record, not
    from file timestamps. Blocking file I/O runs in the default executor.
    """

    def __init__(
        self,
        duration: int = DEFAULT_DURATION,
        directory: str | Path = ".cache",
        empty_on_startup: bool = True,
    ) -> None:
        super().__init__(duration)
        self.directory = Path(directory)
        if not self.directory.is_absolute():
            self.directory = Path.cwd() / self.directory
        self.empty_on_startup = empty_on_startup

        if empty_on_startup and self.directory.exists():
            shutil.rmtree(self.directory, ignore_errors=True)
            log.info("cache.file.purged", directory=str(self.directory))
        self.directory.mkdir(parents=True, exist_ok=True)

    def file_path(self, route_params: RouteParams) -> Path:
        return self.directory / f"{derive_cache_key(route_params)}.json"

    async def get(self, route_params: RouteParams) -> CacheEntry | None:
        path = self.file_path(route_params)
        loop = asyncio.get_running_loop()
        try:
            entry = await loop.run_in_executor(None, self._read, path)
        except StorageError as exc:
            log.warning("cache.file.read_failed", path=str(path), error=str(exc))
            return None
        if entry is None or not entry.is_valid:
            return None
        return entry

    async def write(
        self,
        route_params: RouteParams,
        content_type: str | None,
        headers: dict[str, HeaderValue] | None,
        body: str | bytes | None,
    ) -> None:
        if not body:
            return
        path = self.file_path(route_params)
        entry = self._build_entry(route_params, content_type, headers, body)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write, path, entry)
        except StorageError as exc:
            log.warning("cache.file.write_failed", path=str(path), error=str(exc))
            return
        log.debug("cache.file.stored", path=str(path), ttl=self.duration)

    async def clear(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._purge)
        log.info("cache.file.cleared", directory=str(self.directory))

    # ------------------------------------------------------------------
    # Blocking helpers (run in executor)
    # ------------------------------------------------------------------

    @staticmethod
    def _read(path: Path) -> CacheEntry | None:
        if not path.exists():
            return None
        try:
            raw = path.read_text(encoding="utf-8")
            return CacheEntry.from_dict(json.loads(raw))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StorageError(str(exc)) from exc

    def _write(self, path: Path, entry: CacheEntry) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(entry.to_dict()), encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            raise StorageError(str(exc)) from exc

    def _purge(self) -> None:
        for record in self.directory.glob("*.json"):
            record.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_cache_store(settings: ProxyCacheSettings) -> CacheStore:
    """Return the CacheStore selected by settings.cache_backend.

    Args:
        settings: ProxyCacheSettings instance.

    Returns:
        A CacheStore ready for use.
    """
    if settings.cache_backend == CacheBackendKind.MEMORY:
        log.info("cache.backend_selected", backend="memory", duration=settings.cache_duration)
        return MemoryStore(
            duration=settings.cache_duration,
            max_entries=settings.memory_max_entries,
        )

    log.info(
        "cache.backend_selected",
        backend="file",
        directory=settings.cache_directory,
        duration=settings.cache_duration,
    )
    return FileStore(
        duration=settings.cache_duration,
        directory=settings.cache_directory,
        empty_on_startup=settings.empty_on_startup,
    )
