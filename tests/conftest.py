"""
Shared test fixtures for pytest.

Provides common objects for all test modules:
- fake_settings: Proxy cache settings with test-friendly defaults
- memory_store: Fresh MemoryStore per test
- file_store: FileStore rooted in a per-test temporary directory
- clock: Controllable replacement for the store's UTC clock
- make_route: Helper to build RouteParams
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from proxy_cache.backend import FileStore, MemoryStore
from proxy_cache.config import ProxyCacheSettings, get_settings
from proxy_cache.logging import clear_context
from proxy_cache.routing import RouteParams


# ------------------------------------------------------------------ #
# Session / autouse housekeeping
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True)
def _isolate_global_state():
    """Clear the settings cache and structlog context around every test."""
    get_settings.cache_clear()
    clear_context()
    yield
    get_settings.cache_clear()
    clear_context()


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #

def make_route(
    route: str | None = "/home",
    language: str = "en",
    is_api_request: bool = False,
) -> RouteParams:
    return RouteParams(language=language, route=route, is_api_request=is_api_request)


class FakeClock:
    """Callable standing in for proxy_cache.backend._utcnow."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #

@pytest.fixture
def fake_settings(tmp_path: Path) -> ProxyCacheSettings:
    """Settings with a temp cache directory and a small allow-list."""
    return ProxyCacheSettings(
        cache_backend="memory",
        cache_directory=str(tmp_path / "cache"),
        allowed_downstream_headers=["X-Test", "cache-control"],
        max_body_size=64 * 1024,
    )


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore(duration=30)


@pytest.fixture
def file_store(tmp_path: Path) -> FileStore:
    return FileStore(duration=30, directory=tmp_path / "cache", empty_on_startup=True)


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    fake = FakeClock()
    monkeypatch.setattr("proxy_cache.backend._utcnow", fake)
    return fake
