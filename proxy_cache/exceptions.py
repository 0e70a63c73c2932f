"""Exception types raised by the proxy cache.

Only ConfigurationError and OversizeError are meant to reach callers.
StorageError and DecodeError are raised internally and absorbed at the
component boundary, where they are logged and replaced by a cache miss
or a "not cacheable" decision.
"""

from __future__ import annotations


class ProxyCacheError(Exception):
    """Base class for all proxy cache errors."""


class ConfigurationError(ProxyCacheError, ValueError):
    """Invalid input to key derivation or a store operation (e.g. no route params)."""


class StorageError(ProxyCacheError):
    """A cache store failed to read or write a record."""


class DecodeError(ProxyCacheError):
    """A buffered body could not be decompressed or parsed as a JSON object."""


class OversizeError(ProxyCacheError):
    """The buffered response body grew past the configured maximum."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Buffered response body of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit
