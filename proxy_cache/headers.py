"""Allow-list based header propagation between responses and the cache.

A header sent more than once (``set-cookie`` typically) is kept as a list
of its values and replayed as separate header lines.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, MutableMapping
from typing import Any

DEFAULT_CONTENT_TYPE = "text/html; charset=utf-8"

HeaderValue = str | list[str]


def allowed_subset(headers: Mapping[str, str], allow_list: Iterable[str] | None) -> dict[str, HeaderValue]:
    """Return the headers whose names appear in ``allow_list`` (case-insensitive)."""
    allowed = {name.lower() for name in allow_list or ()}
    if not allowed:
        return {}

    subset: dict[str, HeaderValue] = {}
    for name, value in headers.items():
        if name.lower() not in allowed:
            continue
        existing = subset.get(name)
        if existing is None:
            subset[name] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            subset[name] = [existing, value]
    return subset


def apply_cached(headers: MutableMapping[str, Any], cached_headers: Mapping[str, HeaderValue] | None) -> None:
    """Copy cached headers onto an outgoing response.

    The content type falls back to HTML when neither the response nor the
    cached headers set one.
    """
    if "content-type" not in headers:
        headers["content-type"] = DEFAULT_CONTENT_TYPE
    for name, value in (cached_headers or {}).items():
        if isinstance(value, list) and hasattr(headers, "append"):
            if name in headers:
                del headers[name]
            for item in value:
                headers.append(name, item)
        else:
            headers[name] = value
