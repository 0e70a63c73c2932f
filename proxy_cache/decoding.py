"""Decoding of buffered layout service bodies."""

from __future__ import annotations

import gzip
import json
import zlib
from typing import Any

from proxy_cache.exceptions import DecodeError


def _decompress(raw: bytes, content_encoding: str) -> bytes:
    if "gzip" in content_encoding:
        return gzip.decompress(raw)
    try:
        return zlib.decompress(raw)
    except zlib.error:
        # Some servers send raw deflate streams without the zlib header.
        return zlib.decompress(raw, -zlib.MAX_WBITS)


def is_compressed(content_encoding: str | None) -> bool:
    encoding = (content_encoding or "").lower()
    return "gzip" in encoding or "deflate" in encoding


def decode_content(raw: bytes, content_encoding: str | None = None) -> str:
    """Return ``raw`` as UTF-8 text, decompressing gzip / deflate first.

    Raises DecodeError when decompression or decoding fails. There is no
    retry as plain text after a failed decompression.
    """
    encoding = (content_encoding or "").lower()
    try:
        if is_compressed(encoding):
            raw = _decompress(raw, encoding)
        return raw.decode("utf-8")
    except (OSError, EOFError, zlib.error, UnicodeDecodeError) as exc:
        raise DecodeError(f"Could not decode {encoding or 'identity'} body: {exc}") from exc


def parse_layout_service(text: str) -> dict[str, Any]:
    """Parse a layout service payload; empty text yields an empty dict."""
    if not text:
        return {}
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise DecodeError(f"Layout service body is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise DecodeError(f"Layout service body is a JSON {type(data).__name__}, not an object")
    return data
