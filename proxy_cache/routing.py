"""Route identity and cache key derivation.

A request is identified by its RouteParams: language, route and whether it
is a layout service (API) request. Layout service requests carry their
identity in the ``item`` and ``sc_lang`` query parameters; every other URL
is handed to the rendering host's route parser.

Cache keys are name-based UUIDs (uuid5) of the lower-cased composite
``"{api}_{language}_{route}"`` under one fixed namespace, so they are
reproducible across processes and safe to use as file names.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, fields, replace
from typing import Any
from urllib.parse import parse_qs, urlsplit

from proxy_cache.exceptions import ConfigurationError

CACHE_KEY_NAMESPACE = uuid.UUID("5ffd6089-2e7f-4cc8-9382-481051ff291e")
API_KEY_MARKER = "api"

# Returns None, a mapping with any of the RouteParams field names, or a RouteParams.
RouteUrlParser = Callable[[str], "Mapping[str, Any] | RouteParams | None"]


@dataclass(frozen=True)
class RouteParams:
    """Normalised identity of a request."""

    language: str
    route: str | None = None
    is_api_request: bool = False

    def merged(self, overrides: Mapping[str, Any] | RouteParams | None) -> RouteParams:
        """Return a copy with every non-empty field of ``overrides`` applied."""
        if overrides is None:
            return self
        if isinstance(overrides, RouteParams):
            overrides = asdict(overrides)
        names = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if k in names and v not in (None, "")}
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "route": self.route,
            "isApiRequest": self.is_api_request,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RouteParams:
        return cls(
            language=data["language"],
            route=data.get("route"),
            is_api_request=bool(data.get("isApiRequest", False)),
        )


def _url_path(url: str) -> str:
    """Path plus query string of ``url``, keeping the leading slash."""
    parts = urlsplit(url)
    path = parts.path or "/"
    return f"{path}?{parts.query}" if parts.query else path


def _first(query: dict[str, list[str]], name: str) -> str | None:
    values = query.get(name)
    return values[0] if values else None


def resolve_route_params(
    url: str,
    layout_service_route: str,
    default_language: str,
    parse_route_url: RouteUrlParser | None = None,
) -> RouteParams:
    """Resolve the RouteParams for a request URL.

    Merge precedence for rendering-host URLs: defaults, then whatever the
    parser returns, then the URL's own path as route if none was supplied.
    The parser is known to strip the leading slash, which the backfill keeps.
    """
    if layout_service_route in url:
        query = parse_qs(urlsplit(url).query, keep_blank_values=True)
        return RouteParams(
            language=_first(query, "sc_lang") or default_language,
            route=_first(query, "item"),
            is_api_request=True,
        )

    params = RouteParams(language=default_language, is_api_request=False)
    if parse_route_url is not None:
        params = params.merged(parse_route_url(url))

    if not params.route:
        params = replace(params, route=_url_path(url))
    return params


def derive_cache_key(route_params: RouteParams | None) -> str:
    """Return the deterministic cache key for ``route_params``."""
    if route_params is None:
        raise ConfigurationError("route_params cannot be None")

    api = API_KEY_MARKER if route_params.is_api_request else ""
    composite = f"{api}_{route_params.language}_{route_params.route}".lower()
    return str(uuid.uuid5(CACHE_KEY_NAMESPACE, composite))
