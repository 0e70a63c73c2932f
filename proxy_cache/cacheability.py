"""Cacheability decision embedded in layout service data.

The rendering host marks a route as cacheable (or not) through
``sitecore.context.cacheable``. The decision is tri-state:

- None: no ``sitecore.context`` object, the payload has no opinion
- True: context present without a ``cacheable`` flag, or flag is true
- False: flag present and false

The same decision is fed to the SSR render pipeline through its view bag
hook, which records it on the request state for the response interceptor.
"""

from __future__ import annotations

from collections.abc import Callable, MutableMapping
from typing import Any

ROUTE_CACHEABLE_STATE = "route_cacheable"

ViewBagHook = Callable[[Any, Any, Any, Any], Any]


def layout_context(layout_data: Any) -> dict[str, Any] | None:
    if not isinstance(layout_data, dict):
        return None
    sitecore = layout_data.get("sitecore")
    if not isinstance(sitecore, dict):
        return None
    context = sitecore.get("context")
    return context if isinstance(context, dict) else None


def is_layout_cacheable(layout_data: Any) -> bool | None:
    """Return the cacheability flag of a layout service payload."""
    context = layout_context(layout_data)
    if context is None:
        return None
    cacheable = context.get("cacheable")
    return True if cacheable is None else bool(cacheable)


def _state_of(request: Any) -> MutableMapping[str, Any] | None:
    """Return the mutable request-state mapping for a Request or ASGI scope."""
    scope = getattr(request, "scope", request)
    if not isinstance(scope, MutableMapping):
        return None
    return scope.setdefault("state", {})


def record_route_cacheable(request: Any, layout_data: Any) -> bool | None:
    """Store the decision for ``layout_data`` on the request state.

    Nothing is recorded when the payload has no context object.
    """
    decision = is_layout_cacheable(layout_data)
    state = _state_of(request)
    if decision is not None and state is not None:
        state[ROUTE_CACHEABLE_STATE] = decision
    return decision


def route_cacheable(scope: MutableMapping[str, Any]) -> bool | None:
    state = scope.get("state") or {}
    return state.get(ROUTE_CACHEABLE_STATE)


def wrap_view_bag_hook(original: ViewBagHook | None = None) -> ViewBagHook:
    """Chain the cacheability recorder in front of an existing view bag hook.

    The returned hook takes ``(request, response, proxy_response,
    layout_data)``, records the decision, then calls ``original`` (when
    given) and returns its result.
    """

    def create_view_bag(request: Any, response: Any, proxy_response: Any, layout_data: Any) -> Any:
        record_route_cacheable(request, layout_data)
        if original is None:
            return None
        return original(request, response, proxy_response, layout_data)

    return create_view_bag
