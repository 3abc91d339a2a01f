"""
Cache Key Registry

Builds every cache key the application uses, so producers and consumers
agree on names without sharing a central enum.

Key shape: namespace:component[:component...]

Components are percent-escaped (':' and glob metacharacters never appear
raw), and omitted optional components use '~' sentinels that escaping can't
produce. Same inputs always give the same key; different inputs never
collide.
"""

import hashlib
import json
from datetime import date, datetime
from typing import Any, Mapping, NewType, Optional
from urllib.parse import quote


CacheKey = NewType("CacheKey", str)

ALL = "~all"
ROOT = "~root"
NONE = "~none"
CURRENT = "~current"


def escape_component(value: Any) -> str:
    """Escape one key component. '~' is reserved for sentinels."""
    if isinstance(value, (datetime, date)):
        value = value.isoformat()
    return quote(str(value), safe="").replace("~", "%7E")


def fingerprint(params: Any) -> str:
    """Stable short hash of a filter/params mapping, independent of key order."""
    param_str = json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.md5(param_str.encode()).hexdigest()[:12]


def _hashed(params: Mapping[str, Any]) -> str:
    # "#" is always escaped in plain components, so hashes never collide with them
    return "#" + fingerprint(dict(params))


def _component(value: Any, missing: str) -> str:
    if value is None or value == "":
        return missing
    if isinstance(value, Mapping):
        return _hashed(value)
    return escape_component(value)


def make_key(namespace: str, *components: str) -> CacheKey:
    """Join a namespace with already-escaped components."""
    return CacheKey(":".join((namespace,) + components))


def namespace_pattern(namespace: str, *components: Any) -> str:
    """
    Glob for everything under a namespace (and optional leading components).

    namespace_pattern("content-list", "type-1") -> "content-list:type-1:*"
    """
    parts = [namespace] + [escape_component(c) for c in components] + ["*"]
    return ":".join(parts)


# =============================================================================
# Content
# =============================================================================

def content(slug: str) -> CacheKey:
    return make_key("content", escape_component(slug))


def content_type(type_id: str) -> CacheKey:
    return make_key("content-type", escape_component(type_id))


def content_list(
    type_id: Optional[str] = None,
    status: Optional[str] = None,
    filters: Optional[Mapping[str, Any]] = None,
) -> CacheKey:
    """Content list for a type/status, plus a fingerprint of extra filters."""
    parts = [_component(type_id, ALL), _component(status, ALL)]
    if filters:
        parts.append(_hashed(filters))
    return make_key("content-list", *parts)


def seo(slug: str) -> CacheKey:
    return make_key("seo", escape_component(slug))


def structured_data(slug: str) -> CacheKey:
    return make_key("structured-data", escape_component(slug))


def page_render(slug: str) -> CacheKey:
    return make_key("page-render", escape_component(slug))


# =============================================================================
# Media
# =============================================================================

def media(media_id: str) -> CacheKey:
    return make_key("media", escape_component(media_id))


def media_list(
    folder_id: Optional[str] = None,
    filters: Optional[Any] = None,
) -> CacheKey:
    return make_key("media-list", _component(folder_id, ROOT), _component(filters, NONE))


def media_folder(folder_id: str, *parts: Any) -> CacheKey:
    """
    Folder record, or a sub-resource of it.

    media_folder("f1") -> "media-folder:f1"
    media_folder("f1", "children") -> "media-folder:f1:children"
    """
    return make_key(
        "media-folder",
        escape_component(folder_id),
        *(escape_component(p) for p in parts),
    )


def media_browser(
    folder_id: Optional[str] = None,
    search: Optional[str] = None,
) -> CacheKey:
    return make_key("media-browser", _component(folder_id, ROOT), _component(search, NONE))


# =============================================================================
# System dashboards
# =============================================================================

def system_metrics(timestamp: Any) -> CacheKey:
    return make_key("system-metrics", escape_component(timestamp))


def system_health() -> CacheKey:
    return make_key("system-health", CURRENT)


def system_alerts(alert_type: Optional[str] = None) -> CacheKey:
    return make_key("system-alerts", _component(alert_type, ALL))


# =============================================================================
# Query / API response memoization
# =============================================================================

def db_query(collection: str, query: Any) -> CacheKey:
    """Query documents are fingerprinted; plain strings are escaped as-is."""
    return make_key("db-query", escape_component(collection), _component(query, NONE))


def api_response(endpoint: str, params: Optional[Any] = None) -> CacheKey:
    return make_key("api-response", escape_component(endpoint), _component(params, NONE))


# =============================================================================
# Users
# =============================================================================

def user_session(user_id: str) -> CacheKey:
    return make_key("user-session", escape_component(user_id))


def user_permissions(user_id: str) -> CacheKey:
    return make_key("user-permissions", escape_component(user_id))


# =============================================================================
# CDN bookkeeping
# =============================================================================

def cdn_invalidation(invalidation_id: str) -> CacheKey:
    return make_key("cdn-invalidation", escape_component(invalidation_id))
