"""
HTTP Cache Headers

Cache-Control and validator headers for media and page responses.

Three layers read these headers:
1. Browsers: max-age, immutable for fingerprinted media
2. The CDN edge: s-maxage; purged through CDNService when media changes
3. Conditional requests: ETag / Last-Modified answered with 304
"""

import hashlib
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

from fastapi import Request, Response

from magickit.cdn.config import CDNCacheHeaders


logger = logging.getLogger(__name__)

HTTP_DATE_FORMAT = "%a, %d %b %Y %H:%M:%S GMT"

# Cache-Control directives in the order they are emitted
SECONDS_DIRECTIVES = ("max-age", "s-maxage", "stale-while-revalidate")
FLAG_DIRECTIVES = ("must-revalidate", "immutable")


# =============================================================================
# Validators
# =============================================================================

def generate_etag(*components: Any, weak: bool = False) -> str:
    """
    Quoted ETag derived from the given values.

    generate_etag(media.id, media.updated_at) changes whenever either does.
    Pass weak=True for a W/ (semantically equivalent) validator.
    """
    digest = hashlib.md5(":".join(map(str, components)).encode()).hexdigest()[:16]
    return f'W/"{digest}"' if weak else f'"{digest}"'


def parse_etag(etag: str) -> str:
    """Opaque part of an ETag, without W/ and quotes."""
    if not etag:
        return ""
    if etag.startswith("W/"):
        etag = etag[2:]
    return etag.strip('"')


def etags_match(request_etag: Optional[str], current_etag: str) -> bool:
    """
    Weak comparison of an If-None-Match value against the current ETag.

    The header may list several ETags or be "*".
    """
    if not request_etag:
        return False

    current = parse_etag(current_etag)
    candidates = [c.strip() for c in request_etag.split(",")]
    return any(c == "*" or parse_etag(c) == current for c in candidates)


def format_http_date(dt: datetime) -> str:
    """Naive datetimes are taken as UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(HTTP_DATE_FORMAT)


def policy_for(mime_type: str, headers: Optional[CDNCacheHeaders] = None) -> str:
    """Cache-Control value for a MIME type under the given policy set."""
    headers = headers or CDNCacheHeaders()
    if mime_type.startswith("image/"):
        return headers.images
    if mime_type.startswith("video/"):
        return headers.videos
    if mime_type == "application/pdf" or mime_type.startswith("text/"):
        return headers.documents
    return headers.static


# =============================================================================
# Builder
# =============================================================================

class CacheHeadersBuilder:
    """
    Fluent builder for response cache headers.

    Usage:
        headers = (CacheHeadersBuilder()
            .max_age(300)
            .s_maxage(3600)
            .etag(page.id, page.updated_at)
            .build())

    Responses are public unless private() is called. no_store() overrides
    every other directive.
    """

    def __init__(self):
        self._seconds: Dict[str, int] = {}
        self._flags: set = set()
        self._scope = "public"
        self._no_cache = False
        self._no_store = False
        self._raw: Optional[str] = None
        self._etag: Optional[str] = None
        self._last_modified: Optional[datetime] = None
        self._vary: List[str] = []

    def max_age(self, seconds: int) -> "CacheHeadersBuilder":
        self._seconds["max-age"] = seconds
        return self

    def s_maxage(self, seconds: int) -> "CacheHeadersBuilder":
        """Lifetime at the CDN edge."""
        self._seconds["s-maxage"] = seconds
        return self

    def stale_while_revalidate(self, seconds: int) -> "CacheHeadersBuilder":
        self._seconds["stale-while-revalidate"] = seconds
        return self

    def public(self) -> "CacheHeadersBuilder":
        self._scope = "public"
        return self

    def private(self) -> "CacheHeadersBuilder":
        self._scope = "private"
        return self

    def immutable(self) -> "CacheHeadersBuilder":
        """The URL's content never changes (fingerprinted assets)."""
        self._flags.add("immutable")
        return self

    def must_revalidate(self) -> "CacheHeadersBuilder":
        self._flags.add("must-revalidate")
        return self

    def no_cache(self) -> "CacheHeadersBuilder":
        self._no_cache = True
        return self

    def no_store(self) -> "CacheHeadersBuilder":
        self._no_store = True
        return self

    def cache_control(self, value: str) -> "CacheHeadersBuilder":
        """Send value verbatim instead of the directives set on the builder."""
        self._raw = value
        return self

    def etag(self, *components: Any, weak: bool = False) -> "CacheHeadersBuilder":
        return self.etag_value(generate_etag(*components, weak=weak))

    def etag_value(self, value: str) -> "CacheHeadersBuilder":
        self._etag = value
        return self

    def last_modified(self, dt: datetime) -> "CacheHeadersBuilder":
        self._last_modified = dt
        return self

    def vary(self, headers: List[str]) -> "CacheHeadersBuilder":
        self._vary.extend(headers)
        return self

    def cache_control_value(self) -> str:
        if self._raw:
            return self._raw
        if self._no_store:
            return "no-store"

        directives = [self._scope]
        if self._no_cache:
            directives.append("no-cache")
        directives.extend(
            f"{name}={self._seconds[name]}"
            for name in SECONDS_DIRECTIVES
            if self._seconds.get(name, 0) > 0
        )
        directives.extend(name for name in FLAG_DIRECTIVES if name in self._flags)
        return ", ".join(directives)

    def build(self) -> Dict[str, str]:
        headers = {"Cache-Control": self.cache_control_value()}
        if self._etag:
            headers["ETag"] = self._etag
        if self._last_modified:
            headers["Last-Modified"] = format_http_date(self._last_modified)
        if self._vary:
            headers["Vary"] = ", ".join(self._vary)
        return headers

    def apply(self, response: Response) -> Response:
        """Set the built headers on a FastAPI response."""
        response.headers.update(self.build())
        return response


def apply_asset_headers(
    response: Response,
    mime_type: str,
    policies: Optional[CDNCacheHeaders] = None,
    etag: Optional[str] = None,
    last_modified: Optional[datetime] = None,
) -> Response:
    """
    Add an asset's cache policy and validators to a response.

    Args:
        response: FastAPI Response object
        mime_type: Asset MIME type, selects the Cache-Control policy
        policies: Policy set, defaults to the CDN defaults
        etag: ETag for conditional requests
        last_modified: When the asset last changed

    Returns:
        The same response, with headers set
    """
    builder = CacheHeadersBuilder().cache_control(policy_for(mime_type, policies))
    if etag:
        builder.etag_value(etag)
    if last_modified:
        builder.last_modified(last_modified)
    return builder.apply(response)


# =============================================================================
# Conditional requests
# =============================================================================

def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def check_not_modified(
    request: Request,
    etag: str,
    last_modified: Optional[datetime] = None,
) -> Optional[Response]:
    """
    A 304 response when the client's copy is current, else None.

    If-None-Match takes precedence; If-Modified-Since is only consulted
    when last_modified is known.

    Usage:
        not_modified = check_not_modified(request, etag, media.updated_at)
        if not_modified:
            return not_modified
    """
    if etags_match(request.headers.get("If-None-Match"), etag):
        response = Response(status_code=304)
        response.headers["ETag"] = etag
        return response

    if_modified_since = request.headers.get("If-Modified-Since")
    if last_modified is None or not if_modified_since:
        return None

    try:
        client_date = _as_utc(parsedate_to_datetime(if_modified_since))
    except (TypeError, ValueError):
        logger.debug(f"Ignoring malformed If-Modified-Since: {if_modified_since}")
        return None

    # HTTP dates have second precision
    if _as_utc(last_modified).replace(microsecond=0) > client_date:
        return None

    response = Response(status_code=304)
    response.headers["Last-Modified"] = format_http_date(last_modified)
    return response


# =============================================================================
# Presets
# =============================================================================

CACHE_PRESET_PAGE = {"max_age": 300, "s_maxage": 3600, "public": True}
CACHE_PRESET_SITEMAP = {"max_age": 3600, "public": True}
CACHE_PRESET_ROBOTS = {"max_age": 86400, "public": True}
CACHE_PRESET_ADMIN = {"max_age": 0, "no_store": True}


def builder_from_preset(preset: Dict[str, Any]) -> CacheHeadersBuilder:
    """Builder configured from one of the CACHE_PRESET_* dicts."""
    builder = CacheHeadersBuilder()
    if preset.get("no_store"):
        return builder.no_store()

    builder.max_age(preset.get("max_age", 0)).s_maxage(preset.get("s_maxage", 0))
    return builder.public() if preset.get("public", True) else builder.private()
