"""
MagicKit CDN Helpers

- CDNService: media URLs, responsive srcsets, purge requests
- headers: Cache-Control policies, ETags and 304 handling for responses
"""

from magickit.cdn.config import CDNCacheHeaders, CDNConfig
from magickit.cdn.headers import (
    CacheHeadersBuilder,
    apply_asset_headers,
    check_not_modified,
    etags_match,
    generate_etag,
    policy_for,
)
from magickit.cdn.service import CDNService

__all__ = [
    "CDNConfig",
    "CDNCacheHeaders",
    "CDNService",
    "CacheHeadersBuilder",
    "apply_asset_headers",
    "check_not_modified",
    "etags_match",
    "generate_etag",
    "policy_for",
]
