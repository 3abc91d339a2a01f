"""
CDN Configuration

Read from environment variables when a CDNConfig is built:
- CDN_ENABLED: Add transformation params and send purge requests
- CDN_DOMAIN: Public asset base URL (falls back to S3_ENDPOINT)
- CLOUDFLARE_ZONE_ID / CLOUDFLARE_API_TOKEN: Real purges; without them
  purges are recorded but not sent anywhere
"""

import os
from dataclasses import dataclass, field
from typing import Optional


ONE_YEAR = "public, max-age=31536000, immutable"
ONE_DAY = "public, max-age=86400"


@dataclass
class CDNCacheHeaders:
    """Cache-Control values by asset class."""
    images: str = ONE_YEAR
    videos: str = ONE_YEAR
    documents: str = ONE_DAY
    static: str = ONE_YEAR


@dataclass
class CDNConfig:
    """CDN settings for media URLs, headers and purges."""

    enabled: bool = field(default_factory=lambda: os.getenv(
        "CDN_ENABLED",
        "false"
    ).lower() == "true")
    domain: str = field(default_factory=lambda: (
        os.getenv("CDN_DOMAIN") or os.getenv("S3_ENDPOINT") or ""
    ))
    s3_bucket: str = field(default_factory=lambda: os.getenv("S3_BUCKET", ""))
    s3_region: str = field(default_factory=lambda: os.getenv("S3_REGION", ""))

    # Cloudflare purge API
    cloudflare_zone_id: Optional[str] = field(default_factory=lambda: os.getenv(
        "CLOUDFLARE_ZONE_ID"
    ) or None)
    cloudflare_api_token: Optional[str] = field(default_factory=lambda: os.getenv(
        "CLOUDFLARE_API_TOKEN"
    ) or None)

    cache_headers: CDNCacheHeaders = field(default_factory=CDNCacheHeaders)

    purge_timeout_seconds: float = 10.0
    preload_timeout_seconds: float = 5.0
    history_size: int = 100

    @property
    def has_purge_credentials(self) -> bool:
        return bool(self.cloudflare_zone_id and self.cloudflare_api_token)
