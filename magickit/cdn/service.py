"""
CDN Service

URL building, cache header policy and purge requests for media assets.

Purges go to the Cloudflare API when credentials are configured. Without
them the request is only recorded, which keeps local development and
tests free of network calls. Either way each purge is tracked in the cache
under cdn-invalidation:<id> for 24 hours and in a short in-process history.
"""

import asyncio
import copy
import dataclasses
import itertools
import logging
import re
import time
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlencode, urlparse

import httpx

from magickit.cache import keys
from magickit.cache.config import CacheTTL
from magickit.cache.service import CacheService
from magickit.cdn.config import CDNConfig
from magickit.cdn.headers import policy_for


logger = logging.getLogger(__name__)

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"

RESPONSIVE_WIDTHS = {"small": 480, "medium": 768, "large": 1200}
DEFAULT_SRCSET_SIZES = (480, 768, 1024, 1200, 1600)
DEFAULT_IMAGE_QUALITY = 85

_EXTENSION = re.compile(r"\.[^/.]+$")


class CDNService:
    """
    CDN integration for media assets and static content.

    Failures are logged and reported as False; nothing here raises into
    the request that triggered a purge.
    """

    def __init__(
        self,
        config: Optional[CDNConfig] = None,
        cache: Optional[CacheService] = None,
    ):
        self.config = config or CDNConfig()
        self._cache = cache
        self._history = deque(maxlen=self.config.history_size)

    # =========================================================================
    # URLs
    # =========================================================================

    def get_media_url(
        self,
        storage_key: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        quality: Optional[int] = None,
        format: Optional[str] = None,
        variant: Optional[str] = None,
    ) -> str:
        """
        CDN URL for a stored asset.

        Transformation params are only added when the CDN is enabled;
        otherwise the plain storage URL is returned.
        """
        url = f"{self.config.domain}/{storage_key}"
        if not self.config.enabled:
            return url

        params = [
            (name, value)
            for name, value in (
                ("w", width),
                ("h", height),
                ("q", quality),
                ("f", format),
                ("v", variant),
            )
            if value
        ]
        if params:
            url += "?" + urlencode(params)
        return url

    def get_optimized_image_url(
        self,
        storage_key: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        quality: int = DEFAULT_IMAGE_QUALITY,
    ) -> str:
        return self.get_media_url(storage_key, width=width, height=height, quality=quality)

    def get_responsive_image_urls(self, storage_key: str) -> Dict[str, Any]:
        """Small/medium/large URLs plus their WebP counterparts."""
        urls: Dict[str, Any] = {
            name: self.get_media_url(storage_key, width=width, quality=DEFAULT_IMAGE_QUALITY)
            for name, width in RESPONSIVE_WIDTHS.items()
        }
        urls["webp"] = {
            name: self.get_media_url(
                storage_key, width=width, quality=DEFAULT_IMAGE_QUALITY, format="webp"
            )
            for name, width in RESPONSIVE_WIDTHS.items()
        }
        return urls

    def generate_src_set(
        self,
        storage_key: str,
        sizes: Sequence[int] = DEFAULT_SRCSET_SIZES,
        format: Optional[str] = None,
    ) -> str:
        """srcset attribute value, e.g. "<url> 480w, <url> 768w"."""
        return ", ".join(
            f"{self.get_media_url(storage_key, width=size, quality=DEFAULT_IMAGE_QUALITY, format=format)} {size}w"
            for size in sizes
        )

    def generate_webp_src_set(
        self,
        storage_key: str,
        sizes: Sequence[int] = DEFAULT_SRCSET_SIZES,
    ) -> Dict[str, str]:
        return {
            "webp": self.generate_src_set(storage_key, sizes, format="webp"),
            "fallback": self.generate_src_set(storage_key, sizes),
        }

    def get_cache_headers(self, mime_type: str) -> str:
        """Cache-Control value for an asset's MIME type."""
        return policy_for(mime_type, self.config.cache_headers)

    # =========================================================================
    # Invalidation
    # =========================================================================

    async def invalidate_cache(
        self,
        paths: List[str],
        reason: Optional[str] = None,
    ) -> bool:
        """
        Purge paths from the CDN.

        Paths are storage keys; a trailing "/*" purges everything under a
        prefix and "/*" alone purges the whole zone.
        """
        if not self.config.enabled:
            logger.info("CDN not enabled, skipping cache invalidation")
            return True

        try:
            logger.info(f"Invalidating CDN cache for paths: {paths}")

            if self.config.has_purge_credentials:
                success = await self._purge_cloudflare(paths)
                provider = "cloudflare"
            else:
                success = True
                provider = "none"

            invalidation_id = f"inv-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
            record = {
                "id": invalidation_id,
                "paths": list(paths),
                "reason": reason,
                "status": "completed" if success else "failed",
                "provider": provider,
                "timestamp": datetime.utcnow(),
            }
            self._history.appendleft(record)

            if self._cache is not None:
                await self._cache.set(
                    keys.cdn_invalidation(invalidation_id),
                    record,
                    CacheTTL.CDN_INVALIDATION,
                )

            return success

        except Exception as e:
            logger.error(f"Error invalidating CDN cache: {e}")
            return False

    async def invalidate_media_cache(self, storage_key: str) -> bool:
        """Purge a media file and every variant stored under its base path."""
        base_path = _EXTENSION.sub("", storage_key)
        return await self.invalidate_cache(
            [storage_key, f"{base_path}/*"],
            reason="Media file updated",
        )

    async def purge_all_cache(self) -> bool:
        return await self.invalidate_cache(["/*"], reason="Manual purge all cache")

    def get_invalidation_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent invalidations first."""
        return [dict(record) for record in itertools.islice(self._history, limit)]

    async def _purge_cloudflare(self, paths: List[str]) -> bool:
        # Cloudflare takes files and prefixes in separate requests
        if "/*" in paths:
            return await self._post_purge({"purge_everything": True})

        files = [self._asset_url(p) for p in paths if not p.endswith("/*")]
        prefixes = [self._prefix(p[:-2]) for p in paths if p.endswith("/*")]

        success = True
        if files:
            success = await self._post_purge({"files": files}) and success
        if prefixes:
            success = await self._post_purge({"prefixes": prefixes}) and success
        return success

    async def _post_purge(self, body: Dict[str, Any]) -> bool:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{CLOUDFLARE_API_BASE}/zones/{self.config.cloudflare_zone_id}/purge_cache",
                headers={
                    "Authorization": f"Bearer {self.config.cloudflare_api_token}",
                    "Content-Type": "application/json",
                },
                json=body,
                timeout=self.config.purge_timeout_seconds,
            )

        if response.status_code == 200:
            logger.info(f"CDN purge accepted: {list(body)}")
            return True

        logger.warning(f"CDN purge rejected (status {response.status_code}): {response.text}")
        return False

    def _asset_url(self, path: str) -> str:
        return f"{self.config.domain.rstrip('/')}/{path.lstrip('/')}"

    def _prefix(self, path: str) -> str:
        # Prefixes are host + path, without a scheme
        parsed = urlparse(self._asset_url(path))
        return f"{parsed.netloc}{parsed.path}"

    # =========================================================================
    # Edge warming
    # =========================================================================

    async def preload_assets(self, storage_keys: List[str]) -> bool:
        """
        Warm edge caches with HEAD requests.

        True if at least one asset responded successfully.
        """
        if not self.config.enabled:
            return True

        logger.info(f"Preloading {len(storage_keys)} assets to CDN edge locations")

        try:
            async with httpx.AsyncClient(timeout=self.config.preload_timeout_seconds) as client:

                async def preload(storage_key: str) -> bool:
                    try:
                        response = await client.head(self.get_media_url(storage_key))
                        return response.is_success
                    except httpx.HTTPError as e:
                        logger.warning(f"Failed to preload asset {storage_key}: {e}")
                        return False

                results = await asyncio.gather(*(preload(k) for k in storage_keys))
        except Exception as e:
            logger.error(f"Error preloading assets: {e}")
            return False

        success_count = sum(results)
        logger.info(f"Successfully preloaded {success_count}/{len(storage_keys)} assets")
        return success_count > 0

    # =========================================================================
    # Configuration
    # =========================================================================

    def is_enabled(self) -> bool:
        return self.config.enabled and bool(self.config.domain)

    def get_config(self) -> CDNConfig:
        """Copy of the current configuration."""
        return copy.deepcopy(self.config)

    def update_config(self, **changes: Any):
        self.config = dataclasses.replace(self.config, **changes)
        if self._history.maxlen != self.config.history_size:
            self._history = deque(self._history, maxlen=self.config.history_size)
