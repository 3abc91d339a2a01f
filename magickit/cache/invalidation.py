"""
Cache Invalidation Service

Event-driven cache invalidation for content and media mutations.

Single-item keys are deleted precisely. List and browse caches are cleared
broadly: their results depend on filters and sort order, and nothing tracks
which cached list contains which item.

Events trigger invalidation:
- CONTENT_UPDATED: the item's keys, every content list, every rendered page
- CONTENT_TYPE_UPDATED: the type, its lists, every rendered page
- MEDIA_MOVED: the item, its old and new folders, media lists and browsers
- MANUAL_INVALIDATE_ALL: everything, plus a full CDN purge
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, List, Optional, Union

from magickit.cache import keys
from magickit.cache.service import CacheService

if TYPE_CHECKING:
    from magickit.cdn.service import CDNService


logger = logging.getLogger(__name__)


CONTENT_NAMESPACES = (
    "content",
    "content-type",
    "content-list",
    "seo",
    "structured-data",
    "page-render",
)


class CacheEvent(Enum):
    """Events that trigger cache invalidation."""

    # Content lifecycle
    CONTENT_CREATED = "content_created"
    CONTENT_UPDATED = "content_updated"
    CONTENT_DELETED = "content_deleted"
    CONTENT_TYPE_UPDATED = "content_type_updated"
    CONTENT_TYPE_DELETED = "content_type_deleted"
    CONTENT_BULK_IMPORTED = "content_bulk_imported"

    # Media library
    MEDIA_UPLOADED = "media_uploaded"
    MEDIA_UPDATED = "media_updated"
    MEDIA_MOVED = "media_moved"
    MEDIA_DELETED = "media_deleted"

    # System dashboards
    SYSTEM_METRICS_COLLECTED = "system_metrics_collected"

    # Manual invalidation
    MANUAL_INVALIDATE_ALL = "manual_invalidate_all"


@dataclass
class InvalidationResult:
    """Result of a cache invalidation operation."""
    event: Optional[CacheEvent]
    success: bool
    keys_invalidated: int
    cdn_purged: bool
    duration_ms: float
    errors: List[str] = field(default_factory=list)


class CacheInvalidator:
    """
    Handles cache invalidation for mutation events.

    Cache failures are captured in the result's errors and never raised, so
    a completed write is never reported as failed because of its cache.
    """

    def __init__(
        self,
        cache: CacheService,
        cdn: Optional["CDNService"] = None,
    ):
        self._cache = cache
        self._cdn = cdn

    # =========================================================================
    # Execution
    # =========================================================================

    def _delete(self, key: str) -> Awaitable[bool]:
        return self._cache.delete(key)

    def _clear(self, pattern: str) -> Awaitable[int]:
        return self._cache.clear_by_pattern(pattern)

    async def _execute(
        self,
        event: Optional[CacheEvent],
        operations: List[Awaitable[Union[bool, int]]],
        cdn_purge: Optional[Awaitable[bool]] = None,
    ) -> InvalidationResult:
        """Run cache operations concurrently and collect their outcome."""
        start_time = time.perf_counter()
        errors = []
        keys_invalidated = 0
        cdn_purged = False

        outcomes = await asyncio.gather(*operations, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                errors.append(str(outcome))
                logger.error(f"Cache invalidation error: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                keys_invalidated += int(outcome)

        if cdn_purge is not None:
            try:
                cdn_purged = await cdn_purge
            except Exception as e:
                errors.append(f"CDN purge failed: {e}")
                logger.error(f"CDN purge error: {e}")

        duration = (time.perf_counter() - start_time) * 1000

        result = InvalidationResult(
            event=event,
            success=len(errors) == 0,
            keys_invalidated=keys_invalidated,
            cdn_purged=cdn_purged,
            duration_ms=duration,
            errors=errors,
        )

        logger.info(
            f"Invalidation complete: {keys_invalidated} keys, "
            f"CDN purged: {cdn_purged}, duration: {duration:.2f}ms"
        )

        return result

    # =========================================================================
    # Content
    # =========================================================================

    def _content_operations(self, slug: str, content_type_id: Optional[str] = None) -> list:
        operations = [
            self._delete(keys.content(slug)),
            self._delete(keys.seo(slug)),
            self._delete(keys.structured_data(slug)),
            self._delete(keys.page_render(slug)),
            self._clear(keys.namespace_pattern("content-list")),
            self._clear(keys.namespace_pattern("page-render")),
        ]
        if content_type_id:
            operations.append(self._delete(keys.content_type(content_type_id)))
        return operations

    async def invalidate_content(
        self,
        slug: str,
        content_type_id: Optional[str] = None,
        event: Optional[CacheEvent] = CacheEvent.CONTENT_UPDATED,
    ) -> InvalidationResult:
        """Invalidate one content item plus every list and rendered page."""
        logger.debug(f"Invalidating content cache: slug={slug}, type={content_type_id}")
        return await self._execute(event, self._content_operations(slug, content_type_id))

    async def invalidate_content_type(
        self,
        type_id: str,
        event: Optional[CacheEvent] = CacheEvent.CONTENT_TYPE_UPDATED,
    ) -> InvalidationResult:
        logger.debug(f"Invalidating content type cache: {type_id}")
        return await self._execute(event, [
            self._delete(keys.content_type(type_id)),
            self._clear(keys.namespace_pattern("content-list", type_id)),
            self._clear(keys.namespace_pattern("page-render")),
        ])

    async def invalidate_all_content(
        self,
        event: Optional[CacheEvent] = CacheEvent.CONTENT_BULK_IMPORTED,
    ) -> InvalidationResult:
        """Clear every content-related namespace. Used for imports and migrations."""
        logger.info("Invalidating all content caches")
        return await self._execute(
            event,
            [self._clear(keys.namespace_pattern(ns)) for ns in CONTENT_NAMESPACES],
        )

    # =========================================================================
    # Media
    # =========================================================================

    def _folder_operations(self, folder_id: str) -> list:
        # The folder record and its sub-resources live under different keys
        return [
            self._delete(keys.media_folder(folder_id)),
            self._clear(keys.namespace_pattern("media-folder", folder_id)),
        ]

    async def invalidate_media(
        self,
        media_id: Optional[str] = None,
        folder_id: Optional[str] = None,
        storage_key: Optional[str] = None,
        previous_folder_id: Optional[str] = None,
        event: Optional[CacheEvent] = CacheEvent.MEDIA_UPDATED,
    ) -> InvalidationResult:
        """
        Invalidate media lists and browsers, plus the item and folder if given.

        When a CDN is attached and storage_key is given, the asset and its
        variants are purged from the CDN as well.
        """
        logger.debug(f"Invalidating media cache: media={media_id}, folder={folder_id}")

        operations = [
            self._clear(keys.namespace_pattern("media-list")),
            self._clear(keys.namespace_pattern("media-browser")),
        ]
        if media_id:
            operations.append(self._delete(keys.media(media_id)))
        for folder in (folder_id, previous_folder_id):
            if folder:
                operations.extend(self._folder_operations(folder))

        cdn_purge = None
        if self._cdn is not None and storage_key:
            cdn_purge = self._cdn.invalidate_media_cache(storage_key)

        return await self._execute(event, operations, cdn_purge)

    # =========================================================================
    # System
    # =========================================================================

    async def invalidate_system_metrics(
        self,
        event: Optional[CacheEvent] = CacheEvent.SYSTEM_METRICS_COLLECTED,
    ) -> InvalidationResult:
        return await self._execute(event, [self._clear(keys.namespace_pattern("system-metrics"))])

    async def invalidate_everything(
        self,
        event: Optional[CacheEvent] = CacheEvent.MANUAL_INVALIDATE_ALL,
    ) -> InvalidationResult:
        """Nuclear option: every key, and the whole CDN when attached."""
        logger.warning("Invalidating entire cache")
        cdn_purge = self._cdn.purge_all_cache() if self._cdn is not None else None
        return await self._execute(event, [self._clear("*")], cdn_purge)

    # =========================================================================
    # Event dispatch
    # =========================================================================

    async def handle_event(
        self,
        event: CacheEvent,
        slug: Optional[str] = None,
        previous_slug: Optional[str] = None,
        content_type_id: Optional[str] = None,
        media_id: Optional[str] = None,
        folder_id: Optional[str] = None,
        previous_folder_id: Optional[str] = None,
        storage_key: Optional[str] = None,
    ) -> InvalidationResult:
        """
        Handle cache invalidation for an event.

        A missing id that the event needs yields a failed result rather
        than an exception.
        """
        logger.info(
            f"Cache invalidation event: {event.value}, "
            f"slug={slug}, type={content_type_id}, media={media_id}"
        )

        if event in (
            CacheEvent.CONTENT_CREATED,
            CacheEvent.CONTENT_UPDATED,
            CacheEvent.CONTENT_DELETED,
        ):
            if not slug:
                return self._missing(event, "slug")
            operations = self._content_operations(slug, content_type_id)
            if previous_slug and previous_slug != slug:
                # Renamed: the old slug's entries are stale too
                operations.extend([
                    self._delete(keys.content(previous_slug)),
                    self._delete(keys.seo(previous_slug)),
                    self._delete(keys.structured_data(previous_slug)),
                    self._delete(keys.page_render(previous_slug)),
                ])
            return await self._execute(event, operations)

        if event in (CacheEvent.CONTENT_TYPE_UPDATED, CacheEvent.CONTENT_TYPE_DELETED):
            if not content_type_id:
                return self._missing(event, "content_type_id")
            return await self.invalidate_content_type(content_type_id, event=event)

        if event == CacheEvent.CONTENT_BULK_IMPORTED:
            return await self.invalidate_all_content(event=event)

        if event in (
            CacheEvent.MEDIA_UPLOADED,
            CacheEvent.MEDIA_UPDATED,
            CacheEvent.MEDIA_MOVED,
            CacheEvent.MEDIA_DELETED,
        ):
            return await self.invalidate_media(
                media_id=media_id,
                folder_id=folder_id,
                storage_key=storage_key,
                previous_folder_id=previous_folder_id,
                event=event,
            )

        if event == CacheEvent.SYSTEM_METRICS_COLLECTED:
            return await self.invalidate_system_metrics(event=event)

        if event == CacheEvent.MANUAL_INVALIDATE_ALL:
            return await self.invalidate_everything(event=event)

        return InvalidationResult(
            event=event,
            success=False,
            keys_invalidated=0,
            cdn_purged=False,
            duration_ms=0.0,
            errors=[f"Unhandled cache event: {event.value}"],
        )

    def _missing(self, event: CacheEvent, name: str) -> InvalidationResult:
        logger.warning(f"Cache event {event.value} is missing {name}, nothing invalidated")
        return InvalidationResult(
            event=event,
            success=False,
            keys_invalidated=0,
            cdn_purged=False,
            duration_ms=0.0,
            errors=[f"{name} is required for {event.value}"],
        )
