"""
MagicKit Cache Core

The caching subsystem of the MagicKit content management application:
1. Dual-tier cache (in-process TTL store + optional Redis)
2. Domain-aware cache invalidation for content and media mutations
3. Performance monitoring for SSR pages and API endpoints
4. CDN URL, cache header and purge helpers for media assets
"""

__version__ = "0.1.0"
