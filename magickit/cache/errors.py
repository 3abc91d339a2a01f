"""
Cache Errors

Exception hierarchy for the caching layer.

Only InvalidPatternError ever reaches callers of the cache service.
Backend and serialization errors are reported by the Redis adapter and
converted to cache misses / no-ops at the service boundary.
"""


class CacheError(Exception):
    """Base class for cache errors."""


class CacheBackendError(CacheError):
    """External cache backend is unreachable, timed out, or refused the call."""


class CacheSerializationError(CacheError):
    """Value could not be encoded for (or decoded from) the external backend."""


class InvalidPatternError(CacheError, ValueError):
    """A cache pattern could not be compiled."""
