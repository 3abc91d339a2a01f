"""
Redis Value Codec

Values sent to Redis are wrapped in a JSON envelope
{"data": value, "timestamp": iso} and prefixed with a one-byte marker
telling how the payload is compressed:

- 0x00: raw JSON
- 0x01: LZ4 frame (payloads >= threshold)
- 0x02: Zstandard (payloads >= zstd_threshold)

The in-process tier stores Python objects directly and never goes through
this module.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional, Tuple

import lz4.frame
import zstandard

from magickit.cache.errors import CacheSerializationError


logger = logging.getLogger(__name__)


MARKER_UNCOMPRESSED = b'\x00'
MARKER_LZ4 = b'\x01'
MARKER_ZSTD = b'\x02'


@dataclass
class CompressionStats:
    """Size accounting for one compressed payload."""
    original_size: int
    compressed_size: int
    algorithm: str

    @property
    def bytes_saved(self) -> int:
        return self.original_size - self.compressed_size


def _json_default(obj: Any) -> Any:
    # Dates come back as ISO strings; anything else is a serialization error
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (uuid.UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def serialize_value(value: Any) -> bytes:
    """Encode a value in the Redis envelope format."""
    envelope = {"data": value, "timestamp": datetime.utcnow().isoformat()}
    try:
        return json.dumps(envelope, default=_json_default, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise CacheSerializationError(str(e)) from e


def deserialize_value(data: bytes) -> Any:
    """Decode an envelope and return its payload."""
    try:
        envelope = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise CacheSerializationError(f"Corrupt cache payload: {e}") from e

    if not isinstance(envelope, dict) or "data" not in envelope:
        raise CacheSerializationError("Cache payload is missing its envelope")
    return envelope["data"]


class CacheCompressor:
    """
    Compresses payloads above a size threshold.

    LZ4 for typical JSON documents (fast both ways), Zstandard for large
    rendered pages where ratio matters more than speed.
    """

    def __init__(
        self,
        enabled: bool = True,
        threshold: int = 1024,
        zstd_threshold: int = 100 * 1024,
    ):
        self.enabled = enabled
        self.threshold = threshold
        self.zstd_threshold = zstd_threshold
        self._zstd_compressor = zstandard.ZstdCompressor(level=3)
        self._zstd_decompressor = zstandard.ZstdDecompressor()

    def compress(self, data: bytes) -> Tuple[bytes, Optional[CompressionStats]]:
        """Return marker-prefixed bytes and stats when compression was applied."""
        if not self.enabled or len(data) < self.threshold:
            return MARKER_UNCOMPRESSED + data, None

        if len(data) >= self.zstd_threshold:
            compressed = self._zstd_compressor.compress(data)
            marker, algorithm = MARKER_ZSTD, "zstd"
        else:
            compressed = lz4.frame.compress(data)
            marker, algorithm = MARKER_LZ4, "lz4"

        if len(compressed) >= len(data):
            return MARKER_UNCOMPRESSED + data, None

        stats = CompressionStats(
            original_size=len(data),
            compressed_size=len(compressed) + 1,
            algorithm=algorithm,
        )
        return marker + compressed, stats

    def decompress(self, data: bytes) -> bytes:
        if not data:
            raise CacheSerializationError("Empty cache payload")

        marker, payload = data[0:1], data[1:]
        try:
            if marker == MARKER_UNCOMPRESSED:
                return payload
            if marker == MARKER_LZ4:
                return lz4.frame.decompress(payload)
            if marker == MARKER_ZSTD:
                return self._zstd_decompressor.decompress(payload)
        except Exception as e:
            raise CacheSerializationError(f"Decompression failed: {e}") from e

        raise CacheSerializationError(f"Unknown compression marker: {marker!r}")


class ValueCodec:
    """Serialize + compress for writes, the reverse for reads."""

    def __init__(self, compressor: Optional[CacheCompressor] = None):
        self.compressor = compressor or CacheCompressor()
        self.bytes_saved = 0

    def encode(self, value: Any) -> bytes:
        payload, stats = self.compressor.compress(serialize_value(value))
        if stats:
            self.bytes_saved += stats.bytes_saved
        return payload

    def decode(self, data: bytes) -> Any:
        return deserialize_value(self.compressor.decompress(data))
