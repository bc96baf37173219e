from __future__ import annotations

import zlib
from typing import Optional

import zstandard

from .constants import (
    CODEC_GZIP,
    CODEC_NAMES,
    CODEC_NONE,
    CODEC_ZSTD,
    DEFAULT_GZIP_LEVEL,
    DEFAULT_ZSTD_LEVEL,
)
from .errors import CompressionError

# zlib window bits selecting a gzip container (header + CRC trailer)
_GZIP_WBITS = 16 + zlib.MAX_WBITS


class Codec:
    """Whole-stream compression used between the archive and the sealed box."""

    def __init__(self, codec_id: int, level: Optional[int] = None):
        if codec_id not in CODEC_NAMES.values():
            raise ValueError(f"unsupported codec id: {codec_id}")
        self.codec_id = codec_id
        self.level = level

    @classmethod
    def from_name(cls, name: Optional[str], level: Optional[int] = None) -> "Codec":
        key = (name or "none").lower()
        if key not in CODEC_NAMES:
            raise ValueError(f"unsupported compression: {name} (choose from {', '.join(CODEC_NAMES)})")
        return cls(CODEC_NAMES[key], level)

    @property
    def name(self) -> str:
        for k, v in CODEC_NAMES.items():
            if v == self.codec_id:
                return k
        raise ValueError(f"unsupported codec id: {self.codec_id}")

    @property
    def enabled(self) -> bool:
        return self.codec_id != CODEC_NONE

    def compress(self, data: bytes) -> bytes:
        if self.codec_id == CODEC_NONE:
            return data
        if self.codec_id == CODEC_GZIP:
            level = self.level if self.level is not None else DEFAULT_GZIP_LEVEL
            c = zlib.compressobj(level, zlib.DEFLATED, _GZIP_WBITS)
            return c.compress(data) + c.flush()
        if self.codec_id == CODEC_ZSTD:
            try:
                c = zstandard.ZstdCompressor(level=self.level if self.level is not None else DEFAULT_ZSTD_LEVEL)
                return c.compress(data)
            except zstandard.ZstdError as e:
                raise CompressionError(f"zstd compression failed: {e}") from e
        raise CompressionError(f"unsupported codec id: {self.codec_id}")

    def decompress(self, data: bytes) -> bytes:
        if self.codec_id == CODEC_NONE:
            return data
        if self.codec_id == CODEC_GZIP:
            try:
                d = zlib.decompressobj(_GZIP_WBITS)
                out = d.decompress(data) + d.flush()
            except zlib.error as e:
                raise CompressionError(f"gzip decompression failed: {e}") from e
            if not d.eof:
                raise CompressionError("gzip decompression failed: truncated stream")
            return out
        if self.codec_id == CODEC_ZSTD:
            try:
                # compress() always records the content size in the frame header
                return zstandard.ZstdDecompressor().decompress(data)
            except zstandard.ZstdError as e:
                raise CompressionError(f"zstd decompression failed: {e}") from e
        raise CompressionError(f"unsupported codec id: {self.codec_id}")

    def __repr__(self) -> str:
        return f"Codec({self.name!r}, level={self.level!r})"
