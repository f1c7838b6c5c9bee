from __future__ import annotations

import zstandard

ZSTD = "zstd"
NONE = "none"

DEFAULT_ZSTD_LEVEL = 10


def compress(data: bytes, algorithm: str = ZSTD, level: int = DEFAULT_ZSTD_LEVEL) -> bytes:
    """Compress ``data`` into one self-contained frame.

    No dictionary or context is carried between calls, so every frame can be
    decoded on its own.
    """
    if algorithm == NONE:
        return bytes(data)
    if algorithm != ZSTD:
        raise ValueError(f"unsupported compression: {algorithm!r}")
    cobj = zstandard.ZstdCompressor(level=level).compressobj(size=len(data))
    return cobj.compress(data) + cobj.flush()


def decompress(data: bytes, algorithm: str = ZSTD) -> bytes:
    if algorithm == NONE:
        return bytes(data)
    if algorithm != ZSTD:
        raise ValueError(f"unsupported compression: {algorithm!r}")
    return zstandard.ZstdDecompressor().decompressobj().decompress(data)
