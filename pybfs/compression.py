from __future__ import annotations

import enum
import logging
import zlib

import zstandard as zstd

from .errors import DecompressionError, SizeMismatch

logger = logging.getLogger(__name__)

ZLIB_DEFAULT_LEVEL = 9
ZSTD_DEFAULT_LEVEL = 19


class CompressionMethod(str, enum.Enum):
    STORE = "store"
    ZLIB = "zlib"
    ZSTD = "zstd"

    def __str__(self):
        return self.value


def decode(data: bytes, method: CompressionMethod, expected_size: int) -> bytes:
    """Decode one stored payload and check it against ``expected_size``."""
    method = CompressionMethod(method)
    if method is CompressionMethod.STORE:
        result = bytes(data)
    elif method is CompressionMethod.ZLIB:
        try:
            result = zlib.decompress(data)
        except zlib.error as e:
            raise DecompressionError(method, str(e)) from e
    else:
        try:
            decompressor = zstd.ZstdDecompressor()
            if zstd.frame_content_size(data) == -1:
                # frames without a content size are decoded to the end
                result = decompressor.decompressobj().decompress(data)
            else:
                result = decompressor.decompress(data)
        except zstd.ZstdError as e:
            raise DecompressionError(method, str(e)) from e
    if len(result) != expected_size:
        raise SizeMismatch(expected_size, len(result))
    return result


def encode(
    data: bytes,
    method: CompressionMethod,
    level: int | None = None,
    fallback: bool = False,
) -> tuple[bytes, CompressionMethod]:
    """Encode ``data`` and return ``(payload, method_used)``.

    With ``fallback`` the payload is stored as-is whenever compressing it
    would not make it smaller.
    """
    method = CompressionMethod(method)
    if method is CompressionMethod.STORE:
        return bytes(data), method
    if method is CompressionMethod.ZLIB:
        encoded = zlib.compress(data, ZLIB_DEFAULT_LEVEL if level is None else level)
    else:
        compressor = zstd.ZstdCompressor(
            level=ZSTD_DEFAULT_LEVEL if level is None else level, write_content_size=True
        )
        encoded = compressor.compress(data)
    if fallback and len(encoded) >= len(data):
        logger.debug("%s does not shrink %d bytes, storing instead", method, len(data))
        return bytes(data), CompressionMethod.STORE
    return encoded, method
