import random
import zlib

import pytest
import zstandard as zstd

from pybfs.compression import CompressionMethod, decode, encode
from pybfs.errors import DecompressionError, SizeMismatch


@pytest.mark.parametrize("method", list(CompressionMethod))
@pytest.mark.parametrize("length", [0, 1, 65536, 200_000])
def test_encode_decode(method, length):
    payload = random.Random(length).randbytes(length // 2) * 2 + b"x" * (length % 2)
    encoded, used = encode(payload, method)
    assert used is method
    assert decode(encoded, method, len(payload)) == payload


def test_fallback_stores_incompressible_data():
    payload = random.Random(1).randbytes(64)
    encoded, used = encode(payload, CompressionMethod.ZLIB, fallback=True)
    assert used is CompressionMethod.STORE
    assert encoded == payload

    encoded, used = encode(b"a" * 1000, CompressionMethod.ZLIB, fallback=True)
    assert used is CompressionMethod.ZLIB
    assert len(encoded) < 1000


def test_decode_checks_size():
    with pytest.raises(SizeMismatch) as info:
        decode(zlib.compress(b"abc"), CompressionMethod.ZLIB, 4)
    assert info.value.expected == 4
    assert info.value.actual == 3

    with pytest.raises(SizeMismatch):
        decode(b"abc", CompressionMethod.STORE, 2)


def test_decode_reports_corrupt_streams():
    with pytest.raises(DecompressionError):
        decode(b"not a zlib stream", CompressionMethod.ZLIB, 10)
    with pytest.raises(DecompressionError):
        decode(b"not a zstd frame", CompressionMethod.ZSTD, 10)


def test_method_accepts_strings():
    encoded, used = encode(b"b" * 100, "zstd")
    assert used is CompressionMethod.ZSTD
    assert decode(encoded, "zstd", 100) == b"b" * 100


def test_zstd_frames_without_content_size():
    frame = zstd.ZstdCompressor(write_content_size=False).compress(b"x" * 100)
    assert decode(frame, CompressionMethod.ZSTD, 100) == b"x" * 100
    with pytest.raises(SizeMismatch) as info:
        decode(frame, CompressionMethod.ZSTD, 50)
    assert (info.value.expected, info.value.actual) == (50, 100)
