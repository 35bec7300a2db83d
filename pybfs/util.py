from __future__ import annotations

import struct
import zlib

from .errors import EntryOverflow, MalformedHeader

U8_MAX = 0xFF
U16_MAX = 0xFFFF
U32_MAX = 0xFFFFFFFF

HASH_SIZE = 0x3E5


def lua_hash(data: bytes) -> int:
    """Bucket index of ``data`` in the 0x3E5 entry hash table of ``bfs1`` archives.

    This is the Lua 4.0 string hash, walked from the last byte towards the
    first one.
    """
    length = len(data)
    value = length
    step = (length >> 5) + 1
    for index in range(length, step - 1, -step):
        value ^= ((value << 5) + (value >> 2) + data[index - 1]) & U32_MAX
    return value % HASH_SIZE


def jamcrc(data: bytes) -> int:
    return zlib.crc32(data) ^ U32_MAX


def align(value: int, alignment: int = 4) -> int:
    return (value + alignment - 1) // alignment * alignment


def unpack_dword_list(data, offset: int, count: int) -> list[int]:
    end = offset + count * 4
    if end > len(data):
        raise MalformedHeader("Table of %d DWORDs runs past the end of the archive" % count, offset)
    return list(struct.unpack_from("<%dL" % count, data, offset))


def pack_dword_list(values) -> bytes:
    values = list(values)
    return struct.pack("<%dL" % len(values), *values)


def check_width(field: str, value: int, limit: int, index: int | None = None) -> int:
    if value < 0 or value > limit:
        raise EntryOverflow(field, value, limit, index)
    return value


def decode_name(raw: bytes) -> str:
    return raw.decode("latin-1")


def encode_name(name: str) -> bytes:
    return name.encode("latin-1")
