"""Bzf2001 stream cipher and key material handling.

Rally Trophy archives (``bbzf``) XOR everything past the 12 byte archive
header with a 256 byte key.  The key position restarts at zero at the start
of the data section and again at every following file's data offset, so the
offsets have to be read from the (plaintext) file headers while the
transform runs.
"""

from __future__ import annotations

import logging
import os
import struct
import tomllib
from pathlib import Path

from .errors import InvalidKey, MissingKey

logger = logging.getLogger(__name__)

BZF2001_PROFILE = "bzf2001"
BZF2001_KEY_LENGTH = 0x100
BZF2001_ARCHIVE_HEADER_SIZE = 12
BZF2001_FILE_HEADER_SIZE = 0x35

KEY_LENGTHS = {
    BZF2001_PROFILE: BZF2001_KEY_LENGTH,
}

DEFAULT_KEYS_PATH = "Keys.toml"
KEYS_ENV_VAR = "PYBFS_KEYS"


class KeyRing:
    """Maps cipher profile names to key bytes.

    The key bytes are kept out of ``repr`` and are never logged.
    """

    def __init__(self, keys: dict[str, bytes] | None = None):
        self._keys: dict[str, bytes] = {}
        for profile, key in (keys or {}).items():
            self._keys[profile] = _checked_key(profile, bytes(key))

    def __repr__(self):
        return "<KeyRing profiles=%r>" % sorted(self._keys)

    def __contains__(self, profile):
        return profile in self._keys

    def get(self, profile: str) -> bytes | None:
        return self._keys.get(profile)

    def require(self, profile: str) -> bytes:
        key = self._keys.get(profile)
        if key is None:
            raise MissingKey(profile)
        return key

    @property
    def profiles(self):
        return sorted(self._keys)

    @classmethod
    def loads(cls, text: str) -> "KeyRing":
        data = tomllib.loads(text)
        keys = {}
        for profile, table in data.items():
            if not isinstance(table, dict) or "key" not in table:
                continue
            try:
                keys[profile] = bytes.fromhex(str(table["key"]))
            except ValueError:
                raise InvalidKey(profile, KEY_LENGTHS.get(profile, 0), 0) from None
        return cls(keys)

    @classmethod
    def load(cls, path: os.PathLike[str] | str | None = None) -> "KeyRing":
        """Read a ``Keys.toml`` file.

        A missing file yields an empty ring; operations that need a key then
        fail with :class:`MissingKey`.
        """
        if path is None:
            path = os.environ.get(KEYS_ENV_VAR, DEFAULT_KEYS_PATH)
        path = Path(path)
        if not path.exists():
            logger.debug("No key file at %s", path)
            return cls()
        ring = cls.loads(path.read_text(encoding="utf-8"))
        logger.debug("Loaded key profiles %s from %s", ring.profiles, path)
        return ring


def _checked_key(profile: str, key: bytes) -> bytes:
    expected = KEY_LENGTHS.get(profile)
    if expected is not None and len(key) != expected:
        raise InvalidKey(profile, expected, len(key))
    return key


def _xor(data, key: bytes) -> bytes:
    if not data:
        return b""
    repeats = len(data) // len(key) + 1
    stream = (key * repeats)[: len(data)]
    value = int.from_bytes(data, "little") ^ int.from_bytes(stream, "little")
    return value.to_bytes(len(data), "little")


def _key_segments(start: int, end: int, resets: list[int]) -> list[tuple[int, int]]:
    # The key position only restarts when the running offset hits the next
    # recorded offset exactly, so out-of-order offsets stop any further resets.
    segments = []
    current = start
    for reset in resets[1:]:
        if not current < reset <= end:
            break
        segments.append((current, reset))
        current = reset
    segments.append((current, end))
    return segments


def _data_offsets(headers: bytes, file_count: int) -> list[int]:
    offsets = []
    for index in range(file_count):
        position = index * BZF2001_FILE_HEADER_SIZE + 1
        if position + 4 > len(headers):
            break
        offsets.append(struct.unpack_from("<L", headers, position)[0])
    return offsets


def _transform(data: bytes, key: bytes | None, decrypting: bool) -> bytes:
    if key is None:
        raise MissingKey(BZF2001_PROFILE)
    key = _checked_key(BZF2001_PROFILE, bytes(key))

    data = bytes(data)
    if len(data) < BZF2001_ARCHIVE_HEADER_SIZE:
        return data

    file_count = struct.unpack_from("<L", data, 8)[0]
    headers_end = min(len(data), BZF2001_ARCHIVE_HEADER_SIZE + file_count * BZF2001_FILE_HEADER_SIZE)

    in_headers = data[BZF2001_ARCHIVE_HEADER_SIZE:headers_end]
    out_headers = _xor(in_headers, key)
    plain_headers = out_headers if decrypting else in_headers

    out = bytearray(data[:BZF2001_ARCHIVE_HEADER_SIZE])
    out += out_headers
    resets = _data_offsets(plain_headers, file_count)
    for start, end in _key_segments(headers_end, len(data), resets):
        out += _xor(data[start:end], key)
    return bytes(out)


def decrypt(data: bytes, key: bytes | None) -> bytes:
    """Decrypt a whole Bzf2001 archive image."""
    return _transform(data, key, decrypting=True)


def encrypt(data: bytes, key: bytes | None) -> bytes:
    """Encrypt a whole, plaintext Bzf2001 archive image."""
    return _transform(data, key, decrypting=False)
