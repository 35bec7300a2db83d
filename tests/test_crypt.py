import struct

import pytest

from pybfs import crypt
from pybfs.crypt import KeyRing
from pybfs.errors import InvalidKey, MissingKey

KEY = bytes((index * 7 + 3) & 0xFF for index in range(0x100))


def _bzf2001(files):
    header = struct.pack("<4sLL", b"bbzf", 0x06062001, len(files))
    offset = len(header) + 0x35 * len(files)
    headers = b""
    data = b""
    for name, payload in files:
        headers += struct.pack("<BLLL40s", 0, offset + len(data), len(payload), len(payload), name)
        data += payload
    return header + headers + data


@pytest.mark.parametrize("length", [0, 5, 12, 13, 100, 0x35 + 12, 4096])
def test_round_trip_any_length(length):
    data = bytes((index * 31) & 0xFF for index in range(length))
    assert crypt.decrypt(crypt.encrypt(data, KEY), KEY) == data


def test_key_position_restarts_per_file():
    plain = _bzf2001([(b"a.txt", b"A" * 300), (b"b.txt", b"B" * 20)])
    encrypted = crypt.encrypt(plain, KEY)

    assert encrypted[:12] == plain[:12]
    assert encrypted[12] == plain[12] ^ KEY[0]
    assert encrypted[12 + 0x35] == plain[12 + 0x35] ^ KEY[0x35]

    first = 12 + 2 * 0x35
    assert encrypted[first] == plain[first] ^ KEY[0]
    assert encrypted[first + 0x100] == plain[first + 0x100] ^ KEY[0]
    second = first + 300
    assert encrypted[second] == plain[second] ^ KEY[0]
    assert encrypted[second + 1] == plain[second + 1] ^ KEY[1]

    assert crypt.decrypt(encrypted, KEY) == plain


def test_missing_key():
    data = _bzf2001([(b"a.txt", b"hello")])
    with pytest.raises(MissingKey) as info:
        crypt.decrypt(data, None)
    assert info.value.profile == "bzf2001"
    with pytest.raises(MissingKey):
        KeyRing().require("bzf2001")


def test_invalid_key_is_not_echoed():
    key = bytes.fromhex("deadbeef")
    with pytest.raises(InvalidKey) as info:
        crypt.encrypt(b"x" * 20, key)
    assert "deadbeef" not in str(info.value).lower()
    assert info.value.expected_length == 0x100

    with pytest.raises(InvalidKey):
        KeyRing({"bzf2001": key})


def test_key_ring_from_toml(tmp_path, monkeypatch):
    path = tmp_path / "Keys.toml"
    path.write_text('[bzf2001]\nkey = "%s"\n' % KEY.hex(), encoding="utf-8")

    ring = KeyRing.load(path)
    assert ring.require("bzf2001") == KEY
    assert "bzf2001" in ring
    assert KEY.hex() not in repr(ring)

    monkeypatch.setenv("PYBFS_KEYS", str(path))
    assert KeyRing.load().get("bzf2001") == KEY

    monkeypatch.setenv("PYBFS_KEYS", str(tmp_path / "missing.toml"))
    assert KeyRing.load().profiles == []
