import pytest

from pybfs.errors import EntryOverflow, MalformedHeader
from pybfs.util import (
    align, check_width, jamcrc, lua_hash, pack_dword_list, unpack_dword_list,
)


def test_lua_hash():
    assert lua_hash(b"data/language/version.ini") == 275
    assert lua_hash(b"") == 0
    assert 0 <= lua_hash(b"data/cars/car_1/skin1.dds") < 0x3E5


def test_jamcrc():
    assert jamcrc(b"123456789") == 0x340BC6D9
    assert jamcrc(b"") == 0xFFFFFFFF


def test_align():
    assert align(0) == 0
    assert align(5) == 8
    assert align(8) == 8
    assert align(0xFDB) == 0xFDC
    assert align(13, 1) == 13


def test_dword_lists():
    packed = pack_dword_list([1, 2, 0xFFFFFFFF])
    assert unpack_dword_list(b"\0\0" + packed, 2, 3) == [1, 2, 0xFFFFFFFF]
    with pytest.raises(MalformedHeader):
        unpack_dword_list(packed, 4, 3)


def test_check_width():
    assert check_width("copy count", 255, 0xFF) == 255
    with pytest.raises(EntryOverflow) as info:
        check_width("copy count", 256, 0xFF, 3)
    assert info.value.field == "copy count"
    assert info.value.index == 3
