import pytest

from pybfs.errors import MalformedHeader
from pybfs.fs.huffman import build_name_table, decode, decode_names, read_dictionary


def test_name_table():
    names = ["data", "language", "version.ini", "menu", "bg", "town1.tga", ""]
    table = build_name_table(names)
    assert table.lengths == [len(name) for name in names]
    assert table.offsets == sorted(table.offsets)
    assert decode_names(table.offsets, table.lengths, table.dictionary, table.data) == names
    assert table.index()["menu"] == 3


def test_single_symbol():
    table = build_name_table(["aaa", "a"])
    assert decode_names(table.offsets, table.lengths, table.dictionary, table.data) == ["aaa", "a"]


def test_dictionary_layout():
    # branch -> "0" child at node 2, "1" child is the next node
    dictionary = bytes([0x00, 0x02, 0x80, ord("a"), 0x80, ord("b")])
    codes = read_dictionary(dictionary)
    assert codes == {0b11: ord("a"), 0b10: ord("b")}
    # bits are read from the least significant end: 1, 0, 0, 1
    assert decode(bytes([0b1001]), codes, 4) == b"abba"


def test_truncated_name_data():
    dictionary = bytes([0x00, 0x02, 0x80, ord("a"), 0x80, ord("b")])
    with pytest.raises(MalformedHeader):
        decode(b"\x01", read_dictionary(dictionary), 9)
