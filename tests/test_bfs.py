import struct

import pytest

from pybfs.compression import CompressionMethod
from pybfs.errors import EntryOverflow, MalformedHeader, UnsupportedMethod, UnsupportedRevision
from pybfs.filters import parse_copy_rules
from pybfs.fs.archive import build_archive, create_archive, list_archive
from pybfs.fs.codec import codec_for, parse, serialize, sniff_revision, supported_revisions
from pybfs.fs.model import Archive, CopyDescriptor, Entry, Revision

NAME = b"data/language/version.ini"

FILES = {
    "data/language/version.ini": b"[version]\nbuild=1.0\n" * 20,
    "data/menu/bg/town1.tga": bytes(range(256)) * 8,
    "data/menu/bg/town2.tga": b"\x00\x01" * 700,
    "data/cars/car_1/skin1.dds": b"DDS " + bytes(300),
    "data/empty.txt": b"",
}


def _europe():
    """One entry bfs2004a archive laid out like FlatOut's europe.bfs."""
    header = struct.pack("<4sLLL", b"bfs1", 0x20040505, 0xFDB, 1)
    offsets = struct.pack("<L", 0xFAC)
    table = struct.pack("<L", 0x3E5) + b"".join(
        struct.pack("<HH", 0, 1 if value == 275 else 0) for value in range(0x3E5)
    )
    file_header = struct.pack("<BBHLLLLH", 5, 0, 0, 0xFDC, 1103, 471, 0xF6260C6E, len(NAME)) + NAME
    data = header + offsets + table + file_header
    assert len(data) == 0xFDB
    return data + b"\0" + bytes((index * 13) & 0xFF for index in range(471))


def test_bfs2004a_listing():
    listing = list_archive(_europe(), revision="bfs2004a")
    assert listing.revision is Revision.BFS2004A
    assert listing.headers_size == 4058
    assert listing.size == 4531
    assert listing.file_count == 1
    row = listing.rows[0]
    assert (row.method, row.size, row.compressed_size, row.copies, row.offset, row.name) == (
        CompressionMethod.ZLIB, 1103, 471, 0, 0x0FDC, "data/language/version.ini"
    )
    assert row.shared == CopyDescriptor(0, 0)


def test_bfs2004a_round_trip():
    data = _europe()
    archive = parse(data, Revision.BFS2004A)
    assert archive.entries[0].crc32 == 0xF6260C6E
    assert serialize(archive) == data


def test_sniff_bfs1():
    assert sniff_revision(_europe()) is Revision.BFS2004A
    assert sniff_revision(create_archive(FILES, "bfs2004b")) is Revision.BFS2004B
    assert sniff_revision(create_archive(FILES, "bfs2007")) is Revision.BFS2007
    assert sniff_revision(struct.pack("<4sLLL", b"bfs1", 0x20111220, 16, 0)) is Revision.BFS2011
    assert sniff_revision(struct.pack("<4sLLL", b"bbfs", 0x20130314, 16, 0)) is Revision.BFS2013


@pytest.mark.parametrize("revision", [Revision.BFS2004A, Revision.BFS2004B, Revision.BFS2007])
def test_round_trip(revision):
    copy_rules = parse_copy_rules("1+1 data/menu/**")
    data = create_archive(FILES, revision, copy_rules=copy_rules)
    archive = parse(data, revision)
    assert sorted(archive.names()) == sorted(FILES)
    for entry in archive.find("data/menu/bg/town1.tga"):
        assert len(entry.copy_offsets) == 2
    assert serialize(archive) == data


@pytest.mark.parametrize("revision", [Revision.BFS2004B, Revision.BFS2007])
def test_name_table_is_rebuilt(revision):
    data = create_archive(FILES, revision)
    archive = parse(data, revision)
    assert archive.metadata["name_table"].names == sorted(
        {part for name in FILES for part in name.rsplit("/", 1)}
    )
    archive.metadata.clear()
    assert serialize(archive) == data


def test_copy_count_slot():
    copy_rules = parse_copy_rules("1+0 data/language/*")
    files = {"data/language/version.ini": FILES["data/language/version.ini"]}
    for revision, flag_bytes in ((Revision.BFS2004B, b"\x01\x00\x00"), (Revision.BFS2007, b"\x00\x01\x00")):
        archive = build_archive(files, revision, copy_rules=copy_rules)
        data = serialize(archive)
        start = 16 + 4 + 0x3E5 * 8
        headers_offset = struct.unpack_from("<L", data, start)[0]
        header = data[start + headers_offset:]
        assert header[1:4] == flag_bytes


def test_zstd_entries():
    data = create_archive(FILES, "bfs2004b", method=CompressionMethod.ZSTD)
    archive = parse(data, Revision.BFS2004B)
    methods = {entry.name: entry.method for entry in archive.entries}
    assert methods["data/language/version.ini"] is CompressionMethod.ZSTD
    assert methods["data/empty.txt"] is CompressionMethod.STORE

    with pytest.raises(UnsupportedMethod):
        create_archive(FILES, "bfs2004a", method=CompressionMethod.ZSTD)
    zstd_entry = Entry("data/a", CompressionMethod.ZSTD, 1, 1, 0x1000, data=b"x")
    with pytest.raises(UnsupportedMethod):
        serialize(Archive(Revision.BFS2004A, [zstd_entry]))


def test_empty_name_in_bfs2004a():
    data = create_archive({"": b"nameless", "data/a.txt": b"a"}, "bfs2004a")
    archive = parse(data, Revision.BFS2004A)
    assert "" in archive.names()
    assert serialize(archive) == data


def test_names_need_a_folder_in_later_revisions():
    with pytest.raises(ValueError):
        create_archive({"toplevel.txt": b"a"}, "bfs2004b")


def test_copy_count_overflow():
    rules = parse_copy_rules("256+0 **")
    with pytest.raises(EntryOverflow) as info:
        create_archive({"data/a.txt": b"abc"}, "bfs2004a", copy_rules=rules)
    assert info.value.limit == 0xFF


@pytest.mark.parametrize("revision", [Revision.BZF2002, Revision.BFS2004A, Revision.BFS2007])
@pytest.mark.parametrize("fields, field", [
    (dict(offset=0xFFFFFFF0, size=0x20, compressed_size=0x20), "payload end"),
    (dict(offset=0x1000, size=0x100000000, compressed_size=0x20, method=CompressionMethod.ZLIB),
     "uncompressed size"),
])
def test_32_bit_fields_overflow(revision, fields, field):
    entry = Entry("data/a.txt", data=b"x" * 0x20, **fields)
    with pytest.raises(EntryOverflow) as info:
        serialize(Archive(revision, [entry]))
    assert info.value.field == field
    assert info.value.index == 0


def test_hash_grouping_is_checked():
    entries = [
        Entry(name, size=1, compressed_size=1, offset=0x1000 + index, data=b"x")
        for index, name in enumerate(["data/a", "data/b", "data/a"])
    ]
    with pytest.raises(MalformedHeader):
        serialize(Archive(Revision.BFS2004A, entries, size=0x1003))
    ordered = codec_for(Revision.BFS2004A).order(entries)
    assert [entry.name for entry in ordered] == ["data/b", "data/a", "data/a"]


def test_unsupported_revisions():
    assert Revision.BFS2011 not in supported_revisions()
    assert Revision.BFS2013 not in supported_revisions()
    data = struct.pack("<4sLLL", b"bfs1", 0x20111220, 16, 0)
    with pytest.raises(UnsupportedRevision):
        parse(data, Revision.BFS2011)
    with pytest.raises(UnsupportedRevision):
        list_archive(data)
    with pytest.raises(UnsupportedRevision):
        create_archive(FILES, "bfs2013")


def test_bad_hash_size():
    data = bytearray(_europe())
    struct.pack_into("<L", data, 20, 0x3E6)
    with pytest.raises(MalformedHeader):
        parse(bytes(data), Revision.BFS2004A)
    assert parse(bytes(data), Revision.BFS2004A, force=True).names() == ["data/language/version.ini"]
