"""Readers and writers for the ``bfs1`` revisions.

All three share the archive header (magic, version, header end, file count)
and a 0x3E5 bucket hash table keyed by :func:`pybfs.util.lua_hash` of the
full file name.  File headers are stored grouped by that hash.

* 2004a (FlatOut) keeps an offset for every file header and stores names
  inline.  Zero length names occur in community patches and are kept as
  empty strings.
* 2004b (FlatOut 2) and 2007 (FlatOut: Ultimate Carnage) move the names to a
  Huffman coded table (see :mod:`pybfs.fs.huffman`) and reference them by
  folder and file id.  They only differ in where the copy count lives.
"""

from __future__ import annotations

import logging
import struct

from ..compression import CompressionMethod
from ..errors import BfsError, EntryOverflow, MalformedHeader
from ..util import (
    HASH_SIZE, U16_MAX, U32_MAX, U8_MAX, align, check_width, decode_name, encode_name, lua_hash,
    pack_dword_list, unpack_dword_list,
)
from . import huffman
from .codec import FLAG_COMPRESSED, FLAG_HAS_CRC, FLAG_ZSTD, ArchiveCodec, register
from .model import Archive, Entry, Revision

logger = logging.getLogger(__name__)

ARCHIVE_HEADER_FORMAT = "<4sLLL"
ARCHIVE_HEADER_SIZE = struct.calcsize(ARCHIVE_HEADER_FORMAT)


def name_hash(name: str) -> int:
    return lua_hash(encode_name(name))


class Bfs1FileHeader:
    """Fields shared by every ``bfs1`` file header.

    ``copies`` and ``copies_wide`` are the one byte and two byte copy counts;
    which one a revision writes is up to its codec.
    """

    def _set_method(self, entry: Entry, allow_zstd: bool):
        self.flags = entry.extra_flags
        if entry.is_compressed:
            self.flags |= FLAG_COMPRESSED
            if entry.method is CompressionMethod.ZSTD and allow_zstd:
                self.flags |= FLAG_ZSTD
        if entry.crc32 is not None:
            self.flags |= FLAG_HAS_CRC

    def method(self, allow_zstd: bool) -> CompressionMethod:
        if not self.flags & FLAG_COMPRESSED:
            return CompressionMethod.STORE
        if allow_zstd and self.flags & FLAG_ZSTD:
            return CompressionMethod.ZSTD
        return CompressionMethod.ZLIB

    def to_entry(self, name: str, allow_zstd: bool) -> Entry:
        known = FLAG_COMPRESSED | FLAG_HAS_CRC | (FLAG_ZSTD if allow_zstd else 0)
        return Entry(
            name=name,
            method=self.method(allow_zstd),
            size=self.unpacked_size,
            compressed_size=self.packed_size,
            offset=self.data_offset,
            copy_offsets=list(self.copy_offsets),
            crc32=self.crc32 if self.flags & FLAG_HAS_CRC else None,
            extra_flags=self.flags & ~known,
        )

    def _copy_counts(self, entry: Entry, wide: bool, index: int):
        count = len(entry.copy_offsets)
        if wide:
            return 0, check_width("copy count", count, U16_MAX, index)
        return check_width("copy count", count, U8_MAX, index), 0


class Bfs2004aFileHeader(Bfs1FileHeader):

    FORMAT = "<BBHLLLLH"
    SIZE = struct.calcsize(FORMAT)

    def parse(self, data, offset, index):
        if offset + self.SIZE > len(data):
            raise MalformedHeader("Truncated file header", offset, index)
        (self.flags,
         copies,
         copies_wide,
         self.data_offset,
         self.unpacked_size,
         self.packed_size,
         self.crc32,
         name_length) = struct.unpack_from(self.FORMAT, data, offset)
        start = offset + self.SIZE
        if start + name_length > len(data):
            raise MalformedHeader("File name runs past the end of the archive", start, index)
        self.name = decode_name(bytes(data[start:start + name_length]))
        start += name_length
        self.copy_offsets = unpack_dword_list(data, start, copies + copies_wide)
        return start + 4 * len(self.copy_offsets)

    @classmethod
    def from_entry(cls, entry: Entry, index: int):
        self = cls()
        self._set_method(entry, allow_zstd=False)
        self.copies, self.copies_wide = self._copy_counts(entry, False, index)
        self.data_offset = entry.offset
        self.unpacked_size = entry.size
        self.packed_size = entry.compressed_size
        self.crc32 = entry.crc32 or 0
        self.name = entry.name
        self.copy_offsets = list(entry.copy_offsets)
        check_width("file name length", len(encode_name(entry.name)), U16_MAX, index)
        return self

    def serialize(self):
        name = encode_name(self.name)
        return (struct.pack(self.FORMAT, self.flags, self.copies, self.copies_wide, self.data_offset,
                            self.unpacked_size, self.packed_size, self.crc32, len(name))
                + name + pack_dword_list(self.copy_offsets))

    @classmethod
    def measure(cls, entry: Entry) -> int:
        return cls.SIZE + len(encode_name(entry.name)) + 4 * len(entry.copy_offsets)


class IdFileHeader(Bfs1FileHeader):
    """File header that names its file by folder and file id."""

    FORMAT = "<BBHLLLLHH"
    SIZE = struct.calcsize(FORMAT)

    def parse(self, data, offset, index):
        if offset + self.SIZE > len(data):
            raise MalformedHeader("Truncated file header", offset, index)
        (self.flags,
         copies,
         copies_wide,
         self.data_offset,
         self.unpacked_size,
         self.packed_size,
         self.crc32,
         self.folder_id,
         self.file_id) = struct.unpack_from(self.FORMAT, data, offset)
        start = offset + self.SIZE
        self.copy_offsets = unpack_dword_list(data, start, copies + copies_wide)
        return start + 4 * len(self.copy_offsets)

    @classmethod
    def from_entry(cls, entry: Entry, index: int, ids: tuple[int, int], wide: bool):
        self = cls()
        self._set_method(entry, allow_zstd=True)
        self.copies, self.copies_wide = self._copy_counts(entry, wide, index)
        self.data_offset = entry.offset
        self.unpacked_size = entry.size
        self.packed_size = entry.compressed_size
        self.crc32 = entry.crc32 or 0
        self.folder_id, self.file_id = ids
        self.copy_offsets = list(entry.copy_offsets)
        return self

    def serialize(self):
        return (struct.pack(self.FORMAT, self.flags, self.copies, self.copies_wide, self.data_offset,
                            self.unpacked_size, self.packed_size, self.crc32, self.folder_id,
                            self.file_id)
                + pack_dword_list(self.copy_offsets))

    @classmethod
    def measure(cls, entry: Entry) -> int:
        return cls.SIZE + 4 * len(entry.copy_offsets)


class Bfs1Codec(ArchiveCodec):

    def order(self, entries):
        return sorted(entries, key=lambda entry: (name_hash(entry.name), entry.name))

    def _read_archive_header(self, data, archive: Archive) -> int:
        magic, version, header_end, file_count = self._unpack(
            ARCHIVE_HEADER_FORMAT, data, 0, "archive header"
        )
        self._check_magic(magic, version)
        if header_end > len(data):
            raise MalformedHeader("Header end 0x%X is past the end of the archive" % header_end, 8)
        archive.header_end = header_end
        return file_count

    def _check_hash_size(self, hash_size: int, offset: int) -> None:
        if hash_size != HASH_SIZE and not self.force:
            raise MalformedHeader("Invalid %s header [hash size is 0x%X]" % (self.revision, hash_size), offset)

    def _archive_header(self, archive: Archive, header_end: int) -> bytes:
        check_width("file count", len(archive.entries), U32_MAX)
        if header_end > U32_MAX:
            raise EntryOverflow("header end", header_end, U32_MAX)
        return struct.pack(ARCHIVE_HEADER_FORMAT, self.revision.magic, self.revision.version,
                           header_end, len(archive.entries))

    @staticmethod
    def _buckets(entries) -> dict[int, tuple[int, int]]:
        """Map each used hash to ``(first index, count)`` of its file headers."""
        buckets: dict[int, tuple[int, int]] = {}
        previous = None
        for index, entry in enumerate(entries):
            value = name_hash(entry.name)
            if value != previous and value in buckets:
                raise MalformedHeader(
                    "File headers are not grouped by name hash (%r)" % entry.name, None, index
                )
            first, count = buckets.get(value, (index, 0))
            buckets[value] = (first, count + 1)
            previous = value
        return buckets


@register
class Bfs2004aCodec(Bfs1Codec):

    revision = Revision.BFS2004A

    HASH_ENTRY_FORMAT = "<HH"

    def _hash_table_size(self):
        return 4 + HASH_SIZE * struct.calcsize(self.HASH_ENTRY_FORMAT)

    def measure(self, entries):
        return (ARCHIVE_HEADER_SIZE + 4 * len(entries) + self._hash_table_size()
                + sum(Bfs2004aFileHeader.measure(entry) for entry in entries))

    def _parse_headers(self, data, archive: Archive):
        file_count = self._read_archive_header(data, archive)
        header_offsets = unpack_dword_list(data, ARCHIVE_HEADER_SIZE, file_count)
        offset = ARCHIVE_HEADER_SIZE + 4 * file_count
        hash_size, = self._unpack("<L", data, offset, "hash table")
        self._check_hash_size(hash_size, offset)
        offset += self._hash_table_size()
        for index in range(file_count):
            if header_offsets[index] != offset:
                logger.debug("File header %d is at 0x%X, offset table says 0x%X",
                             index, offset, header_offsets[index])
            header = Bfs2004aFileHeader()
            offset = header.parse(data, offset, index)
            archive.entries.append(header.to_entry(header.name, allow_zstd=False))

    def _serialize_headers(self, archive: Archive) -> bytes:
        entries = archive.entries
        buckets = self._buckets(entries)
        header_end = self.measure(entries)

        offsets = []
        headers = bytearray()
        position = ARCHIVE_HEADER_SIZE + 4 * len(entries) + self._hash_table_size()
        for index, entry in enumerate(entries):
            self._checked_fields(entry, index)
            offsets.append(position + len(headers))
            headers += Bfs2004aFileHeader.from_entry(entry, index).serialize()

        table = bytearray(struct.pack("<L", HASH_SIZE))
        for value in range(HASH_SIZE):
            first, count = buckets.get(value, (0, 0))
            table += struct.pack(self.HASH_ENTRY_FORMAT, check_width("hash bucket start", first, U16_MAX),
                                 check_width("hash bucket size", count, U16_MAX))

        return (self._archive_header(archive, header_end) + pack_dword_list(offsets)
                + bytes(table) + bytes(headers))


class IdNamedCodec(Bfs1Codec):
    """Shared reader and writer of the Huffman named revisions."""

    wide_copy_count = False

    HASH_ENTRY_FORMAT = "<LL"
    METADATA_FORMAT = "<5L"
    METADATA_SIZE = struct.calcsize(METADATA_FORMAT)
    METADATA_START = ARCHIVE_HEADER_SIZE + 4 + HASH_SIZE * 8

    def measure(self, entries):
        table = self._name_table(entries, None)[0]
        return self._layout(table, entries)[1]

    # ------------------------------------------------------------------
    def _parse_headers(self, data, archive: Archive):
        file_count = self._read_archive_header(data, archive)
        hash_size, = self._unpack("<L", data, ARCHIVE_HEADER_SIZE, "hash table")
        self._check_hash_size(hash_size, ARCHIVE_HEADER_SIZE)

        start = self.METADATA_START
        offsets = self._unpack(self.METADATA_FORMAT, data, start, "metadata header")
        headers_offset, name_offsets_offset, name_lengths_offset, dictionary_offset, name_data_offset = offsets
        ends = self._section_ends(offsets, archive.header_end - start)
        for offset in offsets:
            if start + ends[offset] > len(data) or offset > ends[offset]:
                raise MalformedHeader("Metadata section is outside the archive", start + offset)

        def section(offset):
            return bytes(data[start + offset:start + ends[offset]])

        name_offsets = unpack_dword_list(section(name_offsets_offset), 0,
                                         (ends[name_offsets_offset] - name_offsets_offset) // 4)
        lengths_raw = section(name_lengths_offset)
        name_lengths = [length for length, in struct.iter_unpack("<H", lengths_raw[:len(lengths_raw) & ~1])]
        dictionary = section(dictionary_offset)
        name_data = section(name_data_offset)
        names = huffman.decode_names(name_offsets, name_lengths, dictionary, name_data)

        ids = []
        offset = start + headers_offset
        for index in range(file_count):
            header = IdFileHeader()
            offset = header.parse(data, offset, index)
            for name_id in (header.folder_id, header.file_id):
                if name_id >= len(names):
                    raise MalformedHeader("Name id %d is not in the name table" % name_id, offset, index)
            name = names[header.folder_id] + "/" + names[header.file_id]
            ids.append((header.folder_id, header.file_id))
            archive.entries.append(header.to_entry(name, allow_zstd=True))

        archive.metadata["name_table"] = huffman.NameTable(
            names, name_offsets, name_lengths, dictionary, name_data
        )
        archive.metadata["name_ids"] = ids
        archive.metadata["metadata_offsets"] = offsets
        archive.metadata["metadata_block"] = bytes(
            data[start + self.METADATA_SIZE:start + headers_offset]
        )

    @staticmethod
    def _section_ends(offsets, end) -> dict[int, int]:
        ordered = sorted(set(offsets)) + [end]
        return {offset: ordered[position + 1] for position, offset in enumerate(ordered[:-1])}

    # ------------------------------------------------------------------
    def _name_table(self, entries, archive: Archive | None):
        parts = []
        for index, entry in enumerate(entries):
            if "/" not in entry.name:
                raise BfsError("Entry %d (%r) needs a folder, %s names are folder/file pairs"
                               % (index, entry.name, self.revision))
            parts.append(tuple(entry.name.rsplit("/", 1)))

        if archive is not None and "name_table" in archive.metadata:
            table = archive.metadata["name_table"]
            ids = archive.metadata.get("name_ids", [])
            if len(ids) == len(entries) and all(
                folder_id < len(table.names) and file_id < len(table.names)
                and table.names[folder_id] == folder and table.names[file_id] == file
                for (folder_id, file_id), (folder, file) in zip(ids, parts)
            ):
                return table, ids, True

        table = huffman.build_name_table(sorted({part for pair in parts for part in pair}))
        lookup = table.index()
        check_width("name table size", len(table.names), U16_MAX + 1)
        return table, [(lookup[folder], lookup[file]) for folder, file in parts], False

    def _layout(self, table, entries):
        """Return ``(metadata offsets, header end)`` for a freshly built table."""
        name_offsets_offset = self.METADATA_SIZE
        name_lengths_offset = name_offsets_offset + 4 * len(table.names)
        dictionary_offset = name_lengths_offset + 2 * len(table.names)
        name_data_offset = dictionary_offset + len(table.dictionary)
        headers_offset = align(name_data_offset + len(table.data), 4)
        header_end = (self.METADATA_START + headers_offset
                      + sum(IdFileHeader.measure(entry) for entry in entries))
        return ((headers_offset, name_offsets_offset, name_lengths_offset, dictionary_offset,
                 name_data_offset), header_end)

    def _serialize_headers(self, archive: Archive) -> bytes:
        entries = archive.entries
        buckets = self._buckets(entries)
        table, ids, retained = self._name_table(entries, archive)

        offsets = archive.metadata.get("metadata_offsets") if retained else None
        if offsets is not None and offsets[0] == max(offsets):
            block = archive.metadata["metadata_block"]
            header_end = (self.METADATA_START + offsets[0]
                          + sum(IdFileHeader.measure(entry) for entry in entries))
        else:
            offsets, header_end = self._layout(table, entries)
            block = bytearray(pack_dword_list(table.offsets))
            block += struct.pack("<%dH" % len(table.lengths), *table.lengths)
            block += table.dictionary
            block += table.data
            block += bytes(offsets[0] - self.METADATA_SIZE - len(block))

        headers_start = self.METADATA_START + offsets[0]
        headers = bytearray()
        header_offsets = []
        for index, entry in enumerate(entries):
            self._checked_fields(entry, index)
            header_offsets.append(headers_start + len(headers))
            headers += IdFileHeader.from_entry(entry, index, ids[index], self.wide_copy_count).serialize()

        hash_table = bytearray(struct.pack("<L", HASH_SIZE))
        for value in range(HASH_SIZE):
            if value in buckets:
                first, count = buckets[value]
                hash_table += struct.pack(self.HASH_ENTRY_FORMAT, header_offsets[first], count)
            else:
                hash_table += struct.pack(self.HASH_ENTRY_FORMAT, 0, 0)

        return (self._archive_header(archive, header_end) + bytes(hash_table)
                + struct.pack(self.METADATA_FORMAT, *offsets) + bytes(block) + bytes(headers))


@register
class Bfs2004bCodec(IdNamedCodec):

    revision = Revision.BFS2004B


@register
class Bfs2007Codec(IdNamedCodec):

    revision = Revision.BFS2007
    wide_copy_count = True
