"""Readers and writers for the ``bbzf`` (2001) and ``bzf2`` (2002) revisions.

Both store a flat list of file headers straight after the archive header.
``bbzf`` uses fixed 0x35 byte headers with a 0x28 byte name field and is
normally encrypted with the Bzf2001 cipher, which :mod:`pybfs.crypt` removes
before the bytes get here.  ``bzf2`` headers carry a CRC and a length-prefixed
name.
"""

from __future__ import annotations

import struct

from ..compression import CompressionMethod
from ..errors import EntryOverflow, MalformedHeader
from ..util import U16_MAX, U32_MAX, check_width, decode_name, encode_name
from .codec import FLAG_COMPRESSED, FLAG_HAS_CRC, ArchiveCodec, register
from .model import Archive, Entry, Revision


class Bzf2001FileHeader:

    FORMAT = "<BLLL40s"
    SIZE = struct.calcsize(FORMAT)
    NAME_LENGTH = 0x28

    def parse(self, data):
        (self.flags,
         self.data_offset,
         self.unpacked_size,
         self.packed_size,
         self.name_field) = struct.unpack(self.FORMAT, data)
        self.name = decode_name(self.name_field.split(b"\0", 1)[0])
        return self

    def serialize(self):
        return struct.pack(self.FORMAT, self.flags, self.data_offset, self.unpacked_size,
                           self.packed_size, self.name_field)

    def to_entry(self):
        return Entry(
            name=self.name,
            method=CompressionMethod.ZLIB if self.flags & FLAG_COMPRESSED else CompressionMethod.STORE,
            size=self.unpacked_size,
            compressed_size=self.packed_size,
            offset=self.data_offset,
            extra_flags=self.flags & ~FLAG_COMPRESSED,
        )

    @classmethod
    def from_entry(cls, entry: Entry, index: int, name_field: bytes | None = None):
        """``name_field`` is the parsed field, kept while it still holds the entry's name."""
        self = cls()
        name = encode_name(entry.name)
        check_width("file name length", len(name), cls.NAME_LENGTH, index)
        if name_field is None or name_field.split(b"\0", 1)[0] != name:
            name_field = name
        self.name_field = name_field
        self.flags = entry.extra_flags | (FLAG_COMPRESSED if entry.is_compressed else 0)
        self.data_offset = entry.offset
        self.unpacked_size = entry.size
        self.packed_size = entry.compressed_size
        self.name = entry.name
        return self


@register
class Bzf2001Codec(ArchiveCodec):

    revision = Revision.BZF2001
    data_alignment = 1

    HEADER_FORMAT = "<4sLL"
    HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

    def measure(self, entries):
        return self.HEADER_SIZE + len(entries) * Bzf2001FileHeader.SIZE

    def _parse_headers(self, data, archive: Archive):
        magic, version, file_count = self._unpack(self.HEADER_FORMAT, data, 0, "archive header")
        self._check_magic(magic, version)
        archive.header_end = self.HEADER_SIZE + file_count * Bzf2001FileHeader.SIZE
        if archive.header_end > len(data):
            raise MalformedHeader(
                "File headers for %d files run past the end of the archive" % file_count,
                self.HEADER_SIZE,
            )
        name_fields = []
        for index in range(file_count):
            start = self.HEADER_SIZE + index * Bzf2001FileHeader.SIZE
            header = Bzf2001FileHeader().parse(data[start:start + Bzf2001FileHeader.SIZE])
            archive.entries.append(header.to_entry())
            name_fields.append(header.name_field)
        archive.metadata["name_fields"] = name_fields

    def _serialize_headers(self, archive: Archive) -> bytes:
        check_width("file count", len(archive.entries), U32_MAX)
        out = bytearray(struct.pack(self.HEADER_FORMAT, self.revision.magic,
                                    self.revision.version, len(archive.entries)))
        name_fields = archive.metadata.get("name_fields", [])
        for index, entry in enumerate(archive.entries):
            self._checked_fields(entry, index)
            name_field = name_fields[index] if index < len(name_fields) else None
            out += Bzf2001FileHeader.from_entry(entry, index, name_field).serialize()
        return bytes(out)


class Bzf2002FileHeader:

    FORMAT = "<BLLLLH"
    SIZE = struct.calcsize(FORMAT)

    def parse(self, data, offset):
        (self.flags,
         self.data_offset,
         self.unpacked_size,
         self.packed_size,
         self.crc32,
         name_length) = struct.unpack_from(self.FORMAT, data, offset)
        start = offset + self.SIZE
        if start + name_length > len(data):
            raise MalformedHeader("File name runs past the end of the archive", start)
        self.name = decode_name(bytes(data[start:start + name_length]))
        return start + name_length

    def serialize(self):
        name = encode_name(self.name)
        return struct.pack(self.FORMAT, self.flags, self.data_offset, self.unpacked_size,
                           self.packed_size, self.crc32, len(name)) + name

    def to_entry(self):
        return Entry(
            name=self.name,
            method=CompressionMethod.ZLIB if self.flags & FLAG_COMPRESSED else CompressionMethod.STORE,
            size=self.unpacked_size,
            compressed_size=self.packed_size,
            offset=self.data_offset,
            crc32=self.crc32 if self.flags & FLAG_HAS_CRC else None,
            extra_flags=self.flags & ~(FLAG_COMPRESSED | FLAG_HAS_CRC),
        )

    @classmethod
    def from_entry(cls, entry: Entry, index: int):
        self = cls()
        check_width("file name length", len(encode_name(entry.name)), U16_MAX, index)
        self.flags = entry.extra_flags
        if entry.is_compressed:
            self.flags |= FLAG_COMPRESSED
        if entry.crc32 is not None:
            self.flags |= FLAG_HAS_CRC
        self.data_offset = entry.offset
        self.unpacked_size = entry.size
        self.packed_size = entry.compressed_size
        self.crc32 = entry.crc32 or 0
        self.name = entry.name
        return self


@register
class Bzf2002Codec(ArchiveCodec):

    revision = Revision.BZF2002

    HEADER_FORMAT = "<4sLLL"
    HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

    def measure(self, entries):
        return self.HEADER_SIZE + sum(
            Bzf2002FileHeader.SIZE + len(encode_name(entry.name)) for entry in entries
        )

    def _parse_headers(self, data, archive: Archive):
        magic, version, header_end, file_count = self._unpack(
            self.HEADER_FORMAT, data, 0, "archive header"
        )
        self._check_magic(magic, version)
        if header_end > len(data):
            raise MalformedHeader("Header end 0x%X is past the end of the archive" % header_end, 8)
        offset = self.HEADER_SIZE
        for index in range(file_count):
            if offset + Bzf2002FileHeader.SIZE > header_end:
                raise MalformedHeader("File header is past the header end", offset, index)
            header = Bzf2002FileHeader()
            offset = header.parse(data, offset)
            archive.entries.append(header.to_entry())
        archive.header_end = header_end

    def _serialize_headers(self, archive: Archive) -> bytes:
        check_width("file count", len(archive.entries), U32_MAX)
        header_end = self.measure(archive.entries)
        if header_end > U32_MAX:
            raise EntryOverflow("header end", header_end, U32_MAX)
        out = bytearray(struct.pack(self.HEADER_FORMAT, self.revision.magic,
                                    self.revision.version, header_end, len(archive.entries)))
        for index, entry in enumerate(archive.entries):
            self._checked_fields(entry, index)
            out += Bzf2002FileHeader.from_entry(entry, index).serialize()
        return bytes(out)
