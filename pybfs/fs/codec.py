from __future__ import annotations

import logging
import struct

from ..errors import EntryOverflow, MalformedHeader, UnsupportedMethod, UnsupportedRevision
from ..util import U32_MAX, align, check_width
from .model import Archive, Entry, Revision

logger = logging.getLogger(__name__)

FLAG_COMPRESSED = 0x01
FLAG_HAS_CRC = 0x04
FLAG_ZSTD = 0x08

_CODECS: dict[Revision, type["ArchiveCodec"]] = {}


def register(cls):
    _CODECS[cls.revision] = cls
    return cls


def codec_for(revision: Revision, force: bool = False) -> "ArchiveCodec":
    revision = Revision(revision)
    try:
        return _CODECS[revision](force=force)
    except KeyError:
        raise UnsupportedRevision(revision) from None


def supported_revisions() -> list[Revision]:
    return [
        revision for revision in Revision
        if revision in _CODECS and not issubclass(_CODECS[revision], UnreadableCodec)
    ]


def parse(data: bytes, revision: Revision, force: bool = False) -> Archive:
    return codec_for(revision, force).parse(data)


def serialize(archive: Archive) -> bytes:
    return codec_for(archive.revision).serialize(archive)


def sniff_revision(data: bytes) -> Revision | None:
    """Guess the revision from the archive header alone."""
    if len(data) < 8:
        return None
    magic = bytes(data[:4])
    version = struct.unpack_from("<L", data, 4)[0]
    for revision in (Revision.BZF2001, Revision.BZF2002, Revision.BFS2013):
        if magic == revision.magic:
            return revision
    if magic != b"bfs1":
        return None
    if version == Revision.BFS2007.version:
        return Revision.BFS2007
    if version == Revision.BFS2011.version:
        return Revision.BFS2011
    if version == Revision.BFS2004A.version:
        # Revision B puts the hash table size where revision A starts its
        # header offset table, and no header offset can be that small.
        if len(data) >= 20 and struct.unpack_from("<L", data, 16)[0] == 0x3E5:
            return Revision.BFS2004B
        return Revision.BFS2004A
    return None


class ArchiveCodec:
    """Reads and writes one archive revision.

    Subclasses implement :meth:`_parse_headers`, :meth:`_serialize_headers`
    and :meth:`measure`; payload placement is shared.
    """

    revision: Revision
    data_alignment = 4

    def __init__(self, force: bool = False):
        self.force = force

    # ------------------------------------------------------------------
    def parse(self, data) -> Archive:
        data = memoryview(bytes(data)) if not isinstance(data, (bytes, memoryview)) else memoryview(data)
        archive = Archive(self.revision, size=len(data))
        self._parse_headers(data, archive)
        for index, entry in enumerate(archive.entries):
            self._check_payload(entry, index, len(data))
            entry.data = bytes(data[entry.offset:entry.offset + entry.compressed_size])
        archive.link_copies()
        logger.debug("Parsed %s archive with %d entries", self.revision, len(archive.entries))
        return archive

    def serialize(self, archive: Archive) -> bytes:
        for index, entry in enumerate(archive.entries):
            if entry.method not in self.revision.methods:
                raise UnsupportedMethod(self.revision, entry.method, index)
        headers = self._serialize_headers(archive)
        end = len(headers)
        for index, entry in enumerate(archive.entries):
            for offset in [entry.offset] + list(entry.copy_offsets):
                if offset < len(headers) and entry.compressed_size:
                    raise MalformedHeader("Payload overlaps the header block", offset, index)
                end = max(end, offset + entry.compressed_size)
        size = max(end, archive.size)
        check_width("archive size", size, U32_MAX + 1)

        out = bytearray(size)
        out[:len(headers)] = headers
        for entry in archive.entries:
            if len(entry.data) != entry.compressed_size:
                raise MalformedHeader(
                    "Stored payload of %r is %d bytes, header says %d"
                    % (entry.name, len(entry.data), entry.compressed_size),
                    entry.offset,
                )
            for offset in [entry.offset] + list(entry.copy_offsets):
                out[offset:offset + entry.compressed_size] = entry.data
        return bytes(out)

    def measure(self, entries: list[Entry]) -> int:
        """Return the end offset of the header block for ``entries``."""
        raise NotImplementedError

    def data_start(self, entries: list[Entry]) -> int:
        return align(self.measure(entries), self.data_alignment)

    def order(self, entries: list[Entry]) -> list[Entry]:
        """Order a new archive's entries the way this revision stores them."""
        return list(entries)

    # ------------------------------------------------------------------
    def _parse_headers(self, data: memoryview, archive: Archive) -> None:
        raise NotImplementedError

    def _serialize_headers(self, archive: Archive) -> bytes:
        raise NotImplementedError

    def _check_magic(self, magic: bytes, version: int) -> None:
        if self.force:
            return
        if magic != self.revision.magic:
            raise MalformedHeader("Invalid %s header [magic is %r]" % (self.revision, magic), 0)
        if version != self.revision.version:
            raise MalformedHeader("Invalid %s header [version is 0x%08X]" % (self.revision, version), 4)

    def _unpack(self, fmt: str, data: memoryview, offset: int, what: str, index: int | None = None):
        if offset + struct.calcsize(fmt) > len(data):
            raise MalformedHeader("Truncated %s" % what, offset, index)
        return struct.unpack_from(fmt, data, offset)

    def _check_payload(self, entry: Entry, index: int, size: int) -> None:
        for offset in [entry.offset] + entry.copy_offsets:
            if offset + entry.compressed_size > size:
                raise MalformedHeader(
                    "Payload of %d bytes runs past the end of the archive" % entry.compressed_size,
                    offset, index,
                )
        if not entry.is_compressed and entry.size != entry.compressed_size:
            raise MalformedHeader(
                "Stored entry sizes differ [%d != %d]" % (entry.size, entry.compressed_size),
                entry.offset, index,
            )

    @staticmethod
    def _checked_fields(entry: Entry, index: int) -> None:
        check_width("data offset", entry.offset, U32_MAX, index)
        check_width("uncompressed size", entry.size, U32_MAX, index)
        check_width("compressed size", entry.compressed_size, U32_MAX, index)
        for offset in entry.copy_offsets:
            check_width("copy offset", offset, U32_MAX, index)
        if entry.offset + entry.compressed_size > U32_MAX + 1:
            raise EntryOverflow("payload end", entry.offset + entry.compressed_size, U32_MAX + 1, index)


class UnreadableCodec(ArchiveCodec):
    """Revisions that are known but have no reader or writer."""

    def parse(self, data) -> Archive:
        raise UnsupportedRevision(self.revision)

    def serialize(self, archive: Archive) -> bytes:
        raise UnsupportedRevision(self.revision)

    def measure(self, entries):
        raise UnsupportedRevision(self.revision)


@register
class Bfs2011Codec(UnreadableCodec):

    revision = Revision.BFS2011


@register
class Bfs2013Codec(UnreadableCodec):

    revision = Revision.BFS2013


# Codec modules register themselves on import
from . import bfs, bzf  # noqa: E402,F401
