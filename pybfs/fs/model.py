from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import NamedTuple

from ..compression import CompressionMethod

_STORE_ZLIB = (CompressionMethod.STORE, CompressionMethod.ZLIB)
_ALL_METHODS = _STORE_ZLIB + (CompressionMethod.ZSTD,)


class Revision(str, enum.Enum):
    """Every known layout of the bzf/bfs archive family."""

    BZF2001 = "bzf2001"
    BZF2002 = "bzf2002"
    BFS2004A = "bfs2004a"
    BFS2004B = "bfs2004b"
    BFS2007 = "bfs2007"
    BFS2011 = "bfs2011"
    BFS2013 = "bfs2013"

    def __str__(self):
        return self.value

    @property
    def magic(self) -> bytes:
        return _REVISION_INFO[self][0]

    @property
    def version(self) -> int:
        return _REVISION_INFO[self][1]

    @property
    def cipher_profile(self) -> str | None:
        return _REVISION_INFO[self][2]

    @property
    def encrypted(self) -> bool:
        return self.cipher_profile is not None

    @property
    def methods(self) -> tuple[CompressionMethod, ...]:
        return _REVISION_INFO[self][3]

    @property
    def games(self) -> str:
        return _REVISION_INFO[self][4]

    @classmethod
    def from_name(cls, name: str) -> "Revision":
        name = name.strip().lower()
        try:
            return cls(_ALIASES.get(name, name))
        except ValueError:
            raise ValueError("Unknown archive format %r" % name) from None


# magic, version, cipher profile, methods, games
_REVISION_INFO = {
    Revision.BZF2001: (b"bbzf", 0x06062001, "bzf2001", _STORE_ZLIB, "Rally Trophy"),
    Revision.BZF2002: (b"bzf2", 0x20021011, None, _STORE_ZLIB,
                       "Bugbear Retro Demo 2002, Tough Trucks: Modified Monsters"),
    Revision.BFS2004A: (b"bfs1", 0x20040505, None, _STORE_ZLIB, "FlatOut"),
    Revision.BFS2004B: (b"bfs1", 0x20040505, None, _ALL_METHODS, "FlatOut 2, FlatOut: Head On"),
    Revision.BFS2007: (b"bfs1", 0x20070310, None, _ALL_METHODS,
                       "FlatOut: Ultimate Carnage, Sega Rally Revo"),
    Revision.BFS2011: (b"bfs1", 0x20111220, None, (), "Ridge Racer Unbounded"),
    Revision.BFS2013: (b"bbfs", 0x20130314, None, (), "Ridge Racer Driftopia"),
}

_ALIASES = {
    "bbzf": "bzf2001",
    "bzf2": "bzf2002",
    "bbfs": "bfs2013",
    "fo1": "bfs2004a",
    "fo2": "bfs2004b",
    "fouc": "bfs2007",
}


class CopyDescriptor(NamedTuple):
    """``primary`` owns the payload, ``count`` other entries share it."""

    primary: int
    count: int = 0

    def __str__(self):
        return "%d+%d" % (self.primary, self.count)


@dataclass
class Entry:
    name: str
    method: CompressionMethod = CompressionMethod.STORE
    size: int = 0
    compressed_size: int = 0
    offset: int = 0
    copy: CopyDescriptor | None = None
    copy_offsets: list[int] = field(default_factory=list)
    crc32: int | None = None
    extra_flags: int = 0
    data: bytes = field(default=b"", repr=False)

    @property
    def display_name(self) -> str:
        """Name to extract to; nameless entries are named after their offset."""
        return self.name if self.name else "%08x.dat" % self.offset

    @property
    def is_compressed(self) -> bool:
        return self.method is not CompressionMethod.STORE


@dataclass
class Archive:
    revision: Revision
    entries: list[Entry] = field(default_factory=list)
    size: int = 0
    header_end: int = 0
    metadata: dict = field(default_factory=dict, repr=False)

    @property
    def headers_size(self) -> int:
        """Offset of the last header byte, which is what archive listings show."""
        return max(self.header_end - 1, 0)

    @property
    def file_count(self) -> int:
        return len(self.entries)

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def __getitem__(self, index):
        return self.entries[index]

    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    def find(self, name: str) -> list[Entry]:
        return [entry for entry in self.entries if entry.name == name]

    def link_copies(self) -> None:
        """Derive every entry's copy descriptor from shared payload locations."""
        groups: dict[tuple[int, int], list[int]] = {}
        for index, entry in enumerate(self.entries):
            groups.setdefault((entry.offset, entry.compressed_size), []).append(index)
        for members in groups.values():
            for index in members:
                self.entries[index].copy = CopyDescriptor(members[0], len(members) - 1)
