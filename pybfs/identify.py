"""Identify official archives by their digests.

The known file database is a JSON array of records::

    {
        "file_name": "europe.bfs",
        "game": "FlatOut",
        "platform": "PC",
        "format": "bfs2004a",
        "filter": "fo1",
        "copy_filter": "fo1-pc",
        "source": ["FlatOut (Europe) retail DVD"],
        "crc32": "F6260C6E",
        "md5": "...",
        "sha1": "...",
        "size": 4531
    }

``size`` is optional; ``source`` may also be a single multi-line string.
"""

from __future__ import annotations

import enum
import functools
import hashlib
import json
import logging
import os
import re
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "data"
DATABASE_ENV_VAR = "PYBFS_DATABASE"
READ_CHUNK_SIZE = 0x10000

_CRC_IN_NAME = re.compile(r"(?<![0-9A-Fa-f])([0-9A-Fa-f]{8})(?![0-9A-Fa-f])")


@dataclass(frozen=True)
class KnownFileRecord:
    file_name: str
    game: str
    platform: str
    format: str
    filter: str
    copy_filter: str
    source: tuple[str, ...]
    crc32: str
    md5: str
    sha1: str
    size: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "KnownFileRecord":
        source = data.get("source", ())
        if isinstance(source, str):
            source = [line.strip() for line in source.splitlines() if line.strip()]
        size = data.get("size")
        return cls(
            file_name=data["file_name"],
            game=data.get("game", ""),
            platform=data.get("platform", ""),
            format=data["format"],
            filter=data.get("filter", ""),
            copy_filter=data.get("copy_filter", ""),
            source=tuple(source),
            crc32=data["crc32"].upper(),
            md5=data["md5"].upper(),
            sha1=data["sha1"].upper(),
            size=int(size) if size is not None else None,
        )

    @property
    def revision(self):
        from .fs.model import Revision

        return Revision.from_name(self.format)


class Hint(enum.Enum):
    NONE = "none"
    RETRY_WITHOUT_FAST_IDENTIFY = "retry-without-fast-identify"


@dataclass(frozen=True)
class IdentificationResult:
    matches: tuple[KnownFileRecord, ...] = ()
    hint: Hint = Hint.NONE
    digests: "Digests | None" = None

    @property
    def found(self) -> bool:
        return bool(self.matches)

    @property
    def record(self) -> KnownFileRecord | None:
        return self.matches[0] if self.matches else None


@dataclass(frozen=True)
class Digests:
    crc32: str
    md5: str
    sha1: str
    size: int = field(default=0, compare=False)


class DigestBuilder:

    def __init__(self):
        self._crc = 0
        self._md5 = hashlib.md5()
        self._sha1 = hashlib.sha1()
        self._size = 0

    def update(self, data):
        self._crc = zlib.crc32(data, self._crc)
        self._md5.update(data)
        self._sha1.update(data)
        self._size += len(data)

    def digests(self) -> Digests:
        return Digests("%08X" % self._crc, self._md5.hexdigest().upper(),
                       self._sha1.hexdigest().upper(), self._size)


def compute_digests(data: bytes) -> Digests:
    builder = DigestBuilder()
    builder.update(data)
    return builder.digests()


def crc32_from_name(file_name) -> str | None:
    """Return the last standalone 8 digit hex token of a file's base name."""
    stem = os.path.splitext(os.path.basename(os.fspath(file_name)))[0]
    tokens = _CRC_IN_NAME.findall(stem)
    return tokens[-1].upper() if tokens else None


class KnownFileDatabase:
    """Read-only lookup table of known official archives."""

    def __init__(self, records: Iterable[KnownFileRecord] = ()):
        self.records = tuple(records)
        by_crc: dict[str, list[KnownFileRecord]] = {}
        for record in self.records:
            by_crc.setdefault(record.crc32, []).append(record)
        self._by_crc = {crc: tuple(records) for crc, records in by_crc.items()}

    def __len__(self):
        return len(self.records)

    @classmethod
    def loads(cls, text: str) -> "KnownFileDatabase":
        return cls(KnownFileRecord.from_dict(item) for item in json.loads(text))

    @classmethod
    def load(cls, path: os.PathLike[str] | str | None = None) -> "KnownFileDatabase":
        if path is None:
            path = os.environ.get(DATABASE_ENV_VAR)
        if path is None:
            return default_database()
        database = cls.loads(Path(path).read_text(encoding="utf-8"))
        logger.debug("Loaded %d known files from %s", len(database), path)
        return database

    # ------------------------------------------------------------------
    def by_crc32(self, crc32: str) -> tuple[KnownFileRecord, ...]:
        return self._by_crc.get(crc32.upper(), ())

    def lookup(self, digests: Digests) -> tuple[KnownFileRecord, ...]:
        return tuple(
            record for record in self.by_crc32(digests.crc32)
            if record.md5 == digests.md5 and record.sha1 == digests.sha1
        )

    def identify(self, data: bytes) -> IdentificationResult:
        digests = compute_digests(data)
        return IdentificationResult(self.lookup(digests), digests=digests)

    def identify_stream(self, stream) -> IdentificationResult:
        builder = DigestBuilder()
        for chunk in iter(lambda: stream.read(READ_CHUNK_SIZE), b""):
            builder.update(chunk)
        digests = builder.digests()
        return IdentificationResult(self.lookup(digests), digests=digests)

    def identify_file(self, path) -> IdentificationResult:
        with open(path, "rb") as stream:
            return self.identify_stream(stream)

    def identify_fast(self, file_name, declared_size: int | None = None) -> IdentificationResult:
        """Look the archive up by the CRC32 written in its file name.

        Nothing is read from the file, so a renamed file resolves to
        whatever its name claims.
        """
        crc32 = crc32_from_name(file_name)
        if crc32 is None:
            logger.debug("No CRC32 in %s", file_name)
            return IdentificationResult(hint=Hint.RETRY_WITHOUT_FAST_IDENTIFY)
        matches = tuple(
            record for record in self.by_crc32(crc32)
            if declared_size is None or record.size is None or record.size == declared_size
        )
        if not matches:
            return IdentificationResult(hint=Hint.RETRY_WITHOUT_FAST_IDENTIFY)
        return IdentificationResult(matches)


@functools.lru_cache(maxsize=1)
def default_database() -> KnownFileDatabase:
    text = (DATA_DIR / "known_files.json").read_text(encoding="utf-8")
    return KnownFileDatabase.loads(text)
