from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterable, NamedTuple

from .. import compression, crypt
from ..compression import CompressionMethod
from ..crypt import KeyRing
from ..errors import BfsError, EntryOverflow, UnsupportedMethod, UnsupportedRevision
from ..filters import CopyRule, Decision, FilterRule, copy_count, evaluate, glob_regex
from ..identify import Hint, IdentificationResult, KnownFileDatabase
from ..util import jamcrc
from .codec import codec_for, sniff_revision, supported_revisions
from .model import Archive, CopyDescriptor, Entry, Revision

logger = logging.getLogger(__name__)

DEFAULT_EXTRACT_PATTERN = "**/*"

_REVISIONS_WITHOUT_CRC = (Revision.BZF2001,)
_REVISIONS_WITHOUT_COPIES = (Revision.BZF2001, Revision.BZF2002)


def read_source(source) -> tuple[bytes, str | None]:
    """Return the bytes and file name behind a path, buffer or binary stream."""
    if isinstance(source, (str, os.PathLike)):
        path = os.fspath(source)
        with open(path, "rb") as stream:
            return stream.read(), path
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source), None
    return source.read(), getattr(source, "name", None)


def resolve_revision(
    data: bytes,
    file_name: str | None = None,
    revision: Revision | str | None = None,
    database: KnownFileDatabase | None = None,
    fast_identify: bool = False,
) -> Revision:
    if revision is not None:
        return revision if isinstance(revision, Revision) else Revision.from_name(revision)

    if database is not None:
        if fast_identify and file_name is not None:
            result = database.identify_fast(file_name, len(data))
        else:
            result = database.identify(data)
        if result.found:
            logger.info("Identified %s as %s (%s)", file_name or "archive",
                        result.record.file_name, result.record.game)
            return result.record.revision
        if result.hint is Hint.RETRY_WITHOUT_FAST_IDENTIFY:
            logger.info("Fast identification failed, try again without it")

    sniffed = sniff_revision(data)
    if sniffed is None:
        raise UnsupportedRevision(
            None, "Could not determine the archive format, pass it explicitly with --format"
        )
    logger.debug("Archive header looks like %s", sniffed)
    return sniffed


def decode_archive(
    data: bytes,
    revision: Revision,
    keys: KeyRing | None = None,
    force: bool = False,
) -> Archive:
    codec = codec_for(revision, force)
    if revision.encrypted:
        data = crypt.decrypt(data, (keys or KeyRing()).require(revision.cipher_profile))
    return codec.parse(data)


def open_archive(
    source,
    revision: Revision | str | None = None,
    keys: KeyRing | None = None,
    database: KnownFileDatabase | None = None,
    fast_identify: bool = False,
    force: bool = False,
) -> Archive:
    data, file_name = read_source(source)
    resolved = resolve_revision(data, file_name, revision, database, fast_identify)
    return decode_archive(data, resolved, keys, force)


def identify_archive(source, database: KnownFileDatabase | None = None,
                     fast_identify: bool = False) -> IdentificationResult:
    if database is None:
        database = KnownFileDatabase.load()
    if isinstance(source, (str, os.PathLike)):
        if fast_identify:
            return database.identify_fast(source, os.path.getsize(source))
        return database.identify_file(source)
    data, file_name = read_source(source)
    if fast_identify and file_name is not None:
        return database.identify_fast(file_name, len(data))
    return database.identify(data)


def _as_archive(source, **options) -> Archive:
    if isinstance(source, Archive):
        return source
    return open_archive(source, **options)


# ----------------------------------------------------------------------
# Listing


class ListRow(NamedTuple):
    method: CompressionMethod
    size: int
    compressed_size: int
    copies: int
    offset: int
    name: str
    # entries sharing this payload after deduplication
    shared: CopyDescriptor


SORT_KEYS = {
    "name": lambda row: row.name,
    "size": lambda row: row.size,
    "compressed": lambda row: row.compressed_size,
    "copies": lambda row: row.copies,
    "shared": lambda row: (row.shared.count, row.shared.primary),
    "offset": lambda row: row.offset,
    "method": lambda row: row.method.value,
}


@dataclass
class ArchiveListing:
    revision: Revision
    size: int
    headers_size: int
    rows: list[ListRow]

    @property
    def file_count(self) -> int:
        return len(self.rows)

    def sorted(self, key: str = "name", descending: bool = False) -> list[ListRow]:
        try:
            sort_key = SORT_KEYS[key]
        except KeyError:
            raise ValueError("Cannot sort by %r, expected one of: %s" % (key, ", ".join(SORT_KEYS))) from None
        return sorted(self.rows, key=sort_key, reverse=descending)


def list_archive(source, **options) -> ArchiveListing:
    archive = _as_archive(source, **options)
    rows = [
        ListRow(entry.method, entry.size, entry.compressed_size, len(entry.copy_offsets),
                entry.offset, entry.name, entry.copy or CopyDescriptor(index))
        for index, entry in enumerate(archive.entries)
    ]
    return ArchiveListing(archive.revision, archive.size, archive.headers_size, rows)


# ----------------------------------------------------------------------
# Tree view


@dataclass
class TreeFolder:
    name: str
    size: int = 0
    folders: dict[str, "TreeFolder"] = field(default_factory=dict)
    files: list[tuple[str, int]] = field(default_factory=list)

    def insert(self, parts: list[str], size: int) -> None:
        if len(parts) == 1:
            self.files.append((parts[0], size))
        else:
            self.folders.setdefault(parts[0], TreeFolder(parts[0])).insert(parts[1:], size)

    def calculate_sizes(self) -> int:
        self.size = sum(size for _, size in self.files)
        self.size += sum(folder.calculate_sizes() for folder in self.folders.values())
        return self.size

    def lines(self, prefix: str = "") -> list[str]:
        children = [(name, folder) for name, folder in sorted(self.folders.items())]
        children += [(name, size) for name, size in sorted(self.files)]
        lines = []
        for position, (name, child) in enumerate(children):
            last = position == len(children) - 1
            branch = "`-- " if last else "|-- "
            if isinstance(child, TreeFolder):
                lines.append("%s%s%s/ (%d)" % (prefix, branch, name, child.size))
                lines.extend(child.lines(prefix + ("    " if last else "|   ")))
            else:
                lines.append("%s%s%s (%d)" % (prefix, branch, name, child))
        return lines


def archive_tree(archive: Archive, root_name: str = "") -> TreeFolder:
    root = TreeFolder(root_name)
    for entry in archive.entries:
        root.insert([part for part in entry.display_name.split("/") if part] or [entry.display_name],
                    entry.size)
    root.calculate_sizes()
    return root


# ----------------------------------------------------------------------
# Extraction


@dataclass
class ExtractReport:
    extracted: dict[int, str] = field(default_factory=dict)
    failed: dict[int, tuple[str, str]] = field(default_factory=dict)
    skipped: int = 0

    @property
    def count(self) -> int:
        return len(self.extracted)

    @property
    def ok(self) -> bool:
        return not self.failed


def _target_path(destination: Path, name: str) -> Path:
    target = (destination / name).resolve()
    if destination not in target.parents:
        raise BfsError("Refusing to extract %r outside of %s" % (name, destination))
    return target


def extract_entry(entry: Entry, target: Path) -> None:
    data = compression.decode(entry.data, entry.method, entry.size)
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(target, "wb") as stream:
            stream.write(data)
    except BaseException:
        target.unlink(missing_ok=True)
        raise


def extract_archive(
    source,
    destination,
    pattern: str | None = DEFAULT_EXTRACT_PATTERN,
    progress: Callable[[int, int], None] | None = None,
    **options,
) -> ExtractReport:
    """Extract every entry whose name matches ``pattern``.

    Failures are collected per entry and do not stop the remaining ones.
    """
    archive = _as_archive(source, **options)
    destination = Path(destination).resolve()
    matcher = glob_regex(pattern or DEFAULT_EXTRACT_PATTERN)
    report = ExtractReport()
    written: dict[Path, int] = {}
    total = len(archive.entries)
    for index, entry in enumerate(archive.entries):
        name = entry.display_name
        if matcher.fullmatch(name) is None:
            report.skipped += 1
            continue
        try:
            target = _target_path(destination, name)
            if target in written:
                raise BfsError("%s was already extracted from entry %d" % (name, written[target]))
            extract_entry(entry, target)
            written[target] = index
        except (BfsError, OSError) as e:
            logger.warning("Failed to extract %s: %s", name, e)
            report.failed[index] = (name, str(e))
        else:
            report.extracted[index] = str(target)
        if progress is not None:
            progress(index + 1, total)
    logger.info("Extracted %d of %d files", report.count, total)
    return report


# ----------------------------------------------------------------------
# Creation


def normalize_name(name: str) -> str:
    return name.replace("\\", "/").lstrip("/")


def collect_files(folder) -> list[tuple[str, Path]]:
    """Archive names and paths of every file below ``folder``, sorted by name."""
    folder = Path(folder)
    files = [
        (path.relative_to(folder).as_posix(), path)
        for path in folder.rglob("*") if path.is_file()
    ]
    return sorted(files)


class ArchiveBuilder:
    """Collects files and lays them out as a new archive.

    Files with byte-identical contents are stored once and share a payload.
    """

    def __init__(self, revision: Revision | str, level: int | None = None):
        self.revision = revision if isinstance(revision, Revision) else Revision.from_name(revision)
        if self.revision not in supported_revisions():
            raise UnsupportedRevision(self.revision)
        self.codec = codec_for(self.revision)
        self.level = level
        self._entries: list[Entry] = []

    def __len__(self):
        return len(self._entries)

    def add(self, name: str, data: bytes, method: CompressionMethod = CompressionMethod.STORE,
            copies: int = 0) -> None:
        method = CompressionMethod(method)
        if method not in self.revision.methods:
            raise UnsupportedMethod(self.revision, method, len(self._entries))
        if copies and self.revision in _REVISIONS_WITHOUT_COPIES:
            raise EntryOverflow("copy count", copies, 0, len(self._entries))
        self._entries.append(Entry(normalize_name(name), method, size=len(data),
                                   copy_offsets=[0] * copies, data=bytes(data)))

    def build(self) -> Archive:
        entries = [replace(entry, copy_offsets=list(entry.copy_offsets))
                   for entry in self.codec.order(self._entries)]
        first_seen: dict[tuple[bytes, CompressionMethod, int], int] = {}
        groups: dict[int, list[int]] = {}
        for index, entry in enumerate(entries):
            key = (hashlib.sha1(entry.data).digest(), entry.method, len(entry.copy_offsets))
            primary = first_seen.setdefault(key, index)
            groups.setdefault(primary, []).append(index)
            if primary != index:
                source = entries[primary]
                entry.method, entry.data = source.method, source.data
                logger.debug("%s has the same contents as %s", entry.name, source.name)
            else:
                entry.data, entry.method = compression.encode(entry.data, entry.method, self.level, fallback=True)
            entry.compressed_size = len(entry.data)
            entry.crc32 = None if self.revision in _REVISIONS_WITHOUT_CRC else jamcrc(entry.data)

        cursor = self.codec.data_start(entries)
        for primary, members in groups.items():
            owner = entries[primary]
            owner.offset = cursor
            cursor += owner.compressed_size
            for position in range(len(owner.copy_offsets)):
                owner.copy_offsets[position] = cursor
                cursor += owner.compressed_size
            for index in members:
                entries[index].offset = owner.offset
                entries[index].copy_offsets = list(owner.copy_offsets)
                entries[index].copy = CopyDescriptor(primary, len(members) - 1)

        return Archive(self.revision, entries, size=cursor, header_end=self.codec.measure(entries))

    def to_bytes(self, keys: KeyRing | None = None) -> bytes:
        return encode_archive(self.build(), keys)


def encode_archive(archive: Archive, keys: KeyRing | None = None) -> bytes:
    data = codec_for(archive.revision).serialize(archive)
    if archive.revision.encrypted:
        data = crypt.encrypt(data, (keys or KeyRing()).require(archive.revision.cipher_profile))
    return data


def _iter_files(files) -> Iterable[tuple[str, bytes]]:
    items = files.items() if isinstance(files, dict) else files
    for name, content in items:
        if isinstance(content, (str, os.PathLike)):
            content = Path(content).read_bytes()
        yield name, content


def build_archive(
    files,
    revision: Revision | str,
    filter_rules: list[FilterRule] | None = None,
    copy_rules: list[CopyRule] | None = None,
    method: CompressionMethod = CompressionMethod.ZLIB,
    level: int | None = None,
) -> Archive:
    """Lay out ``files`` (name to bytes or path) as a new archive.

    Without ``filter_rules`` every file is compressed with ``method``.
    """
    builder = ArchiveBuilder(revision, level)
    for name, content in _iter_files(files):
        name = normalize_name(name)
        included = filter_rules is None or evaluate(name, filter_rules) is Decision.INCLUDE
        builder.add(
            name,
            content,
            method if included else CompressionMethod.STORE,
            copy_count(name, copy_rules) if copy_rules else 0,
        )
    archive = builder.build()
    logger.info("Laid out %d files as a %s archive of %d bytes", len(archive), archive.revision, archive.size)
    return archive


def create_archive(files, revision, filter_rules=None, copy_rules=None,
                   method=CompressionMethod.ZLIB, keys: KeyRing | None = None,
                   level: int | None = None) -> bytes:
    archive = build_archive(files, revision, filter_rules, copy_rules, method, level)
    return encode_archive(archive, keys)


def write_archive(path, data: bytes) -> None:
    """Write ``data`` to ``path`` through a temporary file in the same folder."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as stream:
            stream.write(data)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def check_filters(archive: Archive, rules: list[FilterRule]) -> list[tuple[str, Decision, bool]]:
    """Compare every entry's compression with what ``rules`` would choose."""
    return [
        (entry.name, evaluate(entry.name, rules),
         entry.is_compressed == (evaluate(entry.name, rules) is Decision.INCLUDE))
        for entry in archive.entries
    ]


def check_copy_filters(archive: Archive, rules: list[CopyRule]) -> list[tuple[str, int, bool]]:
    """Compare every entry's physical copy count with what ``rules`` would choose."""
    return [
        (entry.name, copy_count(entry.name, rules), len(entry.copy_offsets) == copy_count(entry.name, rules))
        for entry in archive.entries
    ]
