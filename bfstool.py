#!/usr/bin/env python3
"""List, extract and create bzf/bfs game archives."""

from __future__ import annotations

import argparse
import logging
import os.path
import sys

from pybfs import crypt
from pybfs.compression import CompressionMethod
from pybfs.crypt import KeyRing
from pybfs.errors import BfsError
from pybfs.filters import (
    COPY_FILTER_NAMES, FILTER_NAMES, load_copy_filter, load_copy_filter_file, load_filter,
    load_filter_file,
)
from pybfs.fs.archive import (
    DEFAULT_EXTRACT_PATTERN, SORT_KEYS, archive_tree, build_archive, check_copy_filters,
    check_filters, collect_files, encode_archive, extract_archive, identify_archive, list_archive,
    open_archive, read_source, write_archive,
)
from pybfs.fs.codec import supported_revisions
from pybfs.fs.model import Revision
from pybfs.identify import Hint, KnownFileDatabase


def _open(args):
    return open_archive(
        args.archive,
        revision=args.format,
        keys=KeyRing.load(args.keys),
        database=KnownFileDatabase.load(args.database),
        fast_identify=getattr(args, "fast_identify", False),
        force=args.force,
    )


def cmd_list(args) -> int:
    listing = list_archive(_open(args))
    print(f"Format: {listing.revision}")
    print(f"Size: {listing.size} bytes")
    print(f"Headers size: {listing.headers_size} bytes")
    print(f"File count: {listing.file_count}")
    print()
    print(f"{'Method':<7} {'Size':>10} {'Compressed':>10} {'Copies':>6} {'Shared':>9} {'Offset':>10}  Name")
    for row in listing.sorted(args.sort, args.descending):
        print(f"{row.method.value:<7} {row.size:>10} {row.compressed_size:>10} {row.copies:>6} "
              f"{str(row.shared):>9} {row.offset:#010x}  {row.name}")
    return 0


def cmd_tree(args) -> int:
    archive = _open(args)
    root = archive_tree(archive, os.path.basename(args.archive))
    print(f"{root.name} ({root.size})")
    for line in root.lines():
        print(line)
    return 0


def cmd_extract(args) -> int:
    report = extract_archive(_open(args), args.output, args.pattern)
    print(f"Extracted {report.count} files to {os.path.realpath(args.output)}")
    for index, (name, reason) in sorted(report.failed.items()):
        print(f"Failed to extract {name} (entry {index}): {reason}", file=sys.stderr)
    return 0 if report.ok else 1


def _filter_rules(args):
    if args.filter_file:
        return load_filter_file(args.filter_file)
    if args.filter:
        return load_filter(args.filter)
    return None


def _copy_rules(args):
    if args.copy_filter_file:
        return load_copy_filter_file(args.copy_filter_file)
    if args.copy_filter:
        return load_copy_filter(args.copy_filter)
    return None


def cmd_archive(args) -> int:
    if args.format is None:
        print("archive needs --format", file=sys.stderr)
        return 2
    files = collect_files(args.input)
    archive = build_archive(
        files,
        Revision.from_name(args.format),
        _filter_rules(args),
        _copy_rules(args),
        CompressionMethod(args.method),
        args.level,
    )
    write_archive(args.output, encode_archive(archive, KeyRing.load(args.keys)))
    print(f"Archived {len(archive)} files to {args.output} ({archive.size} bytes)")
    return 0


def cmd_identify(args) -> int:
    result = identify_archive(args.archive, KnownFileDatabase.load(args.database), args.fast_identify)
    if not result.found:
        print("File not found in the database")
        if result.hint is Hint.RETRY_WITHOUT_FAST_IDENTIFY:
            print("Try again without --fast-identify")
        return 1
    for record in result.matches:
        print(f"File name: {record.file_name}")
        print(f"Game: {record.game} ({record.platform})")
        print(f"Format: {record.format}")
        print(f"Filter: {record.filter}")
        print(f"Copy filter: {record.copy_filter}")
        for line in record.source:
            print(f"Source: {line}")
        print(f"CRC32: {record.crc32}")
        print(f"MD5: {record.md5}")
        print(f"SHA1: {record.sha1}")
    return 0


def cmd_test_filters(args) -> int:
    rules = _filter_rules(args)
    if rules is None:
        print("test-filters needs --filter or --filter-file", file=sys.stderr)
        return 2
    mismatches = 0
    for name, decision, matches in check_filters(_open(args), rules):
        mismatches += not matches
        print(f"{decision.value} {'ok  ' if matches else 'DIFF'} {name}")
    print(f"{mismatches} files differ from the filter")
    return 0 if mismatches == 0 else 1


def cmd_test_copy_filters(args) -> int:
    rules = _copy_rules(args)
    if rules is None:
        print("test-copy-filters needs --copy-filter or --copy-filter-file", file=sys.stderr)
        return 2
    mismatches = 0
    for name, copies, matches in check_copy_filters(_open(args), rules):
        mismatches += not matches
        print(f"{copies:>3} {'ok  ' if matches else 'DIFF'} {name}")
    print(f"{mismatches} files differ from the copy filter")
    return 0 if mismatches == 0 else 1


def _transform(args, function) -> int:
    data, _ = read_source(args.archive)
    key = KeyRing.load(args.keys).require(crypt.BZF2001_PROFILE)
    write_archive(args.output, function(data, key))
    print(f"Wrote {args.output}")
    return 0


def cmd_decrypt(args) -> int:
    return _transform(args, crypt.decrypt)


def cmd_encrypt(args) -> int:
    return _transform(args, crypt.encrypt)


def _add_filter_options(parser):
    parser.add_argument("--filter", choices=FILTER_NAMES, help="Named compression filter")
    parser.add_argument("--filter-file", help="Compression filter file")


def _add_copy_filter_options(parser):
    parser.add_argument("--copy-filter", choices=COPY_FILTER_NAMES, help="Named copy filter")
    parser.add_argument("--copy-filter-file", help="Copy filter file")


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-f", "--format",
        help="Archive format (%s)" % ", ".join(str(revision) for revision in supported_revisions()),
    )
    common.add_argument("--keys", help="Path to Keys.toml")
    common.add_argument("--database", help="Path to a known file database")
    common.add_argument("--force", action="store_true", help="Ignore invalid magic, version and hash size")
    common.add_argument("-v", "--verbose", action="count", default=0, help="More output, repeat for debug")

    parser = argparse.ArgumentParser(description="List, extract and create bzf/bfs archives")
    commands = parser.add_subparsers(dest="command", required=True)

    sub = commands.add_parser("list", aliases=["ls"], parents=[common], help="List archived files")
    sub.add_argument("archive")
    sub.add_argument("--sort", choices=sorted(SORT_KEYS), default="offset")
    sub.add_argument("--descending", action="store_true")
    sub.set_defaults(handler=cmd_list)

    sub = commands.add_parser("tree", parents=[common], help="Show archived files as a tree")
    sub.add_argument("archive")
    sub.set_defaults(handler=cmd_tree)

    sub = commands.add_parser("extract", aliases=["x"], parents=[common], help="Extract files")
    sub.add_argument("archive")
    sub.add_argument("pattern", nargs="?", default=DEFAULT_EXTRACT_PATTERN, help="Glob of files to extract")
    sub.add_argument("-o", "--output", required=True, help="Output directory for extraction")
    sub.set_defaults(handler=cmd_extract)

    sub = commands.add_parser("archive", parents=[common], help="Create an archive from a folder")
    sub.add_argument("input", help="Folder to archive")
    sub.add_argument("output", help="Archive to write")
    sub.add_argument("--method", choices=[method.value for method in CompressionMethod], default="zlib")
    sub.add_argument("--level", type=int, help="Compression level")
    _add_filter_options(sub)
    _add_copy_filter_options(sub)
    sub.set_defaults(handler=cmd_archive)

    sub = commands.add_parser("identify", parents=[common], help="Look an archive up in the database")
    sub.add_argument("archive")
    sub.add_argument("--fast-identify", action="store_true", help="Trust the CRC32 in the file name")
    sub.set_defaults(handler=cmd_identify)

    sub = commands.add_parser("test-filters", parents=[common], help="Compare compression with a filter")
    sub.add_argument("archive")
    _add_filter_options(sub)
    sub.set_defaults(handler=cmd_test_filters)

    sub = commands.add_parser("test-copy-filters", parents=[common], help="Compare copies with a copy filter")
    sub.add_argument("archive")
    _add_copy_filter_options(sub)
    sub.set_defaults(handler=cmd_test_copy_filters)

    for name, handler in (("decrypt", cmd_decrypt), ("encrypt", cmd_encrypt)):
        sub = commands.add_parser(name, parents=[common], help="%s a bzf2001 archive" % name.capitalize())
        sub.add_argument("archive")
        sub.add_argument("output")
        sub.set_defaults(handler=handler)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose > 1 else logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.handler(args)
    except (BfsError, ValueError, OSError) as exc:
        print(f"{args.command}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
