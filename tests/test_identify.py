import io
import json

import pytest

from pybfs.errors import UnsupportedRevision
from pybfs.fs.archive import identify_archive, resolve_revision
from pybfs.fs.model import Revision
from pybfs.identify import Hint, KnownFileDatabase, compute_digests, crc32_from_name

CONTENT = b"bfs1 pretend archive contents" * 10


def _database(size=None):
    digests = compute_digests(CONTENT)
    record = {
        "file_name": "europe.bfs",
        "game": "FlatOut",
        "platform": "PC",
        "format": "bfs2004a",
        "filter": "fo1",
        "copy_filter": "fo1-pc",
        "source": "FlatOut retail\nFlatOut demo",
        "crc32": digests.crc32.lower(),
        "md5": digests.md5,
        "sha1": digests.sha1,
    }
    if size is not None:
        record["size"] = size
    return KnownFileDatabase.loads(json.dumps([record]))


def test_identical_bytes_identify_alike(tmp_path):
    database = _database()
    first = tmp_path / "europe.bfs"
    second = tmp_path / "renamed.bin"
    first.write_bytes(CONTENT)
    second.write_bytes(CONTENT)

    a = database.identify_file(first)
    b = database.identify_file(second)
    assert a.found and b.found
    assert a.record == b.record
    assert a.record.source == ("FlatOut retail", "FlatOut demo")
    assert a.record.revision is Revision.BFS2004A
    assert database.identify(CONTENT).record == a.record


def test_not_found():
    result = _database().identify(CONTENT + b"!")
    assert not result.found
    assert result.record is None
    assert result.hint is Hint.NONE


def test_fast_identify():
    database = _database(size=len(CONTENT))
    crc = compute_digests(CONTENT).crc32

    assert database.identify_fast("europe [%s].bfs" % crc).found
    assert database.identify_fast("/games/fo/europe_%s.bfs" % crc.lower(), len(CONTENT)).found

    missing = database.identify_fast("europe.bfs")
    assert not missing.found
    assert missing.hint is Hint.RETRY_WITHOUT_FAST_IDENTIFY

    wrong_size = database.identify_fast("europe_%s.bfs" % crc, len(CONTENT) + 1)
    assert wrong_size.hint is Hint.RETRY_WITHOUT_FAST_IDENTIFY


def test_crc32_from_name():
    assert crc32_from_name("europe [F6260C6E].bfs") == "F6260C6E"
    assert crc32_from_name("a_deadbeef_cafebabe.bfs") == "CAFEBABE"
    assert crc32_from_name("0123456789.bfs") is None
    assert crc32_from_name("europe.bfs") is None


def test_database_resolves_revision():
    database = _database()
    assert resolve_revision(CONTENT, database=database) is Revision.BFS2004A
    assert resolve_revision(CONTENT, revision="fo2", database=database) is Revision.BFS2004B
    with pytest.raises(UnsupportedRevision) as info:
        resolve_revision(CONTENT + b"!", database=database)
    assert "--format" in str(info.value)


def test_database_file(tmp_path, monkeypatch):
    path = tmp_path / "known.json"
    path.write_text("[]", encoding="utf-8")
    assert len(KnownFileDatabase.load(path)) == 0
    monkeypatch.setenv("PYBFS_DATABASE", str(path))
    assert len(KnownFileDatabase.load()) == 0
    monkeypatch.delenv("PYBFS_DATABASE")
    assert isinstance(KnownFileDatabase.load(), KnownFileDatabase)


def test_identify_archive(tmp_path):
    database = _database()
    path = tmp_path / "europe.bfs"
    path.write_bytes(CONTENT)
    assert identify_archive(path, database).found
    assert identify_archive(io.BytesIO(CONTENT), database).found
    assert identify_archive(path, database, fast_identify=True).hint is Hint.RETRY_WITHOUT_FAST_IDENTIFY
