import subprocess
import sys
from pathlib import Path

SCRIPT = Path(__file__).resolve().parents[1] / "bfstool.py"
KEY = bytes(range(0x100))


def _run(*args, cwd):
    return subprocess.run(
        [sys.executable, str(SCRIPT), *map(str, args)], capture_output=True, text=True, cwd=cwd
    )


def test_archive_list_extract(tmp_path):
    source = tmp_path / "in"
    (source / "data" / "menu").mkdir(parents=True)
    (source / "data" / "version.ini").write_bytes(b"[version]\n" * 30)
    (source / "data" / "menu" / "bg.tga").write_bytes(bytes(range(256)))

    result = _run("archive", source, "test.bfs", "--format", "fo2", "--filter", "all", cwd=tmp_path)
    assert result.returncode == 0, result.stdout + result.stderr

    result = _run("list", "test.bfs", cwd=tmp_path)
    assert result.returncode == 0, result.stdout + result.stderr
    assert "Format: bfs2004b" in result.stdout
    assert "File count: 2" in result.stdout
    assert "Copies" in result.stdout and "Shared" in result.stdout
    assert "data/menu/bg.tga" in result.stdout

    result = _run("x", "test.bfs", "-o", "out", cwd=tmp_path)
    assert result.returncode == 0, result.stdout + result.stderr
    assert (tmp_path / "out" / "data" / "version.ini").read_bytes() == b"[version]\n" * 30

    result = _run("test-filters", "test.bfs", "--filter", "all", cwd=tmp_path)
    assert "data/version.ini" in result.stdout

    result = _run("tree", "test.bfs", cwd=tmp_path)
    assert result.returncode == 0, result.stdout + result.stderr
    assert "menu/" in result.stdout


def test_errors_exit_non_zero(tmp_path):
    (tmp_path / "junk.bin").write_bytes(b"not an archive at all")
    result = _run("list", "junk.bin", cwd=tmp_path)
    assert result.returncode == 1
    assert "--format" in result.stderr

    result = _run("identify", "junk.bin", "--fast-identify", cwd=tmp_path)
    assert result.returncode == 1
    assert "without --fast-identify" in result.stdout


def test_keys_are_never_printed(tmp_path):
    source = tmp_path / "in"
    source.mkdir()
    (source / "a.txt").write_bytes(b"secret stuff")
    (tmp_path / "Keys.toml").write_text('[bzf2001]\nkey = "%s"\n' % KEY.hex(), encoding="utf-8")

    result = _run("archive", source, "rt.bzf", "--format", "bzf2001", "-vv", cwd=tmp_path)
    assert result.returncode == 0, result.stdout + result.stderr
    result = _run("decrypt", "rt.bzf", "plain.bzf", "-vv", cwd=tmp_path)
    assert result.returncode == 0, result.stdout + result.stderr
    result = _run("list", "rt.bzf", "-vv", cwd=tmp_path)
    assert result.returncode == 0, result.stdout + result.stderr
    assert "a.txt" in result.stdout
    assert KEY.hex() not in result.stdout + result.stderr

    (tmp_path / "Keys.toml").unlink()
    result = _run("list", "rt.bzf", cwd=tmp_path)
    assert result.returncode == 1
    assert "Keys.toml" in result.stderr
