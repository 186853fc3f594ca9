#!filepath: tests/utils/test_filesystem.py
from pathlib import Path

from bspml import fs


def test_safe_write_creates_parents(tmp_path: Path):
    target = tmp_path / "a" / "b" / "file.bin"

    fs.safe_write(target, b"hello")

    assert target.read_bytes() == b"hello"
    # no temp files left behind
    assert [p.name for p in target.parent.iterdir()] == ["file.bin"]


def test_safe_write_replaces(tmp_path: Path):
    target = tmp_path / "file.bin"
    fs.safe_write(target, b"old")
    fs.safe_write(target, b"new")

    assert fs.read_bytes(target) == b"new"


def test_list_files_skips_tmp(tmp_path: Path):
    (tmp_path / "x").mkdir()
    (tmp_path / "x" / "a.json").write_text("{}")
    (tmp_path / "b.json").write_text("{}")
    (tmp_path / "c.json.1234.tmp").write_text("{}")

    names = [p.name for p in fs.list_files(tmp_path, ".json")]

    assert sorted(names) == ["a.json", "b.json"]


def test_remove_file_and_dir(tmp_path: Path):
    d = tmp_path / "d"
    d.mkdir()
    (d / "f").write_text("x")

    fs.remove(d / "f")
    assert not (d / "f").exists()

    fs.remove(d)
    assert not d.exists()

    # missing paths are ignored
    fs.remove(d)
