"""Leaked workdir cleanup tests."""

from harness.clean import clean_workdirs, find_instance_workdirs, format_size, list_workdirs
from harness.config import Config


def make_leftovers(tmp_path):
    workdir = tmp_path / "vtest-py.1111"
    (workdir / "_.vsm_mgt").mkdir(parents=True)
    (workdir / "_.secret").write_bytes(b"x" * 32)
    (tmp_path / "vtest-py.1111.log").write_text("log\n")
    (tmp_path / "unrelated").mkdir()
    (tmp_path / "other.log").write_text("keep me")


def test_find_instance_workdirs(tmp_path):
    make_leftovers(tmp_path)

    items = find_instance_workdirs(Config(tmp_dir=tmp_path))

    assert [(p.name, size) for p, size in items] == [
        ("vtest-py.1111", 32),
        ("vtest-py.1111.log", 4),
    ]


def test_custom_prefix(tmp_path):
    make_leftovers(tmp_path)
    (tmp_path / "mine.1").mkdir()

    items = find_instance_workdirs(Config(tmp_dir=tmp_path, workdir_prefix="mine."))

    assert [p.name for p, _ in items] == ["mine.1"]


def test_missing_tmp_dir(tmp_path):
    assert find_instance_workdirs(Config(tmp_dir=tmp_path / "nope")) == []


def test_dry_run_keeps_files(tmp_path):
    make_leftovers(tmp_path)

    removed, freed = clean_workdirs(Config(tmp_dir=tmp_path), dry_run=True)

    assert (removed, freed) == (2, 36)
    assert (tmp_path / "vtest-py.1111").exists()


def test_clean_removes_only_instance_files(tmp_path):
    make_leftovers(tmp_path)

    removed, _ = clean_workdirs(Config(tmp_dir=tmp_path))

    assert removed == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == ["other.log", "unrelated"]


def test_list_workdirs(tmp_path, capsys):
    make_leftovers(tmp_path)
    list_workdirs(Config(tmp_dir=tmp_path))

    out = capsys.readouterr().out
    assert "vtest-py.1111.log" in out
    assert "unrelated" not in out


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(2048) == "2.0 KB"
    assert format_size(5 * 1024 * 1024) == "5.0 MB"
