from __future__ import annotations

import logging
import os

import pytest

from maildir_fs import (
    DirHandle,
    MoveError,
    StructureError,
    ensure_subfolder,
    is_maildir,
    list_files,
    move_message,
    open_maildir,
    stat_retry,
    valid_folder_name,
)
from tests.helpers import list_names, make_maildir, write_message


class FlakyHandle:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def stat(self, name: str):
        self.calls += 1
        if self.calls <= self.failures:
            raise FileNotFoundError(2, "No such file or directory")
        return os.stat_result((0o100600, 1, 1, 1, 0, 0, 10, 0, 0, 0))

    def join(self, name: str) -> str:
        return f"/flaky/{name}"


def test_is_maildir_requires_all_three_subdirs(tmp_path, caplog) -> None:
    make_maildir(tmp_path / "box")
    (tmp_path / "partial" / "cur").mkdir(parents=True)
    (tmp_path / "partial" / "new").mkdir()

    with DirHandle.open(str(tmp_path / "box")) as box:
        assert is_maildir(box) is True
    with DirHandle.open(str(tmp_path / "partial")) as partial:
        assert is_maildir(partial) is False
    assert "tmp" in caplog.text


def test_is_maildir_rejects_file_in_place_of_subdir(tmp_path) -> None:
    (tmp_path / "cur").mkdir()
    (tmp_path / "new").mkdir()
    (tmp_path / "tmp").write_text("not a folder", encoding="utf-8")

    with DirHandle.open(str(tmp_path)) as handle:
        assert is_maildir(handle) is False


def test_open_maildir_raises_structure_error(tmp_path) -> None:
    (tmp_path / "plain").mkdir()

    with pytest.raises(StructureError, match="is not a maildir"):
        open_maildir(str(tmp_path / "plain"))
    with pytest.raises(StructureError, match="missing"):
        open_maildir(str(tmp_path / "missing"))


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        (".Archived", True),
        (".Archive.2023", True),
        ("Archived", False),
        (".", False),
        ("..", False),
        (".a/b", False),
        (".bad\tname", False),
        ("", False),
    ],
)
def test_valid_folder_name(name: str, expected: bool) -> None:
    assert valid_folder_name(name) is expected


def test_ensure_subfolder_creates_maildir_with_marker(tmp_path) -> None:
    make_maildir(tmp_path)

    with DirHandle.open(str(tmp_path)) as base:
        with ensure_subfolder(base, ".Archived") as folder:
            assert folder.path == os.path.join(str(tmp_path), ".Archived")
            assert is_maildir(folder) is True

    marker = tmp_path / ".Archived" / "maildirfolder"
    assert marker.exists()
    assert marker.stat().st_size == 0


def test_ensure_subfolder_opens_existing_folder(tmp_path) -> None:
    make_maildir(tmp_path)
    make_maildir(tmp_path / ".Archived", marker=True)
    write_message(tmp_path / ".Archived", "cur", "1.keep:2,S", "kept")

    with DirHandle.open(str(tmp_path)) as base:
        with ensure_subfolder(base, ".Archived") as folder:
            assert folder.is_planned is False

    assert list_names(tmp_path / ".Archived", "cur") == ["1.keep:2,S"]


def test_ensure_subfolder_dry_run_creates_nothing(tmp_path, capsys) -> None:
    make_maildir(tmp_path)

    with DirHandle.open(str(tmp_path)) as base:
        folder = ensure_subfolder(base, ".Archived", dry_run=True)

    assert folder.is_planned is True
    assert not (tmp_path / ".Archived").exists()
    assert "Would create maildir" in capsys.readouterr().out


def test_ensure_subfolder_rejects_invalid_name(tmp_path) -> None:
    make_maildir(tmp_path)

    with DirHandle.open(str(tmp_path)) as base:
        with pytest.raises(StructureError, match="invalid folder name"):
            ensure_subfolder(base, "Archived")


def test_move_message_moves_and_renames(tmp_path) -> None:
    make_maildir(tmp_path)
    write_message(tmp_path, "new", "1.a.host", "body")

    with DirHandle.open(str(tmp_path / "new")) as new, DirHandle.open(str(tmp_path / "cur")) as cur:
        move_message(new, cur, "1.a.host", "1.a.host:2,S")

    assert list_names(tmp_path, "new") == []
    assert list_names(tmp_path, "cur") == ["1.a.host:2,S"]


@pytest.mark.parametrize("replace", [False, True])
def test_move_message_never_overwrites(tmp_path, replace: bool) -> None:
    make_maildir(tmp_path)
    write_message(tmp_path, "new", "1.a.host", "incoming")
    write_message(tmp_path, "cur", "1.a.host", "existing")

    with DirHandle.open(str(tmp_path / "new")) as new, DirHandle.open(str(tmp_path / "cur")) as cur:
        with pytest.raises(MoveError, match="rename"):
            move_message(new, cur, "1.a.host", replace=replace)

    assert (tmp_path / "new" / "1.a.host").read_text(encoding="utf-8") == "incoming"
    assert (tmp_path / "cur" / "1.a.host").read_text(encoding="utf-8") == "existing"


def test_move_message_replace_mode_renames(tmp_path) -> None:
    make_maildir(tmp_path)
    write_message(tmp_path, "new", "1.a.host", "body")

    with DirHandle.open(str(tmp_path / "new")) as new, DirHandle.open(str(tmp_path / "cur")) as cur:
        move_message(new, cur, "1.a.host", replace=True)

    assert list_names(tmp_path, "cur") == ["1.a.host"]


def test_move_message_dry_run_only_prints(tmp_path, capsys) -> None:
    make_maildir(tmp_path)
    write_message(tmp_path, "new", "1.a.host", "body")

    with DirHandle.open(str(tmp_path / "new")) as new, DirHandle.open(str(tmp_path / "cur")) as cur:
        move_message(new, cur, "1.a.host", dry_run=True)

    assert list_names(tmp_path, "new") == ["1.a.host"]
    assert "Rename:" in capsys.readouterr().out


def test_stat_retry_tolerates_transient_enoent(caplog) -> None:
    handle = FlakyHandle(failures=2)

    with caplog.at_level(logging.WARNING, logger="maildir_fs"):
        result = stat_retry(handle, "1.a.host")

    assert result.st_size == 10
    assert handle.calls == 3
    assert "Had 2 ENOENT failures" in caplog.text


def test_stat_retry_gives_up_after_limit() -> None:
    handle = FlakyHandle(failures=100)

    with pytest.raises(FileNotFoundError):
        stat_retry(handle, "1.a.host", retries=3)
    assert handle.calls == 3


def test_list_files_returns_sorted_regular_files(tmp_path) -> None:
    (tmp_path / "b").write_text("b", encoding="utf-8")
    (tmp_path / "a").write_text("a", encoding="utf-8")
    (tmp_path / "subdir").mkdir()

    with DirHandle.open(str(tmp_path)) as handle:
        assert list_files(handle) == ["a", "b"]
