from __future__ import annotations

import pytest

import maildir_merge as merge
from maildir_cli import ENV_CONFIG_FILE, EXIT_OK, EXIT_USAGE
from maildir_fs import MaildirError
from maildir_merge import MergeOptions, merge_mailboxes
from tests.helpers import list_names, make_maildir, write_message


def make_source(tmp_path, name: str = "source", metafiles: tuple[str, ...] = ()):
    source = make_maildir(tmp_path / name, metafiles=metafiles)
    write_message(source, "new", "1700000001.new.host")
    write_message(source, "cur", "1700000002.seen.host:2,S")
    write_message(source, "cur", "1700000003.unseen.host:2,R")
    return source


def test_merge_into_imap_target_moves_everything(tmp_path) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierimapuiddb",))
    source = make_source(tmp_path)

    [result] = merge_mailboxes(str(target), [str(source)], MergeOptions())

    assert result.errors == []
    assert (result.moved_new, result.moved_cur, result.left_behind) == (1, 2, 0)
    assert list_names(source, "new") == []
    assert list_names(source, "cur") == []
    assert list_names(target, "new") == ["1700000001.new.host"]
    assert list_names(target, "cur") == ["1700000002.seen.host:2,S", "1700000003.unseen.host:2,R"]


def test_merge_into_pop3_target_leaves_seen_mail_behind(tmp_path, capsys) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierpop3dsizelist",))
    source = make_source(tmp_path)

    [result] = merge_mailboxes(str(target), [str(source)], MergeOptions())

    assert result.errors == []
    assert result.left_behind == 1
    assert list_names(source, "cur") == ["1700000002.seen.host:2,S"]
    assert list_names(target, "cur") == ["1700000003.unseen.host:2,R"]
    assert list_names(target, "new") == ["1700000001.new.host"]
    output = capsys.readouterr().out
    assert "Target folder is used for POP3." in output
    assert "left behind" in output


def test_merge_into_pop3_target_with_merge_seen_moves_everything(tmp_path) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierpop3dsizelist",))
    source = make_source(tmp_path)

    [result] = merge_mailboxes(str(target), [str(source)], MergeOptions(pop3_merge_seen=True))

    assert result.left_behind == 0
    assert list_names(source, "cur") == []


def test_merge_into_pop3_target_redirects_seen_mail(tmp_path) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierpop3dsizelist",))
    source = make_source(tmp_path)

    [result] = merge_mailboxes(str(target), [str(source)], MergeOptions(pop3_redirect=".Archived"))

    archived = target / ".Archived"
    assert result.errors == []
    assert result.redirected == 1
    assert list_names(source, "cur") == []
    assert list_names(archived, "cur") == ["1700000002.seen.host:2,S"]
    assert list_names(target, "cur") == ["1700000003.unseen.host:2,R"]
    assert all((archived / sub).is_dir() for sub in ("cur", "new", "tmp"))
    assert (archived / "maildirfolder").exists()
    assert (target / "courierimapsubscribed").read_text(encoding="utf-8") == "INBOX.Archived\n"


def test_redirect_into_existing_folder(tmp_path) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierpop3dsizelist",))
    make_maildir(target / ".Archived", marker=True)
    write_message(target / ".Archived", "cur", "1600000000.old.host:2,S")
    source = make_source(tmp_path)

    [result] = merge_mailboxes(str(target), [str(source)], MergeOptions(pop3_redirect=".Archived"))

    assert result.errors == []
    assert list_names(target / ".Archived", "cur") == ["1600000000.old.host:2,S", "1700000002.seen.host:2,S"]


def test_merge_seen_and_redirect_are_mutually_exclusive() -> None:
    with pytest.raises(ValueError, match="pop3-redirect"):
        MergeOptions(pop3_merge_seen=True, pop3_redirect=".Archived")


def test_redirect_folder_name_is_validated() -> None:
    with pytest.raises(ValueError, match="must start with"):
        MergeOptions(pop3_redirect="Archived")


def test_ambiguous_source_is_not_touched(tmp_path) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierimapuiddb",))
    source = make_source(tmp_path, metafiles=("courierimapuiddb",))

    [result] = merge_mailboxes(str(target), [str(source)], MergeOptions())

    assert len(result.errors) == 1
    assert "multiple types" in result.errors[0]
    assert list_names(source, "new") == ["1700000001.new.host"]
    assert list_names(target, "new") == []


def test_missing_source_counts_as_error_and_continues(tmp_path) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierimapuiddb",))
    source = make_source(tmp_path)

    missing, merged = merge_mailboxes(
        str(target),
        [str(tmp_path / "missing"), str(source)],
        MergeOptions(),
    )

    assert missing.error_count == 1
    assert merged.error_count == 0
    assert list_names(target, "new") == ["1700000001.new.host"]


def test_name_collision_is_reported_and_kept(tmp_path) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierimapuiddb",))
    write_message(target, "new", "1700000001.new.host", "already here")
    source = make_source(tmp_path)

    [result] = merge_mailboxes(str(target), [str(source)], MergeOptions())

    assert result.error_count == 1
    assert result.moved_new == 0
    assert result.moved_cur == 2
    assert list_names(source, "new") == ["1700000001.new.host"]
    assert (target / "new" / "1700000001.new.host").read_text(encoding="utf-8") == "already here"


def test_untyped_target_requires_force(tmp_path) -> None:
    target = make_maildir(tmp_path / "target")
    source = make_source(tmp_path)

    with pytest.raises(MaildirError, match="--force"):
        merge_mailboxes(str(target), [str(source)], MergeOptions())
    assert list_names(source, "new") == ["1700000001.new.host"]

    [result] = merge_mailboxes(str(target), [str(source)], MergeOptions(force=True))
    assert result.errors == []
    assert list_names(source, "new") == []


def test_dry_run_moves_nothing(tmp_path, capsys) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierpop3dsizelist",))
    source = make_source(tmp_path)

    [result] = merge_mailboxes(
        str(target),
        [str(source)],
        MergeOptions(dry_run=True, pop3_redirect=".Archived"),
    )

    assert result.errors == []
    assert list_names(source, "cur") == ["1700000002.seen.host:2,S", "1700000003.unseen.host:2,R"]
    assert not (target / ".Archived").exists()
    assert not (target / "courierimapsubscribed").exists()
    output = capsys.readouterr().out
    assert "Rename:" in output
    assert "Would create maildir" in output


def test_uidl_values_follow_the_messages(tmp_path) -> None:
    target = make_maildir(tmp_path / "target")
    (target / "dovecot-uidlist").write_text("3 V1600000000 N5\n", encoding="utf-8")
    source = make_maildir(tmp_path / "source")
    (source / "dovecot-uidlist").write_text(
        "3 V1500000000 N3\n1 PUIDL-1 :1700000002.seen.host:2,S\n2 :1700000003.unseen.host:2,R\n",
        encoding="utf-8",
    )
    write_message(source, "cur", "1700000002.seen.host:2,S")
    write_message(source, "cur", "1700000003.unseen.host:2,R")

    [result] = merge_mailboxes(str(target), [str(source)], MergeOptions(pop3_uidl=True))

    assert result.errors == []
    assert result.uidls_copied == 1
    assert (target / "dovecot-uidlist").read_text(encoding="utf-8") == (
        "3 V1600000000 N6\n5 PUIDL-1 :1700000002.seen.host\n"
    )


def test_uidl_request_without_capable_source_warns(tmp_path, caplog) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierimapuiddb",))
    source = make_source(tmp_path)

    [result] = merge_mailboxes(str(target), [str(source)], MergeOptions(pop3_uidl=True))

    assert result.errors == []
    assert "doesn't support UIDL retrieval" in caplog.text


def test_main_rejects_contradictory_options(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(ENV_CONFIG_FILE, raising=False)

    code = merge.main(["--pop3-merge-seen", "--pop3-redirect", ".Archived", "target", "source"])

    assert code == EXIT_USAGE
    assert "pop3-redirect" in capsys.readouterr().err


def test_main_merges_and_reports(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(ENV_CONFIG_FILE, raising=False)
    target = make_maildir(tmp_path / "target", metafiles=("courierimapuiddb",))
    source = make_source(tmp_path)

    code = merge.main([str(target), str(source)])

    assert code == EXIT_OK
    output = capsys.readouterr().out
    assert f"Merging {source} (no type detected) into {target}." in output
    assert "new=1 cur=2" in output


def test_unusable_redirect_folder_leaves_seen_mail_and_keeps_merging(tmp_path) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierpop3dsizelist",))
    (target / ".Archived").write_text("not a folder", encoding="utf-8")
    source = make_source(tmp_path)
    write_message(source, "cur", "1700000004.later.host:2,RS")

    [result] = merge_mailboxes(str(target), [str(source)], MergeOptions(pop3_redirect=".Archived"))

    assert result.error_count == 1
    assert "Seen messages stay in the source." in result.errors[0]
    assert (result.moved_cur, result.redirected, result.left_behind) == (1, 0, 2)
    assert list_names(source, "cur") == ["1700000002.seen.host:2,S", "1700000004.later.host:2,RS"]
    assert list_names(target, "cur") == ["1700000003.unseen.host:2,R"]


def test_unreadable_source_metadata_skips_only_that_source(tmp_path) -> None:
    target = make_maildir(tmp_path / "target", metafiles=("courierimapuiddb",))
    broken = make_maildir(tmp_path / "broken")
    (broken / "dovecot-uidlist").mkdir()
    write_message(broken, "new", "1700000009.broken.host")
    source = make_source(tmp_path)

    skipped, merged = merge_mailboxes(str(target), [str(broken), str(source)], MergeOptions())

    assert skipped.error_count == 1
    assert "reading server metadata" in skipped.errors[0]
    assert list_names(broken, "new") == ["1700000009.broken.host"]
    assert merged.error_count == 0
    assert list_names(target, "new") == ["1700000001.new.host"]
