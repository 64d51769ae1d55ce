from __future__ import annotations

import os

import pytest

import maildir_servertypes as servertypes
from maildir_fs import DirHandle
from tests.helpers import make_maildir


def labels(server_types) -> list[str]:
    return [server_type.label for server_type in server_types]


def test_default_registry_order() -> None:
    registry = servertypes.default_registry()

    assert labels(registry) == ["Courier-IMAP", "Dovecot"]
    assert len(registry) == 2


@pytest.mark.parametrize(
    ("metafiles", "expected"),
    [
        ((), []),
        (("courierimapuiddb",), ["Courier-IMAP", "Dovecot"]),
        (("courierpop3dsizelist",), ["Courier-IMAP"]),
        (("dovecot-uidlist",), ["Dovecot"]),
    ],
)
def test_find_matching(tmp_path, metafiles: tuple[str, ...], expected: list[str]) -> None:
    make_maildir(tmp_path, metafiles=metafiles)
    registry = servertypes.default_registry()

    with DirHandle.open(str(tmp_path)) as folder:
        assert labels(registry.find_matching(folder)) == expected


def test_collect_metafiles_is_union_of_declared_files() -> None:
    metafiles = servertypes.default_registry().collect_metafiles()

    assert {"courierimapuiddb", "courierpop3dsizelist", "courierimapkeywords"} <= metafiles
    assert {"dovecot-uidlist", "dovecot.index", "subscriptions"} <= metafiles
    assert "maildirfolder" not in metafiles


def test_flag_alphabet() -> None:
    courier = servertypes.CourierServerType()
    dovecot = servertypes.DovecotServerType()

    assert servertypes.flag_alphabet([]) == "DFPRST"
    assert servertypes.flag_alphabet([courier]) == "DFPRST"
    assert servertypes.flag_alphabet([courier, dovecot]).endswith("abcdefghijklmnopqrstuvwxyz")
    assert servertypes.flag_alphabet([], "x") == "DFPRSTx"


def test_courier_pop3_detection(tmp_path) -> None:
    make_maildir(tmp_path, metafiles=("courierimapuiddb",))
    courier = servertypes.CourierServerType()

    with DirHandle.open(str(tmp_path)) as folder:
        assert courier.open(folder).is_pop3() is False
        (tmp_path / "courierpop3dsizelist").write_text("", encoding="utf-8")
        assert courier.open(folder).is_pop3() is True


def test_courier_subscription_uses_inbox_prefix(tmp_path) -> None:
    make_maildir(tmp_path, metafiles=("courierimapuiddb",))
    (tmp_path / "courierimapsubscribed").write_text("INBOX.Sent\n", encoding="utf-8")

    with DirHandle.open(str(tmp_path)) as folder:
        handle = servertypes.CourierServerType().open(folder)
        assert handle.can_subscribe is True
        assert handle.is_subscribed(".Sent") is True
        assert handle.is_subscribed(".Archived") is False
        handle.subscribe(".Archived")
        handle.subscribe(".Archived")
        assert handle.is_subscribed(".Archived") is True

    content = (tmp_path / "courierimapsubscribed").read_text(encoding="utf-8")
    assert content == "INBOX.Sent\nINBOX.Archived\n"
    assert os.listdir(tmp_path / "tmp") == []


def test_dovecot_subscription_uses_bare_names(tmp_path) -> None:
    make_maildir(tmp_path, metafiles=("dovecot-uidlist",))

    with DirHandle.open(str(tmp_path)) as folder:
        handle = servertypes.DovecotServerType().open(folder)
        handle.subscribe(".Archived")

    assert (tmp_path / "subscriptions").read_text(encoding="utf-8") == "Archived\n"


def test_dovecot_is_never_pop3(tmp_path) -> None:
    make_maildir(tmp_path, metafiles=("courierimapuiddb", "courierpop3dsizelist"))

    with DirHandle.open(str(tmp_path)) as folder:
        assert servertypes.DovecotServerType().open(folder).is_pop3() is False


def test_courier_has_no_uidl_capability(tmp_path) -> None:
    make_maildir(tmp_path, metafiles=("courierimapuiddb",))

    with DirHandle.open(str(tmp_path)) as folder:
        handle = servertypes.CourierServerType().open(folder)
        assert handle.can_get_uidl is False
        assert handle.can_set_uidl is False
        with pytest.raises(NotImplementedError):
            handle.get_uidl("1.a.host")


def test_parse_uidlist() -> None:
    uidlist = servertypes.parse_uidlist(
        [
            "3 V1700000000 N3 Gabc",
            "1 P0001 :1.a.host:2,S",
            "2 :2.b.host",
        ]
    )

    assert uidlist.next_uid == 3
    assert uidlist.find("1.a.host").fields == {"P": "0001"}
    assert uidlist.find("2.b.host").uid == 2
    assert uidlist.find("3.c.host") is None


@pytest.mark.parametrize(
    "lines",
    [
        [],
        ["1 1700000000 3"],
        ["3 V1 N2", "garbage"],
    ],
)
def test_parse_uidlist_rejects_malformed_files(lines: list[str]) -> None:
    with pytest.raises(ValueError):
        servertypes.parse_uidlist(lines)


def test_dovecot_uidl_get_and_set(tmp_path) -> None:
    make_maildir(tmp_path)
    (tmp_path / "dovecot-uidlist").write_text(
        "3 V1700000000 N3\n1 P0001 :1.a.host:2,S\n2 :2.b.host\n",
        encoding="utf-8",
    )

    with DirHandle.open(str(tmp_path)) as folder:
        handle = servertypes.DovecotServerType().open(folder)
        assert handle.can_get_uidl is True
        assert handle.get_uidl("1.a.host") == "0001"
        assert handle.get_uidl("2.b.host") is None
        handle.set_uidl("2.b.host", "0002")
        handle.set_uidl("3.c.host", "0003")
        handle.close()

    assert (tmp_path / "dovecot-uidlist").read_text(encoding="utf-8") == (
        "3 V1700000000 N4\n"
        "1 P0001 :1.a.host:2,S\n"
        "2 P0002 :2.b.host\n"
        "3 P0003 :3.c.host\n"
    )


def test_dovecot_uidl_rejects_whitespace(tmp_path) -> None:
    make_maildir(tmp_path)
    (tmp_path / "dovecot-uidlist").write_text("3 V1 N1\n", encoding="utf-8")

    with DirHandle.open(str(tmp_path)) as folder:
        handle = servertypes.DovecotServerType().open(folder)
        with pytest.raises(ValueError, match="cannot be stored"):
            handle.set_uidl("1.a.host", "has space")


def test_dovecot_without_uidlist_has_no_uidl(tmp_path) -> None:
    make_maildir(tmp_path, metafiles=("courierimapuiddb",))

    with DirHandle.open(str(tmp_path)) as folder:
        handle = servertypes.DovecotServerType().open(folder)
        assert handle.can_get_uidl is False
        assert handle.can_set_uidl is False
        handle.close()

    assert not (tmp_path / "dovecot-uidlist").exists()


def test_open_handles_closes_every_handle(tmp_path) -> None:
    closed: list[str] = []

    class RecordingHandle(servertypes.ServerHandle):
        def close(self) -> None:
            closed.append(self.label)

    class FirstType(servertypes.ServerType):
        label = "first"
        handle_class = RecordingHandle

    class SecondType(servertypes.ServerType):
        label = "second"
        handle_class = RecordingHandle

    make_maildir(tmp_path)
    with DirHandle.open(str(tmp_path)) as folder:
        with pytest.raises(RuntimeError):
            with servertypes.open_handles([FirstType(), SecondType()], folder) as handles:
                assert labels(handle.server_type for handle in handles) == ["first", "second"]
                raise RuntimeError("boom")

    assert sorted(closed) == ["first", "second"]


def test_uidlist_lookup_sees_allocated_records() -> None:
    uidlist = servertypes.parse_uidlist(["3 V1 N5", "3 P0003 :3.c.host:2,S", "4 P0004 :3.c.host:2,RS"])

    assert uidlist.find("3.c.host").uid == 3
    record = uidlist.allocate("7.g.host")
    assert uidlist.find("7.g.host") is record
    assert record.uid == 5
    assert uidlist.next_uid == 6


def test_dovecot_set_uidl_without_uidlist_is_a_value_error(tmp_path) -> None:
    make_maildir(tmp_path)

    with DirHandle.open(str(tmp_path)) as folder:
        handle = servertypes.DovecotServerType().open(folder)
        with pytest.raises(ValueError, match="missing or unreadable"):
            handle.set_uidl("1.a.host", "0001")
