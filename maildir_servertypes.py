"""Mail server types: detection, metadata files and POP3/IMAP bookkeeping.

Each server keeps some state next to the maildir itself (UID databases,
POP3 size lists, subscription lists, indexes). A ``ServerType`` describes
how to recognise one server's files; ``ServerType.open`` returns a
``ServerHandle`` that reads and updates that state for one mailbox.

Optional capabilities are advertised through the ``can_*`` attributes of
the handle. Callers must check them before calling the matching method;
a missing capability is normal and the base methods raise
``NotImplementedError``.
"""

from __future__ import annotations

import contextlib
import logging
import os
import random
import string
from dataclasses import dataclass, field
from typing import Iterator

from maildir_fs import DirHandle, describe_os_error
from maildir_names import STANDARD_FLAGS


COURIER_UIDDB = "courierimapuiddb"
COURIER_POP3_SIZELIST = "courierpop3dsizelist"
COURIER_SUBSCRIPTIONS = "courierimapsubscribed"
COURIER_KEYWORDS_DIR = "courierimapkeywords"
COURIER_FOLDER_PREFIX = "INBOX"

DOVECOT_UIDLIST = "dovecot-uidlist"
DOVECOT_SUBSCRIPTIONS = "subscriptions"
DOVECOT_POP3_UIDL_FIELD = "P"
DOVECOT_NEXT_UID_FIELD = "N"
DOVECOT_UIDLIST_VERSION = "3"

REWRITE_ATTEMPTS = 100

logger = logging.getLogger(__name__)


def rewrite_file(folder: DirHandle, filename: str, content: str) -> None:
    """Replace ``folder/filename`` by writing a temp file in ``tmp/`` and renaming it.

    The new file keeps the mode (and, as root, the owner) of the file it
    replaces, or of the folder when the file does not exist yet.
    """
    try:
        reference = folder.stat(filename, follow_symlinks=True)
        mode = reference.st_mode & 0o666
    except FileNotFoundError:
        reference = folder.stat()
        mode = reference.st_mode & 0o666

    tmp_fd = -1
    tmp_name = ""
    for _attempt in range(REWRITE_ATTEMPTS):
        tmp_name = f"tmp/{filename}-{os.getpid()}-{random.randrange(1 << 32)}"
        try:
            tmp_fd = os.open(tmp_name, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode, dir_fd=folder.fd)
            break
        except FileExistsError:
            continue
    if tmp_fd < 0:
        raise FileExistsError(f"{folder.join(tmp_name)}: could not create a unique temp file")

    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as file:
            if os.geteuid() == 0:
                os.fchown(file.fileno(), reference.st_uid, reference.st_gid)
            file.write(content)
        os.rename(tmp_name, filename, src_dir_fd=folder.fd, dst_dir_fd=folder.fd)
    except OSError:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name, dir_fd=folder.fd)
        raise


def read_lines(folder: DirHandle, filename: str) -> list[str] | None:
    """Return the lines of ``folder/filename`` without newlines, or None if absent."""
    try:
        fd = os.open(filename, os.O_RDONLY, dir_fd=folder.fd)
    except FileNotFoundError:
        return None
    with os.fdopen(fd, "r", encoding="utf-8", errors="surrogateescape") as file:
        return file.read().splitlines()


class ServerHandle:
    """Per-mailbox state of one server type, opened by ``ServerType.open``."""

    can_get_uidl = False
    can_set_uidl = False
    can_subscribe = False

    def __init__(self, server_type: ServerType, folder: DirHandle) -> None:
        self.server_type = server_type
        self.folder = folder

    @property
    def label(self) -> str:
        return self.server_type.label

    def is_pop3(self) -> bool:
        return False

    def get_uidl(self, basename: str) -> str | None:
        raise NotImplementedError(f"{self.label} does not provide POP3 UIDL values.")

    def set_uidl(self, basename: str, uidl: str) -> None:
        raise NotImplementedError(f"{self.label} does not store POP3 UIDL values.")

    def is_subscribed(self, folder_name: str) -> bool:
        raise NotImplementedError(f"{self.label} does not track IMAP subscriptions.")

    def subscribe(self, folder_name: str) -> None:
        raise NotImplementedError(f"{self.label} does not track IMAP subscriptions.")

    def close(self) -> None:
        pass


class ServerType:
    label = ""
    metafiles: tuple[str, ...] = ()
    flag_extensions = ""
    handle_class = ServerHandle

    def detect(self, folder: DirHandle) -> bool:
        raise NotImplementedError

    def open(self, folder: DirHandle) -> ServerHandle:
        return self.handle_class(self, folder)

    def __repr__(self) -> str:
        return f"<ServerType {self.label}>"


class SubscriptionFileMixin:
    """Subscriptions kept as one entry per line in a flat file."""

    subscriptions_file = ""
    can_subscribe = True
    folder: DirHandle

    def subscription_entry(self, folder_name: str) -> str:
        raise NotImplementedError

    def is_subscribed(self, folder_name: str) -> bool:
        try:
            lines = read_lines(self.folder, self.subscriptions_file)
        except OSError as error:
            logger.error("%s: %s", self.folder.join(self.subscriptions_file), describe_os_error(error))
            return False
        return self.subscription_entry(folder_name) in (lines or [])

    def subscribe(self, folder_name: str) -> None:
        entry = self.subscription_entry(folder_name)
        lines = read_lines(self.folder, self.subscriptions_file) or []
        if entry in lines:
            return
        lines.append(entry)
        rewrite_file(self.folder, self.subscriptions_file, "".join(f"{line}\n" for line in lines))


class CourierHandle(SubscriptionFileMixin, ServerHandle):
    subscriptions_file = COURIER_SUBSCRIPTIONS

    def is_pop3(self) -> bool:
        return self.folder.exists(COURIER_POP3_SIZELIST)

    def subscription_entry(self, folder_name: str) -> str:
        # Folder ".Sent" is known to Courier as "INBOX.Sent".
        return f"{COURIER_FOLDER_PREFIX}{folder_name}"


class CourierServerType(ServerType):
    label = "Courier-IMAP"
    metafiles = (
        COURIER_UIDDB,
        COURIER_POP3_SIZELIST,
        COURIER_SUBSCRIPTIONS,
        COURIER_KEYWORDS_DIR,
    )
    handle_class = CourierHandle

    def detect(self, folder: DirHandle) -> bool:
        return folder.exists(COURIER_UIDDB) or folder.exists(COURIER_POP3_SIZELIST)


@dataclass
class UidlistRecord:
    uid: int
    fields: dict[str, str]
    filename: str

    @property
    def basename(self) -> str:
        return self.filename.partition(":")[0]

    def format(self) -> str:
        extra = "".join(f" {key}{value}" for key, value in self.fields.items())
        return f"{self.uid}{extra} :{self.filename}"


@dataclass
class Uidlist:
    """A parsed version 3 ``dovecot-uidlist`` file."""

    version: str
    header: dict[str, str]
    records: list[UidlistRecord] = field(default_factory=list)
    _by_basename: dict[str, UidlistRecord] = field(default_factory=dict, init=False, repr=False, compare=False)

    @property
    def next_uid(self) -> int:
        return int(self.header.get(DOVECOT_NEXT_UID_FIELD, "1"))

    def add(self, record: UidlistRecord) -> None:
        self.records.append(record)
        # The first record for a basename wins.
        self._by_basename.setdefault(record.basename, record)

    def find(self, basename: str) -> UidlistRecord | None:
        return self._by_basename.get(basename)

    def allocate(self, basename: str) -> UidlistRecord:
        record = UidlistRecord(uid=self.next_uid, fields={}, filename=basename)
        self.add(record)
        self.header[DOVECOT_NEXT_UID_FIELD] = str(record.uid + 1)
        return record

    def format(self) -> str:
        header = " ".join([self.version, *(f"{key}{value}" for key, value in self.header.items())])
        return "".join(f"{line}\n" for line in [header, *(record.format() for record in self.records)])


def parse_uidlist(lines: list[str]) -> Uidlist:
    if not lines:
        raise ValueError("empty uidlist")
    header_tokens = lines[0].split()
    if not header_tokens or header_tokens[0] != DOVECOT_UIDLIST_VERSION:
        raise ValueError(f"unsupported uidlist version in header {lines[0]!r}")
    uidlist = Uidlist(
        version=header_tokens[0],
        header={token[0]: token[1:] for token in header_tokens[1:]},
    )
    for line_number, line in enumerate(lines[1:], start=2):
        if not line.strip():
            continue
        meta, separator, filename = line.partition(" :")
        tokens = meta.split()
        if not separator or not tokens or not tokens[0].isdigit():
            raise ValueError(f"malformed uidlist line {line_number}: {line!r}")
        uidlist.add(
            UidlistRecord(
                uid=int(tokens[0]),
                fields={token[0]: token[1:] for token in tokens[1:]},
                filename=filename,
            )
        )
    return uidlist


class DovecotHandle(SubscriptionFileMixin, ServerHandle):
    subscriptions_file = DOVECOT_SUBSCRIPTIONS

    def __init__(self, server_type: ServerType, folder: DirHandle) -> None:
        super().__init__(server_type, folder)
        self.uidlist: Uidlist | None = None
        self.dirty = False
        lines = read_lines(folder, DOVECOT_UIDLIST)
        if lines is None:
            return
        try:
            self.uidlist = parse_uidlist(lines)
        except ValueError as error:
            logger.warning("%s: %s, POP3 UIDL values unavailable.", folder.join(DOVECOT_UIDLIST), error)

    @property
    def can_get_uidl(self) -> bool:
        return self.uidlist is not None

    @property
    def can_set_uidl(self) -> bool:
        return self.uidlist is not None

    def is_pop3(self) -> bool:
        # POP3 in Dovecot follows the IMAP state.
        return False

    def get_uidl(self, basename: str) -> str | None:
        if self.uidlist is None:
            return None
        record = self.uidlist.find(basename)
        if record is None:
            return None
        return record.fields.get(DOVECOT_POP3_UIDL_FIELD)

    def set_uidl(self, basename: str, uidl: str) -> None:
        if self.uidlist is None:
            raise ValueError(f"{self.folder.join(DOVECOT_UIDLIST)} is missing or unreadable.")
        if not uidl or any(char in string.whitespace for char in uidl):
            raise ValueError(f"UIDL {uidl!r} for {basename} cannot be stored in {DOVECOT_UIDLIST}.")
        record = self.uidlist.find(basename) or self.uidlist.allocate(basename)
        if record.fields.get(DOVECOT_POP3_UIDL_FIELD) != uidl:
            record.fields[DOVECOT_POP3_UIDL_FIELD] = uidl
            self.dirty = True

    def subscription_entry(self, folder_name: str) -> str:
        return folder_name[1:] if folder_name.startswith(".") else folder_name

    def close(self) -> None:
        if self.dirty and self.uidlist is not None:
            rewrite_file(self.folder, DOVECOT_UIDLIST, self.uidlist.format())
            self.dirty = False


class DovecotServerType(ServerType):
    label = "Dovecot"
    metafiles = (
        "dovecot.index",
        "dovecot.index.cache",
        "dovecot.index.log",
        "dovecot.index.log.2",
        "dovecot-keywords",
        "dovecot.list.index",
        "dovecot.list.index.log",
        DOVECOT_UIDLIST,
        "dovecot-uidvalidity",
        DOVECOT_SUBSCRIPTIONS,
    )
    # Keyword flags a-z map to entries in dovecot-keywords.
    flag_extensions = string.ascii_lowercase
    handle_class = DovecotHandle

    def detect(self, folder: DirHandle) -> bool:
        # Dovecot keeps a Courier compatible layout when migrated from it.
        return folder.exists(COURIER_UIDDB) or folder.exists(DOVECOT_UIDLIST)


class ServerTypeRegistry:
    def __init__(self) -> None:
        self._types: list[ServerType] = []

    def register(self, server_type: ServerType) -> None:
        self._types.append(server_type)

    def __iter__(self) -> Iterator[ServerType]:
        return iter(self._types)

    def __len__(self) -> int:
        return len(self._types)

    def find_matching(self, folder: DirHandle) -> list[ServerType]:
        return [server_type for server_type in self._types if server_type.detect(folder)]

    def collect_metafiles(self) -> frozenset[str]:
        return frozenset(name for server_type in self._types for name in server_type.metafiles)


def default_registry() -> ServerTypeRegistry:
    registry = ServerTypeRegistry()
    registry.register(CourierServerType())
    registry.register(DovecotServerType())
    return registry


def flag_alphabet(server_types: list[ServerType], extra_flags: str = "") -> str:
    extensions = {char for server_type in server_types for char in server_type.flag_extensions}
    return "".join(sorted(set(STANDARD_FLAGS) | extensions | set(extra_flags)))


@contextlib.contextmanager
def open_handles(server_types: list[ServerType], folder: DirHandle) -> Iterator[list[ServerHandle]]:
    """Open one handle per server type, closing all of them on exit."""
    with contextlib.ExitStack() as stack:
        handles: list[ServerHandle] = []
        for server_type in server_types:
            handle = server_type.open(folder)
            stack.callback(handle.close)
            handles.append(handle)
        yield handles
