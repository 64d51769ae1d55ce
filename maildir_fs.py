"""Directory handles, maildir structure, content comparison and message moves."""

from __future__ import annotations

import errno
import logging
import mmap
import os
import stat


MAILDIR_SUBDIRS = ("new", "cur", "tmp")
# cur/ before new/: a message moving from new/ to cur/ mid-scan is then seen
# at most once instead of twice.
MESSAGE_SUBDIRS = ("cur", "new")
FOLDER_MARKER = "maildirfolder"
MAX_STAT_ENOENT_RETRY = 10
COMPARE_CHUNK_SIZE = 1024 * 1024
DIRECTORY_OPEN_FLAGS = os.O_RDONLY | os.O_DIRECTORY
NO_HARDLINK_ERRNOS = (errno.EPERM, errno.EOPNOTSUPP, errno.EMLINK)

logger = logging.getLogger(__name__)


class MaildirError(Exception):
    """Base class for failures reported by the maildir tools."""


class StructureError(MaildirError):
    """A directory is missing, unreadable or not a maildir."""


class AmbiguityError(MaildirError):
    """Progress on a unit of work would require guessing."""


class CompareError(MaildirError):
    """Two files could not be compared; this never means they differ."""


class MoveError(MaildirError):
    """A message could not be moved into place."""


def describe_os_error(error: OSError) -> str:
    return error.strerror or str(error)


class DirHandle:
    """An open directory descriptor together with the path used to report on it.

    A handle without a descriptor is a placeholder for a directory a dry run
    would have created; it can be reported on but not operated on.
    """

    def __init__(self, path: str, fd: int | None) -> None:
        self.path = path
        self.fd = fd

    @classmethod
    def open(cls, name: str | os.PathLike[str], base: DirHandle | None = None) -> DirHandle:
        name = os.fspath(name)
        path = base.join(name) if base else name
        fd = os.open(name, DIRECTORY_OPEN_FLAGS, dir_fd=base.fd if base else None)
        return cls(path, fd)

    @classmethod
    def planned(cls, path: str) -> DirHandle:
        return cls(path, None)

    @property
    def is_planned(self) -> bool:
        return self.fd is None

    def join(self, name: str) -> str:
        return os.path.join(self.path, name)

    def stat(self, name: str | None = None, follow_symlinks: bool = False) -> os.stat_result:
        if name is None:
            return os.fstat(self.fd)
        return os.stat(name, dir_fd=self.fd, follow_symlinks=follow_symlinks)

    def exists(self, name: str) -> bool:
        try:
            self.stat(name)
        except (FileNotFoundError, NotADirectoryError):
            return False
        return True

    def scandir(self):
        return os.scandir(self.fd)

    def close(self) -> None:
        if self.fd is not None:
            os.close(self.fd)
            self.fd = None

    def __enter__(self) -> DirHandle:
        return self

    def __exit__(self, *_exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"DirHandle({self.path!r}, fd={self.fd})"


def stat_retry(handle: DirHandle, name: str, retries: int = MAX_STAT_ENOENT_RETRY) -> os.stat_result:
    """Stat ``name`` without following symlinks, retrying spurious ENOENT.

    Only use this for names that were just returned by a directory listing:
    some network filesystems briefly report such names as missing.
    """
    failures = 0
    while True:
        try:
            result = handle.stat(name)
        except FileNotFoundError:
            failures += 1
            if failures >= max(1, retries):
                logger.warning("Had %d ENOENT failures for stat(%s), giving up.", failures, handle.join(name))
                raise
            continue
        if failures:
            logger.warning("Had %d ENOENT failures for stat(%s).", failures, handle.join(name))
        return result


def list_files(handle: DirHandle) -> list[str]:
    """Snapshot of the regular files in a directory, sorted by name."""
    names: list[str] = []
    with handle.scandir() as entries:
        for entry in entries:
            try:
                if entry.is_file(follow_symlinks=False):
                    names.append(entry.name)
            except OSError as error:
                logger.error("%s: %s", handle.join(entry.name), describe_os_error(error))
    names.sort()
    return names


def is_maildir(handle: DirHandle) -> bool:
    for sub in MAILDIR_SUBDIRS:
        try:
            result = handle.stat(sub, follow_symlinks=True)
        except OSError as error:
            logger.error("%s: %s", handle.join(sub), describe_os_error(error))
            return False
        if not stat.S_ISDIR(result.st_mode):
            logger.error("%s: is not a folder", handle.join(sub))
            return False
    return True


def open_maildir(name: str | os.PathLike[str], base: DirHandle | None = None) -> DirHandle:
    name = os.fspath(name)
    path = base.join(name) if base else name
    try:
        handle = DirHandle.open(name, base)
    except OSError as error:
        raise StructureError(f"{path}: {describe_os_error(error)}") from error
    if not is_maildir(handle):
        handle.close()
        raise StructureError(f"{path}: is not a maildir (new/, cur/ and tmp/ are required).")
    return handle


def valid_folder_name(name: str) -> bool:
    if not name or not name.startswith(".") or name in (".", ".."):
        return False
    if "/" in name:
        return False
    return name.isprintable()


def ensure_subfolder(base: DirHandle, name: str, dry_run: bool = False) -> DirHandle:
    """Open the ``.name`` subfolder of ``base``, creating it first if needed.

    New folders get the parent's permission bits, ``cur/new/tmp``, an empty
    ``maildirfolder`` marker and, when running as root, the parent's owner.
    In a dry run a missing folder is returned as a planned handle.
    """
    if not valid_folder_name(name):
        raise StructureError(f"{base.join(name)}: invalid folder name (must start with '.', no '/').")

    if dry_run:
        if base.exists(name):
            return open_maildir(name, base)
        print(f"Would create maildir {base.join(name)}.")
        return DirHandle.planned(base.join(name))

    parent = base.stat()
    mode = stat.S_IMODE(parent.st_mode)
    try:
        os.mkdir(name, mode, dir_fd=base.fd)
    except FileExistsError:
        return open_maildir(name, base)
    except OSError as error:
        raise StructureError(f"mkdir({base.join(name)}): {describe_os_error(error)}") from error

    try:
        handle = DirHandle.open(name, base)
    except OSError as error:
        raise StructureError(f"{base.join(name)}: {describe_os_error(error)}") from error

    try:
        for sub in MAILDIR_SUBDIRS:
            os.mkdir(sub, mode, dir_fd=handle.fd)
        os.close(os.open(FOLDER_MARKER, os.O_WRONLY | os.O_CREAT, 0o600, dir_fd=handle.fd))
        if os.geteuid() == 0:
            os.chown(handle.fd, parent.st_uid, parent.st_gid)
            for entry in (*MAILDIR_SUBDIRS, FOLDER_MARKER):
                os.chown(entry, parent.st_uid, parent.st_gid, dir_fd=handle.fd, follow_symlinks=False)
    except OSError as error:
        handle.close()
        raise StructureError(f"{base.join(name)}: {describe_os_error(error)}") from error
    return handle


def move_message(
    src: DirHandle,
    dst: DirHandle,
    name: str,
    new_name: str | None = None,
    *,
    replace: bool = False,
    dry_run: bool = False,
) -> None:
    """Move ``name`` from ``src`` into ``dst`` without overwriting anything.

    The default mode links the file into place, which fails if the target
    name exists, and then unlinks the source. ``replace`` swaps this for a
    stat check followed by rename(2); that check races with other writers.
    """
    target = new_name or name
    source_path = src.join(name)
    target_path = dst.join(target)

    if dry_run:
        print(f"Rename: {source_path} -> {target_path}")
        return

    if replace:
        if dst.exists(target):
            raise MoveError(f"rename {source_path} -> {target_path} failed: {os.strerror(errno.EEXIST)}")
        try:
            os.rename(name, target, src_dir_fd=src.fd, dst_dir_fd=dst.fd)
        except OSError as error:
            raise MoveError(
                f"rename {source_path} -> {target_path} failed: {describe_os_error(error)}"
            ) from error
        return

    try:
        os.link(name, target, src_dir_fd=src.fd, dst_dir_fd=dst.fd, follow_symlinks=False)
    except OSError as error:
        hint = ""
        if error.errno in NO_HARDLINK_ERRNOS:
            hint = " (the filesystem may not support hard links, retry with --replace)"
        raise MoveError(
            f"rename {source_path} -> {target_path} failed: {describe_os_error(error)}{hint}"
        ) from error

    try:
        os.unlink(name, dir_fd=src.fd)
    except OSError as error:
        try:
            os.unlink(target, dir_fd=dst.fd)
        except OSError as rollback_error:
            logger.error(
                "Could not remove %s after failed move, message now exists twice: %s",
                target_path,
                describe_os_error(rollback_error),
            )
        raise MoveError(
            f"rename {source_path} -> {target_path} failed: unlink: {describe_os_error(error)}"
        ) from error


def _stat_for_compare(handle: DirHandle, name: str) -> os.stat_result:
    try:
        return handle.stat(name)
    except OSError as error:
        raise CompareError(f"fstatat({handle.join(name)}): {describe_os_error(error)}") from error


def _open_for_compare(handle: DirHandle, name: str) -> int:
    try:
        return os.open(name, os.O_RDONLY, dir_fd=handle.fd)
    except OSError as error:
        raise CompareError(f"openat({handle.join(name)}): {describe_os_error(error)}") from error


def _map_for_compare(fd: int, size: int, path: str) -> mmap.mmap:
    try:
        return mmap.mmap(fd, size, access=mmap.ACCESS_READ)
    except (OSError, ValueError) as error:
        detail = describe_os_error(error) if isinstance(error, OSError) else str(error)
        raise CompareError(f"mmap({path}): {detail}") from error


def files_equal(
    dir_a: DirHandle,
    name_a: str,
    dir_b: DirHandle,
    name_b: str,
    stat_a: os.stat_result | None = None,
    stat_b: os.stat_result | None = None,
) -> bool:
    """Return whether two files have identical content.

    Raises CompareError when either file cannot be examined.
    """
    if stat_a is None:
        stat_a = _stat_for_compare(dir_a, name_a)
    if stat_b is None:
        stat_b = _stat_for_compare(dir_b, name_b)

    if stat_a.st_size != stat_b.st_size:
        return False
    if stat_a.st_dev == stat_b.st_dev and stat_a.st_ino == stat_b.st_ino:
        return True

    size = stat_a.st_size
    if size == 0:
        return True

    fd_a = _open_for_compare(dir_a, name_a)
    try:
        fd_b = _open_for_compare(dir_b, name_b)
        try:
            with _map_for_compare(fd_a, size, dir_a.join(name_a)) as map_a:
                with _map_for_compare(fd_b, size, dir_b.join(name_b)) as map_b:
                    for offset in range(0, size, COMPARE_CHUNK_SIZE):
                        end = offset + COMPARE_CHUNK_SIZE
                        if map_a[offset:end] != map_b[offset:end]:
                            return False
            return True
        finally:
            os.close(fd_b)
    finally:
        os.close(fd_a)
