#!/usr/bin/env python3
"""Rebuild a maildir from redundant fragments using hard links.

Typical input is a set of bricks of a distributed filesystem, copied onto
a single filesystem. Every source is overlaid onto the target: messages are
hard linked by name, collisions are compared by content, and nothing in the
sources is modified. Running it again over the same sources changes nothing.
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import os
import stat
import sys
from dataclasses import dataclass, field

from maildir_cli import (
    EXIT_FATAL,
    EXIT_USAGE,
    add_common_arguments,
    exit_status,
    setup_from_args,
)
from maildir_fs import (
    FOLDER_MARKER,
    MAX_STAT_ENOENT_RETRY,
    CompareError,
    DirHandle,
    StructureError,
    describe_os_error,
    files_equal,
    stat_retry,
)
from maildir_servertypes import ServerTypeRegistry, default_registry


# tmp/ is created in the target but never populated.
LINKED_SUBDIRS = ("cur", "new")
CREATED_SUBDIRS = ("tmp",)
NEVER_COPIED = frozenset({"new", "cur", "tmp", FOLDER_MARKER, "maildirsize"})
RELINK_ATTEMPTS = 10
TARGET_MODE = 0o700

logger = logging.getLogger(__name__)


@dataclass
class ReconstructResult:
    linked: int = 0
    identical: int = 0
    relinked: int = 0
    skipped_empty: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)


class Reconstructor:
    def __init__(self, metafiles: frozenset[str], stat_retries: int = MAX_STAT_ENOENT_RETRY) -> None:
        self.metafiles = metafiles
        self.stat_retries = stat_retries

    def _error(self, result: ReconstructResult, message: str) -> None:
        logger.error("%s", message)
        result.errors.append(message)

    def overlay(
        self,
        target: DirHandle,
        source_path: str,
        result: ReconstructResult,
        root: bool = True,
    ) -> None:
        """Link everything usable from ``source_path`` into ``target``.

        At the root, ``.``-subfolders are overlaid recursively. Metafile
        directories are linked after ``cur/`` and ``new/``.
        """
        try:
            source = DirHandle.open(source_path)
        except OSError as error:
            self._error(result, f"{source_path}: {describe_os_error(error)}")
            return

        with source:
            metafile_dirs = self._overlay_extras(target, source, result, root)
            for sub in LINKED_SUBDIRS:
                self._link_directory(target, source, sub, result, metafile=False)
            for sub in CREATED_SUBDIRS:
                self._ensure_directory(target, sub, result)
            for sub in metafile_dirs:
                self._link_directory(target, source, sub, result, metafile=True)

    def _overlay_extras(
        self,
        target: DirHandle,
        source: DirHandle,
        result: ReconstructResult,
        root: bool,
    ) -> list[str]:
        try:
            with source.scandir() as iterator:
                entries = sorted(iterator, key=lambda entry: entry.name)
        except OSError as error:
            self._error(
                result,
                f"{source.path}: {describe_os_error(error)}, metafiles and subfolders will not be synced.",
            )
            return []

        metafile_dirs: list[str] = []
        for entry in entries:
            name = entry.name
            if name in NEVER_COPIED:
                continue
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = entry.is_file(follow_symlinks=False)
            except OSError as error:
                self._error(result, f"{source.join(name)}: {describe_os_error(error)}")
                continue

            if is_dir:
                if name.startswith("."):
                    if root:
                        self._overlay_subfolder(target, source, name, result)
                    else:
                        logger.warning("Sub-folder %s under sub-folder in %s? Ignoring.", name, source.path)
                elif name in self.metafiles:
                    metafile_dirs.append(name)
                else:
                    logger.warning(
                        "%s isn't a known maildir file, and is not a known metadata file, ignoring.",
                        source.join(name),
                    )
            elif is_file:
                if name not in self.metafiles:
                    logger.warning(
                        "%s isn't a known maildir file, and is not a known metadata file, ignoring.",
                        source.join(name),
                    )
                    continue
                self._link_entry(source, target, name, result, metafile=True)
            else:
                self._error(result, f"{source.join(name)} is neither a file nor a folder.")
        return metafile_dirs

    def _overlay_subfolder(
        self,
        target: DirHandle,
        source: DirHandle,
        name: str,
        result: ReconstructResult,
    ) -> None:
        try:
            os.mkdir(name, TARGET_MODE, dir_fd=target.fd)
        except FileExistsError:
            pass
        except OSError as error:
            self._error(result, f"mkdir({target.join(name)}): {describe_os_error(error)}")
            return

        try:
            subfolder = DirHandle.open(name, target)
        except OSError as error:
            self._error(result, f"open({target.join(name)}): {describe_os_error(error)}")
            return

        with subfolder:
            try:
                os.close(os.open(FOLDER_MARKER, os.O_WRONLY | os.O_CREAT, 0o600, dir_fd=subfolder.fd))
            except OSError as error:
                logger.warning(
                    "Unable to create %s in %s: %s.",
                    FOLDER_MARKER,
                    subfolder.path,
                    describe_os_error(error),
                )
            self.overlay(subfolder, source.join(name), result, root=False)

    def _ensure_directory(self, target: DirHandle, sub: str, result: ReconstructResult) -> bool:
        try:
            existing = target.stat(sub)
        except FileNotFoundError:
            try:
                os.mkdir(sub, TARGET_MODE, dir_fd=target.fd)
            except OSError as error:
                self._error(result, f"mkdir({target.join(sub)}): {describe_os_error(error)}")
                return False
            return True
        except OSError as error:
            self._error(result, f"{target.join(sub)}: {describe_os_error(error)}")
            return False

        if not stat.S_ISDIR(existing.st_mode):
            self._error(result, f"{target.join(sub)} exists but is not a folder.")
            return False
        return True

    def _link_directory(
        self,
        target: DirHandle,
        source: DirHandle,
        sub: str,
        result: ReconstructResult,
        metafile: bool,
    ) -> None:
        if not self._ensure_directory(target, sub, result):
            return

        with contextlib.ExitStack() as stack:
            try:
                target_sub = stack.enter_context(DirHandle.open(sub, target))
            except OSError as error:
                self._error(result, f"{target.join(sub)}: {describe_os_error(error)}")
                return
            try:
                source_sub = stack.enter_context(DirHandle.open(sub, source))
            except FileNotFoundError:
                if metafile:
                    self._error(result, f"{source.join(sub)}: vanished during reconstruction.")
                else:
                    logger.warning("%s: missing, nothing to link.", source.join(sub))
                return
            except OSError as error:
                self._error(result, f"{source.join(sub)}: {describe_os_error(error)}")
                return

            try:
                with source_sub.scandir() as iterator:
                    names = sorted(entry.name for entry in iterator)
            except OSError as error:
                self._error(result, f"{source_sub.path}: {describe_os_error(error)}")
                return

            for name in names:
                self._link_entry(source_sub, target_sub, name, result, metafile)

    def _link_entry(
        self,
        source: DirHandle,
        target: DirHandle,
        name: str,
        result: ReconstructResult,
        metafile: bool,
    ) -> None:
        try:
            source_stat = stat_retry(source, name, self.stat_retries)
        except OSError as error:
            self._error(result, f"{source.join(name)}: {describe_os_error(error)}")
            return
        if not stat.S_ISREG(source_stat.st_mode):
            self._error(result, f"{source.join(name)} is not a regular file!")
            return
        # Unhealed or placeholder fragments are empty; never usable.
        if source_stat.st_size == 0:
            result.skipped_empty += 1
            return
        self._link_file(source, target, name, source_stat, result, metafile)

    def _link_file(
        self,
        source: DirHandle,
        target: DirHandle,
        name: str,
        source_stat: os.stat_result,
        result: ReconstructResult,
        metafile: bool,
    ) -> None:
        replaced = False
        for _attempt in range(RELINK_ATTEMPTS):
            try:
                os.link(name, name, src_dir_fd=source.fd, dst_dir_fd=target.fd, follow_symlinks=False)
            except FileExistsError:
                pass
            except OSError as error:
                self._error(
                    result,
                    f"Error linking {name} from {source.path}/ to {target.path}/: {describe_os_error(error)}.",
                )
                return
            else:
                if replaced:
                    result.relinked += 1
                else:
                    result.linked += 1
                return

            try:
                same = files_equal(source, name, target, name, stat_a=source_stat)
            except CompareError as error:
                self._error(result, str(error))
                return
            if same:
                result.identical += 1
                return

            # Mail content must never be picked by guesswork.
            if not metafile:
                self._error(result, f"{target.join(name)}: alternative file available at {source.path}/.")
                return

            try:
                target_stat = target.stat(name)
            except OSError as error:
                self._error(result, f"fstatat({target.join(name)}): {describe_os_error(error)}")
                return
            if target_stat.st_mtime_ns >= source_stat.st_mtime_ns:
                logger.debug("%s: keeping newer copy over %s.", target.join(name), source.join(name))
                return

            try:
                os.unlink(name, dir_fd=target.fd)
            except OSError as error:
                self._error(result, f"unlink({target.join(name)}): {describe_os_error(error)}")
                return
            replaced = True

        self._error(result, f"{target.join(name)}: gave up relinking after {RELINK_ATTEMPTS} attempts.")


def prepare_target(path: str, resume: bool = False) -> DirHandle:
    """Open (creating if missing) the reconstruction target.

    An existing target must be empty unless ``resume`` is set.
    """
    try:
        handle = DirHandle.open(path)
    except FileNotFoundError:
        try:
            os.mkdir(path, TARGET_MODE)
            handle = DirHandle.open(path)
        except OSError as error:
            raise StructureError(f"{path}: {describe_os_error(error)}") from error
        return handle
    except OSError as error:
        raise StructureError(f"{path}: {describe_os_error(error)}") from error

    if resume:
        return handle
    try:
        with handle.scandir() as iterator:
            occupied = any(True for _entry in iterator)
    except OSError as error:
        handle.close()
        raise StructureError(f"{path}: {describe_os_error(error)}") from error
    if occupied:
        handle.close()
        raise StructureError(f"Target folder {path} is not an empty folder (use --resume to continue).")
    return handle


def reconstruct_maildir(
    target_path: str,
    source_paths: list[str],
    registry: ServerTypeRegistry | None = None,
    resume: bool = False,
    stat_retries: int = MAX_STAT_ENOENT_RETRY,
) -> ReconstructResult:
    registry = registry or default_registry()
    result = ReconstructResult()
    with prepare_target(target_path, resume) as target:
        reconstructor = Reconstructor(registry.collect_metafiles(), stat_retries)
        for source_path in source_paths:
            print(f"Overlaying {source_path} onto {target.path}.")
            reconstructor.overlay(target, source_path, result)
    return result


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="maildirreconstruct",
        description=(
            "Recreate a maildir from fragments (say a set of distributed filesystem bricks). "
            "Copy the fragments onto a single filesystem first: this uses hard links. "
            "Sources are left intact and no ownership fixups are made; run maildircheck afterwards."
        ),
    )
    parser.add_argument("target", help="Destination folder; created if missing, must be empty.")
    parser.add_argument("sources", nargs="+", help="Fragment folder(s) to overlay.")
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Allow a non-empty destination, to continue or repeat an earlier run.",
    )
    add_common_arguments(parser)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = setup_from_args(args)
    except ValueError as error:
        print(error, file=sys.stderr)
        return EXIT_USAGE

    try:
        result = reconstruct_maildir(
            args.target,
            args.sources,
            resume=args.resume,
            stat_retries=config.stat_retries,
        )
    except StructureError as error:
        print(error, file=sys.stderr)
        return EXIT_FATAL

    print(
        f"Linked: {result.linked}, identical: {result.identical}, relinked: {result.relinked}, "
        f"empty skipped: {result.skipped_empty}"
    )
    if result.error_count:
        print(
            f"{result.error_count} errors encountered, you should PROBABLY NOT use the resulting folder.",
            file=sys.stderr,
        )
    return exit_status(result.error_count)


if __name__ == "__main__":
    raise SystemExit(main())
