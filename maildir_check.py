#!/usr/bin/env python3
"""Validate, and optionally fix, the structure of a maildir tree.

Each mailbox (the root, then every ``.``-subfolder) is checked for:

* the ``maildirfolder`` marker: absent in the root, present and empty in
  subfolders;
* ownership of the folder, ``cur/new/tmp`` and every message against the
  owner of the root (or an explicitly expected owner);
* info sections in ``cur/`` starting with ``2,`` and flags that are known
  and in strictly ascending order;
* unique ids that appear only once across ``cur/`` and ``new/``;
* ``S=`` size hints that match the actual file size.

This uses stat a lot, which is slow on some filesystems.
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import os
import sys
from dataclasses import dataclass, field

from maildir_cli import (
    DUPLICATE_POLICY_CUR_THEN_SUBSET,
    DUPLICATE_POLICY_CUR_THEN_SUPERSET,
    DUPLICATE_POLICY_REPORT_ONLY,
    EXIT_FATAL,
    EXIT_USAGE,
    add_common_arguments,
    exit_status,
    setup_from_args,
)
from maildir_fs import (
    FOLDER_MARKER,
    MAILDIR_SUBDIRS,
    MAX_STAT_ENOENT_RETRY,
    MESSAGE_SUBDIRS,
    CompareError,
    DirHandle,
    MoveError,
    describe_os_error,
    files_equal,
    list_files,
    move_message,
    stat_retry,
    valid_folder_name,
)
from maildir_names import (
    INFO_VERSION,
    canonicalize_flags,
    extract_size_hint,
    inspect_flags,
    split_flags,
    split_info,
)
from maildir_servertypes import ServerTypeRegistry, default_registry, flag_alphabet


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageLocation:
    subdir: str
    name: str

    @property
    def flags(self) -> frozenset[str]:
        parts = split_flags(self.name)
        if parts is None:
            return frozenset()
        return frozenset(parts[1])

    def __str__(self) -> str:
        return f"{self.subdir}/{self.name}"


class DuplicatePolicy:
    """Picks which copy of a duplicated message to keep.

    The default prefers ``cur/`` over ``new/`` and then the copy whose flag
    set is a strict subset of the other's. Either preference may be the
    wrong call for a given mailbox, hence the alternatives.
    """

    def __init__(self, name: str = DUPLICATE_POLICY_CUR_THEN_SUBSET) -> None:
        self.name = name

    def choose(self, first: MessageLocation, second: MessageLocation) -> MessageLocation | None:
        if self.name == DUPLICATE_POLICY_REPORT_ONLY:
            return None
        if first.subdir != second.subdir:
            return first if first.subdir == "cur" else second

        first_flags, second_flags = first.flags, second.flags
        if self.name == DUPLICATE_POLICY_CUR_THEN_SUPERSET:
            first_flags, second_flags = second_flags, first_flags
        if first_flags < second_flags:
            return first
        if second_flags < first_flags:
            return second
        return None

    def choose_all(self, locations: list[MessageLocation]) -> MessageLocation | None:
        keep = locations[0]
        for other in locations[1:]:
            keep = self.choose(keep, other)
            if keep is None:
                return None
        return keep


@dataclass(frozen=True)
class CheckOptions:
    fix: bool = False
    expected_owner: tuple[int, int] | None = None
    extra_flags: str = ""
    duplicate_policy: str = DUPLICATE_POLICY_CUR_THEN_SUBSET
    stat_retries: int = MAX_STAT_ENOENT_RETRY


@dataclass
class MailboxReport:
    name: str
    problems: list[str] = field(default_factory=list)
    fixed: list[str] = field(default_factory=list)


@dataclass
class CheckResult:
    path: str
    mailboxes: list[MailboxReport] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors) + sum(len(mailbox.problems) for mailbox in self.mailboxes)

    def find(self, name: str) -> MailboxReport | None:
        for mailbox in self.mailboxes:
            if mailbox.name == name:
                return mailbox
        return None


class MaildirChecker:
    def __init__(self, options: CheckOptions, registry: ServerTypeRegistry | None = None) -> None:
        self.options = options
        self.registry = registry or default_registry()
        self.policy = DuplicatePolicy(options.duplicate_policy)

    def check_tree(self, path: str) -> CheckResult:
        result = CheckResult(path=path)
        try:
            root = DirHandle.open(path)
        except OSError as error:
            result.errors.append(f"{path}: {describe_os_error(error)}")
            return result

        with root:
            print(f"PATH: {path}")
            try:
                root_stat = root.stat()
            except OSError as error:
                result.errors.append(f"Error stat'ing base folder: {describe_os_error(error)}.")
                return result
            owner = self.options.expected_owner or (root_stat.st_uid, root_stat.st_gid)
            alphabet = flag_alphabet(self.registry.find_matching(root), self.options.extra_flags)
            logger.debug("%s: flag alphabet %s", path, alphabet)

            self._record(result, self.check_mailbox(root, "", owner, alphabet, is_root=True))
            for name in self._subfolder_names(root, result):
                try:
                    subfolder = DirHandle.open(name, root)
                except OSError as error:
                    result.errors.append(f"{name}: {describe_os_error(error)}.")
                    continue
                with subfolder:
                    self._record(result, self.check_mailbox(subfolder, name, owner, alphabet, is_root=False))
        return result

    def _record(self, result: CheckResult, report: MailboxReport) -> None:
        result.mailboxes.append(report)
        print_mailbox_report(report)

    def _subfolder_names(self, root: DirHandle, result: CheckResult) -> list[str]:
        names: list[str] = []
        try:
            with root.scandir() as iterator:
                entries = sorted(iterator, key=lambda entry: entry.name)
        except OSError as error:
            result.errors.append(f"{root.path}: {describe_os_error(error)}")
            return names

        for entry in entries:
            if not valid_folder_name(entry.name):
                continue
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError as error:
                result.errors.append(f"{entry.name}: {describe_os_error(error)}.")
                continue
            if not is_dir:
                result.errors.append(f"{entry.name}: Not a folder (.Name entries must be folders).")
                continue
            names.append(entry.name)
        return names

    def check_mailbox(
        self,
        folder: DirHandle,
        rel: str,
        owner: tuple[int, int],
        alphabet: str,
        is_root: bool,
    ) -> MailboxReport:
        report = MailboxReport(name=f"INBOX{rel}")
        self._check_owner(report, folder, None, ".", owner)
        self._check_marker(report, folder, owner, is_root)

        with contextlib.ExitStack() as stack:
            handles: dict[str, DirHandle] = {}
            for sub in MAILDIR_SUBDIRS:
                try:
                    handles[sub] = stack.enter_context(DirHandle.open(sub, folder))
                except OSError as error:
                    report.problems.append(f"{sub}: {describe_os_error(error)}.")
                    continue
                self._check_owner(report, handles[sub], None, sub, owner)

            seen: dict[str, list[MessageLocation]] = {}
            for sub in MESSAGE_SUBDIRS:
                if sub not in handles:
                    continue
                for name in list_files(handles[sub]):
                    name = self._check_message(report, handles[sub], sub, name, owner, alphabet)
                    unique_id = split_info(name)[0]
                    seen.setdefault(unique_id, []).append(MessageLocation(sub, name))

            for unique_id, locations in seen.items():
                if len(locations) > 1:
                    self._check_duplicate(report, folder, handles, unique_id, locations)
        return report

    def _check_owner(
        self,
        report: MailboxReport,
        handle: DirHandle,
        name: str | None,
        label: str,
        owner: tuple[int, int],
        current: os.stat_result | None = None,
    ) -> None:
        if current is None:
            try:
                current = handle.stat() if name is None else stat_retry(handle, name, self.options.stat_retries)
            except OSError as error:
                report.problems.append(f"fstatat({label}): {describe_os_error(error)} - cannot check ownership")
                return

        uid, gid = owner
        wrong = []
        if current.st_uid != uid:
            wrong.append(f"{label}: Wrong ownership, uid={current.st_uid} is not {uid}.")
        if current.st_gid != gid:
            wrong.append(f"{label}: Wrong group, gid={current.st_gid} is not {gid}.")
        if not wrong:
            return
        if not self.options.fix:
            report.problems.extend(wrong)
            return

        try:
            if name is None:
                os.chown(handle.fd, uid, gid)
            else:
                os.chown(name, uid, gid, dir_fd=handle.fd, follow_symlinks=False)
        except OSError as error:
            report.problems.extend(wrong)
            report.problems.append(f"chown({label}): {describe_os_error(error)}")
            return
        report.fixed.extend(wrong)

    def _check_marker(self, report: MailboxReport, folder: DirHandle, owner: tuple[int, int], is_root: bool) -> None:
        try:
            marker = folder.stat(FOLDER_MARKER)
        except FileNotFoundError:
            marker = None
        except OSError as error:
            report.problems.append(f"{FOLDER_MARKER}: {describe_os_error(error)}.")
            return

        if marker is None:
            if is_root:
                return
            problem = f"{FOLDER_MARKER}: marker missing."
            if not self.options.fix:
                report.problems.append(problem)
                return
            try:
                os.close(os.open(FOLDER_MARKER, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600, dir_fd=folder.fd))
                if os.geteuid() == 0:
                    os.chown(FOLDER_MARKER, *owner, dir_fd=folder.fd, follow_symlinks=False)
            except OSError as error:
                report.problems.append(f"{problem} Creating it failed: {describe_os_error(error)}")
                return
            report.fixed.append(problem)
            return

        self._check_owner(report, folder, FOLDER_MARKER, FOLDER_MARKER, owner, marker)
        if marker.st_size != 0:
            report.problems.append(f"{FOLDER_MARKER}: marker is not empty ({marker.st_size} bytes).")
            return
        if not is_root:
            return

        problem = f"{FOLDER_MARKER}: marker must not exist in the root folder."
        if not self.options.fix:
            report.problems.append(problem)
            return
        try:
            os.unlink(FOLDER_MARKER, dir_fd=folder.fd)
        except OSError as error:
            report.problems.append(f"{problem} Removing it failed: {describe_os_error(error)}")
            return
        report.fixed.append(problem)

    def _check_message(
        self,
        report: MailboxReport,
        handle: DirHandle,
        sub: str,
        name: str,
        owner: tuple[int, int],
        alphabet: str,
    ) -> str:
        """Check one message file; return its (possibly renamed) name."""
        label = f"{sub}/{name}"
        try:
            current = stat_retry(handle, name, self.options.stat_retries)
        except OSError as error:
            # ENOENT left after the retries counts as a real error too.
            report.problems.append(f"fstatat({label}): {describe_os_error(error)} - cannot check ownership")
            return name

        self._check_owner(report, handle, name, label, owner, current)

        hint = extract_size_hint(name)
        if hint is not None and hint != current.st_size:
            report.problems.append(f"{label}: size hint S={hint} does not match file size {current.st_size}.")

        if sub == "cur":
            name = self._check_flags(report, handle, name, alphabet)
        return name

    def _check_flags(self, report: MailboxReport, handle: DirHandle, name: str, alphabet: str) -> str:
        label = f"cur/{name}"
        _unique_id, info = split_info(name)
        if info is None:
            return name
        if not info.startswith(f"{INFO_VERSION},"):
            report.problems.append(f"{label}: info section does not start with '{INFO_VERSION},'.")
            return name

        flags = inspect_flags(name, alphabet)
        if flags.unknown:
            report.problems.append(f"{label}: invalid flag(s) {''.join(flags.unknown)}.")
        if not (flags.duplicate or flags.out_of_order):
            return name

        problem = f"{label}: flags not in alphabetic order."
        if not self.options.fix:
            report.problems.append(problem)
            return name
        canonical = canonicalize_flags(name)
        try:
            move_message(handle, handle, name, canonical)
        except MoveError as error:
            report.problems.append(f"{problem} {error}")
            return name
        report.fixed.append(f"{problem} Renamed to {canonical}.")
        return canonical

    def _check_duplicate(
        self,
        report: MailboxReport,
        folder: DirHandle,
        handles: dict[str, DirHandle],
        unique_id: str,
        locations: list[MessageLocation],
    ) -> None:
        paths = ", ".join(handles[location.subdir].join(location.name) for location in locations)
        problem = f"Duplicate message {unique_id}: {paths}"
        if not self.options.fix:
            report.problems.append(problem)
            return

        keep = self.policy.choose_all(locations)
        if keep is None:
            report.problems.append(f"{problem} (no preferred copy, left alone)")
            return

        losers = [location for location in locations if location != keep]
        for loser in losers:
            try:
                same = files_equal(handles[keep.subdir], keep.name, handles[loser.subdir], loser.name)
            except CompareError as error:
                report.problems.append(f"{problem} ({error})")
                return
            if not same:
                report.problems.append(f"{problem} (content differs, left alone)")
                return

        for loser in losers:
            try:
                os.unlink(loser.name, dir_fd=handles[loser.subdir].fd)
            except OSError as error:
                report.problems.append(f"{problem} (unlink({loser}): {describe_os_error(error)})")
                return
        report.fixed.append(f"{problem} Kept {keep}.")


def print_mailbox_report(report: MailboxReport) -> None:
    if not report.problems and not report.fixed:
        print(f"{report.name}: All Good.")
        return
    print(f"{report.name}:")
    for problem in report.problems:
        print(f"  {problem}")
    for fixed in report.fixed:
        print(f"  fixed: {fixed}")
    if report.problems:
        print(f" *** {len(report.problems)} errors identified ***")


def parse_owner(value: str) -> tuple[int, int]:
    uid, separator, gid = value.partition(":")
    if not separator or not uid.isdigit() or not gid.isdigit():
        raise ValueError(f"--owner must be UID:GID, got {value!r}.")
    return int(uid), int(gid)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="maildircheck",
        description=(
            "Check maildir folders for structural problems. "
            "Exit status is 0 if and only if none of the folders exhibit any errors."
        ),
    )
    parser.add_argument("folders", nargs="+", help="Maildir root(s) to check.")
    parser.add_argument(
        "--fix",
        action="store_true",
        help="Repair ownership, markers, flag order and verified duplicates where possible.",
    )
    parser.add_argument(
        "--owner",
        default="",
        metavar="UID:GID",
        help="Expected owner of every entry (default: owner of the mailbox root).",
    )
    parser.add_argument(
        "--extra-flags",
        default=None,
        help="Additional lowercase flag letters to accept (added to any from the config file).",
    )
    add_common_arguments(parser)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = setup_from_args(args)
        options = CheckOptions(
            fix=args.fix,
            expected_owner=parse_owner(args.owner) if args.owner else None,
            extra_flags=config.extra_flags + (args.extra_flags or ""),
            duplicate_policy=config.duplicate_policy,
            stat_retries=config.stat_retries,
        )
    except ValueError as error:
        print(error, file=sys.stderr)
        return EXIT_USAGE

    checker = MaildirChecker(options)
    results = [checker.check_tree(folder) for folder in args.folders]
    for result in results:
        for error in result.errors:
            print(error)
    if all(result.errors and not result.mailboxes for result in results):
        return EXIT_FATAL
    return exit_status(sum(result.error_count for result in results))


if __name__ == "__main__":
    raise SystemExit(main())
