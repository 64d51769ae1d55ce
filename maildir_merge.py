#!/usr/bin/env python3
"""Merge (move) the mail of source maildirs into a target maildir.

Messages in ``new/`` are always moved. Messages in ``cur/`` are moved too,
except when the target serves a POP3 client and the message has already
been seen: a POP3 client would download such a message a second time, so
it is either left behind in the source or moved to a redirect folder.
"""

from __future__ import annotations

import argparse
import contextlib
import logging
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
    AmbiguityError,
    DirHandle,
    MaildirError,
    MoveError,
    StructureError,
    describe_os_error,
    ensure_subfolder,
    list_files,
    move_message,
    open_maildir,
    valid_folder_name,
)
from maildir_names import extract_unique_id, parse_seen
from maildir_servertypes import (
    ServerHandle,
    ServerType,
    ServerTypeRegistry,
    default_registry,
    open_handles,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeOptions:
    dry_run: bool = False
    force: bool = False
    pop3_uidl: bool = False
    pop3_redirect: str | None = None
    pop3_merge_seen: bool = False
    replace: bool = False

    def __post_init__(self) -> None:
        if self.pop3_merge_seen and self.pop3_redirect:
            raise ValueError("You can't specify both --pop3-redirect and --pop3-merge-seen.")
        if self.pop3_redirect is not None and not valid_folder_name(self.pop3_redirect):
            raise ValueError(
                f"--pop3-redirect folder {self.pop3_redirect!r} must start with '.' and not contain '/'."
            )


@dataclass
class MergeResult:
    source: str
    source_type: str = ""
    moved_new: int = 0
    moved_cur: int = 0
    redirected: int = 0
    left_behind: int = 0
    uidls_copied: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)


class MailboxMerger:
    """Moves mail from source maildirs into one open target maildir."""

    def __init__(
        self,
        target: DirHandle,
        target_handles: list[ServerHandle],
        options: MergeOptions,
        registry: ServerTypeRegistry,
    ) -> None:
        self.target = target
        self.target_handles = target_handles
        self.options = options
        self.registry = registry
        self.pop3 = any(handle.is_pop3() for handle in target_handles)

    def _error(self, result: MergeResult, message: str) -> None:
        logger.error("%s", message)
        result.errors.append(message)

    def merge(self, source_path: str) -> MergeResult:
        result = MergeResult(source=source_path)
        try:
            source = open_maildir(source_path)
        except StructureError as error:
            self._error(result, str(error))
            return result

        with source:
            try:
                source_types = self._detect_source(source)
            except AmbiguityError as error:
                self._error(result, str(error))
                return result

            result.source_type = source_types[0].label if source_types else ""
            print(
                f"Merging {source.path} ({result.source_type or 'no type detected'}) "
                f"into {self.target.path}."
            )
            with contextlib.ExitStack() as stack:
                try:
                    source_handles = stack.enter_context(open_handles(source_types, source))
                except OSError as error:
                    self._error(
                        result,
                        f"{source.path}: reading server metadata: {describe_os_error(error)}, skipping source.",
                    )
                    return result
                self._merge_new(source, result)
                self._merge_cur(source, source_handles[0] if source_handles else None, result)
        return result

    def _detect_source(self, source: DirHandle) -> list[ServerType]:
        source_types = self.registry.find_matching(source)
        if len(source_types) > 1:
            labels = ", ".join(server_type.label for server_type in source_types)
            raise AmbiguityError(f"{source.path}: multiple types triggered ({labels}), not proceeding for safety.")
        return source_types

    def _open_pass(
        self,
        source: DirHandle,
        sub: str,
        result: MergeResult,
        stack: contextlib.ExitStack,
    ) -> tuple[DirHandle, DirHandle] | None:
        pairs = []
        for base in (source, self.target):
            try:
                pairs.append(stack.enter_context(DirHandle.open(sub, base)))
            except OSError as error:
                self._error(result, f"{base.join(sub)}: {describe_os_error(error)}, skipping {sub}/.")
                return None
        return pairs[0], pairs[1]

    def _move(self, src: DirHandle, dst: DirHandle, name: str, result: MergeResult) -> bool:
        try:
            move_message(
                src,
                dst,
                name,
                replace=self.options.replace,
                dry_run=self.options.dry_run,
            )
        except MoveError as error:
            self._error(result, str(error))
            return False
        return True

    def _merge_new(self, source: DirHandle, result: MergeResult) -> None:
        with contextlib.ExitStack() as stack:
            dirs = self._open_pass(source, "new", result, stack)
            if dirs is None:
                return
            source_new, target_new = dirs
            for name in list_files(source_new):
                if self._move(source_new, target_new, name, result):
                    result.moved_new += 1

    def _merge_cur(self, source: DirHandle, source_handle: ServerHandle | None, result: MergeResult) -> None:
        uidl_source = None
        if self.options.pop3_uidl:
            if source_handle is not None and source_handle.can_get_uidl:
                uidl_source = source_handle
            else:
                logger.warning(
                    "%s: UIDL transfer requested but source doesn't support UIDL retrieval.",
                    source.path,
                )

        with contextlib.ExitStack() as stack:
            dirs = self._open_pass(source, "cur", result, stack)
            if dirs is None:
                return
            source_cur, target_cur = dirs
            redirect_cur: DirHandle | None = None
            redirect_failed = False

            for name in list_files(source_cur):
                if not self.pop3 or self.options.pop3_merge_seen or not parse_seen(name):
                    if self._move(source_cur, target_cur, name, result):
                        result.moved_cur += 1
                        if uidl_source is not None:
                            self._copy_uidl(uidl_source, name, result)
                    continue

                # The redirect folder is attempted once per source.
                if self.options.pop3_redirect and redirect_cur is None and not redirect_failed:
                    redirect_cur = self._open_redirect(stack, result)
                    redirect_failed = redirect_cur is None
                if redirect_cur is not None:
                    if self._move(source_cur, redirect_cur, name, result):
                        result.redirected += 1
                else:
                    result.left_behind += 1
                    print(f"{source_cur.join(name)}: left behind (seen, target is POP3).")

    def _open_redirect(self, stack: contextlib.ExitStack, result: MergeResult) -> DirHandle | None:
        folder_name = self.options.pop3_redirect
        try:
            redirect = stack.enter_context(
                ensure_subfolder(self.target, folder_name, dry_run=self.options.dry_run)
            )
        except StructureError as error:
            self._error(result, f"{error} Seen messages stay in the source.")
            return None

        self._subscribe(folder_name, result)
        if redirect.is_planned:
            return DirHandle.planned(redirect.join("cur"))
        try:
            return stack.enter_context(DirHandle.open("cur", redirect))
        except OSError as error:
            self._error(result, f"{redirect.join('cur')}: {describe_os_error(error)}")
            return None

    def _subscribe(self, folder_name: str, result: MergeResult) -> None:
        for handle in self.target_handles:
            if not handle.can_subscribe or handle.is_subscribed(folder_name):
                continue
            if self.options.dry_run:
                print(f"Would subscribe {folder_name} for {handle.label}.")
                continue
            try:
                handle.subscribe(folder_name)
            except OSError as error:
                self._error(
                    result,
                    f"{self.target.path}: subscribing {folder_name} for {handle.label}: "
                    f"{describe_os_error(error)}",
                )

    def _copy_uidl(self, source_handle: ServerHandle, name: str, result: MergeResult) -> None:
        basename = extract_unique_id(name)
        uidl = source_handle.get_uidl(basename)
        if uidl is None:
            logger.warning("%s: no POP3 UIDL recorded for %s.", source_handle.folder.path, basename)
            return
        if self.options.dry_run:
            print(f"Setting UIDL of {basename} to {uidl}")
            return
        for handle in self.target_handles:
            if not handle.can_set_uidl:
                continue
            try:
                handle.set_uidl(basename, uidl)
            except ValueError as error:
                self._error(result, f"{self.target.path}: {error}")
                return
        result.uidls_copied += 1


def merge_mailboxes(
    target_path: str,
    source_paths: list[str],
    options: MergeOptions,
    registry: ServerTypeRegistry | None = None,
) -> list[MergeResult]:
    """Merge every source into the target; raises MaildirError if the target is unusable."""
    registry = registry or default_registry()
    with open_maildir(target_path) as target:
        target_types = registry.find_matching(target)
        if not target_types:
            if not options.force:
                raise MaildirError(
                    f"{target.path}: error detecting destination folder type(s). "
                    "Use --force to proceed as bare maildir."
                )
            logger.warning("%s: no server type detected, proceeding as bare maildir.", target.path)
        for server_type in target_types:
            print(f"{target.path}: Detected type: {server_type.label}")

        with open_handles(target_types, target) as target_handles:
            merger = MailboxMerger(target, target_handles, options, registry)
            if merger.pop3:
                print("Target folder is used for POP3.")
            return [merger.merge(source_path) for source_path in source_paths]


def print_report(results: list[MergeResult], dry_run: bool) -> None:
    if dry_run:
        print("Mode: DRY_RUN (no files were moved).")
    for result in results:
        print(
            f"{result.source}: new={result.moved_new} cur={result.moved_cur} "
            f"redirected={result.redirected} left_behind={result.left_behind} "
            f"uidls={result.uidls_copied} errors={result.error_count}"
        )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="maildirmerge",
        description=(
            "Migrate (merge) each source maildir into the destination maildir. "
            "If all goes well the sources are left without mail."
        ),
    )
    parser.add_argument("target", help="Destination maildir.")
    parser.add_argument("sources", nargs="+", help="Source maildir(s) to empty into the destination.")
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Permit overriding certain safeties (merge into a bare maildir).",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Output what would be done without doing it.",
    )
    parser.add_argument(
        "--pop3-uidl",
        action="store_true",
        help="Attempt to carry POP3 UIDL values over to the destination.",
    )
    parser.add_argument(
        "--pop3-redirect",
        default=None,
        metavar="FOLDER",
        help="Move previously seen messages to this folder (e.g. .Archived) when the destination is used for POP3.",
    )
    parser.add_argument(
        "--pop3-merge-seen",
        action="store_true",
        help=(
            "Merge seen messages even when the destination is used for POP3. "
            "Mutually exclusive with --pop3-redirect."
        ),
    )
    parser.add_argument(
        "-R",
        "--replace",
        action="store_true",
        help=(
            "Use a stat() check followed by rename() instead of link-then-unlink. "
            "This races with other writers; use only on filesystems without hard links."
        ),
    )
    add_common_arguments(parser)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = setup_from_args(args)
        options = MergeOptions(
            dry_run=args.dry_run,
            force=args.force,
            pop3_uidl=args.pop3_uidl,
            pop3_redirect=args.pop3_redirect,
            pop3_merge_seen=args.pop3_merge_seen,
            replace=args.replace or config.replace,
        )
    except ValueError as error:
        print(error, file=sys.stderr)
        return EXIT_USAGE

    try:
        results = merge_mailboxes(args.target, args.sources, options)
    except MaildirError as error:
        print(error, file=sys.stderr)
        return EXIT_FATAL
    except OSError as error:
        print(f"Could not complete merge into {args.target}: {describe_os_error(error)}", file=sys.stderr)
        return EXIT_FATAL

    print_report(results, options.dry_run)
    return exit_status(sum(result.error_count for result in results))


if __name__ == "__main__":
    raise SystemExit(main())
