#!/usr/bin/env python3
"""Report mailbox sizes from the ``S=`` hints in message filenames.

Nothing is stat'ed: sizes come from the names alone, which keeps this fast
on filesystems where stat is expensive. Names without a hint are reported
and left out of the totals.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field

from maildir_cli import (
    EXIT_USAGE,
    add_common_arguments,
    exit_status,
    setup_from_args,
)
from maildir_fs import DirHandle, StructureError, describe_os_error, valid_folder_name
from maildir_names import extract_size_hint


OUTPUT_ALL = "all"
OUTPUT_TOTALS = "totals"
OUTPUT_SIZE = "size"
OUTPUT_COUNT = "count"
SIZE_SUBDIRS = ("new", "cur")
SIZE_UNITS = "KMGTPEZY"

logger = logging.getLogger(__name__)


@dataclass
class FolderSize:
    name: str
    size: int = 0
    count: int = 0
    invalid: list[str] = field(default_factory=list)


@dataclass
class SizeReport:
    path: str
    folders: list[FolderSize] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(folder.size for folder in self.folders)

    @property
    def total_count(self) -> int:
        return sum(folder.count for folder in self.folders)

    @property
    def error_count(self) -> int:
        return len(self.errors)


def pretty_size(size: int) -> str:
    unit = ""
    remainder = 0
    units = iter(SIZE_UNITS)
    while size >= 1024:
        next_unit = next(units, None)
        if next_unit is None:
            break
        remainder = size & 0x3FF
        size >>= 10
        unit = next_unit
    if not unit:
        return f"{size} B"
    return f"{size + remainder / 1024:.2f} {unit}iB"


def measure_folder(folder: DirHandle, rel: str, report: SizeReport) -> FolderSize:
    measured = FolderSize(name=f"INBOX{rel}")
    for sub in SIZE_SUBDIRS:
        try:
            handle = DirHandle.open(sub, folder)
        except OSError as error:
            message = f"{measured.name}/{sub}: {describe_os_error(error)}"
            logger.error("%s", message)
            report.errors.append(message)
            continue
        with handle:
            try:
                with handle.scandir() as iterator:
                    names = sorted(entry.name for entry in iterator if not entry.name.startswith("."))
            except OSError as error:
                message = f"{measured.name}/{sub}: {describe_os_error(error)}"
                logger.error("%s", message)
                report.errors.append(message)
                continue
        for name in names:
            size = extract_size_hint(name)
            if size is None:
                logger.warning("%s/%s/%s: Invalid filename.", measured.name, sub, name)
                measured.invalid.append(f"{sub}/{name}")
                continue
            measured.size += size
            measured.count += 1
    report.folders.append(measured)
    return measured


def measure_tree(path: str) -> SizeReport:
    """Measure the root mailbox and every ``.``-subfolder below it."""
    report = SizeReport(path=path)
    try:
        root = DirHandle.open(path)
    except OSError as error:
        raise StructureError(f"{path}: {describe_os_error(error)}") from error

    with root:
        measure_folder(root, "", report)
        try:
            with root.scandir() as iterator:
                names = sorted(
                    entry.name
                    for entry in iterator
                    if valid_folder_name(entry.name) and entry.is_dir(follow_symlinks=False)
                )
        except OSError as error:
            message = f"{path}: {describe_os_error(error)}, not scanning for sub-folders."
            logger.error("%s", message)
            report.errors.append(message)
            return report

        for name in names:
            try:
                subfolder = DirHandle.open(name, root)
            except OSError as error:
                message = f"{root.join(name)}: {describe_os_error(error)}"
                logger.error("%s", message)
                report.errors.append(message)
                continue
            with subfolder:
                measure_folder(subfolder, name, report)
    return report


def format_report(report: SizeReport, output: str = OUTPUT_ALL, human: bool = False, parse: bool = False) -> list[str]:
    """Render a report; ``parse`` takes precedence over ``human``."""
    total_size, total_count = report.total_size, report.total_count
    if output == OUTPUT_SIZE:
        return [str(total_size)]
    if output == OUTPUT_COUNT:
        return [str(total_count)]
    if output == OUTPUT_TOTALS:
        if parse:
            return [f"{report.path} {total_size} {total_count}"]
        if human:
            return [f"{report.path} has {pretty_size(total_size)} over {total_count} messages."]
        return [f"{report.path}: has {total_size} B over {total_count} messages."]

    lines = [f"PATH: {report.path}" if parse else f"Folder details for {report.path}:"]
    for folder in report.folders:
        if parse:
            lines.append(f"{folder.name} {folder.size} {folder.count}")
        elif human:
            lines.append(f"{folder.name:<25}: {pretty_size(folder.size):>11} / {folder.count:>9} messages")
        else:
            lines.append(f"{folder.name:<25}: {folder.size:>12} B / {folder.count:>9} messages")
    if parse:
        lines.append(f"TOTAL {total_size} {total_count}")
    elif human:
        lines.append(f"Total: {pretty_size(total_size)} over {total_count} messages.")
    else:
        lines.append(f"Total: {total_size} B over {total_count} messages.")
    return lines


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="maildirsizes",
        description="Report the size and message count of maildir folders from S= filename hints.",
    )
    parser.add_argument("folders", nargs="+", help="Maildir root(s) to measure.")
    parser.add_argument(
        "-H",
        "--human",
        action="store_true",
        help="Output sizes in human readable format (counts are unaffected).",
    )
    parser.add_argument(
        "-p",
        "--parse",
        action="store_true",
        help="Output in parseable format. Takes precedence over --human.",
    )
    parser.add_argument(
        "--totalonly",
        dest="output",
        action="store_const",
        const=OUTPUT_TOTALS,
        default=OUTPUT_ALL,
        help="Only print the totals per path.",
    )
    parser.add_argument(
        "--sizeonly",
        dest="output",
        action="store_const",
        const=OUTPUT_SIZE,
        help="Only print the total size per path.",
    )
    parser.add_argument(
        "--countonly",
        dest="output",
        action="store_const",
        const=OUTPUT_COUNT,
        help="Only print the total message count per path. The last of these three options wins.",
    )
    add_common_arguments(parser)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        setup_from_args(args)
    except ValueError as error:
        print(error, file=sys.stderr)
        return EXIT_USAGE

    error_count = 0
    for index, path in enumerate(args.folders):
        if index and args.output == OUTPUT_ALL:
            print()
        try:
            report = measure_tree(path)
        except StructureError as error:
            print(error, file=sys.stderr)
            error_count += 1
            continue
        for line in format_report(report, args.output, human=args.human, parse=args.parse):
            print(line)
        error_count += report.error_count
    return exit_status(error_count)


if __name__ == "__main__":
    raise SystemExit(main())
