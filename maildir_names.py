"""Maildir message filename grammar: unique ids, info sections and flags."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass


INFO_SEPARATOR = ":"
INFO_VERSION = "2"
INFO_PREFIX = f"{INFO_SEPARATOR}{INFO_VERSION},"
EXTENSION_SEPARATOR = ","
SEEN_FLAG = "S"
# Kept in ascending character order, the same order flags must appear in.
STANDARD_FLAGS = "DFPRST"

FLAGS_OK = "ok"
FLAGS_DUPLICATE = "duplicate"
FLAGS_OUT_OF_ORDER = "out_of_order"
FLAGS_UNKNOWN_CHAR = "unknown_char"

SIZE_HINT_PATTERN = re.compile(r"S=(?P<size>\d+)")
TIMESTAMP_PREFIX_PATTERN = re.compile(r"(?P<timestamp>\d+)(?=\.)")

logger = logging.getLogger(__name__)


class FilenameError(ValueError):
    """A filename does not follow the convention an operation depends on."""


@dataclass(frozen=True)
class FlagReport:
    flags: str
    unknown: tuple[str, ...]
    duplicate: bool
    out_of_order: bool
    extension: str | None

    @property
    def status(self) -> str:
        if self.unknown:
            return FLAGS_UNKNOWN_CHAR
        if self.duplicate:
            return FLAGS_DUPLICATE
        if self.out_of_order:
            return FLAGS_OUT_OF_ORDER
        return FLAGS_OK

    @property
    def ok(self) -> bool:
        return self.status == FLAGS_OK


def split_info(filename: str) -> tuple[str, str | None]:
    """Split a name into its unique id and the info section after the first colon."""
    unique_id, separator, info = filename.partition(INFO_SEPARATOR)
    if not separator:
        return filename, None
    return unique_id, info


def extract_unique_id(filename: str) -> str:
    return split_info(filename)[0]


def split_flags(filename: str) -> tuple[str, str, str | None] | None:
    """Return (prefix up to and including ``:2,``, flags, extension) or None.

    ``extension`` is whatever follows a second comma in the info section,
    including that comma, or None when the flags run to the end of the name.
    """
    unique_id, info = split_info(filename)
    if info is None or not info.startswith(f"{INFO_VERSION},"):
        return None
    body = info[len(INFO_VERSION) + 1:]
    flags, separator, rest = body.partition(EXTENSION_SEPARATOR)
    extension = f"{separator}{rest}" if separator else None
    return f"{unique_id}{INFO_PREFIX}", flags, extension


def parse_seen(filename: str) -> bool:
    colon = filename.find(INFO_SEPARATOR)
    if colon < 0:
        logger.warning("No colon (info delimiter) found in %s.", filename)
        return False
    comma = filename.find(EXTENSION_SEPARATOR, colon + 1)
    if comma < 0:
        logger.warning(
            "No comma found in info portion of %s, separating version from flags.",
            filename,
        )
        return False

    version = filename[colon + 1:comma]
    if version != INFO_VERSION:
        logger.warning(
            "Unrecognized info version (%s) in %s, scanning it as flags anyway.",
            version,
            filename,
        )

    for char in filename[comma + 1:]:
        if char == SEEN_FLAG:
            return True
        if char == EXTENSION_SEPARATOR:
            # Dovecot extension; whatever follows is not a flag.
            return False
    return False


def inspect_flags(filename: str, alphabet: str = STANDARD_FLAGS) -> FlagReport:
    parts = split_flags(filename)
    if parts is None:
        return FlagReport(flags="", unknown=(), duplicate=False, out_of_order=False, extension=None)

    _prefix, flags, extension = parts
    if extension is not None:
        logger.warning("Vendor extension %r after flags in %s.", extension, filename)

    unknown = tuple(sorted({char for char in flags if char not in alphabet}))
    duplicate = len(set(flags)) != len(flags)
    out_of_order = any(current < previous for previous, current in zip(flags, flags[1:]))
    return FlagReport(
        flags=flags,
        unknown=unknown,
        duplicate=duplicate,
        out_of_order=out_of_order,
        extension=extension,
    )


def validate_flags(filename: str, alphabet: str = STANDARD_FLAGS) -> str:
    return inspect_flags(filename, alphabet).status


def with_flags(filename: str, flags: str) -> str:
    """Replace the flags segment of ``filename``, adding ``:2,`` if it has none."""
    parts = split_flags(filename)
    if parts is None:
        return f"{extract_unique_id(filename)}{INFO_PREFIX}{flags}"
    prefix, _flags, extension = parts
    return f"{prefix}{flags}{extension or ''}"


def canonicalize_flags(filename: str) -> str:
    parts = split_flags(filename)
    if parts is None:
        return filename
    prefix, flags, extension = parts
    return f"{prefix}{''.join(sorted(set(flags)))}{extension or ''}"


def extract_size_hint(filename: str) -> int | None:
    match = SIZE_HINT_PATTERN.search(extract_unique_id(filename))
    if not match:
        return None
    return int(match.group("size"))


def extract_timestamp_prefix(filename: str) -> tuple[int, str]:
    match = TIMESTAMP_PREFIX_PATTERN.match(filename)
    if not match:
        raise FilenameError(f"{filename} does not start with a TIMESTAMP. prefix.")
    return int(match.group("timestamp")), filename[match.end():]
