"""Shared command-line plumbing: exit statuses, logging setup and the config file."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from maildir_fs import MAX_STAT_ENOENT_RETRY


EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2
EXIT_ERRORS = 3

DEFAULT_CONFIG_FILE = "maildirtools.json"
ENV_CONFIG_FILE = "MAILDIRTOOLS_CONFIG"
DEFAULT_MAX_AGE = "1 year ago"
DUPLICATE_POLICY_CUR_THEN_SUBSET = "cur-then-subset"
DUPLICATE_POLICY_CUR_THEN_SUPERSET = "cur-then-superset"
DUPLICATE_POLICY_REPORT_ONLY = "report-only"
DUPLICATE_POLICIES = (
    DUPLICATE_POLICY_CUR_THEN_SUBSET,
    DUPLICATE_POLICY_CUR_THEN_SUPERSET,
    DUPLICATE_POLICY_REPORT_ONLY,
)
LOG_FORMAT = "%(levelname)s: %(message)s"


@dataclass(frozen=True)
class ToolConfig:
    stat_retries: int
    extra_flags: str
    duplicate_policy: str
    replace: bool
    archive_format: str | None
    max_age: str


def default_tool_config() -> ToolConfig:
    return ToolConfig(
        stat_retries=MAX_STAT_ENOENT_RETRY,
        extra_flags="",
        duplicate_policy=DUPLICATE_POLICY_CUR_THEN_SUBSET,
        replace=False,
        archive_format=None,
        max_age=DEFAULT_MAX_AGE,
    )


def parse_boolean_config(raw_value: object, source: str, default: bool) -> bool:
    if raw_value is None:
        return default
    if isinstance(raw_value, bool):
        return raw_value
    raise ValueError(f"{source} must be a boolean.")


def parse_positive_int_config(raw_value: object, source: str, default: int) -> int:
    if raw_value is None:
        return default
    if isinstance(raw_value, bool) or not isinstance(raw_value, int):
        raise ValueError(f"{source} must be an integer.")
    if raw_value < 1:
        raise ValueError(f"{source} must be >= 1.")
    return raw_value


def parse_string_config(raw_value: object, source: str, default: str | None) -> str | None:
    if raw_value is None:
        return default
    if not isinstance(raw_value, str):
        raise ValueError(f"{source} must be a string.")
    cleaned = raw_value.strip()
    if not cleaned:
        raise ValueError(f"{source} cannot be empty.")
    return cleaned


def parse_flag_letters_config(raw_value: object, source: str, default: str) -> str:
    if raw_value is None:
        return default
    if not isinstance(raw_value, str):
        raise ValueError(f"{source} must be a string of flag letters.")
    invalid = sorted({char for char in raw_value if not ("a" <= char <= "z")})
    if invalid:
        raise ValueError(f"{source} may only contain lowercase letters, got {''.join(invalid)!r}.")
    return "".join(sorted(set(raw_value)))


def parse_choice_config(raw_value: object, source: str, default: str, choices: tuple[str, ...]) -> str:
    if raw_value is None:
        return default
    if raw_value not in choices:
        raise ValueError(f"{source} must be one of: {', '.join(choices)}.")
    return str(raw_value)


def load_tool_config(path: Path) -> ToolConfig:
    defaults = default_tool_config()
    if not path.exists():
        return defaults

    try:
        with path.open("r", encoding="utf-8") as file:
            raw = json.load(file)
    except (OSError, json.JSONDecodeError) as error:
        raise ValueError(f"Could not read config file {path}: {error}") from error

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a JSON object.")

    return ToolConfig(
        stat_retries=parse_positive_int_config(
            raw.get("stat_retries"),
            "stat_retries",
            defaults.stat_retries,
        ),
        extra_flags=parse_flag_letters_config(
            raw.get("extra_flags"),
            "extra_flags",
            defaults.extra_flags,
        ),
        duplicate_policy=parse_choice_config(
            raw.get("duplicate_policy"),
            "duplicate_policy",
            defaults.duplicate_policy,
            DUPLICATE_POLICIES,
        ),
        replace=parse_boolean_config(
            raw.get("replace"),
            "replace",
            defaults.replace,
        ),
        archive_format=parse_string_config(
            raw.get("archive_format"),
            "archive_format",
            defaults.archive_format,
        ),
        max_age=parse_string_config(
            raw.get("max_age"),
            "max_age",
            defaults.max_age,
        ),
    )


def resolve_config_path(cli_value: str) -> Path:
    if cli_value:
        return Path(cli_value)
    env_value = os.environ.get(ENV_CONFIG_FILE, "").strip()
    if env_value:
        return Path(env_value)
    return Path(DEFAULT_CONFIG_FILE)


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config-file",
        default="",
        help=(
            f"Path to a JSON config file (default: ${ENV_CONFIG_FILE} or {DEFAULT_CONFIG_FILE}). "
            "File is optional."
        ),
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Also log debug details.")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log errors.")


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)


def setup_from_args(args: argparse.Namespace) -> ToolConfig:
    """Configure logging and load the config file; raises ValueError on bad config."""
    configure_logging(verbose=args.verbose, quiet=args.quiet)
    return load_tool_config(resolve_config_path(args.config_file))


def exit_status(error_count: int) -> int:
    return EXIT_ERRORS if error_count else EXIT_OK
