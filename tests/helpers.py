from __future__ import annotations

import os
from pathlib import Path


def make_maildir(path: Path, *, marker: bool = False, metafiles: tuple[str, ...] = ()) -> Path:
    for sub in ("cur", "new", "tmp"):
        (path / sub).mkdir(parents=True, exist_ok=True)
    if marker:
        (path / "maildirfolder").touch()
    for name in metafiles:
        (path / name).write_text("", encoding="utf-8")
    return path


def make_message(
    *,
    subject: str = "Test message",
    date: str = "Wed, 14 Jun 2023 00:00:00 +0000",
    body: str = "Hello there.",
) -> bytes:
    return (
        "From: Sender <sender@example.test>\n"
        "To: main@example.test\n"
        f"Subject: {subject}\n"
        f"Date: {date}\n"
        "\n"
        f"{body}\n"
    ).encode("utf-8")


def write_message(maildir: Path, sub: str, name: str, content: bytes | str | None = None) -> Path:
    if content is None:
        content = make_message()
    if isinstance(content, str):
        content = content.encode("utf-8")
    path = maildir / sub / name
    path.write_bytes(content)
    return path


def list_names(maildir: Path, sub: str) -> list[str]:
    return sorted(os.listdir(maildir / sub))
