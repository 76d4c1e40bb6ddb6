from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

HEADER = "# Generated by zfs-installer.\n"


@dataclass(frozen=True)
class FstabEntry:
    spec: str
    mountpoint: str
    fstype: str
    options: str
    dump: int = 0
    passno: int = 0


@dataclass(frozen=True)
class CrypttabEntry:
    name: str
    device: str
    key: str = "none"
    options: str = "luks,discard,keyscript=decrypt_keyctl"


def render_fstab(entries: Iterable[FstabEntry]) -> str:
    lines = [
        HEADER,
        "# Pool datasets are mounted by zfs-mount, not from this file.\n",
        "# <file system> <mount point> <type> <options> <dump> <pass>\n",
    ]
    for e in entries:
        lines.append(f"{e.spec}\t{e.mountpoint}\t{e.fstype}\t{e.options}\t{e.dump}\t{e.passno}\n")
    return "".join(lines)


def render_crypttab(entries: Iterable[CrypttabEntry]) -> str:
    lines = [HEADER, "# <target name> <source device> <key file> <options>\n"]
    for e in entries:
        lines.append(f"{e.name}\t{e.device}\t{e.key}\t{e.options}\n")
    return "".join(lines)


def write_table(path: Path, contents: str, *, dry_run: bool = False) -> None:
    if dry_run:
        logger.info("Would write %s:\n%s", path, contents)
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents, encoding="utf-8")
    logger.info("Wrote %s", path)
