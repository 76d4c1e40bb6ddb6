from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from ..errors import ConfigurationError, ToolInvocationError, VerificationError
from .command import run_cmd
from .env import PATHS

logger = logging.getLogger(__name__)

VIRTUAL_FILESYSTEMS = ("/dev", "/proc", "/sys", "/run")


@dataclass(frozen=True)
class MountEntry:
    source: str
    target: str
    fstype: Optional[str] = None
    options: Optional[str] = None
    recursive_bind: bool = False


def _is_under(path: str, parent: str) -> bool:
    parent = parent.rstrip("/") or "/"
    if parent == "/":
        return path.startswith("/")
    return path == parent or path.startswith(parent + "/")


def report_holders(target: str) -> str:
    """Processes keeping a mount point busy (fuser writes its table to stderr)."""

    r = run_cmd(["fuser", "-vm", target], check=False)
    holders = "\n".join(s for s in (r.stdout.strip(), r.stderr.strip()) if s)
    if holders:
        logger.warning("Holders of %s:\n%s", target, holders)
    return holders


def unmount_or_escalate(target: str, argv: List[str], *, dry_run: bool = False) -> None:
    try:
        run_cmd(argv, dry_run=dry_run)
    except ToolInvocationError as e:
        holders = report_holders(target)
        raise VerificationError(f"Unable to unmount {target}: {e}", holders=holders) from e


class MountPlan:
    """Ordered mounts; unmount walks the successfully mounted entries backwards."""

    def __init__(self) -> None:
        self.entries: List[MountEntry] = []
        self.mounted: List[MountEntry] = []

    def add(self, entry: MountEntry) -> None:
        for existing in self.entries:
            if existing.target != entry.target and _is_under(existing.target, entry.target):
                raise ConfigurationError(
                    f"Mount order: {entry.target} must come before {existing.target}"
                )
        self.entries.append(entry)

    def _mount_one(self, entry: MountEntry, *, dry_run: bool) -> None:
        if not dry_run:
            os.makedirs(entry.target, exist_ok=True)
        if entry.recursive_bind:
            run_cmd(["mount", "--rbind", entry.source, entry.target], dry_run=dry_run)
            run_cmd(["mount", "--make-rslave", entry.target], dry_run=dry_run)
            return
        argv = ["mount"]
        if entry.fstype:
            argv += ["-t", entry.fstype]
        if entry.options:
            argv += ["-o", entry.options]
        argv += [entry.source, entry.target]
        run_cmd(argv, dry_run=dry_run)

    def mount(self, *, on_mounted: Optional[Callable[[MountEntry], None]] = None, dry_run: bool = False) -> None:
        for entry in self.entries:
            if entry in self.mounted:
                continue
            logger.info("Mounting %s on %s", entry.source, entry.target)
            self._mount_one(entry, dry_run=dry_run)
            self.mounted.append(entry)
            if on_mounted is not None:
                on_mounted(entry)

    def unmount_entry(self, entry: MountEntry, *, dry_run: bool = False) -> None:
        if entry not in self.mounted:
            return
        argv = ["umount", "-R", entry.target] if entry.recursive_bind else ["umount", entry.target]
        unmount_or_escalate(entry.target, argv, dry_run=dry_run)
        self.mounted.remove(entry)

    def unmount(self, *, dry_run: bool = False) -> None:
        while self.mounted:
            self.unmount_entry(self.mounted[-1], dry_run=dry_run)


def virtual_binds(root: str) -> List[MountEntry]:
    return [
        MountEntry(source=src, target=f"{root.rstrip('/')}{src}", recursive_bind=True)
        for src in VIRTUAL_FILESYSTEMS
    ]


def _unescape(field: str) -> str:
    # mountinfo octal-escapes space, tab, newline and backslash.
    for code, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        field = field.replace(code, char)
    return field


def mounts_under(root: str, *, mountinfo_path: Optional[str] = None) -> List[str]:
    p = Path(mountinfo_path or PATHS.mountinfo)
    if not p.exists():
        return []
    found: List[str] = []
    for line in p.read_text(encoding="utf-8").splitlines():
        fields = line.split()
        if len(fields) < 5:
            continue
        target = _unescape(fields[4])
        if _is_under(target, root):
            found.append(target)
    return found
