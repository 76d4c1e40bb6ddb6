from __future__ import annotations

import logging
import os

from ..errors import ConfigurationError, ToolInvocationError
from .command import run_cmd

logger = logging.getLogger(__name__)


def get_uuid(dev: str, *, dry_run: bool = False) -> str:
    """Return the filesystem (or swap/LUKS) UUID for a block device."""

    if dry_run:
        return f"dry-run-{os.path.basename(dev)}"
    r = run_cmd(["blkid", "-s", "UUID", "-o", "value", dev])
    uuid = (r.stdout or "").strip()
    if not uuid:
        raise ToolInvocationError(f"Unable to determine UUID for {dev}", argv=r.argv, returncode=r.returncode)
    return uuid


def format_volume(dev: str, fstype: str, label: str, *, dry_run: bool = False) -> None:
    if fstype == "vfat":
        argv = ["mkfs.vfat", "-F", "32", "-n", label, dev]
    elif fstype == "ext4":
        argv = ["mkfs.ext4", "-q", "-F", "-L", label, dev]
    elif fstype == "swap":
        argv = ["mkswap", "-f", "-L", label, dev]
    else:
        raise ConfigurationError(f"Unsupported filesystem {fstype!r} for {dev}")

    logger.info("Formatting %s as %s (label=%s)", dev, fstype, label)
    run_cmd(argv, dry_run=dry_run)
