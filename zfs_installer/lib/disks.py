from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence, Tuple

from ..errors import ConfigurationError
from .command import run_cmd

logger = logging.getLogger(__name__)


class PartitionScheme(Enum):
    """How partition device nodes are named for a whole-disk device.

    nvme0n1 / mmcblk0 / loop0 style names end in a digit, so the kernel puts a
    ``p`` between the disk name and the partition number; sda style names do
    not.
    """

    PLAIN = ""
    INFIX = "p"

    @classmethod
    def for_device(cls, device: str) -> "PartitionScheme":
        name = os.path.basename(device.rstrip("/"))
        if not name:
            raise ConfigurationError(f"Cannot derive a device name from {device!r}")
        return cls.INFIX if name[-1].isdigit() else cls.PLAIN


@dataclass(frozen=True)
class DiskSpec:
    identifier: str
    device: str
    scheme: PartitionScheme
    size_bytes: int
    sector_size: int = 512
    physical_block_size: int = 4096

    @property
    def total_sectors(self) -> int:
        return self.size_bytes // self.sector_size

    def partition_path(self, number: int) -> str:
        return f"{self.device}{self.scheme.value}{number}"


def is_block_device(path: str) -> bool:
    try:
        st = os.stat(path)
    except OSError:
        return False
    return stat.S_ISBLK(st.st_mode)


def read_geometry(device: str) -> Tuple[int, int, int]:
    """Return (size_bytes, logical_sector_size, physical_block_size).

    Read-only, so it runs even in dry-run mode.
    """

    r = run_cmd(["blockdev", "--getsize64", "--getss", "--getpbsz", device])
    values = [line.strip() for line in r.stdout.splitlines() if line.strip()]
    if len(values) != 3:
        raise ConfigurationError(f"Unexpected blockdev output for {device}: {r.stdout!r}")
    try:
        size, logical, physical = (int(v) for v in values)
    except ValueError as e:
        raise ConfigurationError(f"Unparseable blockdev output for {device}: {r.stdout!r}") from e
    return size, logical, physical


def resolve_disks(identifiers: Sequence[str]) -> List[DiskSpec]:
    """Resolve stable identifiers (e.g. /dev/disk/by-id/...) to DiskSpecs."""

    if not identifiers:
        raise ConfigurationError("At least one target disk is required")

    seen_ids = set()
    seen_devices = {}
    disks: List[DiskSpec] = []

    for ident in identifiers:
        if ident in seen_ids:
            raise ConfigurationError(f"Disk given more than once: {ident}")
        seen_ids.add(ident)

        if not is_block_device(ident):
            raise ConfigurationError(f"Disk not found or not a block device: {ident}")

        device = os.path.realpath(ident)
        if device in seen_devices:
            raise ConfigurationError(
                f"{ident} and {seen_devices[device]} resolve to the same device {device}"
            )
        seen_devices[device] = ident

        size, logical, physical = read_geometry(device)
        disk = DiskSpec(
            identifier=ident,
            device=device,
            scheme=PartitionScheme.for_device(device),
            size_bytes=size,
            sector_size=logical,
            physical_block_size=physical,
        )
        logger.info(
            "Resolved %s -> %s (size=%d sector=%d physical=%d scheme=%s)",
            ident,
            device,
            size,
            logical,
            physical,
            disk.scheme.name,
        )
        disks.append(disk)

    return disks
