from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import ConfigurationError, VerificationError
from .command import run_cmd, settle
from .disks import DiskSpec, is_block_device
from .mounts import unmount_or_escalate

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
FIRST_PARTITION_OFFSET = MIB
# Backup GPT header plus a 128-entry partition array.
GPT_ARRAY_BYTES = 16384


@dataclass(frozen=True)
class PartitionRequest:
    role: str
    size_mib: Optional[int]  # None takes the remaining aligned space
    type_code: str
    label: str


@dataclass(frozen=True)
class LayoutPolicy:
    disks: List[List[PartitionRequest]]
    alignment_bytes: int = 4096


@dataclass(frozen=True)
class PartitionSpec:
    number: int
    start: int
    end: int  # inclusive
    type_code: str
    label: str
    role: str

    @property
    def sectors(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class PartitionPlan:
    disk: DiskSpec
    alignment_sectors: int
    last_aligned_sector: int
    partitions: List[PartitionSpec]

    def paths(self) -> List[str]:
        return [self.disk.partition_path(p.number) for p in self.partitions]

    def by_role(self) -> Dict[str, str]:
        return {p.role: self.disk.partition_path(p.number) for p in self.partitions}


def alignment_sectors(disk: DiskSpec, alignment_bytes: int) -> int:
    target = max(alignment_bytes, disk.physical_block_size)
    return max(1, target // disk.sector_size)


def last_aligned_sector(total_sectors: int, sector_size: int, align: int) -> int:
    """Last sector of the final fully aligned chunk before the backup GPT."""

    reserved = 1 + -(-GPT_ARRAY_BYTES // sector_size)
    last_usable = total_sectors - reserved - 1
    last = ((last_usable + 1) // align) * align - 1
    if last < 0:
        raise ConfigurationError(f"Device too small for a GPT: {total_sectors} sectors")
    return last


def _plan_disk(disk: DiskSpec, requests: Sequence[PartitionRequest], alignment_bytes: int) -> PartitionPlan:
    align = alignment_sectors(disk, alignment_bytes)
    last = last_aligned_sector(disk.total_sectors, disk.sector_size, align)

    start = FIRST_PARTITION_OFFSET // disk.sector_size
    start = -(-start // align) * align

    parts: List[PartitionSpec] = []
    for number, req in enumerate(requests, start=1):
        if req.size_mib is None:
            if number != len(requests):
                raise ConfigurationError(
                    f"{disk.device}: only the last partition may take the remainder"
                )
            end = last
        else:
            sectors = (req.size_mib * MIB // disk.sector_size // align) * align
            if sectors <= 0:
                raise ConfigurationError(
                    f"{disk.device}: partition {req.label} size {req.size_mib} MiB is below alignment"
                )
            end = start + sectors - 1

        if end > last or end < start:
            raise ConfigurationError(
                f"{disk.device}: layout does not fit ({req.label} would end at sector {end}, "
                f"last aligned sector is {last})"
            )

        parts.append(
            PartitionSpec(
                number=number,
                start=start,
                end=end,
                type_code=req.type_code,
                label=req.label,
                role=req.role,
            )
        )
        start = end + 1

    return PartitionPlan(disk=disk, alignment_sectors=align, last_aligned_sector=last, partitions=parts)


def plan(disks: Sequence[DiskSpec], policy: LayoutPolicy) -> List[PartitionPlan]:
    """Compute one aligned partition plan per disk. No I/O."""

    if len(disks) != len(policy.disks):
        raise ConfigurationError(
            f"Layout expects {len(policy.disks)} disks, got {len(disks)}"
        )
    return [_plan_disk(d, reqs, policy.alignment_bytes) for d, reqs in zip(disks, policy.disks)]


@dataclass(frozen=True)
class StackedDevice:
    name: str
    type: str
    mountpoints: Tuple[str, ...]


def _mountpoints(node: Dict[str, Any]) -> Tuple[str, ...]:
    points = node.get("mountpoints")
    if points is None:
        points = [node.get("mountpoint")]
    return tuple(p for p in points if p)


def _walk(node: Dict[str, Any], out: List[StackedDevice], seen: set) -> None:
    for child in node.get("children") or []:
        _walk(child, out, seen)
    name = node.get("name")
    if not name or name in seen:
        return
    seen.add(name)
    out.append(StackedDevice(name=name, type=node.get("type") or "", mountpoints=_mountpoints(node)))


def stacked_devices(device: str) -> List[StackedDevice]:
    """Everything built on the disk, deepest first, the disk itself last."""

    r = run_cmd(["lsblk", "-J", "-p", "-o", "NAME,TYPE,MOUNTPOINTS", device])
    try:
        tree = json.loads(r.stdout or "{}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Unparseable lsblk output for {device}: {r.stdout!r}") from e

    out: List[StackedDevice] = []
    seen: set = set()
    for top in tree.get("blockdevices") or []:
        _walk(top, out, seen)
    return out


def release_holders(device: str, *, dry_run: bool = False) -> None:
    """Unmount, swapoff, close and stop everything stacked on the disk."""

    for dev in stacked_devices(device):
        for mp in dev.mountpoints:
            if mp == "[SWAP]":
                logger.warning("Disabling swap on %s", dev.name)
                run_cmd(["swapoff", dev.name], dry_run=dry_run)
            else:
                logger.warning("Unmounting %s from %s", dev.name, mp)
                unmount_or_escalate(mp, ["umount", mp], dry_run=dry_run)

        if dev.type == "crypt":
            logger.warning("Closing stale mapper %s", dev.name)
            run_cmd(["cryptsetup", "close", dev.name], dry_run=dry_run)
        elif dev.type.startswith("raid"):
            logger.warning("Stopping stale array %s", dev.name)
            run_cmd(["mdadm", "--stop", dev.name], dry_run=dry_run)


def wait_for_partitions(
    plan: PartitionPlan,
    *,
    delay: float = 2.0,
    attempts: int = 5,
    dry_run: bool = False,
) -> None:
    """Bounded wait for the kernel to publish the planned partition nodes."""

    paths = plan.paths()
    missing: List[str] = paths
    for attempt in range(1, attempts + 1):
        settle(delay, dry_run=dry_run)
        if dry_run:
            return
        missing = [p for p in paths if not is_block_device(p)]
        if not missing:
            return
        logger.warning(
            "Partitions not present yet on %s (attempt %d/%d): %s",
            plan.disk.device,
            attempt,
            attempts,
            ", ".join(missing),
        )
        run_cmd(["partprobe", plan.disk.device], check=False)

    raise VerificationError(
        f"Partition nodes never appeared on {plan.disk.device}: {', '.join(missing)}"
    )


def apply(
    plan: PartitionPlan,
    *,
    settle_delay: float = 2.0,
    settle_attempts: int = 5,
    dry_run: bool = False,
) -> None:
    """Wipe the disk and write the plan. Safe to repeat."""

    dev = plan.disk.device
    logger.info("Writing %d partitions to %s", len(plan.partitions), dev)

    # Not every device supports discard.
    run_cmd(["blkdiscard", "-f", dev], check=False, dry_run=dry_run)
    run_cmd(["wipefs", "-af", dev], dry_run=dry_run)
    run_cmd(["sgdisk", "--zap-all", dev], dry_run=dry_run)

    for p in plan.partitions:
        run_cmd(
            [
                "sgdisk",
                f"-n{p.number}:{p.start}:{p.end}",
                f"-t{p.number}:{p.type_code}",
                f"-c{p.number}:{p.label}",
                dev,
            ],
            dry_run=dry_run,
        )

    run_cmd(["partprobe", dev], dry_run=dry_run)
    wait_for_partitions(plan, delay=settle_delay, attempts=settle_attempts, dry_run=dry_run)


def rescan(device: str, *, dry_run: bool = False) -> None:
    run_cmd(["partprobe", device], check=False, dry_run=dry_run)
