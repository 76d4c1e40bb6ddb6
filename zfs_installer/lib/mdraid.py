from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..errors import AssemblyError, ConfigurationError
from .command import run_cmd, settle
from .env import PATHS

logger = logging.getLogger(__name__)

LEVELS = {"mirror": "1", "stripe": "0"}
MIN_MEMBERS = {"mirror": 2, "stripe": 2}

# Superblock at the end of the member: firmware and GRUB see a plain filesystem.
BOOT_METADATA = "1.0"
DEFAULT_METADATA = "1.2"


@dataclass(frozen=True)
class ArraySpec:
    name: str
    level: str
    metadata: str
    members: Tuple[str, ...]
    bitmap: bool = False

    @property
    def device(self) -> str:
        return f"/dev/md/{self.name}"


@dataclass(frozen=True)
class ArrayHandle:
    spec: ArraySpec
    device: str
    kernel_name: str  # md127 etc., stable after the /dev/md link goes away


def array_spec(name: str, level: str, members: Sequence[str], *, boot_critical: bool = False) -> ArraySpec:
    if level not in LEVELS:
        raise ConfigurationError(f"Unknown array level {level!r} for {name}")
    if len(members) < MIN_MEMBERS[level]:
        raise ConfigurationError(
            f"Array {name} ({level}) needs at least {MIN_MEMBERS[level]} members, got {len(members)}"
        )
    if len(set(members)) != len(members):
        raise ConfigurationError(f"Array {name} lists a member twice: {', '.join(members)}")
    return ArraySpec(
        name=name,
        level=level,
        metadata=BOOT_METADATA if boot_critical else DEFAULT_METADATA,
        members=tuple(members),
        bitmap=level == "mirror",
    )


_MDSTAT_LINE = re.compile(r"^(md\S+)\s*:\s*(\S+)\s+(.*)$")


def active_arrays(mdstat_path: Optional[str] = None) -> Dict[str, List[str]]:
    """md device name -> member kernel names, read from /proc/mdstat."""

    p = Path(mdstat_path or PATHS.mdstat)
    if not p.exists():
        return {}

    arrays: Dict[str, List[str]] = {}
    for line in p.read_text(encoding="utf-8").splitlines():
        m = _MDSTAT_LINE.match(line.strip())
        if not m:
            continue
        members = []
        for token in m.group(3).split():
            if "[" in token:
                members.append(token.split("[", 1)[0])
        arrays[m.group(1)] = members
    return arrays


def _kernel_name(path: str) -> str:
    return os.path.basename(os.path.realpath(path))


_MD_KERNEL_NAME = re.compile(r"^md\d+$")


def resolve_kernel_name(spec: ArraySpec, *, mdstat_path: Optional[str] = None) -> Optional[str]:
    """Kernel name (md127 etc.) of the running array, or None if it cannot be found.

    The /dev/md/<name> link is udev's; when it is missing the array is
    found in /proc/mdstat by its exact member set.
    """

    name = _kernel_name(spec.device)
    if _MD_KERNEL_NAME.match(name):
        return name
    members = sorted(_kernel_name(m) for m in spec.members)
    for md, devs in active_arrays(mdstat_path).items():
        if sorted(devs) == members:
            logger.debug("%s has no udev link yet; found as /dev/%s", spec.device, md)
            return md
    return None


def arrays_over(members: Sequence[str], *, mdstat_path: Optional[str] = None) -> List[str]:
    """Running arrays (kernel names) with any of the members."""

    if not members:
        return []
    wanted = {_kernel_name(m) for m in members}
    return [md for md, devs in active_arrays(mdstat_path).items() if wanted.intersection(devs)]


def purge_stale(members: Sequence[str], *, mdstat_path: Optional[str] = None, dry_run: bool = False) -> List[str]:
    """Stop arrays using any of the members and zero the members' superblocks.

    Returns the md devices that were stopped.
    """

    stopped: List[str] = []
    for md in arrays_over(members, mdstat_path=mdstat_path):
        logger.warning("Stopping stale array /dev/%s", md)
        run_cmd(["mdadm", "--stop", f"/dev/{md}"], dry_run=dry_run)
        stopped.append(f"/dev/{md}")

    for member in members:
        # --examine exits non-zero when there is no superblock to remove.
        examined = run_cmd(["mdadm", "--examine", member], check=False)
        if examined.returncode == 0:
            logger.info("Zeroing stale md superblock on %s", member)
            run_cmd(["mdadm", "--zero-superblock", member], dry_run=dry_run)

    return stopped


def _detail(device: str) -> Dict[str, str]:
    r = run_cmd(["mdadm", "--detail", device])
    fields: Dict[str, str] = {}
    for line in r.stdout.splitlines():
        if " : " in line:
            key, _, value = line.partition(" : ")
            fields[key.strip()] = value.strip()
    return fields


def check_health(handle: ArrayHandle) -> None:
    spec = handle.spec
    fields = _detail(handle.device)
    expected = len(spec.members)

    try:
        raid_devices = int(fields.get("Raid Devices", "-1"))
        active = int(fields.get("Active Devices", "-1"))
    except ValueError as e:
        raise AssemblyError(f"Unreadable mdadm detail for {handle.device}: {fields}") from e

    state = fields.get("State", "")
    if raid_devices != expected or active != expected:
        raise AssemblyError(
            f"Array {spec.name}: expected {expected} members, "
            f"found {raid_devices} raid / {active} active"
        )
    lowered = state.lower()
    if "degraded" in lowered or "failed" in lowered or "inactive" in lowered:
        raise AssemblyError(f"Array {spec.name} is not healthy: {state}")

    logger.info("Array %s healthy (%d members, state=%s)", spec.name, expected, state)


def create(
    spec: ArraySpec,
    *,
    on_created: Optional[Callable[[ArrayHandle], None]] = None,
    settle_delay: float = 2.0,
    dry_run: bool = False,
) -> ArrayHandle:
    """Create the array, then check it came up whole.

    on_created runs before the health check, so a degraded array is still
    torn down by the caller's cleanup.
    """

    argv = [
        "mdadm",
        "--create",
        spec.device,
        f"--level={LEVELS[spec.level]}",
        f"--raid-devices={len(spec.members)}",
        f"--metadata={spec.metadata}",
    ]
    if spec.bitmap:
        argv.append("--bitmap=internal")
    argv += ["--homehost=any", f"--name={spec.name}", "--run", *spec.members]

    logger.info("Creating %s array %s over %s", spec.level, spec.name, ", ".join(spec.members))
    run_cmd(argv, dry_run=dry_run)
    settle(settle_delay, dry_run=dry_run)

    kernel_name = spec.name if dry_run else resolve_kernel_name(spec)
    handle = ArrayHandle(spec=spec, device=spec.device, kernel_name=kernel_name or "")
    if on_created is not None:
        on_created(handle)
    if not dry_run:
        if kernel_name is None:
            raise AssemblyError(
                f"Array {spec.name}: {spec.device} is not an md device and no running array "
                f"has members {', '.join(spec.members)}"
            )
        check_health(handle)
    return handle


def stop(handle: ArrayHandle, *, zero_metadata: bool = False, dry_run: bool = False) -> None:
    run_cmd(["mdadm", "--stop", handle.device], dry_run=dry_run)
    if zero_metadata:
        for member in handle.spec.members:
            run_cmd(["mdadm", "--zero-superblock", member], dry_run=dry_run)


def is_active(handle: ArrayHandle, *, mdstat_path: Optional[str] = None) -> bool:
    """True while the array, or any array over one of its members, is running."""

    if handle.kernel_name in active_arrays(mdstat_path):
        return True
    return bool(arrays_over(handle.spec.members, mdstat_path=mdstat_path))
