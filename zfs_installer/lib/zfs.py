from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..errors import ConfigurationError
from .command import run_cmd
from .mounts import unmount_or_escalate

logger = logging.getLogger(__name__)

MIN_DEVICES = {"stripe": 1, "mirror": 2, "raidz1": 2, "raidz2": 3, "raidz3": 4}


@dataclass(frozen=True)
class DatasetSpec:
    name: str  # relative to the pool
    mountpoint: Optional[str] = None  # None inherits from the parent
    canmount: Optional[str] = None
    properties: Dict[str, str] = field(default_factory=dict)

    @property
    def is_container(self) -> bool:
        return self.canmount == "off"

    @property
    def depth(self) -> int:
        return self.name.count("/")

    @property
    def parent(self) -> str:
        return self.name.rpartition("/")[0]

    def create_options(self) -> Dict[str, str]:
        opts: Dict[str, str] = {}
        if self.canmount is not None:
            opts["canmount"] = self.canmount
        if self.mountpoint is not None:
            opts["mountpoint"] = self.mountpoint
        opts.update(self.properties)
        return opts


@dataclass(frozen=True)
class PoolSpec:
    name: str
    vdev: str
    devices: Tuple[str, ...]
    altroot: str
    options: Dict[str, str] = field(default_factory=dict)
    fs_options: Dict[str, str] = field(default_factory=dict)
    properties: Dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.name:
            raise ConfigurationError("Pool name is empty")
        if self.vdev not in MIN_DEVICES:
            raise ConfigurationError(f"Unknown pool redundancy {self.vdev!r}")
        if len(self.devices) < MIN_DEVICES[self.vdev]:
            raise ConfigurationError(
                f"Pool {self.name} ({self.vdev}) needs at least {MIN_DEVICES[self.vdev]} devices, "
                f"got {len(self.devices)}"
            )


def build_create_argv(spec: PoolSpec) -> List[str]:
    argv = ["zpool", "create", "-f"]
    for key, value in spec.options.items():
        argv += ["-o", f"{key}={value}"]
    for key, value in spec.fs_options.items():
        argv += ["-O", f"{key}={value}"]
    argv += ["-R", spec.altroot, spec.name]
    if spec.vdev != "stripe":
        argv.append(spec.vdev)
    argv += list(spec.devices)
    return argv


def imported_pools() -> List[str]:
    r = run_cmd(["zpool", "list", "-H", "-o", "name"])
    return [line.strip() for line in r.stdout.splitlines() if line.strip()]


def pools_using(devices: Sequence[str]) -> List[str]:
    """Imported pools that have any of the given device paths as a vdev."""

    r = run_cmd(["zpool", "list", "-v", "-H", "-P"])
    wanted = {os.path.realpath(d) for d in devices}
    found: List[str] = []
    current: Optional[str] = None
    for line in r.stdout.splitlines():
        if not line.strip():
            continue
        if not line.startswith("\t"):
            current = line.split("\t", 1)[0].strip()
            continue
        dev = line.strip().split("\t", 1)[0]
        if current and os.path.realpath(dev) in wanted and current not in found:
            found.append(current)
    return found


def destroy(name: str, *, dry_run: bool = False) -> None:
    logger.warning("Destroying stale pool %s", name)
    run_cmd(["zpool", "destroy", "-f", name], dry_run=dry_run)


def generate_hostid(*, dry_run: bool = False) -> None:
    # The pool is stamped with this hostid; the target gets a copy of /etc/hostid.
    run_cmd(["zgenhostid", "-f"], dry_run=dry_run)


def create_pool(spec: PoolSpec, *, dry_run: bool = False) -> None:
    spec.validate()
    if spec.name in imported_pools():
        raise ConfigurationError(f"A pool named {spec.name} is already imported from other devices")

    logger.info("Creating pool %s (%s) over %s", spec.name, spec.vdev, ", ".join(spec.devices))
    run_cmd(build_create_argv(spec), dry_run=dry_run)
    for key, value in spec.properties.items():
        run_cmd(["zfs", "set", f"{key}={value}", spec.name], dry_run=dry_run)


def export_pool(name: str, *, dry_run: bool = False) -> None:
    run_cmd(["zpool", "export", name], dry_run=dry_run)


def export_if_imported(name: str, *, dry_run: bool = False) -> None:
    if dry_run or name in imported_pools():
        export_pool(name, dry_run=dry_run)
    else:
        logger.info("Pool %s is not imported", name)


def import_pool(name: str, altroot: str, *, dry_run: bool = False) -> None:
    """Import without mounting; datasets are mounted explicitly in order."""

    run_cmd(["zpool", "import", "-N", "-R", altroot, name], dry_run=dry_run)


def creation_order(datasets: Sequence[DatasetSpec]) -> List[DatasetSpec]:
    """Parents before children; containers before leaves at the same depth."""

    names = {d.name for d in datasets}
    for d in datasets:
        if d.parent and d.parent not in names:
            raise ConfigurationError(f"Dataset {d.name} has no parent {d.parent} in the tree")
    return sorted(datasets, key=lambda d: (d.depth, not d.is_container))


NO_MOUNT = {"none", "legacy"}


def effective_mountpoints(datasets: Sequence[DatasetSpec], *, root_mountpoint: str = "none") -> Dict[str, str]:
    """Mountpoint of every dataset once inheritance is applied, keyed by relative name.

    A dataset without its own mountpoint gets its parent's with its last name
    component appended; top-level datasets inherit from root_mountpoint.
    """

    resolved: Dict[str, str] = {}
    for ds in creation_order(datasets):
        if ds.mountpoint is not None:
            resolved[ds.name] = ds.mountpoint
            continue
        base = resolved[ds.parent] if ds.parent else root_mountpoint
        leaf = ds.name.rpartition("/")[2]
        resolved[ds.name] = base if base in NO_MOUNT else f"{base.rstrip('/')}/{leaf}"
    return resolved


def mount_order(datasets: Sequence[DatasetSpec], *, root_mountpoint: str = "none") -> List[DatasetSpec]:
    mountpoints = effective_mountpoints(datasets, root_mountpoint=root_mountpoint)

    def key(d: DatasetSpec) -> int:
        return len([c for c in mountpoints[d.name].split("/") if c])

    mountable = [d for d in datasets if not d.is_container and mountpoints[d.name] not in NO_MOUNT]
    return sorted(mountable, key=key)


def create_datasets(pool: str, datasets: Sequence[DatasetSpec], *, dry_run: bool = False) -> List[str]:
    created: List[str] = []
    for ds in creation_order(datasets):
        full = f"{pool}/{ds.name}"
        argv = ["zfs", "create", "-u"]
        for key, value in ds.create_options().items():
            argv += ["-o", f"{key}={value}"]
        argv.append(full)
        run_cmd(argv, dry_run=dry_run)
        created.append(full)
    logger.info("Created %d datasets in %s", len(created), pool)
    return created


def mount_datasets(
    pool: str,
    datasets: Sequence[DatasetSpec],
    *,
    root_mountpoint: str = "none",
    on_mounted: Optional[Callable[[str], None]] = None,
    dry_run: bool = False,
) -> List[str]:
    """Mount every mountable dataset, shallowest mountpoint first.

    on_mounted is called right after each mount so the caller can register
    its unmount before the next one is attempted.
    """

    mounted: List[str] = []
    for ds in mount_order(datasets, root_mountpoint=root_mountpoint):
        full = f"{pool}/{ds.name}"
        run_cmd(["zfs", "mount", full], dry_run=dry_run)
        mounted.append(full)
        if on_mounted is not None:
            on_mounted(full)
    return mounted


def unmount_dataset(name: str, target: str, *, dry_run: bool = False) -> None:
    unmount_or_escalate(target, ["zfs", "unmount", name], dry_run=dry_run)


def dataset_mountpoints(pool: str) -> Dict[str, str]:
    """Mountpoint -> dataset for every dataset of the pool with a path mountpoint.

    Under an altroot import the listed mountpoints already carry the altroot.
    An unknown pool yields nothing.
    """

    r = run_cmd(["zfs", "list", "-H", "-o", "name,mountpoint", "-r", pool], check=False)
    if r.returncode != 0:
        logger.info("Pool %s is not imported; no datasets listed", pool)
        return {}
    found: Dict[str, str] = {}
    for line in r.stdout.splitlines():
        name, _, mountpoint = line.partition("\t")
        mountpoint = mountpoint.strip()
        if mountpoint.startswith("/"):
            found[mountpoint.rstrip("/") or "/"] = name.strip()
    return found


SERVICE_UNITS = (
    "zfs-zed.service",
    "zfs-mount.service",
    "zfs-share.service",
    "zfs.target",
    "zfs-import.target",
    "zfs-import-cache.service",
)


def stop_services(*, dry_run: bool = False) -> None:
    """Stop the host's ZFS units so zed and the mount service let go of the pool."""

    for unit in SERVICE_UNITS:
        run_cmd(["systemctl", "stop", unit], check=False, dry_run=dry_run)
