"""Standalone teardown of an earlier or interrupted installation.

Everything is rediscovered from the host (mountinfo, ``zfs list``, ``lsblk``
and /proc/mdstat), so this also recovers a host whose installer run was
killed before its own cleanup could finish.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Sequence

from .errors import InstallerError, ResidualStateError
from .lib import mdraid, mounts, partitioning, zfs
from .rollback import uninterruptible, verify_clean

logger = logging.getLogger(__name__)


def _deepest_first(targets: Iterable[str]) -> List[str]:
    return sorted(targets, key=lambda t: len([c for c in t.split("/") if c]), reverse=True)


@dataclass
class Teardown:
    pool: str
    install_root: str
    disks: Sequence[str] = ()
    dry_run: bool = False
    failures: List[str] = field(default_factory=list)
    findings: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.install_root = self.install_root.rstrip("/") or "/"

    def _attempt(self, description: str, action: Callable[..., object], *args, **kwargs) -> None:
        logger.info("Teardown: %s", description)
        try:
            action(*args, **kwargs)
        except InstallerError as e:
            logger.error("%s failed: %s", description, e)
            self.failures.append(f"{description}: {e}")

    def _unmount(self, target: str, argv: List[str]) -> None:
        self._attempt(f"unmount {target}", mounts.unmount_or_escalate, target, argv, dry_run=self.dry_run)

    def unmount_virtual(self) -> None:
        mounted = set(mounts.mounts_under(self.install_root))
        for entry in reversed(mounts.virtual_binds(self.install_root)):
            if entry.target in mounted:
                self._unmount(entry.target, ["umount", "-R", entry.target])

    def unmount_foreign(self, datasets: Dict[str, str]) -> None:
        """Mounts under the root that no dataset owns (/boot, /boot/efi), deepest first."""

        virtual = [e.target for e in mounts.virtual_binds(self.install_root)]
        for target in _deepest_first(mounts.mounts_under(self.install_root)):
            if target in datasets or any(target == v or target.startswith(v + "/") for v in virtual):
                continue
            self._unmount(target, ["umount", target])

    def unmount_datasets(self, datasets: Dict[str, str]) -> None:
        mounted = set(mounts.mounts_under(self.install_root))
        for target in _deepest_first(t for t in datasets if t in mounted):
            self._attempt(
                f"unmount {datasets[target]}",
                zfs.unmount_dataset,
                datasets[target],
                target,
                dry_run=self.dry_run,
            )

    def release_disks(self) -> List[str]:
        """Stop arrays and close mappers on the disks, then zero md metadata.

        Returns the partitions that were found on the disks.
        """

        partitions: List[str] = []
        for disk in self.disks:
            try:
                parts = [d.name for d in partitioning.stacked_devices(disk) if d.type == "part"]
            except InstallerError as e:
                logger.error("Cannot list devices on %s: %s", disk, e)
                self.failures.append(f"list {disk}: {e}")
                continue
            partitions += parts
            self._attempt(f"release holders of {disk}", partitioning.release_holders, disk, dry_run=self.dry_run)
            self._attempt(f"clear md metadata on {disk}", mdraid.purge_stale, parts, dry_run=self.dry_run)
        return partitions

    def leftover_mappers(self) -> List[str]:
        leftovers: List[str] = []
        for disk in self.disks:
            for dev in partitioning.stacked_devices(disk):
                if dev.type == "crypt":
                    leftovers.append(f"mapper still open: {dev.name}")
        return leftovers

    def run(self) -> List[str]:
        """Tear everything down, then verify. Returns the failures that were tolerated."""

        logger.info("Tearing down pool %s under %s", self.pool, self.install_root)
        if not self.disks:
            logger.warning("No disks given: arrays, mappers and md metadata are left alone")

        with uninterruptible():
            self.unmount_virtual()
            datasets = zfs.dataset_mountpoints(self.pool)
            self.unmount_foreign(datasets)
            zfs.stop_services(dry_run=self.dry_run)
            self.unmount_datasets(datasets)
            self._attempt(f"export pool {self.pool}", zfs.export_if_imported, self.pool, dry_run=self.dry_run)
            partitions = self.release_disks()

        if self.dry_run:
            logger.info("Dry run: skipping post-teardown verification")
            return self.failures

        self.findings = verify_clean(
            install_root=self.install_root,
            pool_name=self.pool,
            members=partitions,
        )
        self.findings += self.leftover_mappers()
        if self.findings:
            for f in self.findings:
                logger.error("Residual state: %s", f)
            raise ResidualStateError(self.findings)
        logger.info("Teardown verified: host is clean")
        return self.failures
