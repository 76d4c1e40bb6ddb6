from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Optional, Sequence

from ..errors import ConfigurationError
from .command import run_cmd
from .env import LIVE_SQUASHFS_CANDIDATES, PATHS

logger = logging.getLogger(__name__)

HOSTS_TEMPLATE = """127.0.0.1   localhost
127.0.1.1   {hostname}

# IPv6
::1         localhost ip6-localhost ip6-loopback
ff02::1     ip6-allnodes
ff02::2     ip6-allrouters
"""


def find_live_squashfs(candidates: Sequence[str] = LIVE_SQUASHFS_CANDIDATES) -> str:
    for c in candidates:
        if os.path.isfile(c):
            return c
    raise ConfigurationError(
        "No live root filesystem image found (looked in: " + ", ".join(candidates) + ")"
    )


def extract_squashfs(image: str, target_root: str, *, dry_run: bool = False) -> None:
    logger.info("Extracting %s to %s (this takes a while)", image, target_root)
    run_cmd(["unsquashfs", "-f", "-d", target_root, image], dry_run=dry_run)


def debootstrap_rootfs(*, target_root: str, release: str, mirror: str, dry_run: bool = False) -> None:
    run_cmd(["debootstrap", release, target_root, mirror], dry_run=dry_run)


def _kernel_version(target_root: str) -> str:
    modules = Path(target_root) / "usr/lib/modules"
    versions = sorted(p.name for p in modules.iterdir() if p.is_dir()) if modules.is_dir() else []
    if not versions:
        raise ConfigurationError(f"Could not determine kernel version from {modules}")
    return versions[0]


def install_live_kernel(target_root: str, *, image: Optional[str] = None, dry_run: bool = False) -> None:
    """Copy the live kernel next to its modules; the squashfs ships modules but no vmlinuz."""

    image = image or os.path.join(os.path.dirname(find_live_squashfs()), "vmlinuz")
    if dry_run:
        logger.info("Would install kernel %s into %s/boot", image, target_root)
        return

    version = _kernel_version(target_root)
    boot = Path(target_root) / "boot"
    dest = boot / f"vmlinuz-{version}"
    shutil.copyfile(image, dest)
    for link in ("vmlinuz", "vmlinuz.old"):
        p = boot / link
        if p.is_symlink() or p.exists():
            p.unlink()
        p.symlink_to(dest.name)
    logger.info("Kernel installed: %s", dest)


def write_host_identity(target_root: str, hostname: str, *, dry_run: bool = False) -> None:
    """hostname, hosts, hostid and the live network configuration."""

    root = Path(target_root)
    if dry_run:
        logger.info("Would write hostname=%s and copy hostid/netplan/resolv.conf into %s", hostname, root)
        return

    etc = root / "etc"
    etc.mkdir(parents=True, exist_ok=True)
    (etc / "hostname").write_text(hostname + "\n", encoding="utf-8")
    (etc / "hosts").write_text(HOSTS_TEMPLATE.format(hostname=hostname), encoding="utf-8")

    # The pool was created under this hostid; the installed system must match it.
    shutil.copyfile(PATHS.hostid, etc / "hostid")

    netplan = Path(PATHS.netplan_dir)
    if netplan.is_dir():
        (etc / "netplan").mkdir(exist_ok=True)
        for f in sorted(netplan.glob("*.yaml")):
            shutil.copyfile(f, etc / "netplan" / f.name)

    resolv = etc / "resolv.conf"
    if resolv.is_symlink():
        resolv.unlink()
    shutil.copyfile(PATHS.resolv_conf, resolv)
    logger.info("Host identity written (hostname=%s)", hostname)
