from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Paths:
    install_root: str = "/mnt/install"
    report_default: str = "/var/lib/zfs-installer/report.json"
    log_default: str = "/var/log/zfs-installer.log"
    mountinfo: str = "/proc/self/mountinfo"
    mdstat: str = "/proc/mdstat"
    hostid: str = "/etc/hostid"
    resolv_conf: str = "/etc/resolv.conf"
    netplan_dir: str = "/etc/netplan"


PATHS = Paths()

# Live media locations searched for the root filesystem image, in order.
LIVE_SQUASHFS_CANDIDATES = (
    "/cdrom/casper/filesystem.squashfs",
    "/run/live/medium/casper/filesystem.squashfs",
)

REQUIRED_TOOLS = (
    "sgdisk",
    "wipefs",
    "partprobe",
    "blockdev",
    "lsblk",
    "blkid",
    "mdadm",
    "zpool",
    "zfs",
    "chroot",
)
