from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError
from .lib.env import PATHS
from .profiles import DEFAULT_PROFILE
from .state_store import load_document

# Linux hostname label and the Debian adduser default NAME_REGEX.
_HOSTNAME_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_RE = re.compile(r"^[a-z][-a-z0-9_]*$")
ROOTFS_METHODS = {"squashfs", "debootstrap"}


def ensure_defaults(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Fill defaults without overriding user values."""

    raw.setdefault("disks", [])
    raw.setdefault("hostname", None)
    raw.setdefault("username", None)
    raw.setdefault("swap_size_gib", 4)
    raw.setdefault("profile", DEFAULT_PROFILE)
    raw.setdefault("pool_name", None)
    raw.setdefault("install_root", PATHS.install_root)
    raw.setdefault("interactive", True)
    raw.setdefault("dry_run", False)
    raw.setdefault("key_file", None)
    raw.setdefault("password_hash", None)
    raw.setdefault("alignment_bytes", 4096)
    raw.setdefault("settle_delay", 2.0)
    raw.setdefault("settle_attempts", 5)
    raw.setdefault("isolate_namespace", True)
    raw.setdefault("bootloader_id", "ubuntu")
    raw.setdefault("extra_packages", [])
    raw.setdefault("log_path", PATHS.log_default)
    raw.setdefault("report_path", PATHS.report_default)

    rootfs = raw.setdefault("rootfs", {})
    rootfs.setdefault("method", "squashfs")
    rootfs.setdefault("squashfs_path", None)
    rootfs.setdefault("release", "questing")
    rootfs.setdefault("mirror", "http://archive.ubuntu.com/ubuntu")
    return raw


def apply_overrides(raw: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """CLI values win over the file; None means the flag was not given."""

    for key, value in overrides.items():
        if value is None:
            continue
        if key == "disks" and not value:
            continue
        raw[key] = value
    return raw


@dataclass(frozen=True)
class InstallConfig:
    raw: Dict[str, Any]

    @property
    def disks(self) -> List[str]:
        return [str(d) for d in self.raw.get("disks") or []]

    @property
    def hostname(self) -> str:
        return str(self.raw.get("hostname") or "")

    @property
    def username(self) -> str:
        return str(self.raw.get("username") or "")

    @property
    def swap_size_gib(self) -> int:
        return int(self.raw.get("swap_size_gib", 4))

    @property
    def profile(self) -> str:
        return str(self.raw.get("profile") or DEFAULT_PROFILE)

    @property
    def pool_name(self) -> Optional[str]:
        return self.raw.get("pool_name") or None

    @property
    def install_root(self) -> str:
        return str(self.raw.get("install_root") or PATHS.install_root)

    @property
    def interactive(self) -> bool:
        return bool(self.raw.get("interactive", True))

    @property
    def dry_run(self) -> bool:
        return bool(self.raw.get("dry_run", False))

    @property
    def key_file(self) -> Optional[str]:
        return self.raw.get("key_file") or None

    @property
    def password_hash(self) -> str:
        return str(self.raw.get("password_hash") or "")

    @property
    def alignment_bytes(self) -> int:
        return int(self.raw.get("alignment_bytes", 4096))

    @property
    def settle_delay(self) -> float:
        return float(self.raw.get("settle_delay", 2.0))

    @property
    def settle_attempts(self) -> int:
        return int(self.raw.get("settle_attempts", 5))

    @property
    def isolate_namespace(self) -> bool:
        return bool(self.raw.get("isolate_namespace", True))

    @property
    def bootloader_id(self) -> str:
        return str(self.raw.get("bootloader_id") or "ubuntu")

    @property
    def extra_packages(self) -> List[str]:
        return [str(p) for p in self.raw.get("extra_packages") or []]

    @property
    def rootfs_method(self) -> str:
        return str((self.raw.get("rootfs") or {}).get("method") or "squashfs")

    @property
    def squashfs_path(self) -> Optional[str]:
        return (self.raw.get("rootfs") or {}).get("squashfs_path") or None

    @property
    def release(self) -> str:
        return str((self.raw.get("rootfs") or {}).get("release") or "questing")

    @property
    def mirror(self) -> str:
        return str((self.raw.get("rootfs") or {}).get("mirror") or "http://archive.ubuntu.com/ubuntu")

    @property
    def log_path(self) -> str:
        return str(self.raw.get("log_path") or PATHS.log_default)

    @property
    def report_path(self) -> str:
        return str(self.raw.get("report_path") or PATHS.report_default)


def validate(cfg: InstallConfig, *, teardown: bool = False) -> InstallConfig:
    """Check the settings an install needs; a teardown needs none of the target identity."""

    if not isinstance(cfg.raw.get("disks"), list):
        raise ConfigurationError("disks must be a list")
    if not cfg.disks and not teardown:
        raise ConfigurationError("No target disks given (--disk)")
    if not cfg.hostname and not teardown:
        raise ConfigurationError("Hostname is required (--hostname)")
    if cfg.hostname and not _HOSTNAME_RE.match(cfg.hostname):
        raise ConfigurationError(f"Invalid hostname: {cfg.hostname!r}")
    if not cfg.username and not teardown:
        raise ConfigurationError("Username is required (--user)")
    if cfg.username and not _USERNAME_RE.match(cfg.username):
        raise ConfigurationError(f"Invalid username: {cfg.username!r}")

    try:
        swap = cfg.swap_size_gib
        alignment = cfg.alignment_bytes
        attempts = cfg.settle_attempts
        delay = cfg.settle_delay
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}") from e
    if swap <= 0:
        raise ConfigurationError(f"Swap size must be positive, got {swap} GiB")
    if alignment <= 0 or alignment & (alignment - 1):
        raise ConfigurationError(f"Alignment must be a power of two, got {alignment}")
    if attempts < 1 or delay < 0:
        raise ConfigurationError("settle_attempts must be at least 1 and settle_delay non-negative")

    if cfg.rootfs_method not in ROOTFS_METHODS:
        raise ConfigurationError(
            f"Unknown rootfs method {cfg.rootfs_method!r} (expected one of {sorted(ROOTFS_METHODS)})"
        )
    return cfg


def load_config(path: Optional[str], overrides: Dict[str, Any], *, teardown: bool = False) -> InstallConfig:
    try:
        raw = load_document(path) if path else {}
    except ValueError as e:
        raise ConfigurationError(f"Unreadable config file {path}: {e}") from e
    if path and not raw:
        raise ConfigurationError(f"Config file {path} is missing or empty")
    raw = ensure_defaults(apply_overrides(raw, overrides))
    return validate(InstallConfig(raw=raw), teardown=teardown)
