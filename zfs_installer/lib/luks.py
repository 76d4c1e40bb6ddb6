from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..errors import ToolInvocationError
from .command import run_cmd

logger = logging.getLogger(__name__)

MAPPER_DIR = "/dev/mapper"

PERSISTENT_FLAGS = (
    "--persistent",
    "--allow-discards",
    "--perf-no_read_workqueue",
    "--perf-no_write_workqueue",
)


@dataclass(frozen=True)
class CipherProfile:
    type: str = "luks2"
    cipher: str = "aes-xts-plain64"
    key_size: int = 256
    hash: str = "sha256"
    pbkdf: str = "argon2i"
    iter_time: int = 3000

    @classmethod
    def from_mapping(cls, data: Dict[str, str]) -> "CipherProfile":
        base = cls()
        return cls(
            type=data.get("type", base.type),
            cipher=data.get("cipher", base.cipher),
            key_size=int(data.get("key_size", base.key_size)),
            hash=data.get("hash", base.hash),
            pbkdf=data.get("pbkdf", base.pbkdf),
            iter_time=int(data.get("iter_time", base.iter_time)),
        )

    def format_args(self) -> List[str]:
        return [
            f"--type={self.type}",
            f"--cipher={self.cipher}",
            f"--key-size={self.key_size}",
            f"--hash={self.hash}",
            f"--pbkdf={self.pbkdf}",
            f"--iter-time={self.iter_time}",
        ]


@dataclass(frozen=True)
class EncryptedVolumeSpec:
    role: str
    backing: str
    profile: CipherProfile
    persistent: bool = False


@dataclass(frozen=True)
class MapperHandle:
    name: str
    uuid: str
    backing: str

    @property
    def path(self) -> str:
        return f"{MAPPER_DIR}/{self.name}"


def mapper_name(uuid: str) -> str:
    return f"luks-{uuid}"


def is_open(name: str) -> bool:
    return os.path.exists(f"{MAPPER_DIR}/{name}")


def _key_args(key_file: Optional[str]) -> List[str]:
    return ["--key-file", key_file] if key_file else []


def format(device: str, profile: CipherProfile, *, key_file: Optional[str] = None, dry_run: bool = False) -> None:
    """luksFormat the device. Without a key file the passphrase is read from the terminal."""

    logger.info("Formatting %s as %s (%s)", device, profile.type, profile.cipher)
    argv = ["cryptsetup", "luksFormat", "--batch-mode", *profile.format_args(), *_key_args(key_file)]
    if not key_file:
        argv.append("--verify-passphrase")
    argv.append(device)
    run_cmd(argv, interactive=not key_file, dry_run=dry_run)


def read_uuid(device: str, *, dry_run: bool = False) -> str:
    """UUID of the formatted container; only known once luksFormat has run."""

    if dry_run:
        return f"dry-run-{os.path.basename(device)}"
    r = run_cmd(["cryptsetup", "luksUUID", device])
    uuid = r.stdout.strip()
    if not uuid:
        raise ToolInvocationError(
            f"cryptsetup returned no UUID for {device}",
            argv=r.argv,
            returncode=r.returncode,
            stderr=r.stderr,
        )
    return uuid


def open(device: str, name: str, *, key_file: Optional[str] = None, dry_run: bool = False) -> MapperHandle:
    handle = MapperHandle(name=name, uuid=name.removeprefix("luks-"), backing=device)
    if not dry_run and is_open(name):
        logger.info("Mapper %s already open", name)
        return handle

    run_cmd(
        ["cryptsetup", "open", "--type", "luks", *_key_args(key_file), device, name],
        interactive=not key_file,
        dry_run=dry_run,
    )
    return handle


def refresh_persistent(handle: MapperHandle, *, key_file: Optional[str] = None, dry_run: bool = False) -> None:
    """Store discard and no-workqueue flags in the LUKS2 header."""

    run_cmd(
        ["cryptsetup", "refresh", *PERSISTENT_FLAGS, *_key_args(key_file), handle.name],
        interactive=not key_file,
        dry_run=dry_run,
    )


def format_and_open(
    spec: EncryptedVolumeSpec,
    *,
    key_file: Optional[str] = None,
    on_opened: Optional[Callable[[MapperHandle], None]] = None,
    dry_run: bool = False,
) -> MapperHandle:
    format(spec.backing, spec.profile, key_file=key_file, dry_run=dry_run)
    uuid = read_uuid(spec.backing, dry_run=dry_run)
    handle = open(spec.backing, mapper_name(uuid), key_file=key_file, dry_run=dry_run)
    if on_opened is not None:
        on_opened(handle)
    if spec.persistent:
        refresh_persistent(handle, key_file=key_file, dry_run=dry_run)
    logger.info("Opened %s as %s", spec.backing, handle.path)
    return handle


def close(handle: MapperHandle, *, dry_run: bool = False) -> None:
    if not dry_run and not is_open(handle.name):
        logger.info("Mapper %s already closed", handle.name)
        return
    run_cmd(["cryptsetup", "close", handle.name], dry_run=dry_run)
