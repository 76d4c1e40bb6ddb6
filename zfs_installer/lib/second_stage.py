from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Dict, Optional, Tuple

from ..errors import ConfigurationError
from .chroot import chroot_cmd

logger = logging.getLogger(__name__)

SCRIPT_PATH_IN_TARGET = "/tmp/zfs-installer-second-stage.sh"


class ScriptTemplate(Template):
    """@@NAME@@ placeholders; @@@@ is a literal @@."""

    delimiter = "@@"
    pattern = r"""
    @@(?:
      (?P<escaped>@@)                 |
      (?P<named>[A-Z][A-Z0-9_]*)@@    |
      (?P<braced>(?!x)x)              |
      (?P<invalid>)
    )
    """
    flags = 0


@dataclass(frozen=True)
class SecondStageParams:
    pool_name: str
    root_dataset: str
    hostname: str
    username: str
    efi_disk: str
    efi_part: int
    bootloader_id: str = "ubuntu"
    password_hash: str = ""
    interactive: bool = True
    mdadm_enabled: bool = False
    crypt_enabled: bool = False
    extra_packages: Tuple[str, ...] = field(default_factory=tuple)

    def tokens(self) -> Dict[str, str]:
        """Shell-quoted values, safe to drop into the script unquoted."""

        values = {
            "POOLNAME": self.pool_name,
            "ROOT_DATASET": self.root_dataset,
            "HOSTNAME": self.hostname,
            "USERNAME": self.username,
            "EFI_DISK": self.efi_disk,
            "EFI_PART": str(self.efi_part),
            "BOOTLOADER_ID": self.bootloader_id,
            "PASSWORD_HASH": self.password_hash,
            "INTERACTIVE": "1" if self.interactive else "0",
            "MDADM_ENABLED": "1" if self.mdadm_enabled else "0",
            "CRYPT_ENABLED": "1" if self.crypt_enabled else "0",
            "EXTRA_PACKAGES": " ".join(self.extra_packages),
        }
        return {k: shlex.quote(v) for k, v in values.items()}


def default_template_path() -> Path:
    return Path(__file__).resolve().parents[1] / "templates" / "second_stage.sh"


def load_template(path: Optional[Path] = None) -> str:
    return (path or default_template_path()).read_text(encoding="utf-8")


def render(template_text: str, params: SecondStageParams) -> str:
    """Substitute every placeholder; anything unresolved is a ConfigurationError."""

    tmpl = ScriptTemplate(template_text)
    if not tmpl.is_valid():
        raise ConfigurationError("Second-stage template has a malformed @@ placeholder")

    tokens = params.tokens()
    missing = sorted(set(tmpl.get_identifiers()) - set(tokens))
    if missing:
        raise ConfigurationError("Unresolved second-stage tokens: " + ", ".join(missing))
    return tmpl.substitute(tokens)


def script_path(target_root: str) -> Path:
    return Path(target_root.rstrip("/") + SCRIPT_PATH_IN_TARGET)


def remove_script(target_root: str) -> None:
    p = script_path(target_root)
    if p.exists():
        p.unlink()
        logger.info("Removed %s", p)


def execute(
    target_root: str,
    script: str,
    *,
    isolate: bool = True,
    interactive: bool = True,
    dry_run: bool = False,
) -> None:
    """Write the script into the target, run it under chroot, then delete it."""

    p = script_path(target_root)
    if dry_run:
        logger.info("Would write %s (%d bytes) and run it in %s", p, len(script), target_root)
    else:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(script, encoding="utf-8")
        os.chmod(p, 0o700)

    try:
        chroot_cmd(
            target_root,
            ["/bin/bash", SCRIPT_PATH_IN_TARGET],
            isolate=isolate,
            interactive=interactive,
            dry_run=dry_run,
        )
    finally:
        if not dry_run:
            remove_script(target_root)
