from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from ..context import ProvisioningContext
from ..lib.block import get_uuid
from ..lib.fstab import CrypttabEntry, FstabEntry, render_crypttab, render_fstab, write_table
from .step_50_mount_boot import volume_device

logger = logging.getLogger(__name__)


def _remove_tables(paths: List[Path], *, dry_run: bool) -> None:
    for p in paths:
        if dry_run:
            logger.info("Would remove %s", p)
        elif p.exists():
            p.unlink()


def _keep_tables() -> None:
    logger.info("Boot tables kept in the installed system")


class WriteBootTablesStep:
    step_id = "65_write_boot_tables"

    def run(self, ctx: ProvisioningContext) -> None:
        dry_run = ctx.dry_run
        etc = Path(ctx.install_root) / "etc"

        entries: List[FstabEntry] = []
        for role, tmpl in ctx.profile.volumes.items():
            uuid = get_uuid(volume_device(ctx, role), dry_run=dry_run)
            ctx.uuids[role] = uuid
            entries.append(
                FstabEntry(
                    spec=f"UUID={uuid}",
                    mountpoint=tmpl.mountpoint,
                    fstype=tmpl.fstype,
                    options=tmpl.options,
                    passno=tmpl.passno,
                )
            )

        written = [etc / "fstab"]
        write_table(written[0], render_fstab(entries), dry_run=dry_run)

        mappers = [m for ms in ctx.mappers.values() for m in ms]
        if mappers:
            crypttab = [CrypttabEntry(name=m.name, device=f"UUID={m.uuid}") for m in mappers]
            written.append(etc / "crypttab")
            write_table(written[1], render_crypttab(crypttab), dry_run=dry_run)

        ctx.tables_written = [str(p) for p in written]
        ctx.register(
            "remove boot tables",
            lambda: _remove_tables(written, dry_run=dry_run),
            commit=_keep_tables,
        )
