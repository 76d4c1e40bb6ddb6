from __future__ import annotations

import logging
from functools import partial

from ..context import ProvisioningContext
from ..lib import zfs

logger = logging.getLogger(__name__)


class CreateDatasetsStep:
    step_id = "45_create_datasets"

    def run(self, ctx: ProvisioningContext) -> None:
        pool = ctx.pool_name or ""
        datasets = ctx.profile.datasets
        root_mountpoint = ctx.profile.pool.root_mountpoint(pool)

        ctx.datasets_created = zfs.create_datasets(pool, datasets, dry_run=ctx.dry_run)

        resolved = zfs.effective_mountpoints(datasets, root_mountpoint=root_mountpoint)
        mountpoints = {f"{pool}/{name}": mp for name, mp in resolved.items()}

        def mounted(name: str) -> None:
            ctx.datasets_mounted.append(name)
            target = ctx.install_root.rstrip("/") + mountpoints[name]
            ctx.register(
                f"unmount {name}",
                partial(zfs.unmount_dataset, name, target.rstrip("/") or "/", dry_run=ctx.dry_run),
            )

        zfs.mount_datasets(
            pool,
            datasets,
            root_mountpoint=root_mountpoint,
            on_mounted=mounted,
            dry_run=ctx.dry_run,
        )
        logger.info("Mounted %d datasets under %s", len(ctx.datasets_mounted), ctx.install_root)
