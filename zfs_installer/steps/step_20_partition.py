from __future__ import annotations

import logging
from functools import partial

from ..context import ProvisioningContext
from ..lib import partitioning, zfs

logger = logging.getLogger(__name__)


class PartitionStep:
    step_id = "20_partition"

    def run(self, ctx: ProvisioningContext) -> None:
        cfg = ctx.config
        dry_run = ctx.dry_run

        # A pool imported from a previous attempt holds its vdevs open.
        stacked = [dev.name for disk in ctx.disks for dev in partitioning.stacked_devices(disk.device)]
        for pool in zfs.pools_using(stacked):
            zfs.destroy(pool, dry_run=dry_run)
        for disk in ctx.disks:
            partitioning.release_holders(disk.device, dry_run=dry_run)

        for plan in ctx.plans:
            partitioning.apply(
                plan,
                settle_delay=cfg.settle_delay,
                settle_attempts=cfg.settle_attempts,
                dry_run=dry_run,
            )
            device = plan.disk.device
            ctx.register(
                f"rescan partition table of {device}",
                partial(partitioning.rescan, device, dry_run=dry_run),
            )

        roles = []
        for plan in ctx.plans:
            for p in plan.partitions:
                if p.role not in roles:
                    roles.append(p.role)
        ctx.volumes = {role: ctx.role_devices(role) for role in roles}
        logger.info("Partitioned %d disks", len(ctx.plans))
