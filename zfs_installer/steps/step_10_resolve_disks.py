from __future__ import annotations

import logging

from ..context import ProvisioningContext
from ..lib import partitioning, zfs
from ..lib.disks import resolve_disks

logger = logging.getLogger(__name__)


class ResolveDisksStep:
    step_id = "10_resolve_disks"

    def run(self, ctx: ProvisioningContext) -> None:
        cfg = ctx.config
        profile = ctx.profile

        ctx.disks = resolve_disks(cfg.disks)

        # Planning is pure; a layout that does not fit fails here, before any wipe.
        policy = profile.layout_policy(
            swap_size_gib=cfg.swap_size_gib,
            alignment_bytes=cfg.alignment_bytes,
        )
        ctx.plans = partitioning.plan(ctx.disks, policy)
        for plan in ctx.plans:
            for p in plan.partitions:
                logger.info(
                    "Plan %s: %s %s sectors %d-%d type=%s",
                    plan.disk.device,
                    plan.disk.partition_path(p.number),
                    p.label,
                    p.start,
                    p.end,
                    p.type_code,
                )

        ctx.pool_name = cfg.pool_name or profile.pool.name or cfg.hostname
        if ctx.pool_name in zfs.imported_pools():
            logger.warning(
                "A pool named %s is imported; it is destroyed if it lives on the target disks",
                ctx.pool_name,
            )
