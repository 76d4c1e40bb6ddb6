from __future__ import annotations

import logging
from functools import partial

from ..context import ProvisioningContext
from ..lib import mdraid

logger = logging.getLogger(__name__)


class AssembleArraysStep:
    step_id = "30_assemble_arrays"

    def run(self, ctx: ProvisioningContext) -> None:
        dry_run = ctx.dry_run
        templates = ctx.profile.arrays
        if not templates:
            logger.info("Profile %s uses no arrays", ctx.profile.name)
            return

        specs = [
            mdraid.array_spec(t.name, t.level, ctx.role_devices(t.role), boot_critical=t.boot_critical)
            for t in templates
        ]

        mdraid.purge_stale([m for s in specs for m in s.members], dry_run=dry_run)

        for tmpl, spec in zip(templates, specs):
            handle = mdraid.create(
                spec,
                on_created=partial(self._created, ctx),
                settle_delay=ctx.config.settle_delay,
                dry_run=dry_run,
            )
            ctx.volumes[tmpl.role] = [handle.device]

    @staticmethod
    def _created(ctx: ProvisioningContext, handle: mdraid.ArrayHandle) -> None:
        ctx.arrays[handle.spec.name] = handle
        ctx.register(
            f"stop array {handle.device}",
            partial(mdraid.stop, handle, zero_metadata=True, dry_run=ctx.dry_run),
            commit=partial(mdraid.stop, handle, zero_metadata=False, dry_run=ctx.dry_run),
        )
