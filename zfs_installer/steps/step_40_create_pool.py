from __future__ import annotations

import logging
from functools import partial

from ..context import ProvisioningContext
from ..lib import zfs

logger = logging.getLogger(__name__)


class CreatePoolStep:
    step_id = "40_create_pool"

    def run(self, ctx: ProvisioningContext) -> None:
        dry_run = ctx.dry_run
        tmpl = ctx.profile.pool
        name = ctx.pool_name or ctx.config.hostname

        spec = zfs.PoolSpec(
            name=name,
            vdev=tmpl.vdev,
            devices=tuple(ctx.volumes.get(tmpl.role) or ()),
            altroot=ctx.install_root,
            options=dict(tmpl.options),
            fs_options=dict(tmpl.fs_options),
            properties=dict(tmpl.properties),
        )
        spec.validate()

        zfs.generate_hostid(dry_run=dry_run)
        zfs.create_pool(spec, dry_run=dry_run)
        ctx.pool_name = name
        ctx.pool_created = True
        ctx.register(f"export pool {name}", partial(zfs.export_if_imported, name, dry_run=dry_run))

        # The pool must not remember the live system's root as its mount base.
        zfs.export_pool(name, dry_run=dry_run)
        zfs.import_pool(name, ctx.install_root, dry_run=dry_run)
        logger.info("Pool %s imported at %s", name, ctx.install_root)
