from __future__ import annotations

import logging
from functools import partial

from ..context import ProvisioningContext
from ..errors import ConfigurationError
from ..lib import second_stage
from ..lib.mounts import MountEntry, virtual_binds

logger = logging.getLogger(__name__)


def build_params(ctx: ProvisioningContext) -> second_stage.SecondStageParams:
    cfg = ctx.config
    first = ctx.plans[0]
    efi = [p.number for p in first.partitions if p.role == "efi"]
    if not efi:
        raise ConfigurationError(f"No EFI partition planned on {first.disk.device}")

    extra = list(cfg.extra_packages)
    if cfg.rootfs_method == "debootstrap":
        extra.append("linux-image-generic")

    pool = ctx.pool_name or ""
    return second_stage.SecondStageParams(
        pool_name=pool,
        root_dataset=f"{pool}/{ctx.profile.root_dataset.name}",
        hostname=cfg.hostname,
        username=cfg.username,
        efi_disk=first.disk.device,
        efi_part=efi[0],
        bootloader_id=cfg.bootloader_id,
        password_hash=cfg.password_hash,
        interactive=cfg.interactive,
        mdadm_enabled=bool(ctx.arrays),
        crypt_enabled=bool(ctx.mappers),
        extra_packages=tuple(extra),
    )


class SecondStageStep:
    step_id = "70_second_stage"

    def run(self, ctx: ProvisioningContext) -> None:
        cfg = ctx.config
        dry_run = ctx.dry_run

        # Rendering fails on unresolved tokens before anything is mounted.
        script = second_stage.render(second_stage.load_template(), build_params(ctx))

        if not cfg.isolate_namespace:
            for entry in virtual_binds(ctx.install_root):
                ctx.virtual_mounts.add(entry)

            def registered(entry: MountEntry) -> None:
                ctx.register(
                    f"unmount {entry.target}",
                    partial(ctx.virtual_mounts.unmount_entry, entry, dry_run=dry_run),
                )

            ctx.virtual_mounts.mount(on_mounted=registered, dry_run=dry_run)

        second_stage.execute(
            ctx.install_root,
            script,
            isolate=cfg.isolate_namespace,
            interactive=cfg.interactive,
            dry_run=dry_run,
        )
        logger.info("Second stage finished")
