from __future__ import annotations

import logging
import os

from ..context import ProvisioningContext
from ..errors import ConfigurationError
from ..lib import rootfs
from ..lib.env import LIVE_SQUASHFS_CANDIDATES

logger = logging.getLogger(__name__)


class InstallRootFSStep:
    step_id = "60_install_rootfs"

    def run(self, ctx: ProvisioningContext) -> None:
        cfg = ctx.config
        root = ctx.install_root
        dry_run = ctx.dry_run

        if cfg.rootfs_method == "squashfs":
            image = cfg.squashfs_path
            if not image:
                try:
                    image = rootfs.find_live_squashfs()
                except ConfigurationError:
                    if not dry_run:
                        raise
                    image = LIVE_SQUASHFS_CANDIDATES[0]
            rootfs.extract_squashfs(image, root, dry_run=dry_run)
            rootfs.install_live_kernel(
                root,
                image=os.path.join(os.path.dirname(image), "vmlinuz"),
                dry_run=dry_run,
            )
        else:
            rootfs.debootstrap_rootfs(
                target_root=root,
                release=cfg.release,
                mirror=cfg.mirror,
                dry_run=dry_run,
            )

        rootfs.write_host_identity(root, cfg.hostname, dry_run=dry_run)
        logger.info("Base system installed at %s (%s)", root, cfg.rootfs_method)
