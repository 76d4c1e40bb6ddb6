from __future__ import annotations

import logging
from functools import partial

from ..context import ProvisioningContext
from ..errors import ConfigurationError
from ..lib import block
from ..lib.mounts import MountEntry

logger = logging.getLogger(__name__)


def volume_device(ctx: ProvisioningContext, role: str) -> str:
    devices = ctx.volumes.get(role) or []
    if len(devices) != 1:
        raise ConfigurationError(
            f"Role {role!r} must resolve to exactly one device, got {devices or 'none'}"
        )
    return devices[0]


class MountBootStep:
    step_id = "50_mount_boot"

    def run(self, ctx: ProvisioningContext) -> None:
        dry_run = ctx.dry_run
        volumes = ctx.profile.volumes
        root = ctx.install_root.rstrip("/")

        for role, tmpl in volumes.items():
            block.format_volume(volume_device(ctx, role), tmpl.fstype, tmpl.label, dry_run=dry_run)

        # /boot before /boot/efi.
        mounted = sorted(
            (t for t in volumes.values() if t.fstype != "swap" and t.mountpoint.startswith("/")),
            key=lambda t: t.mountpoint.count("/"),
        )
        for tmpl in mounted:
            ctx.boot_mounts.add(
                MountEntry(
                    source=volume_device(ctx, tmpl.role),
                    target=root + tmpl.mountpoint,
                    fstype=tmpl.fstype,
                )
            )

        def registered(entry: MountEntry) -> None:
            ctx.register(
                f"unmount {entry.target}",
                partial(ctx.boot_mounts.unmount_entry, entry, dry_run=dry_run),
            )

        ctx.boot_mounts.mount(on_mounted=registered, dry_run=dry_run)
