from __future__ import annotations

import logging
from functools import partial

from ..context import ProvisioningContext
from ..errors import ConfigurationError
from ..lib import luks

logger = logging.getLogger(__name__)


class EncryptStep:
    step_id = "35_encrypt"

    def run(self, ctx: ProvisioningContext) -> None:
        enc = ctx.profile.encryption
        if enc is None:
            logger.info("Profile %s uses no encryption", ctx.profile.name)
            return

        cipher = luks.CipherProfile.from_mapping(enc.cipher)
        for role in enc.roles:
            devices = ctx.volumes.get(role) or []
            if not devices:
                raise ConfigurationError(f"Nothing to encrypt for role {role!r}")

            ctx.mappers[role] = []
            for device in devices:
                spec = luks.EncryptedVolumeSpec(
                    role=role,
                    backing=device,
                    profile=cipher,
                    persistent=role in enc.persistent_roles,
                )
                luks.format_and_open(
                    spec,
                    key_file=ctx.config.key_file,
                    on_opened=partial(self._opened, ctx, role),
                    dry_run=ctx.dry_run,
                )
            ctx.volumes[role] = [m.path for m in ctx.mappers[role]]

    @staticmethod
    def _opened(ctx: ProvisioningContext, role: str, handle: luks.MapperHandle) -> None:
        ctx.mappers[role].append(handle)
        ctx.register(f"close mapper {handle.name}", partial(luks.close, handle, dry_run=ctx.dry_run))
