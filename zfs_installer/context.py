from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import InstallConfig
from .lib.disks import DiskSpec
from .lib.luks import MapperHandle
from .lib.mdraid import ArrayHandle
from .lib.mounts import MountPlan
from .lib.partitioning import PartitionPlan
from .profiles import LayoutProfile
from .rollback import CleanupController, verify_clean


@dataclass
class ProvisioningContext:
    """Everything one run derives, threaded through every stage."""

    config: InstallConfig
    profile: LayoutProfile
    disks: List[DiskSpec] = field(default_factory=list)
    plans: List[PartitionPlan] = field(default_factory=list)
    arrays: Dict[str, ArrayHandle] = field(default_factory=dict)
    mappers: Dict[str, List[MapperHandle]] = field(default_factory=dict)
    # role -> block devices in their final form (partition, array or mapper)
    volumes: Dict[str, List[str]] = field(default_factory=dict)
    pool_name: Optional[str] = None
    pool_created: bool = False
    datasets_created: List[str] = field(default_factory=list)
    datasets_mounted: List[str] = field(default_factory=list)
    boot_mounts: MountPlan = field(default_factory=MountPlan)
    virtual_mounts: MountPlan = field(default_factory=MountPlan)
    uuids: Dict[str, str] = field(default_factory=dict)
    tables_written: List[str] = field(default_factory=list)
    current_step: Optional[str] = None
    cleanup: CleanupController = field(init=False)

    def __post_init__(self) -> None:
        self.cleanup = CleanupController(self.verify, dry_run=self.config.dry_run)

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    @property
    def install_root(self) -> str:
        return self.config.install_root.rstrip("/") or "/"

    def register(
        self,
        description: str,
        undo: Callable[[], None],
        commit: Optional[Callable[[], None]] = None,
    ) -> None:
        self.cleanup.register(self.current_step or "unknown", description, undo, commit)

    def role_devices(self, role: str) -> List[str]:
        """Partitions carrying a role, in disk order."""

        return [plan.by_role()[role] for plan in self.plans if role in plan.by_role()]

    def verify(self) -> List[str]:
        return verify_clean(
            install_root=self.install_root,
            arrays=list(self.arrays.values()),
            mappers=[m for ms in self.mappers.values() for m in ms],
            pool_name=self.pool_name if self.pool_created else None,
        )

    def report(self) -> Dict[str, Any]:
        return {
            "profile": self.profile.name,
            "disks": [
                {"identifier": d.identifier, "device": d.device, "scheme": d.scheme.name}
                for d in self.disks
            ],
            "partitions": {
                plan.disk.device: [
                    {"number": p.number, "start": p.start, "end": p.end, "label": p.label, "role": p.role}
                    for p in plan.partitions
                ]
                for plan in self.plans
            },
            "arrays": {name: h.device for name, h in self.arrays.items()},
            "mappers": {role: [m.name for m in ms] for role, ms in self.mappers.items()},
            "pool": self.pool_name,
            "datasets": list(self.datasets_created),
            "uuids": dict(self.uuids),
            "cleanup": {
                "outcome": self.cleanup.outcome,
                "executed": list(self.cleanup.executed),
                "failures": list(self.cleanup.failures),
                "findings": list(self.cleanup.findings),
            },
        }
