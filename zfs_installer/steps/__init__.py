from .step_10_resolve_disks import ResolveDisksStep
from .step_20_partition import PartitionStep
from .step_30_assemble_arrays import AssembleArraysStep
from .step_35_encrypt import EncryptStep
from .step_40_create_pool import CreatePoolStep
from .step_45_create_datasets import CreateDatasetsStep
from .step_50_mount_boot import MountBootStep
from .step_60_install_rootfs import InstallRootFSStep
from .step_65_write_boot_tables import WriteBootTablesStep
from .step_70_second_stage import SecondStageStep

__all__ = [
    "ResolveDisksStep",
    "PartitionStep",
    "AssembleArraysStep",
    "EncryptStep",
    "CreatePoolStep",
    "CreateDatasetsStep",
    "MountBootStep",
    "InstallRootFSStep",
    "WriteBootTablesStep",
    "SecondStageStep",
]
