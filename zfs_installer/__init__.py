"""ZFS-on-root Ubuntu installer.

Partitions the target disks, assembles md arrays for EFI, boot and swap,
optionally encrypts volumes with LUKS, builds the ZFS pool and dataset tree,
installs the base system and finishes it inside a changed root. Every stage
registers its inverse so a failed run leaves no mounts, arrays, mappers or
imported pools behind.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
