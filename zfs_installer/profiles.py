from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConfigurationError
from .lib.partitioning import LayoutPolicy, PartitionRequest
from .lib.zfs import DatasetSpec

DEFAULT_PROFILE = "raidz-mirror"

SIZE_REMAINDER = "remainder"
SIZE_SWAP = "swap"


@dataclass(frozen=True)
class PartitionTemplate:
    role: str  # efi|boot|swap|pool
    size_mib: str  # integer MiB, "swap" or "remainder"
    type_code: str
    label: str

    def resolve_size(self, swap_size_gib: int) -> Optional[int]:
        """MiB for this partition, None for the remainder."""

        if self.size_mib == SIZE_REMAINDER:
            return None
        if self.size_mib == SIZE_SWAP:
            return swap_size_gib * 1024
        return int(self.size_mib)


@dataclass(frozen=True)
class ArrayTemplate:
    name: str
    level: str  # mirror|stripe
    role: str
    boot_critical: bool = False


@dataclass(frozen=True)
class EncryptionTemplate:
    roles: Tuple[str, ...]
    persistent_roles: Tuple[str, ...]
    cipher: Dict[str, str]


@dataclass(frozen=True)
class PoolTemplate:
    name: Optional[str]
    vdev: str  # raidz1|mirror|stripe
    role: str
    options: Dict[str, str]
    fs_options: Dict[str, str]
    properties: Dict[str, str] = field(default_factory=dict)

    def root_mountpoint(self, pool: str) -> str:
        """Mountpoint the top-level datasets inherit."""

        return self.fs_options.get("mountpoint", f"/{pool}")


@dataclass(frozen=True)
class VolumeTemplate:
    role: str
    fstype: str  # vfat|ext4|swap
    label: str
    mountpoint: str
    options: str
    passno: int


@dataclass(frozen=True)
class LayoutProfile:
    name: str
    description: str
    disk_count: int
    partitions: List[List[PartitionTemplate]]
    arrays: List[ArrayTemplate]
    encryption: Optional[EncryptionTemplate]
    pool: PoolTemplate
    datasets: List[DatasetSpec]
    volumes: Dict[str, VolumeTemplate]

    @property
    def root_dataset(self) -> DatasetSpec:
        for ds in self.datasets:
            if ds.mountpoint == "/":
                return ds
        raise ConfigurationError(f"Profile {self.name} has no dataset mounted at /")

    def layout_policy(self, *, swap_size_gib: int, alignment_bytes: int = 4096) -> LayoutPolicy:
        return LayoutPolicy(
            disks=[
                [
                    PartitionRequest(
                        role=t.role,
                        size_mib=t.resolve_size(swap_size_gib),
                        type_code=t.type_code,
                        label=t.label,
                    )
                    for t in parts
                ]
                for parts in self.partitions
            ],
            alignment_bytes=alignment_bytes,
        )


def _profiles_dir() -> Path:
    return Path(__file__).resolve().parent / "profiles"


def available_profiles() -> List[str]:
    return sorted(p.stem for p in _profiles_dir().glob("*.yaml"))


def _prop(value: Any) -> str:
    # YAML 1.1 reads bare on/off as booleans.
    if isinstance(value, bool):
        return "on" if value else "off"
    return str(value)


def _props(raw: Any) -> Dict[str, str]:
    return {str(k): _prop(v) for k, v in (raw or {}).items()}


def _require(data: Dict[str, Any], key: str, where: str) -> Any:
    if key not in data:
        raise ConfigurationError(f"{where}: missing key {key!r}")
    return data[key]


def parse_profile(data: Dict[str, Any]) -> LayoutProfile:
    name = str(_require(data, "name", "profile"))
    where = f"profile {name}"

    disk_count = int(_require(data, "disks", where))
    partitions: List[List[PartitionTemplate]] = []
    for disk_parts in _require(data, "partitions", where):
        partitions.append(
            [
                PartitionTemplate(
                    role=str(p["role"]),
                    size_mib=str(p["size_mib"]),
                    type_code=str(p["type"]),
                    label=str(p["label"]),
                )
                for p in disk_parts
            ]
        )
    if len(partitions) != disk_count:
        raise ConfigurationError(
            f"{where}: {len(partitions)} partition layouts for {disk_count} disks"
        )
    for disk_parts in partitions:
        for tmpl in disk_parts[:-1]:
            if tmpl.size_mib == SIZE_REMAINDER:
                raise ConfigurationError(f"{where}: only the last partition may take the remainder")

    arrays = [
        ArrayTemplate(
            name=str(a["name"]),
            level=str(a["level"]),
            role=str(a["role"]),
            boot_critical=bool(a.get("boot_critical", False)),
        )
        for a in data.get("arrays") or []
    ]

    encryption = None
    enc = data.get("encryption")
    if enc:
        encryption = EncryptionTemplate(
            roles=tuple(enc.get("roles") or ()),
            persistent_roles=tuple(enc.get("persistent_roles") or ()),
            cipher=_props(enc.get("cipher")),
        )

    pool_raw = _require(data, "pool", where)
    pool = PoolTemplate(
        name=pool_raw.get("name"),
        vdev=str(pool_raw.get("vdev", "stripe")),
        role=str(pool_raw.get("role", "pool")),
        options=_props(pool_raw.get("options")),
        fs_options=_props(pool_raw.get("fs_options")),
        properties=_props(pool_raw.get("properties")),
    )

    datasets = [
        DatasetSpec(
            name=str(d["name"]),
            mountpoint=str(d["mountpoint"]) if "mountpoint" in d else None,
            canmount=_prop(d["canmount"]) if "canmount" in d else None,
            properties=_props(d.get("properties")),
        )
        for d in _require(data, "datasets", where)
    ]

    volumes = {
        role: VolumeTemplate(
            role=role,
            fstype=str(v["fstype"]),
            label=str(v.get("label", role)),
            mountpoint=str(v.get("mountpoint", "none")),
            options=str(v.get("options", "defaults")),
            passno=int(v.get("passno", 0)),
        )
        for role, v in (data.get("volumes") or {}).items()
    }

    if not any(ds.mountpoint == "/" for ds in datasets):
        raise ConfigurationError(f"{where}: no dataset mounted at /")

    return LayoutProfile(
        name=name,
        description=str(data.get("description", "")),
        disk_count=disk_count,
        partitions=partitions,
        arrays=arrays,
        encryption=encryption,
        pool=pool,
        datasets=datasets,
        volumes=volumes,
    )


def load_profile(profile_id: str) -> LayoutProfile:
    try:
        import yaml  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError("PyYAML required to load layout profiles") from e

    p = _profiles_dir() / f"{profile_id}.yaml"
    if not p.exists():
        raise ConfigurationError(
            f"Unknown profile {profile_id!r} (available: {', '.join(available_profiles())})"
        )
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Profile must be a mapping/dict: {p}")
    return parse_profile(data)
