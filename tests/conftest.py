from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from zfs_installer.errors import ToolInvocationError
from zfs_installer.lib import (
    block,
    chroot,
    command,
    disks,
    env,
    luks,
    mdraid,
    mounts,
    partitioning,
    rootfs,
    zfs,
)
from zfs_installer.lib.command import CmdResult

PATCHED_MODULES = (block, chroot, command, disks, luks, mdraid, mounts, partitioning, rootfs, zfs)

Reply = Union[str, CmdResult, Callable[[List[str]], CmdResult]]


class FakeRunner:
    """Stands in for run_cmd everywhere; records argv lists in call order.

    Replies are matched on the longest argv prefix. A prefix registered with
    fail() exits 1, which raises like the real runner when check is on.
    Dry-run calls succeed with no output, as they do for the real runner.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.dry_runs: List[bool] = []
        self._replies: Dict[Tuple[str, ...], Reply] = {}
        self._failures: Dict[Tuple[str, ...], str] = {}

    def reply(self, prefix: Sequence[str], stdout: Reply = "") -> None:
        self._replies[tuple(prefix)] = stdout

    def fail(self, prefix: Sequence[str], stderr: str = "failed") -> None:
        self._failures[tuple(prefix)] = stderr

    @staticmethod
    def _lookup(table: dict, argv: List[str]):
        best: Optional[Tuple[str, ...]] = None
        for prefix in table:
            if tuple(argv[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        return best

    def __call__(self, argv, *, check=True, dry_run=False, **kwargs) -> CmdResult:
        argv = list(argv)
        self.calls.append(argv)
        self.dry_runs.append(dry_run)
        if dry_run:
            return CmdResult(argv=argv, returncode=0, stdout="", stderr="")

        failing = self._lookup(self._failures, argv)
        if failing is not None:
            stderr = self._failures[failing]
            if check:
                raise ToolInvocationError(
                    f"Command failed (1): {' '.join(argv)}", argv=argv, returncode=1, stderr=stderr
                )
            return CmdResult(argv=argv, returncode=1, stdout="", stderr=stderr)

        match = self._lookup(self._replies, argv)
        if match is None:
            return CmdResult(argv=argv, returncode=0, stdout="", stderr="")
        reply = self._replies[match]
        if isinstance(reply, CmdResult):
            return reply
        if callable(reply):
            return reply(argv)
        return CmdResult(argv=argv, returncode=0, stdout=reply, stderr="")

    def commands(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]

    def index(self, *prefix: str) -> int:
        for i, c in enumerate(self.calls):
            if tuple(c[: len(prefix)]) == prefix:
                return i
        raise AssertionError(f"{' '.join(prefix)} was never run; calls: {self.calls}")


@pytest.fixture
def runner(monkeypatch):
    fake = FakeRunner()
    for module in PATCHED_MODULES:
        monkeypatch.setattr(module, "run_cmd", fake)
    monkeypatch.setattr(command.time, "sleep", lambda _s: None)
    return fake


@pytest.fixture
def disk_factory():
    def make(device: str, size_gib: int = 64, sector_size: int = 512, physical: int = 4096):
        return disks.DiskSpec(
            identifier=f"/dev/disk/by-id/test-{device.rsplit('/', 1)[-1]}",
            device=device,
            scheme=disks.PartitionScheme.for_device(device),
            size_bytes=size_gib * 1024 ** 3,
            sector_size=sector_size,
            physical_block_size=physical,
        )

    return make


class HostFiles:
    """Writable stand-ins for /proc/mdstat and /proc/self/mountinfo."""

    def __init__(self, root) -> None:
        self.mdstat = root / "mdstat"
        self.mountinfo = root / "mountinfo"
        self._arrays: Dict[str, List[str]] = {}
        self._mounts: List[str] = []
        self._write()

    def _write(self) -> None:
        lines = ["Personalities : [raid1] [raid0]"]
        for md, members in self._arrays.items():
            devs = " ".join(f"{m}[{i}]" for i, m in enumerate(members))
            lines.append(f"{md} : active raid1 {devs}")
        lines.append("unused devices: <none>")
        self.mdstat.write_text("\n".join(lines) + "\n", encoding="utf-8")
        self.mountinfo.write_text(
            "".join(
                f"{100 + i} 1 0:{50 + i} / {t} rw,relatime shared:{i} - zfs pool rw\n"
                for i, t in enumerate(self._mounts)
            ),
            encoding="utf-8",
        )

    def arrays(self, **arrays: Sequence[str]) -> None:
        self._arrays = {md: list(members) for md, members in arrays.items()}
        self._write()

    def add_array(self, md: str, members: Sequence[str]) -> None:
        self._arrays[md] = list(members)
        self._write()

    def stop_array(self, md: str) -> None:
        self._arrays.pop(md, None)
        self._write()

    def mounted(self, *targets: str) -> None:
        self._mounts = list(targets)
        self._write()

    def mount(self, target: str) -> None:
        self._mounts.append(target)
        self._write()

    def unmount(self, target: str, recursive: bool = False) -> None:
        self._mounts = [
            t for t in self._mounts
            if t != target and not (recursive and t.startswith(target.rstrip("/") + "/"))
        ]
        self._write()

    @property
    def mounts(self) -> List[str]:
        return list(self._mounts)


@pytest.fixture
def host(tmp_path, monkeypatch):
    files_dir = tmp_path / "proc"
    files_dir.mkdir()
    files = HostFiles(files_dir)
    paths = env.Paths(mdstat=str(files.mdstat), mountinfo=str(files.mountinfo))
    monkeypatch.setattr(mdraid, "PATHS", paths)
    monkeypatch.setattr(mounts, "PATHS", paths)
    return files
