import json

import pytest

from zfs_installer.cleanup import Teardown
from zfs_installer.errors import ResidualStateError
from zfs_installer.lib import mdraid, zfs
from zfs_installer.lib.command import CmdResult

ROOT = "/mnt/install"

PARTS = {
    "/dev/nvme0n1": ["/dev/nvme0n1p1", "/dev/nvme0n1p2", "/dev/nvme0n1p4"],
    "/dev/nvme1n1": ["/dev/nvme1n1p1", "/dev/nvme1n1p2", "/dev/nvme1n1p4"],
}

ZFS_LIST = (
    "precision\tnone\n"
    "precision/ROOT\tnone\n"
    f"precision/ROOT/ubuntu\t{ROOT}\n"
    f"precision/home\t{ROOT}/home\n"
    "precision/var\tnone\n"
    f"precision/var/log\t{ROOT}/var/log\n"
)


def _ok(argv, stdout="", returncode=0):
    return CmdResult(argv=list(argv), returncode=returncode, stdout=stdout, stderr="")


@pytest.fixture
def leftovers(runner, host):
    """A host left behind by a killed install: binds, boot, datasets, pool and arrays."""

    host.mounted(
        ROOT,
        f"{ROOT}/home",
        f"{ROOT}/var/log",
        f"{ROOT}/boot",
        f"{ROOT}/boot/efi",
        f"{ROOT}/dev",
        f"{ROOT}/dev/pts",
        f"{ROOT}/proc",
        f"{ROOT}/sys",
        f"{ROOT}/run",
    )
    host.arrays(md126=["nvme1n1p1", "nvme0n1p1"], md127=["nvme1n1p2", "nvme0n1p2"])
    imported = {"precision"}
    superblocks = {p for parts in PARTS.values() for p in parts[:2]}
    datasets = {name: mp for name, _, mp in (line.partition("\t") for line in ZFS_LIST.splitlines())}

    def lsblk(argv):
        disk = argv[-1]
        arrays = mdraid.active_arrays()
        children = []
        for part in PARTS[disk]:
            kname = part.rsplit("/", 1)[-1]
            holders = [
                {"name": f"/dev/{md}", "type": "raid1", "mountpoints": [None]}
                for md, members in arrays.items()
                if kname in members
            ]
            children.append({"name": part, "type": "part", "mountpoints": [None], "children": holders})
        tree = {"blockdevices": [{"name": disk, "type": "disk", "mountpoints": [None], "children": children}]}
        return _ok(argv, json.dumps(tree))

    def umount(argv):
        host.unmount(argv[-1], recursive="-R" in argv)
        return _ok(argv)

    def zfs_unmount(argv):
        host.unmount(datasets[argv[-1]])
        return _ok(argv)

    def zfs_list(argv):
        return _ok(argv, ZFS_LIST) if "precision" in imported else _ok(argv, returncode=1)

    def export(argv):
        imported.discard(argv[-1])
        return _ok(argv)

    def stop(argv):
        host.stop_array(argv[-1].rsplit("/", 1)[-1])
        return _ok(argv)

    def examine(argv):
        return _ok(argv, returncode=0 if argv[-1] in superblocks else 1)

    def zero(argv):
        superblocks.discard(argv[-1])
        return _ok(argv)

    runner.reply(["lsblk"], lsblk)
    runner.reply(["umount"], umount)
    runner.reply(["zfs", "unmount"], zfs_unmount)
    runner.reply(["zfs", "list"], zfs_list)
    runner.reply(["zpool", "list", "-H", "-o", "name"], lambda argv: _ok(argv, "\n".join(sorted(imported))))
    runner.reply(["zpool", "export"], export)
    runner.reply(["mdadm", "--stop"], stop)
    runner.reply(["mdadm", "--examine"], examine)
    runner.reply(["mdadm", "--zero-superblock"], zero)
    return imported, superblocks


def test_dataset_mountpoints_keeps_path_mountpoints(runner):
    runner.reply(["zfs", "list"], ZFS_LIST)
    assert zfs.dataset_mountpoints("precision") == {
        ROOT: "precision/ROOT/ubuntu",
        f"{ROOT}/home": "precision/home",
        f"{ROOT}/var/log": "precision/var/log",
    }


def test_teardown_leaves_a_clean_host(runner, host, leftovers):
    imported, superblocks = leftovers

    failures = Teardown(pool="precision", install_root=ROOT, disks=list(PARTS)).run()

    assert failures == []
    assert host.mounts == []
    assert mdraid.active_arrays() == {}
    assert imported == set()
    assert superblocks == set()

    binds = [c[-1] for c in runner.commands("umount", "-R")]
    assert binds == [f"{ROOT}/run", f"{ROOT}/sys", f"{ROOT}/proc", f"{ROOT}/dev"]
    assert runner.index("umount", f"{ROOT}/boot/efi") < runner.index("umount", f"{ROOT}/boot")
    assert runner.index("umount", f"{ROOT}/boot") < runner.index("systemctl", "stop", "zfs-zed.service")
    assert runner.index("systemctl", "stop", "zfs-zed.service") < runner.index("zfs", "unmount")
    unmounted = [c[-1] for c in runner.commands("zfs", "unmount")]
    assert unmounted == ["precision/var/log", "precision/home", "precision/ROOT/ubuntu"]
    assert runner.index("zfs", "unmount", "precision/ROOT/ubuntu") < runner.index("zpool", "export")
    assert runner.index("zpool", "export") < runner.index("mdadm", "--stop")
    assert sorted(c[-1] for c in runner.commands("mdadm", "--stop")) == ["/dev/md126", "/dev/md127"]


def test_busy_mount_is_reported_and_the_walk_goes_on(runner, host, leftovers):
    imported, _ = leftovers
    runner.fail(["umount", f"{ROOT}/boot"], f"umount: {ROOT}/boot: target is busy.")
    runner.reply(["fuser"], f"{ROOT}/boot: root 4242 ..c.. bash\n")

    teardown = Teardown(pool="precision", install_root=ROOT, disks=list(PARTS))
    with pytest.raises(ResidualStateError) as exc:
        teardown.run()

    assert exc.value.findings == [f"still mounted: {ROOT}/boot"]
    assert len(teardown.failures) == 1
    assert runner.commands("fuser", "-vm", f"{ROOT}/boot")
    # Everything after the busy mount still ran.
    assert imported == set()
    assert mdraid.active_arrays() == {}


def test_dry_run_only_reads_host_state(runner, host, leftovers):
    imported, _ = leftovers

    Teardown(pool="precision", install_root=ROOT, disks=list(PARTS), dry_run=True).run()

    assert imported == {"precision"}
    assert len(host.mounts) == 10
    for argv, dry in zip(runner.calls, runner.dry_runs):
        if not dry:
            assert argv[0] == "lsblk" or argv[:2] in (["zfs", "list"], ["mdadm", "--examine"]), argv


def test_without_disks_arrays_are_left_alone(runner, host, leftovers):
    Teardown(pool="precision", install_root=ROOT).run()

    assert host.mounts == []
    assert not runner.commands("mdadm")
    assert len(mdraid.active_arrays()) == 2
