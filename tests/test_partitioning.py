import json

import pytest

from zfs_installer.errors import ConfigurationError, VerificationError
from zfs_installer.lib import partitioning
from zfs_installer.lib.partitioning import LayoutPolicy, PartitionRequest


def _requests(swap_mib=4096):
    return [
        PartitionRequest(role="efi", size_mib=512, type_code="EF00", label="EFI1"),
        PartitionRequest(role="boot", size_mib=2048, type_code="FD00", label="BOOT1"),
        PartitionRequest(role="swap", size_mib=swap_mib, type_code="FD00", label="SWAP1"),
        PartitionRequest(role="pool", size_mib=None, type_code="BF00", label="ZFS1"),
    ]


@pytest.mark.parametrize("sector_size, physical", [(512, 512), (512, 4096), (4096, 4096)])
def test_partitions_start_and_end_on_alignment(disk_factory, sector_size, physical):
    disk = disk_factory("/dev/sda", size_gib=100, sector_size=sector_size, physical=physical)
    [p] = partitioning.plan([disk], LayoutPolicy(disks=[_requests()], alignment_bytes=4096))

    align = 4096 // sector_size
    assert p.alignment_sectors == align
    for spec in p.partitions:
        assert spec.start % align == 0
        assert (spec.end + 1) % align == 0
    assert p.partitions[0].start * sector_size == 1024 * 1024


def test_remainder_stops_before_backup_gpt(disk_factory):
    disk = disk_factory("/dev/sda", size_gib=100)
    [p] = partitioning.plan([disk], LayoutPolicy(disks=[_requests()]))

    last = p.partitions[-1]
    assert last.end == p.last_aligned_sector
    # 33 sectors of backup GPT with 512 byte sectors
    assert last.end <= disk.total_sectors - 34
    assert [s.number for s in p.partitions] == [1, 2, 3, 4]


def test_partitions_are_contiguous_and_disjoint(disk_factory):
    disk = disk_factory("/dev/nvme0n1", size_gib=100)
    [p] = partitioning.plan([disk], LayoutPolicy(disks=[_requests()]))

    for prev, nxt in zip(p.partitions, p.partitions[1:]):
        assert nxt.start == prev.end + 1
    assert p.partitions[1].sectors == 2048 * 1024 * 1024 // 512
    assert p.paths()[0] == "/dev/nvme0n1p1"
    assert p.by_role()["pool"] == "/dev/nvme0n1p4"


def test_layout_that_does_not_fit_is_rejected(disk_factory):
    disk = disk_factory("/dev/sda", size_gib=4)
    with pytest.raises(ConfigurationError, match="does not fit"):
        partitioning.plan([disk], LayoutPolicy(disks=[_requests(swap_mib=8192)]))


def test_disk_count_must_match_policy(disk_factory):
    with pytest.raises(ConfigurationError, match="expects 2 disks"):
        partitioning.plan(
            [disk_factory("/dev/sda")],
            LayoutPolicy(disks=[_requests(), _requests()]),
        )


def test_apply_wipes_before_writing_and_settles(runner, monkeypatch, disk_factory):
    disk = disk_factory("/dev/sda", size_gib=100)
    [p] = partitioning.plan([disk], LayoutPolicy(disks=[_requests()]))
    monkeypatch.setattr(partitioning, "is_block_device", lambda path: True)

    partitioning.apply(p, settle_delay=0, settle_attempts=3)

    tools = [c[0] if c[0] != "sgdisk" else " ".join(c[:2]) for c in runner.calls]
    assert tools[:3] == ["blkdiscard", "wipefs", "sgdisk --zap-all"]
    creates = runner.commands("sgdisk")[1:]
    assert len(creates) == 4
    first = p.partitions[0]
    assert creates[0] == [
        "sgdisk",
        f"-n1:{first.start}:{first.end}",
        "-t1:EF00",
        "-c1:EFI1",
        "/dev/sda",
    ]
    last_create = runner.calls.index(creates[-1])
    assert runner.index("partprobe") > last_create
    assert runner.index("udevadm", "settle") > runner.index("partprobe")


def test_discard_failure_is_tolerated(runner, monkeypatch, disk_factory):
    disk = disk_factory("/dev/sda", size_gib=100)
    [p] = partitioning.plan([disk], LayoutPolicy(disks=[_requests()]))
    monkeypatch.setattr(partitioning, "is_block_device", lambda path: True)
    runner.fail(["blkdiscard"], "BLKDISCARD ioctl failed: Operation not supported")

    partitioning.apply(p, settle_delay=0)

    assert runner.commands("wipefs", "-af", "/dev/sda")


def test_settle_retries_then_fails(runner, monkeypatch, disk_factory):
    disk = disk_factory("/dev/sda", size_gib=100)
    [p] = partitioning.plan([disk], LayoutPolicy(disks=[_requests()]))
    monkeypatch.setattr(partitioning, "is_block_device", lambda path: path != "/dev/sda4")

    with pytest.raises(VerificationError, match="/dev/sda4"):
        partitioning.wait_for_partitions(p, delay=0, attempts=3)

    assert len(runner.commands("udevadm", "settle")) == 3
    assert len(runner.commands("partprobe", "/dev/sda")) == 3


def test_settle_succeeds_once_nodes_appear(runner, monkeypatch, disk_factory):
    disk = disk_factory("/dev/sda", size_gib=100)
    [p] = partitioning.plan([disk], LayoutPolicy(disks=[_requests()]))
    seen = {"n": 0}

    def appears_on_second_look(path):
        if path == "/dev/sda1":
            seen["n"] += 1
        return seen["n"] > 1

    monkeypatch.setattr(partitioning, "is_block_device", appears_on_second_look)

    partitioning.wait_for_partitions(p, delay=0, attempts=5)
    assert len(runner.commands("udevadm", "settle")) == 2


def test_release_holders_walks_deepest_first(runner):
    tree = {
        "blockdevices": [
            {
                "name": "/dev/sda",
                "type": "disk",
                "mountpoints": [None],
                "children": [
                    {
                        "name": "/dev/sda2",
                        "type": "part",
                        "mountpoints": [None],
                        "children": [
                            {"name": "/dev/md127", "type": "raid1", "mountpoints": ["/mnt/old/boot"]}
                        ],
                    },
                    {
                        "name": "/dev/sda3",
                        "type": "part",
                        "mountpoints": [None],
                        "children": [
                            {"name": "/dev/mapper/luks-x", "type": "crypt", "mountpoints": ["[SWAP]"]}
                        ],
                    },
                ],
            }
        ]
    }
    runner.reply(["lsblk"], json.dumps(tree))

    partitioning.release_holders("/dev/sda")

    assert runner.calls[1:] == [
        ["umount", "/mnt/old/boot"],
        ["mdadm", "--stop", "/dev/md127"],
        ["swapoff", "/dev/mapper/luks-x"],
        ["cryptsetup", "close", "/dev/mapper/luks-x"],
    ]
