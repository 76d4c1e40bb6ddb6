from pathlib import Path

from zfs_installer.lib.fstab import (
    CrypttabEntry,
    FstabEntry,
    render_crypttab,
    render_fstab,
    write_table,
)


def _body(text):
    return [line for line in text.splitlines() if line and not line.startswith("#")]


def test_fstab_lines_are_keyed_by_uuid():
    text = render_fstab(
        [
            FstabEntry("UUID=1111", "/boot", "ext4", "defaults,nofail", passno=1),
            FstabEntry("UUID=2222", "/boot/efi", "vfat", "umask=0077", passno=1),
            FstabEntry("UUID=3333", "none", "swap", "sw"),
        ]
    )

    assert _body(text) == [
        "UUID=1111\t/boot\text4\tdefaults,nofail\t0\t1",
        "UUID=2222\t/boot/efi\tvfat\tumask=0077\t0\t1",
        "UUID=3333\tnone\tswap\tsw\t0\t0",
    ]
    assert text.endswith("\n")


def test_crypttab_defaults():
    text = render_crypttab([CrypttabEntry("luks-abcd", "UUID=abcd")])
    assert _body(text) == ["luks-abcd\tUUID=abcd\tnone\tluks,discard,keyscript=decrypt_keyctl"]


def test_write_table_creates_etc(tmp_path):
    target = tmp_path / "etc" / "fstab"
    write_table(target, "x\n")
    assert target.read_text(encoding="utf-8") == "x\n"


def test_write_table_dry_run_writes_nothing(tmp_path):
    target = Path(tmp_path) / "etc" / "fstab"
    write_table(target, "x\n", dry_run=True)
    assert not target.exists()
