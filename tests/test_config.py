import pytest

from zfs_installer.config import InstallConfig, apply_overrides, ensure_defaults, load_config, validate
from zfs_installer.errors import ConfigurationError

BASE = {
    "disks": ["/dev/disk/by-id/a", "/dev/disk/by-id/b", "/dev/disk/by-id/c"],
    "hostname": "precision",
    "username": "me",
}


def test_defaults():
    cfg = load_config(None, dict(BASE))

    assert cfg.profile == "raidz-mirror"
    assert cfg.swap_size_gib == 4
    assert cfg.install_root == "/mnt/install"
    assert cfg.interactive is True
    assert cfg.dry_run is False
    assert cfg.isolate_namespace is True
    assert cfg.rootfs_method == "squashfs"
    assert cfg.alignment_bytes == 4096
    assert cfg.pool_name is None


def test_file_values_are_overridden_by_flags(tmp_path):
    path = tmp_path / "install.yaml"
    path.write_text(
        "hostname: fromfile\n"
        "username: me\n"
        "swap_size_gib: 16\n"
        "disks: [/dev/disk/by-id/x]\n"
        "rootfs:\n"
        "  method: debootstrap\n",
        encoding="utf-8",
    )

    cfg = load_config(str(path), {"hostname": "fromflag", "disks": None, "swap_size_gib": None})

    assert cfg.hostname == "fromflag"
    assert cfg.swap_size_gib == 16
    assert cfg.disks == ["/dev/disk/by-id/x"]
    assert cfg.rootfs_method == "debootstrap"
    assert cfg.release == "questing"


def test_json_config(tmp_path):
    path = tmp_path / "install.json"
    path.write_text('{"hostname": "box", "username": "me", "disks": ["/dev/sda"]}', encoding="utf-8")
    assert load_config(str(path), {}).hostname == "box"


def test_empty_disk_flag_list_does_not_clear_file_disks():
    raw = apply_overrides({"disks": ["/dev/sda"]}, {"disks": []})
    assert raw["disks"] == ["/dev/sda"]


@pytest.mark.parametrize(
    "change, message",
    [
        ({"hostname": None}, "Hostname is required"),
        ({"hostname": "bad_host!"}, "Invalid hostname"),
        ({"username": "Root"}, "Invalid username"),
        ({"disks": []}, "No target disks"),
        ({"swap_size_gib": 0}, "Swap size must be positive"),
        ({"alignment_bytes": 3000}, "power of two"),
        ({"settle_attempts": 0}, "settle_attempts"),
        ({"rootfs": {"method": "tarball"}}, "Unknown rootfs method"),
    ],
)
def test_validation_errors(change, message):
    raw = dict(BASE)
    raw.update(change)
    with pytest.raises(ConfigurationError, match=message):
        validate(InstallConfig(raw=ensure_defaults(raw)))




def test_missing_config_file_is_an_error(tmp_path):
    with pytest.raises(ConfigurationError, match="missing or empty"):
        load_config(str(tmp_path / "nope.yaml"), dict(BASE))


def test_config_file_must_be_a_mapping(tmp_path):
    path = tmp_path / "install.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="Unreadable config file"):
        load_config(str(path), {})
