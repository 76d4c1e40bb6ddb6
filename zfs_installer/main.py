from __future__ import annotations

import argparse
import logging
import os
import shutil
from typing import Any, Dict, List, Optional

from rich.prompt import Confirm
from rich.table import Table

from .cleanup import Teardown
from .config import InstallConfig, load_config
from .context import ProvisioningContext
from .errors import ConfigurationError, InstallerError
from .lib.env import REQUIRED_TOOLS
from .lib.zfs import effective_mountpoints
from .logging_utils import console, configure_logging
from .pipeline import PipelineResult, run_pipeline
from .profiles import DEFAULT_PROFILE, LayoutProfile, available_profiles, load_profile
from .state_store import save_report
from .steps import (
    AssembleArraysStep,
    CreateDatasetsStep,
    CreatePoolStep,
    EncryptStep,
    InstallRootFSStep,
    MountBootStep,
    PartitionStep,
    ResolveDisksStep,
    SecondStageStep,
    WriteBootTablesStep,
)

logger = logging.getLogger(__name__)


def build_steps(profile: LayoutProfile):
    steps = [
        ResolveDisksStep(),
        PartitionStep(),
        AssembleArraysStep(),
    ]
    if profile.encryption is not None:
        steps.append(EncryptStep())
    steps += [
        CreatePoolStep(),
        CreateDatasetsStep(),
        MountBootStep(),
        InstallRootFSStep(),
        WriteBootTablesStep(),
        SecondStageStep(),
    ]
    return steps


def required_tools(cfg: InstallConfig, profile: LayoutProfile) -> List[str]:
    tools = list(REQUIRED_TOOLS)
    if profile.encryption is not None:
        tools.append("cryptsetup")
    tools.append("unsquashfs" if cfg.rootfs_method == "squashfs" else "debootstrap")
    if cfg.isolate_namespace:
        tools.append("unshare")
    return tools


def pool_name(cfg: InstallConfig, profile: LayoutProfile) -> str:
    return cfg.pool_name or profile.pool.name or cfg.hostname


def _require_root() -> None:
    if os.geteuid() != 0:
        raise ConfigurationError("zfs-installer must run as root")


def preflight(cfg: InstallConfig, profile: LayoutProfile) -> None:
    """Checks that must pass before anything on disk is touched."""

    _require_root()

    if len(cfg.disks) != profile.disk_count:
        raise ConfigurationError(
            f"Profile {profile.name} needs {profile.disk_count} disk(s), got {len(cfg.disks)}"
        )
    if len(set(cfg.disks)) != len(cfg.disks):
        raise ConfigurationError("The same disk was given more than once")

    missing = [t for t in required_tools(cfg, profile) if shutil.which(t) is None]
    if missing:
        if not cfg.dry_run:
            raise ConfigurationError(f"Missing required tools: {', '.join(missing)}")
        logger.warning("Missing tools (ignored for dry run): %s", ", ".join(missing))


def summary_table(cfg: InstallConfig, profile: LayoutProfile) -> Table:
    pool = pool_name(cfg, profile)
    mountpoints = effective_mountpoints(profile.datasets, root_mountpoint=profile.pool.root_mountpoint(pool))
    table = Table(title="zfs-installer", show_header=False)
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    table.add_row("Profile", profile.name)
    table.add_row("Disks (all data is destroyed)", "\n".join(cfg.disks))
    table.add_row("Arrays", ", ".join(f"{a.name} ({a.level})" for a in profile.arrays) or "none")
    table.add_row(
        "Encryption",
        ", ".join(profile.encryption.roles) if profile.encryption is not None else "none",
    )
    table.add_row("Pool", f"{pool} ({profile.pool.vdev})")
    table.add_row(
        "Datasets",
        "\n".join(f"{pool}/{d.name} -> {mountpoints[d.name]}" for d in profile.datasets),
    )
    table.add_row("Hostname / user", f"{cfg.hostname} / {cfg.username}")
    table.add_row("Swap", f"{cfg.swap_size_gib} GiB")
    table.add_row("Install root", cfg.install_root)
    if cfg.dry_run:
        table.add_row("Mode", "dry run")
    return table


def _banner(ok: bool, message: str) -> None:
    style = "bold green" if ok else "bold red"
    console.rule(f"[{style}]{message}[/{style}]")


def run(cfg: InstallConfig, profile: LayoutProfile) -> PipelineResult:
    """Run the provisioning pipeline and always write the run report."""

    ctx = ProvisioningContext(config=cfg, profile=profile)
    errors: List[Dict[str, Any]] = []
    try:
        result = run_pipeline(ctx=ctx, steps=build_steps(profile))
        logger.info("Ran steps: %s", ", ".join(result.ran_steps))
        return result
    except BaseException as e:
        errors.append({"step": ctx.current_step, "error": str(e) or type(e).__name__})
        raise
    finally:
        report = ctx.report()
        report["dry_run"] = cfg.dry_run
        report["errors"] = errors
        save_report(cfg.report_path, report)


def teardown(cfg: InstallConfig, profile: LayoutProfile) -> List[str]:
    """Clean up after an earlier or killed run; returns the tolerated failures."""

    pool = pool_name(cfg, profile)
    if not pool:
        raise ConfigurationError("Cleanup needs a pool name (--pool-name or --hostname)")
    disks = [os.path.realpath(d) for d in cfg.disks]
    return Teardown(pool=pool, install_root=cfg.install_root, disks=disks, dry_run=cfg.dry_run).run()


def _main_teardown(cfg: InstallConfig) -> int:
    try:
        profile = load_profile(cfg.profile)
        _require_root()
    except InstallerError as e:
        logger.error("%s", e)
        _banner(False, "Preflight failed")
        return 1

    if cfg.interactive and not cfg.dry_run and cfg.disks:
        question = f"Stop arrays and clear md metadata on {', '.join(cfg.disks)}?"
        if not Confirm.ask(question, default=False, console=console):
            logger.info("Cancelled by operator")
            return 0

    try:
        failures = teardown(cfg, profile)
    except InstallerError as e:
        logger.error("%s", e)
        _banner(False, "Cleanup incomplete")
        return 1

    for failure in failures:
        logger.warning("Tolerated: %s", failure)
    _banner(True, "Cleanup complete")
    return 0


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="zfs-installer",
        description="Install Ubuntu on a ZFS root pool over md arrays and optional LUKS.",
    )
    p.add_argument(
        "--disk",
        dest="disks",
        action="append",
        default=None,
        help="Target disk, preferably /dev/disk/by-id/... (repeat for each disk)",
    )
    p.add_argument("--hostname", default=None, help="Hostname of the installed system")
    p.add_argument("--user", dest="username", default=None, help="Login user to create")
    p.add_argument("--swap", dest="swap_size_gib", type=int, default=None, help="Swap size in GiB")
    p.add_argument(
        "--profile",
        default=None,
        help=f"Layout profile (default {DEFAULT_PROFILE}; available: {', '.join(available_profiles())})",
    )
    p.add_argument("--pool-name", default=None, help="Pool name (default: profile, else hostname)")
    p.add_argument("--install-root", default=None, help="Mount point of the new system")
    p.add_argument("--config", default=None, help="Config file (json|yaml)")
    p.add_argument("--key-file", default=None, help="LUKS key file (default: prompt)")
    p.add_argument("--yes", action="store_true", help="Non-interactive: no confirmation, no prompts")
    p.add_argument("--dry-run", action="store_true", help="Log mutating commands without running them")
    p.add_argument(
        "--no-isolate",
        action="store_true",
        help="Bind /dev, /proc, /sys and /run instead of a private mount namespace",
    )
    p.add_argument("--log", dest="log_path", default=None, help="Path to installer log")
    p.add_argument("--report", dest="report_path", default=None, help="Path to run report (json|yaml)")
    p.add_argument(
        "--cleanup",
        action="store_true",
        help="Tear down a previous run (mounts, pool, arrays on --disk) instead of installing",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Show command output on the console")
    return p


def main(argv: Optional[list[str]] = None) -> int:
    p = _parser()
    try:
        args = p.parse_args(argv)
    except SystemExit as e:
        # --help exits 0; usage errors are validation failures.
        return 0 if e.code in (0, None) else 1

    overrides: Dict[str, Any] = {
        "disks": args.disks,
        "hostname": args.hostname,
        "username": args.username,
        "swap_size_gib": args.swap_size_gib,
        "profile": args.profile,
        "pool_name": args.pool_name,
        "install_root": args.install_root,
        "key_file": args.key_file,
        "interactive": False if args.yes else None,
        "dry_run": True if args.dry_run else None,
        "isolate_namespace": False if args.no_isolate else None,
        "log_path": args.log_path,
        "report_path": args.report_path,
    }

    try:
        cfg = load_config(args.config, overrides, teardown=args.cleanup)
    except InstallerError as e:
        _banner(False, f"Invalid configuration: {e}")
        return 1

    configure_logging(log_path=cfg.log_path, level=logging.DEBUG if args.verbose else logging.INFO)

    if args.cleanup:
        return _main_teardown(cfg)

    try:
        profile = load_profile(cfg.profile)
        preflight(cfg, profile)
    except InstallerError as e:
        logger.error("%s", e)
        _banner(False, "Preflight failed")
        return 1

    console.print(summary_table(cfg, profile))
    if cfg.interactive and not cfg.dry_run:
        if not Confirm.ask("Erase the disks above and install?", default=False, console=console):
            logger.info("Cancelled by operator")
            return 0

    try:
        run(cfg, profile)
    except InstallerError as e:
        logger.error("%s", e)
        _banner(False, "Installation failed")
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        _banner(False, "Installation interrupted")
        return 1
    except Exception:
        logger.exception("Installer failed")
        _banner(False, "Installation failed")
        return 1

    _banner(True, "Dry run complete" if cfg.dry_run else "Installation complete")
    return 0
