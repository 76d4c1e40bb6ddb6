from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .lib.env import PATHS

DEFAULT_LOG_PATH = PATHS.log_default

console = Console(stderr=True)


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure logging.

    Every command and decision goes to the log file. If the requested path
    cannot be created (read-only live media), a file in the working
    directory is used instead. The console gets colored, severity-tagged
    lines.

    Returns the actual file path being used.
    """

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    if getattr(logger, "_zfs_installer_configured", False):
        return getattr(logger, "_zfs_installer_log_path", log_path)

    chosen_path = log_path
    handlers: list[logging.Handler] = []

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    file_handler: Optional[logging.Handler] = None
    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
    except OSError:
        chosen_path = str(Path.cwd() / "zfs-installer.log")
        file_handler = logging.FileHandler(chosen_path)
    file_handler.setFormatter(fmt)
    # The file keeps command output too.
    file_handler.setLevel(logging.DEBUG)
    handlers.append(file_handler)

    if also_console:
        rich_handler = RichHandler(console=console, show_path=False, markup=False)
        rich_handler.setLevel(level)
        handlers.append(rich_handler)

    for h in handlers:
        logger.addHandler(h)

    setattr(logger, "_zfs_installer_configured", True)
    setattr(logger, "_zfs_installer_log_path", chosen_path)

    logging.getLogger(__name__).info(
        "Logging initialized (requested=%s, actual=%s)", log_path, chosen_path
    )
    return chosen_path
