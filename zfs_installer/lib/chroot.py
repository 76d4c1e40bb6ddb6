from __future__ import annotations

import logging
import shlex
from typing import List, Sequence

from .command import run_cmd

logger = logging.getLogger(__name__)

UNSHARE = ["unshare", "--mount", "--fork", "--pid", "--kill-child", "--"]


def namespace_script(target_root: str, argv: Sequence[str]) -> str:
    """Shell run inside a private mount namespace: bind, then exec chroot.

    The binds die with the namespace, so nothing under target_root can keep
    the pool busy once the command exits.
    """

    root = shlex.quote(target_root.rstrip("/"))
    lines = [
        "set -e",
        f"mount --rbind /dev {root}/dev && mount --make-rslave {root}/dev",
        f"mount -t proc proc {root}/proc",
        f"mount --rbind /sys {root}/sys && mount --make-rslave {root}/sys",
        f"mount --rbind /run {root}/run && mount --make-rslave {root}/run",
        "exec chroot " + root + " " + " ".join(shlex.quote(a) for a in argv),
    ]
    return "\n".join(lines) + "\n"


def chroot_argv(target_root: str, argv: Sequence[str], *, isolate: bool) -> List[str]:
    if isolate:
        return [*UNSHARE, "/bin/sh", "-c", namespace_script(target_root, argv)]
    return ["chroot", target_root, *argv]


def chroot_cmd(
    target_root: str,
    argv: Sequence[str],
    *,
    isolate: bool = True,
    interactive: bool = False,
    dry_run: bool = False,
) -> None:
    """Run a command inside target root.

    Without isolation the caller owns the virtual filesystem binds.
    """

    logger.info("Running in %s (isolated=%s): %s", target_root, isolate, " ".join(argv))
    run_cmd(chroot_argv(target_root, argv, isolate=isolate), interactive=interactive, dry_run=dry_run)
