from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Mapping, Sequence

from ..errors import ToolInvocationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


def _fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    interactive: bool = False,
    dry_run: bool = False,
) -> CmdResult:
    """Run a command with consistent logging.

    - Always logs the command.
    - interactive passes the terminal through (passphrase prompts, chroot
      scripts); nothing is captured in that mode.
    - dry_run logs but does not execute.
    """

    argv_list = list(argv)
    logger.info("CMD %s", _fmt_argv(argv_list))

    if dry_run:
        return CmdResult(argv=argv_list, returncode=0, stdout="", stderr="")

    try:
        if interactive:
            p = subprocess.run(
                argv_list,
                text=True,
                cwd=cwd,
                env=dict(os.environ, **(env or {})),
            )
        else:
            p = subprocess.run(
                argv_list,
                input=input_text,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=dict(os.environ, **(env or {})),
            )
    except FileNotFoundError as e:
        raise ToolInvocationError(f"Command not found: {argv_list[0]}", argv=argv_list) from e

    stdout = p.stdout or ""
    stderr = p.stderr or ""
    if stdout:
        logger.debug("STDOUT %s", stdout.strip())
    if stderr:
        logger.debug("STDERR %s", stderr.strip())

    if check and p.returncode != 0:
        raise ToolInvocationError(
            f"Command failed ({p.returncode}): {_fmt_argv(argv_list)}\n{stderr}".rstrip(),
            argv=argv_list,
            returncode=p.returncode,
            stderr=stderr,
        )

    return CmdResult(argv=argv_list, returncode=p.returncode, stdout=stdout, stderr=stderr)


def settle(delay: float = 0.0, *, dry_run: bool = False) -> None:
    """Wait for udev to publish device nodes after a table change."""

    if delay > 0 and not dry_run:
        time.sleep(delay)
    run_cmd(["udevadm", "settle"], check=False, dry_run=dry_run)
