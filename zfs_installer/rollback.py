from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from .errors import ResidualStateError, TerminationRequested
from .lib import luks, mdraid, mounts, zfs

logger = logging.getLogger(__name__)

COMMIT = "commit"
ABORT = "abort"

_GUARDED_SIGNALS = (signal.SIGTERM, signal.SIGHUP)
_WALK_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGINT)


@dataclass(frozen=True)
class Inverse:
    stage: str
    description: str
    undo: Callable[[], None]
    # Form used on success; None means the same as undo.
    commit: Optional[Callable[[], None]] = None


class ProvisioningState:
    """Append-only list of stage inverses, consumed exactly once."""

    def __init__(self) -> None:
        self._entries: List[Inverse] = []
        self.consumed = False

    def append(self, inverse: Inverse) -> None:
        if self.consumed:
            raise RuntimeError(f"Cannot register {inverse.stage} after cleanup ran")
        self._entries.append(inverse)

    @property
    def entries(self) -> List[Inverse]:
        return list(self._entries)

    def drain(self) -> List[Inverse]:
        """Entries newest first; the state is empty and closed afterwards."""

        entries = list(reversed(self._entries))
        self._entries.clear()
        self.consumed = True
        return entries


def verify_clean(
    *,
    install_root: str,
    arrays: Sequence[mdraid.ArrayHandle] = (),
    mappers: Sequence[luks.MapperHandle] = (),
    pool_name: Optional[str] = None,
    members: Sequence[str] = (),
) -> List[str]:
    """Live state left behind: mounts under the root, arrays, mappers and the pool.

    members are partitions no running array may still use.
    """

    findings: List[str] = []
    for target in mounts.mounts_under(install_root):
        findings.append(f"still mounted: {target}")
    for handle in arrays:
        if mdraid.is_active(handle):
            findings.append(f"array still active: {handle.device}")
    for md in mdraid.arrays_over(members):
        findings.append(f"array still active: /dev/{md}")
    for mapper in mappers:
        if luks.is_open(mapper.name):
            findings.append(f"mapper still open: {mapper.path}")
    if pool_name and pool_name in zfs.imported_pools():
        findings.append(f"pool still imported: {pool_name}")
    return findings


@contextmanager
def _signals(handler, signals=_GUARDED_SIGNALS) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous: Dict[int, object] = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, handler)
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@contextmanager
def uninterruptible() -> Iterator[None]:
    """Ignore termination signals and Ctrl-C until the block exits."""

    with _signals(signal.SIG_IGN, _WALK_SIGNALS):
        yield


def _raise_termination(signum, frame) -> None:
    raise TerminationRequested(signum)


class CleanupController:
    """Runs registered inverses newest-first on commit or abort, then verifies."""

    def __init__(self, verify: Callable[[], List[str]], *, dry_run: bool = False) -> None:
        self.state = ProvisioningState()
        self._verify = verify
        self.dry_run = dry_run
        self.outcome: Optional[str] = None
        self.executed: List[str] = []
        self.failures: List[str] = []
        self.findings: List[str] = []

    def register(
        self,
        stage: str,
        description: str,
        undo: Callable[[], None],
        commit: Optional[Callable[[], None]] = None,
    ) -> None:
        self.state.append(Inverse(stage=stage, description=description, undo=undo, commit=commit))
        logger.debug("Registered inverse for %s: %s", stage, description)

    @property
    def executed_stages(self) -> List[str]:
        """Stage ids in execution order, each listed once."""

        stages: List[str] = []
        for stage in self.executed:
            if stage not in stages:
                stages.append(stage)
        return stages

    def commit(self) -> None:
        self._transition(COMMIT)

    def abort(self) -> None:
        self._transition(ABORT)

    def _transition(self, mode: str) -> None:
        if self.outcome is not None:
            logger.debug("Cleanup already ran (%s); ignoring %s", self.outcome, mode)
            return
        self.outcome = mode
        logger.info("Cleanup: %s", mode)

        # A second signal must not cut the walk short.
        with uninterruptible():
            for inv in self.state.drain():
                action = inv.commit if (mode == COMMIT and inv.commit is not None) else inv.undo
                logger.info("[%s] %s", inv.stage, inv.description)
                self.executed.append(inv.stage)
                try:
                    action()
                except Exception as e:
                    logger.error("[%s] %s failed: %s", inv.stage, inv.description, e)
                    self.failures.append(f"{inv.stage}: {inv.description}: {e}")

        if self.dry_run:
            logger.info("Dry run: skipping post-cleanup verification")
            return

        self.findings = self._verify()
        if self.findings:
            for f in self.findings:
                logger.error("Residual state: %s", f)
            raise ResidualStateError(self.findings)
        logger.info("Cleanup verified: no residual state")

    @contextmanager
    def guard(self) -> Iterator["CleanupController"]:
        """Commit on normal exit; abort on any exception, signal or interrupt."""

        with _signals(_raise_termination):
            try:
                yield self
            except BaseException as e:
                logger.error("Pipeline failed (%s); rolling back", e)
                try:
                    self.abort()
                except ResidualStateError as residual:
                    raise residual from e
                raise
            else:
                self.commit()
