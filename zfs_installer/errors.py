from __future__ import annotations

from typing import List, Optional, Sequence


class InstallerError(Exception):
    """Base class for every failure the installer reports to the operator."""


class ConfigurationError(InstallerError):
    """Bad or missing input, or an unresolved template token."""


class ToolInvocationError(InstallerError):
    def __init__(
        self,
        message: str,
        *,
        argv: Sequence[str] = (),
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr


class AssemblyError(InstallerError):
    """An array came up with the wrong member count or in a degraded state."""


class VerificationError(InstallerError):
    def __init__(self, message: str, *, holders: str = "") -> None:
        super().__init__(message)
        self.holders = holders


class ResidualStateError(InstallerError):
    """Live state survived a full cleanup; needs operator intervention."""

    def __init__(self, findings: List[str]) -> None:
        super().__init__("Residual state after cleanup: " + "; ".join(findings))
        self.findings = list(findings)


class TerminationRequested(InstallerError):
    def __init__(self, signum: int) -> None:
        super().__init__(f"Terminated by signal {signum}")
        self.signum = signum
