"""
Error taxonomy for certification runs.

Every fatal condition is a CertError subclass carrying the exit code the
CLI maps it to. A verification mismatch is not an error: it is a
VerificationOutcome with status FAILED.
"""

from __future__ import annotations

EXIT_PASSED = 0
EXIT_MISMATCH = 1
EXIT_FATAL = 2
EXIT_TIMEOUT = 3


class CertError(Exception):
    """Base class for fatal certification errors."""

    exit_code: int = EXIT_FATAL


class ConfigError(CertError):
    """Configuration file is missing, malformed, or holds invalid values."""


class IdentityError(CertError):
    """Artifact is missing, unreadable, or a read failed mid-hash."""


class ProcessLaunchError(CertError):
    """Emulator or debugger executable could not be started."""

    def __init__(self, role: str, command: list[str], reason: str):
        self.role = role
        self.command = list(command)
        self.reason = reason
        super().__init__(f"failed to launch {role} ({command[0]}): {reason}")


class ProtocolTimeout(CertError):
    """
    The debug protocol did not complete in time.

    phase is "connect" when the emulator's listener never became reachable,
    "run" when the debugger session (resume + inspect) did not finish.
    """

    exit_code = EXIT_TIMEOUT

    def __init__(self, phase: str, timeout: float, detail: str = ""):
        self.phase = phase
        self.timeout = timeout
        self.detail = detail
        message = f"{phase} phase timed out after {timeout:g}s"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class LedgerWriteError(CertError):
    """Ledger file could not be opened for append or the write failed."""


class LedgerReadError(CertError):
    """Ledger file exists but could not be read or decoded."""
