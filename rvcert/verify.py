"""
Verification run: observe one memory cell after deterministic execution.

Orchestrates: identity -> launch -> settle -> attach & drive -> capture
-> decide -> teardown

Strictly sequential, single attempt, no retries. Fatal errors
(IdentityError, ProcessLaunchError, ProtocolTimeout) propagate to the
caller; the emulator is reaped on every path.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .config import CertConfig
from .emulator import EmulatorSession, run_debugger
from .errors import EXIT_MISMATCH, EXIT_PASSED
from .identity import sha256_file
from .transcript import decide, format_word

logger = logging.getLogger(__name__)


class Status(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


@dataclass(frozen=True)
class VerificationOutcome:
    """Result of one verification run. Not persisted unless recorded."""

    status: Status
    transcript: str
    sha256: str
    expected: int
    address: int
    mode: str
    observed: int | None = None
    duration_s: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status is Status.PASSED

    @property
    def exit_code(self) -> int:
        return EXIT_PASSED if self.passed else EXIT_MISMATCH

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "status": self.status.value,
            "sha256": self.sha256,
            "address": f"{self.address:#x}",
            "expected": format_word(self.expected),
            "observed": format_word(self.observed) if self.observed is not None else None,
            "mode": self.mode,
            "duration_s": round(self.duration_s, 3),
            "transcript": self.transcript,
        }


class Verifier:
    """
    Runs the certification protocol for one CertConfig.

    The session factory and debugger driver are injectable so the protocol
    can be exercised against test doubles.
    """

    def __init__(
        self,
        config: CertConfig,
        *,
        session_factory: Callable[[CertConfig], EmulatorSession] = EmulatorSession,
        drive: Callable[[CertConfig], str] = run_debugger,
    ):
        self.config = config
        self.session_factory = session_factory
        self.drive = drive
        self.last_emulator_pid: int | None = None

    def run(self) -> VerificationOutcome:
        cfg = self.config
        started = time.monotonic()

        digest = sha256_file(cfg.artifact)
        logger.info("artifact %s sha256=%s", cfg.artifact_label, digest)

        with self.session_factory(cfg) as session:
            self.last_emulator_pid = session.pid
            session.wait_ready()
            transcript = self.drive(cfg)
            decision = decide(
                transcript,
                cfg.expected_value,
                address=cfg.inspection_address,
                mode=cfg.match_mode,
            )

        outcome = VerificationOutcome(
            status=Status.PASSED if decision.passed else Status.FAILED,
            transcript=transcript,
            sha256=digest,
            expected=cfg.expected_value,
            address=cfg.inspection_address,
            mode=decision.mode,
            observed=decision.observed,
            duration_s=time.monotonic() - started,
        )
        logger.info(
            "verification %s (%s match, %.2fs)",
            outcome.status.value,
            outcome.mode,
            outcome.duration_s,
        )
        return outcome


def verify(config: CertConfig) -> VerificationOutcome:
    """Convenience wrapper: Verifier(config).run()."""
    return Verifier(config).run()
