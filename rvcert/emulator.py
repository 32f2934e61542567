"""
Emulator and debugger process orchestration.

The emulator is started paused with a remote-debug listener on a loopback
port; the debugger is fed a fixed, non-interactive command script over
stdin and its stdout and stderr are captured as one text buffer.

Key invariants:
- The emulator is reaped when the session exits, on every path
- Nothing talks to the listener before it accepts connections (probe mode)
- The debugger session is bounded by run_timeout
"""

from __future__ import annotations

import logging
import signal
import socket
import subprocess
import time
from types import TracebackType

from .config import CertConfig
from .errors import ProcessLaunchError, ProtocolTimeout

logger = logging.getLogger(__name__)

TERMINATE_GRACE = 2.0  # seconds between terminate() and kill()


def emulator_command(config: CertConfig) -> list[str]:
    """Emulator argv: generic virt machine, no display, halted at entry, gdb stub."""
    return [
        config.emulator,
        "-machine", config.machine,
        "-nographic",
        "-kernel", str(config.artifact),
        "-S",
        "-gdb", f"tcp:{config.endpoint}",
    ]


def debugger_command(config: CertConfig) -> list[str]:
    # The artifact gives the debugger symbol and address context.
    return [config.debugger, "--quiet", "--nx", str(config.artifact)]


def debugger_script(config: CertConfig) -> str:
    """Connect, resume to completion, read one giant word, quit."""
    lines = [
        "set pagination off",
        "set confirm off",
        f"target remote {config.endpoint}",
        "continue",
        f"x/gx {config.address_hex}",
        "quit",
    ]
    return "\n".join(lines) + "\n"


def _tail(text: str, lines: int = 5) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


class EmulatorSession:
    """
    Scoped emulator process.

    Usage:
        with EmulatorSession(config) as session:
            session.wait_ready()
            transcript = run_debugger(config)

    The process is terminated and reaped in __exit__ whatever happened
    inside the block, including KeyboardInterrupt.
    """

    def __init__(self, config: CertConfig):
        self.config = config
        self.command = emulator_command(config)
        self.process: subprocess.Popen[bytes] | None = None

    def __enter__(self) -> EmulatorSession:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def start(self) -> None:
        """
        Launch the emulator paused at its entry point.

        Raises:
            ProcessLaunchError: If the executable is missing or not runnable
        """
        logger.info("launching emulator: %s", " ".join(self.command))
        try:
            # stdin detached: with -nographic the emulator would otherwise
            # multiplex our terminal as the guest console.
            self.process = subprocess.Popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise ProcessLaunchError("emulator", self.command, str(e)) from e
        logger.debug("emulator pid %d", self.process.pid)

    def _check_alive(self) -> None:
        assert self.process is not None
        returncode = self.process.poll()
        if returncode is not None:
            raise ProcessLaunchError(
                "emulator",
                self.command,
                f"exited with status {returncode} before accepting debugger connections",
            )

    def wait_ready(self) -> None:
        """
        Block until the remote-debug listener can be reached.

        "delay" readiness sleeps settle_delay unconditionally. "probe"
        readiness attempts a TCP connection every probe_interval and gives
        up after connect_timeout.

        Raises:
            ProcessLaunchError: If the emulator exits while we wait
            ProtocolTimeout: If the listener is not reachable in time
        """
        if self.process is None:
            raise RuntimeError("emulator session not started")

        cfg = self.config
        if cfg.readiness == "delay":
            logger.debug("settling for %.2fs", cfg.settle_delay)
            time.sleep(cfg.settle_delay)
            self._check_alive()
            return

        deadline = time.monotonic() + cfg.connect_timeout
        attempt = 0
        while True:
            attempt += 1
            self._check_alive()
            remaining = deadline - time.monotonic()
            try:
                with socket.create_connection((cfg.host, cfg.port), timeout=max(min(remaining, 1.0), 0.05)):
                    logger.debug("debug listener on %s ready after %d attempt(s)", cfg.endpoint, attempt)
                    return
            except OSError as e:
                logger.debug("probe %d on %s failed: %s", attempt, cfg.endpoint, e)

            if time.monotonic() >= deadline:
                raise ProtocolTimeout(
                    "connect",
                    cfg.connect_timeout,
                    f"no debug listener on {cfg.endpoint} after {attempt} attempt(s)",
                )
            time.sleep(cfg.probe_interval)

    def close(self) -> None:
        """Terminate and reap the emulator. Safe to call more than once."""
        proc = self.process
        if proc is None:
            return
        if proc.poll() is None:
            logger.debug("terminating emulator pid %d", proc.pid)
            proc.terminate()
            try:
                proc.wait(timeout=TERMINATE_GRACE)
            except subprocess.TimeoutExpired:
                logger.warning("emulator pid %d ignored SIGTERM, killing", proc.pid)
                proc.kill()
                proc.wait()
        logger.debug("emulator exited with status %s", proc.returncode)


def run_debugger(config: CertConfig) -> str:
    """
    Drive one scripted debugger session and return its combined output.

    When halt_after is set, the debugger receives SIGINT after that many
    seconds, which stops the target so the remaining script (memory read,
    quit) can run against a program that never halts by itself.

    Raises:
        ProcessLaunchError: If the debugger executable is missing or not runnable
        ProtocolTimeout: If the session does not finish within run_timeout
    """
    command = debugger_command(config)
    script = debugger_script(config)
    logger.info("attaching debugger: %s", " ".join(command))
    logger.debug("debugger script:\n%s", script)

    try:
        proc = subprocess.Popen(
            command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except OSError as e:
        raise ProcessLaunchError("debugger", command, str(e)) from e

    started = time.monotonic()
    try:
        if config.halt_after is not None:
            try:
                output, _ = proc.communicate(script, timeout=config.halt_after)
            except subprocess.TimeoutExpired:
                logger.info("interrupting target after %.1fs", config.halt_after)
                proc.send_signal(signal.SIGINT)
                remaining = config.run_timeout - (time.monotonic() - started)
                output, _ = proc.communicate(timeout=max(remaining, 0.05))
        else:
            output, _ = proc.communicate(script, timeout=config.run_timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        partial, _ = proc.communicate()
        logger.warning("debugger session exceeded %.1fs, killed", config.run_timeout)
        raise ProtocolTimeout(
            "run",
            config.run_timeout,
            f"debugger did not finish; last output: {_tail(partial or '') or '<none>'}",
        ) from None

    if proc.returncode != 0:
        logger.warning("debugger exited with status %d", proc.returncode)
    else:
        logger.debug("debugger exited cleanly")
    return output or ""
