"""
Tests for emulator and debugger process orchestration.

Uses stub executables (see conftest) that speak just enough of the
protocol: the stub emulator listens on the debug port, the stub debugger
reads the command script from stdin and prints a gdb-like transcript.
"""

from __future__ import annotations

import os
import time
from dataclasses import replace
from pathlib import Path

import pytest

from rvcert.config import CertConfig
from rvcert.emulator import (
    EmulatorSession,
    debugger_command,
    debugger_script,
    emulator_command,
    run_debugger,
)
from rvcert.errors import ProcessLaunchError, ProtocolTimeout

posix_only = pytest.mark.skipif(os.name != "posix", reason="stub executables need POSIX exec and signals")


def _wait_for_pid(pidfile: Path, timeout: float = 5.0) -> int:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pidfile.exists() and pidfile.read_text().strip():
            return int(pidfile.read_text())
        time.sleep(0.02)
    raise AssertionError("stub emulator never wrote its pid")


def test_emulator_command_shape():
    cfg = CertConfig(artifact=Path("data/riscv_verify.elf"))
    assert emulator_command(cfg) == [
        "qemu-system-riscv64",
        "-machine", "virt",
        "-nographic",
        "-kernel", str(Path("data/riscv_verify.elf")),
        "-S",
        "-gdb", "tcp:127.0.0.1:1234",
    ]


def test_debugger_command_uses_artifact_for_symbols():
    cfg = CertConfig(artifact=Path("prog.elf"), debugger="gdb")
    assert debugger_command(cfg) == ["gdb", "--quiet", "--nx", "prog.elf"]


def test_debugger_script_order():
    lines = debugger_script(CertConfig(port=4321)).splitlines()
    assert lines[-4:] == [
        "target remote 127.0.0.1:4321",
        "continue",
        "x/gx 0x80001000",
        "quit",
    ]
    assert "set pagination off" in lines


@posix_only
def test_session_waits_for_listener_and_reaps(stub_config: CertConfig, pidfile: Path, is_alive, monkeypatch):
    monkeypatch.setenv("RVCERT_STUB_LISTEN_DELAY", "0.3")

    with EmulatorSession(stub_config) as session:
        started = time.monotonic()
        session.wait_ready()
        assert time.monotonic() - started >= 0.2
        pid = _wait_for_pid(pidfile)
        assert pid == session.pid
        assert is_alive(pid)

    assert session.process.returncode is not None
    assert not is_alive(pid)


@posix_only
def test_session_reaped_when_block_raises(stub_config: CertConfig, pidfile: Path, is_alive):
    with pytest.raises(RuntimeError):
        with EmulatorSession(stub_config) as session:
            session.wait_ready()
            raise RuntimeError("boom")

    assert not is_alive(_wait_for_pid(pidfile))


@posix_only
def test_probe_timeout_when_listener_never_appears(stub_config: CertConfig, pidfile: Path, is_alive, monkeypatch):
    monkeypatch.setenv("RVCERT_STUB_NO_LISTEN", "1")
    cfg = replace(stub_config, connect_timeout=1.0)

    with pytest.raises(ProtocolTimeout) as exc_info:
        with EmulatorSession(cfg) as session:
            session.wait_ready()

    assert exc_info.value.phase == "connect"
    assert exc_info.value.exit_code == 3
    assert not is_alive(_wait_for_pid(pidfile))


@posix_only
def test_emulator_exiting_early_is_a_launch_error(stub_config: CertConfig, monkeypatch):
    monkeypatch.setenv("RVCERT_STUB_EXIT", "1")
    with pytest.raises(ProcessLaunchError, match="exited with status 1"):
        with EmulatorSession(stub_config) as session:
            session.wait_ready()


@posix_only
def test_delay_readiness_sleeps_fixed_period(stub_config: CertConfig):
    cfg = replace(stub_config, readiness="delay", settle_delay=0.3)
    with EmulatorSession(cfg) as session:
        started = time.monotonic()
        session.wait_ready()
        assert time.monotonic() - started >= 0.3


def test_missing_emulator_is_a_launch_error(tmp_path: Path):
    cfg = CertConfig(emulator=str(tmp_path / "no-such-qemu"))
    with pytest.raises(ProcessLaunchError) as exc_info:
        with EmulatorSession(cfg):
            pass
    assert exc_info.value.role == "emulator"
    assert exc_info.value.exit_code == 2


def test_missing_debugger_is_a_launch_error(tmp_path: Path):
    cfg = CertConfig(debugger=str(tmp_path / "no-such-gdb"))
    with pytest.raises(ProcessLaunchError) as exc_info:
        run_debugger(cfg)
    assert exc_info.value.role == "debugger"


def test_close_without_start_is_noop():
    EmulatorSession(CertConfig()).close()


@posix_only
def test_debugger_transcript_is_captured(stub_config: CertConfig):
    with EmulatorSession(stub_config) as session:
        session.wait_ready()
        transcript = run_debugger(stub_config)

    assert f"Remote debugging using {stub_config.endpoint}" in transcript
    assert "0x80001000:\t0x0000000000000348" in transcript


@posix_only
def test_debugger_hang_times_out(stub_config: CertConfig, monkeypatch):
    monkeypatch.setenv("RVCERT_STUB_CONTINUE", "hang")
    cfg = replace(stub_config, run_timeout=1.0)

    with EmulatorSession(cfg) as session:
        session.wait_ready()
        started = time.monotonic()
        with pytest.raises(ProtocolTimeout) as exc_info:
            run_debugger(cfg)
        assert time.monotonic() - started < 5.0

    assert exc_info.value.phase == "run"
    assert "Continuing." in exc_info.value.detail


@posix_only
def test_halt_after_interrupts_spinning_target(stub_config: CertConfig, monkeypatch):
    monkeypatch.setenv("RVCERT_STUB_CONTINUE", "wait-interrupt")
    cfg = replace(stub_config, halt_after=0.5, run_timeout=5.0)

    with EmulatorSession(cfg) as session:
        session.wait_ready()
        transcript = run_debugger(cfg)

    assert "Program received signal SIGINT" in transcript
    assert "0x0000000000000348" in transcript
