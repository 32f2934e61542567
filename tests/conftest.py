"""Pytest configuration and fixtures."""

import os
import socket
import stat
import sys
from pathlib import Path

import pytest

from rvcert.config import CertConfig


STUB_EMULATOR = '''
import os
import socket
import sys
import time

args = sys.argv[1:]
_, host, port = args[args.index("-gdb") + 1].split(":")

pidfile = os.environ.get("RVCERT_STUB_PIDFILE")
if pidfile:
    with open(pidfile, "w") as f:
        f.write(str(os.getpid()))

if os.environ.get("RVCERT_STUB_EXIT"):
    sys.exit(1)
if os.environ.get("RVCERT_STUB_NO_LISTEN"):
    time.sleep(3600)
    sys.exit(0)

time.sleep(float(os.environ.get("RVCERT_STUB_LISTEN_DELAY", "0")))
srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
srv.bind((host, int(port)))
srv.listen(5)
while True:
    conn, _ = srv.accept()
    conn.close()
'''


STUB_DEBUGGER = '''
import os
import signal
import socket
import sys
import time

interrupted = False


def on_interrupt(signum, frame):
    global interrupted
    interrupted = True


signal.signal(signal.SIGINT, on_interrupt)

value = os.environ.get("RVCERT_STUB_VALUE", "0x0000000000000348")
on_continue = os.environ.get("RVCERT_STUB_CONTINUE", "return")

for line in sys.stdin:
    cmd = line.strip()
    if cmd.startswith("target remote "):
        endpoint = cmd.split()[-1]
        host, port = endpoint.rsplit(":", 1)
        try:
            socket.create_connection((host, int(port)), timeout=2).close()
        except OSError:
            print(endpoint + ": Connection refused.")
            continue
        print("Remote debugging using " + endpoint)
        print("0x0000000000001000 in ?? ()")
    elif cmd == "continue":
        print("Continuing.", flush=True)
        if on_continue == "hang":
            time.sleep(3600)
        elif on_continue == "wait-interrupt":
            while not interrupted:
                time.sleep(0.05)
            print()
            print("Program received signal SIGINT, Interrupt.")
        else:
            time.sleep(0.2)
    elif cmd.startswith("x/gx "):
        print("(gdb) " + cmd.split()[1] + ":\\t" + value)
    elif cmd == "quit":
        break
sys.stdout.flush()
'''


def _write_script(path: Path, body: str) -> Path:
    interpreter = sys.executable if len(sys.executable) < 120 else "/usr/bin/env python3"
    path.write_text(f"#!{interpreter}\n{body}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@pytest.fixture
def artifact(tmp_path: Path) -> Path:
    """Fixture artifact with a known sha256."""
    path = tmp_path / "riscv_verify.elf"
    path.write_bytes(b"abc")
    return path


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def stub_emulator(tmp_path: Path) -> Path:
    return _write_script(tmp_path / "stub-qemu", STUB_EMULATOR)


@pytest.fixture
def stub_debugger(tmp_path: Path) -> Path:
    return _write_script(tmp_path / "stub-gdb", STUB_DEBUGGER)


@pytest.fixture
def pidfile(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """File the stub emulator writes its pid to."""
    path = tmp_path / "emulator.pid"
    monkeypatch.setenv("RVCERT_STUB_PIDFILE", str(path))
    return path


@pytest.fixture
def stub_config(
    tmp_path: Path,
    artifact: Path,
    free_port: int,
    stub_emulator: Path,
    stub_debugger: Path,
) -> CertConfig:
    """CertConfig wired to the stub emulator and debugger."""
    return CertConfig(
        artifact=artifact,
        ledger=tmp_path / "ledger" / "audit.log",
        emulator=str(stub_emulator),
        debugger=str(stub_debugger),
        port=free_port,
        connect_timeout=5.0,
        probe_interval=0.05,
        run_timeout=10.0,
    )


@pytest.fixture
def is_alive():
    """Process-table check for pids launched by a run."""
    return pid_alive
