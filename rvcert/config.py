"""
Certification configuration.

One artifact, one inspection address, one expected value, configured once.
CertConfig is immutable and passed into the verifier and the ledger at
construction time. It can be built directly, or loaded from an
``rvcert.toml`` file:

    [rvcert]
    artifact = "data/riscv_verify.elf"
    inspection_address = "0x80001000"
    expected_value = "0x0000000000000348"
    ledger = "data/audit.log"
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "rvcert.toml"

MATCH_MODES = ("auto", "structured", "substring")
READINESS_MODES = ("probe", "delay")

_PATH_FIELDS = ("artifact", "ledger")
_INT_FIELDS = ("inspection_address", "expected_value", "port")
_FLOAT_FIELDS = ("settle_delay", "connect_timeout", "probe_interval", "run_timeout", "halt_after")


@dataclass(frozen=True)
class CertConfig:
    """Immutable settings for one certification target."""

    artifact: Path = Path("data/riscv_verify.elf")
    label: str | None = None
    inspection_address: int = 0x80001000
    expected_value: int = 0x348

    emulator: str = "qemu-system-riscv64"
    machine: str = "virt"
    debugger: str = "gdb-multiarch"
    host: str = "127.0.0.1"
    port: int = 1234

    readiness: str = "probe"
    settle_delay: float = 0.7
    connect_timeout: float = 10.0
    probe_interval: float = 0.1
    run_timeout: float = 60.0
    halt_after: float | None = None  # None waits for the target to stop on its own

    match_mode: str = "auto"
    ledger: Path = Path("data/audit.log")

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ConfigError(f"port out of range: {self.port}")
        if not 0 <= self.expected_value < (1 << 64):
            raise ConfigError(f"expected_value does not fit in 64 bits: {self.expected_value:#x}")
        if self.inspection_address < 0:
            raise ConfigError("inspection_address must be non-negative")
        if self.match_mode not in MATCH_MODES:
            raise ConfigError(f"match_mode must be one of {', '.join(MATCH_MODES)}")
        if self.readiness not in READINESS_MODES:
            raise ConfigError(f"readiness must be one of {', '.join(READINESS_MODES)}")
        for name in ("settle_delay", "probe_interval"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be non-negative")
        for name in ("connect_timeout", "run_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.halt_after is not None and not 0 < self.halt_after < self.run_timeout:
            raise ConfigError("halt_after must be positive and shorter than run_timeout")

    @property
    def artifact_label(self) -> str:
        return self.label or self.artifact.name

    @property
    def expected_hex(self) -> str:
        """Expected value as the debugger prints a giant word: 0x + 16 hex digits."""
        return f"0x{self.expected_value:016x}"

    @property
    def address_hex(self) -> str:
        return f"{self.inspection_address:#x}"

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"


def _parse_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer or hex string")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip().replace("_", ""), 0)
        except ValueError:
            raise ConfigError(f"{name} is not a valid integer: {value!r}") from None
    raise ConfigError(f"{name} must be an integer or hex string")


def _parse_float(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{name} must be a number")
    return float(value)


def _coerce(raw: dict[str, Any], base_dir: Path | None) -> dict[str, Any]:
    known = {f.name for f in fields(CertConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")

    values: dict[str, Any] = {}
    for key, value in raw.items():
        if value is None:
            continue
        if key in _PATH_FIELDS:
            path = Path(value)
            if base_dir is not None and not path.is_absolute():
                path = base_dir / path
            values[key] = path
        elif key in _INT_FIELDS:
            values[key] = _parse_int(key, value)
        elif key in _FLOAT_FIELDS:
            values[key] = _parse_float(key, value)
        else:
            values[key] = str(value)
    return values


def find_config(start: Path) -> Path | None:
    """Find rvcert.toml by walking up from `start`."""
    cur = start.resolve()
    for p in (cur, *cur.parents):
        candidate = p / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def load_config(path: Path | None = None, **overrides: Any) -> CertConfig:
    """
    Build a CertConfig from an optional TOML file plus explicit overrides.

    Settings are read from an ``[rvcert]`` table, or from the top level when
    the file has no such table. Relative paths in the file resolve against
    the file's directory. Overrides set to None are ignored, so CLI options
    can be passed through unconditionally.

    Raises:
        ConfigError: If the file cannot be read or parsed, or values are invalid
    """
    import tomllib

    values: dict[str, Any] = {}
    if path is not None:
        try:
            data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigError(f"cannot read config {path}: {e}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"malformed config {path}: {e}") from e

        table = data.get("rvcert", data)
        if not isinstance(table, dict):
            raise ConfigError(f"[rvcert] in {path} must be a table")
        values.update(_coerce(table, Path(path).resolve().parent))
        logger.debug("loaded config from %s", path)

    values.update(_coerce({k: v for k, v in overrides.items() if v is not None}, None))
    return CertConfig(**values)
