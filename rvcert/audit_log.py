"""
Append-only audit ledger binding artifact identity to verification time.

The ledger is a text file of self-delimited blocks, one per entry:

    artifact=<label>
    sha256=<64-hex-char digest>
    timestamp=<unix-seconds integer>
    ---

An optional ``result=passed|failed`` line records the outcome when the
entry belongs to a verification run. Readers ignore other ``key=value``
lines.

INVARIANT: existing ledger bytes are never truncated or rewritten. The only
write operation is append(), which builds the whole block in memory and
writes it in a single call under an advisory lock, so a failed write can
only ever leave an unterminated trailing block, never one that reads as
complete.
"""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Iterator

from .config import CertConfig
from .errors import LedgerReadError, LedgerWriteError
from .identity import sha256_file

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms append unlocked
    fcntl = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

DELIMITER = "---"
RESULTS = ("passed", "failed")

_DIGEST = re.compile(r"[0-9a-f]{64}")
_REQUIRED = ("artifact", "sha256", "timestamp")

# Exclusive; larger values overflow datetime.fromtimestamp.
MAX_TIMESTAMP = 2**33


@dataclass(frozen=True)
class LedgerEntry:
    """A single ledger entry."""

    label: str
    sha256: str
    timestamp: int
    result: str | None = None
    extra: dict[str, str] = field(default_factory=dict, compare=False)
    line: int = field(default=0, compare=False)  # 1-based start line when parsed

    @property
    def recorded_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    def to_block(self) -> str:
        """Render as a delimited text block, trailing newline included."""
        lines = [
            f"artifact={self.label}",
            f"sha256={self.sha256}",
            f"timestamp={self.timestamp}",
        ]
        if self.result is not None:
            lines.append(f"result={self.result}")
        lines.append(DELIMITER)
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "artifact": self.label,
            "sha256": self.sha256,
            "timestamp": self.timestamp,
        }
        if self.result is not None:
            data["result"] = self.result
        return data


@dataclass(frozen=True)
class LedgerIssue:
    """A structural problem found while reading the ledger."""

    line: int  # 1-based line where the offending block starts
    message: str


def clean_label(label: str) -> str:
    """Keep a label on one line so it cannot break block framing."""
    cleaned = label.replace("\r", " ").replace("\n", " ").strip()
    if not cleaned:
        raise ValueError("artifact label must not be empty")
    return cleaned


def _build_entry(fields_: dict[str, str], start: int, issues: list[LedgerIssue]) -> LedgerEntry | None:
    missing = [k for k in _REQUIRED if k not in fields_]
    if missing:
        issues.append(LedgerIssue(start, f"entry missing {', '.join(missing)}"))
        return None

    digest = fields_["sha256"]
    if not _DIGEST.fullmatch(digest):
        issues.append(LedgerIssue(start, f"malformed sha256: {digest!r}"))
        return None

    try:
        timestamp = int(fields_["timestamp"])
    except ValueError:
        timestamp = -1
    if not 0 <= timestamp < MAX_TIMESTAMP:
        issues.append(LedgerIssue(start, f"malformed timestamp: {fields_['timestamp']!r}"))
        return None

    result = fields_.get("result")
    if result is not None and result not in RESULTS:
        issues.append(LedgerIssue(start, f"unknown result: {result!r}"))
        result = None

    extra = {k: v for k, v in fields_.items() if k not in (*_REQUIRED, "result")}
    return LedgerEntry(
        label=fields_["artifact"],
        sha256=digest,
        timestamp=timestamp,
        result=result,
        extra=extra,
        line=start,
    )


def parse_ledger(text: str) -> tuple[list[LedgerEntry], list[LedgerIssue]]:
    """
    Parse ledger text into entries (append order) and structural issues.

    Lines end at newline characters only; other line-separator code points
    (U+2028, form feed, ...) are part of the value.
    A block counts only once its delimiter line is seen. An ``artifact=``
    line inside an open block starts a new block: the open one was torn by
    an interrupted write and is reported, not returned.
    """
    entries: list[LedgerEntry] = []
    issues: list[LedgerIssue] = []
    current: dict[str, str] = {}
    start = 0

    for lineno, raw in enumerate(text.split("\n"), start=1):
        line = raw.strip()
        if not line:
            continue

        if line == DELIMITER:
            if not current:
                issues.append(LedgerIssue(lineno, "empty entry"))
            else:
                entry = _build_entry(current, start, issues)
                if entry is not None:
                    entries.append(entry)
            current = {}
            continue

        key, sep, value = line.partition("=")
        if not sep:
            issues.append(LedgerIssue(lineno, f"not a key=value line: {line!r}"))
            continue

        if key == "artifact" and current:
            issues.append(LedgerIssue(start, "unterminated entry"))
            current = {}

        if not current:
            start = lineno
        if key in current:
            issues.append(LedgerIssue(lineno, f"duplicate key {key!r}"))
        current[key] = value

    if current:
        issues.append(LedgerIssue(start, "unterminated entry"))

    return entries, issues


def _lock(f: IO[Any]) -> None:
    if fcntl is not None:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX)


def _unlock(f: IO[Any]) -> None:
    if fcntl is not None:
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)


class AuditLedger:
    """
    Append-only audit ledger.

    INVARIANT: This class NEVER modifies existing ledger bytes.
    The only write operation is append().
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def append(
        self,
        label: str,
        sha256: str,
        *,
        timestamp: int | None = None,
        result: str | None = None,
    ) -> LedgerEntry:
        """
        Append one entry to the ledger, creating the file if absent.

        Args:
            label: Artifact label (newlines are flattened to spaces)
            sha256: Artifact identity, 64 lowercase hex chars
            timestamp: Unix seconds; defaults to now
            result: Optional verification result ("passed" | "failed")

        Returns:
            The appended entry

        Raises:
            LedgerWriteError: If the file cannot be opened or the write fails
        """
        if not _DIGEST.fullmatch(sha256):
            raise ValueError(f"sha256 must be 64 lowercase hex chars, got {sha256!r}")
        if result is not None and result not in RESULTS:
            raise ValueError(f"result must be one of {', '.join(RESULTS)}")
        timestamp = int(time.time()) if timestamp is None else int(timestamp)
        if not 0 <= timestamp < MAX_TIMESTAMP:
            raise ValueError(f"timestamp out of range: {timestamp}")

        entry = LedgerEntry(
            label=clean_label(label),
            sha256=sha256,
            timestamp=timestamp,
            result=result,
        )
        block = entry.to_block().encode("utf-8")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a+b") as f:
                _lock(f)
                try:
                    # A torn previous write may have left no trailing newline.
                    f.seek(0, os.SEEK_END)
                    if f.tell() > 0:
                        f.seek(-1, os.SEEK_END)
                        if f.read(1) != b"\n":
                            block = b"\n" + block
                    f.write(block)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    _unlock(f)
        except OSError as e:
            raise LedgerWriteError(f"cannot append to ledger {self.path}: {e}") from e

        logger.info("ledger %s += %s %s", self.path, entry.label, entry.sha256[:12])
        return entry

    def read_text(self) -> str:
        """
        Read the whole ledger; a missing file reads as empty.

        Raises:
            LedgerReadError: If the file cannot be read or is not valid UTF-8
        """
        if not self.path.exists():
            return ""
        try:
            return self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise LedgerReadError(f"ledger is not valid UTF-8 at byte {e.start}: {self.path}") from e
        except OSError as e:
            raise LedgerReadError(f"cannot read ledger: {e}") from e

    def iter_entries(self) -> Iterator[LedgerEntry]:
        """Iterate over well-formed entries in append order."""
        entries, _ = parse_ledger(self.read_text())
        yield from entries

    def entries(self, last_n: int | None = None) -> list[LedgerEntry]:
        """
        Read well-formed entries.

        Args:
            last_n: If specified, return only the last N entries

        Returns:
            List of entries (oldest first)
        """
        entries = list(self.iter_entries())
        if last_n is not None:
            return entries[-last_n:] if last_n > 0 else []
        return entries

    def count(self) -> int:
        return len(self.entries())

    def latest(self, label: str | None = None) -> LedgerEntry | None:
        """Most recent entry, optionally restricted to one artifact label."""
        for entry in reversed(self.entries()):
            if label is None or entry.label == label:
                return entry
        return None

    def check(self) -> list[LedgerIssue]:
        """
        Report structural problems: malformed or torn blocks, and
        timestamps that go backwards in append order.
        """
        entries, issues = parse_ledger(self.read_text())
        previous: LedgerEntry | None = None
        for index, entry in enumerate(entries, start=1):
            if previous is not None and entry.timestamp < previous.timestamp:
                issues.append(
                    LedgerIssue(entry.line, f"entry {index} timestamp {entry.timestamp} precedes entry {index - 1}")
                )
            previous = entry
        return issues


def record_artifact(config: CertConfig, *, result: str | None = None) -> LedgerEntry:
    """Audit flow: hash the configured artifact and append it to the ledger."""
    digest = sha256_file(config.artifact)
    return AuditLedger(config.ledger).append(config.artifact_label, digest, result=result)


def format_entry(entry: LedgerEntry) -> str:
    """Format an entry for human-readable display."""
    lines = [f"[{entry.recorded_at.isoformat()}] {entry.label}", f"  sha256: {entry.sha256}"]
    if entry.result is not None:
        lines.append(f"  result: {entry.result}")
    for key, value in entry.extra.items():
        lines.append(f"  {key}: {value}")
    return "\n".join(lines)
