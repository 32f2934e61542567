"""
Pass/fail decision over the debugger transcript.

The debugger has no structured output channel: its diagnostics and the
memory dump land in the same text stream. Two ways to find the value:

- structured: parse ``x/gx`` rows ("hex address [<symbol>]: hex word ...")
  and compare the word stored at the inspection address;
- substring: look for the expected value's fixed-width literal anywhere in
  the text. This is the compatibility mode; it is brittle to any change in
  the debugger's numeral formatting (width, case, prefix).

"auto" uses the structured reading when a row for the address is present
and falls back to substring search otherwise.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

WORD_SIZE = 8

_MEMORY_ROW = re.compile(
    r"^(?:\(gdb\)[ \t]*)*"
    r"(?P<address>0x[0-9a-fA-F]+)"
    r"(?:[ \t]+<[^>\n]*>)?"
    r":(?P<words>(?:[ \t]+0x[0-9a-fA-F]+)+)[ \t]*$",
    re.MULTILINE,
)


@dataclass(frozen=True)
class MemoryWord:
    address: int
    value: int


@dataclass(frozen=True)
class Decision:
    """Outcome of matching one transcript against the expected value."""

    passed: bool
    mode: str  # "structured" | "substring" - the reading actually applied
    observed: int | None = None


def format_word(value: int) -> str:
    """Render a 64-bit word the way ``x/gx`` prints it."""
    return f"0x{value:016x}"


def parse_memory_words(text: str) -> list[MemoryWord]:
    """Extract every giant word printed by ``x/gx`` in transcript order."""
    words: list[MemoryWord] = []
    for m in _MEMORY_ROW.finditer(text):
        base = int(m.group("address"), 16)
        for i, raw in enumerate(m.group("words").split()):
            words.append(MemoryWord(address=base + i * WORD_SIZE, value=int(raw, 16)))
    return words


def read_word(text: str, address: int | None = None) -> int | None:
    """First word printed at `address` (or the first word at all), else None."""
    for word in parse_memory_words(text):
        if address is None or word.address == address:
            return word.value
    return None


def decide(
    text: str,
    expected: int,
    *,
    address: int | None = None,
    mode: str = "auto",
) -> Decision:
    """
    Decide PASSED/FAILED for one transcript.

    Args:
        text: Combined debugger stdout and stderr
        expected: Value the inspected word must hold
        address: Inspection address; rows at other addresses are ignored
        mode: "auto", "structured" or "substring"

    Returns:
        Decision; empty text is always a failure
    """
    if mode not in ("auto", "structured", "substring"):
        raise ValueError(f"unknown match mode: {mode}")

    observed = read_word(text, address) if text else None

    if mode == "structured" or (mode == "auto" and observed is not None):
        return Decision(passed=observed == expected, mode="structured", observed=observed)

    passed = bool(text) and format_word(expected) in text
    return Decision(passed=passed, mode="substring", observed=observed)
