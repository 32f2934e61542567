"""Verification and identity CLI commands."""

from __future__ import annotations

import json
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from ..audit_log import AuditLedger
from ..config import CertConfig
from ..errors import CertError, EXIT_FATAL, EXIT_PASSED
from ..identity import sha256_file
from ..verify import Verifier, VerificationOutcome


def _print_outcome(console: Console, config: CertConfig, outcome: VerificationOutcome) -> None:
    if outcome.passed:
        console.print("[bold green]VERIFICATION PASSED[/]")
        console.print("Deterministic execution confirmed.", style="dim")
        return

    console.print("[bold red]VERIFICATION FAILED[/]")
    console.print(f"  expected: {config.expected_hex} at {config.address_hex}")
    if outcome.observed is not None:
        console.print(f"  observed: 0x{outcome.observed:016x}")
    else:
        console.print("  observed: <no value found in debugger output>", style="dim")


def run_hash(artifact: Path) -> int:
    console = Console()
    err = Console(stderr=True)
    try:
        digest = sha256_file(artifact)
    except CertError as e:
        err.print(f"Error: {e}", style="bold red", markup=False)
        return e.exit_code
    console.print(f"{digest}  {artifact}", highlight=False)
    return EXIT_PASSED


def run_verify(
    config: CertConfig,
    *,
    record: bool = False,
    output_json: bool = False,
    show_transcript: bool = False,
) -> int:
    """
    Run one verification and report it.

    Returns:
        0 on pass, 1 on mismatch, 2 on fatal setup error, 3 on timeout
    """
    console = Console()
    err = Console(stderr=True)

    if not output_json:
        err.print("=== RISC-V DETERMINISTIC EXECUTION CHECK ===", style="bold")
        err.print(f"artifact: {config.artifact}", style="dim", highlight=False)
        err.print(f"emulator: {config.emulator} ({config.machine}) debugger: {config.debugger}", style="dim")

    try:
        outcome = Verifier(config).run()
    except CertError as e:
        err.print(f"Error: {e}", style="bold red", markup=False)
        return e.exit_code

    entry = None
    if record:
        try:
            entry = AuditLedger(config.ledger).append(
                config.artifact_label,
                outcome.sha256,
                result=outcome.status.value,
            )
        except CertError as e:
            err.print(f"Error: {e}", style="bold red", markup=False)
            return EXIT_FATAL

    if output_json:
        data = outcome.to_dict()
        if not show_transcript:
            data.pop("transcript")
        if entry is not None:
            data["ledger_entry"] = entry.to_dict()
        print(json.dumps(data, indent=2, sort_keys=True))
        return outcome.exit_code

    console.print(f"SHA256: {outcome.sha256}", highlight=False)
    if show_transcript:
        console.print(Panel(Text(outcome.transcript.rstrip() or "<empty>"), title="debugger output", expand=False))
    _print_outcome(console, config, outcome)
    if entry is not None:
        err.print(f"Recorded in {config.ledger}", style="dim")
    return outcome.exit_code
