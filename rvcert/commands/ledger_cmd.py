"""Audit ledger CLI commands."""

from __future__ import annotations

import json

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..audit_log import AuditLedger, format_entry, record_artifact
from ..config import CertConfig
from ..errors import CertError, EXIT_MISMATCH, EXIT_PASSED
from ..identity import sha256_file


def run_record(config: CertConfig) -> int:
    err = Console(stderr=True)
    console = Console()
    try:
        entry = record_artifact(config)
    except CertError as e:
        err.print(f"Error: {e}", style="bold red", markup=False)
        return e.exit_code

    console.print(format_entry(entry), highlight=False, markup=False)
    err.print(f"Recorded in {config.ledger}", style="dim")
    return EXIT_PASSED


def run_ledger_show(config: CertConfig, *, last_n: int | None = None, output_json: bool = False) -> int:
    console = Console()
    err = Console(stderr=True)
    ledger = AuditLedger(config.ledger)
    try:
        all_entries = ledger.entries()
        entries = ledger.entries(last_n)
    except CertError as e:
        err.print(f"Error: {e}", style="bold red", markup=False)
        return e.exit_code

    if output_json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return EXIT_PASSED

    if not entries:
        console.print(f"No entries in {config.ledger}", style="dim")
        return EXIT_PASSED

    table = Table(title=f"Audit ledger ({config.ledger})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("recorded (UTC)")
    table.add_column("artifact", style="cyan", no_wrap=True)
    table.add_column("sha256", style="magenta")
    table.add_column("result")

    offset = len(all_entries) - len(entries)
    for i, entry in enumerate(entries, start=offset + 1):
        result = entry.result or ""
        style = {"passed": "green", "failed": "red"}.get(result, "")
        table.add_row(
            str(i),
            entry.recorded_at.strftime("%Y-%m-%d %H:%M:%S"),
            escape(entry.label),
            entry.sha256[:16] + "…",
            f"[{style}]{result}[/]" if style else result,
        )

    console.print(table)
    return EXIT_PASSED


def run_ledger_check(config: CertConfig, *, against_artifact: bool = False) -> int:
    """
    Check ledger structure, and optionally that the latest entry for the
    configured label still matches the artifact on disk.
    """
    console = Console()
    err = Console(stderr=True)
    ledger = AuditLedger(config.ledger)

    try:
        issues = ledger.check()
        entries = ledger.entries()
    except CertError as e:
        err.print(f"Error: {e}", style="bold red", markup=False)
        return e.exit_code

    for issue in issues:
        where = f"line {issue.line}: " if issue.line else ""
        err.print(f"  {where}{issue.message}", style="yellow", markup=False)

    ok = not issues
    if against_artifact:
        latest = next((e for e in reversed(entries) if e.label == config.artifact_label), None)
        if latest is None:
            err.print(f"No entry recorded for {config.artifact_label}", style="bold red", markup=False)
            ok = False
        else:
            try:
                digest = sha256_file(config.artifact)
            except CertError as e:
                err.print(f"Error: {e}", style="bold red", markup=False)
                return e.exit_code
            if digest == latest.sha256:
                console.print(
                    f"{config.artifact_label}: matches entry recorded {latest.recorded_at.isoformat()}",
                    markup=False,
                )
            else:
                err.print(
                    f"{config.artifact_label}: sha256 {digest} differs from recorded {latest.sha256}",
                    style="bold red",
                    highlight=False,
                    markup=False,
                )
                ok = False

    if ok:
        console.print(f"Ledger OK ({len(entries)} entries)", style="green")
        return EXIT_PASSED
    console.print(f"Ledger check FAILED ({len(issues)} structural issue(s))", style="bold red", highlight=False)
    return EXIT_MISMATCH
