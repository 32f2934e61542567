"""CLI entrypoint for rvcert."""

import logging
import sys
from pathlib import Path

import click

from . import __version__
from .errors import EXIT_FATAL


def _setup_logging(verbose: int) -> None:
    from rich.console import Console
    from rich.logging import RichHandler

    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _load(ctx: click.Context, **overrides):
    """Build the CertConfig for this invocation, exiting 2 on bad config."""
    from rich.console import Console
    from .config import load_config
    from .errors import ConfigError

    obj = ctx.obj
    try:
        return load_config(
            obj["config_path"],
            artifact=obj["artifact"],
            ledger=obj["ledger"],
            **overrides,
        )
    except ConfigError as e:
        Console(stderr=True).print(f"Configuration error: {e}", style="bold red", markup=False)
        sys.exit(EXIT_FATAL)


@click.group()
@click.version_option(__version__, prog_name="rvcert")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to rvcert.toml (defaults to the nearest one above the working directory)",
)
@click.option(
    "--artifact",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Override the artifact (RISC-V ELF) under certification",
)
@click.option(
    "--ledger",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Override the audit ledger file",
)
@click.option("--verbose", "-v", count=True, help="Log progress (-v) or debug detail (-vv) to stderr")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    artifact: Path | None,
    ledger: Path | None,
    verbose: int,
) -> None:
    """rvcert - Deterministic execution certification for RISC-V artifacts.

    Runs the artifact under an emulator, inspects one memory word through a
    debugger, and keeps an append-only ledger of artifact hashes.

    Exit codes: 0 passed, 1 mismatch, 2 fatal setup error, 3 protocol timeout.
    """
    from .config import find_config

    _setup_logging(verbose)
    ctx.ensure_object(dict)
    if config_path is None:
        config_path = find_config(Path.cwd())
    ctx.obj["config_path"] = config_path
    ctx.obj["artifact"] = artifact
    ctx.obj["ledger"] = ledger


@cli.command("hash")
@click.argument(
    "artifact",
    type=click.Path(dir_okay=False, path_type=Path),
    required=False,
)
@click.pass_context
def hash_cmd(ctx: click.Context, artifact: Path | None) -> None:
    """Print the sha256 identity of the artifact.

    Examples:

        rvcert hash

        rvcert hash build/riscv_verify.elf
    """
    from .commands.verify_cmd import run_hash

    if artifact is None:
        artifact = _load(ctx).artifact
    sys.exit(run_hash(artifact))


@cli.command()
@click.option("--record", is_flag=True, help="Append the result to the audit ledger")
@click.option("--json", "output_json", is_flag=True, help="Output the outcome as JSON")
@click.option("--show-transcript", is_flag=True, help="Print the captured debugger output")
@click.option(
    "--mode",
    "match_mode",
    type=click.Choice(["auto", "structured", "substring"]),
    default=None,
    help="How the expected value is found in debugger output (default: auto)",
)
@click.option(
    "--readiness",
    type=click.Choice(["probe", "delay"]),
    default=None,
    help="Wait for the debug listener by probing it, or by a fixed settle delay",
)
@click.option("--port", type=int, default=None, help="Remote-debug port on the loopback interface")
@click.option("--timeout", "run_timeout", type=float, default=None, help="Seconds allowed for the debugger session")
@click.option(
    "--halt-after",
    type=float,
    default=None,
    help="Interrupt the target after this many seconds, then inspect (required for targets that never halt)",
)
@click.option("--emulator", type=str, default=None, help="Emulator executable")
@click.option("--debugger", type=str, default=None, help="Debugger executable")
@click.pass_context
def verify(
    ctx: click.Context,
    record: bool,
    output_json: bool,
    show_transcript: bool,
    match_mode: str | None,
    readiness: str | None,
    port: int | None,
    run_timeout: float | None,
    halt_after: float | None,
    emulator: str | None,
    debugger: str | None,
) -> None:
    """Run the artifact under emulation and check the inspected word.

    Launches the emulator halted, attaches the debugger, resumes to
    completion, reads one 64-bit word at the inspection address and
    compares it with the expected value.

    Firmware that spins after writing its result never returns control to
    the debugger; pass --halt-after (or set halt_after) so the session
    interrupts it instead of ending in a run timeout.

    Examples:

        rvcert verify

        rvcert verify --record --show-transcript

        rvcert verify --halt-after 2 --timeout 30
    """
    from .commands.verify_cmd import run_verify

    config = _load(
        ctx,
        match_mode=match_mode,
        readiness=readiness,
        port=port,
        run_timeout=run_timeout,
        halt_after=halt_after,
        emulator=emulator,
        debugger=debugger,
    )
    exit_code = run_verify(
        config,
        record=record,
        output_json=output_json,
        show_transcript=show_transcript,
    )
    sys.exit(exit_code)


@cli.command()
@click.pass_context
def record(ctx: click.Context) -> None:
    """Append the artifact's current identity to the audit ledger.

    Does not run the emulator: this is the audit flow on its own.
    """
    from .commands.ledger_cmd import run_record

    sys.exit(run_record(_load(ctx)))


@cli.group()
def ledger() -> None:
    """Inspect the append-only audit ledger."""
    pass


@ledger.command("show")
@click.option("--last", "last_n", type=int, default=None, help="Show only the last N entries")
@click.option("--json", "output_json", is_flag=True, help="Output entries as JSON")
@click.pass_context
def ledger_show(ctx: click.Context, last_n: int | None, output_json: bool) -> None:
    """List ledger entries, oldest first."""
    from .commands.ledger_cmd import run_ledger_show

    sys.exit(run_ledger_show(_load(ctx), last_n=last_n, output_json=output_json))


@ledger.command("check")
@click.option(
    "--against-artifact/--structure-only",
    "against_artifact",
    default=False,
    show_default=True,
    help="Also compare the latest recorded digest with the artifact on disk",
)
@click.pass_context
def ledger_check(ctx: click.Context, against_artifact: bool) -> None:
    """Check ledger structure (torn or malformed entries, time order)."""
    from .commands.ledger_cmd import run_ledger_check

    sys.exit(run_ledger_check(_load(ctx), against_artifact=against_artifact))


def main() -> None:
    """Main entrypoint."""
    cli()


if __name__ == "__main__":
    main()
