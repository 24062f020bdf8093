"""
agritrust verify - audit ledger verification

Usage:
    agritrust verify <ledger>                       Human output (default)
    agritrust verify <ledger> --format json         Machine-readable JSON
    agritrust verify <ledger> --format compact      One-line pipeline output
    agritrust verify <ledger> --export report.json  Export full audit report
    agritrust verify <ledger> --project proj-7      Report one project only
    agritrust verify <ledger> --quiet               Exit code only

LEDGER is an audit.jsonl file or the directory holding it.

Exit codes:
    0  Ledger fully valid  (chain + signatures + schema)
    1  Ledger has violations
    2  Error  (file missing, malformed JSON, parse failure)
"""

import json
import sys
import time
from pathlib import Path
from typing import Optional

import click

from agritrust.audit.ledger import AuditLedger
from agritrust.audit.replay import AuditReplay, ReplaySummary
from agritrust.cli.style import BAR_LIGHT, Color, banner, row_fail, row_info, row_ok
from agritrust.core.models import LedgerVersionError


@click.command(name="verify")
@click.argument("ledger", type=click.Path(exists=False))
@click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json", "compact"], case_sensitive=False),
    default="human",
    show_default=True,
    help="Output format: human, json (CI/automation), compact (pipelines).",
)
@click.option(
    "--export", "export_path",
    type=click.Path(),
    default=None,
    metavar="PATH",
    help="Export full audit report to a JSON file.",
)
@click.option(
    "--quiet",
    is_flag=True,
    default=False,
    help="Suppress all output. Use exit code only (0=valid, 1=invalid, 2=error).",
)
@click.option(
    "--project", "project_id",
    type=str,
    default=None,
    metavar="PROJECT_ID",
    help="Report only records of one project. The chain is still checked in full.",
)
@click.option("--no-color", is_flag=True, default=False, help="Disable ANSI color output.")
def verify_command(
    ledger:      str,
    fmt:         str,
    export_path: Optional[str],
    quiet:       bool,
    project_id:  Optional[str],
    no_color:    bool,
) -> None:
    """
    Verify an audit ledger: hash chain, sequence, signatures, schema.

    \b
    Examples:
      agritrust verify .agritrust/ledger
      agritrust verify audit.jsonl --format json
      agritrust verify audit.jsonl --project proj-7 --export report.json
      agritrust verify audit.jsonl --quiet && echo "clean"
    """
    Color.configure(not no_color)

    ledger_path = Path(ledger)
    if ledger_path.is_dir():
        ledger_path = ledger_path / AuditLedger.LEDGER_FILENAME
    if not ledger_path.exists():
        _emit_error(f"Ledger not found: {ledger}", fmt, quiet)
        sys.exit(2)

    replay  = AuditReplay()
    t_start = time.perf_counter()
    try:
        replay.load(ledger_path)
        summary = replay.verify(project_id=project_id)
    except (ValueError, LedgerVersionError, OSError) as e:
        _emit_error(str(e), fmt, quiet)
        sys.exit(2)
    elapsed = time.perf_counter() - t_start

    if export_path:
        try:
            replay.export_json(Path(export_path), project_id=project_id)
        except (OSError, RuntimeError) as e:
            if not quiet and fmt == "human":
                click.echo(Color.yellow(f"\n  Export failed: {e}"), err=True)

    if quiet:
        sys.exit(0 if summary.ledger_valid else 1)

    if fmt == "json":
        _output_json(summary, ledger_path, replay.head_hash(), project_id, elapsed, export_path)
    elif fmt == "compact":
        _output_compact(summary, ledger_path, elapsed)
    else:
        _output_human(summary, ledger_path, replay.head_hash(), project_id, elapsed, export_path)

    sys.exit(0 if summary.ledger_valid else 1)


def _output_human(
    summary:     ReplaySummary,
    ledger_path: Path,
    head_hash:   Optional[str],
    project_id:  Optional[str],
    elapsed:     float,
    export_path: Optional[str],
) -> None:
    banner("Audit Ledger Verification")

    click.echo(row_info("Ledger", str(ledger_path)))
    click.echo(row_info("Entries", f"{summary.total_entries:,}"))
    if project_id:
        click.echo(row_info("Project", project_id))
    else:
        click.echo(row_info("Projects", ", ".join(summary.projects_seen) or "-"))
    click.echo(row_info("Signers", str(len(summary.signers_seen))))
    click.echo()

    chain_v  = [v for v in summary.violations if v.violation_type == "chain_break"]
    seq_v    = [v for v in summary.violations if v.violation_type == "sequence_gap"]
    schema_v = [v for v in summary.violations if v.violation_type == "schema"]

    if not chain_v:
        click.echo(row_ok("Chain", "intact, all causal hashes valid"))
    else:
        click.echo(row_fail("Chain", Color.red(f"{len(chain_v)} break(s) detected")))

    if summary.invalid_signatures == 0:
        click.echo(row_ok(
            "Signatures", f"{summary.valid_signatures:,} / {summary.total_entries:,} valid"
        ))
    else:
        click.echo(row_fail(
            "Signatures",
            f"{summary.valid_signatures:,} valid  "
            + Color.red(f"{summary.invalid_signatures:,} INVALID"),
        ))

    if not seq_v:
        click.echo(row_ok("Sequence", "no gaps"))
    else:
        click.echo(row_fail("Sequence", Color.red(f"{len(seq_v)} gap(s) detected")))

    if not schema_v:
        click.echo(row_ok("Nonces", "unique"))
    else:
        click.echo(row_fail("Nonces", Color.red(f"{len(schema_v)} duplicate(s)")))
    click.echo()

    if summary.first_timestamp:
        click.echo(row_info("First entry", summary.first_timestamp))
        click.echo(row_info("Last entry", summary.last_timestamp or "-"))
    if head_hash:
        click.echo(row_info("Chain head", Color.cyan(f"{head_hash[:16]}...{head_hash[-8:]}")))
    if summary.record_type_counts:
        click.echo(row_info("Record types", "  ".join(
            f"{Color.cyan(k)}: {v:,}" for k, v in sorted(summary.record_type_counts.items())
        )))
    click.echo(row_info("Verified in", f"{elapsed:.3f}s"))
    if export_path:
        click.echo(row_info("Exported", export_path))
    click.echo()

    if summary.violations:
        click.echo(f"  {BAR_LIGHT}")
        for v in summary.violations:
            click.echo(
                f"  {Color.red(str(v.at_sequence)):>6}  "
                f"{Color.yellow(f'{v.violation_type:<18}')}  {v.detail}"
            )
        click.echo()

    click.echo(f"  {BAR_LIGHT}")
    if summary.ledger_valid:
        click.echo(Color.green(Color.bold("  VALID  ·  0 violations")))
    else:
        click.echo(Color.red(Color.bold(
            f"  INVALID  ·  {len(summary.violations)} violation(s)"
        )))
    click.echo(f"  {BAR_LIGHT}")
    click.echo()


def _output_json(
    summary:     ReplaySummary,
    ledger_path: Path,
    head_hash:   Optional[str],
    project_id:  Optional[str],
    elapsed:     float,
    export_path: Optional[str],
) -> None:
    out = {
        "agritrust_verify": {
            "ledger":             str(ledger_path),
            "project_id":         project_id,
            "ledger_version":     summary.ledger_version,
            "total_entries":      summary.total_entries,
            "ledger_valid":       summary.ledger_valid,
            "chain_valid":        summary.chain_valid,
            "chain_head_hash":    head_hash,
            "valid_signatures":   summary.valid_signatures,
            "invalid_signatures": summary.invalid_signatures,
            "violation_count":    len(summary.violations),
            "signers_seen":       summary.signers_seen,
            "projects_seen":      summary.projects_seen,
            "record_type_counts": summary.record_type_counts,
            "first_timestamp":    summary.first_timestamp,
            "last_timestamp":     summary.last_timestamp,
            "elapsed_seconds":    round(elapsed, 3),
            "export_path":        export_path,
            "violations":         [v.to_dict() for v in summary.violations],
        }
    }
    click.echo(json.dumps(out, indent=2))


def _output_compact(summary: ReplaySummary, ledger_path: Path, elapsed: float) -> None:
    """
    VALID    audit.jsonl   12 entries  0 violations  0.004s
    INVALID  audit.jsonl   12 entries  2 violation(s)  0.004s
    """
    if summary.ledger_valid:
        status = Color.green(f"{'VALID':<8}")
        vtext  = "0 violations"
    else:
        status = Color.red(f"{'INVALID':<8}")
        vtext  = Color.red(f"{len(summary.violations)} violation(s)")
    click.echo(
        f"{status}  {ledger_path.name:<24}  {summary.total_entries:>8,} entries  "
        f"{vtext}  {elapsed:.3f}s"
    )


def _emit_error(msg: str, fmt: str, quiet: bool) -> None:
    """Emit error in the requested format. Never raises."""
    if quiet:
        return
    if fmt == "json":
        click.echo(json.dumps({
            "agritrust_verify": {
                "error":        msg,
                "chain_valid":  False,
                "ledger_valid": False,
            }
        }))
    else:
        click.echo(Color.red(f"\n  ERROR: {msg}\n"), err=True)
