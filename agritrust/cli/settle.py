"""
agritrust waterfall / agritrust status

    agritrust waterfall --revenue 58500 --platform-fee 0.20 --operator-share 0.40 \\
        --contributor rAlice=6000 --contributor rBob=4000
    agritrust status proj-7 --store .agritrust/settlements --format json

Exit codes:
    0  success
    1  status: project has no settlement
    2  invalid input
"""

import json
import sys
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Tuple

import click

from agritrust.cli.style import BAR_LIGHT, Color, banner, row_info
from agritrust.core.exceptions import AgriTrustError, ConfigurationError
from agritrust.core.money import Money, format_amount
from agritrust.runtime.config import SettlementConfig
from agritrust.settlement.models import ContributorShare, SettlementRecord, TransferOutcome
from agritrust.settlement.store import SettlementStore
from agritrust.settlement.waterfall import compute_waterfall, shares_from_contributions


def _parse_pairs(values: Tuple[str, ...], option: str) -> List[Tuple[str, str]]:
    pairs = []
    for raw in values:
        address, sep, amount = raw.partition("=")
        if not sep or not address.strip() or not amount.strip():
            raise click.BadParameter(f"expected ADDRESS=VALUE, got {raw!r}", param_hint=option)
        pairs.append((address.strip(), amount.strip()))
    return pairs


@click.command(name="waterfall")
@click.option("--revenue", required=True, help="Verified gross revenue, e.g. 58500.")
@click.option("--asset", default=None, help="Asset code. Default: config or RLUSD.")
@click.option("--platform-fee", "platform_fee", default=None, help="Platform fee fraction in [0, 1].")
@click.option("--operator-share", "operator_share", default=None, help="Operator share of the remainder.")
@click.option(
    "--contributor", "contributors", multiple=True, metavar="ADDRESS=AMOUNT",
    help="Contributed capital; shares are derived from the amounts. Repeatable.",
)
@click.option(
    "--share", "shares", multiple=True, metavar="ADDRESS=FRACTION",
    help="Explicit pool share. Repeatable. Cannot be combined with --contributor.",
)
@click.option("--config", "config_file", type=click.Path(exists=True), default=None,
              help="Settlement config YAML providing defaults.")
@click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json"], case_sensitive=False),
    default="human", show_default=True,
)
@click.option("--no-color", is_flag=True, default=False, help="Disable ANSI color output.")
def waterfall_command(
    revenue:        str,
    asset:          Optional[str],
    platform_fee:   Optional[str],
    operator_share: Optional[str],
    contributors:   Tuple[str, ...],
    shares:         Tuple[str, ...],
    config_file:    Optional[str],
    fmt:            str,
    no_color:       bool,
) -> None:
    """
    Compute a profit waterfall without moving any funds.

    \b
    Examples:
      agritrust waterfall --revenue 10000 --platform-fee 0 --operator-share 0 \\
          --share rA=0.6 --share rB=0.4
      agritrust waterfall --revenue 58500 --contributor rA=6000 --format json
    """
    Color.configure(not no_color)
    try:
        config = (
            SettlementConfig.from_yaml(Path(config_file)) if config_file
            else SettlementConfig.from_dict({})
        )
        if contributors and shares:
            raise ConfigurationError("use either --contributor or --share, not both")

        code = asset or config.asset_code
        if contributors:
            contributor_shares = shares_from_contributions([
                (address, Money(amount, code))
                for address, amount in _parse_pairs(contributors, "--contributor")
            ])
        else:
            contributor_shares = [
                ContributorShare(address=address, share_percentage=Decimal(fraction))
                for address, fraction in _parse_pairs(shares, "--share")
            ]

        result = compute_waterfall(
            Money(revenue, code),
            platform_fee if platform_fee is not None else config.platform_fee_percentage,
            operator_share if operator_share is not None else config.operator_share_percentage,
            contributor_shares,
            precision=config.precision,
        )
    except (AgriTrustError, ArithmeticError) as e:
        _fail(str(e), fmt)

    if fmt == "json":
        click.echo(json.dumps({"agritrust_waterfall": result.to_dict()}, indent=2))
        return

    banner("Profit Waterfall")
    click.echo(row_info("Revenue", str(result.revenue)))
    click.echo(row_info(f"Platform fee {_pct(result.platform_fee_percentage)}", str(result.platform_fee)))
    click.echo(row_info("Remainder", str(result.remainder)))
    click.echo(row_info(f"Operator {_pct(result.operator_share_percentage)}", str(result.operator_payout)))
    click.echo(row_info("Contributor pool", str(result.contributor_pool)))
    for payout in result.contributor_payouts:
        click.echo(row_info(
            f"  {payout.address}",
            f"{payout.amount}  " + Color.dim(f"({_pct(payout.share_percentage)})"),
        ))
    leftover = str(result.leftover)
    click.echo(row_info("Leftover", Color.yellow(leftover) if not result.leftover.is_zero() else leftover))
    click.echo()


@click.command(name="status")
@click.argument("project_id")
@click.option(
    "--store", "store_dir",
    type=click.Path(file_okay=False),
    default=".agritrust/settlements", show_default=True,
    help="Settlement store directory.",
)
@click.option("--history", is_flag=True, default=False, help="Show every settlement of the project.")
@click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json"], case_sensitive=False),
    default="human", show_default=True,
)
@click.option("--no-color", is_flag=True, default=False, help="Disable ANSI color output.")
def status_command(
    project_id: str,
    store_dir:  str,
    history:    bool,
    fmt:        str,
    no_color:   bool,
) -> None:
    """Show the settlement record(s) of PROJECT_ID."""
    Color.configure(not no_color)
    if not Path(store_dir).is_dir():
        _fail(f"Settlement store not found: {store_dir}", fmt)

    try:
        store = SettlementStore(Path(store_dir))
    except (OSError, ValueError, KeyError) as e:
        _fail(f"Cannot read settlement store: {e}", fmt)

    records = store.history(project_id)
    if not history:
        records = records[-1:]
    if not records:
        if fmt == "json":
            click.echo(json.dumps({"agritrust_status": {"project_id": project_id, "records": []}}))
        else:
            click.echo(Color.yellow(f"\n  No settlement for project {project_id}\n"))
        sys.exit(1)

    if fmt == "json":
        click.echo(json.dumps({
            "agritrust_status": {
                "project_id": project_id,
                "records":    [r.to_dict() for r in records],
            }
        }, indent=2))
        return

    banner(f"Settlement Status  ·  {project_id}")
    for record in records:
        _print_record(record)


def _print_record(record: SettlementRecord) -> None:
    state = record.state.value
    if state == "rejected":
        state = Color.red(state)
    elif state == "distribution_complete":
        state = Color.green(state)
    else:
        state = Color.cyan(state)

    click.echo(row_info("Settlement", record.settlement_id))
    click.echo(row_info("State", state))
    click.echo(row_info("Operator", record.operator_id))
    if record.reported_revenue:
        click.echo(row_info("Reported revenue", str(record.reported_revenue)))
    if record.evidence_digest:
        click.echo(row_info("Evidence digest", record.evidence_digest))
    if record.verifier_id:
        click.echo(row_info("Verifier", record.verifier_id))
        click.echo(row_info("Verified at", record.verification_timestamp or "-"))
    if record.rejection:
        click.echo(row_info("Rejection", Color.red(
            f"{record.rejection.check}: {record.rejection.reason}"
        )))
    if record.distribution:
        d = record.distribution
        click.echo(row_info("Platform fee", str(d.platform_fee)))
        click.echo(row_info("Operator payout", str(d.operator_payout)))
        click.echo(row_info("Contributors", str(d.total_contributor_payout)))
        click.echo(row_info("Leftover", str(d.leftover)))
    for receipt in record.distribution_receipts:
        mark = {
            TransferOutcome.SUCCESS: Color.green,
            TransferOutcome.FAILURE: Color.red,
            TransferOutcome.SKIPPED: Color.yellow,
        }[receipt.outcome](f"{receipt.outcome.value:<8}")
        detail = f"  {receipt.error}" if receipt.error else ""
        if receipt.retry_of is not None:
            detail += f"  (retry of #{receipt.retry_of})"
        click.echo(row_info(
            f"  {receipt.role.value}",
            f"{mark} {receipt.recipient}  {format_amount(receipt.amount.amount)}{detail}",
        ))
    click.echo(row_info("Audit records", str(len(record.audit_receipts))))
    click.echo(f"  {BAR_LIGHT}")


def _fail(msg: str, fmt: str) -> None:
    if fmt == "json":
        click.echo(json.dumps({"error": msg}))
    else:
        click.echo(Color.red(f"\n  ERROR: {msg}\n"), err=True)
    sys.exit(2)


def _pct(fraction: Decimal) -> str:
    text = f"{fraction * 100:.4f}".rstrip("0").rstrip(".")
    return f"{text}%"
