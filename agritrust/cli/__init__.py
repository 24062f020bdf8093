"""
agritrust/cli/__init__.py

AgriTrust CLI - root Click command group, registered in pyproject.toml as:

    [project.scripts]
    agritrust = "agritrust.cli:cli"

Adding a new command:
    1. Create agritrust/cli/your_command.py with a @click.command()
    2. Import it here
    3. cli.add_command(your_command)
"""

import logging

import click

from agritrust.cli.settle import status_command, waterfall_command
from agritrust.cli.verify import verify_command


@click.group()
@click.version_option(package_name="agritrust")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for library messages on stderr.",
)
def cli(log_level: str) -> None:
    """
    AgriTrust - settlement verification and profit distribution.

    \b
    Commands:
      verify      Verify an audit ledger: chain, signatures, schema.
      waterfall   Compute a profit waterfall without moving funds.
      status      Show a project's settlement record.

    \b
    Quick start:
      agritrust verify .agritrust/ledger
      agritrust waterfall --revenue 58500 --contributor rA=6000 --contributor rB=4000
      agritrust status proj-7 --store .agritrust/settlements
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


cli.add_command(verify_command)
cli.add_command(waterfall_command)
cli.add_command(status_command)
