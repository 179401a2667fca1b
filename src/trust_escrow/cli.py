"""trust-escrow command line."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
import yaml

from .config import EngineConfig
from .errors import EscrowError
from .fees import FeeSchedule, calculate_fees, seller_payout
from .scenario import ScenarioError, run_path

logger = logging.getLogger("trust_escrow")


class PlainDumper(yaml.SafeDumper):
    pass


def _str_representer(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    return dumper.represent_scalar("tag:yaml.org,2002:str", data, style=None)


PlainDumper.add_representer(str, _str_representer)


def dump_yaml(data: Dict[str, Any]) -> str:
    return yaml.dump(data, Dumper=PlainDumper, sort_keys=False, width=4096)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Escrow lifecycle tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@main.command()
@click.argument("amount", type=int)
def fees(amount: int) -> None:
    """Print the fee breakdown for AMOUNT (smallest currency unit)."""
    config = EngineConfig.from_env()
    schedule = FeeSchedule(
        escrow_fee_bps=config.escrow_fee_bps,
        platform_fee_bps=config.platform_fee_bps,
        floor=config.fee_floor,
        ceiling=config.fee_ceiling,
    )
    try:
        breakdown = calculate_fees(amount, schedule)
    except EscrowError as e:
        raise click.BadParameter(e.message, param_hint="AMOUNT") from e

    click.echo(f"amount:        {amount}")
    click.echo(f"escrow fee:    {breakdown.escrow_fee}")
    click.echo(f"platform fee:  {breakdown.platform_fee}")
    click.echo(f"total fee:     {breakdown.total_fee}")
    click.echo(f"buyer pays:    {amount + breakdown.total_fee}")
    click.echo(f"seller gets:   {seller_payout(amount, breakdown)}")


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--report", "report_path", type=click.Path(), default=None,
              help="Write a YAML report to this file")
@click.option("--stop-on-failure", is_flag=True, help="Stop after the first failing scenario")
def run(path: str, report_path: Optional[str], stop_on_failure: bool) -> None:
    """Run scenario files (a YAML file or a directory of them)."""
    config = EngineConfig.from_env()
    try:
        results = run_path(path, config, stop_on_failure)
    except ScenarioError as e:
        logger.error(str(e))
        sys.exit(1)

    if not results:
        logger.error(f"No scenarios found in {path}")
        sys.exit(1)

    failed = 0
    for result in results:
        click.echo(f"{'PASS' if result.passed else 'FAIL'}  {result.name}")
        for failure in result.failures:
            click.echo(f"      {failure}")
        if not result.passed:
            failed += 1

    click.echo(f"\n{len(results) - failed}/{len(results)} scenarios passed")

    if report_path:
        report = {
            "total": len(results),
            "passed": len(results) - failed,
            "failed": failed,
            "scenarios": [r.to_dict() for r in results],
        }
        Path(report_path).write_text(dump_yaml(report))
        logger.info(f"Report written to {report_path}")

    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
