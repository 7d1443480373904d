#!/usr/bin/python3
"""
Rehearses a publish followed by a policy-gated upgrade on an in-memory ledger.

Usage:
 > python scripts/simulate_upgrade.py -p policy_deployment/params/devnet/day-of-week.yml -d saturday
"""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import click

from policy_deployment.constants import Weekday
from policy_deployment.exceptions import PolicyRejected
from policy_deployment.keystore import Ed25519Keypair
from policy_deployment.ledger import LocalLedger
from policy_deployment.options import params_option
from policy_deployment.params import Deployer
from policy_deployment.registry import read_registry
from policy_deployment.types import WeekdayType
from policy_deployment.utils import _load_yaml


def _next_weekday(day: Weekday, after: datetime) -> datetime:
    days_ahead = (int(day) - after.weekday()) % 7
    return (after + timedelta(days=days_ahead)).replace(hour=12, minute=0, second=0, microsecond=0)


@click.command()
@params_option
@click.option(
    "--upgrade-day",
    "-d",
    help="Weekday on which the upgrade is attempted",
    type=WeekdayType(),
    default=Weekday.SATURDAY.name.lower(),
    show_default=True,
)
def cli(params_filepath, upgrade_day):
    """Publishes and then upgrades a package on a local ledger, printing every effect."""
    config = _load_yaml(params_filepath)
    # the simulation upgrades the package it has just published
    for key in ("package_id", "policy_id"):
        (config.get("upgrade") or {}).pop(key, None)
    ledger = LocalLedger(network=config["deployment"]["network"])

    sender = Ed25519Keypair.generate()
    signer = ledger.signer(sender.address)
    registry_filepath = Path(tempfile.mkdtemp()) / "simulation.json"

    deployer = Deployer(
        config=config,
        path=params_filepath,
        signer=signer,
        autosign=True,
        registry_filepath=registry_filepath,
    )
    ledger.register_policy_package(deployer.parameters.policy_package_id)
    deployer.build()
    published = deployer.publish_with_policy()
    click.echo(json.dumps(published, indent=4))
    deployer.finalize(published)

    ledger.set_time(_next_weekday(upgrade_day, after=datetime.now(tz=timezone.utc)))
    click.secho(f"\nAttempting upgrade on {upgrade_day.name.capitalize()}", fg="yellow")
    try:
        upgraded = deployer.upgrade()
    except PolicyRejected as e:
        raise click.ClickException(f"Upgrade rejected: {e}")
    click.echo(json.dumps(upgraded, indent=4))
    deployer.finalize(upgraded)

    for entry in read_registry(registry_filepath):
        click.secho(f"{entry.name} v{entry.version} at {entry.package_id}", fg="green")


if __name__ == "__main__":
    cli()
