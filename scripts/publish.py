#!/usr/bin/python3
import json

import click

from policy_deployment.client import get_signer
from policy_deployment.options import (
    address_option,
    autosign_option,
    dry_run_option,
    keystore_option,
    network_option,
    params_option,
)
from policy_deployment.params import Deployer


@click.command()
@network_option
@params_option
@keystore_option
@address_option
@autosign_option
@dry_run_option
def cli(network, params_filepath, keystore_filepath, address, autosign, dry_run):
    """
    Publishes a Move package and wraps its UpgradeCap in the upgrade policy
    configured in the params file. The policy object is sent to the sender.
    """
    signer = get_signer(network=network, keystore_filepath=keystore_filepath, address=address)
    deployer = Deployer.from_yaml(
        filepath=params_filepath, signer=signer, autosign=autosign, dry_run=dry_run
    )
    deployer.build()
    result = deployer.publish_with_policy()
    click.echo(json.dumps(result, indent=4))
    deployer.finalize(result)


if __name__ == "__main__":
    cli()
