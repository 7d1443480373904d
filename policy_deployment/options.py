from pathlib import Path

import click

from policy_deployment.constants import SUI_KEYSTORE_FILEPATH, SUPPORTED_NETWORKS
from policy_deployment.types import ObjectID

network_option = click.option(
    "--network",
    "-n",
    help="Sui network",
    type=click.Choice(SUPPORTED_NETWORKS),
    required=True,
)

params_option = click.option(
    "--params",
    "-p",
    "params_filepath",
    help="Deployment parameters YAML file",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)

keystore_option = click.option(
    "--keystore",
    "-k",
    "keystore_filepath",
    help="Sui keystore file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=SUI_KEYSTORE_FILEPATH,
    show_default=True,
)

address_option = click.option(
    "--address",
    "-a",
    help="Sender address; defaults to the active address of the Sui client",
    type=ObjectID(),
    required=False,
)

autosign_option = click.option(
    "--autosign",
    help="Sign and submit transactions without asking for confirmation.",
    is_flag=True,
    default=False,
)

dry_run_option = click.option(
    "--dry-run",
    help="Only simulate the transaction; nothing is written to the chain or the registry.",
    is_flag=True,
    default=False,
)
