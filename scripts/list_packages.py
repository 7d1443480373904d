#!/usr/bin/python3


from typing import List, Optional, Tuple

import click

from policy_deployment.constants import SUPPORTED_NETWORKS
from policy_deployment.registry import RegistryEntry, read_registry
from policy_deployment.utils import registry_filepath_from_network


def _get_registry_entries(network: Optional[str] = None) -> List[Tuple[str, List[RegistryEntry]]]:
    """Parse the registry files for the given network or all supported networks."""
    registry_entries = list()
    for sui_network in SUPPORTED_NETWORKS:
        if network and network != sui_network:
            continue
        try:
            registry_filepath = registry_filepath_from_network(network=sui_network)
        except ValueError:
            if network:
                raise
            continue
        entries = read_registry(filepath=registry_filepath)
        registry_entries.append((sui_network, entries))
    return registry_entries


def _display_registry_entries(registry_entries: List[Tuple[str, List[RegistryEntry]]]) -> None:
    """Display registry entries grouped by network."""
    for network, entries in registry_entries:
        click.secho(f"\n{network.capitalize()}", fg="green")
        for index, entry in enumerate(entries, start=1):
            click.secho(f"    {index}. {entry.name} v{entry.version} {entry.package_id}", fg="cyan")
            click.secho(
                f"       {entry.policy_module} policy {entry.policy_id}", fg="yellow"
            )


@click.command(name="list-packages")
@click.option(
    "--network",
    "-n",
    help="Sui network",
    type=click.Choice(SUPPORTED_NETWORKS),
)
def cli(network):
    """List all policy-governed packages in the registry. Optionally filter by network."""
    registry_entries = _get_registry_entries(network)
    _display_registry_entries(registry_entries)


if __name__ == "__main__":
    cli()
