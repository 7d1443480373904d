import json
import subprocess
from pathlib import Path
from typing import Dict, Optional

import yaml
from eth_utils import decode_hex, encode_hex, is_hex, remove_0x_prefix

from policy_deployment.constants import (
    ARTIFACTS_DIR,
    RPC_ENDPOINTS,
    SUI,
    SUI_ADDRESS_LENGTH,
    SUI_CLIENT_CONFIG_FILEPATH,
    SUPPORTED_NETWORKS,
)
from policy_deployment.exceptions import KeyNotFound


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def normalize_object_id(value: str) -> str:
    """
    Returns the canonical form of a Sui address or object ID:
    0x-prefixed, lowercase and left-padded to 32 bytes.
    """
    if not isinstance(value, str) or not is_hex(value):
        raise ValueError(f"'{value}' is not a valid object ID")
    hex_value = remove_0x_prefix(value).lower()
    if len(hex_value) > SUI_ADDRESS_LENGTH * 2:
        raise ValueError(f"'{value}' is longer than {SUI_ADDRESS_LENGTH} bytes")
    return "0x" + hex_value.rjust(SUI_ADDRESS_LENGTH * 2, "0")


def object_id_to_bytes(value: str) -> bytes:
    return decode_hex(normalize_object_id(value))


def object_id_from_bytes(value: bytes) -> str:
    if len(value) != SUI_ADDRESS_LENGTH:
        raise ValueError(f"Expected {SUI_ADDRESS_LENGTH} bytes, got {len(value)}")
    return encode_hex(value)


def get_artifact_filepath(config: Dict) -> Path:
    """Returns the filepath of the artifact file."""
    artifact_config = config.get("artifacts", {})
    artifact_dir = Path(artifact_config.get("dir", ARTIFACTS_DIR))
    filename = artifact_config.get("filename")
    if not filename:
        raise ValueError("artifact filename is not set in params file.")
    return artifact_dir / filename


def validate_config(config: Dict, network: Optional[str] = None) -> Path:
    """
    Checks that the params file names a supported network, a policy
    and a package, and returns the registry filepath for the deployment.
    When `network` is given, it must match the network of the params file.
    """
    print("Validating parameters YAML...")

    deployment = config.get("deployment")
    if not deployment:
        raise ValueError("deployment is not set in params file.")

    params_network = deployment.get("network")
    if not params_network:
        raise ValueError("network is not set in params file.")
    if params_network not in SUPPORTED_NETWORKS:
        raise ValueError(
            f"network '{params_network}' in params file is not one of "
            f"{', '.join(SUPPORTED_NETWORKS)}."
        )
    if network is not None and network != params_network:
        raise ValueError(
            f"Network mismatch: params file targets '{params_network}' "
            f"but the signer is connected to '{network}'."
        )

    policy = config.get("policy")
    if not policy:
        raise ValueError("Parameters file missing 'policy' field.")

    package = config.get("package")
    if not package:
        raise ValueError("Parameters file missing 'package' field.")
    if not package.get("name"):
        raise ValueError("package name is not set in params file.")

    return get_artifact_filepath(config=config)


def registry_filepath_from_network(network: str) -> Path:
    p = ARTIFACTS_DIR / f"{network}.json"
    if not p.exists():
        raise ValueError(f"No registry found for network '{network}'")

    return p


def load_client_config(filepath: Path = SUI_CLIENT_CONFIG_FILEPATH) -> dict:
    """Loads the Sui client configuration (client.yaml), if present."""
    if not filepath.exists():
        return dict()
    return _load_yaml(filepath) or dict()


def get_active_address(
    client_config: Optional[dict] = None, sui_binary: str = SUI
) -> str:
    """
    Returns the active address of the Sui client. The client configuration
    is consulted first; the CLI is asked only when it has no active address.
    """
    client_config = client_config if client_config is not None else load_client_config()
    active_address = client_config.get("active_address")
    if active_address:
        return normalize_object_id(active_address)

    try:
        output = subprocess.run(
            [sui_binary, "client", "active-address"],
            capture_output=True,
            text=True,
            check=True,
        ).stdout
    except FileNotFoundError:
        raise KeyNotFound(f"No active address configured and '{sui_binary}' executable not found.")
    except subprocess.CalledProcessError as e:
        raise KeyNotFound(
            f"'{sui_binary} client active-address' failed with exit code {e.returncode}:\n"
            f"{e.stderr}"
        )
    try:
        return normalize_object_id(output.strip())
    except ValueError:
        raise KeyNotFound(f"The Sui client reported no usable active address: {output.strip()!r}")


def get_rpc_url(network: str, client_config: Optional[dict] = None) -> str:
    """
    Returns the RPC endpoint for a network, preferring the environment of the
    same alias in the Sui client configuration over the public defaults.
    """
    client_config = client_config if client_config is not None else load_client_config()
    for env in client_config.get("envs") or []:
        if env.get("alias") == network and env.get("rpc"):
            return env["rpc"]

    try:
        return RPC_ENDPOINTS[network]
    except KeyError:
        raise ValueError(f"No RPC endpoint known for network '{network}'")
