import json
from collections import OrderedDict, defaultdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from eth_utils import decode_hex, encode_hex

from policy_deployment.constants import POLICY_STRUCT_NAME
from policy_deployment.utils import _load_json, normalize_object_id

Network = str
PackageName = str


STANDARD_REGISTRY_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


class RegistryEntry(NamedTuple):
    """Represents a single policy-governed package in a deployment registry."""

    network: Network
    name: PackageName
    package_id: str
    policy_id: str
    policy_package_id: str
    policy_module: str
    version: int
    digest: str
    tx_digest: str
    deployer: str

    @property
    def digest_bytes(self) -> bytes:
        return decode_hex(self.digest)


def _find_changes(result: Dict[str, Any], change_type: str) -> List[Dict[str, Any]]:
    return [c for c in result.get("objectChanges") or [] if c.get("type") == change_type]


def _published_package(result: Dict[str, Any]) -> Dict[str, Any]:
    published = _find_changes(result, "published")
    if len(published) != 1:
        raise ValueError(
            f"Expected exactly one published package in transaction result, got {len(published)}"
        )
    return published[0]


def entry_from_publish(
    result: Dict[str, Any],
    network: Network,
    name: PackageName,
    policy_package_id: str,
    policy_module: str,
    deployer: str,
    digest: bytes,
) -> RegistryEntry:
    """Creates a registry entry from the result of a publish-with-policy transaction."""
    package = _published_package(result)
    policy_package_id = normalize_object_id(policy_package_id)
    policy_type = f"{policy_package_id}::{policy_module}::{POLICY_STRUCT_NAME}"
    created_policies = [
        c
        for c in _find_changes(result, "created")
        if _normalize_type(c.get("objectType")) == policy_type
    ]
    if len(created_policies) != 1:
        raise ValueError(
            f"Expected exactly one created {policy_type} in transaction result, "
            f"got {len(created_policies)}"
        )

    return RegistryEntry(
        network=network,
        name=name,
        package_id=normalize_object_id(package["packageId"]),
        policy_id=normalize_object_id(created_policies[0]["objectId"]),
        policy_package_id=normalize_object_id(policy_package_id),
        policy_module=policy_module,
        version=int(package.get("version", 1)),
        digest=encode_hex(digest),
        tx_digest=result["digest"],
        deployer=normalize_object_id(deployer),
    )


def entry_from_upgrade(
    result: Dict[str, Any], previous: RegistryEntry, digest: bytes
) -> RegistryEntry:
    """Returns `previous` updated with the package produced by an upgrade transaction."""
    package = _published_package(result)
    return previous._replace(
        package_id=normalize_object_id(package["packageId"]),
        version=int(package.get("version", previous.version + 1)),
        digest=encode_hex(digest),
        tx_digest=result["digest"],
    )


def _normalize_type(object_type: Optional[str]) -> Optional[str]:
    """Normalizes the address part of a `<address>::<module>::<struct>` type."""
    if not object_type or "::" not in object_type:
        return object_type
    address, rest = object_type.split("::", 1)
    try:
        return f"{normalize_object_id(address)}::{rest}"
    except ValueError:
        return object_type


def read_registry(filepath: Path) -> List[RegistryEntry]:
    with open(filepath, "r") as file:
        data = json.load(file)
    registry_entries = list()
    for network, entries in data.items():
        for package_name, artifacts in entries.items():
            registry_entry = RegistryEntry(
                network=network,
                name=package_name,
                package_id=artifacts["package_id"],
                policy_id=artifacts["policy_id"],
                policy_package_id=artifacts["policy_package_id"],
                policy_module=artifacts["policy_module"],
                version=int(artifacts["version"]),
                digest=artifacts["digest"],
                tx_digest=artifacts["tx_digest"],
                deployer=artifacts["deployer"],
            )
            registry_entries.append(registry_entry)
    return registry_entries


def _serialize(entries: List[RegistryEntry]) -> Dict[str, Dict[str, Any]]:
    # Sort registry entries to enforce common order
    entries = sorted(entries, key=lambda entry: (entry.network, entry.name))

    data = defaultdict(dict)
    for entry in entries:
        data[entry.network][entry.name] = {
            "package_id": entry.package_id,
            "policy_id": entry.policy_id,
            "policy_package_id": entry.policy_package_id,
            "policy_module": entry.policy_module,
            "version": int(entry.version),
            "digest": entry.digest,
            "tx_digest": entry.tx_digest,
            "deployer": entry.deployer,
        }
    return data


def _dump(data: Dict, filepath: Path) -> None:
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, "w") as file:
        json.dump(data, file, **STANDARD_REGISTRY_JSON_FORMAT)


def write_registry(entries: List[RegistryEntry], filepath: Path, silent: bool = False) -> Path:
    """Writes a deployment registry to a file."""

    if not entries:
        print("No entries provided.")
        return filepath

    data = _serialize(entries)

    # If the file already exists, attempt to merge the data, if not create a new file
    if filepath.exists():
        if not silent:
            print(f"Updating existing registry at {filepath}.")
        existing_data = _load_json(filepath)

        overlapping = [
            f"{network}/{name}"
            for network, packages in data.items()
            for name in packages
            if name in existing_data.get(network, {})
        ]
        if overlapping:
            filepath = filepath.with_suffix(".unmerged.json")
            if not silent:
                print(
                    "Cannot merge registries with overlapping packages "
                    f"({', '.join(overlapping)}).\n"
                    f"Writing to {filepath} to avoid overwriting existing data."
                )
        else:
            for network, packages in data.items():
                existing_data.setdefault(network, {}).update(packages)
            data = existing_data
    elif not silent:
        print(f"Creating new registry at {filepath}.")

    _dump(data, filepath)
    return filepath


def update_registry(entry: RegistryEntry, filepath: Path) -> Path:
    """Replaces the registry entry of the same network and package name."""
    entries = read_registry(filepath) if filepath.exists() else list()
    entries = [e for e in entries if (e.network, e.name) != (entry.network, entry.name)]
    entries.append(entry)
    print(f"Updating {entry.name} on {entry.network} in registry at {filepath}.")
    _dump(_serialize(entries), filepath)
    return filepath


def get_entry(filepath: Path, network: Network, name: PackageName) -> Optional[RegistryEntry]:
    """Returns the registry entry for a package, or None if there is no registry or entry."""
    if not filepath.exists():
        return None
    for entry in read_registry(filepath):
        if entry.network == network and entry.name == name:
            return entry
    return None


class ConflictResolution(Enum):
    USE_1 = 1
    USE_2 = 2


def _select_conflict_resolution(
    registry_1_entry, registry_1_filepath, registry_2_entry, registry_2_filepath
) -> ConflictResolution:
    print(f"\n! Conflict detected for {registry_1_entry.name} on {registry_1_entry.network}:")
    print(
        f"[1]: {registry_1_entry.name} at {registry_1_entry.package_id} "
        f"(v{registry_1_entry.version}) for {registry_1_filepath}"
    )
    print(
        f"[2]: {registry_2_entry.name} at {registry_2_entry.package_id} "
        f"(v{registry_2_entry.version}) for {registry_2_filepath}"
    )
    print("[A]: Abort merge")

    valid_str_answers = [
        str(ConflictResolution.USE_1.value),
        str(ConflictResolution.USE_2.value),
        "A",
    ]
    answer = None
    while answer not in valid_str_answers:
        answer = input(f"Merge resolution, {valid_str_answers}? ")

    if answer == "A":
        print("Merge Aborted!")
        exit(-1)
    return ConflictResolution(int(answer))


def merge_registries(
    registry_1_filepath: Path,
    registry_2_filepath: Path,
    output_filepath: Path,
    deprecated_packages: Optional[List[PackageName]] = None,
) -> Path:
    """Merges two deployment registries, asking how to resolve conflicting entries."""
    deprecated_packages = deprecated_packages or []

    reg1 = defaultdict(OrderedDict)
    reg2 = defaultdict(OrderedDict)

    for e in read_registry(registry_1_filepath):
        if e.name in deprecated_packages:
            continue
        reg1[e.network][e.name] = e

    for e in read_registry(registry_2_filepath):
        if e.name in deprecated_packages:
            continue
        reg2[e.network][e.name] = e

    merged: List[RegistryEntry] = list()

    for network in set(reg1) | set(reg2):
        reg1_entries, reg2_entries = reg1.get(network, {}), reg2.get(network, {})
        for name in set(reg1_entries) | set(reg2_entries):
            entry_1, entry_2 = reg1_entries.get(name), reg2_entries.get(name)
            if entry_1 and entry_2 and entry_1 != entry_2:
                if entry_1.policy_id == entry_2.policy_id:
                    # same policy object, the higher version is the most recent upgrade
                    selected_entry = max(entry_1, entry_2, key=lambda e: e.version)
                else:
                    resolution = _select_conflict_resolution(
                        registry_1_entry=entry_1,
                        registry_2_entry=entry_2,
                        registry_1_filepath=registry_1_filepath,
                        registry_2_filepath=registry_2_filepath,
                    )
                    selected_entry = entry_1 if resolution == ConflictResolution.USE_1 else entry_2
            else:
                selected_entry = entry_1 or entry_2
            merged.append(selected_entry)

    if output_filepath.exists():
        output_filepath.unlink()
    write_registry(entries=merged, filepath=output_filepath)
    print(f"Merged registry output to {output_filepath}")
    return output_filepath
