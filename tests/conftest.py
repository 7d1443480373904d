import base64
from datetime import datetime, timezone

import pytest

from policy_deployment.build import CompiledPackage, Compiler, compute_digest
from policy_deployment.constants import LOCALNET, NEW_POLICY_FUNCTION
from policy_deployment.keystore import Ed25519Keypair
from policy_deployment.ledger import LocalLedger
from policy_deployment.policy import DayOfWeekPolicy, ExecutionContext, Policy
from policy_deployment.transaction import TransactionBuilder
from policy_deployment.utils import normalize_object_id

# Common constants
POLICY_PACKAGE_ID = "0x911a11d99dfe9dc4bec24bfb669636445a68c2763f67b902dee03cfa1557a8c1"
SYSTEM_DEPENDENCIES = ("0x1", "0x2")

# 2024-01-06 is a Saturday
SATURDAY = datetime(2024, 1, 6, 12, 0, tzinfo=timezone.utc)
SUNDAY = datetime(2024, 1, 7, 12, 0, tzinfo=timezone.utc)
MONDAY = datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc)


# Utility functions
def make_package(*modules: bytes, dependencies=SYSTEM_DEPENDENCIES) -> CompiledPackage:
    dependencies = [normalize_object_id(dependency) for dependency in dependencies]
    return CompiledPackage(
        modules=[base64.b64encode(module).decode("ascii") for module in modules],
        dependencies=dependencies,
        digest=compute_digest(list(modules), dependencies),
    )


def publish_with_policy(ledger, sender: str, package: CompiledPackage, policy: Policy) -> dict:
    tx = TransactionBuilder()
    cap = tx.publish(modules=package.modules, dependencies=package.dependencies)
    arguments = [tx.pure(value, type_tag) for value, type_tag in policy.arguments()]
    policy_cap = tx.move_call(
        f"{POLICY_PACKAGE_ID}::{policy.MODULE}::{NEW_POLICY_FUNCTION}", [cap, *arguments]
    )
    tx.transfer_objects([policy_cap], tx.pure(sender, "address"))
    return ledger.execute(tx, sender=sender)


def created_object_id(result: dict) -> str:
    (created,) = [c for c in result["objectChanges"] if c["type"] == "created"]
    return created["objectId"]


def published_package_id(result: dict) -> str:
    (published,) = [c for c in result["objectChanges"] if c["type"] == "published"]
    return published["packageId"]


class StaticCompiler(Compiler):
    """Hands out pre-built packages in order; the last one is repeated."""

    def __init__(self, *packages: CompiledPackage):
        self.packages = list(packages)
        self.paths = list()

    def compile(self, path):
        self.paths.append(path)
        if len(self.packages) > 1:
            return self.packages.pop(0)
        return self.packages[0]


# Fixtures
@pytest.fixture(scope="session")
def deployer_keypair():
    return Ed25519Keypair.from_secret_key(bytes(range(32)))


@pytest.fixture(scope="session")
def cosigner_keypair():
    return Ed25519Keypair.from_secret_key(bytes(range(32, 64)))


@pytest.fixture
def deployer_address(deployer_keypair):
    return deployer_keypair.address


@pytest.fixture
def ledger():
    ledger = LocalLedger(network=LOCALNET, timestamp_ms=ExecutionContext.at(MONDAY).timestamp_ms)
    ledger.register_policy_package(POLICY_PACKAGE_ID)
    return ledger


@pytest.fixture
def signer(ledger, deployer_address):
    return ledger.signer(deployer_address)


@pytest.fixture
def package_v1():
    return make_package(b"\xa1\x1c\xeb\x0b\x06example-v1")


@pytest.fixture
def package_v2():
    return make_package(b"\xa1\x1c\xeb\x0b\x06example-v2", b"\xa1\x1c\xeb\x0b\x06helpers")


@pytest.fixture
def saturday_policy():
    return DayOfWeekPolicy(5)


@pytest.fixture
def params_config(tmp_path):
    return {
        "deployment": {"name": "day-of-week-example", "network": LOCALNET},
        "artifacts": {"dir": str(tmp_path), "filename": "localnet.json"},
        "constants": {"POLICY_PACKAGE_ID": POLICY_PACKAGE_ID, "UPGRADE_DAY": 5},
        "policy": {
            "package_id": "$POLICY_PACKAGE_ID",
            "module": "day_of_week",
            "day": "$UPGRADE_DAY",
        },
        "package": {"name": "example", "path": "example"},
        "upgrade": {"policy": "compatible"},
    }


@pytest.fixture
def registry_filepath(tmp_path):
    return tmp_path / "localnet.json"
