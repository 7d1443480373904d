import copy
from pathlib import Path

import pytest

from policy_deployment.constants import DEVNET, UpgradePolicy
from policy_deployment.exceptions import PolicyRejected
from policy_deployment.ledger import LocalLedger
from policy_deployment.params import Deployer, DeploymentParameters, Transactor
from policy_deployment.policy import DayOfWeekPolicy, MultiSignerPolicy, PolicyState
from policy_deployment.registry import get_entry, read_registry
from policy_deployment.transaction import TransactionBuilder
from tests.conftest import (
    POLICY_PACKAGE_ID,
    SATURDAY,
    StaticCompiler,
    created_object_id,
    make_package,
    publish_with_policy,
    published_package_id,
)

PARAMS_FILEPATH = Path("params.yml")


@pytest.fixture()
def make_deployer(params_config, signer, package_v1, package_v2):
    def make(config=None, signer=signer, compiler=None, **kwargs):
        kwargs.setdefault("autosign", True)
        return Deployer(
            config=config or params_config,
            path=PARAMS_FILEPATH,
            signer=signer,
            compiler=compiler or StaticCompiler(package_v1, package_v2),
            **kwargs,
        )

    return make


def test_parameters_resolve_constants(params_config):
    parameters = DeploymentParameters.from_config(params_config)
    assert parameters.network == "localnet"
    assert parameters.name == "day-of-week-example"
    assert parameters.policy_package_id == POLICY_PACKAGE_ID
    assert parameters.policy == DayOfWeekPolicy(5)
    assert parameters.package_path == Path("example")
    assert parameters.upgrade_policy == UpgradePolicy.COMPATIBLE
    assert parameters.upgrade_overrides == {}
    assert parameters.target("new_policy") == f"{POLICY_PACKAGE_ID}::day_of_week::new_policy"


@pytest.mark.parametrize(
    "section,key,value",
    [
        ("policy", "day", "$UNDEFINED_DAY"),
        ("policy", "day", "$somebody"),
        ("policy", "day", 9),
        ("policy", "module", "weekend_only"),
        ("policy", "package_id", "not-an-id"),
        ("package", "gas_budget", 0),
        ("upgrade", "policy", "anything_goes"),
    ],
)
def test_invalid_parameters(params_config, section, key, value):
    config = copy.deepcopy(params_config)
    config[section][key] = value
    with pytest.raises(DeploymentParameters.Invalid):
        DeploymentParameters.from_config(config)


def test_upgrade_policy_levels(params_config):
    config = copy.deepcopy(params_config)
    config["upgrade"]["policy"] = "additive"
    assert DeploymentParameters.from_config(config).upgrade_policy == UpgradePolicy.ADDITIVE

    config["upgrade"]["policy"] = 192
    assert DeploymentParameters.from_config(config).upgrade_policy == UpgradePolicy.DEP_ONLY


def test_deployer_variable(make_deployer, params_config, deployer_address, cosigner_keypair):
    config = copy.deepcopy(params_config)
    config["constants"]["COSIGNER"] = cosigner_keypair.address
    config["policy"] = {
        "package_id": "$POLICY_PACKAGE_ID",
        "module": "multi_signer",
        "signers": ["$deployer", "$COSIGNER"],
        "threshold": 2,
    }
    deployer = make_deployer(config=config)

    assert Deployer.get_address() == deployer_address
    assert deployer.constants.COSIGNER == cosigner_keypair.address
    assert deployer.parameters.policy == MultiSignerPolicy(
        [deployer_address, cosigner_keypair.address], threshold=2
    )


def test_network_mismatch(make_deployer, deployer_address):
    devnet_signer = LocalLedger(network=DEVNET).signer(deployer_address)
    with pytest.raises(ValueError, match="Network mismatch"):
        make_deployer(signer=devnet_signer)


def test_publish_and_upgrade(make_deployer, ledger, registry_filepath, package_v1, package_v2):
    deployer = make_deployer()
    deployer.build()
    result = deployer.publish_with_policy()
    published = deployer.finalize(result)

    assert published.package_id == published_package_id(result)
    assert published.policy_id == created_object_id(result)
    assert published.version == 1
    assert published.digest_bytes == package_v1.digest
    assert get_entry(registry_filepath, "localnet", "example") == published

    policy_object = ledger.get_object(published.policy_id)
    assert policy_object.policy == DayOfWeekPolicy(5)
    assert ledger.owners[published.policy_id] == deployer.get_address()

    ledger.set_time(SATURDAY)
    deployer.build()
    result = deployer.upgrade()
    upgraded = deployer.finalize(result)

    assert upgraded.policy_id == published.policy_id
    assert upgraded.package_id == published_package_id(result)
    assert upgraded.package_id != published.package_id
    assert upgraded.version == 2
    assert upgraded.digest_bytes == package_v2.digest
    assert read_registry(registry_filepath) == [upgraded]
    assert ledger.get_object(published.policy_id).package_id == upgraded.package_id


def test_publish_refuses_registered_package(make_deployer):
    deployer = make_deployer()
    deployer.finalize(deployer.publish_with_policy())

    with pytest.raises(ValueError, match="upgrade it instead"):
        make_deployer().publish_with_policy()


def test_upgrade_rejected_outside_policy(make_deployer, ledger, registry_filepath):
    deployer = make_deployer()
    published = deployer.finalize(deployer.publish_with_policy())

    deployer.build()
    with pytest.raises(PolicyRejected):
        deployer.upgrade()  # the ledger clock is on a Monday

    assert read_registry(registry_filepath) == [published]
    assert ledger.get_object(published.policy_id).state is PolicyState.IDLE


def test_upgrade_requires_registry_or_overrides(make_deployer):
    with pytest.raises(ValueError, match="No registry entry"):
        make_deployer().upgrade()


def test_upgrade_with_overrides(
    make_deployer, ledger, params_config, deployer_address, package_v1, package_v2
):
    result = publish_with_policy(ledger, deployer_address, package_v1, DayOfWeekPolicy(5))
    package_id, policy_id = published_package_id(result), created_object_id(result)

    config = copy.deepcopy(params_config)
    config["upgrade"].update(package_id=package_id, policy_id=policy_id)
    deployer = make_deployer(config=config, compiler=StaticCompiler(package_v2))

    ledger.set_time(SATURDAY)
    upgraded = deployer.finalize(deployer.upgrade())

    assert upgraded.policy_id == policy_id
    assert upgraded.version == 2
    assert upgraded.policy_module == "day_of_week"
    assert ledger.get_object(policy_id).package_id == upgraded.package_id


def test_successive_upgrades_follow_registry(
    make_deployer, ledger, params_config, registry_filepath, deployer_address, package_v1
):
    result = publish_with_policy(ledger, deployer_address, package_v1, DayOfWeekPolicy(5))
    package_id, policy_id = published_package_id(result), created_object_id(result)

    config = copy.deepcopy(params_config)
    config["upgrade"].update(package_id=package_id, policy_id=policy_id)
    package_v3 = make_package(b"\xa1\x1c\xeb\x0b\x06example-v3")
    compiler = StaticCompiler(make_package(b"\xa1\x1c\xeb\x0b\x06example-v2"), package_v3)
    ledger.set_time(SATURDAY)

    deployer = make_deployer(config=config, compiler=compiler)
    deployer.build()
    first = deployer.finalize(deployer.upgrade())
    assert first.package_id != package_id

    # the overrides still name the original package
    deployer = make_deployer(config=config, compiler=compiler)
    deployer.build()
    second = deployer.finalize(deployer.upgrade())

    assert second.package_id not in (package_id, first.package_id)
    assert second.version == 3
    assert second.digest_bytes == package_v3.digest
    assert read_registry(registry_filepath) == [second]
    assert ledger.get_object(policy_id).package_id == second.package_id


def test_dry_run(make_deployer, ledger, registry_filepath):
    deployer = make_deployer(dry_run=True)
    result = deployer.publish_with_policy()

    assert result["effects"]["status"]["status"] == "success"
    assert deployer.finalize(result) is None
    assert ledger.packages == {}
    assert not registry_filepath.exists()


def test_transactor_confirmation(signer, package_v1, monkeypatch):
    tx = TransactionBuilder()
    cap = tx.publish(modules=package_v1.modules, dependencies=package_v1.dependencies)
    tx.transfer_objects([cap], tx.pure(signer.address, "address"))

    transactor = Transactor(signer)
    assert transactor.get_address() == signer.address

    monkeypatch.setattr("builtins.input", lambda prompt: "n")
    with pytest.raises(SystemExit):
        transactor.transact(tx, description="publish")
    assert signer.ledger.packages == {}

    monkeypatch.setattr("builtins.input", lambda prompt: "y")
    result = transactor.transact(tx, description="publish")
    assert published_package_id(result) in signer.ledger.packages


def test_deployer_confirms_without_autosign(make_deployer, monkeypatch):
    answers = iter(["y", "y", "n"])
    monkeypatch.setattr("builtins.input", lambda prompt: next(answers))

    deployer = make_deployer(autosign=False)  # continue
    with pytest.raises(SystemExit):
        deployer.publish_with_policy()  # confirm policy parameters, refuse to sign
    assert deployer._signer.ledger.packages == {}
