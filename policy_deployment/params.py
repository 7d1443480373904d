import typing
from abc import ABC, abstractmethod
from collections import OrderedDict, namedtuple
from pathlib import Path
from typing import Any, Dict, Optional

from policy_deployment.build import CompiledPackage, Compiler, SuiMoveCompiler
from policy_deployment.confirm import _confirm_resolution, _confirm_transaction, _continue
from policy_deployment.constants import (
    AUTHORIZE_UPGRADE_FUNCTION,
    COMMIT_UPGRADE_FUNCTION,
    DEFAULT_GAS_BUDGET,
    EXECUTION_OPTIONS,
    NEW_POLICY_FUNCTION,
    UpgradePolicy,
)
from policy_deployment.policy import Policy, policy_from_config
from policy_deployment.registry import (
    RegistryEntry,
    entry_from_publish,
    entry_from_upgrade,
    get_entry,
    update_registry,
    write_registry,
)
from policy_deployment.transaction import TransactionBuilder
from policy_deployment.utils import _load_yaml, normalize_object_id, validate_config

POLICY_SECTION = "policy"
PACKAGE_SECTION = "package"
UPGRADE_SECTION = "upgrade"

PARAMETER_SECTIONS = (POLICY_SECTION, PACKAGE_SECTION, UPGRADE_SECTION)


class VariableContext:
    def __init__(self, section: str, constants: typing.Dict[str, Any] = None):
        self.section = section
        self.constants = constants or dict()


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        result = isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)
        return result


class DeployerAddress(Variable):
    DEPLOYER_INDICATOR = "deployer"

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is a special deployer variable."""
        return value == cls.DEPLOYER_INDICATOR

    def resolve(self) -> Any:
        deployer_address = Deployer.get_address()
        if deployer_address is None:
            raise ValueError("$deployer cannot be resolved before a deployer address is set.")
        return deployer_address


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            self.constant_value = context.constants[constant_name]
        except KeyError:
            raise ValueError(
                f"Constant '{constant_name}' used in '{context.section}' "
                "not found in deployment file."
            )

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable is a deployment constant."""
        return value.isupper()

    def resolve(self) -> Any:
        return self.constant_value


def _resolve_param(value: Any) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [_resolve_param(v) for v in value]

    if isinstance(value, Variable):
        return value.resolve()

    return value  # literally a value


def _resolve_params(parameters: OrderedDict) -> OrderedDict:
    resolved_parameters = OrderedDict()
    for name, value in parameters.items():
        resolved_parameters[name] = _resolve_param(value)

    return resolved_parameters


def _variable_from_value(variable: Any, context: VariableContext) -> Variable:
    variable = variable.strip(Variable.VARIABLE_PREFIX)
    if DeployerAddress.is_deployer(variable):
        return DeployerAddress()
    elif Constant.is_constant(variable):
        return Constant(variable, context)
    else:
        raise ValueError(f"Variable ${variable} in '{context.section}' is not resolvable.")


def _process_raw_value(value: Any, variable_context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, variable_context) for v in value]

    if Variable.is_variable(value):
        value = _variable_from_value(value, variable_context)

    return value


def _process_raw_values(values: OrderedDict, variable_context: VariableContext) -> OrderedDict:
    processed_parameters = OrderedDict()
    for name, value in values.items():
        processed_parameters[name] = _process_raw_value(value, variable_context)

    return processed_parameters


class DeploymentParameters:
    """Represents the policy, package and upgrade parameters of one params file."""

    class Invalid(Exception):
        """Raised when the deployment parameters are invalid"""

    def __init__(self, network: str, name: str, sections: OrderedDict):
        self.network = network
        self.name = name
        self.sections = sections
        try:
            self._validate()
        except ValueError as e:
            raise self.Invalid(str(e)) from e

    @classmethod
    def from_config(cls, config: typing.Dict) -> "DeploymentParameters":
        """Loads the deployment parameters from a params config."""
        print("Processing deployment parameters...")
        deployment = config["deployment"]
        constants = config.get("constants")
        sections = OrderedDict()
        for section in PARAMETER_SECTIONS:
            raw_values = config.get(section) or dict()
            if not isinstance(raw_values, dict):
                raise cls.Invalid(f"Malformed '{section}' section in parameters YAML.")
            try:
                sections[section] = _process_raw_values(
                    OrderedDict(raw_values), VariableContext(section=section, constants=constants)
                )
            except ValueError as e:
                raise cls.Invalid(str(e)) from e

        return cls(network=deployment["network"], name=deployment.get("name"), sections=sections)

    def _validate(self) -> None:
        # eager resolution surfaces bad values before anything is built or signed
        self.policy_package_id
        self.policy
        self.package_path
        self.gas_budget
        self.upgrade_policy

    def resolve(self, section: str) -> OrderedDict:
        """Resolves the parameters of a single section."""
        return _resolve_params(self.sections[section])

    @property
    def policy_package_id(self) -> str:
        package_id = self.resolve(POLICY_SECTION).get("package_id")
        if not package_id:
            raise ValueError("policy package_id is not set in params file.")
        return normalize_object_id(package_id)

    @property
    def policy_module(self) -> str:
        return self.policy.MODULE

    @property
    def policy(self) -> Policy:
        return policy_from_config(self.resolve(POLICY_SECTION))

    @property
    def package_name(self) -> str:
        return self.resolve(PACKAGE_SECTION)["name"]

    @property
    def package_path(self) -> Path:
        path = self.resolve(PACKAGE_SECTION).get("path")
        if not path:
            raise ValueError("package path is not set in params file.")
        return Path(path)

    @property
    def gas_budget(self) -> int:
        gas_budget = int(self.resolve(PACKAGE_SECTION).get("gas_budget", DEFAULT_GAS_BUDGET))
        if gas_budget <= 0:
            raise ValueError(f"gas_budget must be positive, got {gas_budget}.")
        return gas_budget

    @property
    def upgrade_policy(self) -> UpgradePolicy:
        level = self.resolve(UPGRADE_SECTION).get("policy", UpgradePolicy.COMPATIBLE.name)
        if isinstance(level, int):
            return UpgradePolicy(level)
        try:
            return UpgradePolicy[str(level).upper()]
        except KeyError:
            raise ValueError(f"Unknown upgrade policy '{level}'.")

    @property
    def upgrade_overrides(self) -> Dict[str, str]:
        """Package and policy object ids to upgrade when the registry has no entry yet."""
        upgrade = self.resolve(UPGRADE_SECTION)
        overrides = dict()
        for key in ("package_id", "policy_id"):
            if upgrade.get(key):
                overrides[key] = normalize_object_id(upgrade[key])
        return overrides

    def target(self, function: str) -> str:
        return f"{self.policy_package_id}::{self.policy_module}::{function}"


class Transactor:
    """
    Represents a signer plus annotated and confirmed transaction execution.
    """

    def __init__(self, signer, autosign: bool = False):
        self._signer = signer
        if autosign:
            print("WARNING: Autosign is enabled. Transactions will be signed automatically.")
        self._autosign = autosign

    def get_address(self) -> str:
        """Returns the transactor address."""
        return self._signer.address

    def transact(
        self,
        builder: TransactionBuilder,
        description: str = "transaction",
        gas_budget: Optional[int] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        print(f"\nTransacting {description} from {self._signer.address}\n{builder.describe()}")
        if dry_run:
            print("(i) Dry run: the transaction is simulated and not submitted.")
            return self._signer.dry_run(builder, gas_budget=gas_budget)

        if not self._autosign:
            _confirm_transaction(description)

        return self._signer.sign_and_execute(
            builder, options=EXECUTION_OPTIONS, gas_budget=gas_budget
        )


class Deployer(Transactor):
    """
    Represents a signer plus the parameters of one policy-governed package,
    plus validated and annotated publish and upgrade transactions.
    """

    __DEPLOYER_ADDRESS: str = None

    def __init__(
        self,
        config: typing.Dict,
        path: Path,
        signer,
        autosign: bool = False,
        dry_run: bool = False,
        compiler: Optional[Compiler] = None,
        registry_filepath: Optional[Path] = None,
    ):
        super().__init__(signer, autosign)
        self._set_address(signer.address)

        self.path = path
        self.config = config
        artifact_filepath = validate_config(config=self.config, network=signer.network)
        self.registry_filepath = registry_filepath or artifact_filepath
        self.parameters = DeploymentParameters.from_config(self.config)

        # Little trick to expose constants as attributes (e.g., deployer.constants.FOO)
        constants = config.get("constants") or {}
        _Constants = namedtuple("_Constants", list(constants))
        self.constants = _Constants(**constants)

        self.compiler = compiler or SuiMoveCompiler()
        self.dry_run = dry_run
        self.compiled: Optional[CompiledPackage] = None
        self._previous: Optional[RegistryEntry] = None
        self._print_deployment_info()

        if not self._autosign:
            # Confirms the start of the deployment.
            _continue()

    @classmethod
    def from_yaml(cls, filepath: Path, *args, **kwargs) -> "Deployer":
        config = _load_yaml(filepath)
        return cls(config=config, path=filepath, *args, **kwargs)

    @classmethod
    def get_address(cls) -> str:
        """Returns the deployer address."""
        return cls.__DEPLOYER_ADDRESS

    @classmethod
    def _set_address(cls, address: str) -> None:
        """Sets the deployer address."""
        cls.__DEPLOYER_ADDRESS = address

    @property
    def network(self) -> str:
        return self.parameters.network

    @property
    def package_name(self) -> str:
        return self.parameters.package_name

    def build(self) -> CompiledPackage:
        self.compiled = self.compiler.compile(self.parameters.package_path)
        print(
            f"(i) Built {self.package_name}: {len(self.compiled.modules)} module(s), "
            f"digest {self.compiled.digest.hex()}"
        )
        return self.compiled

    def publish_with_policy(self) -> Dict[str, Any]:
        """
        Publishes the package and wraps its UpgradeCap in the configured policy,
        transferring the policy object to the deployer, all in one transaction.
        """
        existing = get_entry(self.registry_filepath, self.network, self.package_name)
        if existing and not self.dry_run:
            raise ValueError(
                f"{self.package_name} is already published on {self.network} "
                f"at {existing.package_id}; upgrade it instead."
            )

        policy = self.parameters.policy
        if not self._autosign:
            _confirm_resolution(self.parameters.resolve(POLICY_SECTION), f"{policy.MODULE} policy")

        compiled = self.compiled or self.build()
        tx = TransactionBuilder()
        upgrade_cap = tx.publish(modules=compiled.modules, dependencies=compiled.dependencies)
        policy_arguments = [tx.pure(value, type_tag) for value, type_tag in policy.arguments()]
        policy_cap = tx.move_call(
            self.parameters.target(NEW_POLICY_FUNCTION), [upgrade_cap, *policy_arguments]
        )
        tx.transfer_objects([policy_cap], tx.pure(self.get_address(), "address"))

        self._previous = None
        return self.transact(
            tx,
            description=f"publish of {self.package_name} under {policy!r}",
            gas_budget=self.parameters.gas_budget,
            dry_run=self.dry_run,
        )

    def _upgrade_target(self) -> RegistryEntry:
        entry = get_entry(self.registry_filepath, self.network, self.package_name)
        if entry is not None:
            return entry

        overrides = self.parameters.upgrade_overrides
        if set(overrides) != {"package_id", "policy_id"}:
            raise ValueError(
                f"No registry entry for {self.package_name} on {self.network} "
                f"in {self.registry_filepath}; set upgrade package_id and policy_id "
                "in the params file instead."
            )
        return RegistryEntry(
            network=self.network,
            name=self.package_name,
            package_id=overrides["package_id"],
            policy_id=overrides["policy_id"],
            policy_package_id=self.parameters.policy_package_id,
            policy_module=self.parameters.policy_module,
            version=0,
            digest="0x",
            tx_digest="",
            deployer=self.get_address(),
        )

    def upgrade(self) -> Dict[str, Any]:
        """
        Authorizes an upgrade through the policy object, upgrades the package with
        the resulting ticket and commits the receipt, all in one transaction.
        """
        target = self._upgrade_target()
        upgrade_policy = self.parameters.upgrade_policy
        if not self._autosign:
            _confirm_resolution(
                OrderedDict(
                    package_id=target.package_id,
                    policy_id=target.policy_id,
                    policy=upgrade_policy.name,
                ),
                f"upgrade of {self.package_name}",
            )

        compiled = self.compiled or self.build()
        tx = TransactionBuilder()
        cap = tx.object(target.policy_id)
        ticket = tx.move_call(
            f"{target.policy_package_id}::{target.policy_module}::{AUTHORIZE_UPGRADE_FUNCTION}",
            [cap, tx.pure(int(upgrade_policy), "u8"), tx.pure(compiled.digest, "vector<u8>")],
        )
        receipt = tx.upgrade(
            modules=compiled.modules,
            dependencies=compiled.dependencies,
            package_id=target.package_id,
            ticket=ticket,
        )
        tx.move_call(
            f"{target.policy_package_id}::{target.policy_module}::{COMMIT_UPGRADE_FUNCTION}",
            [cap, receipt],
        )

        self._previous = target
        return self.transact(
            tx,
            description=f"upgrade of {self.package_name} at {target.package_id}",
            gas_budget=self.parameters.gas_budget,
            dry_run=self.dry_run,
        )

    def finalize(self, result: Dict[str, Any]) -> Optional[RegistryEntry]:
        """Records the published or upgraded package in the registry."""
        if self.dry_run:
            print("(i) Dry run: registry not updated.")
            return None

        if self._previous is not None:
            entry = entry_from_upgrade(result, previous=self._previous, digest=self.compiled.digest)
            update_registry(entry=entry, filepath=self.registry_filepath)
        else:
            entry = entry_from_publish(
                result,
                network=self.network,
                name=self.package_name,
                policy_package_id=self.parameters.policy_package_id,
                policy_module=self.parameters.policy_module,
                deployer=self.get_address(),
                digest=self.compiled.digest,
            )
            write_registry(entries=[entry], filepath=self.registry_filepath)

        print(
            f"(i) {entry.name} v{entry.version} is at {entry.package_id}, "
            f"governed by policy object {entry.policy_id}"
        )
        return entry

    def _print_deployment_info(self):
        print(
            f"Address: {self._signer.address}",
            f"Config: {self.path}",
            f"Registry: {self.registry_filepath}",
            f"Network: {self.network}",
            f"Package: {self.package_name} ({self.parameters.package_path})",
            f"Policy: {self.parameters.policy!r} at {self.parameters.policy_package_id}",
            f"Gas Budget: {self.parameters.gas_budget}",
            f"Dry Run: {self.dry_run}",
            sep="\n",
        )
