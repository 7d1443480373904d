"""
In-memory execution layer for rehearsing publish and upgrade transactions.

Executes a TransactionBuilder the way the chain would, as one atomic unit:
every command runs against the live state and, if any command fails or a
ticket/receipt/capability is left dangling at the end, the whole state is
rolled back and the error is raised.
"""

import base64
import binascii
import copy
import hashlib
import itertools
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Set

import base58

from policy_deployment.build import compute_digest
from policy_deployment.constants import (
    AUTHORIZE_UPGRADE_FUNCTION,
    COMMIT_UPGRADE_FUNCTION,
    LOCALNET,
    NEW_POLICY_FUNCTION,
    POLICY_STRUCT_NAME,
)
from policy_deployment.exceptions import (
    DigestMismatch,
    TicketMismatch,
    TransactionFailed,
    UpgradeError,
)
from policy_deployment.policy import (
    CapabilityReference,
    ExecutionContext,
    PolicyObject,
    UpgradeReceipt,
    UpgradeTicket,
    get_policy_class,
)
from policy_deployment.transaction import (
    Argument,
    GasCoin,
    Input,
    MoveCall,
    NestedResult,
    ObjectInput,
    Publish,
    Result,
    TransactionBuilder,
    TransferObjects,
    Upgrade,
)
from policy_deployment.utils import normalize_object_id, object_id_from_bytes

SYSTEM_PACKAGES = {normalize_object_id(p) for p in ("0x1", "0x2", "0x3")}

UPGRADE_CAP_TYPE = "0x2::package::UpgradeCap"


class PackageRecord(NamedTuple):
    id: str
    original_id: str
    version: int
    modules: List[str]
    dependencies: List[str]
    digest: bytes


class _Execution:
    """Bookkeeping for a single transaction while it runs."""

    def __init__(self, builder: TransactionBuilder, sender: str, context: ExecutionContext):
        self.builder = builder
        self.sender = sender
        self.context = context
        self.results: List[Any] = list()
        self.moved: Set[int] = set()
        self.changes: List[Dict[str, Any]] = list()
        self.mutated: Dict[str, Any] = dict()


class LocalLedger:
    def __init__(self, network: str = LOCALNET, timestamp_ms: Optional[int] = None):
        self.network = network
        self.timestamp_ms = timestamp_ms if timestamp_ms is not None else _now_ms()
        self.packages: Dict[str, PackageRecord] = dict()
        self.objects: Dict[str, Any] = dict()
        self.owners: Dict[str, str] = dict()
        self.object_types: Dict[str, str] = dict()
        self.policy_packages: Set[str] = set()
        self.transactions: List[Dict[str, Any]] = list()
        self._sequence = itertools.count(1)

    #
    # Clock and setup
    #

    def set_time(self, when: datetime) -> None:
        self.timestamp_ms = ExecutionContext.at(when).timestamp_ms

    def register_policy_package(self, package_id: str) -> str:
        """Makes the policy modules available at `package_id`."""
        package_id = normalize_object_id(package_id)
        self.policy_packages.add(package_id)
        return package_id

    def get_object(self, object_id: str) -> Any:
        object_id = normalize_object_id(object_id)
        try:
            return self.objects[object_id]
        except KeyError:
            raise ValueError(f"Object {object_id} does not exist")

    def signer(self, address: str, cosigners: Iterable[str] = ()) -> "LocalSigner":
        return LocalSigner(ledger=self, address=address, cosigners=cosigners)

    #
    # Execution
    #

    def _snapshot(self):
        return copy.deepcopy((self.packages, self.objects, self.owners, self.object_types))

    def _restore(self, snapshot) -> None:
        self.packages, self.objects, self.owners, self.object_types = snapshot

    def execute(
        self, builder: TransactionBuilder, sender: str, signers: Iterable[str] = ()
    ) -> Dict[str, Any]:
        """Executes all commands of `builder` atomically on behalf of `sender`."""
        sender = normalize_object_id(sender)
        context = ExecutionContext(
            timestamp_ms=self.timestamp_ms, signers=tuple(sorted({sender, *signers}))
        )
        snapshot = self._snapshot()
        try:
            result = self._execute(builder, sender, context)
        except UpgradeError:
            self._restore(snapshot)
            raise
        except (ValueError, TypeError) as e:
            self._restore(snapshot)
            raise TransactionFailed(str(e)) from e

        self.transactions.append(result)
        return result

    def dry_run(
        self, builder: TransactionBuilder, sender: str, signers: Iterable[str] = ()
    ) -> Dict[str, Any]:
        """Executes `builder` and discards its effects."""
        snapshot = self._snapshot()
        try:
            result = self.execute(builder, sender, signers)
        finally:
            self._restore(snapshot)
        self.transactions.remove(result)
        return result

    def _execute(
        self, builder: TransactionBuilder, sender: str, context: ExecutionContext
    ) -> Dict[str, Any]:
        sequence = next(self._sequence)
        tx_digest = _digest(b"tx", sequence.to_bytes(8, "little"))
        execution = _Execution(builder=builder, sender=sender, context=context)

        for index, command in enumerate(builder.commands):
            if isinstance(command, Publish):
                value = self._publish(execution, command, tx_digest, index)
            elif isinstance(command, Upgrade):
                value = self._upgrade(execution, command, tx_digest, index)
            elif isinstance(command, MoveCall):
                value = self._move_call(execution, command, tx_digest, index)
            elif isinstance(command, TransferObjects):
                value = self._transfer_objects(execution, command)
            else:
                raise TransactionFailed(f"Unsupported command {command!r}")
            execution.results.append(value)

        self._check_dangling(execution)

        for object_id in execution.mutated:
            if object_id in self.objects:
                execution.changes.append(
                    self._object_change("mutated", object_id, sender, self.owners[object_id])
                )

        return {
            "digest": tx_digest,
            "timestampMs": str(context.timestamp_ms),
            "effects": {
                "status": {"status": "success"},
                "transactionDigest": tx_digest,
            },
            "objectChanges": execution.changes,
        }

    def _check_dangling(self, execution: _Execution) -> None:
        for index, value in enumerate(execution.results):
            if index in execution.moved or value is None:
                continue
            if isinstance(value, UpgradeTicket):
                raise TransactionFailed(
                    f"Upgrade ticket from command {index} was never used to upgrade."
                )
            if isinstance(value, UpgradeReceipt):
                raise TransactionFailed(
                    f"Upgrade receipt from command {index} was never committed."
                )
            if isinstance(value, (CapabilityReference, PolicyObject)):
                raise TransactionFailed(
                    f"Object {value.id} from command {index} was neither wrapped nor transferred."
                )

    #
    # Arguments
    #

    def _input(self, execution: _Execution, argument: Input) -> Any:
        entry = execution.builder.inputs[argument.index]
        if not isinstance(entry, ObjectInput):
            return entry.value
        obj = self.get_object(entry.object_id)
        owner = self.owners.get(entry.object_id)
        if owner != execution.sender:
            raise TransactionFailed(
                f"Object {entry.object_id} is owned by {owner}, not by {execution.sender}."
            )
        return obj

    def _borrow(self, execution: _Execution, argument: Argument) -> Any:
        if isinstance(argument, Input):
            return self._input(execution, argument)
        if isinstance(argument, Result):
            if argument.index in execution.moved:
                raise TransactionFailed(f"{argument} was already moved.")
            return execution.results[argument.index]
        if isinstance(argument, NestedResult):
            raise TransactionFailed("Nested results are not produced by any supported command.")
        if isinstance(argument, GasCoin):
            raise TransactionFailed("The gas coin cannot be used in a local transaction.")
        raise TransactionFailed(f"Unknown argument {argument!r}")

    def _take(self, execution: _Execution, argument: Argument) -> Any:
        value = self._borrow(execution, argument)
        if isinstance(argument, Result):
            execution.moved.add(argument.index)
        elif isinstance(argument, Input) and isinstance(value, (CapabilityReference, PolicyObject)):
            # moving an object out of global storage
            del self.objects[value.id]
            del self.owners[value.id]
        return value

    #
    # Commands
    #

    def _new_id(self, tx_digest: str, index: int, domain: bytes = b"object") -> str:
        seed = base58.b58decode(tx_digest) + index.to_bytes(8, "little")
        return object_id_from_bytes(_raw_digest(domain, seed))

    def _decode_modules(self, modules: List[str]) -> List[bytes]:
        if not modules:
            raise TransactionFailed("Package has no modules.")
        try:
            return [base64.b64decode(module, validate=True) for module in modules]
        except binascii.Error:
            raise TransactionFailed("Package contains malformed module bytecode.")

    def _check_dependencies(self, dependencies: List[str]) -> None:
        for dependency in dependencies:
            if dependency not in SYSTEM_PACKAGES and dependency not in self.packages:
                raise TransactionFailed(f"Dependency {dependency} is not published.")

    def _publish(
        self, execution: _Execution, command: Publish, tx_digest: str, index: int
    ) -> CapabilityReference:
        module_bytes = self._decode_modules(command.modules)
        self._check_dependencies(command.dependencies)

        package_id = self._new_id(tx_digest, index, domain=b"package")
        self.packages[package_id] = PackageRecord(
            id=package_id,
            original_id=package_id,
            version=1,
            modules=list(command.modules),
            dependencies=list(command.dependencies),
            digest=compute_digest(module_bytes, command.dependencies),
        )
        execution.changes.append(self._published_change(package_id, 1, tx_digest))
        cap_id = self._new_id(tx_digest, index, domain=b"cap")
        return CapabilityReference(id=cap_id, package_id=package_id)

    def _upgrade(
        self, execution: _Execution, command: Upgrade, tx_digest: str, index: int
    ) -> UpgradeReceipt:
        ticket = self._take(execution, command.ticket)
        if not isinstance(ticket, UpgradeTicket):
            raise TransactionFailed(f"{command.ticket} is not an upgrade ticket.")
        if ticket.package_id != command.package_id:
            raise TicketMismatch(
                f"Ticket {ticket.id} authorizes an upgrade of {ticket.package_id}, "
                f"not of {command.package_id}."
            )

        current = self.packages.get(command.package_id)
        if current is None:
            raise TransactionFailed(f"Package {command.package_id} does not exist.")

        module_bytes = self._decode_modules(command.modules)
        self._check_dependencies(command.dependencies)
        digest = compute_digest(module_bytes, command.dependencies)
        if digest != ticket.digest:
            raise DigestMismatch(
                f"Ticket {ticket.id} authorizes digest {ticket.digest.hex()} "
                f"but the upgraded package has digest {digest.hex()}."
            )
        ticket.consume()

        package_id = self._new_id(tx_digest, index, domain=b"package")
        version = current.version + 1
        self.packages[package_id] = PackageRecord(
            id=package_id,
            original_id=current.original_id,
            version=version,
            modules=list(command.modules),
            dependencies=list(command.dependencies),
            digest=digest,
        )
        execution.changes.append(self._published_change(package_id, version, tx_digest))
        return UpgradeReceipt.for_ticket(ticket, new_package_id=package_id)

    def _move_call(
        self, execution: _Execution, command: MoveCall, tx_digest: str, index: int
    ) -> Any:
        if command.package not in self.policy_packages:
            raise TransactionFailed(f"Package {command.package} is not published.")
        try:
            policy_class = get_policy_class(command.module)
        except ValueError:
            raise TransactionFailed(f"Module {command.target} does not exist.")

        if command.function == NEW_POLICY_FUNCTION:
            if not command.arguments:
                raise TransactionFailed(f"{command.target} expects an UpgradeCap.")
            cap = self._take(execution, command.arguments[0])
            if not isinstance(cap, CapabilityReference):
                raise TransactionFailed(f"{command.target} expects an UpgradeCap.")
            values = [self._borrow(execution, a) for a in command.arguments[1:]]
            policy = policy_class.from_arguments(values)
            policy_object = PolicyObject.wrap_capability(
                cap, policy, id=self._new_id(tx_digest, index)
            )
            self.object_types[policy_object.id] = self._policy_type(command)
            return policy_object

        if command.function == AUTHORIZE_UPGRADE_FUNCTION:
            policy_object = self._policy_argument(execution, command)
            level, digest = [self._borrow(execution, a) for a in command.arguments[1:]]
            ticket = policy_object.authorize_upgrade(level, bytes(digest), execution.context)
            execution.mutated[policy_object.id] = policy_object
            return ticket

        if command.function == COMMIT_UPGRADE_FUNCTION:
            policy_object = self._policy_argument(execution, command)
            if len(command.arguments) != 2:
                raise TransactionFailed(f"{command.target} expects a policy and a receipt.")
            receipt = self._take(execution, command.arguments[1])
            if not isinstance(receipt, UpgradeReceipt):
                raise TransactionFailed(f"{command.arguments[1]} is not an upgrade receipt.")
            policy_object.commit_upgrade(receipt)
            execution.mutated[policy_object.id] = policy_object
            return None

        raise TransactionFailed(f"Function {command.target} does not exist.")

    def _policy_argument(self, execution: _Execution, command: MoveCall) -> PolicyObject:
        if not command.arguments:
            raise TransactionFailed(f"{command.target} expects a policy object.")
        policy_object = self._borrow(execution, command.arguments[0])
        if not isinstance(policy_object, PolicyObject):
            raise TransactionFailed(f"{command.target} expects a policy object.")
        if self.object_types.get(policy_object.id) != self._policy_type(command):
            raise TransactionFailed(
                f"Policy object {policy_object.id} is not governed by {command.target}."
            )
        return policy_object

    def _transfer_objects(self, execution: _Execution, command: TransferObjects) -> None:
        recipient = normalize_object_id(self._borrow(execution, command.address))
        for argument in command.objects:
            obj = self._take(execution, argument)
            if not isinstance(obj, (CapabilityReference, PolicyObject)):
                raise TransactionFailed(f"{argument} is not a transferable object.")
            self.objects[obj.id] = obj
            self.owners[obj.id] = recipient
            execution.changes.append(
                self._object_change("created", obj.id, execution.sender, recipient)
            )
        return None

    #
    # Effects
    #

    @staticmethod
    def _policy_type(command: MoveCall) -> str:
        return f"{command.package}::{command.module}::{POLICY_STRUCT_NAME}"

    def _object_type(self, obj: Any) -> str:
        return self.object_types.get(obj.id, UPGRADE_CAP_TYPE)

    def _object_change(self, kind: str, object_id: str, sender: str, owner: str) -> Dict:
        obj = self.objects[object_id]
        return {
            "type": kind,
            "sender": sender,
            "owner": {"AddressOwner": owner},
            "objectType": self._object_type(obj),
            "objectId": object_id,
            "version": str(obj.version),
        }

    @staticmethod
    def _published_change(package_id: str, version: int, tx_digest: str) -> Dict:
        return {
            "type": "published",
            "packageId": package_id,
            "version": str(version),
            "digest": tx_digest,
        }


class LocalSigner:
    """Signs and executes on a LocalLedger; mirrors RawSigner's interface."""

    def __init__(self, ledger: LocalLedger, address: str, cosigners: Iterable[str] = ()):
        self.ledger = ledger
        self.address = normalize_object_id(address)
        self.cosigners = tuple(normalize_object_id(c) for c in cosigners)

    @property
    def network(self) -> str:
        return self.ledger.network

    def sign_and_execute(
        self, builder: TransactionBuilder, options: Optional[dict] = None, gas_budget: int = None
    ) -> Dict[str, Any]:
        return self.ledger.execute(builder, sender=self.address, signers=self.cosigners)

    def dry_run(self, builder: TransactionBuilder, gas_budget: int = None) -> Dict[str, Any]:
        return self.ledger.dry_run(builder, sender=self.address, signers=self.cosigners)


def _raw_digest(domain: bytes, data: bytes) -> bytes:
    return hashlib.blake2b(domain + data, digest_size=32).digest()


def _digest(domain: bytes, data: bytes) -> str:
    return base58.b58encode(_raw_digest(domain, data)).decode("ascii")


def _now_ms() -> int:
    return int(datetime.now(tz=timezone.utc).timestamp() * 1000)
