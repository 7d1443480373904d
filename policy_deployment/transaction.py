"""
Programmable transaction builder.

Calls are recorded in order; every command yields a `Result` argument that
later commands may consume. All commands of one builder are submitted and
executed as a single atomic transaction.
"""

import base64
import typing
from typing import Any, Dict, List, NamedTuple, Sequence, Union

from aptos_sdk.bcs import Serializer

from policy_deployment import bcs
from policy_deployment.utils import normalize_object_id

#
# Arguments
#


class GasCoin(NamedTuple):
    def __str__(self):
        return "GasCoin"


class Input(NamedTuple):
    index: int

    def __str__(self):
        return f"Input({self.index})"


class Result(NamedTuple):
    index: int

    def __str__(self):
        return f"Result({self.index})"


class NestedResult(NamedTuple):
    index: int
    result_index: int

    def __str__(self):
        return f"NestedResult({self.index}, {self.result_index})"


Argument = Union[GasCoin, Input, Result, NestedResult]

#
# Inputs
#


class PureInput(NamedTuple):
    value: Any
    type_tag: str
    data: bytes


class ObjectInput(NamedTuple):
    object_id: str


class ObjectRef(NamedTuple):
    object_id: str
    version: int
    digest: bytes


class OwnedObject(NamedTuple):
    ref: ObjectRef


class SharedObject(NamedTuple):
    object_id: str
    initial_shared_version: int
    mutable: bool = True


ObjectArg = Union[OwnedObject, SharedObject]

#
# Commands
#


class MoveCall(NamedTuple):
    package: str
    module: str
    function: str
    arguments: List[Argument]

    @property
    def target(self) -> str:
        return f"{self.package}::{self.module}::{self.function}"


class TransferObjects(NamedTuple):
    objects: List[Argument]
    address: Argument


class Publish(NamedTuple):
    modules: List[str]
    dependencies: List[str]


class Upgrade(NamedTuple):
    modules: List[str]
    dependencies: List[str]
    package_id: str
    ticket: Argument


Command = Union[MoveCall, TransferObjects, Publish, Upgrade]


def parse_target(target: str) -> typing.Tuple[str, str, str]:
    """Splits a `<package>::<module>::<function>` move call target."""
    parts = target.split("::")
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"Malformed move call target '{target}'")
    package, module, function = parts
    return normalize_object_id(package), module, function


class TransactionBuilder:
    def __init__(self):
        self.inputs: List[Union[PureInput, ObjectInput]] = list()
        self.commands: List[Command] = list()

    #
    # Inputs
    #

    def pure(self, value: Any, type_tag: str) -> Input:
        data = bcs.encode_pure(value, type_tag)
        self.inputs.append(PureInput(value=value, type_tag=type_tag, data=data))
        return Input(len(self.inputs) - 1)

    def object(self, object_id: str) -> Input:
        object_id = normalize_object_id(object_id)
        for index, existing in enumerate(self.inputs):
            if isinstance(existing, ObjectInput) and existing.object_id == object_id:
                return Input(index)
        self.inputs.append(ObjectInput(object_id=object_id))
        return Input(len(self.inputs) - 1)

    @property
    def object_ids(self) -> List[str]:
        return [i.object_id for i in self.inputs if isinstance(i, ObjectInput)]

    #
    # Commands
    #

    def _check_argument(self, argument: Argument) -> Argument:
        if isinstance(argument, GasCoin):
            return argument
        if isinstance(argument, Input):
            if not 0 <= argument.index < len(self.inputs):
                raise ValueError(f"{argument} does not refer to a transaction input")
            return argument
        if isinstance(argument, (Result, NestedResult)):
            if not 0 <= argument.index < len(self.commands):
                raise ValueError(f"{argument} does not refer to an earlier command")
            return argument
        raise TypeError(
            f"Expected a transaction argument, got {argument!r}; "
            "wrap values with pure() or object() first"
        )

    def _add_command(self, command: Command) -> Result:
        self.commands.append(command)
        return Result(len(self.commands) - 1)

    def publish(self, modules: List[str], dependencies: List[str]) -> Result:
        """Publishes a package; the result is the package's UpgradeCap."""
        return self._add_command(
            Publish(
                modules=list(modules),
                dependencies=[normalize_object_id(d) for d in dependencies],
            )
        )

    def upgrade(
        self, modules: List[str], dependencies: List[str], package_id: str, ticket: Argument
    ) -> Result:
        """Replaces the code of `package_id`; the result is the upgrade receipt."""
        return self._add_command(
            Upgrade(
                modules=list(modules),
                dependencies=[normalize_object_id(d) for d in dependencies],
                package_id=normalize_object_id(package_id),
                ticket=self._check_argument(ticket),
            )
        )

    def move_call(self, target: str, arguments: Sequence[Argument] = ()) -> Result:
        package, module, function = parse_target(target)
        return self._add_command(
            MoveCall(
                package=package,
                module=module,
                function=function,
                arguments=[self._check_argument(a) for a in arguments],
            )
        )

    def transfer_objects(self, objects: Sequence[Argument], address: Argument) -> Result:
        if not objects:
            raise ValueError("Nothing to transfer")
        return self._add_command(
            TransferObjects(
                objects=[self._check_argument(o) for o in objects],
                address=self._check_argument(address),
            )
        )

    #
    # Presentation
    #

    def _describe_input(self, index: int) -> str:
        entry = self.inputs[index]
        if isinstance(entry, PureInput):
            value = entry.value
            if isinstance(value, (bytes, bytearray)):
                value = "0x" + bytes(value).hex()
            return f"{entry.type_tag} {value}"
        return f"object {entry.object_id}"

    def describe(self) -> str:
        lines = ["Inputs:"]
        for index in range(len(self.inputs)):
            lines.append(f"\t{index}: {self._describe_input(index)}")
        lines.append("Commands:")
        for index, command in enumerate(self.commands):
            if isinstance(command, MoveCall):
                args = ", ".join(str(a) for a in command.arguments)
                text = f"MoveCall {command.target}({args})"
            elif isinstance(command, TransferObjects):
                objects = ", ".join(str(o) for o in command.objects)
                text = f"TransferObjects [{objects}] to {command.address}"
            elif isinstance(command, Publish):
                text = (
                    f"Publish {len(command.modules)} module(s), "
                    f"{len(command.dependencies)} dependencies"
                )
            else:
                text = (
                    f"Upgrade {command.package_id} with {len(command.modules)} module(s) "
                    f"using ticket {command.ticket}"
                )
            lines.append(f"\t{index}: {text}")
        return "\n".join(lines)

    #
    # Serialization
    #

    def serialize(
        self,
        sender: str,
        gas_payment: List[ObjectRef],
        gas_price: int,
        gas_budget: int,
        objects: Dict[str, ObjectArg],
    ) -> bytes:
        """
        Encodes the transaction as BCS `TransactionData`. Every object input must
        have been resolved to an owned reference or a shared object in `objects`.
        """
        unresolved = [object_id for object_id in self.object_ids if object_id not in objects]
        if unresolved:
            raise ValueError(f"Unresolved object input(s): {', '.join(unresolved)}")

        serializer = Serializer()
        serializer.uleb128(0)  # TransactionData::V1
        serializer.uleb128(0)  # TransactionKind::ProgrammableTransaction
        serializer.sequence(self.inputs, lambda s, i: _encode_input(s, i, objects))
        serializer.sequence(self.commands, _encode_command)
        bcs.object_id(serializer, sender)
        # gas data
        serializer.sequence(gas_payment, _encode_object_ref)
        bcs.object_id(serializer, sender)
        serializer.u64(gas_price)
        serializer.u64(gas_budget)
        serializer.uleb128(0)  # TransactionExpiration::None
        return serializer.output()


def _encode_argument(serializer: Serializer, argument: Argument) -> None:
    if isinstance(argument, GasCoin):
        serializer.uleb128(0)
    elif isinstance(argument, Input):
        serializer.uleb128(1)
        serializer.u16(argument.index)
    elif isinstance(argument, Result):
        serializer.uleb128(2)
        serializer.u16(argument.index)
    else:
        serializer.uleb128(3)
        serializer.u16(argument.index)
        serializer.u16(argument.result_index)


def _encode_object_ref(serializer: Serializer, ref: ObjectRef) -> None:
    bcs.object_id(serializer, ref.object_id)
    serializer.u64(ref.version)
    serializer.to_bytes(ref.digest)


def _encode_input(
    serializer: Serializer, entry: Union[PureInput, ObjectInput], objects: Dict[str, ObjectArg]
) -> None:
    if isinstance(entry, PureInput):
        serializer.uleb128(0)  # CallArg::Pure
        serializer.to_bytes(entry.data)
        return

    serializer.uleb128(1)  # CallArg::Object
    object_arg = objects[entry.object_id]
    if isinstance(object_arg, OwnedObject):
        serializer.uleb128(0)
        _encode_object_ref(serializer, object_arg.ref)
    else:
        serializer.uleb128(1)
        bcs.object_id(serializer, object_arg.object_id)
        serializer.u64(object_arg.initial_shared_version)
        serializer.bool(object_arg.mutable)


def _encode_modules(serializer: Serializer, modules: List[str]) -> None:
    serializer.sequence([base64.b64decode(m) for m in modules], Serializer.to_bytes)


def _encode_ids(serializer: Serializer, ids: List[str]) -> None:
    serializer.sequence(ids, bcs.object_id)


def _encode_command(serializer: Serializer, command: Command) -> None:
    if isinstance(command, MoveCall):
        serializer.uleb128(0)
        bcs.object_id(serializer, command.package)
        serializer.str(command.module)
        serializer.str(command.function)
        serializer.uleb128(0)  # no type arguments
        serializer.sequence(command.arguments, _encode_argument)
    elif isinstance(command, TransferObjects):
        serializer.uleb128(1)
        serializer.sequence(command.objects, _encode_argument)
        _encode_argument(serializer, command.address)
    elif isinstance(command, Publish):
        serializer.uleb128(4)
        _encode_modules(serializer, command.modules)
        _encode_ids(serializer, command.dependencies)
    elif isinstance(command, Upgrade):
        serializer.uleb128(6)
        _encode_modules(serializer, command.modules)
        _encode_ids(serializer, command.dependencies)
        bcs.object_id(serializer, command.package_id)
        _encode_argument(serializer, command.ticket)
    else:
        raise TypeError(f"Unknown command {command!r}")
