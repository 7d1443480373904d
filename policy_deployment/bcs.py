"""
Sui encodings on top of the aptos-sdk BCS serializer: 32-byte object ids and
pure Move call arguments.
"""

import typing

from aptos_sdk.bcs import Serializer

from policy_deployment.utils import object_id_to_bytes

INTEGER_TYPES = ("u8", "u16", "u32", "u64", "u128", "u256")


def object_id(serializer: Serializer, value: str) -> None:
    """Writes a Sui address or object id as 32 raw bytes."""
    serializer.fixed_bytes(object_id_to_bytes(value))


def encode_pure(value: typing.Any, type_tag: str) -> bytes:
    """Encodes a pure transaction argument according to its Move type."""
    serializer = Serializer()
    try:
        _encode_value(serializer, value, type_tag)
    except OverflowError as e:
        raise ValueError(f"{value!r} does not fit in {type_tag}") from e
    return serializer.output()


def _encode_value(serializer: Serializer, value: typing.Any, type_tag: str) -> None:
    if type_tag in INTEGER_TYPES:
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"Expected an integer for {type_tag}, got {value!r}")
        getattr(serializer, type_tag)(value)
    elif type_tag == "bool":
        serializer.bool(bool(value))
    elif type_tag in ("address", "object"):
        object_id(serializer, value)
    elif type_tag == "string":
        serializer.str(value)
    elif type_tag == "vector<u8>":
        serializer.to_bytes(bytes(value))
    elif type_tag.startswith("vector<") and type_tag.endswith(">"):
        inner_type = type_tag[len("vector<") : -1]
        serializer.sequence(list(value), lambda s, item: _encode_value(s, item, inner_type))
    else:
        raise ValueError(f"Unsupported pure argument type '{type_tag}'")
