import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from functools import cached_property
from types import EllipsisType
from typing import Any

import eth_abi
from eth_abi.exceptions import DecodingError
from eth_utils import keccak
from ethereum_rpc import Address


ABI_JSON = None | bool | int | float | str | Sequence["ABI_JSON"] | Mapping[str, "ABI_JSON"]
"""Values serializable to JSON."""


class ABIDecodingError(Exception):
    """Raised on an error when decoding a value in an Eth ABI encoded bytestring."""


def _is_sequence(val: Any) -> bool:
    return isinstance(val, Sequence) and not isinstance(val, str | bytes | bytearray)


class Type(ABC):
    """
    The base type for Solidity types.

    Besides encoding and decoding, each type defines the closed set of Python value shapes
    it can be matched with (see :py:meth:`accepts`).
    """

    @property
    @abstractmethod
    def canonical_form(self) -> str:
        """Returns the type as a string in the canonical form (for ``eth_abi`` consumption)."""

    @abstractmethod
    def _normalize(self, val: Any) -> Any:
        """
        Checks and possibly normalizes the value making it ready to be passed
        to ``eth_abi`` for encoding.

        Raises ``TypeError`` if the value has a shape this type does not accept,
        and ``ValueError`` if the shape is right but the value is out of range.
        """

    @abstractmethod
    def _denormalize(self, val: Any) -> Any:
        """
        Checks the result of ``eth_abi`` decoding
        and wraps it in a specific type, if applicable.
        """

    def accepts(self, val: Any) -> bool:
        """Returns ``True`` if ``val`` can be encoded as a value of this type."""
        try:
            self._normalize(val)
        except (TypeError, ValueError):
            return False
        return True

    def encode(self, val: Any) -> bytes:
        """Encodes the given value in the contract ABI format."""
        return eth_abi.encode([self.canonical_form], [self._normalize(val)])

    def decode(self, val: bytes) -> Any:
        """Decodes the given bytestring in the contract ABI format."""
        return self._denormalize(_decode([self.canonical_form], val)[0])

    def encode_to_topic(self, val: Any) -> bytes:
        """Encodes the given value as an event topic."""
        # Reference-type values are hashed when stored in topics,
        # and their contents are concatenated without length labels,
        # so `eth_abi` cannot be used here directly.
        return self._encode_to_topic_outer(self._normalize(val))

    def _encode_to_topic_outer(self, val: Any) -> bytes:
        """Encodes a (normalized) value of the outer indexed type."""
        return eth_abi.encode([self.canonical_form], [val])

    def _encode_to_topic_inner(self, val: Any) -> bytes:
        """Encodes a (normalized) value contained within an indexed array or struct."""
        return eth_abi.encode([self.canonical_form], [val])

    def decode_from_topic(self, val: bytes) -> Any:
        """
        Decodes an encoded topic.
        Returns ``None`` if the decoding is impossible
        (that is, the original value was hashed).
        """
        return self.decode(val)

    def __str__(self) -> str:
        return self.canonical_form

    def __getitem__(self, array_size: int | EllipsisType) -> "Array":
        if isinstance(array_size, int):
            return Array(self, array_size)
        if array_size is Ellipsis:
            return Array(self, None)
        raise TypeError(f"Invalid array size specifier type: {type(array_size).__name__}")


def _parse_integer(type_name: str, val: Any) -> int:
    # `bool` is a subclass of `int`, but it is not an integer-like value for the purposes of ABI
    if isinstance(val, bool) or not isinstance(val, int | str):
        raise TypeError(f"`{type_name}` must correspond to an integer, got {type(val).__name__}")
    if isinstance(val, int):
        return val
    try:
        if val.lower().startswith("0x"):
            return int(val, 16)
        return int(val, 10)
    except ValueError as exc:
        raise TypeError(
            f"`{type_name}` must correspond to an integer, got a non-numeric string {val!r}"
        ) from exc


class UInt(Type):
    """Corresponds to the Solidity ``uint<bits>`` type."""

    def __init__(self, bits: int):
        if bits <= 0 or bits > 256 or bits % 8 != 0:
            raise ValueError(f"Incorrect `uint` bit size: {bits}")
        self._bits = bits

    @property
    def canonical_form(self) -> str:
        return f"uint{self._bits}"

    def _normalize(self, val: Any) -> int:
        int_val = _parse_integer(self.canonical_form, val)
        if int_val < 0:
            raise ValueError(
                f"`{self.canonical_form}` must correspond to a non-negative integer, got {int_val}"
            )
        if int_val >> self._bits != 0:
            raise ValueError(
                f"`{self.canonical_form}` must correspond to an unsigned integer "
                f"under {self._bits} bits, got {int_val}"
            )
        return int_val

    def _denormalize(self, val: Any) -> int:
        return self._normalize(val)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, UInt) and self._bits == other._bits

    def __hash__(self) -> int:
        return hash((UInt, self._bits))


class Int(Type):
    """Corresponds to the Solidity ``int<bits>`` type."""

    def __init__(self, bits: int):
        if bits <= 0 or bits > 256 or bits % 8 != 0:
            raise ValueError(f"Incorrect `int` bit size: {bits}")
        self._bits = bits

    @property
    def canonical_form(self) -> str:
        return f"int{self._bits}"

    def _normalize(self, val: Any) -> int:
        int_val = _parse_integer(self.canonical_form, val)
        if (int_val + (1 << (self._bits - 1))) >> self._bits != 0:
            raise ValueError(
                f"`{self.canonical_form}` must correspond to a signed integer "
                f"under {self._bits} bits, got {int_val}"
            )
        return int_val

    def _denormalize(self, val: Any) -> int:
        return self._normalize(val)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Int) and self._bits == other._bits

    def __hash__(self) -> int:
        return hash((Int, self._bits))


class Bytes(Type):
    """
    Corresponds to the Solidity ``bytes<size>`` type.

    Accepts bytestrings and ``0x``-prefixed hex strings.
    """

    def __init__(self, size: None | int = None):
        if size is not None and (size <= 0 or size > 32):
            raise ValueError(f"Incorrect `bytes` size: {size}")
        self._size = size

    @property
    def canonical_form(self) -> str:
        return f"bytes{self._size if self._size else ''}"

    def _normalize(self, val: Any) -> bytes:
        if isinstance(val, str):
            if not val.startswith("0x"):
                raise TypeError(
                    f"`{self.canonical_form}` can only correspond to a 0x-prefixed hex string"
                )
            try:
                val = bytes.fromhex(val[2:])
            except ValueError as exc:
                raise TypeError(f"`{self.canonical_form}`: invalid hex string") from exc
        elif isinstance(val, bytearray):
            val = bytes(val)
        elif not isinstance(val, bytes):
            raise TypeError(
                f"`{self.canonical_form}` must correspond to a bytestring, "
                f"got {type(val).__name__}"
            )
        if self._size is not None and len(val) != self._size:
            raise ValueError(f"Expected {self._size} bytes, got {len(val)}")
        return val

    def _denormalize(self, val: Any) -> bytes:
        return self._normalize(val)

    def _encode_to_topic_outer(self, val: bytes) -> bytes:
        if self._size is None:
            # Dynamic `bytes` is a reference type and is therefore hashed.
            return keccak(val)
        return super()._encode_to_topic_outer(val)

    def _encode_to_topic_inner(self, val: bytes) -> bytes:
        if self._size is None:
            # Dynamic `bytes` is padded to a multiple of 32 bytes.
            padding_len = (32 - len(val)) % 32
            return val + b"\x00" * padding_len
        return super()._encode_to_topic_inner(val)

    def decode_from_topic(self, val: bytes) -> None | bytes:
        if self._size is None:
            return None
        return super().decode_from_topic(val)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Bytes) and self._size == other._size

    def __hash__(self) -> int:
        return hash((Bytes, self._size))


class AddressType(Type):
    """
    Corresponds to the Solidity ``address`` type.
    Not to be confused with :py:class:`~pylon.Address` which represents an address value.

    Accepts :py:class:`~pylon.Address` objects and 20-byte hex strings.
    """

    @property
    def canonical_form(self) -> str:
        return "address"

    def _normalize(self, val: Any) -> bytes:
        if isinstance(val, Address):
            return bytes(val)
        if isinstance(val, str):
            try:
                return bytes(Address.from_hex(val))
            except ValueError as exc:
                raise TypeError(f"`address` cannot be created from {val!r}") from exc
        raise TypeError(
            f"`address` must correspond to an `Address`-type value, got {type(val).__name__}"
        )

    def _denormalize(self, val: Any) -> Address:
        if isinstance(val, bytes):
            return Address(val)
        return Address.from_hex(val)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, AddressType)

    def __hash__(self) -> int:
        return hash(AddressType)


class String(Type):
    """Corresponds to the Solidity ``string`` type."""

    @property
    def canonical_form(self) -> str:
        return "string"

    def _normalize(self, val: Any) -> str:
        if not isinstance(val, str):
            raise TypeError(
                f"`string` must correspond to a `str`-type value, got {type(val).__name__}"
            )
        return val

    def _denormalize(self, val: Any) -> str:
        return self._normalize(val)

    def _encode_to_topic_outer(self, val: str) -> bytes:
        # `string` is treated as dynamic `bytes`
        return Bytes()._encode_to_topic_outer(val.encode())

    def _encode_to_topic_inner(self, val: str) -> bytes:
        return Bytes()._encode_to_topic_inner(val.encode())

    def decode_from_topic(self, _val: bytes) -> None:
        return None

    def __eq__(self, other: object) -> bool:
        return isinstance(other, String)

    def __hash__(self) -> int:
        return hash(String)


class Bool(Type):
    """Corresponds to the Solidity ``bool`` type."""

    @property
    def canonical_form(self) -> str:
        return "bool"

    def _normalize(self, val: Any) -> bool:
        if not isinstance(val, bool):
            raise TypeError(
                f"`bool` must correspond to a `bool`-type value, got {type(val).__name__}"
            )
        return val

    def _denormalize(self, val: Any) -> bool:
        return self._normalize(val)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Bool)

    def __hash__(self) -> int:
        return hash(Bool)


class Array(Type):
    """
    Corresponds to the Solidity array (``[<size>]``) type.

    Accepts lists and tuples whose every element is accepted by the element type.
    """

    def __init__(self, element_type: Type, size: None | int = None):
        self._element_type = element_type
        self._size = size

    @cached_property
    def canonical_form(self) -> str:
        return (
            self._element_type.canonical_form + "[" + (str(self._size) if self._size else "") + "]"
        )

    def _check_val(self, val: Any) -> None:
        if not _is_sequence(val):
            raise TypeError(f"Expected a list or a tuple, got {type(val).__name__}")
        if self._size is not None and len(val) != self._size:
            raise ValueError(f"Expected {self._size} elements, got {len(val)}")

    def _normalize(self, val: Any) -> list[Any]:
        self._check_val(val)
        return [self._element_type._normalize(item) for item in val]  # noqa: SLF001

    def _denormalize(self, val: Any) -> list[Any]:
        self._check_val(val)
        return [self._element_type._denormalize(item) for item in val]  # noqa: SLF001

    def _encode_to_topic_outer(self, val: list[Any]) -> bytes:
        return keccak(self._encode_to_topic_inner(val))

    def _encode_to_topic_inner(self, val: list[Any]) -> bytes:
        return b"".join(
            self._element_type._encode_to_topic_inner(elem)  # noqa: SLF001
            for elem in val
        )

    def decode_from_topic(self, _val: bytes) -> None:
        return None

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, Array)
            and self._element_type == other._element_type
            and self._size == other._size
        )

    def __hash__(self) -> int:
        return hash((Array, self._element_type, self._size))


class Struct(Type):
    """
    Corresponds to the Solidity struct type.

    Accepts mappings with exactly the struct's field names,
    or sequences of the struct's length.
    """

    def __init__(self, fields: Mapping[str, Type]):
        self._fields = dict(fields)

    @cached_property
    def canonical_form(self) -> str:
        return "(" + ",".join(field.canonical_form for field in self._fields.values()) + ")"

    def _normalize(self, val: Any) -> tuple[Any, ...]:
        if isinstance(val, Mapping):
            if val.keys() != self._fields.keys():
                raise ValueError(
                    f"Expected fields {list(self._fields.keys())}, got {list(val.keys())}"
                )
            return tuple(
                tp._normalize(val[name])  # noqa: SLF001
                for name, tp in self._fields.items()
            )
        if not _is_sequence(val):
            raise TypeError(f"Expected a mapping or a sequence, got {type(val).__name__}")
        if len(val) != len(self._fields):
            raise ValueError(f"Expected {len(self._fields)} elements, got {len(val)}")
        return tuple(
            tp._normalize(item)  # noqa: SLF001
            for item, tp in zip(val, self._fields.values(), strict=True)
        )

    def _denormalize(self, val: Any) -> dict[str, Any]:
        if not _is_sequence(val) or len(val) != len(self._fields):
            raise ValueError(f"Expected {len(self._fields)} elements, got {val!r}")
        return {
            name: tp._denormalize(item)  # noqa: SLF001
            for item, (name, tp) in zip(val, self._fields.items(), strict=True)
        }

    def _encode_to_topic_outer(self, val: tuple[Any, ...]) -> bytes:
        return keccak(self._encode_to_topic_inner(val))

    def _encode_to_topic_inner(self, val: tuple[Any, ...]) -> bytes:
        return b"".join(
            tp._encode_to_topic_inner(elem)  # noqa: SLF001
            for elem, tp in zip(val, self._fields.values(), strict=True)
        )

    def decode_from_topic(self, _val: bytes) -> None:
        return None

    def __str__(self) -> str:
        # Show the field names too
        return "(" + ", ".join(f"{tp} {name}" for name, tp in self._fields.items()) + ")"

    def __eq__(self, other: object) -> bool:
        # Structs with the same fields in a different order are not equal
        return isinstance(other, Struct) and list(self._fields.items()) == list(
            other._fields.items()
        )

    def __hash__(self) -> int:
        return hash((Struct, tuple(self._fields.items())))


_UINT_RE = re.compile(r"uint(\d+)?")
_INT_RE = re.compile(r"int(\d+)?")
_BYTES_RE = re.compile(r"bytes(\d+)?")
_ARRAY_RE = re.compile(r"^(.*)\[(\d+)?\]$")

_NO_PARAMS: dict[str, Type] = {
    "address": AddressType(),
    "string": String(),
    "bool": Bool(),
}


def type_from_abi_string(abi_string: str) -> Type:
    """
    Creates a type object from its canonical name.
    ``uint`` and ``int`` are taken as aliases of ``uint256`` and ``int256``.
    """
    if match := _UINT_RE.fullmatch(abi_string):
        return UInt(int(match.group(1) or 256))
    if match := _INT_RE.fullmatch(abi_string):
        return Int(int(match.group(1) or 256))
    if match := _BYTES_RE.fullmatch(abi_string):
        size = match.group(1)
        return Bytes(int(size) if size else None)
    if abi_string in _NO_PARAMS:
        return _NO_PARAMS[abi_string]
    raise ValueError(f"Unknown type: {abi_string}")


def dispatch_type(abi_entry: Mapping[str, Any]) -> Type:
    """Creates a type object from a JSON ABI parameter entry."""
    type_str = abi_entry["type"]

    if match := _ARRAY_RE.match(type_str):
        element_entry = dict(abi_entry)
        element_entry["type"] = match.group(1)
        array_size = match.group(2)
        return Array(dispatch_type(element_entry), int(array_size) if array_size else None)

    if type_str == "tuple":
        fields = {
            component["name"]: dispatch_type(component) for component in abi_entry["components"]
        }
        return Struct(fields)

    return type_from_abi_string(type_str)


def dispatch_parameter_types(
    abi_entries: Iterable[Mapping[str, Any]],
) -> list[tuple[None | str, Type]]:
    """
    Creates a list of (name, type) pairs from a list of JSON ABI parameter entries.
    Empty names (Solidity allows unnamed parameters) are replaced with ``None``.
    """
    entries = list(abi_entries)
    names = [entry["name"] for entry in entries if entry.get("name")]
    if len(names) != len(set(names)):
        raise ValueError("All ABI entries must have distinct names")
    return [(entry.get("name") or None, dispatch_type(entry)) for entry in entries]


def _decode(canonical_forms: list[str], data: bytes) -> tuple[Any, ...]:
    try:
        return eth_abi.decode(canonical_forms, data)
    except DecodingError as exc:
        signature = "(" + ",".join(canonical_forms) + ")"
        raise ABIDecodingError(
            f"Could not decode the value with the expected signature {signature}: {exc}"
        ) from exc


def encode_args(*types_and_args: tuple[Type, Any]) -> bytes:
    """Encodes the given values as a packed tuple of the given types."""
    types = [tp for tp, _arg in types_and_args]
    args = [tp._normalize(arg) for tp, arg in types_and_args]  # noqa: SLF001
    return eth_abi.encode([tp.canonical_form for tp in types], args)


def decode_args(types: Iterable[Type], data: bytes) -> tuple[Any, ...]:
    """Decodes a packed tuple of the given types."""
    types = list(types)
    values = _decode([tp.canonical_form for tp in types], data)
    return tuple(
        tp._denormalize(value)  # noqa: SLF001
        for tp, value in zip(types, values, strict=True)
    )
