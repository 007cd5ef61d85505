from collections.abc import Iterable, Iterator, Mapping, Sequence
from collections.abc import Set as AbstractSet
from enum import Enum
from functools import cached_property
from typing import Any, Generic, TypeVar, cast

from ethereum_rpc import LogEntry, LogTopic, keccak

from ._abi_types import ABI_JSON, Type, decode_args, dispatch_parameter_types, encode_args
from ._method_resolver import MethodIndex

# Anonymous events can have at most 4 indexed fields
ANONYMOUS_EVENT_INDEXED_FIELDS = 4

# Named events use the first topic for the selector
EVENT_INDEXED_FIELDS = 3

# The number of bytes in a function selector.
SELECTOR_LENGTH = 4

# Entry types that may be present in a JSON ABI but have no use for calls or logs
_IGNORED_ENTRY_TYPES = {"constructor", "fallback", "receive", "error"}


class FieldValues:
    """
    Decoded values of event fields or method outputs, in declaration order.
    Any of the fields may be unnamed, so this is not just a ``dict``.
    """

    def __init__(self, values: Sequence[tuple[str | None, Any]]):
        names = [name for name, _value in values if name is not None]
        if len(names) != len(set(names)):
            raise ValueError("The values cannot have repeating names")

        self._values_seq = values
        self._values_dict = {name: value for name, value in values if name is not None}
        self._representable_as_dict = len(names) == len(self._values_seq)

    @property
    def as_dict(self) -> dict[str, Any]:
        """The values by name; raises ``ValueError`` if some fields are unnamed."""
        if not self._representable_as_dict:
            raise ValueError(
                "This structure has some anonymous fields "
                "and therefore is not representable as a `dict`"
            )
        return self._values_dict

    @cached_property
    def as_tuple(self) -> tuple[Any, ...]:
        """The values alone."""
        return tuple(item for _name, item in self._values_seq)

    def __getitem__(self, name: str) -> Any:
        return self._values_dict[name]

    def __getattr__(self, name: str) -> Any:
        try:
            return self._values_dict[name]
        except KeyError as exc:
            raise AttributeError(name) from exc

    def __len__(self) -> int:
        return len(self._values_seq)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, FieldValues) and self._values_seq == other._values_seq

    def __repr__(self) -> str:
        return f"FieldValues({self._values_seq!r})"


class Fields:
    """Typed, optionally named parameters: method inputs or outputs, or event fields."""

    names: tuple[str | None, ...]
    types: tuple[Type, ...]

    def __init__(
        self, fields: Mapping[str, Type] | Sequence[Type] | Sequence[tuple[str | None, Type]]
    ):
        names: tuple[str | None, ...]
        if isinstance(fields, Mapping):
            names = tuple(fields)
            types = tuple(fields.values())
        elif all(isinstance(elem, Type) for elem in fields):
            fields = cast("Sequence[Type]", fields)
            names = tuple(None for _tp in fields)
            types = tuple(fields)
        else:
            fields = cast("Sequence[tuple[str | None, Type]]", fields)
            names = tuple(name for name, _tp in fields)
            types = tuple(tp for _name, tp in fields)

        self.names = names
        self.types = types

    @cached_property
    def canonical_form(self) -> str:
        """The parenthesized comma-separated canonical types, as used in signatures."""
        return "(" + ",".join(tp.canonical_form for tp in self.types) + ")"

    def accepts(self, values: Sequence[Any]) -> bool:
        """Returns ``True`` if every value is accepted by the type at its position."""
        return len(values) == len(self.types) and all(
            tp.accepts(value) for tp, value in zip(self.types, values, strict=True)
        )

    def encode(self, values: Sequence[Any]) -> bytes:
        return encode_args(*zip(self.types, values, strict=True))

    def decode(self, value_bytes: bytes) -> FieldValues:
        return FieldValues(list(zip(self.names, decode_args(self.types, value_bytes), strict=True)))

    def __len__(self) -> int:
        return len(self.types)

    def __str__(self) -> str:
        fields = ", ".join(
            tp.canonical_form + ((" " + name) if name is not None else "")
            for name, tp in zip(self.names, self.types, strict=True)
        )
        return f"({fields})"


class Either:
    """Several acceptable values of an indexed field in an event filter."""

    def __init__(self, *items: Any):
        self.items = items


class EventFields(Fields):
    """Event fields, each either indexed (stored in a topic) or not (stored in the data)."""

    indexed: tuple[bool, ...]

    def __init__(
        self,
        fields: Mapping[str, Type] | Sequence[tuple[str | None, Type]],
        indexed: AbstractSet[str] | Sequence[bool],
    ):
        super().__init__(fields)

        if isinstance(indexed, AbstractSet):
            if not indexed <= {name for name in self.names if name is not None}:
                raise ValueError("All the names in `indexed` must be present in the fields list")
            self.indexed = tuple(name in indexed for name in self.names)
        else:
            if len(indexed) != len(self.names):
                raise ValueError(
                    "If `indexed` is a sequence of booleans, "
                    "its length must match the number of fields"
                )
            self.indexed = tuple(indexed)

        self._indexed_positions = [pos for pos, flag in enumerate(self.indexed) if flag]
        self._data_positions = [pos for pos, flag in enumerate(self.indexed) if not flag]

    def encode_to_topics(self, values: Mapping[str, Any]) -> tuple[None | tuple[bytes, ...], ...]:
        """
        Encodes values of indexed fields (given by name) as log topics.
        Omitted fields match any value; :py:class:`Either` matches any of several values.
        """
        indexed_names = {self.names[pos] for pos in self._indexed_positions}
        unknown = set(values) - indexed_names
        if unknown:
            raise ValueError(f"Can only filter by indexed fields, got {sorted(unknown)}")

        encoded_topics: list[None | tuple[bytes, ...]] = []
        for pos in self._indexed_positions:
            name = self.names[pos]
            if name not in values:
                encoded_topics.append(None)
                continue
            tp = self.types[pos]
            value = values[name]
            items = value.items if isinstance(value, Either) else (value,)
            encoded_topics.append(tuple(tp.encode_to_topic(item) for item in items))

        # Trailing wildcards are redundant
        while encoded_topics and encoded_topics[-1] is None:
            encoded_topics.pop()

        return tuple(encoded_topics)

    def decode_log_entry(self, topics: Sequence[bytes], data: bytes) -> FieldValues:
        """
        Decodes the event fields from the given topics (without the event selector) and data.
        Indexed fields of reference types are hashed in the log and decode to ``None``.
        """
        if len(topics) != len(self._indexed_positions):
            raise ValueError(
                f"The number of topics in the log entry ({len(topics)}) does not match "
                f"the number of indexed fields in the event ({len(self._indexed_positions)})"
            )

        decoded: dict[int, Any] = {
            pos: self.types[pos].decode_from_topic(topic)
            for pos, topic in zip(self._indexed_positions, topics, strict=True)
        }
        data_values = decode_args([self.types[pos] for pos in self._data_positions], data)
        decoded.update(zip(self._data_positions, data_values, strict=True))

        return FieldValues([(name, decoded[pos]) for pos, name in enumerate(self.names)])

    def __str__(self) -> str:
        params = []
        for name, tp, indexed in zip(self.names, self.types, self.indexed, strict=True):
            indexed_str = " indexed" if indexed else ""
            name_str = (" " + name) if name is not None else ""
            params.append(f"{tp.canonical_form}{indexed_str}{name_str}")
        return "(" + ", ".join(params) + ")"


class Mutability(Enum):
    """The ``stateMutability`` of a method."""

    PURE = "pure"
    VIEW = "view"
    NONPAYABLE = "nonpayable"
    PAYABLE = "payable"

    @classmethod
    def from_json(cls, method_entry: Mapping[str, Any]) -> "Mutability":
        """
        Reads the mutability from a JSON ABI method entry.
        Entries produced by old compilers only have the ``constant`` and ``payable`` flags.
        """
        if "stateMutability" in method_entry:
            value = method_entry["stateMutability"]
            try:
                return cls(value)
            except ValueError as exc:
                raise ValueError(f"Unknown mutability identifier: {value}") from exc

        if method_entry.get("constant", False):
            return cls.VIEW
        if method_entry.get("payable", False):
            return cls.PAYABLE
        return cls.NONPAYABLE

    @property
    def payable(self) -> bool:
        return self == Mutability.PAYABLE

    @property
    def mutating(self) -> bool:
        return self in {Mutability.PAYABLE, Mutability.NONPAYABLE}


class Method:
    """A contract method (a single overload)."""

    name: str
    inputs: Fields
    outputs: Fields
    mutability: Mutability

    @classmethod
    def from_json(cls, method_entry: ABI_JSON) -> "Method":
        """Parses a ``"function"`` entry of a JSON ABI."""
        method_entry_typed = cast("Mapping[str, Any]", method_entry)

        if method_entry_typed["type"] != "function":
            raise ValueError("Method object must be created from a JSON entry with type='function'")

        return cls(
            name=method_entry_typed["name"],
            inputs=dispatch_parameter_types(method_entry_typed.get("inputs", [])),
            outputs=dispatch_parameter_types(method_entry_typed.get("outputs", [])),
            mutability=Mutability.from_json(method_entry_typed),
        )

    def __init__(
        self,
        name: str,
        mutability: Mutability,
        inputs: Mapping[str, Type] | Sequence[Type] | Sequence[tuple[str | None, Type]],
        outputs: None
        | Mapping[str, Type]
        | Sequence[Type]
        | Sequence[tuple[str | None, Type]]
        | Type = None,
    ):
        self.name = name
        self.mutability = mutability
        self.inputs = Fields(inputs)

        if outputs is None:
            outputs = []
        if isinstance(outputs, Type):
            outputs = [(None, outputs)]
        self.outputs = Fields(outputs)

    @property
    def constant(self) -> bool:
        """``True`` if the method does not modify the state and can only be called."""
        return not self.mutability.mutating

    @property
    def payable(self) -> bool:
        return self.mutability.payable

    @cached_property
    def signature(self) -> str:
        """The canonical signature, ``name(type,type,...)``."""
        return self.name + self.inputs.canonical_form

    @cached_property
    def selector(self) -> bytes:
        """The first 4 bytes of the signature hash, identifying the method in calldata."""
        return keccak(self.signature.encode())[:SELECTOR_LENGTH]

    def encode_call(self, args: Sequence[Any]) -> bytes:
        """Returns the calldata (the selector followed by the encoded arguments)."""
        if len(args) != len(self.inputs):
            raise ValueError(
                f"`{self.signature}` takes {len(self.inputs)} arguments, got {len(args)}"
            )
        return self.selector + self.inputs.encode(args)

    def __call__(self, *args: Any) -> bytes:
        """Same as :py:meth:`encode_call`, with the arguments given positionally."""
        return self.encode_call(args)

    def decode_output(self, output_bytes: bytes) -> tuple[Any, ...]:
        """Returns a tuple with one value per declared output (empty if there are none)."""
        return self.outputs.decode(output_bytes).as_tuple

    def __str__(self) -> str:
        returns = "" if not self.outputs.names else f" returns {self.outputs}"
        return f"function {self.name}{self.inputs} {self.mutability.value}{returns}"


class Event:
    """A contract event."""

    name: str
    fields: EventFields

    anonymous: bool
    """Anonymous events do not store their selector in the first topic."""

    @classmethod
    def from_json(cls, event_entry: ABI_JSON) -> "Event":
        """Parses an ``"event"`` entry of a JSON ABI."""
        event_entry_typed = cast("Mapping[str, Any]", event_entry)

        if event_entry_typed["type"] != "event":
            raise ValueError("Event object must be created from a JSON entry with type='event'")

        inputs = event_entry_typed["inputs"]
        return cls(
            name=event_entry_typed["name"],
            fields=dispatch_parameter_types(inputs),
            indexed=[input_.get("indexed", False) for input_ in inputs],
            anonymous=event_entry_typed.get("anonymous", False),
        )

    def __init__(
        self,
        name: str,
        fields: Mapping[str, Type] | Sequence[tuple[str | None, Type]],
        indexed: AbstractSet[str] | Sequence[bool],
        *,
        anonymous: bool = False,
    ):
        self.name = name
        self.fields = EventFields(fields, indexed)
        self.anonymous = anonymous

        indexed_num = sum(self.fields.indexed)

        if anonymous and indexed_num > ANONYMOUS_EVENT_INDEXED_FIELDS:
            raise ValueError(
                f"Anonymous events can have at most {ANONYMOUS_EVENT_INDEXED_FIELDS} indexed fields"
            )
        if not anonymous and indexed_num > EVENT_INDEXED_FIELDS:
            raise ValueError(
                f"Non-anonymous events can have at most {EVENT_INDEXED_FIELDS} indexed fields"
            )

    @cached_property
    def signature(self) -> str:
        """The canonical signature, ``name(type,type,...)``."""
        return self.name + self.fields.canonical_form

    @cached_property
    def topic(self) -> LogTopic:
        """The hash of the signature, stored as the first topic of named events."""
        return LogTopic(keccak(self.signature.encode()))

    def __call__(self, **values: Any) -> "EventFilter":
        """
        Returns a filter matching the given values of indexed fields.
        Omitted fields match anything; wrap several values in :py:class:`Either`.
        """
        log_topics: list[None | tuple[LogTopic, ...]] = []
        if not self.anonymous:
            log_topics.append((self.topic,))
        for topic in self.fields.encode_to_topics(values):
            log_topics.append(None if topic is None else tuple(LogTopic(elem) for elem in topic))
        return EventFilter(tuple(log_topics))

    def decode_log_entry(self, log_entry: LogEntry) -> FieldValues:
        """
        Decodes the fields of a log entry emitted by this event.
        Indexed fields of reference types only have their hash logged and decode to ``None``.
        """
        topics = log_entry.topics
        if not self.anonymous:
            if not topics or topics[0] != self.topic:
                raise ValueError("This log entry belongs to a different event")
            topics = topics[1:]

        return self.fields.decode_log_entry([bytes(topic) for topic in topics], log_entry.data)

    def __str__(self) -> str:
        return f"event {self.name}{self.fields}" + (" anonymous" if self.anonymous else "")


class EventFilter:
    """Log topics to filter by, created by calling an :py:class:`Event`."""

    topics: tuple[None | tuple[LogTopic, ...], ...]

    def __init__(self, topics: tuple[None | tuple[LogTopic, ...], ...]):
        self.topics = topics


ItemType = TypeVar("ItemType")


class Items(Generic[ItemType]):
    """Named items, accessible as attributes or by key; iterates over the items."""

    def __init__(self, items_dict: Mapping[str, ItemType]):
        self._items_dict = items_dict

    def __getattr__(self, name: str) -> ItemType:
        try:
            return self._items_dict[name]
        except KeyError as exc:
            raise AttributeError(name) from exc

    def __getitem__(self, name: str) -> ItemType:
        return self._items_dict[name]

    def __contains__(self, name: object) -> bool:
        return name in self._items_dict

    def __iter__(self) -> Iterator[ItemType]:
        return iter(self._items_dict.values())


class ContractABI:
    """
    The methods (overloads included) and events of a contract, in declaration order.
    Other kinds of entries (constructors, fallbacks, errors) are skipped.
    """

    methods: tuple[Method, ...]
    events: tuple[Event, ...]

    event: Items[Event]
    """Events by name."""

    index: MethodIndex
    """Resolves method names and signatures to overloads."""

    @classmethod
    def from_json(cls, json_abi: ABI_JSON) -> "ContractABI":
        """Parses a JSON ABI, as produced by the Solidity compiler."""
        json_abi_typed = cast("Sequence[Mapping[str, ABI_JSON]]", json_abi)

        methods = []
        events = []
        for entry in json_abi_typed:
            # `type` may be omitted and defaults to "function"
            entry_type = entry.get("type", "function")
            if entry_type == "function":
                methods.append(Method.from_json({**entry, "type": "function"}))
            elif entry_type == "event":
                events.append(Event.from_json(entry))
            elif entry_type not in _IGNORED_ENTRY_TYPES:
                raise ValueError(f"Unknown ABI entry type: {entry_type}")

        return cls(methods=methods, events=events)

    def __init__(
        self,
        methods: None | Iterable[Method] = None,
        events: None | Iterable[Event] = None,
    ):
        self.methods = tuple(methods or [])
        self.events = tuple(events or [])

        events_by_name = {}
        for event in self.events:
            if event.name in events_by_name:
                raise ValueError(f"ABI contains more than one declarations of `{event.name}`")
            events_by_name[event.name] = event
        self.event = Items(events_by_name)

        self.index = MethodIndex(self.methods)

    def __str__(self) -> str:
        all_items: list[Method | Event] = [*self.methods, *self.events]
        return "{\n" + "".join(f"    {item}\n" for item in all_items) + "}"
