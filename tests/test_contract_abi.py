import pytest
from ethereum_rpc import Address, BlockHash, LogEntry, LogTopic, TxHash, keccak

from pylon import (
    ABIDecodingError,
    ContractABI,
    Either,
    Event,
    FieldValues,
    Method,
    Mutability,
    abi,
)
from pylon._abi_types import encode_args
from pylon._contract_abi import EventFields, Fields


def make_log_entry(topics: list[bytes], data: bytes) -> LogEntry:
    return LogEntry(
        removed=False,
        address=Address(b"\x01" * 20),
        data=data,
        topics=tuple(LogTopic(topic) for topic in topics),
        log_index=0,
        transaction_index=0,
        transaction_hash=TxHash(b"\x02" * 32),
        block_hash=BlockHash(b"\x03" * 32),
        block_number=1,
    )


def test_field_values() -> None:
    vals = FieldValues([("a", 1), ("b", 2)])
    assert vals.as_dict == dict(a=1, b=2)
    assert vals.as_tuple == (1, 2)
    assert vals["b"] == 2
    assert vals.b == 2
    assert len(vals) == 2
    assert repr(vals) == "FieldValues([('a', 1), ('b', 2)])"

    with pytest.raises(AttributeError):
        _ = vals.c

    with pytest.raises(ValueError, match="The values cannot have repeating names"):
        FieldValues([("a", 1), ("a", 2)])


def test_field_values_partially_named() -> None:
    vals = FieldValues([("a", 1), (None, 2)])
    with pytest.raises(
        ValueError,
        match="This structure has some anonymous fields "
        "and therefore is not representable as a `dict`",
    ):
        _ = vals.as_dict

    assert vals.as_tuple == (1, 2)
    assert vals.a == 1


def test_fields() -> None:
    fields = Fields(dict(a=abi.uint(8), b=abi.bool))
    assert fields.canonical_form == "(uint8,bool)"
    assert str(fields) == "(uint8 a, bool b)"
    assert fields.decode(fields.encode([1, True])).as_dict == dict(a=1, b=True)
    assert fields.accepts([1, True])
    assert not fields.accepts([1])
    assert not fields.accepts([True, 1])

    fields = Fields([abi.uint(8), abi.bool])
    assert fields.names == (None, None)
    assert str(fields) == "(uint8, bool)"


def test_mutability_from_json() -> None:
    assert Mutability.from_json(dict(stateMutability="view")) == Mutability.VIEW
    assert Mutability.from_json(dict(constant=True)) == Mutability.VIEW
    assert Mutability.from_json(dict(payable=True)) == Mutability.PAYABLE
    assert Mutability.from_json({}) == Mutability.NONPAYABLE
    with pytest.raises(ValueError, match="Unknown mutability identifier: foo"):
        Mutability.from_json(dict(stateMutability="foo"))


def test_method() -> None:
    method = Method(
        name="transfer",
        mutability=Mutability.NONPAYABLE,
        inputs=dict(to=abi.address, amount=abi.uint(256)),
        outputs=abi.bool,
    )
    assert method.signature == "transfer(address,uint256)"
    assert method.selector == keccak(b"transfer(address,uint256)")[:4]
    assert not method.constant
    assert not method.payable
    assert str(method) == "function transfer(address to, uint256 amount) nonpayable returns (bool)"

    addr = Address(b"\x01" * 20)
    calldata = method.encode_call([addr, 10])
    assert calldata == method.selector + encode_args((abi.address, addr), (abi.uint(256), 10))
    assert method(addr, 10) == calldata

    with pytest.raises(ValueError, match=r"`transfer\(address,uint256\)` takes 2 arguments, got 1"):
        method.encode_call([addr])

    assert method.decode_output(encode_args((abi.bool, True))) == (True,)


def test_method_decode_output() -> None:
    method = Method(
        name="values",
        mutability=Mutability.VIEW,
        inputs=[],
        outputs=[abi.uint(256), abi.string],
    )
    assert method.constant
    outputs = method.decode_output(encode_args((abi.uint(256), 1), (abi.string, "a")))
    assert outputs == (1, "a")

    no_outputs = Method(name="noop", mutability=Mutability.NONPAYABLE, inputs=[])
    assert no_outputs.decode_output(b"") == ()

    # Empty return data for a method declaring outputs is an error, not an empty result
    with pytest.raises(ABIDecodingError):
        method.decode_output(b"")


def test_method_from_json() -> None:
    method = Method.from_json(
        dict(
            type="function",
            name="get",
            stateMutability="pure",
            inputs=[dict(name="x", type="uint")],
            outputs=[dict(name="", type="int8")],
        )
    )
    assert method.signature == "get(uint256)"
    assert method.constant
    assert method.outputs.names == (None,)

    with pytest.raises(ValueError, match="Method object must be created from a JSON entry"):
        Method.from_json(dict(type="event", name="get"))


def test_event() -> None:
    event = Event(
        name="Transfer",
        fields=dict(from_=abi.address, to=abi.address, value=abi.uint(256)),
        indexed={"from_", "to"},
    )
    assert event.signature == "Transfer(address,address,uint256)"
    assert event.topic == LogTopic(keccak(b"Transfer(address,address,uint256)"))
    assert (
        str(event) == "event Transfer(address indexed from_, address indexed to, uint256 value)"
    )

    addr1 = Address(b"\x01" * 20)
    addr2 = Address(b"\x02" * 20)
    entry = make_log_entry(
        [bytes(event.topic), b"\x00" * 12 + bytes(addr1), b"\x00" * 12 + bytes(addr2)],
        encode_args((abi.uint(256), 100)),
    )
    decoded = event.decode_log_entry(entry)
    assert decoded.as_dict == dict(from_=addr1, to=addr2, value=100)

    other = make_log_entry([keccak(b"Other()")], b"")
    with pytest.raises(ValueError, match="This log entry belongs to a different event"):
        event.decode_log_entry(other)


def test_event_filter() -> None:
    event = Event(
        name="Transfer",
        fields=dict(from_=abi.address, to=abi.address, value=abi.uint(256)),
        indexed={"from_", "to"},
    )
    addr1 = Address(b"\x01" * 20)
    addr2 = Address(b"\x02" * 20)

    assert event().topics == ((event.topic,),)
    assert event(from_=addr1).topics == (
        (event.topic,),
        (LogTopic(b"\x00" * 12 + bytes(addr1)),),
    )
    assert event(to=Either(addr1, addr2)).topics == (
        (event.topic,),
        None,
        (LogTopic(b"\x00" * 12 + bytes(addr1)), LogTopic(b"\x00" * 12 + bytes(addr2))),
    )

    with pytest.raises(ValueError, match=r"Can only filter by indexed fields, got \['value'\]"):
        event(value=1)


def test_event_hashed_fields() -> None:
    event = Event(name="Named", fields=dict(name=abi.string, id=abi.uint(8)), indexed={"name"})
    entry = make_log_entry(
        [bytes(event.topic), keccak(b"some name")], encode_args((abi.uint(8), 7))
    )
    assert event.decode_log_entry(entry).as_dict == dict(name=None, id=7)


def test_event_fields_errors() -> None:
    with pytest.raises(ValueError, match="All the names in `indexed` must be present"):
        EventFields(dict(a=abi.uint(8)), {"b"})
    with pytest.raises(ValueError, match="its length must match the number of fields"):
        EventFields(dict(a=abi.uint(8)), [True, False])

    fields = EventFields(dict(a=abi.uint(8), b=abi.uint(8)), {"a"})
    with pytest.raises(ValueError, match=r"The number of topics in the log entry \(0\)"):
        fields.decode_log_entry([], encode_args((abi.uint(8), 1)))


def test_event_indexed_limits() -> None:
    fields = {f"f{i}": abi.uint(8) for i in range(5)}
    with pytest.raises(ValueError, match="Non-anonymous events can have at most 3 indexed fields"):
        Event("E", fields, indexed={"f0", "f1", "f2", "f3"})
    with pytest.raises(ValueError, match="Anonymous events can have at most 4 indexed fields"):
        Event("E", fields, indexed=set(fields), anonymous=True)


def test_event_from_json() -> None:
    event = Event.from_json(
        dict(
            type="event",
            name="Deposit",
            anonymous=False,
            inputs=[
                dict(name="who", type="address", indexed=True),
                dict(name="amount", type="uint256", indexed=False),
            ],
        )
    )
    assert event.fields.indexed == (True, False)
    assert event.signature == "Deposit(address,uint256)"


JSON_ABI = [
    dict(type="constructor", inputs=[], stateMutability="nonpayable"),
    dict(type="fallback", stateMutability="payable"),
    dict(type="error", name="Oops", inputs=[]),
    dict(
        type="function",
        name="foo",
        stateMutability="view",
        inputs=[dict(name="x", type="uint256")],
        outputs=[dict(name="", type="uint256")],
    ),
    # The type defaults to "function"
    dict(
        name="foo",
        constant=True,
        inputs=[dict(name="s", type="string")],
        outputs=[],
    ),
    dict(
        type="event",
        name="Foo",
        inputs=[dict(name="x", type="uint256", indexed=True)],
        anonymous=False,
    ),
]


def test_contract_abi_from_json() -> None:
    contract_abi = ContractABI.from_json(JSON_ABI)
    assert [method.signature for method in contract_abi.methods] == ["foo(uint256)", "foo(string)"]
    assert [event.name for event in contract_abi.events] == ["Foo"]
    assert contract_abi.event.Foo is contract_abi.events[0]
    assert "Foo" in contract_abi.event
    assert contract_abi.index.names() == ["foo"]
    assert str(contract_abi) == (
        "{\n"
        "    function foo(uint256 x) view returns (uint256)\n"
        "    function foo(string s) view\n"
        "    event Foo(uint256 indexed x)\n"
        "}"
    )

    with pytest.raises(ValueError, match="Unknown ABI entry type: something"):
        ContractABI.from_json([dict(type="something")])


def test_contract_abi_duplicates() -> None:
    with pytest.raises(ValueError, match=r"Method `foo\(uint256\)` is declared more than once"):
        ContractABI.from_json([JSON_ABI[3], JSON_ABI[3]])
    with pytest.raises(ValueError, match="ABI contains more than one declarations of `Foo`"):
        ContractABI.from_json([JSON_ABI[5], JSON_ABI[5]])
