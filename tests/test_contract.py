from datetime import datetime, timezone

import pytest
import trio
from eth_account import Account
from ethereum_rpc import Address, Amount, TxHash, TxInfo
from mock_chain import MockChain
from trio.testing import MockClock

from pylon import (
    ABIDecodingError,
    AccountSigner,
    AmbiguousOverload,
    ArityMismatch,
    ClientSession,
    ConstantMethodSendRejected,
    Contract,
    ContractABI,
    ContractInfo,
    DecodedReceipt,
    ProviderError,
    TransactionFailed,
    TransactionNotFound,
    UnknownMethod,
    abi,
)
from pylon._abi_types import encode_args

CONTRACT = Address(b"\xcc" * 20)

JSON_ABI = [
    dict(
        type="function",
        name="balanceOf",
        stateMutability="view",
        inputs=[dict(name="owner", type="address")],
        outputs=[dict(name="", type="uint256")],
    ),
    dict(
        type="function",
        name="getValues",
        stateMutability="view",
        inputs=[],
        outputs=[dict(name="number", type="uint256"), dict(name="text", type="string")],
    ),
    dict(
        type="function",
        name="deadline",
        stateMutability="view",
        inputs=[],
        outputs=[dict(name="", type="uint256")],
    ),
    dict(
        type="function",
        name="broken",
        stateMutability="view",
        inputs=[],
        outputs=[dict(name="", type="uint256")],
    ),
    dict(
        type="function",
        name="setValue",
        stateMutability="nonpayable",
        inputs=[dict(name="value", type="uint256")],
        outputs=[],
    ),
    dict(
        type="function",
        name="setValue",
        stateMutability="nonpayable",
        inputs=[dict(name="value", type="string")],
        outputs=[],
    ),
    dict(
        type="function",
        name="setPair",
        stateMutability="nonpayable",
        inputs=[dict(name="x", type="uint256"), dict(name="y", type="uint256")],
        outputs=[],
    ),
    dict(
        type="function",
        name="setPair",
        stateMutability="nonpayable",
        inputs=[dict(name="x", type="int256"), dict(name="y", type="int256")],
        outputs=[],
    ),
    dict(
        type="function",
        name="fail",
        stateMutability="nonpayable",
        inputs=[],
        outputs=[],
    ),
    dict(
        type="event",
        name="ValueSet",
        anonymous=False,
        inputs=[
            dict(name="setter", type="address", indexed=True),
            dict(name="value", type="uint256", indexed=False),
        ],
    ),
]

CONTRACT_ABI = ContractABI.from_json(JSON_ABI)
VALUE_SET = CONTRACT_ABI.event.ValueSet


@pytest.fixture
def contract(session: ClientSession, chain: MockChain, sender: Address) -> Contract:
    balance_of = CONTRACT_ABI.index.resolve("balanceOf(address)", [sender]).selector
    get_values = CONTRACT_ABI.index.resolve("getValues()").selector
    deadline = CONTRACT_ABI.index.resolve("deadline()").selector
    fail = CONTRACT_ABI.index.resolve("fail()").selector

    def call_handler(data: bytes) -> bytes:
        if data.startswith(balance_of):
            return encode_args((abi.uint(256), 5))
        if data.startswith(get_values):
            return encode_args((abi.uint(256), 1), (abi.string, "a"))
        if data.startswith(deadline):
            return encode_args((abi.uint(256), 1700000000))
        # `broken()` returns nothing
        return b""

    def transaction_handler(data: bytes) -> tuple[bool, list[tuple[list[bytes], bytes]]]:
        if data.startswith(fail):
            return False, []
        topics = [bytes(VALUE_SET.topic), b"\x00" * 12 + bytes(sender)]
        return True, [(topics, encode_args((abi.uint(256), len(data))))]

    chain.call_handlers[CONTRACT] = call_handler
    chain.transaction_handlers[CONTRACT] = transaction_handler

    return Contract(session, ContractInfo(abi=CONTRACT_ABI, address=CONTRACT, sender=sender))


def test_contract_info_from_json() -> None:
    sender = Address(b"\x11" * 20)
    info = ContractInfo.from_json(
        dict(abi=JSON_ABI, address=CONTRACT.checksum, sender=sender.checksum)
    )
    assert info.address == CONTRACT
    assert info.sender == sender
    assert [method.signature for method in info.abi.methods][:2] == [
        "balanceOf(address)",
        "getValues()",
    ]

    info = ContractInfo.from_json(dict(abi=JSON_ABI, address=CONTRACT.checksum))
    assert info.sender is None


async def test_encode_params(contract: Contract) -> None:
    assert contract.encode_params("setValue", [1]) == CONTRACT_ABI.index.resolve(
        "setValue(uint256)", [1]
    ).encode_call([1])
    assert contract.encode_params("setValue", ["a"]) == CONTRACT_ABI.index.resolve(
        "setValue(string)", ["a"]
    ).encode_call(["a"])

    with pytest.raises(AmbiguousOverload):
        contract.encode_params("setPair", [1, 2])
    assert contract.encode_params("setPair(int256,int256)", [1, 2]).startswith(
        CONTRACT_ABI.index.resolve("setPair(int256,int256)", [1, 2]).selector
    )


async def test_call(contract: Contract, sender: Address) -> None:
    assert await contract.call("balanceOf", [sender]) == (5,)
    assert await contract.call("getValues") == (1, "a")
    assert await contract.raw_call("getValues") == encode_args(
        (abi.uint(256), 1), (abi.string, "a")
    )


async def test_call_conversions(contract: Contract, sender: Address) -> None:
    assert await contract.call_first("balanceOf", [sender]) == 5
    assert await contract.call_amount("balanceOf", [sender]) == Amount.wei(5)
    assert await contract.call_date("deadline") == datetime(
        2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc
    )

    async def double(value: int) -> int:
        await trio.sleep(0)
        return value * 2

    assert await contract.call_as(double, "balanceOf", [sender]) == 10
    assert await contract.call_as(str, "balanceOf", [sender]) == "5"


async def test_call_options(contract: Contract, chain: MockChain, sender: Address) -> None:
    assert await contract.call(
        "balanceOf", [sender], gas=30000, gas_price=Amount.gwei(2), value=Amount.wei(5)
    ) == (5,)
    params = chain.call_params[-1]
    assert params["gas"] == hex(30000)
    assert params["gasPrice"] == hex(2 * 10**9)
    assert params["value"] == hex(5)

    await contract.raw_call("getValues", value=Amount.wei(7))
    assert chain.call_params[-1]["value"] == hex(7)
    assert "gas" not in chain.call_params[-1]

    assert await contract.call_first("balanceOf", [sender], gas=40000) == 5
    assert chain.call_params[-1]["gas"] == hex(40000)
    assert await contract.call_amount("balanceOf", [sender], value=Amount.wei(1)) == Amount.wei(5)
    assert chain.call_params[-1]["value"] == hex(1)

    # Only the given options are sent
    await contract.call("getValues")
    assert set(chain.call_params[-1]) == {"to", "from", "data"}


async def test_call_errors(contract: Contract, chain: MockChain, sender: Address) -> None:
    with pytest.raises(UnknownMethod):
        await contract.call("transfer", [sender, 1])
    with pytest.raises(ArityMismatch):
        await contract.call("balanceOf", [])
    # Resolution errors are raised before any requests are made
    assert chain.count("eth_call") == 0

    # Empty return data where an output is declared
    with pytest.raises(ABIDecodingError):
        await contract.call("broken")

    del chain.call_handlers[CONTRACT]
    with pytest.raises(ProviderError, match="execution reverted"):
        await contract.call("getValues")


async def test_send(contract: Contract, chain: MockChain, sender: Address) -> None:
    result = await contract.send("setValue", ["abc"])
    assert result.method == "setValue(string)"

    tx = chain.transactions[bytes(result.tx_hash)]
    assert tx.sender == sender
    assert tx.to == CONTRACT
    assert tx.data == contract.encode_params("setValue(string)", ["abc"])

    receipt = await result.confirm(0)
    assert receipt.succeeded
    assert receipt.receipt.transaction_hash == result.tx_hash
    assert len(receipt.raw_logs) == 1
    assert receipt.logs[0] is not None
    assert receipt.logs[0].name == "ValueSet"
    assert receipt.logs[0].fields.setter == sender
    assert receipt.logs[0].fields.value == len(tx.data)


async def test_send_params(contract: Contract, chain: MockChain) -> None:
    another_sender = Address(b"\x22" * 20)
    tx_hash = await contract.raw_send(
        "setValue", [1], sender=another_sender, value=Amount.wei(10), gas=30000
    )
    tx = chain.transactions[bytes(tx_hash)]
    assert tx.sender == another_sender
    assert tx.value == 10


async def test_send_constant_method(contract: Contract, chain: MockChain, sender: Address) -> None:
    with pytest.raises(
        ConstantMethodSendRejected,
        match=r"`balanceOf\(address\)` is a constant method and can only be called",
    ):
        await contract.send("balanceOf", [sender])
    assert chain.requests == []


async def test_send_without_sender(session: ClientSession, chain: MockChain) -> None:
    contract = Contract(session, ContractInfo(abi=CONTRACT_ABI, address=CONTRACT))
    with pytest.raises(ValueError, match="Either `sender` or `signer` must be provided"):
        await contract.send("setValue", [1])
    assert chain.requests == []


async def test_send_with_signer(
    contract: Contract, chain: MockChain, another_signer: AccountSigner
) -> None:
    tx_hash = await contract.raw_send("setValue", [1], signer=another_signer)

    assert len(chain.raw_transactions) == 1
    raw_tx = chain.raw_transactions[0]
    assert Address.from_hex(Account.recover_transaction(raw_tx)) == another_signer.address
    assert chain.transactions[bytes(tx_hash)].sender == another_signer.address
    for method in [
        "eth_chainId",
        "eth_estimateGas",
        "eth_gasPrice",
        "eth_getTransactionCount",
        "eth_sendRawTransaction",
    ]:
        assert chain.count(method) == 1
    assert chain.count("eth_sendTransaction") == 0


async def test_send_with_signer_explicit_params(
    contract: Contract, chain: MockChain, another_signer: AccountSigner
) -> None:
    await contract.raw_send(
        "setValue",
        [1],
        signer=another_signer,
        gas=100000,
        gas_price=Amount.gwei(3),
        nonce=5,
    )
    assert chain.count("eth_estimateGas") == 0
    assert chain.count("eth_gasPrice") == 0
    assert chain.count("eth_getTransactionCount") == 0


async def test_confirm(
    autojump_clock: MockClock,  # noqa: ARG001
    contract: Contract,
    chain: MockChain,
) -> None:
    result = await contract.send("setValue", [1])
    chain.head_script = [102, 105]
    calls = []

    receipt = await result.confirm(3, lambda _tx, receipt: calls.append(receipt))
    assert len(calls) == 3
    assert receipt.logs[0] is not None
    assert receipt.logs[0].name == "ValueSet"

    # Progress handlers get the receipt with its logs decoded
    for progress in calls:
        assert isinstance(progress, DecodedReceipt)
        assert progress.receipt.transaction_hash == result.tx_hash
        assert progress.raw_logs == receipt.raw_logs
        assert [event.name for event in progress.logs if event is not None] == ["ValueSet"]


async def test_confirm_async_handler(
    autojump_clock: MockClock,  # noqa: ARG001
    contract: Contract,
    chain: MockChain,
) -> None:
    tx_hash = await contract.raw_send("setValue", [1])
    chain.head_script = [103]
    events = []

    async def handler(tx: TxInfo, receipt: DecodedReceipt) -> None:
        await trio.sleep(0)
        assert tx.hash_ == tx_hash
        events.extend(event.name for event in receipt.logs if event is not None)

    await contract.confirm(tx_hash, 2, handler)
    assert events == ["ValueSet", "ValueSet"]


async def test_confirm_zero_poll_interval(
    autojump_clock: MockClock,  # noqa: ARG001
    session: ClientSession,
    chain: MockChain,
    contract: Contract,
) -> None:
    contract = Contract(session, contract.info, poll_interval=0)
    result = await contract.send("setValue", [1])
    chain.head_script = [101, 101, 102]

    start_time = trio.current_time()
    await result.confirm(1)
    assert trio.current_time() == start_time
    assert chain.count("eth_blockNumber") == 3


async def test_confirm_reverted(
    autojump_clock: MockClock,  # noqa: ARG001
    contract: Contract,
) -> None:
    result = await contract.send("fail")
    with pytest.raises(TransactionFailed):
        await result.confirm()


async def test_receipt(contract: Contract, chain: MockChain) -> None:
    chain.auto_mine = False
    tx_hash = await contract.raw_send("setValue", [1])
    assert await contract.receipt(tx_hash) is None

    chain.mine()
    receipt = await contract.receipt(tx_hash)
    assert receipt is not None
    assert receipt.receipt.block_number == 101


async def test_transaction(contract: Contract) -> None:
    tx_hash = await contract.raw_send("setValue", [1])
    tx = await contract.transaction(tx_hash)
    assert tx.hash_ == tx_hash
    assert tx.to == CONTRACT
    assert tx.block_hash is not None

    unknown = TxHash(b"\xab" * 32)
    with pytest.raises(TransactionNotFound) as exc:
        await contract.transaction(unknown)
    assert exc.value.tx_hash == unknown


async def test_logs(
    autojump_clock: MockClock,  # noqa: ARG001
    contract: Contract,
    chain: MockChain,
    sender: Address,
) -> None:
    await contract.send("setValue", [1])
    await contract.send("setValue", ["abc"])

    entries = await contract.logs()
    assert [entry.event_name for entry in entries] == ["ValueSet", "ValueSet"]
    assert [entry.block_number for entry in entries] == [101, 102]

    entries = await contract.logs(VALUE_SET(setter=Address(b"\x99" * 20)))
    assert entries == []

    entries = await contract.get_logs(from_block=102, to_block=102)
    assert len(entries) == 1

    received = []
    async with trio.open_nursery() as nursery:
        subscription = contract.on_log(nursery, received.append)
        await trio.sleep(1.5)
        await contract.send("setValue", [2])
        await trio.sleep(2)
        subscription.cancel()

    # The subscription starts at the head block, which already had an entry
    assert [entry.block_number for entry in received] == [102, 103]
    assert all(entry.address == CONTRACT for entry in received)
    assert received[-1].event is not None
    assert received[-1].event["setter"] == sender


async def test_log_emitter_and_channel(
    autojump_clock: MockClock,  # noqa: ARG001
    contract: Contract,
) -> None:
    await contract.send("setValue", [1])

    received = []
    async with trio.open_nursery() as nursery:
        emitter = contract.log_emitter(nursery, from_block=0)
        emitter.on("ValueSet", received.append)
        await trio.sleep(1.5)
        emitter.cancel()
    assert len(received) == 1

    async with contract.log_channel(from_block=0, to_block=101) as channel:
        entries = [entry async for entry in channel]
    assert [entry.event_name for entry in entries] == ["ValueSet"]

    with trio.fail_after(10):
        entries = await contract.wait_for_logs(from_block=0)
    assert len(entries) == 1
