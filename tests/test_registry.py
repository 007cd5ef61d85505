import pytest
from ethereum_rpc import Address
from mock_chain import MockChain

from pylon import (
    ClientSession,
    Contract,
    ContractABI,
    ContractInfo,
    ContractRegistry,
    UnknownContract,
    abi,
)
from pylon._abi_types import encode_args

TOKEN = Address(b"\x0a" * 20)
VAULT = Address(b"\x0b" * 20)
MATH_LIB = Address(b"\x0c" * 20)
ORACLE = Address(b"\x0d" * 20)


def event_json(name: str, *field_types: str) -> dict[str, object]:
    return dict(
        type="event",
        name=name,
        anonymous=False,
        inputs=[
            dict(name=f"field{i}", type=field_type, indexed=False)
            for i, field_type in enumerate(field_types)
        ],
    )


TOKEN_ABI = [
    dict(
        type="function",
        name="totalSupply",
        stateMutability="view",
        inputs=[],
        outputs=[dict(name="", type="uint256")],
    ),
    event_json("Minted", "uint256"),
]

VAULT_ABI = [event_json("Deposited", "uint256")]

# The library emits its events on behalf of the calling contract
MATH_LIB_ABI = [event_json("Overflow", "uint256", "uint256")]

ORACLE_ABI = [event_json("PriceUpdated", "uint256")]


REPO_DATA = dict(
    contracts=dict(
        token=dict(abi=TOKEN_ABI, address=TOKEN.checksum),
        vault=dict(abi=VAULT_ABI, address=VAULT.checksum),
    ),
    libraries=dict(math=dict(abi=MATH_LIB_ABI, address=MATH_LIB.checksum)),
    related=dict(oracle=dict(abi=ORACLE_ABI, address=ORACLE.checksum)),
)


def topic(json_abi: list[dict[str, object]], name: str) -> bytes:
    return bytes(ContractABI.from_json(json_abi).event[name].topic)


@pytest.fixture
def registry(session: ClientSession) -> ContractRegistry:
    return ContractRegistry.from_json(session, REPO_DATA)


async def test_from_json(registry: ContractRegistry) -> None:
    assert registry.names() == ["token", "vault"]
    token = registry.contract("token")
    assert token.address == TOKEN
    assert token.info.sender is None
    assert [method.name for method in token.abi.methods] == ["totalSupply"]


async def test_unknown_contract(registry: ContractRegistry) -> None:
    with pytest.raises(UnknownContract, match="Contract `oracle` is not registered"):
        registry.contract("oracle")
    with pytest.raises(UnknownContract, match="Contract `math` is not registered"):
        registry.contract("math")


async def test_repeated_handles(registry: ContractRegistry) -> None:
    token1 = registry.contract("token")
    token2 = registry.contract("token")
    assert token1.info == token2.info
    assert token1.log_decoder is token2.log_decoder is registry.log_decoder


async def test_library_events_are_decoded(
    session: ClientSession, registry: ContractRegistry, chain: MockChain
) -> None:
    chain.add_log(TOKEN, [topic(TOKEN_ABI, "Minted")], encode_args((abi.uint(256), 10)))
    chain.add_log(
        TOKEN,
        [topic(MATH_LIB_ABI, "Overflow")],
        encode_args((abi.uint(256), 1), (abi.uint(256), 2)),
    )
    # Unknown to every registered contract
    chain.add_log(TOKEN, [b"\xee" * 32])
    # Emitted by a different contract
    chain.add_log(VAULT, [topic(VAULT_ABI, "Deposited")], encode_args((abi.uint(256), 3)))

    entries = await registry.contract("token").logs()
    assert [entry.event_name for entry in entries] == ["Minted", "Overflow", None]
    assert entries[1].event is not None
    assert entries[1].event.fields.as_tuple == (1, 2)

    # A standalone handle only knows the events of its own ABI
    standalone = Contract(session, ContractInfo.from_json(REPO_DATA["contracts"]["token"]))
    entries = await standalone.logs()
    assert [entry.event_name for entry in entries] == ["Minted", None, None]


async def test_event_listener(registry: ContractRegistry, chain: MockChain) -> None:
    chain.add_log(ORACLE, [topic(ORACLE_ABI, "PriceUpdated")], encode_args((abi.uint(256), 7)))
    chain.add_log(VAULT, [topic(VAULT_ABI, "Deposited")], encode_args((abi.uint(256), 3)))
    chain.add_log(TOKEN, [topic(TOKEN_ABI, "Minted")], encode_args((abi.uint(256), 10)))

    entries = await registry.event_listener().get_logs(from_block=0)
    assert [entry.event_name for entry in entries] == ["PriceUpdated", "Deposited", "Minted"]

    entries = await registry.event_listener([ORACLE, TOKEN]).get_logs(from_block=0)
    assert [entry.address for entry in entries] == [ORACLE, TOKEN]
