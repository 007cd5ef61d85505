from collections.abc import AsyncIterator

import pytest
from ethereum_rpc import Address
from mock_chain import MockChain

from pylon import AccountSigner, Client, ClientSession

# Short enough to keep the number of polls in tests small, with time mocked anyway
POLL_INTERVAL = 1.0


@pytest.fixture
def chain() -> MockChain:
    return MockChain(head=100)


@pytest.fixture
async def session(chain: MockChain) -> AsyncIterator[ClientSession]:
    client = Client(provider=chain, poll_interval=POLL_INTERVAL)
    async with client.session() as session:
        yield session


@pytest.fixture
def sender() -> Address:
    return Address(b"\x11" * 20)


@pytest.fixture
def another_signer() -> AccountSigner:
    return AccountSigner.create()
