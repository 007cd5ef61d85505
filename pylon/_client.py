from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, cast

from ethereum_rpc import (
    Address,
    Amount,
    Block,
    BlockLabel,
    EstimateGasParams,
    EthCallParams,
    LogEntry,
    TxHash,
    TxInfo,
    TxReceipt,
    Type2Transaction,
    unstructure,
)

from ._client_rpc import ClientSessionRPC, TransactionParams
from ._contract_abi import EventFilter
from ._provider import Provider, ProviderSession
from ._signer import Signer

if TYPE_CHECKING:  # pragma: no cover
    from eth_account.types import TransactionDictType


DEFAULT_POLL_INTERVAL = 7.5
"""
Default delay between polls of the chain, in seconds
(half of the expected block time of 15 seconds).
"""


class Client:
    """
    An Ethereum RPC client.

    ``poll_interval`` is the default delay (in seconds) between successive polls
    when waiting for confirmations or new logs.
    """

    def __init__(self, provider: Provider, *, poll_interval: float = DEFAULT_POLL_INTERVAL):
        if poll_interval <= 0:
            raise ValueError(f"`poll_interval` must be positive, got {poll_interval}")
        self._provider = provider
        self._poll_interval = poll_interval

    @asynccontextmanager
    async def session(self) -> AsyncIterator["ClientSession"]:
        """Opens a session to the client allowing the backend to optimize sequential requests."""
        async with self._provider.session() as provider_session:
            yield ClientSession(provider_session, poll_interval=self._poll_interval)


class ClientSession:
    """
    An open session to the provider.

    The methods of this class may raise
    :py:class:`ProviderError` (a transport or a node failure)
    or :py:class:`BadResponseFormat` (an unexpected response).
    """

    poll_interval: float
    """The default delay between polls of the chain, in seconds."""

    def __init__(
        self, provider_session: ProviderSession, *, poll_interval: float = DEFAULT_POLL_INTERVAL
    ):
        self._provider_session = provider_session
        self._chain_id: None | int = None
        self._rpc = ClientSessionRPC(provider_session)
        self.poll_interval = poll_interval

    @property
    def rpc(self) -> ClientSessionRPC:
        """The direct RPC calls."""
        return self._rpc

    async def chain_id(self) -> int:
        """Calls the ``eth_chainId`` RPC method (and caches the result)."""
        if self._chain_id is None:
            self._chain_id = await self._rpc.eth_chain_id()
        return self._chain_id

    async def block_number(self) -> int:
        """Returns the height of the chain head."""
        return await self._rpc.eth_block_number()

    async def get_transaction(self, tx_hash: TxHash) -> None | TxInfo:
        """Returns the transaction, or ``None`` if the node does not know it."""
        return await self._rpc.eth_get_transaction_by_hash(tx_hash)

    async def get_transaction_receipt(self, tx_hash: TxHash) -> None | TxReceipt:
        """Returns the transaction receipt, or ``None`` if the transaction is not mined yet."""
        return await self._rpc.eth_get_transaction_receipt(tx_hash)

    async def call(
        self,
        contract_address: Address,
        data: bytes,
        *,
        sender_address: None | Address = None,
        block: Block = BlockLabel.LATEST,
        gas: None | int = None,
        gas_price: None | Amount = None,
        value: None | Amount = None,
    ) -> bytes:
        """
        Executes the calldata at the given address without creating a transaction.
        Returns the raw output.

        If ``sender_address`` is provided, it will be included in the call
        and affect the return value if the method uses ``msg.sender`` internally.
        ``gas``, ``gas_price`` and ``value`` are passed to the node as is, if given.
        """
        params = EthCallParams(
            to=contract_address,
            data=data,
            from_=sender_address,
            gas=gas,
            gas_price=gas_price,
            value=value,
        )
        return await self._rpc.eth_call(params, block=block)

    async def send_transaction(self, params: TransactionParams) -> TxHash:
        """Submits a transaction to be signed by the node on behalf of ``params.from_``."""
        return await self._rpc.eth_send_transaction(params)

    async def broadcast_transact(
        self,
        signer: Signer,
        contract_address: Address,
        data: bytes,
        amount: None | Amount = None,
        gas: None | int = None,
        max_gas_price: None | Amount = None,
        nonce: None | int = None,
    ) -> TxHash:
        """
        Signs the transaction locally and broadcasts it, without waiting for it to be mined.
        If ``gas`` is ``None``, the required amount of gas is estimated by the node first.
        ``max_gas_price`` and ``nonce`` are requested from the node if not given.
        """
        if amount is None:
            amount = Amount(0)

        chain_id = await self.chain_id()
        if gas is None:
            gas = await self._rpc.eth_estimate_gas(
                EstimateGasParams(
                    from_=signer.address, to=contract_address, data=data, value=amount
                ),
                block=BlockLabel.PENDING,
            )
        if max_gas_price is None:
            max_gas_price = await self._rpc.eth_gas_price()
        max_tip = min(Amount.gwei(1), max_gas_price)
        if nonce is None:
            nonce = await self._rpc.eth_get_transaction_count(signer.address, BlockLabel.PENDING)
        tx = cast(
            "TransactionDictType",
            unstructure(
                Type2Transaction(
                    chain_id=chain_id,
                    to=contract_address,
                    value=amount,
                    gas=gas,
                    max_fee_per_gas=max_gas_price,
                    max_priority_fee_per_gas=max_tip,
                    nonce=nonce,
                    data=data,
                )
            ),
        )
        signed_tx = signer.sign_transaction(tx)
        return await self._rpc.eth_send_raw_transaction(signed_tx)

    async def get_logs(
        self,
        source: None | Address | Iterable[Address] = None,
        event_filter: None | EventFilter = None,
        from_block: Block = BlockLabel.LATEST,
        to_block: Block = BlockLabel.LATEST,
    ) -> tuple[LogEntry, ...]:
        """
        Returns the log entries emitted by ``source`` (any address if ``None``)
        in the given block range (inclusive).
        """
        return await self._rpc.eth_get_logs(
            source=source, event_filter=event_filter, from_block=from_block, to_block=to_block
        )
