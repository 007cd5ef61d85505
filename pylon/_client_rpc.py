from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, TypeVar, cast

from compages import StructuringError
from ethereum_rpc import (
    Address,
    Amount,
    Block,
    BlockLabel,
    EstimateGasParams,
    EthCallParams,
    FilterParams,
    LogEntry,
    TxHash,
    TxInfo,
    TxReceipt,
    structure,
    unstructure,
)

from ._contract_abi import EventFilter
from ._provider import ProviderSession


@dataclass
class TransactionParams:
    """Fields of a transaction to be signed by the node on behalf of ``from_``."""

    from_: Address
    to: Address
    data: bytes
    value: None | Amount = None
    gas: None | int = None
    gas_price: None | Amount = None
    nonce: None | int = None


class BadResponseFormat(Exception):
    """Raised when a node response cannot be structured into the expected type."""


@contextmanager
def convert_errors(method_name: str) -> Iterator[None]:
    try:
        yield
    except StructuringError as exc:
        raise BadResponseFormat(f"{method_name}: {exc}") from exc


RetType = TypeVar("RetType")


async def rpc_call(
    provider_session: ProviderSession, method_name: str, ret_type: Any, *args: Any
) -> Any:
    """
    Unstructures ``args``, makes the request and structures the result into ``ret_type``.
    Structuring failures are reported as :py:class:`BadResponseFormat`.
    """
    with convert_errors(method_name):
        result = await provider_session.rpc(method_name, *(unstructure(arg) for arg in args))
        return structure(ret_type, result)


class ClientSessionRPC:
    """
    Typed wrappers for the Ethereum RPC methods used by the library,
    one method per RPC call.

    Any of them may raise :py:class:`ProviderError` or :py:class:`BadResponseFormat`.
    """

    def __init__(self, provider_session: ProviderSession):
        self._provider_session = provider_session

    async def _request(self, method_name: str, ret_type: type[RetType], *args: Any) -> RetType:
        # `ret_type` may be a union; the cast keeps mypy from inferring `object`
        return cast(RetType, await rpc_call(self._provider_session, method_name, ret_type, *args))

    async def eth_chain_id(self) -> int:
        return await self._request("eth_chainId", int)

    async def eth_block_number(self) -> int:
        return await self._request("eth_blockNumber", int)

    async def eth_get_transaction_by_hash(self, tx_hash: TxHash) -> None | TxInfo:
        """``None`` if the node does not know the transaction."""
        return await self._request(
            "eth_getTransactionByHash",
            None | TxInfo,  # type: ignore[arg-type]
            tx_hash,
        )

    async def eth_get_transaction_receipt(self, tx_hash: TxHash) -> None | TxReceipt:
        """``None`` until the transaction is mined."""
        return await self._request(
            "eth_getTransactionReceipt",
            None | TxReceipt,  # type: ignore[arg-type]
            tx_hash,
        )

    async def eth_get_transaction_count(
        self, address: Address, block: Block = BlockLabel.LATEST
    ) -> int:
        return await self._request("eth_getTransactionCount", int, address, block)

    async def eth_call(self, params: EthCallParams, block: Block = BlockLabel.LATEST) -> bytes:
        """Runs the call against the state at ``block`` and returns the raw output."""
        return await self._request("eth_call", bytes, params, block)

    async def eth_send_transaction(self, params: TransactionParams) -> TxHash:
        return await self._request("eth_sendTransaction", TxHash, params)

    async def eth_send_raw_transaction(self, tx_bytes: bytes) -> TxHash:
        return await self._request("eth_sendRawTransaction", TxHash, tx_bytes)

    async def eth_estimate_gas(
        self, params: EstimateGasParams, block: Block = BlockLabel.PENDING
    ) -> int:
        return await self._request("eth_estimateGas", int, params, block)

    async def eth_gas_price(self) -> Amount:
        return await self._request("eth_gasPrice", Amount)

    async def eth_get_logs(
        self,
        source: None | Address | Iterable[Address] = None,
        event_filter: None | EventFilter = None,
        from_block: Block = BlockLabel.LATEST,
        to_block: Block = BlockLabel.LATEST,
    ) -> tuple[LogEntry, ...]:
        """
        Returns the entries emitted by ``source`` (one or several addresses, or any)
        in the inclusive block range, matching ``event_filter`` if given.
        """
        if source is not None and not isinstance(source, Address):
            source = tuple(source)
        params = FilterParams(
            from_block=from_block,
            to_block=to_block,
            address=source,
            topics=None if event_filter is None else event_filter.topics,
        )
        return await self._request("eth_getLogs", tuple[LogEntry, ...], params)
