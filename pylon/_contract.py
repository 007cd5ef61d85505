import inspect
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar, cast

from anyio.abc import TaskGroup
from ethereum_rpc import (
    Address,
    Amount,
    Block,
    BlockLabel,
    LogEntry,
    TxHash,
    TxInfo,
    TxReceipt,
)

from ._abi_types import ABI_JSON
from ._client import ClientSession
from ._client_rpc import TransactionParams
from ._confirmation import (
    DEFAULT_CONFIRMATIONS,
    ConfirmationTracker,
    ConfirmHandler,
    TransactionNotFound,
)
from ._contract_abi import ContractABI, EventFilter, Method
from ._log_decoder import DecodedEvent, DecodedLogEntry, LogDecoder
from ._log_poller import EventListener, LogChannel, LogConsumer, LogEmitter, Subscription
from ._signer import Signer


class ConstantMethodSendRejected(Exception):
    """Raised when trying to send a transaction to a ``view`` or ``pure`` method."""


@dataclass(frozen=True)
class ContractInfo:
    """The ABI of a deployed contract, its address, and the default sender of transactions."""

    abi: ContractABI
    address: Address
    sender: None | Address = None

    @classmethod
    def from_json(cls, info_json: Mapping[str, Any]) -> "ContractInfo":
        """
        Creates the object from a mapping with the fields
        ``abi`` (JSON ABI), ``address`` and, optionally, ``sender`` (hex strings).
        """
        sender = info_json.get("sender")
        return cls(
            abi=ContractABI.from_json(cast("ABI_JSON", info_json["abi"])),
            address=Address.from_hex(info_json["address"]),
            sender=None if sender is None else Address.from_hex(sender),
        )


@dataclass(frozen=True)
class DecodedReceipt:
    """A transaction receipt with its log entries decoded."""

    receipt: TxReceipt
    """The receipt as returned by the node."""

    logs: tuple[None | DecodedEvent, ...]
    """Decoded events, one per log entry (``None`` for unknown ones)."""

    raw_logs: tuple[LogEntry, ...]
    """All the log entries of the transaction."""

    @property
    def succeeded(self) -> bool:
        return self.receipt.succeeded


ReceiptHandler = Callable[[TxInfo, DecodedReceipt], None | Awaitable[None]]
"""
A confirmation progress handler receiving the receipt with its logs decoded;
may be a regular or an async function.
"""


class SendResult:
    """A submitted transaction that can be waited on."""

    tx_hash: TxHash
    """The hash of the submitted transaction."""

    method: str
    """The canonical signature of the called method."""

    def __init__(self, contract: "Contract", tx_hash: TxHash, method: str):
        self._contract = contract
        self.tx_hash = tx_hash
        self.method = method

    async def confirm(
        self,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        handler: None | ReceiptHandler = None,
    ) -> DecodedReceipt:
        """Waits for the transaction to be confirmed (see :py:meth:`Contract.confirm`)."""
        return await self._contract.confirm(self.tx_hash, confirmations, handler)


ConvertedType = TypeVar("ConvertedType")


class Contract:
    """
    A handle for a deployed contract.

    Methods are referred to either by their bare name,
    in which case the overload is chosen based on the arguments,
    or by their full signature (e.g. ``"transfer(address,uint256)"``).
    Resolution and encoding errors are raised before any request is made.

    Logs are decoded with ``log_decoder`` (the contract's own events by default).
    """

    def __init__(
        self,
        session: ClientSession,
        info: ContractInfo,
        *,
        log_decoder: None | LogDecoder = None,
        poll_interval: None | float = None,
    ):
        self._session = session
        self._info = info
        self._log_decoder = LogDecoder(info.abi.events) if log_decoder is None else log_decoder
        self._poll_interval = session.poll_interval if poll_interval is None else poll_interval

    @property
    def info(self) -> ContractInfo:
        return self._info

    @property
    def address(self) -> Address:
        return self._info.address

    @property
    def abi(self) -> ContractABI:
        return self._info.abi

    @property
    def log_decoder(self) -> LogDecoder:
        return self._log_decoder

    def resolve(self, method: str, args: Sequence[Any] = ()) -> Method:
        """Returns the method definition matching the name (or signature) and the arguments."""
        return self._info.abi.index.resolve(method, args)

    def encode_params(self, method: str, args: Sequence[Any] = ()) -> bytes:
        """Returns the calldata for the given method and arguments."""
        return self.resolve(method, args).encode_call(args)

    async def _call(
        self,
        method: str,
        args: Sequence[Any],
        *,
        sender: None | Address,
        block: Block,
        gas: None | int,
        gas_price: None | Amount,
        value: None | Amount,
    ) -> tuple[Method, bytes]:
        definition = self.resolve(method, args)
        output = await self._session.call(
            self.address,
            definition.encode_call(args),
            sender_address=sender or self._info.sender,
            block=block,
            gas=gas,
            gas_price=gas_price,
            value=value,
        )
        return definition, output

    async def raw_call(
        self,
        method: str,
        args: Sequence[Any] = (),
        *,
        sender: None | Address = None,
        block: Block = BlockLabel.LATEST,
        gas: None | int = None,
        gas_price: None | Amount = None,
        value: None | Amount = None,
    ) -> bytes:
        """
        Executes the method without creating a transaction and returns the raw output.

        ``gas``, ``gas_price`` and ``value`` are sent along with the call if given
        (a ``payable`` method may check the attached ``value``).
        """
        _definition, output = await self._call(
            method, args, sender=sender, block=block, gas=gas, gas_price=gas_price, value=value
        )
        return output

    async def call(
        self,
        method: str,
        args: Sequence[Any] = (),
        *,
        sender: None | Address = None,
        block: Block = BlockLabel.LATEST,
        gas: None | int = None,
        gas_price: None | Amount = None,
        value: None | Amount = None,
    ) -> tuple[Any, ...]:
        """
        Executes the method without creating a transaction
        (the keyword arguments are the same as in :py:meth:`raw_call`).
        Returns a tuple with one decoded value per declared output.
        """
        definition, output = await self._call(
            method, args, sender=sender, block=block, gas=gas, gas_price=gas_price, value=value
        )
        return definition.decode_output(output)

    async def call_first(self, method: str, args: Sequence[Any] = (), **call_options: Any) -> Any:
        """
        Same as :py:meth:`call`, but returns only the first output.
        ``call_options`` are the keyword arguments of :py:meth:`call`.
        """
        outputs = await self.call(method, args, **call_options)
        if not outputs:
            raise ValueError(f"`{method}` does not declare any outputs")
        return outputs[0]

    async def call_as(
        self,
        converter: Callable[[Any], ConvertedType | Awaitable[ConvertedType]],
        method: str,
        args: Sequence[Any] = (),
        **call_options: Any,
    ) -> ConvertedType:
        """Returns the first output passed through ``converter`` (a regular or an async one)."""
        value = await self.call_first(method, args, **call_options)
        result = converter(value)
        if inspect.isawaitable(result):
            return cast("ConvertedType", await result)
        return cast("ConvertedType", result)

    async def call_date(
        self, method: str, args: Sequence[Any] = (), **call_options: Any
    ) -> datetime:
        """Interprets the first output as a UNIX timestamp, in seconds."""
        return await self.call_as(
            lambda timestamp: datetime.fromtimestamp(timestamp, tz=timezone.utc),
            method,
            args,
            **call_options,
        )

    async def call_amount(
        self, method: str, args: Sequence[Any] = (), **call_options: Any
    ) -> Amount:
        """Interprets the first output as a sum in wei."""
        return await self.call_as(Amount.wei, method, args, **call_options)

    async def _send(
        self,
        method: str,
        args: Sequence[Any],
        *,
        value: None | Amount,
        gas: None | int,
        gas_price: None | Amount,
        sender: None | Address,
        nonce: None | int,
        signer: None | Signer,
    ) -> tuple[Method, TxHash]:
        definition = self.resolve(method, args)
        if definition.constant:
            raise ConstantMethodSendRejected(
                f"`{definition.signature}` is a constant method and can only be called"
            )
        data = definition.encode_call(args)

        if signer is not None:
            tx_hash = await self._session.broadcast_transact(
                signer,
                self.address,
                data,
                amount=value,
                gas=gas,
                max_gas_price=gas_price,
                nonce=nonce,
            )
            return definition, tx_hash

        sender = sender or self._info.sender
        if sender is None:
            raise ValueError("Either `sender` or `signer` must be provided (no default sender)")
        params = TransactionParams(
            from_=sender,
            to=self.address,
            data=data,
            value=value,
            gas=gas,
            gas_price=gas_price,
            nonce=nonce,
        )
        return definition, await self._session.send_transaction(params)

    async def raw_send(
        self,
        method: str,
        args: Sequence[Any] = (),
        *,
        value: None | Amount = None,
        gas: None | int = None,
        gas_price: None | Amount = None,
        sender: None | Address = None,
        nonce: None | int = None,
        signer: None | Signer = None,
    ) -> TxHash:
        """
        Submits a transaction calling the method and returns its hash
        without waiting for it to be mined.

        If ``signer`` is given, the transaction is signed locally;
        otherwise the node signs it on behalf of ``sender`` (or the default sender).
        """
        _definition, tx_hash = await self._send(
            method,
            args,
            value=value,
            gas=gas,
            gas_price=gas_price,
            sender=sender,
            nonce=nonce,
            signer=signer,
        )
        return tx_hash

    async def send(
        self,
        method: str,
        args: Sequence[Any] = (),
        *,
        value: None | Amount = None,
        gas: None | int = None,
        gas_price: None | Amount = None,
        sender: None | Address = None,
        nonce: None | int = None,
        signer: None | Signer = None,
    ) -> SendResult:
        """Same as :py:meth:`raw_send`, but returns an object that can wait for confirmation."""
        definition, tx_hash = await self._send(
            method,
            args,
            value=value,
            gas=gas,
            gas_price=gas_price,
            sender=sender,
            nonce=nonce,
            signer=signer,
        )
        return SendResult(self, tx_hash, definition.signature)

    def decode_receipt(self, receipt: TxReceipt) -> DecodedReceipt:
        """Decodes the log entries of the receipt."""
        return DecodedReceipt(
            receipt=receipt,
            logs=tuple(self._log_decoder.decode(entry) for entry in receipt.logs),
            raw_logs=tuple(receipt.logs),
        )

    def confirmation_tracker(self, tx_hash: TxHash) -> ConfirmationTracker:
        return ConfirmationTracker(self._session, tx_hash, poll_interval=self._poll_interval)

    async def confirm(
        self,
        tx_hash: TxHash,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        handler: None | ReceiptHandler = None,
    ) -> DecodedReceipt:
        """
        Waits until the transaction has ``confirmations`` blocks on top of it
        and returns the decoded receipt.
        ``handler`` is called once per new confirmation with the decoded receipt.
        Raises :py:class:`TransactionFailed` if the transaction was reverted.
        """
        tracker = self.confirmation_tracker(tx_hash)
        progress = None if handler is None else self._decoding_handler(handler)
        receipt = await tracker.confirm(confirmations, progress)
        return self.decode_receipt(receipt)

    def _decoding_handler(self, handler: ReceiptHandler) -> ConfirmHandler:
        async def decoding_handler(tx: TxInfo, receipt: TxReceipt) -> None:
            result = handler(tx, self.decode_receipt(receipt))
            if inspect.isawaitable(result):
                await result

        return decoding_handler

    async def receipt(self, tx_hash: TxHash) -> None | DecodedReceipt:
        """Returns the decoded receipt, or ``None`` if the transaction is not mined yet."""
        receipt = await self._session.get_transaction_receipt(tx_hash)
        return None if receipt is None else self.decode_receipt(receipt)

    async def transaction(self, tx_hash: TxHash) -> TxInfo:
        """Returns the transaction; raises :py:class:`TransactionNotFound` if it is unknown."""
        tx = await self._session.get_transaction(tx_hash)
        if tx is None:
            raise TransactionNotFound(tx_hash)
        return tx

    def event_listener(self) -> EventListener:
        """Returns a listener for the logs emitted by this contract."""
        return EventListener(
            self._session,
            self._log_decoder,
            source=self.address,
            poll_interval=self._poll_interval,
        )

    async def logs(self, event_filter: None | EventFilter = None) -> list[DecodedLogEntry]:
        """Returns all the log entries emitted by this contract so far."""
        return await self.get_logs(
            from_block=0, to_block=BlockLabel.LATEST, event_filter=event_filter
        )

    async def get_logs(
        self,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
    ) -> list[DecodedLogEntry]:
        return await self.event_listener().get_logs(
            from_block=from_block, to_block=to_block, event_filter=event_filter
        )

    async def wait_for_logs(
        self,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
    ) -> list[DecodedLogEntry]:
        return await self.event_listener().wait_for_logs(
            from_block=from_block, to_block=to_block, event_filter=event_filter
        )

    async def watch(
        self,
        consumer: LogConsumer,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
        subscription: None | Subscription = None,
    ) -> None:
        await self.event_listener().watch(
            consumer,
            from_block=from_block,
            to_block=to_block,
            event_filter=event_filter,
            subscription=subscription,
        )

    def on_log(
        self,
        task_group: TaskGroup,
        consumer: LogConsumer,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
    ) -> Subscription:
        return self.event_listener().on_log(
            task_group,
            consumer,
            from_block=from_block,
            to_block=to_block,
            event_filter=event_filter,
        )

    def log_emitter(
        self,
        task_group: TaskGroup,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
    ) -> LogEmitter:
        return self.event_listener().log_emitter(
            task_group, from_block=from_block, to_block=to_block, event_filter=event_filter
        )

    @asynccontextmanager
    async def log_channel(
        self,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
    ) -> AsyncIterator[LogChannel]:
        async with self.event_listener().log_channel(
            from_block=from_block, to_block=to_block, event_filter=event_filter
        ) as channel:
            yield channel
