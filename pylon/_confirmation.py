import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

import anyio
from ethereum_rpc import TxHash, TxInfo, TxReceipt

from ._client import ClientSession
from ._client_rpc import BadResponseFormat
from ._provider import ProviderError

logger = logging.getLogger(__name__)


DEFAULT_CONFIRMATIONS = 3
"""The number of blocks mined on top of the transaction's block to consider it confirmed."""


class TransactionNotFound(Exception):
    """Raised when the node does not know a transaction with the given hash."""

    def __init__(self, tx_hash: TxHash):
        super().__init__(f"Transaction {bytes(tx_hash).hex()} not found")
        self.tx_hash = tx_hash


class TransactionFailed(Exception):
    """Raised when a transaction was mined, but its execution failed (e.g. was reverted)."""

    receipt: TxReceipt
    """The receipt of the failed transaction."""

    def __init__(self, receipt: TxReceipt):
        super().__init__(
            f"Transaction {bytes(receipt.transaction_hash).hex()} failed "
            f"in block {receipt.block_number}"
        )
        self.receipt = receipt


class ConfirmationStage(Enum):
    """Stages of waiting for a transaction confirmation."""

    SUBMITTED = "submitted"
    """The transaction hash is known, the receipt has not been requested yet."""

    AWAITING_RECEIPT = "awaiting_receipt"
    """The transaction is pending (or unknown to the node yet)."""

    AWAITING_DEPTH = "awaiting_depth"
    """The transaction is mined, waiting for more blocks to be mined on top of it."""

    CONFIRMED = "confirmed"
    """The requested number of confirmations has been reached."""

    REVERTED = "reverted"
    """The transaction was mined, but its execution failed."""


ConfirmHandler = Callable[[TxInfo, TxReceipt], None | Awaitable[None]]
"""A progress handler called once per new confirmation; may be a regular or an async function."""


class ConfirmationTracker:
    """
    Waits for a transaction to be mined and buried under a given number of blocks.

    The chain is polled every ``poll_interval`` seconds
    (defaults to the session's :py:attr:`ClientSession.poll_interval`).
    """

    def __init__(
        self, session: ClientSession, tx_hash: TxHash, *, poll_interval: None | float = None
    ):
        self._session = session
        self._tx_hash = tx_hash
        self._poll_interval = session.poll_interval if poll_interval is None else poll_interval
        self._handlers: list[ConfirmHandler] = []
        self._stage = ConfirmationStage.SUBMITTED

    @property
    def tx_hash(self) -> TxHash:
        return self._tx_hash

    @property
    def stage(self) -> ConfirmationStage:
        """The current stage of the confirmation."""
        return self._stage

    def on_confirm(self, handler: ConfirmHandler) -> ConfirmHandler:
        """
        Registers a progress handler. Returns the handler, so this can be used as a decorator.
        Handlers are released once the transaction is confirmed.
        """
        self._handlers.append(handler)
        return handler

    def off_confirm(self, handler: ConfirmHandler) -> None:
        """Unregisters a previously registered progress handler."""
        self._handlers.remove(handler)

    def _set_stage(self, stage: ConfirmationStage) -> None:
        if stage != self._stage:
            logger.debug(
                "Transaction %s: %s -> %s",
                bytes(self._tx_hash).hex(),
                self._stage.value,
                stage.value,
            )
            self._stage = stage

    async def _notify(self, tx: TxInfo, receipt: TxReceipt) -> None:
        # Copying since a handler may unregister itself
        for handler in list(self._handlers):
            result = handler(tx, receipt)
            if inspect.isawaitable(result):
                await result

    async def _poll(self) -> tuple[TxInfo, None | TxReceipt]:
        tx = await self._session.get_transaction(self._tx_hash)
        if tx is None:
            raise TransactionNotFound(self._tx_hash)
        receipt = await self._session.get_transaction_receipt(self._tx_hash)
        return tx, receipt

    async def confirm(
        self,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        handler: None | ConfirmHandler = None,
        *,
        poll_interval: None | float = None,
    ) -> TxReceipt:
        """
        Waits until the transaction has ``confirmations`` blocks mined on top of its block,
        and returns its receipt.
        With ``confirmations=0``, returns as soon as the receipt is available.

        ``handler`` (and the ones registered with :py:meth:`on_confirm`) is called
        once for every new confirmation, including the ones that accrued between two polls.

        Raises :py:class:`TransactionFailed` if the transaction was mined but failed.
        Node errors and missing transactions are logged and retried on the next poll;
        to give up waiting, cancel the enclosing task or scope.
        """
        if confirmations < 0:
            raise ValueError(f"`confirmations` must be non-negative, got {confirmations}")

        interval = self._poll_interval if poll_interval is None else poll_interval
        if handler is not None:
            self.on_confirm(handler)

        reported = 0
        try:
            while True:
                try:
                    tx, receipt = await self._poll()
                    if receipt is None:
                        self._set_stage(ConfirmationStage.AWAITING_RECEIPT)
                        await anyio.sleep(interval)
                        continue

                    if not receipt.succeeded:
                        self._set_stage(ConfirmationStage.REVERTED)
                        self._handlers.clear()
                        raise TransactionFailed(receipt)

                    if confirmations == 0:
                        self._set_stage(ConfirmationStage.CONFIRMED)
                        self._handlers.clear()
                        return receipt

                    self._set_stage(ConfirmationStage.AWAITING_DEPTH)
                    head = await self._session.block_number()
                except (TransactionNotFound, ProviderError, BadResponseFormat) as exc:
                    logger.warning(
                        "Transaction %s: poll failed, retrying in %s s: %s",
                        bytes(self._tx_hash).hex(),
                        interval,
                        exc,
                    )
                    await anyio.sleep(interval)
                    continue

                # The receipt is re-fetched on every poll, so after a reorg
                # the depth is counted from the block the transaction ended up in.
                count = head - receipt.block_number
                reached = min(count, confirmations)
                for _ in range(reported, reached):
                    await self._notify(tx, receipt)
                reported = max(reported, reached)

                if count >= confirmations:
                    self._set_stage(ConfirmationStage.CONFIRMED)
                    self._handlers.clear()
                    return receipt

                await anyio.sleep(interval)
        finally:
            # A handler given for this call only does not outlive it (e.g. on cancellation)
            if handler is not None and handler in self._handlers:
                self._handlers.remove(handler)
