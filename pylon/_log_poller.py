import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from functools import partial

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from ethereum_rpc import Address, BlockLabel

from ._client import ClientSession
from ._client_rpc import BadResponseFormat
from ._contract_abi import EventFilter
from ._log_decoder import DecodedLogEntry, LogDecoder
from ._provider import ProviderError

logger = logging.getLogger(__name__)


UNKNOWN_EVENT_KEY = "?"
"""The :py:class:`LogEmitter` key for entries that could not be decoded."""


LogConsumer = Callable[[DecodedLogEntry], None | Awaitable[None]]
"""A function called for every log entry; may be a regular or an async function."""


class Subscription:
    """
    A cancellation handle for a log subscription.

    After :py:meth:`cancel` is called, no more entries are delivered,
    and a fetch that is already in flight is abandoned.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._scopes: list[anyio.CancelScope] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stops the subscription. Can be called more than once."""
        self._cancelled = True
        for scope in self._scopes:
            scope.cancel()

    def _attach(self, scope: anyio.CancelScope) -> None:
        self._scopes.append(scope)
        if self._cancelled:
            scope.cancel()

    def _detach(self, scope: anyio.CancelScope) -> None:
        self._scopes.remove(scope)


class LogSink(ABC):
    """The receiving side of a log subscription."""

    @abstractmethod
    async def deliver(self, entry: DecodedLogEntry) -> None:
        """Hands the entry to the consumer."""


class CallbackSink(LogSink):
    """Calls a function for each entry."""

    def __init__(self, consumer: LogConsumer):
        self._consumer = consumer

    async def deliver(self, entry: DecodedLogEntry) -> None:
        result = self._consumer(entry)
        if inspect.isawaitable(result):
            await result


class ChannelSink(LogSink):
    """Pushes entries into a memory object stream (waits if the stream buffer is full)."""

    def __init__(self, send_stream: MemoryObjectSendStream[DecodedLogEntry]):
        self._send_stream = send_stream

    async def deliver(self, entry: DecodedLogEntry) -> None:
        await self._send_stream.send(entry)


def _start_block(block: int | BlockLabel) -> int | BlockLabel:
    if block == BlockLabel.EARLIEST:
        return 0
    if isinstance(block, int) or block == BlockLabel.LATEST:
        return block
    raise ValueError(f"Log subscriptions can only start at a block number or LATEST, got {block}")


def _end_block(block: int | BlockLabel) -> int | BlockLabel:
    if isinstance(block, int) or block == BlockLabel.LATEST:
        return block
    raise ValueError(f"Log subscriptions can only end at a block number or LATEST, got {block}")


@dataclass
class LogCursor:
    """The block range a poller has yet to fetch. Only moves forward."""

    from_block: int | BlockLabel
    """The first block not fetched yet (``LATEST`` until pinned to the chain head)."""

    to_block: int | BlockLabel
    """The last block to fetch (``LATEST`` to follow the chain head)."""

    @property
    def follows_head(self) -> bool:
        return self.to_block == BlockLabel.LATEST

    @property
    def exhausted(self) -> bool:
        """``True`` if a bounded range has been fetched completely."""
        return (
            isinstance(self.from_block, int)
            and isinstance(self.to_block, int)
            and self.from_block > self.to_block
        )

    def pin(self, head: int) -> int:
        """Fixes a symbolic start of the range at the chain head and returns the start."""
        if not isinstance(self.from_block, int):
            self.from_block = head
        return self.from_block

    def window_end(self, head: int) -> int:
        """The last block that can be fetched now."""
        if isinstance(self.to_block, int):
            return min(self.to_block, head)
        return head

    def advance(self, fetched_to: int) -> None:
        self.from_block = fetched_to + 1


class PollerStage(Enum):
    """Stages of a log poller's lifecycle."""

    CREATED = "created"
    """Has not queried the chain yet."""

    WAITING = "waiting"
    """Waiting for new blocks (or for a retry after an error)."""

    FETCHING = "fetching"
    """Requesting log entries for the current window."""

    DELIVERING = "delivering"
    """Handing the fetched entries to the consumer."""

    FINISHED = "finished"
    """The bounded range has been delivered completely."""

    CANCELLED = "cancelled"
    """The subscription was cancelled."""


class LogPoller:
    """
    Discovers new log entries by querying advancing block windows.

    Entries are decoded with ``decoder`` (undecodable entries are kept, with ``event=None``),
    and delivered in the order the node returns them. Every block is fetched exactly once.
    A poller is single-use.
    """

    def __init__(
        self,
        session: ClientSession,
        decoder: LogDecoder,
        *,
        source: None | Address | Iterable[Address] = None,
        event_filter: None | EventFilter = None,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        poll_interval: None | float = None,
    ):
        self._session = session
        self._decoder = decoder
        self._source = (
            source if source is None or isinstance(source, Address) else tuple(source)
        )
        self._event_filter = event_filter
        self._cursor = LogCursor(_start_block(from_block), _end_block(to_block))
        self._poll_interval = session.poll_interval if poll_interval is None else poll_interval
        self._stage = PollerStage.CREATED

    @property
    def cursor(self) -> LogCursor:
        return self._cursor

    @property
    def stage(self) -> PollerStage:
        return self._stage

    async def _next_window(self) -> None | list[DecodedLogEntry]:
        """
        Fetches the entries from the blocks mined since the previous call.
        Returns ``None`` if there are no new blocks yet.
        """
        head = await self._session.block_number()
        from_block = self._cursor.pin(head)
        to_block = self._cursor.window_end(head)
        if from_block > to_block:
            return None

        self._stage = PollerStage.FETCHING
        logger.debug("Fetching logs for blocks %d-%d", from_block, to_block)
        log_entries = await self._session.get_logs(
            source=self._source,
            event_filter=self._event_filter,
            from_block=from_block,
            to_block=to_block,
        )
        self._cursor.advance(to_block)
        return [self._decoder.decode_entry(log_entry) for log_entry in log_entries]

    async def _try_next_window(self) -> None | list[DecodedLogEntry]:
        try:
            return await self._next_window()
        except (ProviderError, BadResponseFormat) as exc:
            logger.warning(
                "Failed to poll for logs, retrying in %s s: %s", self._poll_interval, exc
            )
            return None

    async def _wait(self) -> None:
        self._stage = PollerStage.WAITING
        await anyio.sleep(self._poll_interval)

    async def run(self, sink: LogSink, subscription: None | Subscription = None) -> None:
        """
        Delivers entries to ``sink`` until the subscription is cancelled
        or, for a bounded range, until the whole range is delivered.
        """
        if subscription is None:
            subscription = Subscription()

        with anyio.CancelScope() as scope:
            subscription._attach(scope)  # noqa: SLF001
            try:
                while not subscription.cancelled and not self._cursor.exhausted:
                    entries = await self._try_next_window()
                    if entries is None:
                        await self._wait()
                        continue

                    self._stage = PollerStage.DELIVERING
                    for entry in entries:
                        if subscription.cancelled:
                            break
                        await sink.deliver(entry)
            finally:
                subscription._detach(scope)  # noqa: SLF001

        if subscription.cancelled:
            self._stage = PollerStage.CANCELLED
            logger.debug("Log subscription cancelled")
        else:
            self._stage = PollerStage.FINISHED

    async def wait_for_logs(self) -> list[DecodedLogEntry]:
        """
        Waits until a window with at least one entry is fetched and returns its entries.
        For a bounded range, returns an empty list if the range contains no entries.
        """
        while not self._cursor.exhausted:
            entries = await self._try_next_window()
            if entries:
                return entries
            if entries is None:
                await self._wait()
        self._stage = PollerStage.FINISHED
        return []


LogEmitterHandler = Callable[[DecodedLogEntry], None | Awaitable[None]]


class LogEmitter:
    """
    Dispatches log entries to handlers registered by event name.
    Entries that could not be decoded are dispatched under ``"?"``.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[LogEmitterHandler]] = {}
        self.subscription = Subscription()

    def on(self, event_name: str, handler: LogEmitterHandler) -> LogEmitterHandler:
        """Registers a handler for the given event name."""
        self._handlers.setdefault(event_name, []).append(handler)
        return handler

    def off(self, event_name: str, handler: LogEmitterHandler) -> None:
        """
        Unregisters a handler.
        Raises ``ValueError`` if it is not registered for ``event_name``.
        """
        self._handlers.get(event_name, []).remove(handler)

    def cancel(self) -> None:
        """Stops the underlying subscription."""
        self.subscription.cancel()

    async def emit(self, entry: DecodedLogEntry) -> None:
        """Calls the handlers registered for the entry's event name."""
        key = entry.event_name or UNKNOWN_EVENT_KEY
        for handler in list(self._handlers.get(key, [])):
            result = handler(entry)
            if inspect.isawaitable(result):
                await result


class LogChannel:
    """An async iterator over the entries of a subscription."""

    def __init__(
        self,
        receive_stream: MemoryObjectReceiveStream[DecodedLogEntry],
        subscription: Subscription,
    ):
        self._receive_stream = receive_stream
        self.subscription = subscription

    def cancel(self) -> None:
        """Stops the underlying subscription; the iteration ends after the buffered entries."""
        self.subscription.cancel()

    def __aiter__(self) -> "LogChannel":
        return self

    async def __anext__(self) -> DecodedLogEntry:
        return await self._receive_stream.__anext__()


class EventListener:
    """
    Log queries and subscriptions for the given source addresses
    (any address if ``source`` is ``None``), decoded with the given decoder.

    Block ranges are inclusive. A ``from_block`` of ``LATEST`` starts at the chain head
    at the moment of the call; a ``to_block`` of ``LATEST`` follows the head indefinitely.
    """

    def __init__(
        self,
        session: ClientSession,
        decoder: LogDecoder,
        *,
        source: None | Address | Iterable[Address] = None,
        poll_interval: None | float = None,
    ):
        self._session = session
        self._decoder = decoder
        self._source = (
            source if source is None or isinstance(source, Address) else tuple(source)
        )
        self._poll_interval = session.poll_interval if poll_interval is None else poll_interval

    @property
    def decoder(self) -> LogDecoder:
        return self._decoder

    def poller(
        self,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
    ) -> LogPoller:
        """Creates a new poller over this listener's sources."""
        return LogPoller(
            self._session,
            self._decoder,
            source=self._source,
            event_filter=event_filter,
            from_block=from_block,
            to_block=to_block,
            poll_interval=self._poll_interval,
        )

    async def get_logs(
        self,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
    ) -> list[DecodedLogEntry]:
        """Fetches and decodes the entries in the given range with a single query."""
        log_entries = await self._session.get_logs(
            source=self._source,
            event_filter=event_filter,
            from_block=from_block,
            to_block=to_block,
        )
        return [self._decoder.decode_entry(log_entry) for log_entry in log_entries]

    async def wait_for_logs(
        self,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
    ) -> list[DecodedLogEntry]:
        """Long-polls until some entries appear, and returns them."""
        poller = self.poller(from_block=from_block, to_block=to_block, event_filter=event_filter)
        return await poller.wait_for_logs()

    async def watch(
        self,
        consumer: LogConsumer,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
        subscription: None | Subscription = None,
    ) -> None:
        """Calls ``consumer`` for every entry until cancelled (or the range is exhausted)."""
        poller = self.poller(from_block=from_block, to_block=to_block, event_filter=event_filter)
        await poller.run(CallbackSink(consumer), subscription)

    def on_log(
        self,
        task_group: TaskGroup,
        consumer: LogConsumer,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
        subscription: None | Subscription = None,
    ) -> Subscription:
        """
        Starts :py:meth:`watch` in the given task group.
        Returns the handle to cancel the subscription with.
        """
        if subscription is None:
            subscription = Subscription()
        task_group.start_soon(
            partial(
                self.watch,
                consumer,
                from_block=from_block,
                to_block=to_block,
                event_filter=event_filter,
                subscription=subscription,
            )
        )
        return subscription

    def log_emitter(
        self,
        task_group: TaskGroup,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
    ) -> LogEmitter:
        """Starts a subscription in the given task group dispatching entries by event name."""
        emitter = LogEmitter()
        self.on_log(
            task_group,
            emitter.emit,
            from_block=from_block,
            to_block=to_block,
            event_filter=event_filter,
            subscription=emitter.subscription,
        )
        return emitter

    @asynccontextmanager
    async def log_channel(
        self,
        *,
        from_block: int | BlockLabel = BlockLabel.LATEST,
        to_block: int | BlockLabel = BlockLabel.LATEST,
        event_filter: None | EventFilter = None,
        max_buffer_size: float = 100,
    ) -> AsyncIterator[LogChannel]:
        """
        Runs a subscription for the duration of the context,
        yielding a channel to iterate over the entries.
        The iteration ends when the channel is cancelled or a bounded range is exhausted.
        """
        send_stream, receive_stream = anyio.create_memory_object_stream[DecodedLogEntry](
            max_buffer_size
        )
        poller = self.poller(from_block=from_block, to_block=to_block, event_filter=event_filter)
        subscription = Subscription()

        async def feed() -> None:
            async with send_stream:
                await poller.run(ChannelSink(send_stream), subscription)

        async with anyio.create_task_group() as task_group, receive_stream:
            task_group.start_soon(feed)
            try:
                yield LogChannel(receive_stream, subscription)
            finally:
                subscription.cancel()
