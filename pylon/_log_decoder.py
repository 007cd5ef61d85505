import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from ethereum_rpc import Address, LogEntry, LogTopic, TxHash

from ._abi_types import ABIDecodingError
from ._contract_abi import ContractABI, Event, FieldValues

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecodedEvent:
    """An event decoded from a log entry."""

    name: str
    """The event name."""

    fields: FieldValues
    """The decoded event fields (hashed indexed values are ``None``)."""

    event: Event
    """The definition used to decode the entry."""

    def __getitem__(self, name: str) -> Any:
        return self.fields[name]


@dataclass(frozen=True)
class DecodedLogEntry:
    """A raw log entry along with its decoded event, if a matching definition was known."""

    log: LogEntry
    """The log entry as returned by the node."""

    event: None | DecodedEvent
    """The decoded event, or ``None`` if the entry could not be decoded."""

    @property
    def event_name(self) -> None | str:
        return None if self.event is None else self.event.name

    @property
    def address(self) -> Address:
        return self.log.address

    @property
    def topics(self) -> tuple[LogTopic, ...]:
        return self.log.topics

    @property
    def data(self) -> bytes:
        return self.log.data

    @property
    def block_number(self) -> int:
        return self.log.block_number

    @property
    def transaction_hash(self) -> TxHash:
        return self.log.transaction_hash


class LogDecoder:
    """
    Decodes log entries by looking up their first topic
    among the selectors of all the known events.

    Anonymous events have no selector and are never matched.
    """

    def __init__(self, events: Iterable[Event] = ()):
        self._events: dict[LogTopic, list[Event]] = {}
        for event in events:
            self._add(event)

    @classmethod
    def from_abis(cls, abis: Iterable[ContractABI]) -> "LogDecoder":
        """Creates a decoder recognizing every event of every given ABI."""
        return cls(event for abi in abis for event in abi.events)

    def _add(self, event: Event) -> None:
        if event.anonymous:
            return
        candidates = self._events.setdefault(event.topic, [])
        # Identical definitions can come from several ABIs (e.g. from a shared library)
        if all(str(existing) != str(event) for existing in candidates):
            candidates.append(event)

    def decode(self, log_entry: LogEntry) -> None | DecodedEvent:
        """
        Returns the decoded event, or ``None`` if there is no known event for the entry,
        or the entry's contents do not match the definition.
        """
        if not log_entry.topics:
            return None

        # Events with the same signature may differ in which fields are indexed
        # (e.g. ERC20 and ERC721 ``Transfer``), so every candidate is tried.
        for event in self._events.get(log_entry.topics[0], []):
            try:
                fields = event.decode_log_entry(log_entry)
            except (ABIDecodingError, ValueError) as exc:
                logger.debug("Could not decode a log entry as `%s`: %s", event.signature, exc)
                continue
            return DecodedEvent(name=event.name, fields=fields, event=event)

        return None

    def decode_entry(self, log_entry: LogEntry) -> DecodedLogEntry:
        """Pairs the log entry with its decoded event (or ``None``)."""
        return DecodedLogEntry(log=log_entry, event=self.decode(log_entry))
