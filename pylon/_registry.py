from collections.abc import Iterable, Mapping
from typing import Any

from ethereum_rpc import Address

from ._client import ClientSession
from ._contract import Contract, ContractInfo
from ._log_decoder import LogDecoder
from ._log_poller import EventListener


class UnknownContract(Exception):
    """Raised when the registry does not have a contract with the given name."""


class ContractRegistry:
    """
    A set of named deployed contracts interacting with each other.

    Log entries are decoded using every event known to the registry,
    so events emitted by a library (or any other related contract) on behalf of a contract
    are decoded when reading that contract's logs.
    """

    def __init__(
        self,
        session: ClientSession,
        contracts: Mapping[str, ContractInfo],
        libraries: None | Mapping[str, ContractInfo] = None,
        related: None | Mapping[str, ContractInfo] = None,
        *,
        poll_interval: None | float = None,
    ):
        self._session = session
        self._contracts = dict(contracts)
        self._libraries = dict(libraries or {})
        self._related = dict(related or {})
        self._poll_interval = poll_interval

        all_infos = [*self._contracts.values(), *self._libraries.values(), *self._related.values()]
        self._log_decoder = LogDecoder.from_abis(info.abi for info in all_infos)

    @classmethod
    def from_json(
        cls,
        session: ClientSession,
        repo_data: Mapping[str, Mapping[str, Mapping[str, Any]]],
        *,
        poll_interval: None | float = None,
    ) -> "ContractRegistry":
        """
        Creates the registry from a mapping with the keys
        ``contracts``, ``libraries`` and ``related`` (the latter two are optional),
        each mapping names to :py:meth:`ContractInfo.from_json` data.
        """

        def parse(key: str) -> dict[str, ContractInfo]:
            return {
                name: ContractInfo.from_json(info_json)
                for name, info_json in repo_data.get(key, {}).items()
            }

        return cls(
            session,
            parse("contracts"),
            parse("libraries"),
            parse("related"),
            poll_interval=poll_interval,
        )

    @property
    def log_decoder(self) -> LogDecoder:
        """The decoder recognizing the events of all the registered contracts."""
        return self._log_decoder

    def names(self) -> list[str]:
        """Returns the names of the contracts (libraries and related contracts excluded)."""
        return list(self._contracts)

    def contract(self, name: str) -> Contract:
        """Returns a handle for the contract with the given name."""
        info = self._contracts.get(name)
        if info is None:
            raise UnknownContract(f"Contract `{name}` is not registered")
        return Contract(
            self._session,
            info,
            log_decoder=self._log_decoder,
            poll_interval=self._poll_interval,
        )

    def event_listener(self, sources: None | Iterable[Address] = None) -> EventListener:
        """
        Returns a listener for the logs emitted by ``sources``
        (any address if ``None``), decoded with the events of all the registered contracts.
        """
        return EventListener(
            self._session,
            self._log_decoder,
            source=None if sources is None else tuple(sources),
            poll_interval=self._poll_interval,
        )
