from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass

from ethereum_rpc import RPCError

RPC_JSON = None | bool | int | float | str | Sequence["RPC_JSON"] | Mapping[str, "RPC_JSON"]
"""JSON values sent to and received from a node."""


class InvalidResponse(Exception):
    """The node responded with something that is not a valid JSON-RPC response."""


class Unreachable(Exception):
    """The node could not be contacted (connection refused, timeout etc)."""


class ProtocolError(ABC, Exception):
    """
    A transport-level failure with no JSON-RPC error attached.
    Each provider defines its own subclass (e.g. :py:class:`HTTPError`).
    """


@dataclass
class ProviderError(Exception):
    """Wraps any failure of a request: an error reported by the node or a transport one."""

    error: RPCError | Unreachable | InvalidResponse | ProtocolError

    def __str__(self) -> str:
        return f"Provider error: {self.error}"


class Provider(ABC):
    """A source of JSON-RPC sessions."""

    @abstractmethod
    @asynccontextmanager
    async def session(self) -> AsyncIterator["ProviderSession"]:
        """Opens a session; connections may be reused within it."""
        # mypy does not support abstract async generators,
        # see https://github.com/python/mypy/issues/5070
        yield  # type: ignore[misc]


class ProviderSession(ABC):
    @abstractmethod
    async def rpc(self, method: str, *args: RPC_JSON) -> RPC_JSON:
        """
        Makes a request with already unstructured arguments and returns the ``result`` field.
        Raises :py:class:`ProviderError` on failure.
        """
