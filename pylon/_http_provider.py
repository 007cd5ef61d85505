"""JSON-RPC over HTTP(S), using ``httpx``."""

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from http import HTTPStatus
from itertools import count
from json import JSONDecodeError
from typing import cast

import httpx
from compages import StructuringError
from ethereum_rpc import RPCError, structure

from ._provider import (
    RPC_JSON,
    InvalidResponse,
    ProtocolError,
    Provider,
    ProviderError,
    ProviderSession,
    Unreachable,
)


class HTTPError(ProtocolError):
    """A non-200 response that does not carry a JSON-RPC ``error`` object."""

    status: HTTPStatus

    message: str
    """The response body."""

    def __init__(self, status_code: int, message: str):
        try:
            self.status = HTTPStatus(status_code)
        except ValueError:  # pragma: no cover
            self.status = HTTPStatus.INTERNAL_SERVER_ERROR
        self.message = message

    def __str__(self) -> str:
        return f"HTTP status {self.status}: {self.message}"


def _parse_response(response: httpx.Response) -> RPC_JSON:
    status = response.status_code

    try:
        response_json = response.json()
    except JSONDecodeError as exc:
        raise InvalidResponse(
            f"Expected a JSON response, got HTTP status {status}: {response.text}"
        ) from exc

    if not isinstance(response_json, Mapping):
        raise InvalidResponse(f"RPC response must be a dictionary, got: {response_json}")
    response_json = cast("Mapping[str, RPC_JSON]", response_json)

    # Nodes report execution errors with the status 200, and some use 4xx/5xx for them;
    # either way the "error" object is what describes the failure.
    if "error" in response_json:
        try:
            error = structure(RPCError, response_json["error"])
        except StructuringError as exc:
            raise InvalidResponse(f"Failed to parse an error response: {response_json}") from exc
        raise error

    if status != HTTPStatus.OK:
        raise HTTPError(status, response.text)

    if "result" not in response_json:
        raise InvalidResponse(f"`result` is not present in the response: {response_json}")
    return response_json["result"]


class HTTPProvider(Provider):
    """
    Connects to a node by its URL.

    ``timeout`` applies to each request, in seconds.
    ``transport`` overrides the ``httpx`` transport (e.g. with ``httpx.MockTransport``).
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        transport: None | httpx.AsyncBaseTransport = None,
    ):
        self._url = url
        self._timeout = timeout
        self._transport = transport

    @asynccontextmanager
    async def session(self) -> AsyncIterator["HTTPProviderSession"]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            yield HTTPProviderSession(self._url, client)


class HTTPProviderSession(ProviderSession):
    def __init__(self, url: str, http_client: httpx.AsyncClient):
        self._url = url
        self._client = http_client
        self._request_ids = count()

    def _prepare_request(self, method: str, *args: RPC_JSON) -> RPC_JSON:
        return {"jsonrpc": "2.0", "method": method, "params": args, "id": next(self._request_ids)}

    async def rpc(self, method: str, *args: RPC_JSON) -> RPC_JSON:
        request = self._prepare_request(method, *args)
        try:
            response = await self._client.post(self._url, json=request)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise ProviderError(Unreachable(str(exc))) from exc

        try:
            return _parse_response(response)
        except (RPCError, InvalidResponse, HTTPError) as exc:
            raise ProviderError(exc) from exc
