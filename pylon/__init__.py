"""Async Ethereum contract client: overloaded calls, confirmations and log subscriptions."""

from . import abi
from ._abi_types import ABIDecodingError
from ._client import DEFAULT_POLL_INTERVAL, Client, ClientSession
from ._client_rpc import BadResponseFormat
from ._confirmation import (
    DEFAULT_CONFIRMATIONS,
    ConfirmationStage,
    ConfirmationTracker,
    ConfirmHandler,
    TransactionFailed,
    TransactionNotFound,
)
from ._contract import (
    ConstantMethodSendRejected,
    Contract,
    ContractInfo,
    DecodedReceipt,
    ReceiptHandler,
    SendResult,
)
from ._contract_abi import (
    ContractABI,
    Either,
    Event,
    EventFilter,
    FieldValues,
    Method,
    Mutability,
)
from ._http_provider import HTTPError, HTTPProvider
from ._log_decoder import DecodedEvent, DecodedLogEntry, LogDecoder
from ._log_poller import (
    UNKNOWN_EVENT_KEY,
    CallbackSink,
    ChannelSink,
    EventListener,
    LogChannel,
    LogCursor,
    LogEmitter,
    LogPoller,
    LogSink,
    PollerStage,
    Subscription,
)
from ._method_resolver import (
    AmbiguousOverload,
    ArityMismatch,
    MethodIndex,
    MethodResolutionError,
    TypeMismatch,
    UnknownMethod,
)
from ._provider import (
    InvalidResponse,
    ProtocolError,
    Provider,
    ProviderError,
    ProviderSession,
    Unreachable,
)
from ._registry import ContractRegistry, UnknownContract
from ._signer import AccountSigner, Signer

__all__ = [
    "DEFAULT_CONFIRMATIONS",
    "DEFAULT_POLL_INTERVAL",
    "UNKNOWN_EVENT_KEY",
    "ABIDecodingError",
    "AccountSigner",
    "AmbiguousOverload",
    "ArityMismatch",
    "BadResponseFormat",
    "CallbackSink",
    "ChannelSink",
    "Client",
    "ClientSession",
    "ConfirmHandler",
    "ConfirmationStage",
    "ConfirmationTracker",
    "ConstantMethodSendRejected",
    "Contract",
    "ContractABI",
    "ContractInfo",
    "ContractRegistry",
    "DecodedEvent",
    "DecodedLogEntry",
    "DecodedReceipt",
    "Either",
    "Event",
    "EventFilter",
    "EventListener",
    "FieldValues",
    "HTTPError",
    "HTTPProvider",
    "InvalidResponse",
    "LogChannel",
    "LogCursor",
    "LogDecoder",
    "LogEmitter",
    "LogPoller",
    "LogSink",
    "Method",
    "MethodIndex",
    "MethodResolutionError",
    "Mutability",
    "PollerStage",
    "ProtocolError",
    "Provider",
    "ProviderError",
    "ProviderSession",
    "ReceiptHandler",
    "SendResult",
    "Signer",
    "Subscription",
    "TransactionFailed",
    "TransactionNotFound",
    "TypeMismatch",
    "UnknownContract",
    "UnknownMethod",
    "Unreachable",
    "abi",
]
