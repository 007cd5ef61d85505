from abc import ABC, abstractmethod
from functools import cached_property

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_account.types import TransactionDictType
from ethereum_rpc import Address


class Signer(ABC):
    """Signs transactions locally, so that the node never sees the private key."""

    @property
    @abstractmethod
    def address(self) -> Address:
        """The address transactions are sent from."""

    @abstractmethod
    def sign_transaction(self, tx_dict: TransactionDictType) -> bytes:
        """Returns the signed transaction, RLP-encoded and ready for ``eth_sendRawTransaction``."""


class AccountSigner(Signer):
    """A signer backed by an ``eth-account`` local account."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def create(cls) -> "AccountSigner":
        """A signer with a new random key."""
        return cls(Account.create())

    @classmethod
    def from_key(cls, private_key: bytes) -> "AccountSigner":
        return cls(Account.from_key(private_key))

    @property
    def account(self) -> LocalAccount:
        return self._account

    @cached_property
    def address(self) -> Address:
        return Address.from_hex(self._account.address)

    def sign_transaction(self, tx_dict: TransactionDictType) -> bytes:
        signed = self._account.sign_transaction(tx_dict)
        return bytes(signed.raw_transaction)
