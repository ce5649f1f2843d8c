"""
Account identity.

An account is keyed by exactly one of a wallet address, an email or an
opaque user id. Each key has a stable storage form `"<kind>:<value>"`.
"""

from dataclasses import dataclass
from typing import Optional, Union

from .errors import InvalidAccountKeyError


def normalize_wallet(address: str) -> str:
    """Lower-case EVM addresses; Solana base58 is case-sensitive and kept as-is."""
    address = address.strip()
    if address.lower().startswith("0x"):
        return address.lower()
    return address


@dataclass(frozen=True)
class WalletKey:
    address: str
    kind = "wallet"

    def __post_init__(self):
        if not self.address or not self.address.strip():
            raise InvalidAccountKeyError("Wallet address is empty")
        object.__setattr__(self, "address", normalize_wallet(self.address))

    @property
    def value(self) -> str:
        return self.address


@dataclass(frozen=True)
class EmailKey:
    address: str
    kind = "email"

    def __post_init__(self):
        email = (self.address or "").strip().lower()
        if "@" not in email:
            raise InvalidAccountKeyError(f"Invalid email: {self.address!r}")
        object.__setattr__(self, "address", email)

    @property
    def value(self) -> str:
        return self.address


@dataclass(frozen=True)
class UserIdKey:
    id: str
    kind = "user"

    def __post_init__(self):
        if not self.id or not str(self.id).strip():
            raise InvalidAccountKeyError("User id is empty")
        object.__setattr__(self, "id", str(self.id).strip())

    @property
    def value(self) -> str:
        return self.id


AccountKey = Union[WalletKey, EmailKey, UserIdKey]


def storage_key(key: AccountKey) -> str:
    if isinstance(key, (WalletKey, EmailKey, UserIdKey)):
        return f"{key.kind}:{key.value}"
    raise TypeError(f"Unknown account key type: {type(key).__name__}")


def parse_storage_key(stored: str) -> AccountKey:
    kind, _, value = stored.partition(":")
    if kind == WalletKey.kind:
        return WalletKey(value)
    if kind == EmailKey.kind:
        return EmailKey(value)
    if kind == UserIdKey.kind:
        return UserIdKey(value)
    raise InvalidAccountKeyError(f"Unknown account key kind: {kind!r}")


def account_key_from(
    wallet: Optional[str] = None,
    email: Optional[str] = None,
    user_id: Optional[str] = None,
) -> AccountKey:
    """Build a key from optional identity fields. Wallet wins, then email, then user id."""
    if wallet:
        return WalletKey(wallet)
    if email:
        return EmailKey(email)
    if user_id:
        return UserIdKey(user_id)
    raise InvalidAccountKeyError("One of wallet, email or user_id is required")
