"""
EVM chain client.

Wraps web3's AsyncWeb3 with per-call timeouts and fallback across a
chain's configured RPC endpoints. Also decodes ERC-20 Transfer logs.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TransactionNotFound, Web3ValidationError

from ..config import EVMChainConfig
from ..errors import UpstreamUnavailableError, VerificationError

logger = logging.getLogger("creditledger.chains.evm")

T = TypeVar("T")

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]


def _to_hex(value: Any) -> str:
    if value is None:
        return "0x"
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def is_evm_address(address: str) -> bool:
    return AsyncWeb3.is_address(address)


def normalize_evm_tx_hash(tx_hash: str) -> str:
    """Canonical lower-case form of a transaction hash; hex is case-insensitive."""
    normalized = str(tx_hash or "").strip().lower()
    if not TX_HASH_PATTERN.match(normalized):
        raise ValueError(f"Invalid EVM transaction hash: {tx_hash!r}")
    return normalized


@dataclass(frozen=True)
class TransferLog:
    token: str
    sender: str
    recipient: str
    value: int


def decode_transfer_log(log: Dict[str, Any]) -> Optional[TransferLog]:
    """Decode an ERC-20 Transfer log, or None if it is not one."""
    topics = log.get("topics") or []
    # ERC-721 Transfer carries the token id as a fourth topic
    if len(topics) != 3 or _to_hex(topics[0]) != TRANSFER_TOPIC:
        return None
    try:
        sender = "0x" + _to_hex(topics[1])[-40:]
        recipient = "0x" + _to_hex(topics[2])[-40:]
        data = _to_hex(log.get("data"))
        value = int(data, 16) if data != "0x" else 0
    except (TypeError, ValueError):
        return None
    return TransferLog(
        token=str(log.get("address", "")).lower(),
        sender=sender.lower(),
        recipient=recipient.lower(),
        value=value,
    )


class EVMClient:
    """
    Read-only client for one EVM chain.

    Args:
        chain: Chain config with its endpoint list
        timeout: Per-call timeout in seconds
        web3_factory: Builds an AsyncWeb3 for an endpoint URL
    """

    def __init__(
        self,
        chain: EVMChainConfig,
        timeout: float = 10,
        web3_factory: Optional[Callable[[str], AsyncWeb3]] = None,
    ):
        self.chain = chain
        self.timeout = timeout
        self._factory = web3_factory or self._default_factory
        self._clients: Dict[str, AsyncWeb3] = {}

    @staticmethod
    def _default_factory(url: str) -> AsyncWeb3:
        return AsyncWeb3(AsyncHTTPProvider(url))

    def _web3(self, url: str) -> AsyncWeb3:
        if url not in self._clients:
            self._clients[url] = self._factory(url)
        return self._clients[url]

    async def _call(self, operation: str, fn: Callable[[AsyncWeb3], Awaitable[T]]) -> T:
        """Run `fn` against each endpoint in turn until one answers."""
        if not self.chain.rpc_urls:
            raise UpstreamUnavailableError(
                f"No RPC endpoint configured for chain {self.chain.chain_id}",
                provider=f"evm:{self.chain.chain_id}",
            )

        last_error: Optional[Exception] = None
        for url in self.chain.rpc_urls:
            try:
                return await asyncio.wait_for(fn(self._web3(url)), timeout=self.timeout)
            except Web3ValidationError as e:
                raise VerificationError(f"Invalid {operation} request: {e}")
            except Exception as e:
                last_error = e
                logger.warning(f"{self.chain.name} {operation} failed on {url}: {e}")

        raise UpstreamUnavailableError(
            f"{self.chain.name} RPC unavailable for {operation}: {last_error}",
            provider=f"evm:{self.chain.chain_id}",
        )

    async def close(self) -> None:
        for w3 in self._clients.values():
            await w3.provider.disconnect()
        self._clients.clear()

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        async def fetch(w3: AsyncWeb3):
            try:
                return await w3.eth.get_transaction(tx_hash)
            except TransactionNotFound:
                return None

        return await self._call("get_transaction", fetch)

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        async def fetch(w3: AsyncWeb3):
            try:
                return await w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        return await self._call("get_receipt", fetch)

    async def balance_of(self, contract: str, owner: str) -> int:
        """Raw `balanceOf(owner)`; works for ERC-20 and ERC-721."""
        async def fetch(w3: AsyncWeb3):
            token = w3.eth.contract(address=AsyncWeb3.to_checksum_address(contract), abi=ERC20_ABI)
            return await token.functions.balanceOf(AsyncWeb3.to_checksum_address(owner)).call()

        return await self._call("balanceOf", fetch)

    async def decimals(self, contract: str) -> int:
        async def fetch(w3: AsyncWeb3):
            token = w3.eth.contract(address=AsyncWeb3.to_checksum_address(contract), abi=ERC20_ABI)
            return await token.functions.decimals().call()

        return await self._call("decimals", fetch)
