"""
NFT / token holder entitlement.

Decides whether a wallet holds any qualifying collection. Collections are
grouped by chain; each chain is checked with one client and its
collections are checked concurrently. Failures on any item or chain count
as "not held" and never raise.
"""

import asyncio
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from .accounts import normalize_wallet
from .cache import TTLCache
from .chains.alchemy import AlchemyNFTClient
from .chains.evm import EVMClient, is_evm_address
from .chains.solana import SolanaRPCClient, is_solana_address
from .config import SOLANA_CHAIN_ID, CollectionConfig, EVMChainConfig, LedgerConfig
from .credits.models import EntitlementResult
from .errors import UpstreamUnavailableError
from .logging_config import mask_address

logger = logging.getLogger("creditledger.entitlement")

ZERO = Decimal("0")


class EntitlementChecker:
    """
    Holder checks with a per-wallet TTL cache.

    Args:
        config: Ledger config (collections, chains, timeouts)
        cache: TTL cache for results, keyed by normalized wallet
        evm_client_factory: Builds an EVMClient for a chain
        solana_client: Solana RPC client
        alchemy_client: Indexed NFT API client; built when an API key is configured
    """

    def __init__(
        self,
        config: LedgerConfig,
        cache: TTLCache,
        evm_client_factory: Optional[Callable[[EVMChainConfig], EVMClient]] = None,
        solana_client: Optional[SolanaRPCClient] = None,
        alchemy_client: Optional[AlchemyNFTClient] = None,
    ):
        self.config = config
        self._cache = cache
        self._evm_client_factory = evm_client_factory or (
            lambda chain: EVMClient(chain, timeout=config.timeouts.rpc)
        )
        self._evm_clients: Dict[str, EVMClient] = {}
        self._solana = solana_client or SolanaRPCClient(
            config.solana.rpc_urls,
            timeout=config.timeouts.rpc,
            health_timeout=config.timeouts.health_probe,
        )
        if alchemy_client is None and config.alchemy_api_key:
            alchemy_client = AlchemyNFTClient(config.alchemy_api_key, timeout=config.timeouts.indexer)
        self._alchemy = alchemy_client

    async def close(self) -> None:
        for client in self._evm_clients.values():
            await client.close()
        self._evm_clients.clear()
        await self._solana.close()
        if self._alchemy:
            await self._alchemy.close()

    def _evm_client(self, chain: EVMChainConfig) -> EVMClient:
        if chain.chain_id not in self._evm_clients:
            self._evm_clients[chain.chain_id] = self._evm_client_factory(chain)
        return self._evm_clients[chain.chain_id]

    async def check_entitlement(
        self,
        wallet: str,
        collections: Optional[List[CollectionConfig]] = None,
        bypass_cache: bool = False,
    ) -> EntitlementResult:
        """
        Check which qualifying collections a wallet holds.

        Args:
            wallet: EVM or Solana address
            collections: Collections to check; the configured ones by default
            bypass_cache: Force a fresh check (the result is still cached)

        Returns:
            EntitlementResult; `is_holder` is False on any outage
        """
        wallet = normalize_wallet(wallet)
        if not bypass_cache:
            cached = self._cache.get(wallet)
            if cached is not None:
                return cached

        if collections is None:
            collections = self.config.collections

        wallet_is_evm = is_evm_address(wallet)
        wallet_is_solana = not wallet_is_evm and is_solana_address(wallet)

        by_chain: Dict[str, List[CollectionConfig]] = defaultdict(list)
        for collection in collections:
            if collection.chain_id == SOLANA_CHAIN_ID:
                usable = wallet_is_solana and is_solana_address(collection.address)
            else:
                usable = (
                    wallet_is_evm
                    and is_evm_address(collection.address)
                    and collection.chain_id in self.config.evm_chains
                )
            if not usable:
                logger.debug(f"Skipping {collection.name} for {mask_address(wallet)}")
                continue
            by_chain[collection.chain_id].append(collection)

        chain_ids = list(by_chain)
        outcomes = await asyncio.gather(
            *(self._check_chain(chain_id, by_chain[chain_id], wallet) for chain_id in chain_ids),
            return_exceptions=True,
        )

        owned: List[str] = []
        for chain_id, outcome in zip(chain_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Entitlement check failed on chain {chain_id}: {outcome}")
                continue
            owned.extend(outcome)

        result = EntitlementResult(is_holder=bool(owned), owned_collections=owned)
        self._cache.set(wallet, result)
        logger.info(
            f"Entitlement for {mask_address(wallet)}: holder={result.is_holder} "
            f"({len(owned)} collections)"
        )
        return result

    async def _check_chain(
        self, chain_id: str, collections: List[CollectionConfig], wallet: str
    ) -> List[str]:
        outcomes = await asyncio.gather(
            *(self._qualifying_balance(chain_id, c, wallet) for c in collections),
            return_exceptions=True,
        )
        owned = []
        for collection, outcome in zip(collections, outcomes):
            if isinstance(outcome, BaseException):
                logger.debug(f"Holding check failed for {collection.name}: {outcome}")
                continue
            if outcome > ZERO:
                owned.append(collection.name)
        return owned

    async def _qualifying_balance(
        self, chain_id: str, collection: CollectionConfig, wallet: str
    ) -> Decimal:
        """Normalized balance, or zero when below the collection's minimum."""
        if chain_id == SOLANA_CHAIN_ID:
            balance = await self._solana_balance(collection, wallet)
        elif collection.kind == "token":
            balance = await self._evm_token_balance(chain_id, collection, wallet)
        else:
            balance = await self._evm_nft_balance(chain_id, collection, wallet)

        if collection.kind == "token" and balance < collection.min_balance:
            return ZERO
        return balance

    async def _evm_nft_balance(
        self, chain_id: str, collection: CollectionConfig, wallet: str
    ) -> Decimal:
        chain = self.config.evm_chains[chain_id]
        if self._alchemy and chain.alchemy_network:
            try:
                count = await self._alchemy.count_owned(
                    chain.alchemy_network, wallet, collection.address
                )
                return Decimal(count)
            except UpstreamUnavailableError as e:
                logger.debug(f"Indexed lookup failed for {collection.name}, using balanceOf: {e}")

        client = self._evm_client(chain)
        return Decimal(await client.balance_of(collection.address, wallet))

    async def _evm_token_balance(
        self, chain_id: str, collection: CollectionConfig, wallet: str
    ) -> Decimal:
        client = self._evm_client(self.config.evm_chains[chain_id])
        raw, decimals = await asyncio.wait_for(
            asyncio.gather(
                client.balance_of(collection.address, wallet),
                client.decimals(collection.address),
            ),
            timeout=self.config.timeouts.balance,
        )
        return Decimal(raw) / (Decimal(10) ** decimals)

    async def _solana_balance(self, collection: CollectionConfig, wallet: str) -> Decimal:
        accounts = await self._solana.get_token_accounts_by_owner(wallet, collection.address)
        total = ZERO
        for account in accounts:
            info = (
                ((account.get("account") or {}).get("data") or {}).get("parsed") or {}
            ).get("info") or {}
            amount = info.get("tokenAmount") or {}
            ui_amount = amount.get("uiAmountString")
            if ui_amount is None and amount.get("amount") is not None:
                ui_amount = Decimal(amount["amount"]) / (Decimal(10) ** int(amount.get("decimals", 0)))
            if ui_amount is not None:
                total += Decimal(str(ui_amount))
        return total
