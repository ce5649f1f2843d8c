"""
Tests for EntitlementChecker.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from creditledger.cache import TTLCache
from creditledger.config import CollectionConfig
from creditledger.entitlement import EntitlementChecker
from creditledger.errors import UpstreamUnavailableError

from conftest import EVM_SENDER, SOL_SENDER, SOL_USDC_MINT

NFT_CONTRACT = "0x" + "5" * 40
TOKEN_CONTRACT = "0x" + "6" * 40


def evm_client(balance=0, decimals=18):
    client = MagicMock()
    client.balance_of = AsyncMock(return_value=balance)
    client.decimals = AsyncMock(return_value=decimals)
    client.close = AsyncMock()
    return client


def solana_client(accounts=None):
    client = MagicMock()
    client.get_token_accounts_by_owner = AsyncMock(return_value=accounts or [])
    client.close = AsyncMock()
    return client


def alchemy_client(count=0):
    client = MagicMock()
    client.count_owned = AsyncMock(return_value=count)
    client.close = AsyncMock()
    return client


def ui_account(amount):
    return {"account": {"data": {"parsed": {"info": {"tokenAmount": {"uiAmountString": amount}}}}}}


@pytest.fixture
def cache():
    return TTLCache(default_ttl=300)


@pytest.fixture
def nft_collection():
    return CollectionConfig(name="Genesis", address=NFT_CONTRACT, chain_id="polygon")


def make_checker(config, cache, evm=None, solana=None, alchemy=None):
    evm = evm or evm_client()
    return EntitlementChecker(
        config,
        cache,
        evm_client_factory=lambda chain: evm,
        solana_client=solana or solana_client(),
        alchemy_client=alchemy,
    )


class TestEVMCollections:
    """Tests for EVM NFT and token holdings."""

    @pytest.mark.asyncio
    async def test_holder_via_indexer(self, config, cache, nft_collection):
        alchemy = alchemy_client(count=2)
        evm = evm_client()
        checker = make_checker(config, cache, evm=evm, alchemy=alchemy)

        result = await checker.check_entitlement(EVM_SENDER, [nft_collection])

        assert result.is_holder is True
        assert result.owned_collections == ["Genesis"]
        alchemy.count_owned.assert_awaited_once_with("polygon-mainnet", EVM_SENDER, NFT_CONTRACT)
        evm.balance_of.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_indexer_failure_falls_back_to_balance_of(self, config, cache, nft_collection):
        alchemy = alchemy_client()
        alchemy.count_owned.side_effect = UpstreamUnavailableError("down", provider="alchemy")
        evm = evm_client(balance=1)
        checker = make_checker(config, cache, evm=evm, alchemy=alchemy)

        result = await checker.check_entitlement(EVM_SENDER, [nft_collection])

        assert result.is_holder is True
        evm.balance_of.assert_awaited_once_with(NFT_CONTRACT, EVM_SENDER)

    @pytest.mark.asyncio
    async def test_non_holder(self, config, cache, nft_collection):
        checker = make_checker(config, cache, evm=evm_client(balance=0))

        result = await checker.check_entitlement(EVM_SENDER, [nft_collection])

        assert result.is_holder is False
        assert result.owned_collections == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw,expected", [(150 * 10**18, True), (50 * 10**18, False)])
    async def test_token_minimum_balance(self, config, cache, raw, expected):
        collection = CollectionConfig(
            name="Governance",
            address=TOKEN_CONTRACT,
            chain_id="1",
            kind="token",
            min_balance=Decimal("100"),
        )
        checker = make_checker(config, cache, evm=evm_client(balance=raw, decimals=18))

        result = await checker.check_entitlement(EVM_SENDER, [collection])
        assert result.is_holder is expected

    @pytest.mark.asyncio
    async def test_outage_degrades_to_not_holder(self, config, cache, nft_collection):
        evm = evm_client()
        evm.balance_of.side_effect = UpstreamUnavailableError("all endpoints failed", provider="evm:137")
        checker = make_checker(config, cache, evm=evm)

        result = await checker.check_entitlement(EVM_SENDER, [nft_collection])
        assert result.is_holder is False

    @pytest.mark.asyncio
    async def test_one_failing_collection_does_not_hide_others(self, config, cache, nft_collection):
        other = CollectionConfig(name="Second", address="0x" + "7" * 40, chain_id="137")
        evm = evm_client()

        async def balance_of(contract, owner):
            if contract == NFT_CONTRACT:
                raise UpstreamUnavailableError("boom", provider="evm:137")
            return 1

        evm.balance_of.side_effect = balance_of
        checker = make_checker(config, cache, evm=evm)

        result = await checker.check_entitlement(EVM_SENDER, [nft_collection, other])
        assert result.owned_collections == ["Second"]


class TestSolanaCollections:
    """Tests for SPL-token holdings."""

    @pytest.mark.asyncio
    async def test_sums_token_accounts(self, config, cache):
        collection = CollectionConfig(
            name="SolToken",
            address=SOL_USDC_MINT,
            chain_id="solana",
            kind="token",
            min_balance=Decimal("10"),
        )
        solana = solana_client([ui_account("4.5"), ui_account("6")])
        checker = make_checker(config, cache, solana=solana)

        result = await checker.check_entitlement(SOL_SENDER, [collection])

        assert result.is_holder is True
        solana.get_token_accounts_by_owner.assert_awaited_once_with(SOL_SENDER, SOL_USDC_MINT)

    @pytest.mark.asyncio
    async def test_raw_amount_fallback(self, config, cache):
        collection = CollectionConfig(name="SolNFT", address=SOL_USDC_MINT, chain_id="solana")
        account = {
            "account": {
                "data": {"parsed": {"info": {"tokenAmount": {"amount": "1", "decimals": 0}}}}
            }
        }
        checker = make_checker(config, cache, solana=solana_client([account]))

        result = await checker.check_entitlement(SOL_SENDER, [collection])
        assert result.is_holder is True


class TestCollectionSelection:
    """Tests for skipping unusable collection/wallet pairs."""

    @pytest.mark.asyncio
    async def test_cross_family_pairs_skipped(self, config, cache, nft_collection):
        sol_collection = CollectionConfig(name="SolNFT", address=SOL_USDC_MINT, chain_id="solana")
        evm = evm_client(balance=1)
        solana = solana_client([ui_account("1")])
        checker = make_checker(config, cache, evm=evm, solana=solana)

        result = await checker.check_entitlement(EVM_SENDER, [nft_collection, sol_collection])

        assert result.owned_collections == ["Genesis"]
        solana.get_token_accounts_by_owner.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unconfigured_chain_skipped(self, config, cache):
        collection = CollectionConfig(name="BSC", address=NFT_CONTRACT, chain_id="56")
        evm = evm_client(balance=1)
        checker = make_checker(config, cache, evm=evm)

        result = await checker.check_entitlement(EVM_SENDER, [collection])

        assert result.is_holder is False
        evm.balance_of.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_uses_configured_collections_by_default(self, config, cache, nft_collection):
        config.collections = [nft_collection]
        checker = make_checker(config, cache, evm=evm_client(balance=3))

        result = await checker.check_entitlement(EVM_SENDER)
        assert result.is_holder is True


class TestEntitlementCache:
    """Tests for result caching."""

    @pytest.mark.asyncio
    async def test_cached_result_reused(self, config, cache, nft_collection):
        evm = evm_client(balance=1)
        checker = make_checker(config, cache, evm=evm)

        first = await checker.check_entitlement(EVM_SENDER, [nft_collection])
        second = await checker.check_entitlement(EVM_SENDER.upper().replace("0X", "0x"), [nft_collection])

        assert first is second
        assert evm.balance_of.await_count == 1

    @pytest.mark.asyncio
    async def test_bypass_cache_rechecks(self, config, cache, nft_collection):
        evm = evm_client(balance=1)
        checker = make_checker(config, cache, evm=evm)

        await checker.check_entitlement(EVM_SENDER, [nft_collection])
        evm.balance_of.return_value = 0
        result = await checker.check_entitlement(EVM_SENDER, [nft_collection], bypass_cache=True)

        assert result.is_holder is False
        assert evm.balance_of.await_count == 2
        assert cache.get(EVM_SENDER) is result

    @pytest.mark.asyncio
    async def test_close_closes_clients(self, config, cache, nft_collection):
        evm = evm_client(balance=1)
        solana = solana_client()
        alchemy = alchemy_client(count=1)
        checker = make_checker(config, cache, evm=evm, solana=solana, alchemy=alchemy)
        alchemy.count_owned.side_effect = UpstreamUnavailableError("down", provider="alchemy")
        await checker.check_entitlement(EVM_SENDER, [nft_collection])

        await checker.close()

        evm.close.assert_awaited_once()
        solana.close.assert_awaited_once()
        alchemy.close.assert_awaited_once()
