"""
Ledger Test Configuration

Shared fixtures: temporary ledger database, a config with payment wallets
and fake RPC endpoints, and common addresses.
"""

import os
import sys

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from creditledger.accounts import EmailKey, UserIdKey, WalletKey
from creditledger.config import LedgerConfig
from creditledger.credits.manager import CreditLedger

EVM_SENDER = "0x" + "1" * 40
EVM_PAYMENT_WALLET = "0x" + "2" * 40
POLYGON_USDC = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"

SOL_SENDER = "So11111111111111111111111111111111111111112"
SOL_PAYMENT_WALLET = "PayWa11et111111111111111111111111111111111"
SOL_USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


@pytest.fixture
def config(tmp_path):
    """Config with payment wallets set and unroutable RPC endpoints."""
    cfg = LedgerConfig(db_path=str(tmp_path / "ledger.db"))
    for chain in cfg.evm_chains.values():
        chain.payment_wallet = EVM_PAYMENT_WALLET
        chain.rpc_urls = [f"http://rpc-{chain.chain_id}.invalid"]
    cfg.solana.payment_wallet = SOL_PAYMENT_WALLET
    cfg.solana.rpc_urls = ["http://solana.invalid"]
    return cfg


@pytest.fixture
def ledger(tmp_path):
    return CreditLedger(str(tmp_path / "ledger.db"))


@pytest.fixture
def wallet_key():
    return WalletKey(EVM_SENDER)


@pytest.fixture
def email_key():
    return EmailKey("Buyer@Example.com")


@pytest.fixture
def user_key():
    return UserIdKey("user-123")
