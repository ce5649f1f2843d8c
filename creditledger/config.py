"""
Ledger configuration.

A JSON base file is deep-merged with an optional local override, then
secrets and endpoints are layered on from the environment (a `.env` file is
loaded first without overriding real variables). The result is validated
into `LedgerConfig`.

Usage:
    from creditledger.config import load_config

    config = load_config()
    chain = config.evm_chain("polygon")
"""

import json
import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .errors import ConfigurationError, UnsupportedChainError

logger = logging.getLogger("creditledger.config")

ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "config"
BASE_CONFIG = CONFIG_DIR / "ledger.config.json"

SOLANA_CHAIN_ID = "solana"

CHAIN_ALIASES = {
    "ethereum": "1",
    "eth": "1",
    "mainnet": "1",
    "polygon": "137",
    "matic": "137",
    "arbitrum": "42161",
    "optimism": "10",
    "base": "8453",
    "solana": SOLANA_CHAIN_ID,
    "sol": SOLANA_CHAIN_ID,
    "solana-mainnet": SOLANA_CHAIN_ID,
}

# chain id -> (env prefix, display name, alchemy network)
_EVM_CHAIN_ENV = {
    "1": ("ETH", "Ethereum", "eth-mainnet"),
    "137": ("POLYGON", "Polygon", "polygon-mainnet"),
    "42161": ("ARBITRUM", "Arbitrum", "arb-mainnet"),
    "10": ("OPTIMISM", "Optimism", "opt-mainnet"),
    "8453": ("BASE", "Base", "base-mainnet"),
}


def resolve_chain_id(chain_id: Union[str, int]) -> str:
    """Normalize a chain id or alias (`"polygon"`, `137`, `"0x89"`) to its canonical string."""
    if isinstance(chain_id, int):
        return str(chain_id)
    value = str(chain_id).strip().lower()
    if value in CHAIN_ALIASES:
        return CHAIN_ALIASES[value]
    if value.startswith("0x"):
        try:
            return str(int(value, 16))
        except ValueError:
            return value
    return value


# =============================================================================
# Models
# =============================================================================


class TokenConfig(BaseModel):
    """A payment token on one chain (ERC-20 contract or SPL mint)."""
    symbol: str
    address: str
    decimals: int = Field(ge=0, le=36, default=6)


class EVMChainConfig(BaseModel):
    chain_id: str
    name: str
    rpc_urls: List[str] = Field(default_factory=list)
    payment_wallet: Optional[str] = None
    alchemy_network: Optional[str] = None
    tokens: Dict[str, TokenConfig] = Field(default_factory=dict)

    def token(self, symbol: str) -> Optional[TokenConfig]:
        return self.tokens.get(symbol.upper())


class SolanaConfig(BaseModel):
    rpc_urls: List[str] = Field(default_factory=lambda: ["https://api.mainnet-beta.solana.com"])
    payment_wallet: Optional[str] = None
    tokens: Dict[str, TokenConfig] = Field(default_factory=dict)
    max_tx_age_seconds: int = Field(ge=1, default=3600)
    amount_tolerance: Decimal = Field(ge=0, le=1, default=Decimal("0.01"))

    def token(self, symbol: str) -> Optional[TokenConfig]:
        return self.tokens.get(symbol.upper())


class CollectionConfig(BaseModel):
    """A collection whose holders get the discount."""
    name: str
    address: str
    chain_id: str
    kind: Literal["nft", "token"] = "nft"
    min_balance: Decimal = Field(ge=0, default=Decimal("0"))

    @field_validator("chain_id", mode="before")
    @classmethod
    def normalize_chain(cls, v):
        return resolve_chain_id(v)


class CacheSettings(BaseModel):
    transaction_cache_size: int = Field(ge=1, default=1000)
    revoked_token_capacity: int = Field(ge=1, default=10000)
    entitlement_ttl: int = Field(ge=1, default=300)
    sweep_interval: int = Field(ge=1, default=60)
    dedup_window: int = Field(ge=1, default=30)


class TimeoutSettings(BaseModel):
    """Per-call network timeouts in seconds."""
    rpc: float = Field(ge=3, le=10, default=10)
    health_probe: float = Field(ge=3, le=10, default=5)
    balance: float = Field(ge=3, le=10, default=10)
    indexer: float = Field(ge=3, le=10, default=10)
    processor: float = Field(ge=3, le=10, default=10)


class RateTier(BaseModel):
    min_amount: Decimal = Field(ge=0)
    multiplier: Decimal = Field(gt=0)


class RateSettings(BaseModel):
    base_rate: Decimal = Field(gt=0, default=Decimal("5"))
    nft_holder_multiplier: Decimal = Field(ge=1, default=Decimal("1.2"))
    tiers: List[RateTier] = Field(
        default_factory=lambda: [
            RateTier(min_amount=Decimal("80"), multiplier=Decimal("1.3")),
            RateTier(min_amount=Decimal("40"), multiplier=Decimal("1.2")),
            RateTier(min_amount=Decimal("20"), multiplier=Decimal("1.1")),
        ]
    )


def _default_evm_chains() -> Dict[str, EVMChainConfig]:
    usdc = {
        "1": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        "137": "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
        "42161": "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
        "10": "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85",
        "8453": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    }
    usdt = {
        "1": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        "137": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
        "42161": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
    }
    chains = {}
    for chain_id, (_, name, network) in _EVM_CHAIN_ENV.items():
        tokens = {"USDC": TokenConfig(symbol="USDC", address=usdc[chain_id], decimals=6)}
        if chain_id in usdt:
            tokens["USDT"] = TokenConfig(symbol="USDT", address=usdt[chain_id], decimals=6)
        chains[chain_id] = EVMChainConfig(
            chain_id=chain_id, name=name, alchemy_network=network, tokens=tokens
        )
    return chains


def _default_solana() -> SolanaConfig:
    return SolanaConfig(
        tokens={
            "USDC": TokenConfig(
                symbol="USDC",
                address="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
                decimals=6,
            )
        }
    )


class LedgerConfig(BaseModel):
    """Top-level ledger configuration."""
    db_path: str = "data/ledger.db"
    evm_chains: Dict[str, EVMChainConfig] = Field(default_factory=_default_evm_chains)
    solana: SolanaConfig = Field(default_factory=_default_solana)
    collections: List[CollectionConfig] = Field(default_factory=list)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    rates: RateSettings = Field(default_factory=RateSettings)
    reservation_timeout_seconds: int = Field(ge=1, default=600)
    alchemy_api_key: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    @field_validator("evm_chains", mode="before")
    @classmethod
    def normalize_chain_keys(cls, v):
        if isinstance(v, dict):
            return {resolve_chain_id(k): val for k, val in v.items()}
        return v

    def evm_chain(self, chain_id: Union[str, int]) -> EVMChainConfig:
        """Look up an EVM chain, raising `UnsupportedChainError` if it is not configured."""
        resolved = resolve_chain_id(chain_id)
        chain = self.evm_chains.get(resolved)
        if chain is None:
            raise UnsupportedChainError(str(chain_id))
        return chain

    def is_solana(self, chain_id: Union[str, int]) -> bool:
        return resolve_chain_id(chain_id) == SOLANA_CHAIN_ID


# =============================================================================
# Loading
# =============================================================================


def _load_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        if isinstance(data, dict):
            return data
        return {}
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}: {e}", {"path": str(path)})


def _registry_defaults() -> Dict[str, Any]:
    return {
        "evm_chains": {k: v.model_dump() for k, v in _default_evm_chains().items()},
        "solana": _default_solana().model_dump(),
    }


def _with_chain_ids(data: Dict[str, Any]) -> Dict[str, Any]:
    """Key `evm_chains` by canonical chain id so aliases merge onto the defaults."""
    chains = data.get("evm_chains")
    if not isinstance(chains, dict):
        return data
    normalized = {}
    for key, value in chains.items():
        chain_id = resolve_chain_id(key)
        if isinstance(value, dict):
            value = dict(value, chain_id=chain_id)
        normalized[chain_id] = value
    return dict(data, evm_chains=normalized)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env(config: LedgerConfig, env: Mapping[str, str]) -> LedgerConfig:
    if env.get("LEDGER_DB_PATH"):
        config.db_path = env["LEDGER_DB_PATH"]
    config.alchemy_api_key = env.get("ALCHEMY_API_KEY") or config.alchemy_api_key
    config.stripe_secret_key = env.get("STRIPE_SECRET_KEY") or config.stripe_secret_key
    config.stripe_webhook_secret = (
        env.get("STRIPE_WEBHOOK_SECRET") or config.stripe_webhook_secret
    )

    shared_wallet = env.get("EVM_PAYMENT_WALLET")
    for chain_id, chain in config.evm_chains.items():
        prefix = _EVM_CHAIN_ENV.get(chain_id, (None,))[0]
        if prefix is None:
            continue
        rpc_url = env.get(f"{prefix}_RPC_URL")
        if rpc_url and rpc_url not in chain.rpc_urls:
            chain.rpc_urls.insert(0, rpc_url)
        wallet = env.get(f"{prefix}_PAYMENT_WALLET") or shared_wallet
        if wallet:
            chain.payment_wallet = wallet

    solana_rpc = env.get("SOLANA_RPC_URL")
    if solana_rpc and solana_rpc not in config.solana.rpc_urls:
        config.solana.rpc_urls.insert(0, solana_rpc)
    if env.get("SOLANA_PAYMENT_WALLET"):
        config.solana.payment_wallet = env["SOLANA_PAYMENT_WALLET"]
    return config


def load_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> LedgerConfig:
    """
    Load and validate the ledger configuration.

    Args:
        path: Base JSON file. Defaults to `config/ledger.config.json`; a
            sibling `*.local.json` is merged on top when present.
        env: Environment mapping. Defaults to `os.environ` after loading `.env`.

    Returns:
        Validated LedgerConfig

    Raises:
        ConfigurationError: If a file is not valid JSON or fails validation
    """
    base_path = Path(path) if path else BASE_CONFIG
    local_path = base_path.with_name(base_path.name.replace(".json", ".local.json"))

    data = _deep_merge(_registry_defaults(), _with_chain_ids(_load_json(base_path)))
    local = _with_chain_ids(_load_json(local_path))
    if local:
        data = _deep_merge(data, local)

    if env is None:
        load_dotenv(override=False)
        env = os.environ

    try:
        config = LedgerConfig.model_validate(data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid ledger configuration: {e}")

    config = _apply_env(config, env)
    logger.info(
        f"Loaded ledger config: {len(config.evm_chains)} EVM chains, "
        f"{len(config.collections)} collections"
    )
    return config
