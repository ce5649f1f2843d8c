"""
Solana SPL-token payment verification.

Walks top-level then inner instructions of the transaction for spl-token
`transfer` / `transferChecked` into a token account owned by the payment
wallet for the configured mint, sent from a token account owned by the
claimant.
"""

import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, Optional

from ..chains.solana import SolanaRPCClient, is_solana_address
from ..config import LedgerConfig
from ..credits.models import Rail
from ..errors import (
    AmountMismatchError,
    ConfigurationError,
    SenderMismatchError,
    TransactionNotFoundError,
    TransactionTooOldError,
    UnsupportedChainError,
    UnsupportedTokenError,
    VerificationError,
)
from ..logging_config import mask_address
from .base import PaymentVerifier, VerifiedPayment

logger = logging.getLogger("creditledger.verification.solana")

TRANSFER_TYPES = ("transfer", "transferChecked")


def iter_token_transfers(tx: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    """Parsed spl-token transfer instructions, top-level first, then inner."""
    message = (tx.get("transaction") or {}).get("message") or {}
    instructions = list(message.get("instructions") or [])
    for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
        instructions.extend(inner.get("instructions") or [])

    for ix in instructions:
        if ix.get("program") != "spl-token":
            continue
        parsed = ix.get("parsed")
        if isinstance(parsed, dict) and parsed.get("type") in TRANSFER_TYPES:
            yield parsed


def _token_account_info(account: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not account:
        return {}
    data = account.get("data")
    if not isinstance(data, dict):
        return {}
    return (data.get("parsed") or {}).get("info") or {}


class SolanaPaymentVerifier(PaymentVerifier):
    """
    Verifies SPL-token payments to the configured Solana payment wallet.

    Args:
        config: Ledger config
        client: RPC client, built from config when omitted
        clock: Wall-clock source in unix seconds
    """

    rail = Rail.SOLANA

    def __init__(
        self,
        config: LedgerConfig,
        client: Optional[SolanaRPCClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.client = client or SolanaRPCClient(
            config.solana.rpc_urls,
            timeout=config.timeouts.rpc,
            health_timeout=config.timeouts.health_probe,
        )
        self._clock = clock

    async def close(self) -> None:
        await self.client.close()

    async def verify(
        self,
        tx_id: str,
        claimed_sender: str,
        token_symbol: str,
        claimed_amount: Decimal,
        chain_id: str = "solana",
    ) -> VerifiedPayment:
        if not self.config.is_solana(chain_id):
            raise UnsupportedChainError(str(chain_id))

        settings = self.config.solana
        token = settings.token(token_symbol)
        if token is None:
            raise UnsupportedTokenError(token_symbol, "solana")
        if not settings.payment_wallet:
            raise ConfigurationError("No Solana payment wallet configured")
        if not is_solana_address(claimed_sender):
            raise VerificationError(
                "Invalid Solana address", {"claimed_sender": claimed_sender}
            )

        await self.client.select_endpoint(refresh=True)

        tx = await self.client.get_transaction(tx_id)
        if not tx:
            raise TransactionNotFoundError(tx_id, "solana")

        meta = tx.get("meta") or {}
        if meta.get("err") is not None:
            raise VerificationError("Transaction failed", {"tx_id": tx_id, "err": meta["err"]})

        block_time = tx.get("blockTime")
        if block_time is None:
            raise VerificationError("Transaction has no block time", {"tx_id": tx_id})

        age = self._clock() - block_time
        if age > settings.max_tx_age_seconds:
            raise TransactionTooOldError(age, settings.max_tx_age_seconds)

        accounts: Dict[str, Dict[str, Any]] = {}

        async def account_info(address: Optional[str]) -> Dict[str, Any]:
            if not address:
                return {}
            if address not in accounts:
                accounts[address] = _token_account_info(
                    await self.client.get_account_info(address)
                )
            return accounts[address]

        sender_mismatch: Optional[str] = None
        for parsed in iter_token_transfers(tx):
            info = parsed.get("info") or {}

            destination = await account_info(info.get("destination"))
            if destination.get("owner") != settings.payment_wallet:
                continue
            if destination.get("mint") != token.address:
                continue

            source = await account_info(info.get("source"))
            source_owner = source.get("owner") or info.get("authority")
            if source_owner != claimed_sender:
                sender_mismatch = source_owner
                continue

            if parsed["type"] == "transferChecked":
                raw_amount = (info.get("tokenAmount") or {}).get("amount")
            else:
                raw_amount = info.get("amount")
            if raw_amount is None:
                continue

            actual = Decimal(str(raw_amount)) / (Decimal(10) ** token.decimals)
            claimed = Decimal(claimed_amount)
            if abs(actual - claimed) > claimed * settings.amount_tolerance:
                raise AmountMismatchError(claimed, actual)

            logger.info(
                f"Verified {actual} {token.symbol} on Solana from {mask_address(claimed_sender)}"
            )
            return VerifiedPayment(
                actual_amount=actual,
                sender=claimed_sender,
                rail=Rail.SOLANA,
                token_symbol=token.symbol,
                chain_id="solana",
                tx_id=tx_id,
                slot=tx.get("slot"),
            )

        if sender_mismatch is not None:
            raise SenderMismatchError(claimed_sender, sender_mismatch)
        raise VerificationError(
            "No valid token transfer to payment wallet found",
            {"tx_id": tx_id, "token": token.symbol},
        )
