"""
EVM stablecoin payment verification.

A claim is accepted when the receipt succeeded, the transaction was sent by
the claimant and at least one Transfer log of the configured token moves
funds from the claimant to the payment wallet.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Callable, Dict, Optional

from ..chains.evm import EVMClient, TransferLog, decode_transfer_log, normalize_evm_tx_hash
from ..config import EVMChainConfig, LedgerConfig
from ..credits.models import Rail
from ..errors import (
    ConfigurationError,
    SenderMismatchError,
    TransactionNotFoundError,
    UnsupportedTokenError,
    VerificationError,
)
from ..logging_config import mask_address
from .base import PaymentVerifier, VerifiedPayment

logger = logging.getLogger("creditledger.verification.evm")


class EVMPaymentVerifier(PaymentVerifier):
    """
    Verifies ERC-20 payments on the configured EVM chains.

    Args:
        config: Ledger config (chains, tokens, payment wallets, timeouts)
        client_factory: Builds an EVMClient for a chain
    """

    rail = Rail.EVM

    def __init__(
        self,
        config: LedgerConfig,
        client_factory: Optional[Callable[[EVMChainConfig], EVMClient]] = None,
    ):
        self.config = config
        self._client_factory = client_factory or (
            lambda chain: EVMClient(chain, timeout=config.timeouts.rpc)
        )
        self._clients: Dict[str, EVMClient] = {}

    def client_for(self, chain: EVMChainConfig) -> EVMClient:
        if chain.chain_id not in self._clients:
            self._clients[chain.chain_id] = self._client_factory(chain)
        return self._clients[chain.chain_id]

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

    async def verify(
        self,
        tx_id: str,
        claimed_sender: str,
        token_symbol: str,
        claimed_amount: Decimal,
        chain_id: str,
    ) -> VerifiedPayment:
        try:
            tx_id = normalize_evm_tx_hash(tx_id)
        except ValueError:
            raise VerificationError("Invalid transaction hash", {"tx_id": tx_id})

        chain = self.config.evm_chain(chain_id)
        token = chain.token(token_symbol)
        if token is None:
            raise UnsupportedTokenError(token_symbol, chain.chain_id)
        if not chain.payment_wallet:
            raise ConfigurationError(f"No payment wallet configured for {chain.name}")

        client = self.client_for(chain)
        tx, receipt = await asyncio.gather(
            client.get_transaction(tx_id),
            client.get_receipt(tx_id),
        )
        if tx is None or receipt is None:
            raise TransactionNotFoundError(tx_id, chain.chain_id)

        if receipt.get("status") != 1:
            raise VerificationError("Transaction failed", {"tx_id": tx_id})

        sender = str(tx.get("from") or "").lower()
        if sender != claimed_sender.lower():
            raise SenderMismatchError(claimed_sender, sender)

        wallet = chain.payment_wallet.lower()
        contract = token.address.lower()
        matched: Optional[TransferLog] = None
        for log in receipt.get("logs") or []:
            if str(log.get("address") or "").lower() != contract:
                continue
            transfer = decode_transfer_log(log)
            if transfer is None:
                continue
            if transfer.recipient == wallet and transfer.sender == sender:
                matched = transfer

        if matched is None:
            raise VerificationError(
                "No matching token transfer to payment wallet found",
                {"tx_id": tx_id, "token": token.symbol},
            )

        actual = Decimal(matched.value) / (Decimal(10) ** token.decimals)
        logger.info(
            f"Verified {actual} {token.symbol} on {chain.name} from {mask_address(sender)} "
            f"(claimed {claimed_amount})"
        )
        return VerifiedPayment(
            actual_amount=actual,
            sender=sender,
            rail=Rail.EVM,
            token_symbol=token.symbol,
            chain_id=chain.chain_id,
            tx_id=tx_id,
            block_number=receipt.get("blockNumber"),
        )
