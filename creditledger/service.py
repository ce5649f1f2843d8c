"""
Payment service.

Orchestrates one payment claim end to end:

    dedup guard -> verifier -> fresh entitlement -> rate table -> ledger

and owns the lifecycle of the caches and network clients it uses.

Usage:
    config = load_config()
    service = PaymentService(config)
    await service.start()

    result = await service.process_claim(PaymentClaim(
        rail="evm", chain_id="polygon", tx_id="0x...",
        claimed_sender="0xabc...", token_symbol="USDC", amount="10",
    ))

    await service.stop()
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .accounts import AccountKey, WalletKey, account_key_from, storage_key
from .cache import LRUCache, RevokedTokenStore, TTLCache
from .chains.evm import normalize_evm_tx_hash
from .config import LedgerConfig, resolve_chain_id
from .credits.dedup import DuplicateSubmissionGuard
from .credits.manager import CreditLedger
from .credits.models import EntitlementResult, LedgerResult, PaymentRecord, Rail
from .credits.rates import RateSchedule, calculate_credits
from .entitlement import EntitlementChecker
from .errors import DuplicateSubmissionError, LedgerError, UnsupportedChainError
from .logging_config import CorrelationContext, correlation_id_var, mask_address
from .verification import (
    CardPaymentVerifier,
    EVMPaymentVerifier,
    PaymentVerifier,
    SolanaPaymentVerifier,
    VerifiedPayment,
)

logger = logging.getLogger("creditledger.service")


class PaymentClaim(BaseModel):
    """A validated inbound payment claim."""
    rail: Rail
    chain_id: Optional[str] = None
    tx_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    claimed_sender: Optional[str] = None
    token_symbol: str = "USDC"
    amount: Optional[Decimal] = Field(default=None, gt=0)
    email: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("chain_id", mode="before")
    @classmethod
    def normalize_chain(cls, v):
        return resolve_chain_id(v) if v is not None else None

    @field_validator("token_symbol")
    @classmethod
    def upper_symbol(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def check_rail_fields(self):
        if self.rail is Rail.CARD:
            if not self.payment_intent_id:
                raise ValueError("payment_intent_id is required for card payments")
            if not (self.claimed_sender or self.email or self.user_id):
                raise ValueError("One of claimed_sender, email or user_id is required")
        else:
            missing = [
                name
                for name in ("chain_id", "tx_id", "claimed_sender", "amount")
                if getattr(self, name) in (None, "")
            ]
            if missing:
                raise ValueError(f"Missing fields for on-chain payment: {', '.join(missing)}")
            if self.rail is Rail.EVM:
                self.tx_id = normalize_evm_tx_hash(self.tx_id)
        return self

    def account_key(self) -> AccountKey:
        return account_key_from(wallet=self.claimed_sender, email=self.email, user_id=self.user_id)


class PaymentService:
    """
    Payment claims, spends and their supporting services.

    Every collaborator can be injected; anything omitted is built from config.
    """

    def __init__(
        self,
        config: LedgerConfig,
        ledger: Optional[CreditLedger] = None,
        entitlement: Optional[EntitlementChecker] = None,
        evm_verifier: Optional[PaymentVerifier] = None,
        solana_verifier: Optional[PaymentVerifier] = None,
        card_verifier: Optional[CardPaymentVerifier] = None,
        dedup: Optional[DuplicateSubmissionGuard] = None,
        entitlement_cache: Optional[TTLCache] = None,
        revoked_tokens: Optional[RevokedTokenStore] = None,
    ):
        self.config = config
        self.schedule = RateSchedule.from_settings(config.rates)
        self.ledger = ledger or CreditLedger(
            config.db_path, reservation_timeout_seconds=config.reservation_timeout_seconds
        )
        self.entitlement_cache = entitlement_cache or TTLCache(
            default_ttl=config.cache.entitlement_ttl,
            sweep_interval=config.cache.sweep_interval,
        )
        self.entitlement = entitlement or EntitlementChecker(config, self.entitlement_cache)
        self.evm_verifier = evm_verifier or EVMPaymentVerifier(config)
        self.solana_verifier = solana_verifier or SolanaPaymentVerifier(config)
        self.card_verifier = card_verifier or CardPaymentVerifier(
            api_key=config.stripe_secret_key, timeout=config.timeouts.processor
        )
        self.dedup = dedup or DuplicateSubmissionGuard(
            LRUCache(capacity=config.cache.transaction_cache_size),
            window_seconds=config.cache.dedup_window,
        )
        self.revoked_tokens = revoked_tokens or RevokedTokenStore(
            capacity=config.cache.revoked_token_capacity
        )
        self._expiry_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start cache sweeps and reservation expiry."""
        self.entitlement_cache.start()
        if self._expiry_task is None or self._expiry_task.done():
            self._expiry_task = asyncio.get_running_loop().create_task(self._expiry_loop())
        logger.info("Payment service started")

    async def stop(self) -> None:
        """Cancel background tasks and close network clients."""
        await self.entitlement_cache.stop()
        if self._expiry_task is not None:
            self._expiry_task.cancel()
            try:
                await self._expiry_task
            except asyncio.CancelledError:
                pass
            self._expiry_task = None

        await self.evm_verifier.close()
        await self.solana_verifier.close()
        await self.entitlement.close()
        logger.info("Payment service stopped")

    async def _expiry_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cache.sweep_interval)
            try:
                await asyncio.to_thread(self.ledger.expire_stale_reservations)
            except Exception as e:
                logger.error(f"Reservation expiry failed: {e}", exc_info=True)

    # =========================================================================
    # Claims
    # =========================================================================

    async def process_claim(self, claim: PaymentClaim) -> LedgerResult:
        """
        Verify a payment claim and credit the payer exactly once.

        Returns:
            LedgerResult; verification failures come back as REJECTED with
            the matching error code rather than raising
        """
        key = claim.account_key()
        with CorrelationContext(
            account_key=storage_key(key),
            tx_id=claim.payment_intent_id or claim.tx_id,
        ):
            try:
                fingerprint = self.dedup.check(claim, key)
            except DuplicateSubmissionError as e:
                return LedgerResult.from_error(e)

            if claim.rail is Rail.CARD:
                result = await self._credit_card(claim.payment_intent_id, key)
            else:
                result = await self._credit_onchain(claim, key)

            if result.retryable:
                self.dedup.release(fingerprint)
            return result

    async def process_card_payment(self, payment_intent_id: str, key: AccountKey) -> LedgerResult:
        """Credit a Stripe PaymentIntent (used by the webhook path)."""
        with CorrelationContext(account_key=storage_key(key), tx_id=payment_intent_id):
            return await self._credit_card(payment_intent_id, key)

    def _verifier_for(self, claim: PaymentClaim) -> PaymentVerifier:
        on_solana = self.config.is_solana(claim.chain_id)
        if claim.rail is Rail.SOLANA and on_solana:
            return self.solana_verifier
        if claim.rail is Rail.EVM and not on_solana:
            return self.evm_verifier
        raise UnsupportedChainError(claim.chain_id)

    async def _credit_onchain(self, claim: PaymentClaim, key: AccountKey) -> LedgerResult:
        try:
            verifier = self._verifier_for(claim)
            verified = await verifier.verify(
                claim.tx_id,
                claim.claimed_sender,
                claim.token_symbol,
                claim.amount,
                claim.chain_id,
            )
        except LedgerError as e:
            logger.warning(f"Claim {claim.tx_id} rejected: {e.code}: {e.message}")
            return LedgerResult.from_error(e)

        entitlement = await self._fresh_entitlement(key, claim.claimed_sender)
        quote = calculate_credits(
            verified.actual_amount,
            is_nft_holder=entitlement.is_holder,
            tiered=False,
            schedule=self.schedule,
        )
        return await self._credit(key, verified, quote.credits)

    async def _credit_card(self, payment_intent_id: str, key: AccountKey) -> LedgerResult:
        try:
            verified = await self.card_verifier.verify_payment_intent(payment_intent_id, key)
        except LedgerError as e:
            logger.warning(f"Card payment {payment_intent_id} rejected: {e.code}: {e.message}")
            return LedgerResult.from_error(e)

        account = await asyncio.to_thread(self.ledger.get_account, key)
        wallet = account.linked_wallet if account else None
        if wallet is None and isinstance(key, WalletKey):
            wallet = key.address

        entitlement = await self._fresh_entitlement(key, wallet)
        quote = calculate_credits(
            verified.actual_amount,
            is_nft_holder=entitlement.is_holder,
            tiered=True,
            schedule=self.schedule,
        )
        return await self._credit(key, verified, quote.credits)

    async def _fresh_entitlement(self, key: AccountKey, wallet: Optional[str]) -> EntitlementResult:
        if not wallet:
            return EntitlementResult()
        result = await self.entitlement.check_entitlement(wallet, bypass_cache=True)
        await asyncio.to_thread(self.ledger.record_entitlement, key, result)
        return result

    async def _credit(self, key: AccountKey, verified: VerifiedPayment, credits: int) -> LedgerResult:
        correlation = verified.correlation()
        correlation_id = correlation_id_var.get()
        if correlation_id:
            correlation["correlation_id"] = correlation_id

        record = PaymentRecord(
            rail=verified.rail,
            token_symbol=verified.token_symbol,
            raw_amount=verified.actual_amount,
            credits=credits,
            chain_id=verified.chain_id,
            tx_id=verified.tx_id,
            payment_intent_id=verified.payment_intent_id,
            correlation=correlation,
        )
        result = await asyncio.to_thread(self.ledger.credit_account, key, record)
        logger.info(
            f"Claim for {mask_address(storage_key(key), keep=16)}: {result.status.value} "
            f"({result.credits} credits)"
        )
        return result

    # =========================================================================
    # Spending and accounts
    # =========================================================================

    async def debit(self, key: AccountKey, amount: int, reason: str = "") -> LedgerResult:
        return await asyncio.to_thread(self.ledger.debit, key, amount, reason)

    async def get_balance(self, key: AccountKey) -> int:
        return await asyncio.to_thread(self.ledger.get_balance, key)

    async def link_wallet(self, key: AccountKey, wallet: str):
        return await asyncio.to_thread(self.ledger.link_wallet, key, wallet)

    def revoke_token(self, token_id: str, expires_at: Optional[float] = None) -> None:
        self.revoked_tokens.revoke(token_id, expires_at)

    def is_token_revoked(self, token_id: str) -> bool:
        return self.revoked_tokens.is_revoked(token_id)
