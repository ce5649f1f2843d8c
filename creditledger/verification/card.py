"""
Card payment verification against Stripe PaymentIntents.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Optional

import stripe

from ..accounts import AccountKey, EmailKey, UserIdKey, WalletKey, normalize_wallet, storage_key
from ..credits.models import Rail
from ..credits.stripe_integration import get_stripe
from ..errors import TransactionNotFoundError, UpstreamUnavailableError, VerificationError
from .base import VerifiedPayment

logger = logging.getLogger("creditledger.verification.card")


def _owns(metadata: Any, key: AccountKey) -> bool:
    if isinstance(key, UserIdKey):
        return getattr(metadata, "userId", None) == key.id
    if isinstance(key, EmailKey):
        email = getattr(metadata, "email", None)
        return bool(email) and email.strip().lower() == key.address
    if isinstance(key, WalletKey):
        wallet = getattr(metadata, "walletAddress", None)
        return bool(wallet) and normalize_wallet(wallet) == key.address
    raise TypeError(f"Unknown account key type: {type(key).__name__}")


class CardPaymentVerifier:
    """
    Confirms a Stripe PaymentIntent succeeded and belongs to the account.

    The credited amount always comes from Stripe (`amount_received` in
    cents), never from the client.

    Args:
        api_key: Stripe secret key; `STRIPE_SECRET_KEY` when omitted
        timeout: Seconds allowed for the Stripe call
        client: Object exposing `PaymentIntent.retrieve`; the configured
            `stripe` module when omitted
    """

    rail = Rail.CARD

    def __init__(self, api_key: Optional[str] = None, timeout: float = 10, client: Any = None):
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _stripe(self):
        if self._client is None:
            self._client = get_stripe(self.api_key)
        return self._client

    async def verify_payment_intent(self, payment_intent_id: str, key: AccountKey) -> VerifiedPayment:
        client = self._stripe()
        try:
            intent = await asyncio.wait_for(
                asyncio.to_thread(client.PaymentIntent.retrieve, payment_intent_id),
                timeout=self.timeout,
            )
        except stripe.InvalidRequestError as e:
            logger.warning(f"Payment intent {payment_intent_id} not retrievable: {e}")
            raise TransactionNotFoundError(payment_intent_id)
        except (stripe.StripeError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailableError(f"Stripe request failed: {e}", provider="stripe")

        if intent.status != "succeeded":
            raise VerificationError(
                "Payment not completed",
                {"payment_intent_id": payment_intent_id, "status": intent.status},
            )

        if not _owns(intent.metadata, key):
            raise VerificationError(
                "Payment does not belong to this account",
                {"payment_intent_id": payment_intent_id},
            )

        currency = str(getattr(intent, "currency", "") or "").lower()
        if currency != "usd":
            raise VerificationError(
                "Unsupported currency",
                {"payment_intent_id": payment_intent_id, "currency": currency},
            )

        amount = Decimal(intent.amount_received) / Decimal(100)
        logger.info(f"Verified card payment {payment_intent_id}: ${amount}")
        return VerifiedPayment(
            actual_amount=amount,
            sender=storage_key(key),
            rail=Rail.CARD,
            token_symbol=currency.upper(),
            payment_intent_id=payment_intent_id,
        )
