"""
Stripe Payment Integration.

Handles:
- Configured Stripe module access
- Webhook signature verification
- Webhook dispatch

Webhook Events:
- payment_intent.succeeded → Credit the account named in the intent metadata
"""

import logging
import os
from typing import Any, Dict, Optional

import stripe

from ..accounts import account_key_from
from ..errors import ConfigurationError, InvalidAccountKeyError

logger = logging.getLogger("creditledger.credits.stripe")


def get_stripe(api_key: Optional[str] = None):
    """Get configured Stripe module."""
    api_key = api_key or os.getenv("STRIPE_SECRET_KEY")
    if not api_key:
        raise ConfigurationError("STRIPE_SECRET_KEY not configured")

    stripe.api_key = api_key
    return stripe


def verify_webhook_signature(
    payload: bytes,
    signature: str,
    webhook_secret: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Verify Stripe webhook signature and parse event.

    Raises:
        ConfigurationError: If no webhook secret is configured
        stripe.SignatureVerificationError: If the signature does not match
    """
    webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
    if not webhook_secret:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET not configured")

    return stripe.Webhook.construct_event(payload, signature, webhook_secret)


async def handle_webhook(event: Dict[str, Any], service: Any) -> Dict[str, Any]:
    """
    Handle Stripe webhook event.

    Args:
        event: Parsed (signature-verified) Stripe event
        service: PaymentService used to credit the payer

    Returns:
        Dict with handling result
    """
    event_type = event.get("type", "")
    data = event.get("data", {}).get("object", {})

    logger.info(f"Processing Stripe webhook: {event_type}")

    if event_type == "payment_intent.succeeded":
        return await _handle_payment_succeeded(data, service)

    logger.debug(f"Unhandled event type: {event_type}")
    return {"event_type": event_type, "handled": False, "reason": "unhandled_event_type"}


async def _handle_payment_succeeded(payment_intent: Dict[str, Any], service: Any) -> Dict[str, Any]:
    """Credit the account identified by the intent metadata."""
    intent_id = payment_intent.get("id")
    metadata = payment_intent.get("metadata") or {}

    try:
        key = account_key_from(
            wallet=metadata.get("walletAddress"),
            email=metadata.get("email"),
            user_id=metadata.get("userId"),
        )
    except InvalidAccountKeyError:
        logger.error(f"Missing account metadata in payment intent: {intent_id}")
        return {"event_type": "payment_intent.succeeded", "handled": False, "error": "missing_metadata"}

    result = await service.process_card_payment(intent_id, key)
    return {
        "event_type": "payment_intent.succeeded",
        "handled": result.ok,
        "payment_intent": intent_id,
        "result": result.to_dict(),
    }
