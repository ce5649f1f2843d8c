"""
Tests for card verification and Stripe webhook handling.
"""

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe

from creditledger.accounts import EmailKey, UserIdKey, WalletKey
from creditledger.credits.models import LedgerResult, Rail, ResultStatus
from creditledger.credits.stripe_integration import (
    get_stripe,
    handle_webhook,
    verify_webhook_signature,
)
from creditledger.errors import (
    ConfigurationError,
    TransactionNotFoundError,
    UpstreamUnavailableError,
    VerificationError,
)
from creditledger.verification.card import CardPaymentVerifier


def make_intent(status="succeeded", amount_received=8000, currency="usd", **metadata):
    return SimpleNamespace(
        id="pi_123",
        status=status,
        amount_received=amount_received,
        currency=currency,
        metadata=SimpleNamespace(**metadata),
    )


def make_client(intent=None, error=None):
    client = MagicMock()
    if error is not None:
        client.PaymentIntent.retrieve.side_effect = error
    else:
        client.PaymentIntent.retrieve.return_value = intent
    return client


class TestCardPaymentVerifier:
    """Tests for CardPaymentVerifier.verify_payment_intent."""

    @pytest.mark.asyncio
    async def test_succeeded_intent(self):
        client = make_client(make_intent(email="Buyer@Example.com"))
        verifier = CardPaymentVerifier(client=client)

        verified = await verifier.verify_payment_intent("pi_123", EmailKey("buyer@example.com"))

        assert verified.actual_amount == Decimal("80")
        assert verified.rail == Rail.CARD
        assert verified.token_symbol == "USD"
        assert verified.payment_intent_id == "pi_123"
        assert verified.sender == "email:buyer@example.com"
        client.PaymentIntent.retrieve.assert_called_once_with("pi_123")

    @pytest.mark.asyncio
    async def test_wallet_metadata(self):
        client = make_client(make_intent(walletAddress="0xABCDEF0000000000000000000000000000000001"))
        verifier = CardPaymentVerifier(client=client)

        key = WalletKey("0xabcdef0000000000000000000000000000000001")
        verified = await verifier.verify_payment_intent("pi_123", key)
        assert verified.sender == "wallet:0xabcdef0000000000000000000000000000000001"

    @pytest.mark.asyncio
    async def test_not_succeeded(self):
        client = make_client(make_intent(status="requires_payment_method", userId="u1"))
        verifier = CardPaymentVerifier(client=client)

        with pytest.raises(VerificationError):
            await verifier.verify_payment_intent("pi_123", UserIdKey("u1"))

    @pytest.mark.asyncio
    async def test_metadata_mismatch(self):
        client = make_client(make_intent(userId="someone-else"))
        verifier = CardPaymentVerifier(client=client)

        with pytest.raises(VerificationError):
            await verifier.verify_payment_intent("pi_123", UserIdKey("u1"))

    @pytest.mark.asyncio
    async def test_non_usd_currency_rejected(self):
        client = make_client(make_intent(amount_received=8000, currency="jpy", userId="u1"))
        verifier = CardPaymentVerifier(client=client)

        with pytest.raises(VerificationError) as exc_info:
            await verifier.verify_payment_intent("pi_123", UserIdKey("u1"))
        assert exc_info.value.details["currency"] == "jpy"

    @pytest.mark.asyncio
    async def test_unknown_intent(self):
        error = stripe.InvalidRequestError("No such payment_intent", param="id")
        verifier = CardPaymentVerifier(client=make_client(error=error))

        with pytest.raises(TransactionNotFoundError):
            await verifier.verify_payment_intent("pi_missing", UserIdKey("u1"))

    @pytest.mark.asyncio
    async def test_stripe_outage(self):
        error = stripe.APIConnectionError("connection reset")
        verifier = CardPaymentVerifier(client=make_client(error=error))

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await verifier.verify_payment_intent("pi_123", UserIdKey("u1"))
        assert exc_info.value.provider == "stripe"

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        verifier = CardPaymentVerifier()

        with pytest.raises(ConfigurationError):
            verifier._stripe()


class TestStripeConfiguration:
    """Tests for Stripe module access and signature checks."""

    def test_get_stripe_sets_key(self, monkeypatch):
        monkeypatch.setattr(stripe, "api_key", None)

        module = get_stripe("sk_test_123")

        assert module is stripe
        assert stripe.api_key == "sk_test_123"

    def test_webhook_secret_required(self, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)

        with pytest.raises(ConfigurationError):
            verify_webhook_signature(b"{}", "t=1,v1=abc")

    def test_webhook_signature_checked(self, monkeypatch):
        construct = MagicMock(return_value={"type": "payment_intent.succeeded"})
        monkeypatch.setattr(stripe.Webhook, "construct_event", construct)

        event = verify_webhook_signature(b"{}", "t=1,v1=abc", webhook_secret="whsec_test")

        assert event["type"] == "payment_intent.succeeded"
        construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_test")


class TestHandleWebhook:
    """Tests for webhook dispatch."""

    @pytest.mark.asyncio
    async def test_payment_succeeded_credits_account(self):
        service = MagicMock()
        service.process_card_payment = AsyncMock(
            return_value=LedgerResult(status=ResultStatus.CREDITED, credits=520, balance=520)
        )
        event = {
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_123", "metadata": {"email": "Buyer@Example.com"}}},
        }

        result = await handle_webhook(event, service)

        assert result["handled"] is True
        assert result["payment_intent"] == "pi_123"
        assert result["result"]["credits"] == 520
        service.process_card_payment.assert_awaited_once_with(
            "pi_123", EmailKey("buyer@example.com")
        )

    @pytest.mark.asyncio
    async def test_missing_metadata(self):
        service = MagicMock()
        service.process_card_payment = AsyncMock()
        event = {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_123"}}}

        result = await handle_webhook(event, service)

        assert result["handled"] is False
        assert result["error"] == "missing_metadata"
        service.process_card_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unhandled_event(self):
        result = await handle_webhook({"type": "charge.refunded", "data": {}}, MagicMock())

        assert result["handled"] is False
        assert result["reason"] == "unhandled_event_type"
