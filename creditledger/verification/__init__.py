"""
Payment verifiers.

- EVMPaymentVerifier: ERC-20 transfers on EVM chains
- SolanaPaymentVerifier: SPL-token transfers on Solana
- CardPaymentVerifier: Stripe PaymentIntents
"""

from .base import PaymentVerifier, VerifiedPayment
from .card import CardPaymentVerifier
from .evm import EVMPaymentVerifier
from .solana import SolanaPaymentVerifier

__all__ = [
    "CardPaymentVerifier",
    "EVMPaymentVerifier",
    "PaymentVerifier",
    "SolanaPaymentVerifier",
    "VerifiedPayment",
]
