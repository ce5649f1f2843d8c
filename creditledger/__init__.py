"""
creditledger - payment verification and credit ledger.

Users buy credits with cards (Stripe) or stablecoin transfers on EVM
chains and Solana, then spend them per generation call.
"""

from .accounts import AccountKey, EmailKey, UserIdKey, WalletKey, account_key_from
from .config import LedgerConfig, load_config, resolve_chain_id
from .credits import CreditLedger, LedgerResult, ResultStatus, calculate_credits
from .entitlement import EntitlementChecker
from .errors import LedgerError
from .logging_config import CorrelationContext, setup_logging
from .service import PaymentClaim, PaymentService

__version__ = "0.1.0"

__all__ = [
    "AccountKey",
    "CorrelationContext",
    "CreditLedger",
    "EmailKey",
    "EntitlementChecker",
    "LedgerConfig",
    "LedgerError",
    "LedgerResult",
    "PaymentClaim",
    "PaymentService",
    "ResultStatus",
    "UserIdKey",
    "WalletKey",
    "account_key_from",
    "calculate_credits",
    "load_config",
    "resolve_chain_id",
    "setup_logging",
]
