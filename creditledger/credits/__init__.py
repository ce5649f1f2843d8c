"""
Credit ledger.

Turns verified payments into credits exactly once and spends them without
ever taking a balance below zero.

Usage:
    from creditledger.credits import CreditLedger, calculate_credits

    ledger = CreditLedger("data/ledger.db")
    quote = calculate_credits(Decimal("25"), is_nft_holder=True)
    result = ledger.debit(key, 5, reason="generation")
"""

from .dedup import DuplicateSubmissionGuard
from .manager import CreditLedger
from .models import (
    Account,
    EntitlementResult,
    EntryType,
    ErrorCode,
    LedgerEntry,
    LedgerResult,
    PaymentRecord,
    Rail,
    Reservation,
    ReservationStatus,
    ResultStatus,
)
from .rates import (
    BASE_RATE,
    NFT_HOLDER_MULTIPLIER,
    CreditQuote,
    RateSchedule,
    calculate_credits,
)

__all__ = [
    "Account",
    "BASE_RATE",
    "CreditLedger",
    "CreditQuote",
    "DuplicateSubmissionGuard",
    "EntitlementResult",
    "EntryType",
    "ErrorCode",
    "LedgerEntry",
    "LedgerResult",
    "NFT_HOLDER_MULTIPLIER",
    "PaymentRecord",
    "Rail",
    "RateSchedule",
    "Reservation",
    "ReservationStatus",
    "ResultStatus",
    "calculate_credits",
]
