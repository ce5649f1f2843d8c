"""
Credit Ledger Data Models.

Records:
- Account: balance and running totals per account key
- PaymentRecord: one verified payment, immutable once stored
- LedgerEntry: one balance mutation (credit, debit, refund)
- Reservation: a pending spend that is later committed or rolled back
- LedgerResult: outcome of every ledger-mutating call
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import LedgerError

# =============================================================================
# Enums
# =============================================================================


class Rail(Enum):
    """Payment rails."""
    EVM = "evm"
    SOLANA = "solana"
    CARD = "card"


class EntryType(Enum):
    """Types of ledger entries."""
    CREDIT = "credit"      # Verified payment
    DEBIT = "debit"        # Spend
    REFUND = "refund"      # Rolled back reservation


class ReservationStatus(Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class ResultStatus(Enum):
    CREDITED = "credited"
    DEBITED = "debited"
    ALREADY_PROCESSED = "already_processed"
    REJECTED = "rejected"


class ErrorCode(Enum):
    INSUFFICIENT_CREDITS = "insufficient_credits"
    ALREADY_PROCESSED = "already_processed"
    VERIFICATION_FAILED = "verification_failed"
    UNSUPPORTED_CHAIN = "unsupported_chain"
    NOT_FOUND = "not_found"
    TOO_OLD = "too_old"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    DUPLICATE_SUBMISSION = "duplicate_submission"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class EntitlementResult:
    """Outcome of a holder check; also stored on the account as a display snapshot."""
    is_holder: bool = False
    owned_collections: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_holder": self.is_holder,
            "owned_collections": list(self.owned_collections),
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass(frozen=True)
class PaymentRecord:
    """A verified payment. The natural key is the payment intent id, else the tx id."""
    rail: Rail
    token_symbol: str
    raw_amount: Decimal
    credits: int
    chain_id: Optional[str] = None
    tx_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    correlation: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.tx_id and not self.payment_intent_id:
            raise ValueError("PaymentRecord needs a tx_id or payment_intent_id")
        if self.credits < 0:
            raise ValueError("credits must be non-negative")

    @property
    def natural_key(self) -> str:
        return self.payment_intent_id or self.tx_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "natural_key": self.natural_key,
            "tx_id": self.tx_id,
            "payment_intent_id": self.payment_intent_id,
            "token_symbol": self.token_symbol,
            "raw_amount": str(self.raw_amount),
            "credits": self.credits,
            "chain_id": self.chain_id,
            "rail": self.rail.value,
            "correlation": dict(self.correlation),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class LedgerEntry:
    id: int
    account_key: str
    type: EntryType
    amount: int  # Positive for credits in, negative for credits out
    balance_after: int
    description: str
    reference: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_key": self.account_key,
            "type": self.type.value,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "description": self.description,
            "reference": self.reference,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Account:
    key: str
    credits: int = 0
    total_credits_earned: int = 0
    total_credits_spent: int = 0
    linked_wallet: Optional[str] = None
    nft_entitlement: Optional[EntitlementResult] = None
    payment_history: List[PaymentRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "credits": self.credits,
            "total_credits_earned": self.total_credits_earned,
            "total_credits_spent": self.total_credits_spent,
            "linked_wallet": self.linked_wallet,
            "nft_entitlement": self.nft_entitlement.to_dict() if self.nft_entitlement else None,
            "payment_history": [p.to_dict() for p in self.payment_history],
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Reservation:
    id: str
    account_key: str
    amount: int
    reason: str
    status: ReservationStatus = ReservationStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    settled_at: Optional[datetime] = None


@dataclass
class LedgerResult:
    """
    Outcome of a credit, debit or payment claim.

    `error` is set when `status` is REJECTED or ALREADY_PROCESSED.
    """
    status: ResultStatus
    error: Optional[ErrorCode] = None
    record: Optional[PaymentRecord] = None
    credits: int = 0
    balance: Optional[int] = None
    required: Optional[int] = None
    retryable: bool = False
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in (
            ResultStatus.CREDITED,
            ResultStatus.DEBITED,
            ResultStatus.ALREADY_PROCESSED,
        )

    @classmethod
    def rejected(
        cls,
        error: ErrorCode,
        message: str = "",
        retryable: bool = False,
        **kwargs: Any,
    ) -> "LedgerResult":
        return cls(
            status=ResultStatus.REJECTED,
            error=error,
            message=message,
            retryable=retryable,
            **kwargs,
        )

    @classmethod
    def from_error(cls, exc: LedgerError) -> "LedgerResult":
        """Map a raised ledger error onto a rejected result."""
        try:
            code = ErrorCode(exc.code)
        except ValueError:
            code = ErrorCode.VERIFICATION_FAILED
        result = cls.rejected(
            code,
            message=exc.message,
            retryable=exc.retryable,
            details=dict(exc.details),
        )
        if code is ErrorCode.INSUFFICIENT_CREDITS:
            result.balance = exc.details.get("balance")
            result.required = exc.details.get("required")
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "error": self.error.value if self.error else None,
            "record": self.record.to_dict() if self.record else None,
            "credits": self.credits,
            "balance": self.balance,
            "required": self.required,
            "retryable": self.retryable,
            "message": self.message,
            "details": self.details,
        }
