"""Ledger exception hierarchy.

Verifiers raise these; `PaymentService` maps them onto `LedgerResult`
error codes. "Already processed" is deliberately absent: it is a result
status, not a failure.
"""
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for all ledger errors."""
    code: str = "ledger_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ConfigurationError(LedgerError):
    """Missing or invalid configuration."""
    code = "configuration_error"
    status_code = 500


class InvalidAccountKeyError(LedgerError):
    """Account identity could not be built from the supplied fields."""
    code = "invalid_account_key"
    status_code = 400


# =============================================================================
# Payment verification
# =============================================================================


class PaymentError(LedgerError):
    """A payment claim could not be accepted."""
    code = "verification_failed"
    status_code = 400


class UnsupportedChainError(PaymentError):
    code = "unsupported_chain"

    def __init__(self, chain_id: str):
        super().__init__(f"Unsupported chain: {chain_id}", {"chain_id": chain_id})
        self.chain_id = chain_id


class UnsupportedTokenError(PaymentError):
    code = "unsupported_chain"

    def __init__(self, token_symbol: str, chain_id: str):
        super().__init__(
            f"Token {token_symbol} not supported on chain {chain_id}",
            {"token_symbol": token_symbol, "chain_id": chain_id},
        )


class TransactionNotFoundError(PaymentError):
    """Claimed transaction is not (yet) visible on chain."""
    code = "not_found"
    status_code = 404
    retryable = True

    def __init__(self, tx_id: str, chain_id: Optional[str] = None):
        super().__init__(
            "Transaction not found. Try again shortly.",
            {"tx_id": tx_id, "chain_id": chain_id},
        )


class VerificationError(PaymentError):
    """On-chain or processor data disagrees with the claim."""
    code = "verification_failed"


class SenderMismatchError(VerificationError):
    def __init__(self, claimed: str, actual: str):
        super().__init__(
            "Transaction sender does not match wallet address",
            {"claimed_sender": claimed, "actual_sender": actual},
        )


class AmountMismatchError(VerificationError):
    def __init__(self, claimed: Any, actual: Any):
        super().__init__(
            f"Amount mismatch. Expected: {claimed}, Actual: {actual}",
            {"claimed_amount": str(claimed), "actual_amount": str(actual)},
        )


class TransactionTooOldError(VerificationError):
    code = "too_old"

    def __init__(self, age_seconds: float, max_age_seconds: float):
        super().__init__(
            "Transaction too old",
            {"age_seconds": int(age_seconds), "max_age_seconds": int(max_age_seconds)},
        )


class UpstreamUnavailableError(PaymentError):
    """RPC endpoint, indexer or processor timed out or is down."""
    code = "upstream_unavailable"
    status_code = 503
    retryable = True

    def __init__(self, message: str, provider: str = None):
        super().__init__(message, {"provider": provider})
        self.provider = provider


# =============================================================================
# Ledger mutations
# =============================================================================


class InsufficientCreditsError(LedgerError):
    """Debit precondition failed at the storage layer."""
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, balance: int, required: int):
        super().__init__(
            f"Insufficient credits. You have {balance} credits but need {required}.",
            {"balance": balance, "required": required},
        )
        self.balance = balance
        self.required = required


class DuplicateSubmissionError(LedgerError):
    """Same claim submitted again inside the dedup window."""
    code = "duplicate_submission"
    status_code = 429
    retryable = True

    def __init__(self, fingerprint: str, retry_after: int):
        super().__init__(
            "Duplicate submission. Please wait before retrying.",
            {"fingerprint": fingerprint, "retry_after": retry_after},
        )
        self.retry_after = retry_after
