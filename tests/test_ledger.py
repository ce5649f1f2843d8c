"""
Tests for CreditLedger.

Covers idempotent crediting, conditional debits, concurrency, reservations
and the storage-level guards.
"""

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from creditledger.accounts import UserIdKey, WalletKey
from creditledger.credits.models import (
    EntitlementResult,
    EntryType,
    ErrorCode,
    PaymentRecord,
    Rail,
    ReservationStatus,
    ResultStatus,
    utcnow,
)
from creditledger.errors import InsufficientCreditsError


def make_record(tx_id="0xabc", credits=50, **kwargs):
    defaults = dict(
        rail=Rail.EVM,
        token_symbol="USDC",
        raw_amount=Decimal("10"),
        credits=credits,
        chain_id="137",
        tx_id=tx_id,
    )
    defaults.update(kwargs)
    return PaymentRecord(**defaults)


class TestPaymentRecord:
    """Tests for PaymentRecord."""

    def test_natural_key_prefers_payment_intent(self):
        record = make_record(tx_id="0xabc", payment_intent_id="pi_1", rail=Rail.CARD)
        assert record.natural_key == "pi_1"

    def test_natural_key_falls_back_to_tx(self):
        assert make_record(tx_id="0xabc").natural_key == "0xabc"

    def test_requires_identifier(self):
        with pytest.raises(ValueError):
            make_record(tx_id=None)


class TestCreditAccount:
    """Tests for crediting verified payments."""

    def test_credit_creates_account(self, ledger, wallet_key):
        result = ledger.credit_account(wallet_key, make_record())

        assert result.status == ResultStatus.CREDITED
        assert result.credits == 50
        assert result.balance == 50

        account = ledger.get_account(wallet_key)
        assert account.credits == 50
        assert account.total_credits_earned == 50
        assert len(account.payment_history) == 1

    def test_double_credit_is_idempotent(self, ledger, wallet_key):
        first = ledger.credit_account(wallet_key, make_record())
        second = ledger.credit_account(wallet_key, make_record())

        assert first.status == ResultStatus.CREDITED
        assert second.status == ResultStatus.ALREADY_PROCESSED
        assert second.error == ErrorCode.ALREADY_PROCESSED
        assert second.ok
        assert second.balance == 50
        assert ledger.get_balance(wallet_key) == 50
        assert len(ledger.get_history(wallet_key)) == 1

    def test_natural_key_is_global(self, ledger, wallet_key, user_key):
        """The same payment cannot credit two different accounts."""
        ledger.credit_account(wallet_key, make_record())
        result = ledger.credit_account(user_key, make_record())

        assert result.status == ResultStatus.ALREADY_PROCESSED
        assert ledger.get_balance(user_key) == 0

    def test_credit_appends_ledger_entry(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record())

        entries = ledger.get_ledger_entries(wallet_key)
        assert len(entries) == 1
        assert entries[0].type == EntryType.CREDIT
        assert entries[0].amount == 50
        assert entries[0].balance_after == 50
        assert entries[0].reference == "0xabc"

    def test_history_round_trips_record(self, ledger, wallet_key):
        record = make_record(raw_amount=Decimal("10.123456"), correlation={"block_number": 7})
        ledger.credit_account(wallet_key, record)

        stored = ledger.get_history(wallet_key)[0]
        assert stored.raw_amount == Decimal("10.123456")
        assert stored.correlation == {"block_number": 7}
        assert stored.rail == Rail.EVM

    def test_history_limit_keeps_most_recent(self, ledger, wallet_key):
        for i in range(5):
            ledger.credit_account(wallet_key, make_record(tx_id=f"0x{i}", credits=1))

        history = ledger.get_history(wallet_key, limit=2)
        assert [r.tx_id for r in history] == ["0x3", "0x4"]

    def test_concurrent_duplicate_credits_apply_once(self, ledger, wallet_key):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(
                pool.map(lambda _: ledger.credit_account(wallet_key, make_record()), range(20))
            )

        credited = [r for r in results if r.status == ResultStatus.CREDITED]
        duplicates = [r for r in results if r.status == ResultStatus.ALREADY_PROCESSED]
        assert len(credited) == 1
        assert len(duplicates) == 19
        assert ledger.get_balance(wallet_key) == 50
        assert len(ledger.get_history(wallet_key)) == 1
        assert ledger.get_account(wallet_key).total_credits_earned == 50


class TestDebit:
    """Tests for conditional debits."""

    def test_debit_reduces_balance(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record())
        result = ledger.debit(wallet_key, 20, reason="generation")

        assert result.status == ResultStatus.DEBITED
        assert result.balance == 30

        account = ledger.get_account(wallet_key)
        assert account.total_credits_spent == 20
        assert account.total_credits_earned == 50

    def test_insufficient_credits_leaves_balance(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record(credits=5))
        result = ledger.debit(wallet_key, 10)

        assert result.status == ResultStatus.REJECTED
        assert result.error == ErrorCode.INSUFFICIENT_CREDITS
        assert result.balance == 5
        assert result.required == 10
        assert ledger.get_balance(wallet_key) == 5
        assert len(ledger.get_ledger_entries(wallet_key)) == 1

    def test_debit_unknown_account(self, ledger):
        result = ledger.debit(UserIdKey("nobody"), 1)

        assert result.error == ErrorCode.INSUFFICIENT_CREDITS
        assert result.balance == 0

    def test_debit_rejects_non_positive(self, ledger, wallet_key):
        with pytest.raises(ValueError):
            ledger.debit(wallet_key, 0)

    def test_concurrent_debits_never_go_negative(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record(credits=100))

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: ledger.debit(wallet_key, 10), range(20)))

        debited = [r for r in results if r.status == ResultStatus.DEBITED]
        rejected = [r for r in results if r.error == ErrorCode.INSUFFICIENT_CREDITS]
        assert len(debited) == 10
        assert len(rejected) == 10
        assert ledger.get_balance(wallet_key) == 0


class TestReservations:
    """Tests for begin_spend / commit / rollback."""

    def test_begin_spend_debits_up_front(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record())
        reservation_id = ledger.begin_spend(wallet_key, 15, reason="generation")

        assert ledger.get_balance(wallet_key) == 35
        assert ledger.get_reservation(reservation_id).status == ReservationStatus.PENDING

    def test_begin_spend_insufficient(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record(credits=5))

        with pytest.raises(InsufficientCreditsError) as exc_info:
            ledger.begin_spend(wallet_key, 10)

        assert exc_info.value.balance == 5
        assert exc_info.value.required == 10

    def test_commit_settles(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record())
        reservation_id = ledger.begin_spend(wallet_key, 15)

        assert ledger.commit(reservation_id) is True
        assert ledger.get_reservation(reservation_id).status == ReservationStatus.COMMITTED
        assert ledger.get_balance(wallet_key) == 35

    def test_rollback_refunds(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record())
        reservation_id = ledger.begin_spend(wallet_key, 15, reason="generation")

        assert ledger.rollback(reservation_id) is True

        account = ledger.get_account(wallet_key)
        assert account.credits == 50
        assert account.total_credits_spent == 0
        entries = ledger.get_ledger_entries(wallet_key)
        assert entries[0].type == EntryType.REFUND
        assert entries[0].amount == 15
        assert entries[0].balance_after == 50

    def test_settled_reservations_are_noops(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record())
        reservation_id = ledger.begin_spend(wallet_key, 15)
        ledger.commit(reservation_id)

        assert ledger.rollback(reservation_id) is False
        assert ledger.commit(reservation_id) is False
        assert ledger.rollback("unknown") is False
        assert ledger.get_balance(wallet_key) == 35

    def test_expire_stale_reservations(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record())
        stale = ledger.begin_spend(wallet_key, 10)

        assert ledger.expire_stale_reservations() == 0
        expired = ledger.expire_stale_reservations(now=utcnow() + timedelta(minutes=11))

        assert expired == 1
        assert ledger.get_reservation(stale).status == ReservationStatus.ROLLED_BACK
        assert ledger.get_balance(wallet_key) == 50


class TestAccounts:
    """Tests for account queries and updates."""

    def test_get_account_missing(self, ledger):
        assert ledger.get_account(UserIdKey("nobody")) is None

    def test_link_wallet(self, ledger, email_key):
        account = ledger.link_wallet(email_key, "0xABCDEF0000000000000000000000000000000001")

        assert account.key == "email:buyer@example.com"
        assert account.linked_wallet == "0xabcdef0000000000000000000000000000000001"

    def test_record_entitlement_snapshot(self, ledger, wallet_key):
        ledger.record_entitlement(
            wallet_key, EntitlementResult(is_holder=True, owned_collections=["Genesis"])
        )

        snapshot = ledger.get_account(wallet_key).nft_entitlement
        assert snapshot.is_holder is True
        assert snapshot.owned_collections == ["Genesis"]

    def test_wallet_keys_are_case_insensitive(self, ledger):
        ledger.credit_account(WalletKey("0xABC0000000000000000000000000000000000000"), make_record())

        assert ledger.get_balance(WalletKey("0xabc0000000000000000000000000000000000000")) == 50


class TestStorageGuards:
    """Tests for constraints enforced by SQLite itself."""

    def test_payment_records_are_immutable(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record())
        conn = sqlite3.connect(ledger.db_path)
        try:
            with pytest.raises(sqlite3.DatabaseError):
                conn.execute("UPDATE payment_records SET credits = 999")
            with pytest.raises(sqlite3.DatabaseError):
                conn.execute("DELETE FROM payment_records")
        finally:
            conn.close()

    def test_balance_check_constraint(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record())
        conn = sqlite3.connect(ledger.db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("UPDATE accounts SET credits = -1")
        finally:
            conn.close()

    def test_ledger_entries_are_append_only(self, ledger, wallet_key):
        ledger.credit_account(wallet_key, make_record())
        ledger.debit(wallet_key, 20, reason="generation")
        conn = sqlite3.connect(ledger.db_path)
        try:
            with pytest.raises(sqlite3.DatabaseError):
                conn.execute("UPDATE ledger_entries SET amount = 0")
            with pytest.raises(sqlite3.DatabaseError):
                conn.execute("DELETE FROM ledger_entries")
        finally:
            conn.close()

        assert len(ledger.get_ledger_entries(wallet_key)) == 2
