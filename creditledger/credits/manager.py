"""
Credit Ledger - balance mutations and account queries.

Handles:
- Idempotent crediting of verified payments
- Conditional debits that never take a balance below zero
- Spend reservations (begin, commit, rollback, expiry)
- Account, history and ledger-entry queries

Every mutation runs in one SQLite `BEGIN IMMEDIATE` transaction together
with its ledger entry. Methods are blocking; async callers wrap them in
`asyncio.to_thread`.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, List, Optional, Union

from ..accounts import AccountKey, normalize_wallet, storage_key
from ..errors import InsufficientCreditsError
from .models import (
    Account,
    EntitlementResult,
    EntryType,
    ErrorCode,
    LedgerEntry,
    LedgerResult,
    PaymentRecord,
    Reservation,
    ReservationStatus,
    ResultStatus,
    utcnow,
)
from .store import (
    connect,
    init_database,
    row_to_account,
    row_to_ledger_entry,
    row_to_payment_record,
    row_to_reservation,
)

logger = logging.getLogger("creditledger.credits")


class CreditLedger:
    """
    Persistent credit balances keyed by account.

    Usage:
        ledger = CreditLedger("data/ledger.db")

        # Credit a verified payment (safe to call twice)
        result = ledger.credit_account(WalletKey("0xabc..."), record)

        # Spend
        result = ledger.debit(WalletKey("0xabc..."), 5, reason="generation")

        # Reserve, then settle
        reservation_id = ledger.begin_spend(key, 5, reason="generation")
        ledger.commit(reservation_id)   # or ledger.rollback(reservation_id)
    """

    def __init__(
        self,
        db_path: Union[str, Path] = "data/ledger.db",
        reservation_timeout_seconds: int = 600,
    ):
        self.db_path = str(db_path)
        self.reservation_timeout_seconds = reservation_timeout_seconds
        init_database(self.db_path)
        logger.info(f"Credit ledger initialized: {self.db_path}")

    def _get_conn(self) -> sqlite3.Connection:
        return connect(self.db_path)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    # =========================================================================
    # Helpers (run inside an open transaction)
    # =========================================================================

    @staticmethod
    def _balance(conn: sqlite3.Connection, account_key: str) -> int:
        row = conn.execute("SELECT credits FROM accounts WHERE key = ?", (account_key,)).fetchone()
        return row["credits"] if row else 0

    @staticmethod
    def _ensure_account(conn: sqlite3.Connection, account_key: str, now: str) -> None:
        conn.execute(
            """
            INSERT OR IGNORE INTO accounts (key, credits, created_at, updated_at)
            VALUES (?, 0, ?, ?)
            """,
            (account_key, now, now),
        )

    @staticmethod
    def _append_entry(
        conn: sqlite3.Connection,
        account_key: str,
        entry_type: EntryType,
        amount: int,
        balance_after: int,
        description: str,
        reference: Optional[str],
        now: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO ledger_entries
            (account_key, type, amount, balance_after, description, reference, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (account_key, entry_type.value, amount, balance_after, description, reference, now),
        )

    def _debit(
        self,
        conn: sqlite3.Connection,
        account_key: str,
        amount: int,
        reason: str,
        reference: Optional[str],
        now: str,
    ) -> int:
        cursor = conn.execute(
            """
            UPDATE accounts
            SET credits = credits - ?, total_credits_spent = total_credits_spent + ?,
                updated_at = ?
            WHERE key = ? AND credits >= ?
            """,
            (amount, amount, now, account_key, amount),
        )
        if cursor.rowcount == 0:
            raise InsufficientCreditsError(
                balance=self._balance(conn, account_key), required=amount
            )

        balance = self._balance(conn, account_key)
        self._append_entry(
            conn, account_key, EntryType.DEBIT, -amount, balance, reason, reference, now
        )
        return balance

    # =========================================================================
    # Credits
    # =========================================================================

    def credit_account(
        self,
        key: AccountKey,
        payment: PaymentRecord,
        description: str = "",
    ) -> LedgerResult:
        """
        Apply a verified payment exactly once.

        A second call with the same natural key returns ALREADY_PROCESSED
        and changes nothing.

        Args:
            key: Account to credit
            payment: Verified payment with its computed credits
            description: Ledger entry description

        Returns:
            LedgerResult with status CREDITED or ALREADY_PROCESSED
        """
        account_key = storage_key(key)
        now = utcnow().isoformat()

        try:
            with self._transaction() as conn:
                existing = conn.execute(
                    "SELECT * FROM payment_records WHERE natural_key = ?",
                    (payment.natural_key,),
                ).fetchone()
                if existing is not None:
                    return self._already_processed_result(conn, existing)

                self._ensure_account(conn, account_key, now)
                conn.execute(
                    """
                    INSERT INTO payment_records
                    (account_key, natural_key, tx_id, payment_intent_id, token_symbol,
                     raw_amount, credits, chain_id, rail, correlation_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        account_key,
                        payment.natural_key,
                        payment.tx_id,
                        payment.payment_intent_id,
                        payment.token_symbol,
                        str(payment.raw_amount),
                        payment.credits,
                        payment.chain_id,
                        payment.rail.value,
                        json.dumps(payment.correlation, default=str),
                        payment.created_at.isoformat(),
                    ),
                )
                conn.execute(
                    """
                    UPDATE accounts
                    SET credits = credits + ?, total_credits_earned = total_credits_earned + ?,
                        updated_at = ?
                    WHERE key = ?
                    """,
                    (payment.credits, payment.credits, now, account_key),
                )
                balance = self._balance(conn, account_key)
                self._append_entry(
                    conn,
                    account_key,
                    EntryType.CREDIT,
                    payment.credits,
                    balance,
                    description or f"{payment.rail.value} payment {payment.token_symbol}",
                    payment.natural_key,
                    now,
                )
        except sqlite3.IntegrityError:
            # Natural key inserted by another writer
            conn = self._get_conn()
            try:
                existing = conn.execute(
                    "SELECT * FROM payment_records WHERE natural_key = ?",
                    (payment.natural_key,),
                ).fetchone()
                if existing is None:
                    raise
                return self._already_processed_result(conn, existing)
            finally:
                conn.close()

        logger.info(f"Credited {payment.credits} to {account_key}, new balance: {balance}")
        return LedgerResult(
            status=ResultStatus.CREDITED,
            record=payment,
            credits=payment.credits,
            balance=balance,
            message=f"Added {payment.credits} credits",
        )

    def _already_processed_result(self, conn: sqlite3.Connection, row: sqlite3.Row) -> LedgerResult:
        logger.info(f"Payment {row['natural_key']} already processed")
        return LedgerResult(
            status=ResultStatus.ALREADY_PROCESSED,
            error=ErrorCode.ALREADY_PROCESSED,
            record=row_to_payment_record(row),
            credits=row["credits"],
            balance=self._balance(conn, row["account_key"]),
            message="Transaction already processed",
        )

    # =========================================================================
    # Debits
    # =========================================================================

    def debit(
        self,
        key: AccountKey,
        amount: int,
        reason: str = "",
        reference: Optional[str] = None,
    ) -> LedgerResult:
        """
        Deduct credits if the account holds at least `amount`.

        Returns:
            LedgerResult DEBITED with the new balance, or REJECTED with
            `insufficient_credits`, the observed balance and `required`
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        account_key = storage_key(key)
        now = utcnow().isoformat()

        try:
            with self._transaction() as conn:
                balance = self._debit(conn, account_key, amount, reason, reference, now)
        except InsufficientCreditsError as e:
            logger.info(f"Debit of {amount} refused for {account_key}: balance {e.balance}")
            return LedgerResult.rejected(
                ErrorCode.INSUFFICIENT_CREDITS,
                message=e.message,
                balance=e.balance,
                required=e.required,
            )

        logger.debug(f"Debited {amount} from {account_key}, remaining: {balance}")
        return LedgerResult(
            status=ResultStatus.DEBITED,
            credits=amount,
            balance=balance,
        )

    # =========================================================================
    # Reservations
    # =========================================================================

    def begin_spend(self, key: AccountKey, amount: int, reason: str = "") -> str:
        """
        Debit up front and open a pending reservation.

        Returns:
            Reservation id for `commit` or `rollback`

        Raises:
            InsufficientCreditsError: If the balance is below `amount`
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        account_key = storage_key(key)
        reservation_id = uuid.uuid4().hex
        now = utcnow().isoformat()

        with self._transaction() as conn:
            self._debit(conn, account_key, amount, reason, reservation_id, now)
            conn.execute(
                """
                INSERT INTO reservations (id, account_key, amount, reason, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (reservation_id, account_key, amount, reason, ReservationStatus.PENDING.value, now),
            )

        logger.debug(f"Reserved {amount} credits for {account_key}: {reservation_id}")
        return reservation_id

    def commit(self, reservation_id: str) -> bool:
        """Settle a pending reservation. Unknown or settled ids are a no-op."""
        now = utcnow().isoformat()
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE reservations SET status = ?, settled_at = ? WHERE id = ? AND status = ?",
                (
                    ReservationStatus.COMMITTED.value,
                    now,
                    reservation_id,
                    ReservationStatus.PENDING.value,
                ),
            )
            updated = cursor.rowcount > 0

        if not updated:
            logger.warning(f"Commit ignored: reservation {reservation_id} unknown or settled")
        return updated

    def rollback(self, reservation_id: str) -> bool:
        """Refund a pending reservation. Unknown or settled ids are a no-op."""
        now = utcnow().isoformat()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM reservations WHERE id = ? AND status = ?",
                (reservation_id, ReservationStatus.PENDING.value),
            ).fetchone()
            if row is None:
                logger.warning(
                    f"Rollback ignored: reservation {reservation_id} unknown or settled"
                )
                return False

            reservation = row_to_reservation(row)
            conn.execute(
                "UPDATE reservations SET status = ?, settled_at = ? WHERE id = ?",
                (ReservationStatus.ROLLED_BACK.value, now, reservation_id),
            )
            conn.execute(
                """
                UPDATE accounts
                SET credits = credits + ?, total_credits_spent = total_credits_spent - ?,
                    updated_at = ?
                WHERE key = ?
                """,
                (reservation.amount, reservation.amount, now, reservation.account_key),
            )
            balance = self._balance(conn, reservation.account_key)
            self._append_entry(
                conn,
                reservation.account_key,
                EntryType.REFUND,
                reservation.amount,
                balance,
                f"Refund: {reservation.reason}" if reservation.reason else "Refund",
                reservation_id,
                now,
            )

        logger.info(
            f"Rolled back reservation {reservation_id}: "
            f"refunded {reservation.amount} to {reservation.account_key}"
        )
        return True

    def expire_stale_reservations(self, now: Optional[datetime] = None) -> int:
        """Roll back pending reservations older than the reservation timeout."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.reservation_timeout_seconds)
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT id FROM reservations WHERE status = ? AND created_at < ?",
                (ReservationStatus.PENDING.value, cutoff.isoformat()),
            ).fetchall()
        finally:
            conn.close()

        expired = sum(1 for row in rows if self.rollback(row["id"]))
        if expired:
            logger.info(f"Expired {expired} stale reservations")
        return expired

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM reservations WHERE id = ?", (reservation_id,)
            ).fetchone()
            return row_to_reservation(row) if row else None
        finally:
            conn.close()

    # =========================================================================
    # Accounts
    # =========================================================================

    def get_account(self, key: AccountKey) -> Optional[Account]:
        """Account with its full payment history, or None."""
        account_key = storage_key(key)
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM accounts WHERE key = ?", (account_key,)).fetchone()
            if row is None:
                return None
            account = row_to_account(row)
        finally:
            conn.close()
        account.payment_history = self.get_history(key)
        return account

    def get_balance(self, key: AccountKey) -> int:
        conn = self._get_conn()
        try:
            return self._balance(conn, storage_key(key))
        finally:
            conn.close()

    def get_history(self, key: AccountKey, limit: Optional[int] = None) -> List[PaymentRecord]:
        """Payment records oldest first; with `limit`, the most recent `limit` of them."""
        account_key = storage_key(key)
        conn = self._get_conn()
        try:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM payment_records WHERE account_key = ? ORDER BY id ASC",
                    (account_key,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM (
                        SELECT * FROM payment_records WHERE account_key = ?
                        ORDER BY id DESC LIMIT ?
                    ) ORDER BY id ASC
                    """,
                    (account_key, limit),
                ).fetchall()
            return [row_to_payment_record(row) for row in rows]
        finally:
            conn.close()

    def get_ledger_entries(self, key: AccountKey, limit: int = 50) -> List[LedgerEntry]:
        """Ledger entries newest first."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT * FROM ledger_entries WHERE account_key = ?
                ORDER BY id DESC LIMIT ?
                """,
                (storage_key(key), limit),
            ).fetchall()
            return [row_to_ledger_entry(row) for row in rows]
        finally:
            conn.close()

    def link_wallet(self, key: AccountKey, wallet: str) -> Account:
        """Attach a wallet to an account for the card-rail holder bonus."""
        account_key = storage_key(key)
        now = utcnow().isoformat()
        with self._transaction() as conn:
            self._ensure_account(conn, account_key, now)
            conn.execute(
                "UPDATE accounts SET linked_wallet = ?, updated_at = ? WHERE key = ?",
                (normalize_wallet(wallet), now, account_key),
            )
        logger.info(f"Linked wallet to {account_key}")
        return self.get_account(key)

    def record_entitlement(self, key: AccountKey, result: EntitlementResult) -> None:
        """Store the latest holder check as the account's display snapshot."""
        account_key = storage_key(key)
        now = utcnow().isoformat()
        with self._transaction() as conn:
            self._ensure_account(conn, account_key, now)
            conn.execute(
                """
                UPDATE accounts
                SET nft_is_holder = ?, nft_collections_json = ?, nft_checked_at = ?,
                    updated_at = ?
                WHERE key = ?
                """,
                (
                    int(result.is_holder),
                    json.dumps(result.owned_collections),
                    result.checked_at.isoformat(),
                    now,
                    account_key,
                ),
            )
