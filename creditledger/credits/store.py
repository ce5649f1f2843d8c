"""
SQLite schema and row mapping for the credit ledger.

Tables:
- accounts: balance and running totals per account key
- payment_records: verified payments, UNIQUE on natural_key, immutable
- ledger_entries: one row per balance mutation, append-only
- reservations: pending/committed/rolled back spends
"""

import json
import os
import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional, Union

from .models import (
    Account,
    EntitlementResult,
    EntryType,
    LedgerEntry,
    PaymentRecord,
    Rail,
    Reservation,
    ReservationStatus,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    key TEXT PRIMARY KEY,
    credits INTEGER NOT NULL DEFAULT 0 CHECK (credits >= 0),
    total_credits_earned INTEGER NOT NULL DEFAULT 0,
    total_credits_spent INTEGER NOT NULL DEFAULT 0,
    linked_wallet TEXT,
    nft_is_holder INTEGER,
    nft_collections_json TEXT,
    nft_checked_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_key TEXT NOT NULL REFERENCES accounts(key),
    natural_key TEXT NOT NULL UNIQUE,
    tx_id TEXT,
    payment_intent_id TEXT,
    token_symbol TEXT NOT NULL,
    raw_amount TEXT NOT NULL,
    credits INTEGER NOT NULL,
    chain_id TEXT,
    rail TEXT NOT NULL,
    correlation_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_key TEXT NOT NULL REFERENCES accounts(key),
    type TEXT NOT NULL,
    amount INTEGER NOT NULL,
    balance_after INTEGER NOT NULL,
    description TEXT,
    reference TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reservations (
    id TEXT PRIMARY KEY,
    account_key TEXT NOT NULL REFERENCES accounts(key),
    amount INTEGER NOT NULL,
    reason TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    settled_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_payment_records_account ON payment_records(account_key);
CREATE INDEX IF NOT EXISTS idx_ledger_entries_account ON ledger_entries(account_key);
CREATE INDEX IF NOT EXISTS idx_reservations_status ON reservations(status, created_at);

CREATE TRIGGER IF NOT EXISTS payment_records_no_update
BEFORE UPDATE ON payment_records
BEGIN
    SELECT RAISE(ABORT, 'payment_records are immutable');
END;

CREATE TRIGGER IF NOT EXISTS payment_records_no_delete
BEFORE DELETE ON payment_records
BEGIN
    SELECT RAISE(ABORT, 'payment_records are immutable');
END;

CREATE TRIGGER IF NOT EXISTS ledger_entries_no_update
BEFORE UPDATE ON ledger_entries
BEGIN
    SELECT RAISE(ABORT, 'ledger_entries are append-only');
END;

CREATE TRIGGER IF NOT EXISTS ledger_entries_no_delete
BEFORE DELETE ON ledger_entries
BEGIN
    SELECT RAISE(ABORT, 'ledger_entries are append-only');
END;
"""


def connect(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open a connection in autocommit mode; callers issue BEGIN IMMEDIATE themselves."""
    conn = sqlite3.connect(str(db_path), timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def init_database(db_path: Union[str, Path]) -> None:
    """Create the ledger tables, indexes and triggers."""
    directory = os.path.dirname(str(db_path))
    if directory:
        os.makedirs(directory, exist_ok=True)

    conn = connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA)
    finally:
        conn.close()


# =============================================================================
# Row mapping
# =============================================================================


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def row_to_payment_record(row: sqlite3.Row) -> PaymentRecord:
    return PaymentRecord(
        rail=Rail(row["rail"]),
        token_symbol=row["token_symbol"],
        raw_amount=Decimal(row["raw_amount"]),
        credits=row["credits"],
        chain_id=row["chain_id"],
        tx_id=row["tx_id"],
        payment_intent_id=row["payment_intent_id"],
        correlation=json.loads(row["correlation_json"] or "{}"),
        created_at=_parse_ts(row["created_at"]),
    )


def row_to_ledger_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        account_key=row["account_key"],
        type=EntryType(row["type"]),
        amount=row["amount"],
        balance_after=row["balance_after"],
        description=row["description"] or "",
        reference=row["reference"],
        created_at=_parse_ts(row["created_at"]),
    )


def row_to_reservation(row: sqlite3.Row) -> Reservation:
    return Reservation(
        id=row["id"],
        account_key=row["account_key"],
        amount=row["amount"],
        reason=row["reason"] or "",
        status=ReservationStatus(row["status"]),
        created_at=_parse_ts(row["created_at"]),
        settled_at=_parse_ts(row["settled_at"]),
    )


def row_to_account(row: sqlite3.Row) -> Account:
    entitlement = None
    if row["nft_checked_at"]:
        entitlement = EntitlementResult(
            is_holder=bool(row["nft_is_holder"]),
            owned_collections=json.loads(row["nft_collections_json"] or "[]"),
            checked_at=_parse_ts(row["nft_checked_at"]),
        )
    return Account(
        key=row["key"],
        credits=row["credits"],
        total_credits_earned=row["total_credits_earned"],
        total_credits_spent=row["total_credits_spent"],
        linked_wallet=row["linked_wallet"],
        nft_entitlement=entitlement,
        created_at=_parse_ts(row["created_at"]),
    )
