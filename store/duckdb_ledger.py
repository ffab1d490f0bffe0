"""DuckDB-backed credit ledger.

Single connection, single writer lock, explicit transactions. Every
read-modify-write runs inside BEGIN/COMMIT so another process sharing the
file gets a transaction conflict instead of a lost update; conflicts are
retried a few times before surfacing as LedgerConflict.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

import duckdb

from engine.errors import LedgerConflict
from engine.models import CreditAccount
from store.ledger import CreditLedger

logger = logging.getLogger("cleanleads.ledger.duckdb")

MAX_TXN_ATTEMPTS = 5

_CREATE_TABLES_SQL = [
    """
    CREATE TABLE IF NOT EXISTS credit_accounts (
        key TEXT PRIMARY KEY,
        credits INTEGER NOT NULL,
        total_used INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP,
        last_used TIMESTAMP,
        last_updated TIMESTAMP,
        last_purchase TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_purchases (
        payment_id TEXT PRIMARY KEY,
        key TEXT NOT NULL,
        credits INTEGER NOT NULL,
        created_at TIMESTAMP
    );
    """,
]

_SELECT_SQL = """
SELECT key, credits, total_used, created_at, last_used, last_updated, last_purchase
FROM credit_accounts WHERE key = ?
"""

_INSERT_IF_MISSING_SQL = """
INSERT INTO credit_accounts (key, credits, total_used, created_at, last_updated)
VALUES (?, ?, 0, ?, ?)
ON CONFLICT (key) DO NOTHING
"""


def _naive_utc() -> datetime:
    # DuckDB TIMESTAMP columns hold naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_account(row) -> CreditAccount:
    return CreditAccount(
        key=row[0],
        credits=row[1],
        total_used=row[2],
        created_at=_as_utc(row[3]),
        last_used=_as_utc(row[4]),
        last_updated=_as_utc(row[5]),
        last_purchase=_as_utc(row[6]),
    )


class DuckDBLedger(CreditLedger):
    """Credit ledger stored in a DuckDB file (or ``:memory:``)."""

    backend = "duckdb"

    def __init__(self, db_path: Union[Path, str] = ":memory:"):
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._path = str(db_path)
        self._lock = threading.Lock()
        self._conn = duckdb.connect(self._path)
        for sql in _CREATE_TABLES_SQL:
            self._conn.execute(sql)
        logger.info("Credit ledger connected: %s", self._path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _transaction(self, key: str, fn):
        """Run ``fn(conn)`` in a transaction under the writer lock, retrying conflicts."""
        for attempt in range(1, MAX_TXN_ATTEMPTS + 1):
            with self._lock:
                self._conn.execute("BEGIN TRANSACTION")
                try:
                    result = fn(self._conn)
                    self._conn.execute("COMMIT")
                    return result
                except duckdb.TransactionException as e:
                    self._conn.execute("ROLLBACK")
                    logger.debug("Ledger conflict on %s (attempt %d): %s", key, attempt, e)
                except Exception:
                    self._conn.execute("ROLLBACK")
                    raise
            time.sleep(0.01 * attempt)
        raise LedgerConflict(key, MAX_TXN_ATTEMPTS)

    def get(self, key: str) -> Optional[CreditAccount]:
        with self._lock:
            row = self._conn.execute(_SELECT_SQL, [key]).fetchone()
        return _row_to_account(row) if row else None

    def get_or_create(self, key: str, starting_credits: int) -> CreditAccount:
        def _run(conn):
            now = _naive_utc()
            conn.execute(_INSERT_IF_MISSING_SQL, [key, max(0, starting_credits), now, now])
            return conn.execute(_SELECT_SQL, [key]).fetchone()

        return _row_to_account(self._transaction(key, _run))

    def consume_one(self, key: str) -> Optional[CreditAccount]:
        def _run(conn):
            row = conn.execute("SELECT credits FROM credit_accounts WHERE key = ?", [key]).fetchone()
            if row is None or row[0] <= 0:
                return None
            now = _naive_utc()
            conn.execute(
                """
                UPDATE credit_accounts
                SET credits = credits - 1,
                    total_used = total_used + 1,
                    last_used = ?,
                    last_updated = ?
                WHERE key = ? AND credits > 0
                """,
                [now, now, key],
            )
            return conn.execute(_SELECT_SQL, [key]).fetchone()

        row = self._transaction(key, _run)
        return _row_to_account(row) if row else None

    def add_credits(self, key: str, amount: int, payment_id: str, starting_credits: int = 0) -> bool:
        def _run(conn):
            seen = conn.execute(
                "SELECT 1 FROM credit_purchases WHERE payment_id = ?", [payment_id]
            ).fetchone()
            if seen:
                return False
            now = _naive_utc()
            conn.execute(_INSERT_IF_MISSING_SQL, [key, max(0, starting_credits), now, now])
            conn.execute(
                """
                UPDATE credit_accounts
                SET credits = credits + ?, last_purchase = ?, last_updated = ?
                WHERE key = ?
                """,
                [amount, now, now, key],
            )
            conn.execute(
                "INSERT INTO credit_purchases VALUES (?, ?, ?, ?)",
                [payment_id, key, amount, now],
            )
            return True

        applied = self._transaction(key, _run)
        if applied:
            logger.info("Added %d credits to %s (payment %s)", amount, key, payment_id)
        else:
            logger.info("Payment %s already applied, skipping", payment_id)
        return applied

    def stats(self) -> dict:
        with self._lock:
            accounts, credits, used = self._conn.execute(
                "SELECT count(*), coalesce(sum(credits), 0), coalesce(sum(total_used), 0) FROM credit_accounts"
            ).fetchone()
            purchases = self._conn.execute("SELECT count(*) FROM credit_purchases").fetchone()[0]
        return {
            "accounts": accounts,
            "credits_outstanding": credits,
            "credits_used": used,
            "purchases": purchases,
        }
