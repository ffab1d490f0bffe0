"""Credit ledger: one document per identity key.

Every backend offers the same four operations, each atomic per key:

- ``get_or_create``: race-safe lazy creation with a starting balance
- ``consume_one``: decrement by one only when the balance is positive
- ``add_credits``: top-up, applied at most once per payment id
- ``get``: read-only lookup
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from engine.models import CreditAccount

logger = logging.getLogger("cleanleads.ledger")

LEDGER_BACKEND = os.environ.get("CLEANLEADS_LEDGER_BACKEND", "duckdb").lower()
DEFAULT_LEDGER_PATH = Path(__file__).parent.parent / "credits.duckdb"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedger:
    """Interface shared by the ledger backends."""

    backend = "abstract"

    def get(self, key: str) -> Optional[CreditAccount]:
        raise NotImplementedError

    def get_or_create(self, key: str, starting_credits: int) -> CreditAccount:
        raise NotImplementedError

    def consume_one(self, key: str) -> Optional[CreditAccount]:
        """Spend one credit. Returns the updated account, or None when the
        balance is zero or the account does not exist."""
        raise NotImplementedError

    def add_credits(self, key: str, amount: int, payment_id: str, starting_credits: int = 0) -> bool:
        """Credit ``amount``. Returns False if ``payment_id`` was already applied."""
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryLedger(CreditLedger):
    """Process-local ledger guarded by a single lock.

    Used by tests and single-process development servers.
    """

    backend = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._accounts: dict[str, CreditAccount] = {}
        self._payments: set[str] = set()

    def get(self, key: str) -> Optional[CreditAccount]:
        with self._lock:
            account = self._accounts.get(key)
            return account.model_copy() if account else None

    def _get_or_create_locked(self, key: str, starting_credits: int) -> CreditAccount:
        account = self._accounts.get(key)
        if account is None:
            now = utcnow()
            account = CreditAccount(
                key=key,
                credits=max(0, starting_credits),
                created_at=now,
                last_updated=now,
            )
            self._accounts[key] = account
            logger.info("Created ledger account %s with %d credits", key, account.credits)
        return account

    def get_or_create(self, key: str, starting_credits: int) -> CreditAccount:
        with self._lock:
            return self._get_or_create_locked(key, starting_credits).model_copy()

    def consume_one(self, key: str) -> Optional[CreditAccount]:
        with self._lock:
            account = self._accounts.get(key)
            if account is None or account.credits <= 0:
                return None
            now = utcnow()
            account.credits -= 1
            account.total_used += 1
            account.last_used = now
            account.last_updated = now
            return account.model_copy()

    def add_credits(self, key: str, amount: int, payment_id: str, starting_credits: int = 0) -> bool:
        with self._lock:
            if payment_id in self._payments:
                return False
            account = self._get_or_create_locked(key, starting_credits)
            now = utcnow()
            account.credits += amount
            account.last_purchase = now
            account.last_updated = now
            self._payments.add(payment_id)
            return True


def ledger_from_env() -> CreditLedger:
    """Build the ledger backend selected by CLEANLEADS_LEDGER_BACKEND.

    Supabase wins when it is configured and no backend was set explicitly.
    """
    backend = LEDGER_BACKEND
    if "CLEANLEADS_LEDGER_BACKEND" not in os.environ:
        from store.supabase_ledger import supabase_ledger_from_env

        supa = supabase_ledger_from_env()
        if supa is not None:
            return supa

    if backend == "memory":
        return MemoryLedger()
    if backend == "supabase":
        from store.supabase_ledger import supabase_ledger_from_env

        supa = supabase_ledger_from_env()
        if supa is None:
            raise RuntimeError("CLEANLEADS_LEDGER_BACKEND=supabase but Supabase URL/key are not set")
        return supa
    if backend == "duckdb":
        from store.duckdb_ledger import DuckDBLedger

        path = os.environ.get("CLEANLEADS_LEDGER_PATH")
        return DuckDBLedger(Path(path) if path else DEFAULT_LEDGER_PATH)
    raise RuntimeError(f"Unknown ledger backend: {backend}")
