from __future__ import annotations

import logging
import os
from typing import Any, Optional

import requests

from engine.errors import LedgerConflict, LedgerError
from engine.models import CreditAccount
from store.ledger import CreditLedger, utcnow

logger = logging.getLogger("cleanleads.ledger.supabase")

MAX_CAS_ATTEMPTS = 8


class SupabaseRestError(LedgerError):
    """Raised when Supabase PostgREST returns a non-2xx response."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"supabase_rest_error status={status_code} {message}")
        self.status_code = status_code


class SupabaseLedger(CreditLedger):
    """Credit ledger on Supabase PostgREST.

    Updates are compare-and-swap: the PATCH filters on the balance and the
    usage counter that were read, and an empty representation back means
    another writer got there first, so we re-read and try again.
    """

    backend = "supabase"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        table: str = "credit_accounts",
        purchases_table: str = "credit_purchases",
        timeout_seconds: float = 5.0,
        max_attempts: int = MAX_CAS_ATTEMPTS,
        request_fn=None,
    ):
        self._rest_url = base_url.rstrip("/") + "/rest/v1"
        self._table = table
        self._purchases_table = purchases_table
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._request_fn = request_fn or requests.request
        self._base_headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, str]] = None,
        json_body: Any = None,
    ):
        merged_headers = dict(self._base_headers)
        if headers:
            merged_headers.update(headers)

        url = f"{self._rest_url}{path}"
        try:
            resp = self._request_fn(
                method,
                url,
                headers=merged_headers,
                params=params,
                json=json_body,
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as e:
            raise LedgerError(f"supabase request failed: {e}") from e
        if not (200 <= resp.status_code < 300):
            # Never include headers (apikey) in error messages.
            text = getattr(resp, "text", "")
            raise SupabaseRestError(resp.status_code, text[:500])
        return resp

    @staticmethod
    def _rows(resp) -> list[dict]:
        try:
            payload = resp.json()
        except ValueError:
            # return=minimal answers with an empty body
            return []
        if payload is None:
            return []
        if isinstance(payload, list):
            return payload
        return [payload]

    def get(self, key: str) -> Optional[CreditAccount]:
        resp = self._request(
            "GET",
            f"/{self._table}",
            params={"select": "*", "key": f"eq.{key}", "limit": "1"},
        )
        rows = self._rows(resp)
        if not rows:
            return None
        return CreditAccount.model_validate(rows[0])

    def get_or_create(self, key: str, starting_credits: int) -> CreditAccount:
        account = self.get(key)
        if account is not None:
            return account

        now = utcnow().isoformat()
        # ignore-duplicates makes concurrent first contacts converge on one row
        self._request(
            "POST",
            f"/{self._table}",
            headers={"Prefer": "resolution=ignore-duplicates,return=minimal"},
            params={"on_conflict": "key"},
            json_body={
                "key": key,
                "credits": max(0, starting_credits),
                "total_used": 0,
                "created_at": now,
                "last_updated": now,
            },
        )
        account = self.get(key)
        if account is None:
            raise LedgerError(f"account {key} missing after create")
        logger.info("Ensured ledger account %s", key)
        return account

    def _compare_and_swap(self, account: CreditAccount, update: dict) -> Optional[CreditAccount]:
        resp = self._request(
            "PATCH",
            f"/{self._table}",
            headers={"Prefer": "return=representation"},
            # total_used only grows, so it catches a balance that moved and came back
            params={
                "key": f"eq.{account.key}",
                "credits": f"eq.{account.credits}",
                "total_used": f"eq.{account.total_used}",
            },
            json_body=update,
        )
        rows = self._rows(resp)
        if not rows:
            return None
        return CreditAccount.model_validate(rows[0])

    def consume_one(self, key: str) -> Optional[CreditAccount]:
        for attempt in range(1, self._max_attempts + 1):
            account = self.get(key)
            if account is None or account.credits <= 0:
                return None
            now = utcnow().isoformat()
            updated = self._compare_and_swap(
                account,
                {
                    "credits": account.credits - 1,
                    "total_used": account.total_used + 1,
                    "last_used": now,
                    "last_updated": now,
                },
            )
            if updated is not None:
                return updated
            logger.debug("Stale balance for %s (attempt %d), retrying", key, attempt)
        raise LedgerConflict(key, self._max_attempts)

    def add_credits(self, key: str, amount: int, payment_id: str, starting_credits: int = 0) -> bool:
        # The purchase row is the idempotency guard: a duplicate insert is ignored.
        resp = self._request(
            "POST",
            f"/{self._purchases_table}",
            headers={"Prefer": "resolution=ignore-duplicates,return=representation"},
            params={"on_conflict": "payment_id"},
            json_body={
                "payment_id": payment_id,
                "key": key,
                "credits": amount,
                "created_at": utcnow().isoformat(),
            },
        )
        if not self._rows(resp):
            logger.info("Payment %s already applied, skipping", payment_id)
            return False

        self.get_or_create(key, starting_credits)
        for attempt in range(1, self._max_attempts + 1):
            account = self.get(key)
            now = utcnow().isoformat()
            updated = self._compare_and_swap(
                account,
                {
                    "credits": account.credits + amount,
                    "last_purchase": now,
                    "last_updated": now,
                },
            )
            if updated is not None:
                logger.info("Added %d credits to %s (payment %s)", amount, key, payment_id)
                return True
            logger.debug("Stale balance for %s (attempt %d), retrying top-up", key, attempt)
        raise LedgerConflict(key, self._max_attempts)


def supabase_ledger_from_env() -> Optional[SupabaseLedger]:
    url = os.environ.get("CLEANLEADS_SUPABASE_URL") or os.environ.get("SUPABASE_URL", "")
    key = os.environ.get("CLEANLEADS_SUPABASE_SERVICE_ROLE_KEY") or os.environ.get(
        "SUPABASE_SERVICE_ROLE_KEY",
        "",
    )
    table = os.environ.get("CLEANLEADS_SUPABASE_TABLE", "credit_accounts")
    purchases_table = os.environ.get("CLEANLEADS_SUPABASE_PURCHASES_TABLE", "credit_purchases")
    timeout_seconds = float(os.environ.get("CLEANLEADS_SUPABASE_TIMEOUT_SECONDS", "5.0"))
    if not url or not key:
        return None
    return SupabaseLedger(
        url,
        key,
        table=table,
        purchases_table=purchases_table,
        timeout_seconds=timeout_seconds,
    )
