"""Credit gate: one credit per address actually submitted to the oracle.

The gate sits between the cleaner and the ledger. It picks the starting
balance for an identity on first contact and turns ledger refusals into
InsufficientCredit. All mutation goes through the ledger's atomic
operations, so concurrent sessions for the same identity can neither
overdraw nor double-spend.

Two policies are offered to callers:

- per_address: consume right before each oracle call, halt at the first
  refusal. This is the correctness baseline.
- preflight: additionally compare the candidate count with the balance up
  front and reject the whole session early. The per-address consumption
  still runs during verification, because the balance can move between
  the check and the work.
"""

import logging
import os

from store.ledger import CreditLedger

from .errors import InsufficientCredit
from .models import CreditAccount, Identity, IdentityKind

logger = logging.getLogger("cleanleads.credits")

ACCOUNT_STARTING_CREDITS = int(os.environ.get("CLEANLEADS_ACCOUNT_STARTING_CREDITS", "3"))
IP_STARTING_CREDITS = int(os.environ.get("CLEANLEADS_IP_STARTING_CREDITS", "1"))


class CreditGate:
    def __init__(
        self,
        ledger: CreditLedger,
        *,
        account_starting_credits: int = ACCOUNT_STARTING_CREDITS,
        ip_starting_credits: int = IP_STARTING_CREDITS,
    ):
        self.ledger = ledger
        self.account_starting_credits = account_starting_credits
        self.ip_starting_credits = ip_starting_credits

    def starting_balance(self, identity: Identity) -> int:
        if identity.kind == IdentityKind.account:
            return self.account_starting_credits
        return self.ip_starting_credits

    def account(self, identity: Identity) -> CreditAccount:
        """Ledger document for ``identity``, created on first contact."""
        return self.ledger.get_or_create(identity.ledger_key, self.starting_balance(identity))

    def check_balance(self, identity: Identity) -> int:
        return self.account(identity).credits

    def try_consume(self, identity: Identity) -> bool:
        """Spend one credit if there is one. Never raises for an empty balance."""
        self.account(identity)
        updated = self.ledger.consume_one(identity.ledger_key)
        if updated is None:
            logger.info("No credits left for %s", identity)
            return False
        logger.debug("Consumed 1 credit for %s, %d left", identity, updated.credits)
        return True

    def consume_one(self, identity: Identity) -> int:
        """Spend one credit. Returns the remaining balance.

        Raises:
            InsufficientCredit: the balance is zero; nothing changed.
        """
        self.account(identity)
        updated = self.ledger.consume_one(identity.ledger_key)
        if updated is None:
            raise InsufficientCredit(str(identity), required=1, available=0)
        return updated.credits

    def preflight(self, identity: Identity, required: int) -> int:
        """Reject up front when the balance cannot cover ``required`` addresses.

        Returns the balance observed. This is advisory only; callers must
        still consume per address.
        """
        balance = self.check_balance(identity)
        if balance < required:
            logger.info("Preflight rejected %s: needs %d, has %d", identity, required, balance)
            raise InsufficientCredit(str(identity), required=required, available=balance)
        return balance

    def add_credits(self, identity: Identity, amount: int, payment_id: str) -> bool:
        """Top up ``identity``; False when ``payment_id`` was already applied."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        return self.ledger.add_credits(
            identity.ledger_key,
            amount,
            payment_id,
            starting_credits=self.starting_balance(identity),
        )
