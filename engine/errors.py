"""Error taxonomy for list cleaning.

Input-shape errors and credit exhaustion halt a processing session and are
reported to the caller. Oracle errors are per-address: the batch verifier
turns them into a failed verdict and carries on with the other addresses.
"""

from typing import Optional


class CleanLeadsError(Exception):
    """Base class for every error raised by the cleaning engine."""

    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


# --- Input shape ---

class InputShapeError(CleanLeadsError):
    """The uploaded file cannot produce a cleaned list."""


class NoEmailColumn(InputShapeError):
    code = "no_email_column"

    def __init__(self, message: str = 'No email column found. Column header must contain "email"'):
        super().__init__(message)


class EmptyInput(InputShapeError):
    code = "empty_input"

    def __init__(self, message: str = "CSV file is empty"):
        super().__init__(message)


class NoValidRows(InputShapeError):
    code = "no_valid_rows"

    def __init__(self, message: str = "No valid emails found in the file"):
        super().__init__(message)


# --- Credits ---

class InsufficientCredit(CleanLeadsError):
    """The identity cannot pay for the next address.

    ``verdicts`` holds whatever was verified before the session halted.
    """

    code = "insufficient_credit"

    def __init__(
        self,
        identity: str,
        *,
        required: int = 1,
        available: int = 0,
        verdicts: Optional[dict] = None,
        credits_consumed: int = 0,
    ):
        super().__init__("No credits remaining. Please sign in to get more credits.")
        self.identity = identity
        self.required = required
        self.available = available
        self.verdicts = dict(verdicts or {})
        self.credits_consumed = credits_consumed

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload.update(
            {
                "required": self.required,
                "available": self.available,
                "credits_consumed": self.credits_consumed,
                "verified_before_halt": sum(1 for v in self.verdicts.values() if v.verified),
            }
        )
        return payload


class SessionCancelled(CleanLeadsError):
    """A higher layer stopped the session between batches."""

    code = "cancelled"

    def __init__(self, message: str = "Processing was cancelled", *, credits_consumed: int = 0):
        super().__init__(message)
        self.credits_consumed = credits_consumed

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["credits_consumed"] = self.credits_consumed
        return payload


# --- Oracle (per address) ---

class OracleError(CleanLeadsError):
    """The oracle did not produce a verdict for one address."""

    code = "oracle_error"

    def __init__(self, email: str, message: str):
        super().__init__(message)
        self.email = email


class RateLimited(OracleError):
    code = "rate_limited"

    def __init__(self, email: str, attempts: int):
        super().__init__(email, f"rate limited after {attempts} attempts")
        self.attempts = attempts


class VerificationTimeout(OracleError):
    code = "timeout"

    def __init__(self, email: str, timeout_seconds: float):
        super().__init__(email, f"verification timeout after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class VerificationTransportFailure(OracleError):
    code = "transport_error"

    def __init__(self, email: str, message: str, status_code: Optional[int] = None):
        super().__init__(email, message)
        self.status_code = status_code


# --- Ledger ---

class LedgerError(CleanLeadsError):
    """The credit ledger backend failed."""

    code = "ledger_error"


class LedgerConflict(LedgerError):
    """Compare-and-swap retries were exhausted for one ledger document."""

    code = "ledger_conflict"

    def __init__(self, key: str, attempts: int):
        super().__init__(f"ledger update for {key} conflicted {attempts} times")
        self.key = key
        self.attempts = attempts
