"""Data models for the cleanleads list-cleaning engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class IdentityKind(str, Enum):
    """Who a credit balance belongs to."""
    account = "account"
    ip = "ip"


class CreditPolicy(str, Enum):
    """When credits are checked against the candidate set."""
    per_address = "per_address"
    preflight = "preflight"


class SessionStatus(str, Enum):
    pending = "pending"
    running = "running"
    done = "done"
    failed = "failed"


class Identity(BaseModel):
    """Ledger identity: an authenticated account id or a network address."""
    model_config = ConfigDict(frozen=True)

    kind: IdentityKind
    value: str

    @classmethod
    def account(cls, account_id: str) -> "Identity":
        return cls(kind=IdentityKind.account, value=account_id)

    @classmethod
    def ip(cls, address: str) -> "Identity":
        return cls(kind=IdentityKind.ip, value=address)

    @property
    def collection(self) -> str:
        return "users" if self.kind == IdentityKind.account else "ip_credits"

    @property
    def ledger_key(self) -> str:
        return f"{self.collection}/{self.value}"

    def __str__(self) -> str:
        return self.ledger_key


class VerificationVerdict(BaseModel):
    """One oracle judgement for one candidate address.

    ``verified`` is authoritative; the other flags are diagnostic detail
    reported by the remote oracle.
    """
    model_config = ConfigDict(populate_by_name=True)

    email: str
    syntax: bool = False
    disposable: bool = False
    mx_record: bool = Field(default=False, alias="mxRecord")
    smtp: bool = False
    verified: bool = False
    error: Optional[str] = None

    @classmethod
    def failed(cls, email: str, error: str) -> "VerificationVerdict":
        """Conservative verdict used when the oracle could not answer."""
        return cls(
            email=email,
            syntax=False,
            disposable=True,
            mx_record=False,
            smtp=False,
            verified=False,
            error=error,
        )

    def to_public(self) -> dict:
        """Oracle-shaped dict (camelCase keys) for API responses."""
        payload = self.model_dump(by_alias=True)
        if payload.get("error") is None:
            payload.pop("error", None)
        return payload


class CreditAccount(BaseModel):
    """Ledger document for one identity."""
    key: str
    credits: int = 0
    total_used: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_used: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    last_purchase: Optional[datetime] = None


class ExtractionResult(BaseModel):
    """Email columns found in a header and the unique candidates under them."""
    header: list[str]
    email_columns: list[int]
    candidates: list[str] = Field(default_factory=list)
    rejected: int = 0


class BatchOutcome(BaseModel):
    """Result of running candidate addresses through the batch verifier."""
    verdicts: dict[str, VerificationVerdict] = Field(default_factory=dict)
    calls_issued: int = 0
    batches: int = 0
    halted: bool = False
    cancelled: bool = False
    skipped: list[str] = Field(default_factory=list)

    @property
    def verified_count(self) -> int:
        return sum(1 for v in self.verdicts.values() if v.verified)


class CleanResult(BaseModel):
    """Output of one completed processing session."""
    rows: list[list[str]]
    email_columns: list[int]
    total_emails: int
    verified_emails: int
    credits_consumed: int
    remaining_credits: Optional[int] = None


class SessionSnapshot(BaseModel):
    """Progress view of an in-flight processing session."""
    session_id: str
    status: SessionStatus = SessionStatus.pending
    progress: float = 0.0
    total_emails: int = 0
    verified_emails: int = 0
    credits_consumed: int = 0
    error: Optional[str] = None
    detail: Optional[str] = None
