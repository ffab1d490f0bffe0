"""cleanleads HTTP API: upload a CSV, get back only rows with verified emails.

Endpoints:
  GET    /health                    Health check
  GET    /ip                        Caller's network address
  GET    /credits                   Credit balance for the caller
  POST   /verify                    Verify one address (JSON body, 1 credit)
  POST   /clean                     Clean a CSV (raw body), returns CSV
  POST   /sessions                  Start cleaning in the background
  GET    /sessions/{id}             Progress of a background session
  GET    /sessions/{id}/result      Cleaned CSV, then the session is dropped
  DELETE /sessions/{id}             Stop starting new batches
  POST   /checkout                  Create a Stripe Checkout session
  POST   /webhook                   Stripe webhook (credits top-ups)
  GET    /metrics                   Operational metrics
"""

import asyncio
import logging
import os
import threading
import time
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

import payments
from engine.cleaner import clean_csv
from engine.credits import CreditGate
from engine.csv_io import CLEANED_FILENAME, write_csv
from engine.errors import (
    CleanLeadsError,
    InputShapeError,
    InsufficientCredit,
    LedgerError,
    SessionCancelled,
)
from engine.models import CleanResult, CreditPolicy, Identity, SessionStatus
from engine.oracle import OracleClient
from engine.session import SessionRegistry
from engine.syntax import normalize
from engine.verifier import DEFAULT_BATCH_DELAY_SECONDS, DEFAULT_BATCH_SIZE
from store.ledger import CreditLedger, ledger_from_env

logger = logging.getLogger("cleanleads.server")

VERSION = "0.1.0"

# Configuration from environment
API_KEY = os.environ.get("CLEANLEADS_API_KEY", "")
CREDIT_POLICY = CreditPolicy(os.environ.get("CLEANLEADS_CREDIT_POLICY", CreditPolicy.per_address.value))
MAX_UPLOAD_BYTES = int(os.environ.get("CLEANLEADS_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
BATCH_SIZE = DEFAULT_BATCH_SIZE
BATCH_DELAY_SECONDS = DEFAULT_BATCH_DELAY_SECONDS

app = FastAPI(
    title="cleanleads",
    description="Clean lead lists down to rows with verified emails",
    version=VERSION,
)


class MetricsRegistry:
    """In-memory operational metrics snapshot for the API process."""

    def __init__(self, max_samples: int = 2000):
        self._lock = threading.Lock()
        self._max_samples = max_samples
        self.request_count = 0
        self.status_counts: dict[int, int] = {}
        self.endpoint_counts: dict[str, int] = {}
        self.endpoint_latencies_ms: dict[str, list[float]] = {}
        self.oracle_outcomes: dict[str, int] = {}
        self.oracle_latencies_ms: list[float] = []
        self.fallback_verdicts = 0
        self.credits_consumed = 0
        self.session_outcomes: dict[str, int] = {}

    def _push_latency(self, sample: list[float], value: float) -> None:
        sample.append(value)
        if len(sample) > self._max_samples:
            sample.pop(0)

    def record_http(self, endpoint: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self.request_count += 1
            self.status_counts[status_code] = self.status_counts.get(status_code, 0) + 1
            self.endpoint_counts[endpoint] = self.endpoint_counts.get(endpoint, 0) + 1
            self._push_latency(self.endpoint_latencies_ms.setdefault(endpoint, []), latency_ms)

    def record_oracle_call(self, outcome: str, latency_ms: float) -> None:
        with self._lock:
            self.oracle_outcomes[outcome] = self.oracle_outcomes.get(outcome, 0) + 1
            self._push_latency(self.oracle_latencies_ms, latency_ms)

    def record_fallback(self) -> None:
        with self._lock:
            self.fallback_verdicts += 1

    def record_session(self, outcome: str, credits_consumed: int) -> None:
        with self._lock:
            self.session_outcomes[outcome] = self.session_outcomes.get(outcome, 0) + 1
            self.credits_consumed += credits_consumed

    @staticmethod
    def _percentile(values: list[float], percentile: float) -> float:
        if not values:
            return 0.0
        ordered = sorted(values)
        index = int((len(ordered) - 1) * percentile)
        return round(ordered[index], 2)

    def snapshot(self) -> dict:
        with self._lock:
            endpoint_latency = {
                endpoint: {
                    "count": self.endpoint_counts.get(endpoint, 0),
                    "p50": self._percentile(latencies, 0.50),
                    "p95": self._percentile(latencies, 0.95),
                }
                for endpoint, latencies in self.endpoint_latencies_ms.items()
            }
            return {
                "requests_total": self.request_count,
                "status_codes": {str(k): v for k, v in self.status_counts.items()},
                "endpoint_latency_ms": endpoint_latency,
                "oracle": {
                    "outcomes": dict(self.oracle_outcomes),
                    "p50_ms": self._percentile(self.oracle_latencies_ms, 0.50),
                    "p95_ms": self._percentile(self.oracle_latencies_ms, 0.95),
                    "fallback_verdicts": self.fallback_verdicts,
                },
                "credits_consumed": self.credits_consumed,
                "sessions": dict(self.session_outcomes),
            }


_METRICS = MetricsRegistry()
_SESSIONS = SessionRegistry()


async def _oracle_event_callback(event: dict) -> None:
    event_type = event.get("type")
    if event_type == "oracle_call":
        _METRICS.record_oracle_call(str(event.get("outcome")), float(event.get("latency_ms") or 0.0))
    elif event_type == "fallback":
        _METRICS.record_fallback()


def _oracle_client() -> OracleClient:
    return OracleClient(event_callback=_oracle_event_callback)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = (time.perf_counter() - started) * 1000
        _METRICS.record_http(request.url.path, 500, latency_ms)
        raise

    latency_ms = (time.perf_counter() - started) * 1000
    _METRICS.record_http(request.url.path, response.status_code, latency_ms)
    return response


# --- Ledger ---

_ledger: Optional[CreditLedger] = None
_ledger_lock = threading.Lock()


def _get_ledger() -> CreditLedger:
    """Create (lazily) the credit ledger backend selected by the environment."""
    global _ledger
    if _ledger is not None:
        return _ledger
    with _ledger_lock:
        if _ledger is None:
            _ledger = ledger_from_env()
            logger.info("Credit ledger backend: %s", _ledger.backend)
        return _ledger


def _get_gate() -> CreditGate:
    return CreditGate(_get_ledger())


# --- Errors ---

_REJECTED_PAYMENTS = (
    payments.WebhookSignatureError,
    payments.MissingUserId,
    payments.PriceMismatch,
    payments.MalformedEvent,
)


def _status_for(error: CleanLeadsError) -> int:
    if isinstance(error, InputShapeError):
        return 422
    if isinstance(error, InsufficientCredit):
        return 402
    if isinstance(error, SessionCancelled):
        return 409
    if isinstance(error, LedgerError):
        return 503
    if isinstance(error, _REJECTED_PAYMENTS):
        return 400
    return 500


@app.exception_handler(CleanLeadsError)
async def cleanleads_error_handler(request: Request, exc: CleanLeadsError):
    return JSONResponse(status_code=_status_for(exc), content=exc.to_dict())


# --- Auth and identity ---

def _presented_api_key(request: Request) -> str:
    key = request.headers.get("X-API-Key", "")
    if key:
        return key
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:]
    return ""


async def verify_api_key(request: Request):
    """Verify API key from X-API-Key or Authorization: Bearer header."""
    if not API_KEY:
        return  # No auth configured
    if _presented_api_key(request) != API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


def client_ip(request: Request) -> str:
    """Caller address from proxy headers, then the socket peer."""
    forwarded_for = request.headers.get("x-forwarded-for")
    ip = (
        request.headers.get("x-real-ip")
        or (forwarded_for.split(",")[0].strip() if forwarded_for else None)
        or request.headers.get("cf-connecting-ip")
        or (request.client.host if request.client else None)
        or "127.0.0.1"
    )
    return "127.0.0.1" if ip == "::1" else ip


def resolve_identity(request: Request) -> Identity:
    """Account identity when a trusted front end vouches for it, else the IP.

    ``X-Account-Id`` is only honoured together with the service API key;
    sign-in itself happens upstream.
    """
    account_id = request.headers.get("X-Account-Id", "").strip()
    if account_id and API_KEY and _presented_api_key(request) == API_KEY:
        return Identity.account(account_id)
    return Identity.ip(client_ip(request))


async def _read_upload(request: Request) -> bytes:
    data = await request.body()
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail=f"Upload exceeds {MAX_UPLOAD_BYTES} bytes")
    if not data.strip():
        raise HTTPException(status_code=400, detail="Please upload a CSV file")
    return data


async def _run_clean(
    data: bytes,
    identity: Identity,
    policy: CreditPolicy,
    *,
    progress_callback=None,
    on_candidates=None,
    cancel_event: Optional[asyncio.Event] = None,
) -> CleanResult:
    gate = _get_gate()
    try:
        async with _oracle_client() as client:
            result = await clean_csv(
                data,
                identity=identity,
                gate=gate,
                verify_fn=client.verify_or_fallback,
                policy=policy,
                progress_callback=progress_callback,
                on_candidates=on_candidates,
                batch_size=BATCH_SIZE,
                batch_delay_seconds=BATCH_DELAY_SECONDS,
                cancel_event=cancel_event,
            )
    except (InsufficientCredit, SessionCancelled) as e:
        _METRICS.record_session(e.code, e.credits_consumed)
        raise
    except CleanLeadsError as e:
        _METRICS.record_session(e.code, 0)
        raise
    _METRICS.record_session("ok", result.credits_consumed)
    return result


def _csv_response(result: CleanResult) -> Response:
    headers = {
        "Content-Disposition": f'attachment; filename="{CLEANED_FILENAME}"',
        "X-Credits-Consumed": str(result.credits_consumed),
        "X-Total-Emails": str(result.total_emails),
        "X-Verified-Emails": str(result.verified_emails),
    }
    if result.remaining_credits is not None:
        headers["X-Credits-Remaining"] = str(result.remaining_credits)
    return Response(content=write_csv(result.rows), media_type="text/csv", headers=headers)


# --- Request models ---

class SingleVerifyRequest(BaseModel):
    email: str


class CheckoutRequest(BaseModel):
    credits: int = payments.MIN_PURCHASE_CREDITS
    price_per_credit: Optional[float] = None
    user_id: str = ""


# --- Endpoints ---

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "cleanleads",
        "version": VERSION,
    }


@app.get("/ip")
async def ip_endpoint(request: Request):
    return {"ip": client_ip(request)}


@app.get("/credits")
async def credits_endpoint(request: Request):
    """Credit balance for the caller, creating the account on first contact."""
    identity = resolve_identity(request)
    balance = await asyncio.to_thread(_get_gate().check_balance, identity)
    return {"identity": identity.ledger_key, "credits": balance}


@app.post("/verify")
async def verify_single(request: Request, body: SingleVerifyRequest):
    """Verify one address for one credit."""
    email = normalize(body.email)
    if email is None:
        raise HTTPException(status_code=422, detail="Not a plausible email address")

    identity = resolve_identity(request)
    remaining = await asyncio.to_thread(_get_gate().consume_one, identity)
    async with _oracle_client() as client:
        verdict = await client.verify_or_fallback(email)
    _METRICS.record_session("single", 1)
    return {"result": verdict.to_public(), "credits": remaining}


@app.post("/clean")
async def clean_endpoint(request: Request, policy: Optional[CreditPolicy] = Query(None)):
    """Clean an uploaded CSV and return the filtered file."""
    data = await _read_upload(request)
    identity = resolve_identity(request)
    result = await _run_clean(data, identity, policy or CREDIT_POLICY)
    return _csv_response(result)


@app.post("/sessions", status_code=202)
async def start_session(request: Request, policy: Optional[CreditPolicy] = Query(None)):
    """Start cleaning in the background; poll for progress."""
    data = await _read_upload(request)
    identity = resolve_identity(request)
    chosen = policy or CREDIT_POLICY

    async def run(session):
        return await _run_clean(
            data,
            identity,
            chosen,
            progress_callback=session.on_progress,
            on_candidates=session.on_candidates,
            cancel_event=session.cancel_event,
        )

    session = _SESSIONS.start(identity.ledger_key, run)
    return {"session_id": session.session_id}


def _owned_session(request: Request, session_id: str):
    session = _SESSIONS.get(session_id, resolve_identity(request).ledger_key)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.get("/sessions/{session_id}")
async def session_status(request: Request, session_id: str):
    return _owned_session(request, session_id).snapshot().model_dump()


@app.get("/sessions/{session_id}/result")
async def session_result(request: Request, session_id: str):
    """Hand out the cleaned CSV once; the session is discarded afterwards."""
    session = _owned_session(request, session_id)
    if session.status in (SessionStatus.pending, SessionStatus.running):
        return JSONResponse(status_code=409, content=session.snapshot().model_dump())

    _SESSIONS.pop(session_id, session.owner)
    if session.error is not None:
        return JSONResponse(status_code=_status_for(session.error), content=session.error.to_dict())
    return _csv_response(session.result)


@app.delete("/sessions/{session_id}", status_code=202)
async def cancel_session(request: Request, session_id: str):
    session = _owned_session(request, session_id)
    _SESSIONS.cancel(session_id, session.owner)
    return session.snapshot().model_dump()


@app.post("/checkout")
async def checkout(request: Request, body: CheckoutRequest):
    origin = request.headers.get("origin") or str(request.base_url).rstrip("/")
    session_id = await asyncio.to_thread(
        payments.create_checkout_session,
        credits=body.credits,
        user_id=body.user_id,
        origin=origin,
        referer=request.headers.get("referer"),
        price_per_credit=payments.PRICE_PER_CREDIT,
        quoted_price=body.price_per_credit,
        api_key=payments.STRIPE_SECRET_KEY,
    )
    return {"id": session_id}


@app.post("/webhook")
async def stripe_webhook(request: Request):
    payload = await request.body()
    return await asyncio.to_thread(
        payments.handle_webhook,
        payload,
        request.headers.get("stripe-signature"),
        _get_gate(),
        secret=payments.STRIPE_WEBHOOK_SECRET,
    )


@app.get("/metrics", dependencies=[Depends(verify_api_key)])
async def metrics_endpoint():
    """Operational metrics snapshot for requests, oracle calls and credits."""
    return _METRICS.snapshot()
