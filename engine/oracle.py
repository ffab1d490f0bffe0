"""HTTP client for the remote verification oracle.

One POST per address to ``<base>/verify`` with body ``{"email": ...}``.
The oracle answers ``{"result": {email, syntax, disposable, mxRecord,
smtp, verified}}``; 429 means slow down, any other non-2xx is a failure.

``verify`` raises the per-address OracleError subclasses. ``verify_or_fallback``
never raises for oracle trouble and returns the conservative failed verdict
instead, which is what the batch verifier uses.
"""

import asyncio
import inspect
import logging
import os
import time
from typing import Optional

import aiohttp

from .errors import (
    OracleError,
    RateLimited,
    VerificationTimeout,
    VerificationTransportFailure,
)
from .models import VerificationVerdict

logger = logging.getLogger("cleanleads.oracle")

ORACLE_URL = os.environ.get(
    "CLEANLEADS_ORACLE_URL",
    "https://trgiqyj4m6.execute-api.us-east-1.amazonaws.com/dev",
)
ORACLE_ENDPOINT = "/verify"
ORACLE_TIMEOUT_SECONDS = float(os.environ.get("CLEANLEADS_ORACLE_TIMEOUT_SECONDS", "10"))
ORACLE_MAX_RETRIES = int(os.environ.get("CLEANLEADS_ORACLE_MAX_RETRIES", "3"))
ORACLE_RETRY_DELAY_SECONDS = float(os.environ.get("CLEANLEADS_ORACLE_RETRY_DELAY_SECONDS", "2"))


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


async def _emit_event(event_callback, event: dict) -> None:
    if not event_callback:
        return
    try:
        await _maybe_await(event_callback(event))
    except Exception as e:
        logger.debug("Event callback failed: %s", e)


def parse_verdict(email: str, payload) -> VerificationVerdict:
    """Build a verdict from an oracle response body.

    The verdict is keyed by the address we submitted, not the one echoed
    back, so callers can re-associate by address.
    """
    result = payload.get("result") if isinstance(payload, dict) else None
    if not isinstance(result, dict):
        raise VerificationTransportFailure(email, "malformed oracle response: missing result")
    return VerificationVerdict(
        email=email,
        syntax=bool(result.get("syntax")),
        disposable=bool(result.get("disposable")),
        mx_record=bool(result.get("mxRecord")),
        smtp=bool(result.get("smtp")),
        verified=bool(result.get("verified")),
    )


class OracleClient:
    """Async client for the verification oracle.

    Use as an async context manager, or pass in an existing
    ``aiohttp.ClientSession`` which the client will not close.
    """

    def __init__(
        self,
        base_url: str = ORACLE_URL,
        *,
        timeout_seconds: float = ORACLE_TIMEOUT_SECONDS,
        max_retries: int = ORACLE_MAX_RETRIES,
        retry_delay_seconds: float = ORACLE_RETRY_DELAY_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
        event_callback=None,
        sleep=asyncio.sleep,
    ):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._url = base_url.rstrip("/") + ORACLE_ENDPOINT
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, max_retries)
        self.retry_delay_seconds = max(0.0, retry_delay_seconds)
        self._session = session
        self._owns_session = session is None
        self._event_callback = event_callback
        self._sleep = sleep

    @property
    def url(self) -> str:
        return self._url

    async def __aenter__(self) -> "OracleClient":
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("OracleClient used outside 'async with' and without a session")
        return self._session

    async def _post_once(self, email: str) -> Optional[VerificationVerdict]:
        """One request. Returns None when the oracle rate-limited us."""
        session = self._require_session()
        try:
            async with session.post(
                self._url,
                json={"email": email},
                headers={"Content-Type": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as resp:
                if resp.status == 429:
                    return None
                if not (200 <= resp.status < 300):
                    text = await resp.text()
                    raise VerificationTransportFailure(
                        email,
                        f"oracle returned {resp.status}: {text[:200]}",
                        status_code=resp.status,
                    )
                try:
                    payload = await resp.json(content_type=None)
                except ValueError as e:
                    raise VerificationTransportFailure(email, f"invalid JSON from oracle: {e}") from e
        # ServerTimeoutError is also a ClientError, so timeouts go first
        except asyncio.TimeoutError as e:
            raise VerificationTimeout(email, self.timeout_seconds) from e
        except aiohttp.ClientError as e:
            raise VerificationTransportFailure(email, f"transport error: {e}") from e
        return parse_verdict(email, payload)

    async def verify(self, email: str) -> VerificationVerdict:
        """Verify one address, retrying only on rate limiting.

        Raises:
            RateLimited: 429 on the first try and on every retry.
            VerificationTimeout: one attempt exceeded ``timeout_seconds``.
            VerificationTransportFailure: any other failure.
        """
        started = time.perf_counter()
        attempts = 0
        outcome = "aborted"
        try:
            while True:
                attempts += 1
                verdict = await self._post_once(email)
                if verdict is not None:
                    outcome = "ok"
                    return verdict
                if attempts > self.max_retries:
                    raise RateLimited(email, attempts)
                logger.debug(
                    "Rate limited verifying %s (attempt %d), retrying in %.1fs",
                    email, attempts, self.retry_delay_seconds,
                )
                await self._sleep(self.retry_delay_seconds)
        except OracleError as e:
            outcome = e.code
            raise
        finally:
            await _emit_event(
                self._event_callback,
                {
                    "type": "oracle_call",
                    "email": email,
                    "outcome": outcome,
                    "attempts": attempts,
                    "latency_ms": (time.perf_counter() - started) * 1000,
                },
            )

    async def verify_or_fallback(self, email: str) -> VerificationVerdict:
        """Verify one address; oracle failures become a failed verdict."""
        try:
            return await self.verify(email)
        except OracleError as e:
            logger.warning("Verification failed for %s (%s): %s", email, e.code, e.message)
            await _emit_event(self._event_callback, {"type": "fallback", "email": email, "reason": e.code})
            return VerificationVerdict.failed(email, e.code)
