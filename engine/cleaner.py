"""Processing session: rows -> candidates -> credits -> oracle -> filtered rows."""

import asyncio
import logging
from typing import Optional, Sequence

from .credits import CreditGate
from .csv_io import parse_csv
from .errors import InsufficientCredit, SessionCancelled
from .extractor import extract_candidates
from .models import CleanResult, CreditPolicy, Identity
from .oracle import OracleClient
from .result_filter import filter_rows
from .verifier import (
    DEFAULT_BATCH_DELAY_SECONDS,
    DEFAULT_BATCH_SIZE,
    VerifyFn,
    verify_batch,
)

logger = logging.getLogger("cleanleads.cleaner")


async def clean_rows(
    header: Sequence[str],
    rows: Sequence[Sequence[str]],
    *,
    identity: Identity,
    gate: CreditGate,
    verify_fn: Optional[VerifyFn] = None,
    policy: CreditPolicy = CreditPolicy.per_address,
    progress_callback=None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    batch_delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
    sequential: bool = False,
    cancel_event: Optional[asyncio.Event] = None,
    on_candidates=None,
) -> CleanResult:
    """Run one processing session over already-parsed rows.

    Args:
        header: Header row.
        rows: Data rows.
        identity: Whose credits pay for the session.
        gate: Credit gate over the shared ledger.
        verify_fn: Verdict coroutine per address. Defaults to a fresh
            OracleClient's ``verify_or_fallback``.
        policy: per_address or preflight (see engine.credits).
        progress_callback: callable(percent) after each batch.
        on_candidates: callable(count) once the candidate set is known.

    Raises:
        EmptyInput, NoEmailColumn, NoValidRows: input shape problems.
        InsufficientCredit: credits ran out; carries the partial verdicts.
        SessionCancelled: ``cancel_event`` was set mid-session.
    """
    extraction = extract_candidates(header, rows)
    candidates = extraction.candidates
    if on_candidates:
        on_candidates(len(candidates))

    if policy == CreditPolicy.preflight:
        await asyncio.to_thread(gate.preflight, identity, len(candidates))

    consumed = 0

    async def pay(email: str) -> bool:
        nonlocal consumed
        allowed = await asyncio.to_thread(gate.try_consume, identity)
        if allowed:
            consumed += 1
        return allowed

    async def run(fn: VerifyFn):
        return await verify_batch(
            candidates,
            fn,
            batch_size=batch_size,
            batch_delay_seconds=batch_delay_seconds,
            progress_callback=progress_callback,
            gate=pay,
            sequential=sequential,
            cancel_event=cancel_event,
        )

    if verify_fn is None:
        async with OracleClient() as client:
            outcome = await run(client.verify_or_fallback)
    else:
        outcome = await run(verify_fn)

    if outcome.halted:
        available = await asyncio.to_thread(gate.check_balance, identity)
        logger.info(
            "Session for %s halted: %d verified, %d unpaid",
            identity, len(outcome.verdicts), len(outcome.skipped),
        )
        raise InsufficientCredit(
            str(identity),
            required=len(outcome.skipped),
            available=available,
            verdicts=outcome.verdicts,
            credits_consumed=consumed,
        )
    if outcome.cancelled:
        raise SessionCancelled(credits_consumed=consumed)

    cleaned = filter_rows(extraction.header, rows, extraction.email_columns, outcome.verdicts)
    remaining = await asyncio.to_thread(gate.check_balance, identity)
    logger.info(
        "Cleaned %d -> %d rows for %s (%d/%d emails verified, %d credits)",
        len(rows), len(cleaned) - 1, identity, outcome.verified_count, len(candidates), consumed,
    )
    return CleanResult(
        rows=cleaned,
        email_columns=extraction.email_columns,
        total_emails=len(candidates),
        verified_emails=outcome.verified_count,
        credits_consumed=consumed,
        remaining_credits=remaining,
    )


async def clean_csv(data: bytes, **kwargs) -> CleanResult:
    """Parse CSV bytes and run :func:`clean_rows` over them."""
    header, rows = parse_csv(data)
    return await clean_rows(header, rows, **kwargs)
