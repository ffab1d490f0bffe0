"""Batch verification orchestrator.

Addresses are split into fixed-size batches. Each batch fans out
concurrently and is joined before the next one starts, with a fixed pause
in between so the oracle gets recovery time. Progress is reported after
every batch.

An optional gate is consulted immediately before each address's oracle
call (the credit check). The first refusal halts the session: addresses
already past the gate still complete, nothing new is submitted, and no
further batches start.
"""

import asyncio
import inspect
import logging
import os
from typing import Awaitable, Callable, Optional, Sequence

from .models import BatchOutcome, VerificationVerdict

logger = logging.getLogger("cleanleads.verifier")

DEFAULT_BATCH_SIZE = int(os.environ.get("CLEANLEADS_BATCH_SIZE", "10"))
DEFAULT_BATCH_DELAY_SECONDS = float(os.environ.get("CLEANLEADS_BATCH_DELAY_SECONDS", "0.5"))

VerifyFn = Callable[[str], Awaitable[VerificationVerdict]]


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


def progress_percent(processed: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return min(100.0, 100.0 * processed / total)


def chunk(items: Sequence[str], size: int) -> list[list[str]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


async def verify_batch(
    emails: Sequence[str],
    verify_fn: VerifyFn,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    batch_delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
    progress_callback=None,
    gate=None,
    sequential: bool = False,
    cancel_event: Optional[asyncio.Event] = None,
    sleep=asyncio.sleep,
) -> BatchOutcome:
    """Verify unique addresses in batches.

    Args:
        emails: Candidate addresses. Duplicates are verified once.
        verify_fn: Coroutine returning a verdict for one address. Should not
            raise; if it does the address gets a failed verdict.
        batch_size: Addresses in flight at once.
        batch_delay_seconds: Pause between batches.
        progress_callback: Optional callable(percent) invoked after each
            batch, sync or async.
        gate: Optional callable(email) -> bool invoked right before each
            oracle call. False halts the session.
        sequential: Process each batch one address at a time, so every gate
            decision is made with the previous call already finished.
        cancel_event: When set, no further batch is started.

    Returns:
        BatchOutcome with a verdict per processed address, keyed by address.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    unique = list(dict.fromkeys(emails))
    total = len(unique)
    outcome = BatchOutcome()

    if total == 0:
        if progress_callback:
            await _maybe_await(progress_callback(100.0))
        return outcome

    batches = chunk(unique, batch_size)
    halted = False

    async def _verify_one(email: str) -> None:
        nonlocal halted
        if gate is not None:
            if halted:
                outcome.skipped.append(email)
                return
            allowed = await _maybe_await(gate(email))
            if not allowed:
                halted = True
                outcome.skipped.append(email)
                return

        outcome.calls_issued += 1
        try:
            verdict = await verify_fn(email)
        except Exception:
            logger.exception("Verification failed for %s", email)
            verdict = VerificationVerdict.failed(email, "internal verification error")
        outcome.verdicts[email] = verdict

    for batch_num, batch in enumerate(batches, start=1):
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Cancelled before batch %d/%d", batch_num, len(batches))
            outcome.cancelled = True
            for remaining in batches[batch_num - 1 :]:
                outcome.skipped.extend(remaining)
            break

        if sequential:
            for email in batch:
                await _verify_one(email)
        else:
            results = await asyncio.gather(
                *[_verify_one(email) for email in batch],
                return_exceptions=True,
            )
            # Only the gate can raise here; surface it after the batch has joined.
            errors = [r for r in results if isinstance(r, BaseException)]
            if errors:
                raise errors[0]

        outcome.batches += 1
        processed = len(outcome.verdicts)
        logger.debug(
            "Batch %d/%d done: %d/%d verified so far",
            batch_num, len(batches), processed, total,
        )
        if progress_callback:
            await _maybe_await(progress_callback(progress_percent(processed, total)))

        if halted:
            outcome.halted = True
            for remaining in batches[batch_num:]:
                outcome.skipped.extend(remaining)
            logger.info(
                "Halted after batch %d/%d: %d verified, %d not submitted",
                batch_num, len(batches), processed, len(outcome.skipped),
            )
            break

        if batch_num < len(batches) and batch_delay_seconds > 0:
            await sleep(batch_delay_seconds)

    return outcome
