"""Find email columns in tabular rows and collect unique candidate addresses."""

import logging
from typing import Sequence

from .errors import EmptyInput, NoEmailColumn
from .models import ExtractionResult
from .syntax import normalize

logger = logging.getLogger("cleanleads.extractor")

EMAIL_HEADER_MARKER = "email"


def find_email_columns(header: Sequence[str]) -> list[int]:
    """Indexes of every header whose text contains "email", any case."""
    return [
        idx for idx, name in enumerate(header)
        if EMAIL_HEADER_MARKER in (name or "").lower()
    ]


def cell(row: Sequence[str], index: int) -> str:
    """Row value at ``index``, or "" for short rows."""
    if index >= len(row):
        return ""
    return row[index] or ""


def extract_candidates(header: Sequence[str], rows: Sequence[Sequence[str]]) -> ExtractionResult:
    """Collect the deduplicated, lower-cased candidate addresses.

    Args:
        header: The header row.
        rows: Data rows, header excluded.

    Returns:
        ExtractionResult with the email column indexes and candidates in
        first-seen order.

    Raises:
        EmptyInput: no data rows.
        NoEmailColumn: no header mentions "email".
    """
    if not header or not rows:
        raise EmptyInput()

    columns = find_email_columns(header)
    if not columns:
        raise NoEmailColumn()

    # dict keeps first-seen order while collapsing duplicates
    seen: dict[str, None] = {}
    rejected = 0
    for row in rows:
        for idx in columns:
            raw = cell(row, idx).strip()
            if not raw:
                continue
            address = normalize(raw)
            if address is None:
                rejected += 1
                continue
            seen.setdefault(address, None)

    logger.info(
        "Extracted %d unique candidates from %d rows (%d columns, %d rejected)",
        len(seen), len(rows), len(columns), rejected,
    )
    return ExtractionResult(
        header=list(header),
        email_columns=columns,
        candidates=list(seen),
        rejected=rejected,
    )
