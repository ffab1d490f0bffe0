"""Keep the rows that carry at least one verified email."""

from typing import Mapping, Sequence

from .errors import NoValidRows
from .extractor import cell
from .models import VerificationVerdict


def filter_rows(
    header: Sequence[str],
    rows: Sequence[Sequence[str]],
    email_columns: Sequence[int],
    verdicts: Mapping[str, VerificationVerdict],
) -> list[list[str]]:
    """Return header + qualifying rows in their original order.

    A row qualifies when any of its email cells, trimmed and lower-cased,
    maps to a verdict with ``verified`` set.

    Raises:
        NoValidRows: when no data row qualifies.
    """
    verified = {address for address, verdict in verdicts.items() if verdict.verified}

    kept = [
        list(row) for row in rows
        if any(cell(row, idx).strip().lower() in verified for idx in email_columns)
    ]
    if not kept:
        raise NoValidRows()
    return [list(header)] + kept
