"""Plausibility check for candidate email addresses.

This is a cheap local filter deciding what is worth sending to the oracle,
not a full RFC 5322 validator: something, an @, something, a dot,
something, with no whitespace and no second @ anywhere.
"""

import re
from typing import Optional

_PLAUSIBLE_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_plausible(value: str) -> bool:
    """Return True when the trimmed value looks like an email address."""
    if not value:
        return False
    return bool(_PLAUSIBLE_RE.match(value.strip()))


def normalize(value: Optional[str]) -> Optional[str]:
    """Trim and lower-case a cell; None when it is not a plausible address."""
    if value is None:
        return None
    value = value.strip()
    if not is_plausible(value):
        return None
    return value.lower()
