"""Field coercion rules for legacy export ingestion.

All functions accept str | None and return the appropriate type or None.
Nothing here touches configuration or the database.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

_SENTINEL_TS = "0000-00-00 00:00:00"

# Tried in order after ISO-8601, keyed by slash-date field order.
_TS_FORMATS = {
    "mdy": (
        "%m/%d/%Y %H:%M:%S",
        "%m/%d/%Y %H:%M",
        "%m/%d/%Y",
        "%b %d, %Y",
        "%d %b %Y",
    ),
    "dmy": (
        "%d/%m/%Y %H:%M:%S",
        "%d/%m/%Y %H:%M",
        "%d/%m/%Y",
        "%b %d, %Y",
        "%d %b %Y",
    ),
}

# fromisoformat on 3.10 only takes 3- or 6-digit fractions and +HH:MM offsets.
_ISO_FRACTION_RE = re.compile(r"(T|\s)(\d{2}:\d{2}:\d{2})\.(\d+)")
_ISO_SHORT_OFFSET_RE = re.compile(r"(\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?)([+-]\d{2})(\d{2})?$")

_TRUE_WORDS = frozenset({"true", "t", "yes", "y", "1", "on"})
_FALSE_WORDS = frozenset({"false", "f", "no", "n", "0", "off"})

DATE_POLICIES = ("null", "error")
DATE_ORDERS = ("mdy", "dmy")


class UnparseableDateError(ValueError):
    """Raised by parse_timestamp under the 'error' date policy."""


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: parse_timestamp
# ---------------------------------------------------------------------------

def _normalize_iso(v: str) -> str:
    """Rewrite ISO-8601 variants into the subset fromisoformat accepts.

    'Z' becomes '+00:00', fractions are padded/truncated to 6 digits and
    '+HH' / '+HHMM' offsets become '+HH:MM'.
    """
    iso = v[:-1] + "+00:00" if v.endswith(("Z", "z")) else v
    iso = _ISO_FRACTION_RE.sub(
        lambda m: f"{m.group(1)}{m.group(2)}.{(m.group(3) + '000000')[:6]}", iso, count=1
    )
    return _ISO_SHORT_OFFSET_RE.sub(
        lambda m: f"{m.group(1)}{m.group(2)}:{m.group(3) or '00'}", iso, count=1
    )


def parse_timestamp(
    value: str | None,
    policy: str = "null",
    date_order: str = "mdy",
) -> datetime | None:
    """Parse a free-text date/time into an aware datetime.

    Accepts ISO-8601 (trailing 'Z', any fraction length, '+HH' offsets),
    slash dates 'MM/DD/YYYY[ HH:MM[:SS]]' ('DD/MM/YYYY' with
    date_order='dmy'), 'Mon DD, YYYY' and 'DD Mon YYYY'.
    Naive values are taken as UTC.  The MySQL zero sentinel and blanks
    return None.

    Under policy='null' an unparseable value returns None; under
    policy='error' it raises UnparseableDateError.
    """
    v = trim(value)
    if v is None or v == _SENTINEL_TS:
        return None

    parsed: datetime | None = None
    try:
        parsed = datetime.fromisoformat(_normalize_iso(v))
    except ValueError:
        for fmt in _TS_FORMATS[date_order]:
            try:
                parsed = datetime.strptime(v, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        if policy == "error":
            raise UnparseableDateError(f"unparseable date: {v!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Rule 3: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: str | None) -> Decimal | None:
    """Parse a decimal number, tolerating a leading '$' and thousands commas.

    Returns None on failure and for NaN/Infinity.
    """
    v = trim(value)
    if v is None:
        return None
    v = re.sub(r"[$,\s]", "", v)
    try:
        d = Decimal(v)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


# ---------------------------------------------------------------------------
# Rule 4: parse_bool
# ---------------------------------------------------------------------------

def parse_bool(value: str | None) -> bool | None:
    """Map common flag spellings to True/False; anything else → None."""
    v = trim(value)
    if v is None:
        return None
    word = v.lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    return None
