"""practice_etl.mapper

Map a parsed Record onto a target table's column shape.

Column policy, after the entity's rename/drop rules and explicit
column_types overrides, by column-name pattern in precedence order:

  1. date-like        → parse_timestamp
  2. id-like (not pk) → opaque reference string, passed through unchanged
  3. numeric-like     → Decimal
  4. boolean flag     → bool
  5. anything else    → trimmed string

Blank values, and values whose coercion yields None, are left out of the
row so that the table's column defaults apply.  Every row gets a primary
key (uuid4 when the source has none) and both timestamp columns.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

from practice_etl.config import EntityConfig
from practice_etl.delimited import Record, decode_literal
from practice_etl.normalize import (
    UnparseableDateError,
    parse_bool,
    parse_numeric,
    parse_timestamp,
    trim,
)
from practice_etl.shared import EntityReport

log = logging.getLogger(__name__)

MappedRow = Mapping[str, Any]

_DATE_TOKENS = frozenset({"date", "dates", "time", "timestamp", "datetime"})
_DATE_SUFFIXES = frozenset({"at", "on"})
_NUMERIC_TOKENS = frozenset({
    "amount", "rate", "hours", "minutes", "fee", "fees", "cost", "price",
    "budget", "total", "percentage", "probability",
})
_FLAG_PREFIXES = frozenset({"is", "has", "can", "should"})
_FLAG_SUFFIXES = frozenset({"flag", "enabled", "applied"})
_FLAG_NAMES = frozenset({"billable", "active", "archived"})


def _tokens(column: str) -> list[str]:
    return [t for t in re.split(r"[^a-z0-9]+", column.lower()) if t]


# ---------------------------------------------------------------------------
# Column classification
# ---------------------------------------------------------------------------

def classify_column(column: str, primary_key: str = "id") -> str:
    """Return the coercion kind for a target column name.

    One of 'primary_key', 'date', 'reference', 'number', 'boolean', 'string'.
    """
    if column == primary_key:
        return "primary_key"
    tokens = _tokens(column)
    if not tokens:
        return "string"
    if (
        tokens[-1] in _DATE_TOKENS
        or tokens[0] == "date"
        or (len(tokens) > 1 and tokens[-1] in _DATE_SUFFIXES)
    ):
        return "date"
    if tokens[-1] in ("id", "ids"):
        return "reference"
    if any(t in _NUMERIC_TOKENS for t in tokens):
        return "number"
    if (
        (len(tokens) > 1 and tokens[0] in _FLAG_PREFIXES)
        or (len(tokens) > 1 and tokens[-1] in _FLAG_SUFFIXES)
        or column.lower() in _FLAG_NAMES
    ):
        return "boolean"
    return "string"


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

def _coerce(
    kind: str,
    column: str,
    raw: str,
    date_policy: str,
    report: EntityReport | None,
    date_order: str = "mdy",
) -> Any:
    if kind == "date":
        value = parse_timestamp(raw, policy=date_policy, date_order=date_order)
        if value is None and report is not None:
            report.warnings.append(f"{column}: unparseable date {raw!r} dropped")
        return value
    if kind == "number":
        value = parse_numeric(raw)
        if value is None and report is not None:
            report.warnings.append(f"{column}: non-numeric value {raw!r} dropped")
        return value
    if kind == "boolean":
        value = parse_bool(raw)
        if value is None and report is not None:
            report.warnings.append(f"{column}: unrecognised flag {raw!r} dropped")
        return value
    if kind == "json":
        ok, value = decode_literal(raw)
        if not ok:
            if report is not None:
                report.warnings.append(f"{column}: undecodable literal kept as text")
            return trim(raw)
        return value
    return trim(raw)


# ---------------------------------------------------------------------------
# Record → MappedRow
# ---------------------------------------------------------------------------

def new_primary_key() -> str:
    """Random 128-bit identifier in canonical 8-4-4-4-12 hex form."""
    return str(uuid.uuid4())


def map_record(
    record: Record,
    entity: EntityConfig,
    now: datetime,
    date_policy: str = "null",
    report: EntityReport | None = None,
    date_order: str = "mdy",
) -> MappedRow:
    """Build the typed row for entity.table from one parsed record.

    Raises UnparseableDateError under date_policy='error'.
    """
    pk = entity.primary_key
    values: dict[str, Any] = {}

    for source_col, raw in record.items():
        if source_col in entity.drop:
            continue
        column = entity.rename.get(source_col, source_col)
        if column in entity.drop or trim(raw) is None:
            continue
        kind = entity.column_types.get(column) or classify_column(column, pk)
        try:
            value = _coerce(kind, column, raw, date_policy, report, date_order)
        except UnparseableDateError as exc:
            raise UnparseableDateError(f"{column}: {exc}") from exc
        if value is None:
            continue
        if column in values:
            log.warning("%s: %s filled from more than one source column", entity.entity, column)
            if report is not None:
                report.warnings.append(f"{column}: more than one source column; last value kept")
        values[column] = value

    if values.get(pk) is None:
        values[pk] = new_primary_key()
        log.info("%s: generated %s=%s", entity.entity, pk, values[pk])
        if report is not None:
            report.ids_generated += 1

    for column, default in entity.defaults.items():
        values.setdefault(column, default)

    filled = False
    for column in entity.timestamp_columns:
        if column not in values:
            values[column] = now
            filled = True
    if filled and report is not None:
        report.timestamps_filled += 1

    ordered = {pk: values.pop(pk)}
    ordered.update(values)
    return MappingProxyType(ordered)
