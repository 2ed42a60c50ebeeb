"""practice_etl.delimited

Delimited-text record parser for legacy export sections.

The legacy exporter wrote one record per line and embedded JSON-ish
object/array literals in some columns without quoting them, e.g.

    id,company_name,tags,address
    a1,"Acme, Inc.",[client, priority],{street: 1 Main St, city: Tauranga}

so a plain csv.reader splits those literals apart.  split_line() tracks
quote state and brace/bracket depth independently and only treats the
delimiter as a separator when the quote is closed and depth is zero.

Usage:
    from practice_etl.delimited import parse_records

    result = parse_records(section_text)
    for record in result.records:
        ...
    for warning in result.warnings:
        ...
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Sequence

log = logging.getLogger(__name__)

Record = Mapping[str, "str | None"]

_OPENERS = "{["
_CLOSERS = "}]"

_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?([eE][+-]?\d+)?$")
_JSON_WORDS = frozenset({"true", "false", "null"})
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][\w\-]*)\s*:")
_BARE_VALUE_RE = re.compile(r"(:\s*)([^\s\"{\[][^,}\]]*?)(\s*[,}])")
_INNER_ARRAY_RE = re.compile(r"\[([^\[\]{}]*)\]")


# ---------------------------------------------------------------------------
# Exceptions / result types
# ---------------------------------------------------------------------------

class RecordParseError(ValueError):
    """Raised by split_line for a line that cannot be split into fields."""


@dataclass(frozen=True)
class ParseWarning:
    line_number: int
    reason: str
    line: str


@dataclass
class ParseResult:
    headers: list[str] = field(default_factory=list)
    records: list[Record] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Line splitting
# ---------------------------------------------------------------------------

def _clean_field(raw: str, quote: str) -> str | None:
    v = raw.strip()
    if len(v) >= 2 and v[0] == quote and v[-1] == quote:
        v = v[1:-1].replace(quote * 2, quote).strip()
    return v if v else None


def split_line(line: str, delimiter: str = ",", quote: str = '"') -> list[str | None]:
    """Split one physical line into cleaned field values.

    Raises RecordParseError when the line ends inside a quoted field or
    inside an unclosed brace/bracket literal.  A closing brace/bracket at
    depth zero is ordinary text.
    """
    fields: list[str] = []
    current: list[str] = []
    in_quotes = False
    depth = 0

    for ch in line:
        if ch == quote:
            # A doubled quote toggles twice and leaves the state unchanged.
            in_quotes = not in_quotes
        elif not in_quotes:
            if ch in _OPENERS:
                depth += 1
            elif ch in _CLOSERS:
                if depth > 0:
                    depth -= 1
            elif ch == delimiter and depth == 0:
                fields.append("".join(current))
                current = []
                continue
        current.append(ch)

    if in_quotes:
        raise RecordParseError("unterminated quoted field")
    if depth:
        raise RecordParseError(f"unclosed brace/bracket literal (depth={depth})")

    fields.append("".join(current))
    return [_clean_field(f, quote) for f in fields]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def parse_records(
    text: str,
    delimiter: str = ",",
    quote: str = '"',
) -> ParseResult:
    """Parse a header line plus one record per line into Records.

    Empty header names become column_N; a repeated header name becomes
    NAME_N (N = 1-based position).
    Blank lines are ignored.  A data line identical to the header line
    (left behind when repeated sections are concatenated) is skipped.
    Short lines are padded with None; long lines keep the first
    len(headers) values and produce a warning.  Lines that cannot be
    split are skipped and reported in ParseResult.warnings.
    """
    result = ParseResult()
    lines = [ln.rstrip("\r") for ln in text.lstrip("\ufeff").split("\n")]

    header_idx = next((i for i, ln in enumerate(lines) if ln.strip()), None)
    if header_idx is None:
        return result

    header_line = lines[header_idx]
    try:
        raw_headers = split_line(header_line, delimiter, quote)
    except RecordParseError as exc:
        result.warnings.append(ParseWarning(header_idx + 1, f"header: {exc}", header_line))
        log.warning("Header line %d unparseable (%s); section ignored", header_idx + 1, exc)
        return result

    headers: list[str] = []
    for i, h in enumerate(raw_headers):
        name = h if h else f"column_{i + 1}"
        if name in headers:
            # Repeated header: keep both columns, the later one by position.
            log.warning("Header %r repeated at column %d; renamed %s_%d", name, i + 1, name, i + 1)
            name = f"{name}_{i + 1}"
        headers.append(name)
    result.headers = headers
    header_key = header_line.strip()

    for idx in range(header_idx + 1, len(lines)):
        line = lines[idx]
        line_number = idx + 1
        if not line.strip():
            continue
        if line.strip() == header_key:
            log.debug("Line %d repeats the header row; skipped", line_number)
            continue

        try:
            values = split_line(line, delimiter, quote)
        except RecordParseError as exc:
            result.warnings.append(ParseWarning(line_number, str(exc), line))
            log.warning("Line %d skipped: %s", line_number, exc)
            continue

        if len(values) > len(headers):
            result.warnings.append(ParseWarning(
                line_number,
                f"{len(values)} fields for {len(headers)} headers; extra fields dropped",
                line,
            ))
            values = values[:len(headers)]
        elif len(values) < len(headers):
            values = values + [None] * (len(headers) - len(values))

        result.records.append(MappingProxyType(dict(zip(headers, values))))

    return result


def format_records(
    headers: Sequence[str],
    records: Sequence[Record],
    delimiter: str = ",",
    quote: str = '"',
) -> str:
    """Serialize records back to delimited text that parse_records accepts."""
    specials = (delimiter, quote) + tuple(_OPENERS) + tuple(_CLOSERS)

    def _quote(value: str | None) -> str:
        if value is None:
            return ""
        if any(s in value for s in specials):
            return quote + value.replace(quote, quote * 2) + quote
        return value

    out = [delimiter.join(_quote(h) for h in headers)]
    for record in records:
        out.append(delimiter.join(_quote(record.get(h)) for h in headers))
    return "\n".join(out) + "\n"


# ---------------------------------------------------------------------------
# Loose literal repair
# ---------------------------------------------------------------------------

def _is_json_scalar(token: str) -> bool:
    return bool(_NUMBER_RE.match(token)) or token in _JSON_WORDS


def _quote_bare_value(m: re.Match[str]) -> str:
    value = m.group(2).strip()
    if _is_json_scalar(value):
        return m.group(0)
    return f'{m.group(1)}{json.dumps(value)}{m.group(3)}'


def _quote_bare_items(m: re.Match[str]) -> str:
    content = m.group(1)
    if not content.strip():
        return m.group(0)
    items = []
    for item in content.split(","):
        t = item.strip()
        if t and not t.startswith('"') and not _is_json_scalar(t):
            t = json.dumps(t)
        items.append(t)
    return "[" + ",".join(items) + "]"


def repair_json_literal(text: str | None) -> str | None:
    """Return strict JSON text for an object/array literal, or None.

    Already-valid JSON is returned unchanged.  Otherwise bare object keys
    are quoted, bare non-numeric object values and array elements are
    quoted, and the result is re-validated.
    """
    if text is None:
        return None
    v = text.strip()
    if not v or v[0] not in _OPENERS:
        return None
    try:
        json.loads(v)
        return v
    except ValueError:
        pass

    repaired = _BARE_KEY_RE.sub(r'\1"\2":', v)
    repaired = _INNER_ARRAY_RE.sub(_quote_bare_items, repaired)
    repaired = _BARE_VALUE_RE.sub(_quote_bare_value, repaired)
    try:
        json.loads(repaired)
    except ValueError:
        return None
    return repaired


def decode_literal(text: str | None) -> tuple[bool, Any]:
    """Decode an object/array literal, repairing it first if needed.

    Returns (True, value) on success and (False, None) otherwise.
    """
    repaired = repair_json_literal(text)
    if repaired is None:
        return False, None
    return True, json.loads(repaired)
