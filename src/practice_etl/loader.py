"""practice_etl.loader

Batched, idempotent upserts of MappedRows into the target store.

Batches are written one at a time.  A batch the store rejects becomes a
failed BatchResult and the next batch is still attempted; this is a
best-effort bulk load, not a transaction across batches.  A store that
cannot be reached at all raises SinkUnavailableError, which ends the run.

Sinks:
  PostgresUpsertSink  direct PostgreSQL via psycopg
  RestUpsertSink      hosted PostgREST-style endpoint via requests
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterator, Mapping, Protocol, Sequence

import psycopg
import requests
from psycopg import sql
from psycopg.types.json import Jsonb

from practice_etl.shared import (
    BatchRejectedError,
    BatchResult,
    SinkUnavailableError,
)

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

Row = Mapping[str, Any]


# ---------------------------------------------------------------------------
# Sink protocol
# ---------------------------------------------------------------------------

class UpsertSink(Protocol):
    def upsert(self, table: str, rows: Sequence[Row], primary_key: str) -> int:
        """Insert-or-update rows keyed on primary_key; return rows written."""
        ...

    def count_rows(self, table: str) -> int:
        ...


def group_by_columns(rows: Sequence[Row]) -> list[tuple[tuple[str, ...], list[Row]]]:
    """Group rows sharing the same column set, preserving first-seen order."""
    groups: dict[tuple[str, ...], list[Row]] = {}
    for row in rows:
        groups.setdefault(tuple(row.keys()), []).append(row)
    return list(groups.items())


# ---------------------------------------------------------------------------
# PostgreSQL sink
# ---------------------------------------------------------------------------

def _table_ident(table: str) -> sql.Identifier:
    return sql.Identifier(*table.split("."))


def upsert_statement(table: str, columns: Sequence[str], primary_key: str) -> sql.Composed:
    """INSERT ... ON CONFLICT (pk) DO UPDATE for one column set."""
    updates = [c for c in columns if c != primary_key]
    if updates:
        conflict = sql.SQL("DO UPDATE SET {}").format(
            sql.SQL(", ").join(
                sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c))
                for c in updates
            )
        )
    else:
        conflict = sql.SQL("DO NOTHING")
    return sql.SQL(
        "INSERT INTO {table} ({cols}) VALUES ({vals}) ON CONFLICT ({pk}) {conflict}"
    ).format(
        table=_table_ident(table),
        cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        vals=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        pk=sql.Identifier(primary_key),
        conflict=conflict,
    )


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    return value


class PostgresUpsertSink:
    """Upsert each batch in its own transaction; dry_run rolls every batch back."""

    def __init__(self, conn: psycopg.Connection, dry_run: bool = False) -> None:
        self._conn = conn
        self._dry_run = dry_run

    def upsert(self, table: str, rows: Sequence[Row], primary_key: str) -> int:
        try:
            with self._conn.transaction(force_rollback=self._dry_run):
                with self._conn.cursor() as cur:
                    for columns, group in group_by_columns(rows):
                        stmt = upsert_statement(table, columns, primary_key)
                        cur.executemany(
                            stmt,
                            [tuple(_adapt(r[c]) for c in columns) for r in group],
                        )
        except psycopg.Error as exc:
            if isinstance(exc, psycopg.OperationalError) or self._conn.closed or self._conn.broken:
                raise SinkUnavailableError(f"database unavailable: {exc}") from exc
            raise BatchRejectedError(f"{type(exc).__name__}: {exc}") from exc
        return len(rows)

    def count_rows(self, table: str) -> int:
        try:
            row = self._conn.execute(
                sql.SQL("SELECT count(*) FROM {}").format(_table_ident(table))
            ).fetchone()
        except psycopg.OperationalError as exc:
            raise SinkUnavailableError(f"database unavailable: {exc}") from exc
        return int(row[0])


# ---------------------------------------------------------------------------
# Hosted REST sink
# ---------------------------------------------------------------------------

def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class RestUpsertSink:
    """PostgREST bulk upsert: POST /rest/v1/{table}?on_conflict={pk}.

    Rows with different column sets are sent together with an explicit
    `columns` list and `missing=default`, so omitted columns take their
    database defaults instead of NULL.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: requests.Session | None = None,
        timeout: float = 30.0,
        dry_run: bool = False,
    ) -> None:
        self._base = base_url.rstrip("/") + "/rest/v1"
        self._session = session or requests.Session()
        self._timeout = timeout
        self._dry_run = dry_run
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _columns(self, rows: Sequence[Row]) -> list[str]:
        columns: list[str] = []
        for row in rows:
            for col in row:
                if col not in columns:
                    columns.append(col)
        return columns

    def upsert(self, table: str, rows: Sequence[Row], primary_key: str) -> int:
        if self._dry_run:
            log.info("[dry-run] would upsert %d row(s) into %s", len(rows), table)
            return len(rows)
        payload = json.dumps([dict(r) for r in rows], default=_json_default)
        try:
            resp = self._session.post(
                f"{self._base}/{table}",
                params={
                    "on_conflict": primary_key,
                    "columns": ",".join(self._columns(rows)),
                },
                data=payload,
                headers={
                    **self._headers,
                    "Prefer": "resolution=merge-duplicates,missing=default,return=minimal",
                },
                timeout=self._timeout,
            )
        except requests.ConnectionError as exc:
            raise SinkUnavailableError(f"endpoint unreachable: {exc}") from exc
        except requests.Timeout as exc:
            raise BatchRejectedError(f"timeout after {self._timeout}s") from exc
        if resp.status_code >= 400:
            raise BatchRejectedError(f"HTTP {resp.status_code}: {resp.text[:500]}")
        return len(rows)

    def count_rows(self, table: str) -> int:
        try:
            resp = self._session.head(
                f"{self._base}/{table}",
                params={"select": "*"},
                headers={**self._headers, "Prefer": "count=exact"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise SinkUnavailableError(f"endpoint unreachable: {exc}") from exc
        resp.raise_for_status()
        # Content-Range: 0-24/25 or */0
        content_range = resp.headers.get("Content-Range", "")
        total = content_range.rsplit("/", 1)[-1]
        if not total.isdigit():
            raise ValueError(f"unexpected Content-Range {content_range!r} for {table}")
        return int(total)


# ---------------------------------------------------------------------------
# Batch loader
# ---------------------------------------------------------------------------

def iter_batches(rows: Sequence[Row], batch_size: int) -> Iterator[Sequence[Row]]:
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    for start in range(0, len(rows), batch_size):
        yield rows[start:start + batch_size]


def load_rows(
    rows: Sequence[Row],
    table: str,
    sink: UpsertSink,
    batch_size: int = DEFAULT_BATCH_SIZE,
    primary_key: str = "id",
) -> list[BatchResult]:
    """Upsert rows in fixed-size batches and return one BatchResult per batch.

    Raises:
        ValueError: If any row lacks a primary-key value.
        SinkUnavailableError: If the sink cannot be reached.
    """
    missing = sum(1 for r in rows if r.get(primary_key) is None)
    if missing:
        raise ValueError(f"{missing} row(s) for {table} have no {primary_key!r} value")

    results: list[BatchResult] = []
    for index, batch in enumerate(iter_batches(rows, batch_size), start=1):
        try:
            written = sink.upsert(table, batch, primary_key)
        except BatchRejectedError as exc:
            log.warning("%s batch %d (%d rows) rejected: %s", table, index, len(batch), exc)
            results.append(BatchResult(table, index, len(batch), 0, str(exc)))
            continue
        log.info("%s batch %d: %d row(s) upserted", table, index, written)
        results.append(BatchResult(table, index, len(batch), written))
    return results
