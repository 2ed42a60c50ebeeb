"""Unit test fixtures: an in-memory upsert sink keyed on primary key."""

from __future__ import annotations

import pytest

from practice_etl.shared import BatchRejectedError, SinkUnavailableError


class MemorySink:
    """Dict-backed UpsertSink.

    fail_batches: 1-based batch numbers (per sink, across tables) to reject.
    unavailable: raise SinkUnavailableError on every call.
    """

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple[str, int]] = []
        self.fail_batches: set[int] = set()
        self.unavailable = False

    def upsert(self, table, rows, primary_key):
        if self.unavailable:
            raise SinkUnavailableError("connection refused")
        self.calls.append((table, len(rows)))
        if len(self.calls) in self.fail_batches:
            raise BatchRejectedError("violates not-null constraint")
        store = self.tables.setdefault(table, {})
        for row in rows:
            store[row[primary_key]] = {**store.get(row[primary_key], {}), **dict(row)}
        return len(rows)

    def count_rows(self, table):
        return len(self.tables.get(table, {}))


@pytest.fixture
def memory_sink() -> MemorySink:
    return MemorySink()
