"""Integration tests for the PostgreSQL upsert sink and a full CLI run.

These tests run against an ephemeral PostgreSQL database with the
practice tables applied via the db_conn fixture in conftest.py.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import psycopg
import pytest
from click.testing import CliRunner

from practice_etl.config import build_import_config
from practice_etl.import_legacy_export import main
from practice_etl.loader import PostgresUpsertSink, load_rows
from practice_etl.orchestrator import run_import
from practice_etl.shared import BatchRejectedError

PROJECT_ROOT = Path(__file__).parent.parent.parent
NOW = datetime(2025, 9, 2, 12, 0, tzinfo=timezone.utc)


def _fetch(dsn, query, params=None):
    """Read through a separate autocommit connection so the sink's session is untouched."""
    with psycopg.connect(dsn, autocommit=True) as conn:
        return conn.execute(query, params).fetchall()


def _client(id_, name, **extra):
    return {"id": id_, "name": name, "created_at": NOW, "updated_at": NOW, **extra}


# ---------------------------------------------------------------------------
# PostgresUpsertSink
# ---------------------------------------------------------------------------

class TestPostgresUpsertSink:
    def test_insert_then_rerun_is_idempotent(self, db_conn):
        conn, dsn = db_conn
        sink = PostgresUpsertSink(conn)
        rows = [_client(f"c{i}", f"Client {i}") for i in range(5)]

        load_rows(rows, "clients", sink, batch_size=2)
        load_rows(rows, "clients", sink, batch_size=2)

        assert _fetch(dsn, "SELECT count(*) FROM clients") == [(5,)]

    def test_upsert_overwrites_existing_values(self, db_conn):
        conn, dsn = db_conn
        sink = PostgresUpsertSink(conn)
        sink.upsert("clients", [_client("c1", "Old Name")], "id")
        sink.upsert("clients", [_client("c1", "New Name")], "id")
        assert _fetch(dsn, "SELECT name FROM clients WHERE id = 'c1'") == [("New Name",)]

    def test_omitted_columns_take_database_defaults(self, db_conn):
        conn, dsn = db_conn
        sink = PostgresUpsertSink(conn)
        sink.upsert("clients", [
            _client("c1", "Acme", tags=["client"], estimated_value=Decimal("1200.50")),
            {"id": "c2", "name": "Globex", "created_at": NOW, "updated_at": NOW},
        ], "id")

        rows = _fetch(
            dsn, "SELECT id, crm_stage, tags, estimated_value FROM clients ORDER BY id"
        )
        assert rows == [
            ("c1", "lead", ["client"], Decimal("1200.50")),
            ("c2", "lead", [], None),
        ]

    def test_rejected_batch_does_not_block_later_batches(self, db_conn):
        conn, dsn = db_conn
        sink = PostgresUpsertSink(conn)
        rows = [
            _client("c1", "Acme"),
            _client("c2", "Bad", estimated_value="not a number"),
            _client("c3", "Globex"),
        ]
        results = load_rows(rows, "clients", sink, batch_size=1)

        assert [r.failed for r in results] == [False, True, False]
        assert _fetch(dsn, "SELECT id FROM clients ORDER BY id") == [("c1",), ("c3",)]

    def test_unknown_column_raises_batch_rejected(self, db_conn):
        conn, _ = db_conn
        sink = PostgresUpsertSink(conn)
        with pytest.raises(BatchRejectedError):
            sink.upsert("clients", [{"id": "c1", "colour": "red"}], "id")

    def test_dry_run_rolls_back(self, db_conn):
        conn, dsn = db_conn
        sink = PostgresUpsertSink(conn, dry_run=True)
        assert sink.upsert("clients", [_client("c1", "Acme")], "id") == 1
        assert _fetch(dsn, "SELECT count(*) FROM clients") == [(0,)]

    def test_custom_primary_key(self, db_conn):
        conn, dsn = db_conn
        sink = PostgresUpsertSink(conn)
        sink.upsert("company_settings", [{"key": "currency", "value": "NZD"}], "key")
        sink.upsert("company_settings", [{"key": "currency", "value": "AUD"}], "key")
        assert _fetch(dsn, "SELECT key, value FROM company_settings") == [("currency", "AUD")]

    def test_count_rows(self, db_conn):
        conn, _ = db_conn
        sink = PostgresUpsertSink(conn)
        sink.upsert("clients", [_client("c1", "Acme"), _client("c2", "Globex")], "id")
        assert sink.count_rows("clients") == 2
        conn.rollback()


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------

DOCUMENT = """\
=== CLIENTS ===
id,company_name,email,tags,address,created_date
c1,"Acme, Inc.",a@x.com,[client, priority],{street: 1 Main St, city: Tauranga},2024-03-01T09:00:00.5+00
c2,Globex,g@x.com,,,
=== PROJECTS ===
id,project_name,client_id,budget_hours,budget_alert_75,start_date
p1,Fit-out,c1,120.5,false,01/15/2024
=== TIME ENTRIES ===
id,user_email,project_id,minutes,billable,start_time
te1,staff@x.com,p1,90,yes,2024-04-02 09:00:00
"""


class TestPipeline:
    def test_run_import_into_postgres(self, db_conn):
        conn, dsn = db_conn
        config = build_import_config({"entities": [
            {"entity": "CLIENTS", "table": "clients",
             "rename": {"company_name": "name", "created_date": "created_at"},
             "column_types": {"tags": "json", "address": "json"}},
            {"entity": "PROJECTS", "table": "projects",
             "rename": {"project_name": "name"},
             "column_types": {"budget_alert_75": "boolean"}},
            {"entity": "TIME ENTRIES", "table": "time_entries",
             "rename": {"minutes": "duration_minutes"}},
        ]})
        report = run_import(DOCUMENT, config, PostgresUpsertSink(conn), now=NOW)

        assert report.records_written == 4
        assert report.batches_failed == 0
        clients = _fetch(dsn, "SELECT id, name, tags, address, created_at FROM clients ORDER BY id")
        assert clients[0] == (
            "c1", "Acme, Inc.", ["client", "priority"],
            {"street": "1 Main St", "city": "Tauranga"},
            datetime(2024, 3, 1, 9, 0, 0, 500000, tzinfo=timezone.utc),
        )
        assert clients[1][4] == NOW
        assert _fetch(dsn, "SELECT budget_hours, budget_alert_75, start_date FROM projects") == [
            (Decimal("120.5"), False, datetime(2024, 1, 15, tzinfo=timezone.utc)),
        ]
        assert _fetch(dsn, "SELECT duration_minutes, billable FROM time_entries") == [
            (Decimal("90"), True),
        ]

    def test_cli_against_database(self, db_conn, tmp_path):
        _, dsn = db_conn
        document = tmp_path / "export.txt"
        document.write_text(
            "=== CLIENTS ===\nid,company_name\nc1,Acme\nc2,Globex\n"
            "=== COMPANY SETTINGS ===\nid,key,value\ns1,currency,NZD\n",
            encoding="utf-8",
        )
        args = [
            "--config", str(PROJECT_ROOT / "config" / "entities.yml"),
            "--document", str(document),
            "--db-dsn", dsn,
            "--rejects-path", str(tmp_path / "rejects.csv"),
            "--reports-dir", str(tmp_path / "reports"),
            "--verify-counts",
        ]
        runner = CliRunner()

        first = runner.invoke(main, args)
        second = runner.invoke(main, args)

        assert first.exit_code == 0, first.output
        assert second.exit_code == 0, second.output
        assert "clients: 2 row(s) in target" in second.output
        assert _fetch(dsn, "SELECT key, value FROM company_settings") == [("currency", "NZD")]

    def test_cli_dry_run_persists_nothing(self, db_conn, tmp_path):
        _, dsn = db_conn
        document = tmp_path / "export.txt"
        document.write_text("=== CLIENTS ===\nid,company_name\nc1,Acme\n", encoding="utf-8")
        result = CliRunner().invoke(main, [
            "--config", str(PROJECT_ROOT / "config" / "entities.yml"),
            "--document", str(document),
            "--db-dsn", dsn,
            "--rejects-path", str(tmp_path / "rejects.csv"),
            "--reports-dir", str(tmp_path / "reports"),
            "--dry-run",
        ])
        assert result.exit_code == 0, result.output
        assert _fetch(dsn, "SELECT count(*) FROM clients") == [(0,)]
