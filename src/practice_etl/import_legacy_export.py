"""practice_etl.import_legacy_export

CLI entrypoint for importing the legacy practice-management export.

Usage (combined export document → PostgreSQL):
    python -m practice_etl.import_legacy_export \\
        --config config/entities.yml \\
        --document "exportdata/lysaght_data_export_2025-09-02.txt" \\
        --db-dsn "$DB_DSN"

Usage (one file per entity → hosted REST endpoint):
    SUPABASE_SERVICE_ROLE_KEY=... python -m practice_etl.import_legacy_export \\
        --config config/entities.yml \\
        --csv-dir exportdata \\
        --rest-url "https://project.example.co" \\
        --verify-counts

Usage (single table, no section markers):
    python -m practice_etl.import_legacy_export \\
        --config config/entities.yml \\
        --document exportdata/Client_export.csv --entity CLIENTS \\
        --db-dsn "$DB_DSN" --dry-run
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from practice_etl.config import ConfigValidationError, ImportConfig, load_import_config
from practice_etl.loader import PostgresUpsertSink, RestUpsertSink, UpsertSink
from practice_etl.orchestrator import (
    load_sections_from_dir,
    read_document,
    run_import,
    run_sections,
)
from practice_etl.reconcile import load_id_map
from practice_etl.shared import (
    RejectWriter,
    RunReport,
    SinkUnavailableError,
    format_run_report,
    write_run_report,
)


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _validate_source_flags(
    document: str | None,
    csv_dir: str | None,
    entity: str | None,
    run_id: str,
) -> None:
    if bool(document) == bool(csv_dir):
        _fatal(run_id, "provide exactly one of --document or --csv-dir")
    if entity and not document:
        _fatal(run_id, "--entity only applies to --document")


def _validate_target_flags(
    db_dsn: str | None,
    rest_url: str | None,
    run_id: str,
) -> None:
    if bool(db_dsn) == bool(rest_url):
        _fatal(run_id, "provide exactly one of --db-dsn or --rest-url")


# ---------------------------------------------------------------------------
# Sink construction
# ---------------------------------------------------------------------------

def _build_sink(
    db_dsn: str | None,
    rest_url: str | None,
    rest_key_env: str,
    rest_timeout: float,
    dry_run: bool,
    run_id: str,
) -> tuple[UpsertSink, psycopg.Connection | None]:
    """Return (sink, connection-to-close-or-None)."""
    if db_dsn:
        try:
            conn = psycopg.connect(db_dsn, autocommit=False)
        except psycopg.OperationalError as exc:
            _fatal(run_id, f"cannot connect to database: {exc}")
        return PostgresUpsertSink(conn, dry_run=dry_run), conn

    # Key comes from the environment, never from CLI args
    api_key = os.environ.get(rest_key_env, "")
    if not api_key:
        _fatal(run_id, f"env var {rest_key_env} must be set for --rest-url")
    return RestUpsertSink(rest_url, api_key, timeout=rest_timeout, dry_run=dry_run), None


def _verify_counts(sink: UpsertSink, config: ImportConfig, run_id: str) -> None:
    seen: set[str] = set()
    for ent in config.entities:
        if ent.table in seen:
            continue
        seen.add(ent.table)
        click.echo(f"[{run_id}] {ent.table}: {sink.count_rows(ent.table)} row(s) in target")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--config", "config_path", required=True, type=click.Path(), help="Entity-mapping YAML file")
@click.option("--document", default=None, type=click.Path(), help="Export document (sectioned or single table)")
@click.option("--csv-dir", default=None, type=click.Path(), help="Directory of per-entity export files (config `file:` keys)")
@click.option("--entity", default=None, help="Section name for a --document without === markers")
@click.option("--db-dsn", default=None, help="PostgreSQL DSN")
@click.option("--rest-url", default=None, help="Hosted REST base URL (PostgREST /rest/v1 is appended)")
@click.option("--rest-key-env", default="SUPABASE_SERVICE_ROLE_KEY", show_default=True, help="Env var name holding the REST service key")
@click.option("--rest-timeout", default=30.0, type=float, show_default=True, help="Per-request timeout in seconds for --rest-url")
@click.option("--id-map", default=None, type=click.Path(), help="old_id,new_id CSV for reference reconciliation")
@click.option("--batch-size", default=None, type=int, help="Override the config batch_size")
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/legacy_import_rejects.csv",
    show_default=True,
)
@click.option("--reports-dir", default="./artifacts/reports", show_default=True, type=click.Path())
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verify-counts", is_flag=True, default=False, help="Print target table row counts after the run")
@click.option(
    "--fail-on-batch-errors/--no-fail-on-batch-errors",
    default=False,
    show_default=True,
    help="Exit non-zero when any batch was rejected",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    config_path: str,
    document: str | None,
    csv_dir: str | None,
    entity: str | None,
    db_dsn: str | None,
    rest_url: str | None,
    rest_key_env: str,
    rest_timeout: float,
    id_map: str | None,
    batch_size: int | None,
    dry_run: bool,
    rejects_path: str,
    reports_dir: str,
    run_id: str | None,
    verify_counts: bool,
    fail_on_batch_errors: bool,
    log_level: str,
) -> None:
    """Import a legacy export into relational tables with batched upserts."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    now = datetime.now(timezone.utc)

    _validate_source_flags(document, csv_dir, entity, run_id)
    _validate_target_flags(db_dsn, rest_url, run_id)

    try:
        config = load_import_config(Path(config_path)).with_batch_size(batch_size)
    except (ConfigValidationError, OSError) as exc:
        _fatal(run_id, f"config: {exc}")

    click.echo(
        f"[{run_id}] Starting legacy import (dry_run={dry_run}, "
        f"entities={len(config.entities)}, batch_size={config.batch_size})"
    )

    # Phase 1: read input before touching the target
    try:
        if document:
            text = read_document(Path(document))
            sections = None
        else:
            text = None
            if not Path(csv_dir).is_dir():
                raise NotADirectoryError(f"--csv-dir is not a directory: {csv_dir}")
            sections = load_sections_from_dir(Path(csv_dir), config)
        mapping = load_id_map(Path(id_map)) if id_map else None
    except (OSError, UnicodeDecodeError, ValueError) as exc:
        _fatal(run_id, f"cannot read input: {exc}")

    # Phase 2: load
    sink, conn = _build_sink(db_dsn, rest_url, rest_key_env, rest_timeout, dry_run, run_id)
    rejects = RejectWriter(Path(rejects_path), run_id=run_id)
    report: RunReport | None = None
    try:
        if text is not None:
            report = run_import(
                text, config, sink,
                run_id=run_id, now=now, rejects=rejects, id_map=mapping,
                default_section=entity, dry_run=dry_run,
            )
        else:
            report = run_sections(
                sections, config, sink,
                run_id=run_id, now=now, rejects=rejects, id_map=mapping,
                dry_run=dry_run,
            )
        if verify_counts:
            _verify_counts(sink, config, run_id)
    except SinkUnavailableError as exc:
        _fatal(run_id, str(exc))
    finally:
        rejects.close()
        if conn is not None:
            conn.close()

    click.echo(format_run_report(report))
    report_path = write_run_report(report, Path(reports_dir))
    click.echo(f"[{run_id}] Run report: {report_path}")
    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} reject(s) written to {rejects_path}")
    if dry_run:
        click.echo(f"[{run_id}] [dry-run] No changes persisted.")

    if fail_on_batch_errors and report.batches_failed:
        click.echo(
            f"[{run_id}] {report.batches_failed} batch(es) rejected; exiting non-zero",
            err=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
