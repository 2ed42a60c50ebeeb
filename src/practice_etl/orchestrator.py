"""practice_etl.orchestrator

Run the import pipeline over every configured entity type:

  extract sections → parse → map → (reconcile) → batch upsert

Entities are processed one at a time in the declared order (parents
before dependents).  Referential integrity between entity types is not
checked here.  There is no retry or resume: a fatal SinkUnavailableError
propagates to the caller, and because loads are upserts an operator
simply re-runs the whole import.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

from practice_etl.config import EntityConfig, ImportConfig
from practice_etl.delimited import parse_records
from practice_etl.loader import UpsertSink, load_rows
from practice_etl.mapper import MappedRow, map_record
from practice_etl.normalize import UnparseableDateError
from practice_etl.reconcile import reconcile_rows
from practice_etl.sections import extract_sections
from practice_etl.shared import EntityReport, RejectWriter, RunReport

log = logging.getLogger(__name__)

SECTION_MISSING = "section missing"


def read_document(path: Path) -> str:
    """Read a UTF-8 export document (BOM tolerated).

    Raises OSError / UnicodeDecodeError; callers treat both as fatal.
    """
    return path.read_text(encoding="utf-8-sig")


def load_sections_from_dir(directory: Path, config: ImportConfig) -> dict[str, str]:
    """Read one export file per entity (the entity's `file:` key).

    Entities without a file, or whose file does not exist, are simply
    absent from the result and are later reported as missing sections.
    """
    sections: dict[str, str] = {}
    for ent in config.entities:
        if not ent.file:
            continue
        path = directory / ent.file
        if not path.exists():
            log.warning("%s: %s not found", ent.entity, path)
            continue
        sections[ent.entity] = read_document(path)
    return sections


# ---------------------------------------------------------------------------
# One entity
# ---------------------------------------------------------------------------

def import_entity(
    text: str | None,
    entity: EntityConfig,
    config: ImportConfig,
    sink: UpsertSink,
    now: datetime,
    rejects: RejectWriter | None = None,
    id_map: Mapping[str, str] | None = None,
) -> EntityReport:
    report = EntityReport(entity=entity.entity, table=entity.table)

    if text is None or not text.strip():
        report.skipped_reason = SECTION_MISSING
        report.warnings.append(f"{entity.entity}: {SECTION_MISSING}; {entity.table} skipped")
        log.warning("%s: %s; %s skipped", entity.entity, SECTION_MISSING, entity.table)
        return report

    parsed = parse_records(text, delimiter=config.delimiter)
    if not parsed.records and not parsed.warnings:
        report.skipped_reason = SECTION_MISSING
        report.warnings.append(f"{entity.entity}: section has no records; {entity.table} skipped")
        log.warning("%s: section has no records; %s skipped", entity.entity, entity.table)
        return report

    report.records_found = len(parsed.records)
    report.lines_skipped = len(parsed.warnings)
    for warning in parsed.warnings:
        report.warnings.append(f"line {warning.line_number}: {warning.reason}")
        if rejects is not None:
            rejects.write(entity.entity, warning.reason, warning.line, warning.line_number)

    rows: list[MappedRow] = []
    for record in parsed.records:
        try:
            rows.append(map_record(
                record, entity, now, config.date_policy, report,
                date_order=config.date_order,
            ))
        except UnparseableDateError as exc:
            report.records_rejected += 1
            report.warnings.append(f"record rejected: {exc}")
            log.warning("%s: record rejected: %s", entity.entity, exc)
            if rejects is not None:
                rejects.write(entity.entity, str(exc), repr(dict(record)))
    report.records_mapped = len(rows)

    if report.ids_generated or report.timestamps_filled:
        log.info(
            "%s: generated %d primary key(s), filled timestamps on %d row(s)",
            entity.entity, report.ids_generated, report.timestamps_filled,
        )

    if entity.references:
        rows = reconcile_rows(
            rows, entity.references, entity.reference_mode, id_map, report
        )

    if rows:
        report.batches = load_rows(
            rows, entity.table, sink,
            batch_size=config.batch_size,
            primary_key=entity.primary_key,
        )
    return report


# ---------------------------------------------------------------------------
# Whole run
# ---------------------------------------------------------------------------

def run_sections(
    sections: Mapping[str, str],
    config: ImportConfig,
    sink: UpsertSink,
    run_id: str | None = None,
    now: datetime | None = None,
    rejects: RejectWriter | None = None,
    id_map: Mapping[str, str] | None = None,
    dry_run: bool = False,
) -> RunReport:
    """Import already-extracted sections; see run_import."""
    now = now or datetime.now(timezone.utc)
    report = RunReport(
        run_id=run_id or str(uuid.uuid4()),
        started_at=now.isoformat(),
        dry_run=dry_run,
        config_hash=config.yaml_hash,
    )
    for entity in config.entities:
        log.info("[%s] Processing %s → %s", report.run_id, entity.entity, entity.table)
        report.entities.append(
            import_entity(
                sections.get(entity.entity), entity, config, sink, now,
                rejects=rejects, id_map=id_map,
            )
        )
    report.finish()
    return report


def run_import(
    document: str,
    config: ImportConfig,
    sink: UpsertSink,
    run_id: str | None = None,
    now: datetime | None = None,
    rejects: RejectWriter | None = None,
    id_map: Mapping[str, str] | None = None,
    default_section: str | None = None,
    dry_run: bool = False,
) -> RunReport:
    """Extract sections once, then import each configured entity in order.

    `now` is the single run timestamp used for every filled-in
    created_at / updated_at value.
    """
    sections = extract_sections(document, default_section=default_section)
    log.info("Document sections: %s", sorted(sections))
    return run_sections(
        sections, config, sink,
        run_id=run_id, now=now, rejects=rejects, id_map=id_map, dry_run=dry_run,
    )
