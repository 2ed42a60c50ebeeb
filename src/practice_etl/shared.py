"""practice_etl.shared

Shared run artifacts used by the loader, orchestrator and CLI.
Includes the sink exceptions, BatchResult / EntityReport / RunReport,
RejectWriter, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

MAX_REPORT_WARNINGS = 50


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class BatchRejectedError(Exception):
    """Raised by a sink when the persistence layer rejects one batch."""


class SinkUnavailableError(Exception):
    """Raised by a sink when the persistence layer cannot be reached at all."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

REJECT_FIELDS = ["run_id", "entity", "line_number", "reason", "raw"]


class RejectWriter:
    """Lazy-open CSV writer for skipped lines and rejected records."""

    def __init__(self, path: Path, run_id: str = "") -> None:
        self._path = path
        self._run_id = run_id
        self._fh = None
        self._writer = None
        self.count = 0

    def write(
        self,
        entity: str,
        reason: str,
        raw: str,
        line_number: int | None = None,
    ) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._fh, fieldnames=REJECT_FIELDS)
            self._writer.writeheader()
        self._writer.writerow({
            "run_id": self._run_id,
            "entity": entity,
            "line_number": "" if line_number is None else line_number,
            "reason": reason,
            "raw": raw,
        })
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# Batch / entity / run results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BatchResult:
    """Outcome of one batch write.  error is None when the batch succeeded."""

    table: str
    index: int
    attempted: int
    succeeded: int
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "index": self.index,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "error": self.error,
        }


@dataclass
class EntityReport:
    entity: str
    table: str
    records_found: int = 0
    records_mapped: int = 0
    records_rejected: int = 0
    lines_skipped: int = 0
    ids_generated: int = 0
    timestamps_filled: int = 0
    references_unresolved: int = 0
    batches: list[BatchResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    skipped_reason: str | None = None

    @property
    def records_written(self) -> int:
        return sum(b.succeeded for b in self.batches)

    @property
    def batches_failed(self) -> int:
        return sum(1 for b in self.batches if b.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity,
            "table": self.table,
            "records_found": self.records_found,
            "records_mapped": self.records_mapped,
            "records_rejected": self.records_rejected,
            "records_written": self.records_written,
            "lines_skipped": self.lines_skipped,
            "ids_generated": self.ids_generated,
            "timestamps_filled": self.timestamps_filled,
            "references_unresolved": self.references_unresolved,
            "batches_failed": self.batches_failed,
            "batches": [b.to_dict() for b in self.batches],
            "skipped_reason": self.skipped_reason,
            "warnings": self.warnings[:MAX_REPORT_WARNINGS],
        }


@dataclass
class RunReport:
    run_id: str
    started_at: str
    dry_run: bool = False
    config_hash: str = ""
    finished_at: str | None = None
    entities: list[EntityReport] = field(default_factory=list)

    @property
    def records_found(self) -> int:
        return sum(e.records_found for e in self.entities)

    @property
    def records_mapped(self) -> int:
        return sum(e.records_mapped for e in self.entities)

    @property
    def records_written(self) -> int:
        return sum(e.records_written for e in self.entities)

    @property
    def batches_failed(self) -> int:
        return sum(e.batches_failed for e in self.entities)

    def entity(self, name: str) -> EntityReport | None:
        return next((e for e in self.entities if e.entity == name), None)

    def finish(self) -> None:
        self.finished_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "dry_run": self.dry_run,
            "config_hash": self.config_hash,
            "totals": {
                "records_found": self.records_found,
                "records_mapped": self.records_mapped,
                "records_written": self.records_written,
                "batches_failed": self.batches_failed,
            },
            "entities": [e.to_dict() for e in self.entities],
        }


# ---------------------------------------------------------------------------
# Report writers
# ---------------------------------------------------------------------------

def write_run_report(
    report: RunReport,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report_path = reports_dir / f"{report.run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report.to_dict(), indent=2, default=str))
    return report_path


def format_run_report(report: RunReport) -> str:
    lines = [
        "=== Legacy Import Run Report ===",
        f"run_id           : {report.run_id}",
        f"dry_run          : {report.dry_run}",
        "",
    ]
    for ent in report.entities:
        lines.append(f"--- {ent.entity} → {ent.table} ---")
        if ent.skipped_reason:
            lines.append(f"skipped          : {ent.skipped_reason}")
        lines += [
            f"records_found    : {ent.records_found}",
            f"records_mapped   : {ent.records_mapped}",
            f"records_written  : {ent.records_written}",
            f"batches_failed   : {ent.batches_failed}",
        ]
        if ent.lines_skipped or ent.records_rejected:
            lines.append(
                f"lines_skipped    : {ent.lines_skipped}  "
                f"records_rejected: {ent.records_rejected}"
            )
        for batch in ent.batches:
            if batch.failed:
                lines.append(f"  batch {batch.index} ({batch.attempted} rows): {batch.error}")
        lines.append("")
    lines += [
        "--- Totals ---",
        f"records_found    : {report.records_found}",
        f"records_written  : {report.records_written}",
        f"batches_failed   : {report.batches_failed}",
    ]
    warnings = [w for e in report.entities for w in e.warnings]
    if warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in warnings[:10]]
    return "\n".join(lines)
