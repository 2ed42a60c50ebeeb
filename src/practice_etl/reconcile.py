"""practice_etl.reconcile

Explicit reference-reconciliation pass, run after mapping and before load.

The mapper passes id-like columns through untouched.  When the target
system re-keys rows, configure the entity's `references` and either:

  reference_mode: map       rewrite values via an old_id,new_id CSV (--id-map)
  reference_mode: objectid  rewrite 24-hex ObjectIds to deterministic UUIDs

Values with no mapping are left as they are and reported.
"""

from __future__ import annotations

import csv
import logging
import re
import uuid
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Sequence

from practice_etl.mapper import MappedRow
from practice_etl.shared import EntityReport

log = logging.getLogger(__name__)

OBJECTID_RE = re.compile(r"^[0-9a-fA-F]{24}$")
UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# Fixed namespace so the same ObjectId always yields the same UUID.
OBJECTID_NAMESPACE = uuid.UUID("5d1a0c1e-6b0f-4c55-9a43-6f2d7e3b8a10")


def objectid_to_uuid(value: str | None) -> str | None:
    """Return a UUID string for an ObjectId, the value itself for a UUID, else None."""
    if value is None:
        return None
    v = value.strip()
    if UUID_RE.match(v):
        return v
    if OBJECTID_RE.match(v):
        return str(uuid.uuid5(OBJECTID_NAMESPACE, v.lower()))
    return None


def load_id_map(path: Path) -> dict[str, str]:
    """Read an old_id,new_id CSV into a dict.  Blank rows are ignored."""
    id_map: dict[str, str] = {}
    with path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        header_set = {k.strip() for k in (reader.fieldnames or [])}
        missing = {"old_id", "new_id"} - header_set
        if missing:
            raise ValueError(f"{path.name} missing required headers: {sorted(missing)}")
        for raw_row in reader:
            row = {k.strip(): (v or "").strip() for k, v in raw_row.items() if k}
            if row["old_id"] and row["new_id"]:
                id_map[row["old_id"]] = row["new_id"]
    return id_map


def reconcile_rows(
    rows: Sequence[MappedRow],
    columns: Sequence[str],
    mode: str = "map",
    id_map: Mapping[str, str] | None = None,
    report: EntityReport | None = None,
) -> list[MappedRow]:
    """Return new rows with the reference columns rewritten."""
    if not columns:
        return list(rows)
    id_map = id_map or {}
    out: list[MappedRow] = []
    unresolved = 0

    for row in rows:
        updated = dict(row)
        for column in columns:
            value = updated.get(column)
            if not isinstance(value, str):
                continue
            new_value = objectid_to_uuid(value) if mode == "objectid" else id_map.get(value)
            if new_value is None:
                unresolved += 1
                if report is not None:
                    report.references_unresolved += 1
                    report.warnings.append(f"{column}: no mapping for {value!r}")
                continue
            updated[column] = new_value
        out.append(MappingProxyType(updated))

    if unresolved:
        log.warning("%d reference value(s) left unresolved in %s", unresolved, list(columns))
    return out
