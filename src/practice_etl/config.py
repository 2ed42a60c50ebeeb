"""practice_etl.config

YAML entity-mapping configuration for the legacy import pipeline.

One explicit ImportConfig is built at process start and passed into the
orchestrator; pipeline stages never read the environment themselves.

Example (config/entities.yml):

    batch_size: 100
    date_policy: "null"
    date_order: mdy
    entities:
      - entity: CLIENTS
        table: clients
        file: Client_export.csv
        rename:
          company_name: name
          created_date: created_at
          updated_date: updated_at
        column_types:
          tags: json
      - entity: PROJECTS
        table: projects
        references: [client_id]

Usage:
    from pathlib import Path
    from practice_etl.config import load_import_config

    config = load_import_config(Path("config/entities.yml"))
"""

from __future__ import annotations

import dataclasses
import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from practice_etl.normalize import DATE_ORDERS, DATE_POLICIES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BATCH_SIZE = 100

COLUMN_TYPES = frozenset({"date", "reference", "number", "boolean", "json", "string"})

REFERENCE_MODES = frozenset({"map", "objectid"})

VALID_ENTITY_KEYS = frozenset({
    "entity",
    "table",
    "primary_key",
    "file",
    "rename",
    "drop",
    "column_types",
    "defaults",
    "references",
    "reference_mode",
    "timestamp_columns",
})

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigValidationError(ValueError):
    """Raised when the entity-mapping YAML fails schema validation."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntityConfig:
    """One entity type → one target table, plus its column-transform rules."""

    entity: str
    table: str
    primary_key: str = "id"
    file: str | None = None
    rename: dict[str, str] = field(default_factory=dict)
    drop: frozenset[str] = frozenset()
    column_types: dict[str, str] = field(default_factory=dict)
    defaults: dict[str, Any] = field(default_factory=dict)
    references: tuple[str, ...] = ()
    reference_mode: str = "map"
    timestamp_columns: tuple[str, ...] = ("created_at", "updated_at")


@dataclass(frozen=True)
class ImportConfig:
    entities: tuple[EntityConfig, ...]
    batch_size: int = DEFAULT_BATCH_SIZE
    date_policy: str = "null"
    date_order: str = "mdy"
    delimiter: str = ","
    yaml_hash: str = ""

    def with_batch_size(self, batch_size: int | None) -> ImportConfig:
        if batch_size is None:
            return self
        if batch_size < 1:
            raise ConfigValidationError(f"batch_size must be >= 1, got {batch_size}")
        return dataclasses.replace(self, batch_size=batch_size)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_import_config(yaml_path: Path) -> ImportConfig:
    """Load, validate, and return an ImportConfig from a YAML file.

    Raises:
        ConfigValidationError: If the file content does not match the schema.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {yaml_path}: {exc}") from exc
    config = build_import_config(data)
    return dataclasses.replace(
        config, yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest()
    )


def build_import_config(data: Any) -> ImportConfig:
    """Validate a parsed YAML mapping and build the ImportConfig."""
    if not isinstance(data, dict):
        raise ConfigValidationError("YAML root must be a mapping.")

    batch_size = data.get("batch_size", DEFAULT_BATCH_SIZE)
    if not isinstance(batch_size, int) or isinstance(batch_size, bool) or batch_size < 1:
        raise ConfigValidationError(f"'batch_size' must be a positive integer, got {batch_size!r}.")

    # An unquoted YAML null means the 'null' policy.
    date_policy = data.get("date_policy", "null")
    date_policy = "null" if date_policy is None else str(date_policy)
    if date_policy not in DATE_POLICIES:
        raise ConfigValidationError(
            f"Invalid date_policy '{date_policy}'. Must be one of {list(DATE_POLICIES)}."
        )

    date_order = str(data.get("date_order", "mdy"))
    if date_order not in DATE_ORDERS:
        raise ConfigValidationError(
            f"Invalid date_order '{date_order}'. Must be one of {list(DATE_ORDERS)}."
        )

    delimiter = str(data.get("delimiter", ","))
    if len(delimiter) != 1 or delimiter in '"{}[]':
        raise ConfigValidationError(f"'delimiter' must be a single plain character, got {delimiter!r}.")

    raw_entities = data.get("entities")
    if not isinstance(raw_entities, list) or not raw_entities:
        raise ConfigValidationError("'entities' must be a non-empty list.")

    entities = tuple(_build_entity(item, idx) for idx, item in enumerate(raw_entities))

    seen: set[tuple[str, str]] = set()
    for ent in entities:
        key = (ent.entity, ent.table)
        if key in seen:
            raise ConfigValidationError(
                f"Duplicate entity mapping {ent.entity!r} → {ent.table!r}."
            )
        seen.add(key)

    return ImportConfig(
        entities=entities,
        batch_size=batch_size,
        date_policy=date_policy,
        date_order=date_order,
        delimiter=delimiter,
    )


def _str_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigValidationError(f"{where} must be a list of strings.")
    return list(value)


def _str_map(value: Any, where: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigValidationError(f"{where} must be a mapping.")
    return {str(k): str(v) for k, v in value.items()}


def _build_entity(item: Any, idx: int) -> EntityConfig:
    where = f"entities[{idx}]"
    if not isinstance(item, dict):
        raise ConfigValidationError(f"{where} must be a mapping.")

    unknown = set(item.keys()) - VALID_ENTITY_KEYS
    if unknown:
        raise ConfigValidationError(f"{where}: unknown keys {sorted(unknown)}.")

    entity = item.get("entity")
    table = item.get("table")
    if not isinstance(entity, str) or not entity.strip():
        raise ConfigValidationError(f"{where}: 'entity' is required.")
    if not isinstance(table, str) or not _TABLE_RE.match(table):
        raise ConfigValidationError(f"{where}: 'table' must be a plain [schema.]table name, got {table!r}.")

    primary_key = item.get("primary_key", "id")
    if not isinstance(primary_key, str) or not primary_key:
        raise ConfigValidationError(f"{where}: 'primary_key' must be a column name.")

    column_types = _str_map(item.get("column_types"), f"{where}.column_types")
    bad_types = {k: v for k, v in column_types.items() if v not in COLUMN_TYPES}
    if bad_types:
        raise ConfigValidationError(
            f"{where}.column_types: invalid types {bad_types}; "
            f"must be one of {sorted(COLUMN_TYPES)}."
        )

    defaults = item.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ConfigValidationError(f"{where}.defaults must be a mapping.")

    reference_mode = str(item.get("reference_mode", "map"))
    if reference_mode not in REFERENCE_MODES:
        raise ConfigValidationError(
            f"{where}: invalid reference_mode '{reference_mode}'; "
            f"must be one of {sorted(REFERENCE_MODES)}."
        )

    timestamp_columns = _str_list(
        item.get("timestamp_columns", ["created_at", "updated_at"]),
        f"{where}.timestamp_columns",
    )

    rename = _str_map(item.get("rename"), f"{where}.rename")
    targets: dict[str, str] = {}
    for source, target in rename.items():
        if target in targets:
            raise ConfigValidationError(
                f"{where}.rename: {targets[target]!r} and {source!r} both map to {target!r}."
            )
        targets[target] = source

    file_name = item.get("file")
    if file_name is not None and not isinstance(file_name, str):
        raise ConfigValidationError(f"{where}: 'file' must be a string.")

    return EntityConfig(
        entity=entity.strip(),
        table=table,
        primary_key=primary_key,
        file=file_name,
        rename=rename,
        drop=frozenset(_str_list(item.get("drop"), f"{where}.drop")),
        column_types=column_types,
        defaults={str(k): v for k, v in defaults.items()},
        references=tuple(_str_list(item.get("references"), f"{where}.references")),
        reference_mode=reference_mode,
        timestamp_columns=tuple(timestamp_columns),
    )
