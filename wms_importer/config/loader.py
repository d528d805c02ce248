from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..mapping.coercer import coerce_numeric
from ..models.config_models import (
    Coercion,
    DatabaseConfig,
    FieldSpec,
    ImportConfig,
    LookupSpec,
    TableProfile,
)

"""Config loader.

Responsibilities:
- Load YAML config (default config/import.yml)
- Validate it against the bundled JSON schema (import_schema.json)
- Apply defaults and build the typed ImportConfig / TableProfile models
- Check cross-field rules the schema cannot express (key fields exist,
  no duplicate field names)
"""

__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_PATH",
    "SCHEMA_PATH",
    "load_config",
    "parse_config",
]

SCHEMA_PATH = Path(__file__).parent / "import_schema.json"
DEFAULT_CONFIG_PATH = Path("config/import.yml")


class ConfigError(Exception):
    pass


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigError: schema file missing or invalid, or the data violates it
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigError(f"config validation failed at {where}: {e.message}") from e


def _parse_field(raw: dict[str, Any]) -> FieldSpec:
    coerce = Coercion(raw.get("coerce", Coercion.STRING.value))
    default = raw.get("default")
    if default is not None and coerce in (Coercion.INTEGER, Coercion.DECIMAL):
        # 既定値も列値と同じ型 (int / Decimal) に揃える
        parsed = coerce_numeric(default, coerce)
        if parsed is None:
            raise ConfigError(f"field '{raw['name']}': default {default!r} is not a number")
        default = parsed
    return FieldSpec(
        name=raw["name"],
        aliases=tuple(raw.get("aliases", ())),
        coerce=coerce,
        default=default,
        null_if_blank=raw.get("null_if_blank", True),
        identifier=raw.get("identifier", False),
        mandatory=raw.get("mandatory", False),
        placeholder_prefix=raw.get("placeholder_prefix"),
    )


def _parse_lookup(raw: dict[str, Any]) -> LookupSpec:
    return LookupSpec(
        field=raw["field"],
        target=raw["target"],
        table=raw["table"],
        column=raw.get("column", "name"),
        defaults=dict(raw.get("defaults") or {}),
        keep_source=raw.get("keep_source", False),
    )


def _parse_profile(name: str, raw: dict[str, Any]) -> TableProfile:
    fields = tuple(_parse_field(f) for f in raw["fields"])
    names = [f.name for f in fields]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigError(f"profile '{name}': duplicate fields {duplicates}")

    lookups = tuple(_parse_lookup(lk) for lk in raw.get("lookups", ()))
    for lk in lookups:
        if lk.field not in names:
            raise ConfigError(f"profile '{name}': lookup field '{lk.field}' is not a declared field")

    # lookup の target 列もキーに使える
    available = set(names) | {lk.target for lk in lookups}
    conflict_key = tuple(raw.get("conflict_key", ()))
    missing = [k for k in conflict_key if k not in available]
    if missing:
        raise ConfigError(f"profile '{name}': conflict_key fields {missing} are not declared")

    known = raw.get("known_columns")
    return TableProfile(
        name=name,
        table=raw["table"],
        fields=fields,
        conflict_key=conflict_key,
        lookups=lookups,
        known_columns=frozenset(known) if known is not None else None,
        sheet=raw.get("sheet"),
    )


def parse_config(data: dict[str, Any]) -> ImportConfig:
    """Validate an already loaded mapping and build the ImportConfig."""
    _validate_config_schema(data)

    db_raw = data.get("database") or {}
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    profiles = {name: _parse_profile(name, raw) for name, raw in data["profiles"].items()}
    return ImportConfig(
        profiles=profiles,
        database=db,
        batch_size=data.get("batch_size", 200),
        error_log_dir=data.get("error_log_dir", "./logs"),
        staging_path=data.get("staging_path"),
        notify_channel=data.get("notify_channel", "wms_changes"),
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> ImportConfig:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping, got {type(data).__name__}")
    return parse_config(data)
