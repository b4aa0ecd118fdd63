"""Entity attribute schemas and their migration into SQLite databases."""

from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence

from evmworker.intranet import PathToEntity
from evmworker.worker import Worker

__all__ = [
    "INDEX_PREFIX",
    "DELETED_AT_COLUMN",
    "ID_COLUMN",
    "INTERNAL_PROJECT",
    "EntityAttribute",
    "CustomFieldParser",
    "SchemaError",
    "Repository",
    "map_field_type",
    "index_name",
    "build_column_definition",
    "field_tag",
]

log = logging.getLogger(__name__)

INDEX_PREFIX = "idx_"
DELETED_AT_COLUMN = "deleted_at"
ID_COLUMN = "id"
INTERNAL_PROJECT = "sys"

_TEXT_TYPES = frozenset(
    {"string", "constant", "text", "ref", "uid", "url", "email", "phone"}
)
_INTEGER_TYPES = frozenset({"int8", "int32", "int64"})
_REAL_TYPES = frozenset({"float32", "float64"})
_DB_CONFIG_TYPES = frozenset({"DB", "DATABASE"})


class SchemaError(Exception):
    """Raised when a schema or database configuration cannot be handled."""


@dataclass
class EntityAttribute:
    """One attribute of an entity as stored in a table column."""

    code: str = ""
    field_type: str = ""
    unique: bool = False
    indexed: bool = False
    value_source: str = ""


class CustomFieldParser(ABC):
    """Parses and stores a field type that the built-in types do not cover.

    Custom fields carry no built-in uniqueness constraint; values arrive as
    strings and are turned into stored values by :meth:`parse_param`.
    """

    @abstractmethod
    def field_parser_name(self) -> str:
        """Return the name attributes use to refer to this parser."""

    @abstractmethod
    def validate(self, value: Any) -> None:
        """Raise ``ValueError`` if ``value`` is not acceptable."""

    @abstractmethod
    def parse_param(self, text: str) -> Any:
        """Turn a string parameter into the value to store."""

    @abstractmethod
    def create_column(
        self, conn: sqlite3.Connection, table_name: str, column_name: str
    ) -> None:
        """Add the column for this field to ``table_name``."""

    def default_value(self) -> Any:
        """Return the default value; None unless overridden."""
        return None

    def description(self) -> str:
        """Return a description of the field."""
        return ""


class DomainCache(Protocol):
    """Cache of domain models; the repository needs attribute lookup."""

    def entity_attrs(self, path: PathToEntity) -> Sequence[EntityAttribute]:
        """Return the attributes of the entity at ``path``."""


SharedConfigureLookup = Callable[[str], Any]


@dataclass
class _DBConf:
    db_name: str = ""
    type: str = ""
    location: str = ""


def map_field_type(field_type: str) -> str:
    """Return the SQLite column type for an attribute field type."""
    if field_type == "id":
        return "TEXT PRIMARY KEY"
    if field_type in _TEXT_TYPES:
        return "TEXT"
    if field_type in _INTEGER_TYPES:
        return "INTEGER"
    if field_type in _REAL_TYPES:
        return "REAL"
    if field_type in ("boolean", "datetime"):
        return "INTEGER"
    raise SchemaError(f"unknown field type: {field_type}")


def index_name(table_name: str, column_name: str) -> str:
    """Return the name of the index on ``column_name`` of ``table_name``."""
    return f"{INDEX_PREFIX}{table_name}_{column_name}"


def build_column_definition(attr: EntityAttribute) -> str:
    """Return the column definition used to add ``attr`` to a SQLite table."""
    column_type = map_field_type(attr.field_type)
    constraints = []
    if attr.unique:
        constraints.append("UNIQUE")
    if attr.field_type == "id" and attr.code == ID_COLUMN:
        constraints.append("NOT NULL")
    return f"{attr.code} {column_type} {' '.join(constraints)}"


def field_tag(attr: EntityAttribute) -> Optional[str]:
    """Return the migration tag for ``attr``; None for custom or unknown types."""
    if attr.field_type == "id":
        return 'gorm:"column:id;primary_key;varchar(36)"'
    if attr.field_type == "custom":
        return None
    known = (
        attr.field_type in _TEXT_TYPES
        or attr.field_type in _INTEGER_TYPES
        or attr.field_type in _REAL_TYPES
        or attr.field_type in ("boolean", "datetime")
    )
    if not known:
        log.debug("unknown field type: %s", attr.field_type)
        return None
    if attr.field_type == "datetime" and attr.code == DELETED_AT_COLUMN:
        return 'gorm:"column:deleted_at;index;default:0"'
    parts = [f"column:{attr.code}"]
    if attr.unique:
        parts.append("unique")
    if attr.indexed:
        parts.append("index")
    return 'gorm:"' + ";".join(parts) + '"'


def _table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table_name,),
    ).fetchone()
    return row is not None


def _column_exists(conn: sqlite3.Connection, table_name: str, column: str) -> bool:
    escaped = table_name.replace('"', '""')
    rows = conn.execute(f'PRAGMA table_info("{escaped}")').fetchall()
    return any(row[1] == column for row in rows)


class Repository:
    """Manages project databases, custom field parsers and schema migration.

    ``shared_configure`` maps a shared configuration id to an object with
    ``type`` and ``value`` attributes, or None when it does not exist.
    Database configurations hold JSON with ``db_name``, ``type`` and
    ``location``; only SQLite databases are supported.
    """

    def __init__(
        self,
        shared_configure: Optional[SharedConfigureLookup] = None,
        domain_cache: Optional[DomainCache] = None,
    ) -> None:
        self._shared_configure = shared_configure
        self._domain_cache = domain_cache
        self._custom_fields: dict[str, CustomFieldParser] = {}
        self._databases: dict[str, sqlite3.Connection] = {}

    def __enter__(self) -> "Repository":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def register_custom_field_parser(self, parser: CustomFieldParser) -> None:
        """Register ``parser``; an already registered name keeps its parser."""
        name = parser.field_parser_name()
        if not name:
            raise ValueError("a custom field parser must have a name")
        if name in self._custom_fields:
            log.error("custom field parser already registered: %s", name)
            return
        self._custom_fields[name] = parser

    def get_custom_field_parser(self, name: str) -> Optional[CustomFieldParser]:
        """Return the parser registered as ``name``, or None."""
        return self._custom_fields.get(name)

    def add_db_from_shared_config(self, sid: str) -> None:
        """Open the database described by shared configuration ``sid``.

        Configurations that are not database configurations are ignored.
        """
        if not sid:
            raise SchemaError("database configuration id must not be empty")
        config = self._shared_configure(sid) if self._shared_configure else None
        if config is None:
            raise SchemaError(f"no database configuration in the config center: {sid}")
        config_type = str(getattr(config, "type", ""))
        if config_type.upper() not in _DB_CONFIG_TYPES:
            log.debug("not a database configuration: %s", config_type)
            return
        conf = self._parse_db_conf(getattr(config, "value", ""))
        if not conf.db_name or not conf.type or not conf.location:
            raise SchemaError("incomplete database configuration")
        if self.has_db(conf.db_name):
            return
        self._register_db(conf)

    @staticmethod
    def _parse_db_conf(text: str) -> _DBConf:
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError) as exc:
            log.debug("failed to parse database configuration: %s", exc)
            raise SchemaError(f"invalid database configuration: {exc}") from exc
        if not isinstance(data, dict):
            raise SchemaError("database configuration must be a JSON object")
        values = {}
        for key in ("db_name", "type", "location"):
            value = data.get(key, "")
            if not isinstance(value, str):
                raise SchemaError(f"database configuration {key!r} must be a string")
            values[key] = value
        return _DBConf(**values)

    def _register_db(self, conf: _DBConf) -> None:
        if "sqlite" not in conf.type.lower():
            raise SchemaError(f"unsupported database type: {conf.type}")
        try:
            conn = sqlite3.connect(conf.location, check_same_thread=False)
        except sqlite3.Error as exc:
            raise SchemaError(f"cannot open database {conf.db_name}: {exc}") from exc
        self._databases[conf.db_name] = conn

    def has_db(self, name: str) -> bool:
        """Return whether a database named ``name`` is open."""
        return name in self._databases

    def use(self, name: str) -> Optional[sqlite3.Connection]:
        """Return the connection of database ``name``, or None."""
        return self._databases.get(name)

    def sync_schema(self, worker: Worker) -> list[str]:
        """Migrate the worker's entity table; return the columns added."""
        db_name = worker.project
        if self.has_db(db_name):
            attrs = (
                list(self._domain_cache.entity_attrs(worker.path_to_entity()))
                if self._domain_cache is not None
                else []
            )
            if not attrs:
                raise SchemaError(
                    f"no entity attributes found: {db_name}.{worker.context}."
                    f"{worker.entity}@{worker.version_label}"
                )
            conn = self._databases[db_name]
            return self.migrate_sqlite_table(conn, worker.table_name(), attrs)
        if db_name == INTERNAL_PROJECT:
            log.debug("skipping internal project: %s", db_name)
            return []
        raise SchemaError(f"target database {db_name} is not configured")

    def migrate_sqlite_table(
        self,
        conn: sqlite3.Connection,
        table_name: str,
        attrs: Sequence[EntityAttribute],
    ) -> list[str]:
        """Create the table if needed and add missing columns in one transaction.

        Columns that already exist are left alone; a column that cannot be
        added is logged and skipped. Returns the codes of the columns added.
        """
        if not attrs:
            log.debug("migration: empty attribute list, nothing to do")
            return []
        began = not conn.in_transaction
        added: list[str] = []
        try:
            if began:
                conn.execute("BEGIN")
            if not _table_exists(conn, table_name):
                self._create_table(conn, table_name)
            for attr in attrs:
                if _column_exists(conn, table_name, attr.code):
                    log.info("column exists: %s.%s", table_name, attr.code)
                    continue
                try:
                    self._create_column(conn, table_name, attr)
                except (sqlite3.Error, SchemaError, ValueError) as exc:
                    log.error(
                        "column migration failed: %s.%s - %s", table_name, attr.code, exc
                    )
                    continue
                added.append(attr.code)
        except (sqlite3.Error, SchemaError) as exc:
            if began and conn.in_transaction:
                conn.rollback()
            log.error("migration transaction failed: %s - %s", table_name, exc)
            return []
        if began:
            conn.commit()
        return added

    def _create_table(self, conn: sqlite3.Connection, table_name: str) -> None:
        statement = "\n".join(
            (
                f"CREATE TABLE {table_name} (",
                f"{ID_COLUMN} TEXT PRIMARY KEY NOT NULL,",
                f"{DELETED_AT_COLUMN} INTEGER DEFAULT 0",
                ");",
            )
        )
        conn.execute(statement)
        try:
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS "
                f"{index_name(table_name, DELETED_AT_COLUMN)} "
                f"ON {table_name} ({DELETED_AT_COLUMN})"
            )
        except sqlite3.Error as exc:
            raise SchemaError(f"failed to create deleted_at index: {exc}") from exc
        log.info("table created: %s", table_name)

    def _create_column(
        self, conn: sqlite3.Connection, table_name: str, attr: EntityAttribute
    ) -> None:
        if attr.field_type == "custom":
            self._handle_custom_field(conn, table_name, attr)
            return
        definition = build_column_definition(attr)
        conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {definition}")
        if attr.indexed:
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS {index_name(table_name, attr.code)}"
                f" ON {table_name}({attr.code})"
            )
        log.debug("column created: %s.%s", table_name, attr.code)

    def _handle_custom_field(
        self, conn: sqlite3.Connection, table_name: str, attr: EntityAttribute
    ) -> None:
        key = attr.value_source.strip()
        parser = self._custom_fields.get(key)
        if parser is None:
            raise SchemaError(
                f"no custom field parser registered: {key} (field: {attr.code})"
            )
        parser.create_column(conn, table_name, attr.code)

    def close(self) -> None:
        """Close every open database."""
        for conn in self._databases.values():
            conn.close()
        self._databases.clear()