"""Record writer: idempotent DDL sync and upsert of fetched records.

``RecordWriter`` is the contract the connector consumes.  ``SQLRecordWriter``
implements it with SQLAlchemy Core against the application database: one
table per resource, named ``<connector>__<resource>``, keyed by the
resource's id column.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Float,
    MetaData,
    String,
    Table,
    Text,
    func,
    inspect,
    select,
    text,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from datasync.connectors.schema import ID_FIELD
from datasync.status.store import StatusStore

logger = logging.getLogger(__name__)


class RecordWriter(Protocol):
    def sync_table_schema(self, resource_name: str, schema: dict[str, Any]) -> None:
        """Create or extend the table for *resource_name*; safe to repeat."""

    def sync_table_records(self, resource_name: str, schema: dict[str, Any], records: list[dict[str, Any]]) -> int:
        """Upsert *records* keyed by id; returns the number written."""

    def drop_tables(self, resource_names: list[str]) -> None:
        """Drop every table owned by the connector."""


def _identifier(value: str) -> str:
    return re.sub(r"[^0-9a-zA-Z_]", "_", value)


def table_name_for(connector_id: str, resource_name: str) -> str:
    """``gmail`` + ``Message`` -> ``gmail__message``."""
    return f"{_identifier(connector_id.replace('.', '_'))}__{_identifier(resource_name.lower())}"


def _column_type(fragment: dict[str, Any], primary_key: bool = False) -> Any:
    declared = fragment.get("type")
    if isinstance(declared, list):
        declared = next((item for item in declared if item != "null"), None)
    if declared == "integer":
        return BigInteger()
    if declared == "number":
        return Float()
    if declared == "boolean":
        return Boolean()
    if declared in ("object", "array"):
        return JSON()
    # Strings, date-times (kept as ISO text) and anything untyped
    return String(255) if primary_key else Text()


class SQLRecordWriter:
    """Writes a connector's resources into tables of the application database."""

    def __init__(self, db: Session, connector_id: str, id_columns: dict[str, str] | None = None) -> None:
        self.db = db
        self.connector_id = connector_id
        self.id_columns = dict(id_columns or {})
        self.store = StatusStore(db)
        self._metadata = MetaData()
        self._tables: dict[str, Table] = {}

    def table_name(self, resource_name: str) -> str:
        return table_name_for(self.connector_id, resource_name)

    def id_column(self, resource_name: str) -> str:
        return self.id_columns.get(resource_name, ID_FIELD)

    def _build_table(self, resource_name: str, schema: dict[str, Any]) -> Table:
        name = self.table_name(resource_name)
        if name in self._metadata.tables:
            self._metadata.remove(self._metadata.tables[name])

        id_column = self.id_column(resource_name)
        properties = schema.get("properties", {})
        columns = [
            Column(
                id_column,
                _column_type(properties.get(id_column, {}), primary_key=True),
                primary_key=True,
                autoincrement=False,
            )
        ]
        for prop, fragment in properties.items():
            if prop == id_column:
                continue
            columns.append(Column(prop, _column_type(fragment if isinstance(fragment, dict) else {}), nullable=True))
        return Table(name, self._metadata, *columns)

    # -- Schema ----------------------------------------------------------------

    def sync_table_schema(self, resource_name: str, schema: dict[str, Any]) -> None:
        table = self._build_table(resource_name, schema)
        conn = self.db.connection()
        inspector = inspect(conn)

        if not inspector.has_table(table.name):
            table.create(bind=conn)
            logger.info("sync_table_schema: created table %s", table.name)
        else:
            existing = {column["name"] for column in inspector.get_columns(table.name)}
            preparer = conn.dialect.identifier_preparer
            for column in table.columns:
                if column.name in existing:
                    continue
                column_type = column.type.compile(dialect=conn.dialect)
                conn.execute(
                    text(
                        f"ALTER TABLE {preparer.format_table(table)} "
                        f"ADD COLUMN {preparer.format_column(column)} {column_type}"
                    )
                )
                logger.info("sync_table_schema: added column %s.%s", table.name, column.name)

        self.db.commit()
        self._tables[resource_name] = table
        self.store.touch_table_status(self.connector_id, table.name)

    # -- Records ---------------------------------------------------------------

    def _row(self, table: Table, record: dict[str, Any]) -> dict[str, Any]:
        row: dict[str, Any] = {}
        for column in table.columns:
            value = record.get(column.name)
            if isinstance(value, (dict, list)) and not isinstance(column.type, JSON):
                value = json.dumps(value)
            row[column.name] = value
        return row

    def sync_table_records(self, resource_name: str, schema: dict[str, Any], records: list[dict[str, Any]]) -> int:
        if not records:
            return 0
        table = self._tables.get(resource_name)
        if table is None:
            self.sync_table_schema(resource_name, schema)
            table = self._tables[resource_name]

        unknown = {key for record in records for key in record} - set(table.columns.keys())
        if unknown:
            logger.debug("sync_table_records: %s ignoring undeclared field(s) %s", table.name, sorted(unknown))

        id_column = self.id_column(resource_name)
        # Last write wins for duplicate ids within a batch
        rows_by_id: dict[Any, dict[str, Any]] = {}
        for record in records:
            row = self._row(table, record)
            rows_by_id[row[id_column]] = row
        rows = list(rows_by_id.values())

        dialect = self.db.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            self._upsert_native(table, id_column, rows, dialect)
        else:
            self._upsert_generic(table, id_column, rows)
        self.db.commit()

        self.store.touch_table_status(self.connector_id, table.name)
        logger.info("sync_table_records: wrote %d record(s) to %s", len(records), table.name)
        return len(records)

    def _upsert_native(self, table: Table, id_column: str, rows: list[dict[str, Any]], dialect: str) -> None:
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(table).values(rows)
        updates = {
            column.name: stmt.excluded[column.name]
            for column in table.columns
            if column.name != id_column
        }
        if updates:
            stmt = stmt.on_conflict_do_update(index_elements=[id_column], set_=updates)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[id_column])
        self.db.execute(stmt)

    def _upsert_generic(self, table: Table, id_column: str, rows: list[dict[str, Any]]) -> None:
        key = table.c[id_column]
        for row in rows:
            exists = self.db.execute(select(key).where(key == row[id_column])).first()
            if exists is None:
                self.db.execute(table.insert().values(**row))
            else:
                self.db.execute(update(table).where(key == row[id_column]).values(**row))

    # -- Teardown --------------------------------------------------------------

    def drop_tables(self, resource_names: list[str]) -> None:
        conn = self.db.connection()
        inspector = inspect(conn)
        for resource_name in resource_names:
            name = self.table_name(resource_name)
            if inspector.has_table(name):
                Table(name, MetaData()).drop(bind=conn)
                logger.info("drop_tables: dropped table %s", name)
            self._tables.pop(resource_name, None)
        self.db.commit()
        self.store.delete_table_status(self.connector_id)

    def count(self, resource_name: str) -> int:
        """Number of rows stored for *resource_name*."""
        table = self._tables.get(resource_name)
        if table is None:
            table = Table(self.table_name(resource_name), MetaData(), autoload_with=self.db.connection())
        return self.db.execute(select(func.count()).select_from(table)).scalar_one()
