"""Connector catalog.

A keyed lookup from connector id to its configuration: the resources it
loads (name, JSON schema, id column) and the factory that builds its source
adapter.

Two kinds of connector live side by side.  Bundled connectors are
registered in code (``build_default_catalog()``) and are immutable.
User-defined connectors are rows in ``connector_configs`` created through
``Catalog.create_config``; they are looked up whenever a session is passed
in, and their ids can never shadow a bundled one.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from datasync.connectors.schema import ID_FIELD
from datasync.connectors.secrets import decrypt_config, encrypt_config
from datasync.core import crud
from datasync.core.models import ConnectorConfigEntry
from datasync.errors import (
    BundledConnectorError,
    ConnectorConflictError,
    ConnectorNotFoundError,
    InvalidConnectorConfigError,
    ProviderFetchError,
)
from datasync.sources.base import SourceAdapter
from datasync.sources.gmail import MESSAGE_SCHEMA
from datasync.sources.google_calendar import EVENT_SCHEMA
from datasync.sources.plaid import ACCOUNT_SCHEMA, TRANSACTION_SCHEMA
from datasync.sources.registry import create_adapter
from datasync.sources.sql import SQLAdapter
from datasync.sources.youtube import ACTIVITY_SCHEMA

if TYPE_CHECKING:
    from datasync.connectors.connector import DataConnector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSpec:
    name: str
    schema: dict[str, Any]
    id_column: str = ID_FIELD

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "schema": self.schema, "id_column": self.id_column}


@dataclass(frozen=True)
class ConnectorConfig:
    id: str
    name: str
    description: str
    resources: list[ResourceSpec] = field(default_factory=list)
    adapter_factory: Callable[[], SourceAdapter] | None = None
    is_removable: bool = False

    def resource(self, name: str) -> ResourceSpec | None:
        return next((resource for resource in self.resources if resource.name == name), None)

    @property
    def resource_names(self) -> list[str]:
        return [resource.name for resource in self.resources]


# Resources each built-in adapter loads, keyed by Google fetcher name
GOOGLE_RESOURCES: dict[str, list[ResourceSpec]] = {
    "gmail": [ResourceSpec("Message", MESSAGE_SCHEMA)],
    "google_calendar": [ResourceSpec("Event", EVENT_SCHEMA)],
    "youtube": [ResourceSpec("Activity", ACTIVITY_SCHEMA)],
}

PLAID_RESOURCES: list[ResourceSpec] = [
    ResourceSpec("Account", ACCOUNT_SCHEMA, id_column="account_id"),
    ResourceSpec("Transaction", TRANSACTION_SCHEMA, id_column="transaction_id"),
]


def generate_connector_id(name: str) -> str:
    """Derive a SQL-safe id from *name*, e.g. ``"Sales DB"`` -> ``"sales_db_1a2b3c"``."""
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_") or "connector"
    return f"{slug}_{uuid.uuid4().hex[:6]}"


class Catalog:
    """Bundled connector configs plus user-defined ones from the database."""

    def __init__(self) -> None:
        self._configs: dict[str, ConnectorConfig] = {}

    def register(self, config: ConnectorConfig) -> ConnectorConfig:
        """Add a bundled connector."""
        if config.adapter_factory is None:
            raise ValueError(f"Connector {config.id} has no adapter factory")
        self._configs[config.id] = config
        return config

    def is_bundled(self, connector_id: str) -> bool:
        return connector_id in self._configs

    def __contains__(self, connector_id: object) -> bool:
        return connector_id in self._configs

    def get_config(self, connector_id: str, db: Session | None = None) -> ConnectorConfig:
        """Bundled configs first, then (given a session) the stored ones."""
        config = self._configs.get(connector_id)
        if config is not None:
            return config
        if db is not None:
            entry = crud.get_by_id(db, ConnectorConfigEntry, connector_id)
            if entry is not None:
                return _entry_to_config(entry)
        raise ConnectorNotFoundError(f"Connector config not found: {connector_id}")

    def list_configs(self, db: Session | None = None) -> list[ConnectorConfig]:
        configs = list(self._configs.values())
        if db is not None:
            entries = crud.get_all(db, ConnectorConfigEntry, order_by=ConnectorConfigEntry.created_at)
            configs.extend(_entry_to_config(entry) for entry in entries)
        return configs

    def get_connector(self, connector_id: str, db: Session) -> DataConnector:
        from datasync.connectors.connector import DataConnector

        return DataConnector(self.get_config(connector_id, db), db)

    # -- User-defined connectors ----------------------------------------------

    def create_config(
        self,
        db: Session,
        name: str,
        adapter: str,
        adapter_config: dict[str, Any] | None = None,
        connector_id: str | None = None,
        description: str = "",
        resources: list[dict[str, Any]] | None = None,
    ) -> ConnectorConfig:
        """Validate and store a user-defined connector.

        Without explicit *resources* they are derived from the adapter: SQL
        tables are reflected, built-in APIs use their fixed resources.
        Raises ``ConnectorConflictError`` if the id is taken (bundled or
        stored) and ``InvalidConnectorConfigError`` if the adapter cannot be
        built from *adapter_config*.
        """
        connector_id = connector_id or generate_connector_id(name)
        if self.is_bundled(connector_id):
            raise ConnectorConflictError(f"Connector with id {connector_id} already exists as bundled connector")
        if crud.get_by_id(db, ConnectorConfigEntry, connector_id) is not None:
            raise ConnectorConflictError(f"Connector with id {connector_id} already exists")

        adapter_config = dict(adapter_config or {})
        try:
            create_adapter(adapter, adapter_config).close()
        except ValueError as exc:
            raise InvalidConnectorConfigError(str(exc)) from exc

        if resources:
            specs = [_resource_from_dict(resource) for resource in resources]
        else:
            specs = _derive_resources(adapter, adapter_config)

        try:
            entry = crud.create(
                db,
                ConnectorConfigEntry,
                id=connector_id,
                name=name,
                description=description or f"Loads data from {name}.",
                adapter=adapter,
                adapter_config=encrypt_config(adapter_config),
                resources=[spec.to_dict() for spec in specs],
            )
        except IntegrityError as exc:
            db.rollback()
            raise ConnectorConflictError(f"Connector with id {connector_id} already exists") from exc

        logger.info("create_config: connector=%s adapter=%s resources=%d", connector_id, adapter, len(specs))
        return _entry_to_config(entry)

    def delete_config(self, db: Session, connector_id: str) -> None:
        """Disconnect a user-defined connector, dropping its data, then forget it."""
        if self.is_bundled(connector_id):
            raise BundledConnectorError("Cannot delete bundled data connectors")
        entry = crud.get_by_id(db, ConnectorConfigEntry, connector_id)
        if entry is None:
            raise ConnectorNotFoundError(f"Connector config not found: {connector_id}")

        self.get_connector(connector_id, db).disconnect()

        db.delete(entry)
        db.commit()
        logger.info("delete_config: connector=%s", connector_id)


def _resource_from_dict(data: dict[str, Any]) -> ResourceSpec:
    name = data.get("name")
    schema = data.get("schema")
    if not name or not isinstance(schema, dict):
        raise InvalidConnectorConfigError("Each resource needs a name and a JSON schema object")
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as exc:
        raise InvalidConnectorConfigError(f"Invalid schema for resource {name}: {exc.message}") from exc
    return ResourceSpec(name=name, schema=schema, id_column=data.get("id_column") or ID_FIELD)


def _derive_resources(adapter: str, adapter_config: dict[str, Any]) -> list[ResourceSpec]:
    if adapter == "SQLAdapter":
        try:
            names, specs = _reflect_sql_resources(
                adapter_config["url"], adapter_config.get("tables"), adapter_config.get("schema")
            )
        except ProviderFetchError as exc:
            raise InvalidConnectorConfigError(f"Could not read source database: {exc}") from exc
        # Pin the table list so later schema drift in the source is ignored
        adapter_config["tables"] = names
        return specs
    if adapter == "GoogleAPIAdapter":
        return list(GOOGLE_RESOURCES[adapter_config["fetcher"]])
    if adapter == "PlaidAdapter":
        return list(PLAID_RESOURCES)
    raise InvalidConnectorConfigError(f"Resources must be given explicitly for {adapter}")


def _entry_to_config(entry: ConnectorConfigEntry) -> ConnectorConfig:
    adapter = entry.adapter
    adapter_config = decrypt_config(entry.adapter_config)
    return ConnectorConfig(
        id=entry.id,
        name=entry.name,
        description=entry.description,
        resources=[_resource_from_dict(resource) for resource in entry.resources or []],
        adapter_factory=lambda: create_adapter(adapter, adapter_config),
        is_removable=True,
    )


def _reflect_sql_resources(
    url: str,
    tables: list[str] | None,
    schema: str | None,
) -> tuple[list[str], list[ResourceSpec]]:
    reader = SQLAdapter(url=url, tables=tables, schema=schema)
    try:
        names = list(tables) if tables else reader.list_tables()
        resources = [
            ResourceSpec(
                name=table,
                schema=reader.describe_table(table),
                id_column=reader.primary_key_column(table) or ID_FIELD,
            )
            for table in names
        ]
    finally:
        reader.close()
    return names, resources


def sql_connector_config(
    connector_id: str,
    name: str,
    url: str,
    tables: list[str] | None = None,
    schema: str | None = None,
    description: str = "",
) -> ConnectorConfig:
    """Describe a SQL database as a bundled connector by reflecting its tables.

    Every table listed (or every table found, when *tables* is omitted)
    becomes a resource whose schema mirrors the table's columns.
    """
    names, resources = _reflect_sql_resources(url, tables, schema)
    config = {"url": url, "tables": names, "schema": schema}
    return ConnectorConfig(
        id=connector_id,
        name=name,
        description=description or f"Loads tables from {name}.",
        resources=resources,
        adapter_factory=lambda: create_adapter("SQLAdapter", config),
    )


def _google_connector(connector_id: str, name: str, description: str) -> ConnectorConfig:
    return ConnectorConfig(
        id=connector_id,
        name=name,
        description=description,
        resources=list(GOOGLE_RESOURCES[connector_id]),
        adapter_factory=lambda: create_adapter("GoogleAPIAdapter", {"fetcher": connector_id}),
    )


def build_default_catalog() -> Catalog:
    catalog = Catalog()
    catalog.register(_google_connector("gmail", "Gmail", "Loads Gmail messages with full details."))
    catalog.register(_google_connector("google_calendar", "Google Calendar", "Loads Google Calendar events data."))
    catalog.register(
        _google_connector(
            "youtube",
            "YouTube Activity",
            "Loads YouTube activity data including uploads, likes, favorites, comments, and subscriptions.",
        )
    )
    catalog.register(
        ConnectorConfig(
            id="plaid",
            name="Plaid",
            description="Loads financial data from Plaid including transactions, accounts, and balances.",
            resources=list(PLAID_RESOURCES),
            adapter_factory=lambda: create_adapter("PlaidAdapter", {}),
        )
    )
    return catalog


@lru_cache(maxsize=1)
def default_catalog() -> Catalog:
    """The process-wide catalog shared by the API and the worker."""
    return build_default_catalog()
