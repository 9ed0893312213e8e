"""Registry of table shapes the object store is allowed to mutate."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import MetaData, Table

from revertible.services.errors import NotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForeignKeyRef:
    """`column` of the owning table references `referenced_table.referenced_column`."""

    column: str
    referenced_table: str
    referenced_column: str


@dataclass
class RowSchema:
    """Shape of one entity table as seen by the interceptor and rollback engine."""

    table_name: str
    primary_key_column: str
    columns: List[str]
    foreign_keys: List[ForeignKeyRef] = field(default_factory=list)
    category: str = "data"
    label: Optional[str] = None
    display_column: Optional[str] = None
    before_create: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    before_update: Optional[Callable[[Dict[str, Any], Any], Dict[str, Any]]] = None

    @property
    def entity_label(self) -> str:
        return self.label or self.table_name

    def display_name(self, row: Optional[Dict[str, Any]]) -> Optional[str]:
        """Human name of a row, if the schema declares one."""
        if not row or not self.display_column:
            return None
        value = row.get(self.display_column)
        return None if value is None else str(value)


class SchemaRegistry:
    """Lookup of RowSchema by table name, backed by SQLAlchemy table metadata."""

    def __init__(self, metadata: MetaData):
        """Initialize registry.

        Args:
            metadata: Metadata holding the tables that registered schemas name.
        """
        self.metadata = metadata
        self._schemas: Dict[str, RowSchema] = {}

    @classmethod
    def from_metadata(cls, metadata: MetaData, entities) -> "SchemaRegistry":
        """Registry with one schema per (model, category, label, display column) entity."""
        registry = cls(metadata)
        for model, category, label, display_column in entities:
            registry.register_table(
                model.__table__, category=category, label=label, display_column=display_column
            )
        return registry

    def register(self, schema: RowSchema) -> RowSchema:
        """Register a schema, replacing any previous one for the same table."""
        if schema.table_name not in self.metadata.tables:
            raise ValueError(f"Table {schema.table_name} is not defined in metadata")
        self._schemas[schema.table_name] = schema
        logger.debug(f"Registered schema for {schema.table_name} ({schema.category})")
        return schema

    def register_table(
        self,
        table: Table,
        category: str,
        label: Optional[str] = None,
        display_column: Optional[str] = None,
        **hooks,
    ) -> RowSchema:
        """Build a RowSchema from a Table definition and register it."""
        primary_keys = [col.name for col in table.primary_key.columns]
        if len(primary_keys) != 1:
            raise ValueError(f"Table {table.name} must have exactly one primary key column")

        foreign_keys = [
            ForeignKeyRef(
                column=fk.parent.name,
                referenced_table=fk.column.table.name,
                referenced_column=fk.column.name,
            )
            for fk in table.foreign_keys
        ]
        schema = RowSchema(
            table_name=table.name,
            primary_key_column=primary_keys[0],
            columns=[col.name for col in table.columns],
            foreign_keys=sorted(foreign_keys, key=lambda ref: ref.column),
            category=category,
            label=label,
            display_column=display_column,
            **hooks,
        )
        return self.register(schema)

    def get(self, table_name: str) -> RowSchema:
        """Get the schema for a table.

        Raises:
            NotFound: If the table is not registered.
        """
        schema = self._schemas.get(table_name)
        if schema is None:
            raise NotFound("table", table_name)
        return schema

    def table(self, table_name: str) -> Table:
        """SQLAlchemy Table for a registered schema."""
        return self.metadata.tables[self.get(table_name).table_name]

    def category_of(self, table_name: str) -> str:
        """Entity category label, `other` for unregistered tables."""
        schema = self._schemas.get(table_name)
        return schema.category if schema else "other"

    def label_of(self, table_name: str) -> str:
        schema = self._schemas.get(table_name)
        return schema.entity_label if schema else table_name

    def referencing(self, table_name: str) -> List[Tuple[RowSchema, ForeignKeyRef]]:
        """All (schema, foreign key) pairs that point at `table_name`."""
        return [
            (schema, ref)
            for schema in self._schemas.values()
            for ref in schema.foreign_keys
            if ref.referenced_table == table_name
        ]

    def table_names(self) -> List[str]:
        return sorted(self._schemas)

    def __contains__(self, table_name: str) -> bool:
        return table_name in self._schemas


def build_default_registry() -> SchemaRegistry:
    """Registry with the workflow builder entities."""
    from revertible.database.database import Base
    from revertible.models.workflow import WORKFLOW_ENTITIES

    return SchemaRegistry.from_metadata(Base.metadata, WORKFLOW_ENTITIES)
