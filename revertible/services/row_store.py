"""Row-level CRUD primitive and the JSON snapshot codec for undo log rows."""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import Date, DateTime, Numeric, Table, delete, insert, select, update
from sqlalchemy.orm import Session

from revertible.services.errors import NotFound
from revertible.services.schema_registry import RowSchema, SchemaRegistry

logger = logging.getLogger(__name__)


def encode_value(value: Any) -> Any:
    """Make a column value JSON-safe."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def encode_row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Snapshot a row for storage in the undo log."""
    if row is None:
        return None
    return {key: encode_value(value) for key, value in row.items()}


def decode_row(table: Table, data: Dict[str, Any]) -> Dict[str, Any]:
    """Turn an undo log snapshot back into column values for `table`.

    Keys that are no longer columns of the table are dropped.
    """
    values = {}
    for key, value in data.items():
        if key not in table.columns:
            logger.warning(f"Ignoring unknown column {key} in snapshot for {table.name}")
            continue
        column_type = table.columns[key].type
        if value is not None and isinstance(value, str):
            if isinstance(column_type, DateTime):
                value = datetime.fromisoformat(value)
            elif isinstance(column_type, Date):
                value = date.fromisoformat(value)
            elif isinstance(column_type, Numeric):
                value = Decimal(value)
        values[key] = value
    return values


class RowStore:
    """Reads and writes single rows of registered tables."""

    def __init__(self, registry: SchemaRegistry):
        """Initialize row store.

        Args:
            registry: Schema registry resolving table names to tables.
        """
        self.registry = registry

    def table(self, schema: RowSchema) -> Table:
        return self.registry.table(schema.table_name)

    def coerce_key(self, schema: RowSchema, value: Any) -> Any:
        """Convert a raw key (e.g. from a URL) to the primary key column type."""
        column = self.table(schema).columns[schema.primary_key_column]
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            return value
        if value is None or isinstance(value, python_type):
            return value
        try:
            return python_type(value)
        except (TypeError, ValueError):
            raise ValueError(
                f"Invalid primary key {value!r} for {schema.table_name}.{schema.primary_key_column}"
            )

    def key_dict(self, schema: RowSchema, value: Any) -> Dict[str, Any]:
        """Primary key as stored in the undo log."""
        return {schema.primary_key_column: encode_value(value)}

    def key_value(self, schema: RowSchema, key: Dict[str, Any]) -> Any:
        """Primary key value from an undo log key dict."""
        return self.coerce_key(schema, key[schema.primary_key_column])

    def read(self, db: Session, schema: RowSchema, key: Any, for_update: bool = False) -> Optional[Dict[str, Any]]:
        """Read one row as a dict, or None if it does not exist.

        Args:
            db: Database session.
            schema: Row schema.
            key: Primary key value.
            for_update: Lock the row where the backend supports it.
        """
        table = self.table(schema)
        stmt = select(table).where(table.c[schema.primary_key_column] == key)
        if for_update:
            stmt = stmt.with_for_update()
        row = db.execute(stmt).mappings().first()
        return dict(row) if row is not None else None

    def exists(self, db: Session, schema: RowSchema, key: Any) -> bool:
        table = self.table(schema)
        pk_column = table.c[schema.primary_key_column]
        return db.execute(select(pk_column).where(pk_column == key)).first() is not None

    def insert(self, db: Session, schema: RowSchema, values: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it as stored (defaults applied)."""
        table = self.table(schema)
        result = db.execute(insert(table).values(**values))
        key = values.get(schema.primary_key_column)
        if key is None:
            key = result.inserted_primary_key[0]
        return self.read(db, schema, key)

    def update(self, db: Session, schema: RowSchema, key: Any, values: Dict[str, Any]) -> Dict[str, Any]:
        """Update a row and return it as stored.

        Raises:
            NotFound: If no row has the key.
        """
        table = self.table(schema)
        pk_column = table.c[schema.primary_key_column]
        values = {k: v for k, v in values.items() if k != schema.primary_key_column}
        if values:
            result = db.execute(update(table).where(pk_column == key).values(**values))
            if result.rowcount == 0:
                raise NotFound(schema.table_name, key)
        row = self.read(db, schema, key)
        if row is None:
            raise NotFound(schema.table_name, key)
        return row

    def delete(self, db: Session, schema: RowSchema, key: Any) -> None:
        """Delete a row.

        Raises:
            NotFound: If no row has the key.
        """
        table = self.table(schema)
        result = db.execute(delete(table).where(table.c[schema.primary_key_column] == key))
        if result.rowcount == 0:
            raise NotFound(schema.table_name, key)

    def referencing_rows(self, db: Session, schema: RowSchema, key: Any) -> List[Tuple[str, Any]]:
        """Live rows of registered tables whose foreign keys point at this row."""
        found = []
        for child_schema, ref in self.registry.referencing(schema.table_name):
            if ref.referenced_column != schema.primary_key_column:
                continue
            child = self.table(child_schema)
            stmt = (
                select(child.c[child_schema.primary_key_column])
                .where(child.c[ref.column] == key)
                .limit(5)
            )
            for (child_key,) in db.execute(stmt):
                found.append((child_schema.table_name, child_key))
        return found
