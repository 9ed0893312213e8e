"""Object store facade: the only write path to registered entity tables."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from revertible.models.checkpoint import CheckpointSource
from revertible.models.undo_log import Operation
from revertible.services.errors import NotFound
from revertible.services.interceptor import InterceptResult, MutationInterceptor
from revertible.services.row_store import RowStore, decode_row
from revertible.services.schema_registry import RowSchema, SchemaRegistry
from revertible.services.scope import Scope

logger = logging.getLogger(__name__)


class ObjectStore:
    """Create, update, delete and read rows of registered tables.

    Every write goes through the mutation interceptor, so each accepted call
    produces exactly one undo log entry.
    """

    def __init__(self, registry: SchemaRegistry, rows: RowStore, interceptor: MutationInterceptor):
        self.registry = registry
        self.rows = rows
        self.interceptor = interceptor

    def create(
        self,
        db: Session,
        table_name: str,
        data: Dict[str, Any],
        scope: Scope,
        session=None,
        description: Optional[str] = None,
        source: str = CheckpointSource.API.value,
        user_command: Optional[str] = None,
    ) -> InterceptResult:
        """Insert a row.

        Args:
            db: Database session.
            table_name: Registered table.
            data: Column values; the primary key may be omitted when generated.
            scope: Scope the change belongs to.
            session: Open CheckpointSession to group into, if any.
            description: Checkpoint description (derived from the row if omitted).
            source: Checkpoint provenance.
            user_command: Instruction text that caused the change.

        Returns:
            InterceptResult with the stored row.

        Raises:
            NotFound: If the table is not registered.
            ValueError: If the data names unknown columns.
        """
        schema = self.registry.get(table_name)
        values = self._prepare(schema, data)
        if schema.before_create is not None:
            values = schema.before_create(values)

        description = description or self._describe("Added", schema, values)
        return self.interceptor.intercept(
            db,
            table_name,
            values.get(schema.primary_key_column),
            Operation.CREATE,
            lambda conn: self.rows.insert(conn, schema, values),
            scope,
            session=session,
            description=description,
            source=source,
            user_command=user_command,
        )

    def update(
        self,
        db: Session,
        table_name: str,
        primary_key: Any,
        data: Dict[str, Any],
        scope: Scope,
        session=None,
        description: Optional[str] = None,
        source: str = CheckpointSource.API.value,
        user_command: Optional[str] = None,
    ) -> InterceptResult:
        """Update columns of an existing row.

        Raises:
            NotFound: If the table or row does not exist.
            ValueError: If the data is empty, names unknown columns or changes the key.
        """
        schema = self.registry.get(table_name)
        primary_key = self.rows.coerce_key(schema, primary_key)
        values = self._prepare(schema, data)
        if schema.primary_key_column in values:
            if values.pop(schema.primary_key_column) != primary_key:
                raise ValueError(f"Primary key of {table_name} cannot be changed")
        if not values:
            raise ValueError(f"No columns to update on {table_name}")
        if schema.before_update is not None:
            values = schema.before_update(values, primary_key)

        return self.interceptor.intercept(
            db,
            table_name,
            primary_key,
            Operation.UPDATE,
            lambda conn: self.rows.update(conn, schema, primary_key, values),
            scope,
            session=session,
            description=description,
            source=source,
            user_command=user_command,
        )

    def delete(
        self,
        db: Session,
        table_name: str,
        primary_key: Any,
        scope: Scope,
        session=None,
        description: Optional[str] = None,
        source: str = CheckpointSource.API.value,
        user_command: Optional[str] = None,
    ) -> InterceptResult:
        """Delete a row.

        Raises:
            NotFound: If the table or row does not exist.
        """
        schema = self.registry.get(table_name)
        primary_key = self.rows.coerce_key(schema, primary_key)

        def apply(conn: Session) -> None:
            self.rows.delete(conn, schema, primary_key)
            return None

        return self.interceptor.intercept(
            db,
            table_name,
            primary_key,
            Operation.DELETE,
            apply,
            scope,
            session=session,
            description=description,
            source=source,
            user_command=user_command,
        )

    def get(self, db: Session, table_name: str, primary_key: Any) -> Dict[str, Any]:
        """Read a row.

        Raises:
            NotFound: If the table or row does not exist.
        """
        schema = self.registry.get(table_name)
        primary_key = self.rows.coerce_key(schema, primary_key)
        row = self.rows.read(db, schema, primary_key)
        if row is None:
            raise NotFound(table_name, primary_key)
        return row

    def _prepare(self, schema: RowSchema, data: Dict[str, Any]) -> Dict[str, Any]:
        """Reject unknown columns and decode JSON payload values to column types."""
        unknown = sorted(set(data) - set(schema.columns))
        if unknown:
            raise ValueError(f"Unknown columns for {schema.table_name}: {', '.join(unknown)}")
        values = decode_row(self.registry.table(schema.table_name), data)
        if schema.primary_key_column in values:
            values[schema.primary_key_column] = self.rows.coerce_key(
                schema, values[schema.primary_key_column]
            )
        return values

    @staticmethod
    def _describe(verb: str, schema: RowSchema, values: Dict[str, Any]) -> str:
        name = schema.display_name(values)
        return f"{verb} {schema.entity_label.lower()}" + (f": {name}" if name else "")
