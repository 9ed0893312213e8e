"""Mutation interceptor: every object store write gets exactly one undo entry."""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from revertible.config import settings
from revertible.models.checkpoint import Checkpoint, CheckpointSource, CheckpointStatus
from revertible.models.undo_log import Operation, UndoLogEntry
from revertible.services.checkpoint_store import CheckpointStore
from revertible.services.errors import CheckpointStateError, NotFound, UndoLogWriteFailure
from revertible.services.row_store import RowStore, encode_row
from revertible.services.schema_registry import RowSchema, SchemaRegistry
from revertible.services.scope import Scope, ScopeLocks

logger = logging.getLogger(__name__)

ApplyFn = Callable[[Session], Optional[Dict[str, Any]]]


@dataclass
class InterceptResult:
    """Outcome of one intercepted mutation."""

    checkpoint_id: str
    sequence: int
    operation: Operation
    table_name: str
    primary_key: Any
    row: Optional[Dict[str, Any]]


class MutationInterceptor:
    """Wraps single-row writes with pre-image capture and undo log append."""

    def __init__(
        self,
        registry: SchemaRegistry,
        store: CheckpointStore,
        rows: RowStore,
        locks: ScopeLocks,
        retry_attempts: Optional[int] = None,
        retry_wait: Optional[float] = None,
        retry_max_wait: Optional[float] = None,
    ):
        """Initialize interceptor.

        Args:
            registry: Schema registry for table lookup.
            store: Checkpoint and undo log store.
            rows: Row CRUD primitive used to read pre-images.
            locks: Per-scope write locks shared with the rollback engine.
            retry_attempts: Undo log append attempts (defaults to settings).
            retry_wait: Exponential backoff multiplier in seconds (defaults to settings).
            retry_max_wait: Backoff ceiling in seconds (defaults to settings).
        """
        self.registry = registry
        self.store = store
        self.rows = rows
        self.locks = locks
        self.retry_attempts = (
            settings.undo_log_retry_attempts if retry_attempts is None else retry_attempts
        )
        self.retry_wait = settings.undo_log_retry_wait_seconds if retry_wait is None else retry_wait
        self.retry_max_wait = (
            settings.undo_log_retry_max_wait_seconds if retry_max_wait is None else retry_max_wait
        )

    def intercept(
        self,
        db: Session,
        table_name: str,
        primary_key: Any,
        operation: Operation,
        apply: ApplyFn,
        scope: Scope,
        session=None,
        description: Optional[str] = None,
        source: str = CheckpointSource.API.value,
        user_command: Optional[str] = None,
    ) -> InterceptResult:
        """Apply one row mutation and record how to reverse it.

        Pre-image read, `apply`, undo log append and (outside a session) the
        checkpoint close all happen in one transaction under the scope lock.

        Args:
            db: Database session; committed on success, rolled back on failure.
            table_name: Registered table being mutated.
            primary_key: Key of the row (None for a create with a generated key).
            operation: Create, Update or Delete.
            apply: The single physical write. Returns the row after the write.
            scope: Scope the change belongs to.
            session: Open CheckpointSession to group this call into, if any.
            description: Checkpoint description for a single-call checkpoint.
            source: Provenance of a single-call checkpoint.
            user_command: Instruction text for a single-call checkpoint.

        Returns:
            InterceptResult with the checkpoint id and entry sequence.

        Raises:
            NotFound: If the table is unknown or the row to update/delete is missing.
            UndoLogWriteFailure: If the undo entry could not be written.
            CheckpointStateError: If the session or its checkpoint is no longer open.
        """
        operation = Operation(operation)
        schema = self.registry.get(table_name)

        if session is not None:
            session.ensure_open()
            if session.scope != scope:
                raise ValueError(f"Session {session.id} belongs to {session.scope}, not {scope}")

        if primary_key is not None:
            primary_key = self.rows.coerce_key(schema, primary_key)
        elif operation is not Operation.CREATE:
            raise ValueError(f"{operation.value} on {table_name} requires a primary key")

        with self.locks.hold(scope):
            if session is not None:
                # Commit or abort may have run while this call waited for the lock
                session.ensure_open()

            try:
                previous_data = None
                if operation in (Operation.UPDATE, Operation.DELETE):
                    previous_data = self.rows.read(db, schema, primary_key, for_update=True)
                    if previous_data is None:
                        raise NotFound(table_name, primary_key)

                checkpoint, created = self._resolve_checkpoint(
                    db, scope, session, description or self._describe(operation, schema, previous_data),
                    source, user_command,
                )

                row = apply(db)
                if operation is Operation.CREATE:
                    if row is None:
                        raise ValueError(f"Create on {table_name} did not return the new row")
                    primary_key = row[schema.primary_key_column]

                entry = self._append_entry(
                    db, checkpoint, operation, schema, primary_key, previous_data, row
                )

                if session is None:
                    self.store.finish_checkpoint(db, checkpoint.id, CheckpointStatus.HISTORICAL)

                db.commit()
            except Exception as e:
                db.rollback()
                logger.error(f"{operation.value} on {table_name} {primary_key} failed: {e}")
                raise

            if session is not None and created:
                session.attach(checkpoint.id)

        logger.info(
            f"{operation.value} {table_name} {primary_key} recorded as "
            f"{checkpoint.id}#{entry.sequence}"
        )
        return InterceptResult(
            checkpoint_id=checkpoint.id,
            sequence=entry.sequence,
            operation=operation,
            table_name=table_name,
            primary_key=primary_key,
            row=row,
        )

    def _resolve_checkpoint(
        self,
        db: Session,
        scope: Scope,
        session,
        description: str,
        source: str,
        user_command: Optional[str],
    ) -> Tuple[Checkpoint, bool]:
        """Session checkpoint (created on first use) or a new single-call one."""
        if session is not None:
            if session.checkpoint_id is not None:
                checkpoint = self.store.get_checkpoint(db, session.checkpoint_id)
                if checkpoint is None:
                    raise NotFound("checkpoint", session.checkpoint_id)
                if checkpoint.status != CheckpointStatus.PENDING.value:
                    raise CheckpointStateError(
                        checkpoint.id, checkpoint.status, CheckpointStatus.PENDING.value
                    )
                return checkpoint, False
            return self.store.create_checkpoint(
                db, scope, session.description, session.source, session.user_command
            ), True

        return self.store.create_checkpoint(db, scope, description, source, user_command), True

    def _append_entry(
        self,
        db: Session,
        checkpoint: Checkpoint,
        operation: Operation,
        schema: RowSchema,
        primary_key: Any,
        previous_data: Optional[Dict[str, Any]],
        row: Optional[Dict[str, Any]],
    ) -> UndoLogEntry:
        """Append the undo entry inside a SAVEPOINT, retrying transient failures."""
        key = self.rows.key_dict(schema, primary_key)
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=self.retry_max_wait),
            retry=retry_if_exception_type(SQLAlchemyError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    with db.begin_nested():
                        return self.store.append_undo_entry(
                            db,
                            checkpoint,
                            operation,
                            schema.table_name,
                            key,
                            encode_row(previous_data),
                            encode_row(row),
                        )
        except SQLAlchemyError as e:
            logger.error(
                f"Giving up on undo log entry for {operation.value} {schema.table_name} "
                f"{key} after {self.retry_attempts} attempts: {e}"
            )
            raise UndoLogWriteFailure(schema.table_name, key, operation.value, e) from e

    @staticmethod
    def _describe(operation: Operation, schema: RowSchema, previous_data: Optional[Dict[str, Any]]) -> str:
        verb = {
            Operation.CREATE: "Added",
            Operation.UPDATE: "Updated",
            Operation.DELETE: "Deleted",
        }[operation]
        name = schema.display_name(previous_data)
        return f"{verb} {schema.entity_label.lower()}" + (f": {name}" if name else "")
