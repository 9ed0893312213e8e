"""Rollback engine: replays undo log entries in reverse inside one transaction."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from revertible.config import settings
from revertible.database.database import utcnow
from revertible.models.checkpoint import Checkpoint, CheckpointStatus
from revertible.models.undo_log import Operation, UndoLogEntry
from revertible.services.checkpoint_store import CheckpointStore
from revertible.services.errors import (
    CheckpointError,
    CheckpointStateError,
    NotFound,
    RestoreConflict,
    RestoreTimeout,
)
from revertible.services.row_store import RowStore, decode_row, encode_row
from revertible.services.schema_registry import SchemaRegistry
from revertible.services.scope import Scope, ScopeLocks

logger = logging.getLogger(__name__)

# PostgreSQL query_canceled, raised when statement_timeout fires
PG_QUERY_CANCELED = "57014"


@dataclass
class RestoreResult:
    """What a restore or rollback reversed."""

    checkpoint_id: str
    rolled_back: List[str] = field(default_factory=list)
    reversed_entries: int = 0


@dataclass
class DeleteResult:
    """What a housekeeping delete removed."""

    checkpoints_deleted: int
    entries_deleted: int


class RollbackEngine:
    """Reverses checkpoints and deletes checkpoint history."""

    def __init__(
        self,
        registry: SchemaRegistry,
        store: CheckpointStore,
        rows: RowStore,
        locks: ScopeLocks,
        timeout_seconds: Optional[int] = None,
    ):
        """Initialize rollback engine.

        Args:
            registry: Schema registry for table and foreign key lookup.
            store: Checkpoint and undo log store.
            rows: Row CRUD primitive used to apply reversals.
            locks: Per-scope write locks shared with the interceptor.
            timeout_seconds: Statement timeout for reversal transactions.
        """
        self.registry = registry
        self.store = store
        self.rows = rows
        self.locks = locks
        self.timeout_seconds = settings.restore_timeout_seconds if timeout_seconds is None else timeout_seconds

    def restore(self, db: Session, checkpoint_id: str) -> RestoreResult:
        """Make the scope look like it did right after `checkpoint_id` finished.

        Every historical checkpoint of the same scope created after the target
        is reversed, newest first, each one's entries highest sequence first,
        all in one transaction. The target stays historical. The engine owns
        the transaction of `db`.

        Raises:
            NotFound: If the checkpoint does not exist or is not historical.
            RestoreConflict: If any reversal step cannot be applied.
        """
        scope = self._scope_of(db, checkpoint_id)
        logger.info(f"Restoring {scope} to checkpoint {checkpoint_id}")

        with self.locks.hold(scope):
            try:
                self._apply_timeout(db)
                target = self.store.get_checkpoint(db, checkpoint_id, for_update=True)
                if target is None or target.status != CheckpointStatus.HISTORICAL.value:
                    # Pending targets and targets inside a rolled back window
                    raise NotFound("checkpoint", checkpoint_id)

                newer = self.store.list_checkpoints(
                    db,
                    scope,
                    since=target.created_at,
                    statuses=[CheckpointStatus.HISTORICAL],
                    newest_first=True,
                )
                result = RestoreResult(checkpoint_id=checkpoint_id)
                result.reversed_entries = self._reverse_checkpoints(db, newer)

                now = utcnow()
                for checkpoint in newer:
                    self.store.mark_rolled_back(db, checkpoint, now)
                    result.rolled_back.append(checkpoint.id)

                db.commit()
            except Exception as e:
                db.rollback()
                self._raise_failure(e, checkpoint_id)

        if result.rolled_back:
            logger.info(
                f"Restored to checkpoint {checkpoint_id} by undoing {len(result.rolled_back)} "
                f"checkpoints ({result.reversed_entries} entries)"
            )
        else:
            logger.info(f"Nothing to restore after checkpoint {checkpoint_id}")
        return result

    def rollback(self, db: Session, checkpoint_id: str) -> RestoreResult:
        """Reverse exactly one pending checkpoint and mark it rolled back.

        Used by session abort. A checkpoint that is already rolled back is a
        no-op.

        Raises:
            NotFound: If the checkpoint does not exist.
            CheckpointStateError: If the checkpoint is historical (use restore).
            RestoreConflict: If any reversal step cannot be applied.
        """
        scope = self._scope_of(db, checkpoint_id)

        with self.locks.hold(scope):
            try:
                self._apply_timeout(db)
                checkpoint = self.store.get_checkpoint(db, checkpoint_id, for_update=True)
                if checkpoint is None:
                    raise NotFound("checkpoint", checkpoint_id)

                result = RestoreResult(checkpoint_id=checkpoint_id)
                if checkpoint.status == CheckpointStatus.ROLLED_BACK.value:
                    logger.info(f"Checkpoint {checkpoint_id} already rolled back")
                    db.rollback()
                    return result
                if checkpoint.status != CheckpointStatus.PENDING.value:
                    raise CheckpointStateError(
                        checkpoint_id, checkpoint.status, CheckpointStatus.PENDING.value
                    )

                result.reversed_entries = self._reverse_checkpoints(db, [checkpoint])
                self.store.mark_rolled_back(db, checkpoint)
                result.rolled_back.append(checkpoint.id)
                db.commit()
            except Exception as e:
                db.rollback()
                self._raise_failure(e, checkpoint_id)

        logger.info(f"Rolled back checkpoint {checkpoint_id} ({result.reversed_entries} entries)")
        return result

    def delete_all(self, db: Session, scope: Scope) -> DeleteResult:
        """Delete all checkpoints and undo entries of a scope. Live data is untouched.

        Raises:
            NotFound: If the scope has no checkpoints.
        """
        logger.warning(f"Deleting all checkpoints for {scope}")
        with self.locks.hold(scope):
            try:
                checkpoints, entries = self.store.delete_checkpoints_and_entries(db, scope)
                if checkpoints == 0:
                    raise NotFound("checkpoints for", scope)
                db.commit()
            except Exception as e:
                db.rollback()
                if not isinstance(e, NotFound):
                    logger.error(f"Checkpoint deletion for {scope} failed: {e}")
                raise

        logger.info(f"Deleted {checkpoints} checkpoints and {entries} undo log entries for {scope}")
        return DeleteResult(checkpoints_deleted=checkpoints, entries_deleted=entries)

    def delete_checkpoint(self, db: Session, checkpoint_id: str) -> DeleteResult:
        """Delete one finished checkpoint and its entries without reversing it.

        Raises:
            NotFound: If the checkpoint does not exist.
            CheckpointStateError: If the checkpoint is still pending.
        """
        scope = self._scope_of(db, checkpoint_id)
        with self.locks.hold(scope):
            try:
                checkpoint = self.store.get_checkpoint(db, checkpoint_id, for_update=True)
                if checkpoint is None:
                    raise NotFound("checkpoint", checkpoint_id)
                if checkpoint.status == CheckpointStatus.PENDING.value:
                    raise CheckpointStateError(checkpoint_id, checkpoint.status, "historical or rolled_back")
                entries = self.store.delete_checkpoint(db, checkpoint_id)
                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.info(f"Deleted checkpoint {checkpoint_id} ({entries} entries)")
        return DeleteResult(checkpoints_deleted=1, entries_deleted=entries)

    def _scope_of(self, db: Session, checkpoint_id: str) -> Scope:
        """Look up the scope, then end the read so the lock is taken with no open transaction."""
        checkpoint = self.store.get_checkpoint(db, checkpoint_id)
        if checkpoint is None:
            db.rollback()
            raise NotFound("checkpoint", checkpoint_id)
        scope = Scope.of(checkpoint)
        db.rollback()
        return scope

    def _apply_timeout(self, db: Session) -> None:
        if self.timeout_seconds and db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL statement_timeout = {int(self.timeout_seconds * 1000)}"))

    def _reverse_checkpoints(self, db: Session, checkpoints: List[Checkpoint]) -> int:
        """Reverse the entries of `checkpoints` (already newest first)."""
        count = 0
        for checkpoint in checkpoints:
            entries = self.store.list_undo_entries(db, checkpoint.id, newest_first=True)
            logger.debug(f"Reversing {len(entries)} entries of checkpoint {checkpoint.id}")
            for entry in entries:
                self._reverse(db, entry)
                count += 1
        return count

    def _reverse(self, db: Session, entry: UndoLogEntry) -> None:
        """Apply the inverse of one entry, failing on any divergence from the log."""
        table_name = entry.table_name
        if table_name not in self.registry:
            raise RestoreConflict(table_name, entry.primary_key, "table is not registered")

        schema = self.registry.get(table_name)
        table = self.registry.table(table_name)
        key = self.rows.key_value(schema, entry.primary_key)
        operation = Operation(entry.operation)
        logger.debug(f"Undoing {operation.value} on {table_name} {key}")

        try:
            if operation is Operation.CREATE:
                live = self.rows.read(db, schema, key, for_update=True)
                if live is None:
                    raise RestoreConflict(table_name, key, "created row no longer exists")
                self._check_unchanged(entry, key, live)
                children = self.rows.referencing_rows(db, schema, key)
                if children:
                    raise RestoreConflict(table_name, key, f"still referenced by {children}")
                self.rows.delete(db, schema, key)

            elif operation is Operation.UPDATE:
                if entry.previous_data is None:
                    raise RestoreConflict(table_name, key, "no previous data stored")
                live = self.rows.read(db, schema, key, for_update=True)
                if live is None:
                    raise RestoreConflict(table_name, key, "updated row no longer exists")
                self._check_unchanged(entry, key, live)
                self.rows.update(db, schema, key, decode_row(table, entry.previous_data))

            elif operation is Operation.DELETE:
                if entry.previous_data is None:
                    raise RestoreConflict(table_name, key, "no previous data stored")
                if self.rows.exists(db, schema, key):
                    raise RestoreConflict(table_name, key, "row already exists")
                self.rows.insert(db, schema, decode_row(table, entry.previous_data))

        except IntegrityError as e:
            raise RestoreConflict(table_name, key, f"integrity error: {e.orig}") from e
        except OperationalError as e:
            if self._is_timeout(e):
                raise RestoreTimeout(table_name, key) from e
            raise

    @staticmethod
    def _check_unchanged(entry: UndoLogEntry, key: Any, live: Dict[str, Any]) -> None:
        """The live row must still be what the entry wrote."""
        if entry.new_data is not None and encode_row(live) != entry.new_data:
            raise RestoreConflict(entry.table_name, key, "row changed since it was recorded")

    @staticmethod
    def _is_timeout(error: OperationalError) -> bool:
        if getattr(error.orig, "pgcode", None) == PG_QUERY_CANCELED:
            return True
        message = str(error.orig).lower()
        return "timeout" in message or "locked" in message

    def _raise_failure(self, error: Exception, checkpoint_id: str) -> None:
        """Log and re-raise a failed reversal as a typed error."""
        if isinstance(error, NotFound):
            raise error
        if isinstance(error, CheckpointError):
            logger.error(f"Reversal for checkpoint {checkpoint_id} aborted: {error}")
            raise error
        if isinstance(error, OperationalError) and self._is_timeout(error):
            logger.error(f"Reversal for checkpoint {checkpoint_id} timed out: {error}")
            raise RestoreTimeout("checkpoints", checkpoint_id) from error
        logger.error(f"Reversal for checkpoint {checkpoint_id} failed: {error}")
        raise error
