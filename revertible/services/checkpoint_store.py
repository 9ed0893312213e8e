"""Persistence for checkpoints and undo log entries.

The store only reads and writes rows. It flushes but never commits: the
interceptor and rollback engine own the transaction and enforce every
lifecycle rule.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from revertible.database.database import utcnow
from revertible.models.checkpoint import Checkpoint, CheckpointStatus, CheckpointSource
from revertible.models.undo_log import UndoLogEntry, Operation
from revertible.services.scope import Scope

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Checkpoint and undo log persistence."""

    def create_checkpoint(
        self,
        db: Session,
        scope: Scope,
        description: str,
        source: str = CheckpointSource.API.value,
        user_command: Optional[str] = None,
    ) -> Checkpoint:
        """Insert a pending checkpoint.

        `created_at` is kept strictly increasing within the scope so that
        restore ordering is total.
        """
        created_at = utcnow()
        latest = db.execute(
            select(func.max(Checkpoint.created_at)).where(scope.clause(Checkpoint))
        ).scalar()
        if latest is not None and created_at <= latest:
            created_at = latest + timedelta(microseconds=1)

        checkpoint = Checkpoint(
            application_id=scope.application_id,
            object_id=scope.object_id,
            description=description,
            user_command=user_command,
            status=CheckpointStatus.PENDING.value,
            source=CheckpointSource(source).value,
            tools_executed=[],
            created_at=created_at,
        )
        db.add(checkpoint)
        db.flush()
        logger.info(f"Created checkpoint {checkpoint.id} for {scope}: {description}")
        return checkpoint

    def get_checkpoint(self, db: Session, checkpoint_id: str, for_update: bool = False) -> Optional[Checkpoint]:
        stmt = select(Checkpoint).where(Checkpoint.id == checkpoint_id)
        if for_update:
            stmt = stmt.with_for_update()
        return db.execute(stmt).scalar_one_or_none()

    def finish_checkpoint(self, db: Session, checkpoint_id: str, status: CheckpointStatus) -> Checkpoint:
        """Set the terminal status and `finished_at` of a checkpoint."""
        checkpoint = self.get_checkpoint(db, checkpoint_id)
        checkpoint.status = CheckpointStatus(status).value
        checkpoint.finished_at = utcnow()
        db.flush()
        return checkpoint

    def mark_rolled_back(self, db: Session, checkpoint: Checkpoint, at: Optional[datetime] = None) -> None:
        at = at or utcnow()
        checkpoint.status = CheckpointStatus.ROLLED_BACK.value
        checkpoint.rolled_back_at = at
        if checkpoint.finished_at is None:
            checkpoint.finished_at = at
        db.flush()

    def record_tool_execution(self, db: Session, checkpoint_id: str, tool_name: str) -> None:
        checkpoint = self.get_checkpoint(db, checkpoint_id)
        # Reassign so the JSON column is marked dirty
        checkpoint.tools_executed = list(checkpoint.tools_executed or []) + [tool_name]
        db.flush()

    def next_sequence(self, db: Session, checkpoint_id: str) -> int:
        current = db.execute(
            select(func.max(UndoLogEntry.sequence)).where(UndoLogEntry.checkpoint_id == checkpoint_id)
        ).scalar()
        return (current or 0) + 1

    def append_undo_entry(
        self,
        db: Session,
        checkpoint: Checkpoint,
        operation: Operation,
        table_name: str,
        primary_key: Dict[str, Any],
        previous_data: Optional[Dict[str, Any]],
        new_data: Optional[Dict[str, Any]] = None,
    ) -> UndoLogEntry:
        """Append an entry with the next sequence of the checkpoint."""
        entry = UndoLogEntry(
            checkpoint_id=checkpoint.id,
            application_id=checkpoint.application_id,
            object_id=checkpoint.object_id,
            sequence=self.next_sequence(db, checkpoint.id),
            operation=Operation(operation).value,
            table_name=table_name,
            primary_key=primary_key,
            previous_data=previous_data,
            new_data=new_data,
            created_at=utcnow(),
        )
        db.add(entry)
        db.flush()
        return entry

    def list_checkpoints(
        self,
        db: Session,
        scope: Scope,
        since: Optional[datetime] = None,
        statuses: Optional[Iterable[CheckpointStatus]] = None,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> List[Checkpoint]:
        """Checkpoints of a scope, optionally only those created after `since`."""
        stmt = select(Checkpoint).where(scope.clause(Checkpoint))
        if since is not None:
            stmt = stmt.where(Checkpoint.created_at > since)
        if statuses is not None:
            stmt = stmt.where(Checkpoint.status.in_([CheckpointStatus(s).value for s in statuses]))
        order = Checkpoint.created_at.desc() if newest_first else Checkpoint.created_at.asc()
        stmt = stmt.order_by(order)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(db.execute(stmt).scalars())

    def list_undo_entries(self, db: Session, checkpoint_id: str, newest_first: bool = False) -> List[UndoLogEntry]:
        order = UndoLogEntry.sequence.desc() if newest_first else UndoLogEntry.sequence.asc()
        stmt = select(UndoLogEntry).where(UndoLogEntry.checkpoint_id == checkpoint_id).order_by(order)
        return list(db.execute(stmt).scalars())

    def list_entries_for(self, db: Session, checkpoint_ids: List[str]) -> List[UndoLogEntry]:
        """Entries of several checkpoints, ordered by checkpoint then sequence."""
        if not checkpoint_ids:
            return []
        stmt = (
            select(UndoLogEntry)
            .where(UndoLogEntry.checkpoint_id.in_(checkpoint_ids))
            .order_by(UndoLogEntry.checkpoint_id, UndoLogEntry.sequence)
        )
        return list(db.execute(stmt).scalars())

    def count_entries(self, db: Session, checkpoint_ids: List[str]) -> Dict[str, int]:
        """Number of undo log entries per checkpoint id."""
        if not checkpoint_ids:
            return {}
        stmt = (
            select(UndoLogEntry.checkpoint_id, func.count(UndoLogEntry.id))
            .where(UndoLogEntry.checkpoint_id.in_(checkpoint_ids))
            .group_by(UndoLogEntry.checkpoint_id)
        )
        counts = {checkpoint_id: 0 for checkpoint_id in checkpoint_ids}
        counts.update({checkpoint_id: count for checkpoint_id, count in db.execute(stmt)})
        return counts

    def delete_checkpoint(self, db: Session, checkpoint_id: str) -> int:
        """Delete one checkpoint and its entries. Returns the entry count removed."""
        entries = db.execute(
            delete(UndoLogEntry).where(UndoLogEntry.checkpoint_id == checkpoint_id)
        ).rowcount
        db.execute(delete(Checkpoint).where(Checkpoint.id == checkpoint_id))
        return entries

    def delete_checkpoints_and_entries(self, db: Session, scope: Scope) -> Tuple[int, int]:
        """Delete every checkpoint and undo entry of a scope.

        Returns:
            (checkpoints deleted, entries deleted)
        """
        entries = db.execute(
            delete(UndoLogEntry).where(scope.clause(UndoLogEntry))
        ).rowcount
        checkpoints = db.execute(
            delete(Checkpoint).where(scope.clause(Checkpoint))
        ).rowcount
        return checkpoints, entries
