"""Read-only views over checkpoints: history, checkout and status."""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from revertible.config import settings
from revertible.models.checkpoint import Checkpoint, CheckpointStatus
from revertible.models.undo_log import Operation, UndoLogEntry
from revertible.services.checkpoint_store import CheckpointStore
from revertible.services.row_store import RowStore
from revertible.services.schema_registry import SchemaRegistry
from revertible.services.scope import Scope

logger = logging.getLogger(__name__)

# Display order of the checkout view; unknown categories follow in name order
CATEGORY_ORDER = ["workflow", "ui", "data", "theme", "app"]


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class HistoryService:
    """Builds the history, checkout and status views for a scope."""

    def __init__(self, registry: SchemaRegistry, store: CheckpointStore, rows: RowStore, sessions=None):
        """Initialize history service.

        Args:
            registry: Schema registry for categories and display names.
            store: Checkpoint and undo log store.
            rows: Row reader used to resolve live display names.
            sessions: CheckpointSessionManager, for the status view.
        """
        self.registry = registry
        self.store = store
        self.rows = rows
        self.sessions = sessions

    def history(self, db: Session, scope: Scope, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Checkpoints of a scope, newest first, with what each one changed.

        Args:
            db: Database session.
            scope: Scope to list.
            limit: Maximum number of checkpoints (defaults to settings).

        Returns:
            List of dictionaries. Each has the checkpoint provenance
            (description, user_command, source, status, timestamps),
            tools_executed, changes_count and a `changes` list of
            {entity_type, table_name, primary_key, name, operation}.
        """
        limit = limit or settings.history_limit
        checkpoints = self.store.list_checkpoints(db, scope, limit=limit)
        entries = self.store.list_entries_for(db, [c.id for c in checkpoints])

        by_checkpoint: Dict[str, List[UndoLogEntry]] = {c.id: [] for c in checkpoints}
        for entry in entries:
            by_checkpoint[entry.checkpoint_id].append(entry)

        result = []
        for checkpoint in checkpoints:
            changes = [self._describe_entry(db, entry) for entry in by_checkpoint[checkpoint.id]]
            result.append({
                "id": checkpoint.id,
                "application_id": checkpoint.application_id,
                "object_id": checkpoint.object_id,
                "description": checkpoint.description,
                "user_command": checkpoint.user_command,
                "source": checkpoint.source,
                "status": checkpoint.status,
                "created_at": _iso(checkpoint.created_at),
                "finished_at": _iso(checkpoint.finished_at),
                "rolled_back_at": _iso(checkpoint.rolled_back_at),
                "tools_executed": list(checkpoint.tools_executed or []),
                "changes_count": len(changes),
                "changes": changes,
            })
        return result

    def checkout(self, db: Session, scope: Scope) -> List[Dict[str, Any]]:
        """Net pending changes of a scope grouped by entity category.

        Entries of rolled back checkpoints are excluded. Each (table, key)
        appears once, as its newest change.

        Returns:
            List of {category, changes} in display order; empty categories
            are omitted. Changes are sorted newest first.
        """
        checkpoints = self.store.list_checkpoints(
            db,
            scope,
            statuses=[CheckpointStatus.PENDING, CheckpointStatus.HISTORICAL],
            newest_first=False,
        )
        by_id = {c.id: c for c in checkpoints}
        entries = self.store.list_entries_for(db, list(by_id))
        entries.sort(key=lambda e: (by_id[e.checkpoint_id].created_at, e.sequence))

        latest: Dict[Tuple[str, str], Tuple[UndoLogEntry, Checkpoint]] = {}
        for entry in entries:
            latest[(entry.table_name, repr(sorted(entry.primary_key.items())))] = (
                entry, by_id[entry.checkpoint_id]
            )

        grouped: Dict[str, List[Dict[str, Any]]] = {}
        ordered = sorted(
            latest.values(),
            key=lambda pair: (pair[1].created_at, pair[0].sequence),
            reverse=True,
        )
        for entry, checkpoint in ordered:
            change = self._describe_entry(db, entry)
            change.update({
                "checkpoint_id": checkpoint.id,
                "description": checkpoint.description,
                "created_at": _iso(entry.created_at),
            })
            grouped.setdefault(self.registry.category_of(entry.table_name), []).append(change)

        order = CATEGORY_ORDER + sorted(c for c in grouped if c not in CATEGORY_ORDER)
        return [{"category": c, "changes": grouped[c]} for c in order if c in grouped]

    def status(self, db: Session, scope: Scope) -> Dict[str, Any]:
        """Open session, pending checkpoints and counts per source and status."""
        by_source = {
            source: count
            for source, count in db.execute(
                select(Checkpoint.source, func.count(Checkpoint.id))
                .where(scope.clause(Checkpoint))
                .group_by(Checkpoint.source)
            )
        }
        by_status = {
            status: count
            for status, count in db.execute(
                select(Checkpoint.status, func.count(Checkpoint.id))
                .where(scope.clause(Checkpoint))
                .group_by(Checkpoint.status)
            )
        }
        pending = self.store.list_checkpoints(db, scope, statuses=[CheckpointStatus.PENDING])

        active = self.sessions.active_for(scope) if self.sessions is not None else None
        session_info = None
        if active is not None:
            session_info = {
                "id": active.id,
                "description": active.description,
                "source": active.source,
                "started_at": _iso(active.started_at),
                "checkpoint_id": active.checkpoint_id,
            }

        return {
            "application_id": scope.application_id,
            "object_id": scope.object_id,
            "active_session": session_info,
            "pending_checkpoints": [c.id for c in pending],
            "total": sum(by_source.values()),
            "by_source": by_source,
            "by_status": by_status,
        }

    def _describe_entry(self, db: Session, entry: UndoLogEntry) -> Dict[str, Any]:
        """Entity type, display name and operation of one undo entry."""
        name = None
        if entry.table_name in self.registry:
            schema = self.registry.get(entry.table_name)
            if entry.operation == Operation.DELETE.value:
                row = entry.previous_data
            else:
                row = self.rows.read(db, schema, self.rows.key_value(schema, entry.primary_key))
                row = row or entry.new_data or entry.previous_data
            name = schema.display_name(row)

        return {
            "entity_type": self.registry.label_of(entry.table_name),
            "table_name": entry.table_name,
            "primary_key": entry.primary_key,
            "name": name,
            "operation": entry.operation,
            "sequence": entry.sequence,
        }
