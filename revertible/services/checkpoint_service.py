"""Service facade wiring the checkpoint subsystem together."""

import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from revertible.models.checkpoint import CheckpointSource
from revertible.services.checkpoint_session import CheckpointSession, CheckpointSessionManager
from revertible.services.checkpoint_store import CheckpointStore
from revertible.services.errors import NotFound, SessionConflict
from revertible.services.history_service import HistoryService
from revertible.services.interceptor import InterceptResult, MutationInterceptor
from revertible.services.object_store import ObjectStore
from revertible.services.rollback_engine import DeleteResult, RestoreResult, RollbackEngine
from revertible.services.row_store import RowStore
from revertible.services.schema_registry import SchemaRegistry, build_default_registry
from revertible.services.scope import Scope, ScopeLocks

logger = logging.getLogger(__name__)


class CheckpointService:
    """Entry point for object writes, sessions, restores and history queries.

    One instance owns the scope locks and the open sessions, so a process
    should share a single instance (see `get_checkpoint_service`).
    """

    def __init__(
        self,
        registry: Optional[SchemaRegistry] = None,
        locks: Optional[ScopeLocks] = None,
        retry_attempts: Optional[int] = None,
        retry_wait: Optional[float] = None,
        restore_timeout_seconds: Optional[int] = None,
    ):
        """Initialize checkpoint service.

        Args:
            registry: Schema registry (defaults to the workflow builder entities).
            locks: Scope locks (defaults to a new set with the configured timeout).
            retry_attempts: Undo log append attempts (defaults to settings).
            retry_wait: Undo log append backoff multiplier (defaults to settings).
            restore_timeout_seconds: Reversal statement timeout (defaults to settings).
        """
        self.registry = registry or build_default_registry()
        self.locks = locks or ScopeLocks()
        self.store = CheckpointStore()
        self.rows = RowStore(self.registry)
        self.interceptor = MutationInterceptor(
            self.registry,
            self.store,
            self.rows,
            self.locks,
            retry_attempts=retry_attempts,
            retry_wait=retry_wait,
        )
        self.engine = RollbackEngine(
            self.registry, self.store, self.rows, self.locks, timeout_seconds=restore_timeout_seconds
        )
        self.sessions = CheckpointSessionManager(self.store, self.locks, self.engine)
        self.queries = HistoryService(self.registry, self.store, self.rows, self.sessions)
        self.objects = ObjectStore(self.registry, self.rows, self.interceptor)

    # Object writes

    def create_object(
        self,
        db: Session,
        table_name: str,
        data: Dict[str, Any],
        scope: Scope,
        session_id: Optional[str] = None,
        **provenance,
    ) -> InterceptResult:
        return self.objects.create(
            db, table_name, data, scope, session=self._session_or_none(session_id), **provenance
        )

    def update_object(
        self,
        db: Session,
        table_name: str,
        primary_key: Any,
        data: Dict[str, Any],
        scope: Scope,
        session_id: Optional[str] = None,
        **provenance,
    ) -> InterceptResult:
        return self.objects.update(
            db, table_name, primary_key, data, scope,
            session=self._session_or_none(session_id), **provenance,
        )

    def delete_object(
        self,
        db: Session,
        table_name: str,
        primary_key: Any,
        scope: Scope,
        session_id: Optional[str] = None,
        **provenance,
    ) -> InterceptResult:
        return self.objects.delete(
            db, table_name, primary_key, scope, session=self._session_or_none(session_id), **provenance
        )

    def get_object(self, db: Session, table_name: str, primary_key: Any) -> Dict[str, Any]:
        return self.objects.get(db, table_name, primary_key)

    # Sessions

    def begin_session(
        self,
        description: str,
        scope: Scope,
        source: str = CheckpointSource.LLM.value,
        user_command: Optional[str] = None,
    ) -> CheckpointSession:
        return self.sessions.begin(description, scope, source, user_command)

    def get_session(self, session_id: str) -> CheckpointSession:
        return self.sessions.get(session_id)

    def commit_session(self, db: Session, session_id: str) -> Optional[str]:
        return self.sessions.commit(db, self.sessions.get(session_id))

    def abort_session(self, db: Session, session_id: str) -> Optional[str]:
        return self.sessions.abort(db, self.sessions.get(session_id))

    def record_tool(self, db: Session, session_id: str, tool_name: str) -> str:
        return self.sessions.record_tool(db, self.sessions.get(session_id), tool_name)

    # Reversal and housekeeping

    def restore(self, db: Session, checkpoint_id: str) -> RestoreResult:
        """Restore a scope to a checkpoint.

        An open session on the scope is aborted first so its pending changes
        do not survive underneath the restored state.

        Raises:
            NotFound: If the checkpoint does not exist or is not historical.
            RestoreConflict: If the reversal cannot be applied.
        """
        scope = self._scope_of_checkpoint(db, checkpoint_id)
        # No session may begin between the abort and the reversal
        with self.locks.hold(scope):
            active = self.sessions.active_for(scope)
            if active is not None:
                if active.checkpoint_id == checkpoint_id:
                    raise NotFound("checkpoint", checkpoint_id)
                logger.info(f"Aborting open session {active.id} before restoring {scope}")
                self.sessions.abort(db, active)
            return self.engine.restore(db, checkpoint_id)

    def delete_checkpoint(self, db: Session, checkpoint_id: str) -> DeleteResult:
        """Delete one checkpoint and its entries.

        Raises:
            NotFound: If the checkpoint does not exist.
            SessionConflict: If an open session is still writing into it.
        """
        scope = self._scope_of_checkpoint(db, checkpoint_id)
        active = self.sessions.active_for(scope)
        if active is not None and active.checkpoint_id == checkpoint_id:
            raise SessionConflict(scope, active.id)
        return self.engine.delete_checkpoint(db, checkpoint_id)

    def delete_all(self, db: Session, scope: Scope) -> DeleteResult:
        """Delete every checkpoint of a scope; live data is untouched.

        Raises:
            NotFound: If the scope has no checkpoints.
            SessionConflict: If a session is open on the scope.
        """
        active = self.sessions.active_for(scope)
        if active is not None:
            raise SessionConflict(scope, active.id)
        return self.engine.delete_all(db, scope)

    # Queries

    def history(self, db: Session, scope: Scope, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.queries.history(db, scope, limit)

    def checkout(self, db: Session, scope: Scope) -> List[Dict[str, Any]]:
        return self.queries.checkout(db, scope)

    def status(self, db: Session, scope: Scope) -> Dict[str, Any]:
        return self.queries.status(db, scope)

    def _session_or_none(self, session_id: Optional[str]) -> Optional[CheckpointSession]:
        return self.sessions.get(session_id) if session_id else None

    def _scope_of_checkpoint(self, db: Session, checkpoint_id: str) -> Scope:
        checkpoint = self.store.get_checkpoint(db, checkpoint_id)
        if checkpoint is None:
            db.rollback()
            raise NotFound("checkpoint", checkpoint_id)
        scope = Scope.of(checkpoint)
        db.rollback()
        return scope


@lru_cache()
def get_checkpoint_service() -> CheckpointService:
    """Process-wide CheckpointService, used as a FastAPI dependency."""
    return CheckpointService()
