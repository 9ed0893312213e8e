"""Grouped checkpoint sessions (one undoable unit across many calls)."""

import enum
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from revertible.database.database import utcnow
from revertible.models.checkpoint import CheckpointSource, CheckpointStatus
from revertible.services.checkpoint_store import CheckpointStore
from revertible.services.errors import CheckpointStateError, NotFound, SessionConflict
from revertible.services.scope import Scope, ScopeLocks

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    """States of a grouped session."""

    OPEN = "open"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass
class CheckpointSession:
    """Explicit handle for a grouped action.

    Each intercepted call still commits its own transaction; the session only
    remembers which checkpoint those calls share. The checkpoint is created by
    the first mutation, so an empty session leaves nothing behind.
    """

    scope: Scope
    description: str
    source: str = CheckpointSource.LLM.value
    user_command: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=utcnow)
    state: SessionState = SessionState.OPEN
    checkpoint_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def ensure_open(self) -> None:
        if not self.is_open:
            raise CheckpointStateError(self.id, self.state.value, SessionState.OPEN.value)

    def attach(self, checkpoint_id: str) -> None:
        """Remember the checkpoint created by the session's first mutation."""
        self.checkpoint_id = checkpoint_id


class CheckpointSessionManager:
    """Tracks open sessions, one per scope."""

    def __init__(self, store: CheckpointStore, locks: ScopeLocks, rollback_engine):
        """Initialize session manager.

        Args:
            store: Checkpoint store.
            locks: Scope locks shared with the interceptor.
            rollback_engine: RollbackEngine used by abort.
        """
        self.store = store
        self.locks = locks
        self.rollback_engine = rollback_engine
        self._by_scope: Dict[Scope, CheckpointSession] = {}
        self._by_id: Dict[str, CheckpointSession] = {}
        self._guard = threading.Lock()

    def begin(
        self,
        description: str,
        scope: Scope,
        source: str = CheckpointSource.LLM.value,
        user_command: Optional[str] = None,
    ) -> CheckpointSession:
        """Open a grouped session for a scope.

        Raises:
            SessionConflict: If a session is already open for the scope.
            ScopeBusy: If a write or restore holds the scope for too long.
        """
        with self.locks.hold(scope), self._guard:
            existing = self._by_scope.get(scope)
            if existing is not None:
                logger.warning(f"Refusing second session for {scope}; {existing.id} is open")
                raise SessionConflict(scope, existing.id)

            session = CheckpointSession(
                scope=scope,
                description=description,
                source=CheckpointSource(source).value,
                user_command=user_command,
            )
            self._by_scope[scope] = session
            self._by_id[session.id] = session

        logger.info(f"Started checkpoint session {session.id} for {scope}: {description}")
        return session

    def commit(self, db: Session, session: CheckpointSession) -> Optional[str]:
        """Close the session, marking its checkpoint historical.

        Returns:
            The checkpoint id, or None if the session made no changes.
        """
        with self.locks.hold(session.scope):
            session.ensure_open()
            if session.checkpoint_id is not None:
                try:
                    self.store.finish_checkpoint(db, session.checkpoint_id, CheckpointStatus.HISTORICAL)
                    db.commit()
                except Exception as e:
                    db.rollback()
                    logger.error(f"Failed to commit session {session.id}: {e}")
                    raise
            self._close(session, SessionState.COMMITTED)

        logger.info(f"Committed checkpoint session {session.id} ({session.checkpoint_id})")
        return session.checkpoint_id

    def abort(self, db: Session, session: CheckpointSession) -> Optional[str]:
        """Reverse everything the session did and mark its checkpoint rolled back.

        If the reversal fails the session stays open so the caller can retry.
        """
        with self.locks.hold(session.scope):
            session.ensure_open()
            if session.checkpoint_id is not None:
                self.rollback_engine.rollback(db, session.checkpoint_id)
            self._close(session, SessionState.ABORTED)

        logger.info(f"Aborted checkpoint session {session.id} ({session.checkpoint_id})")
        return session.checkpoint_id

    def record_tool(self, db: Session, session: CheckpointSession, tool_name: str) -> str:
        """Record a tool invocation against the session checkpoint."""
        with self.locks.hold(session.scope):
            session.ensure_open()
            try:
                created = session.checkpoint_id is None
                if created:
                    checkpoint = self.store.create_checkpoint(
                        db, session.scope, session.description, session.source, session.user_command
                    )
                    checkpoint_id = checkpoint.id
                else:
                    checkpoint_id = session.checkpoint_id
                self.store.record_tool_execution(db, checkpoint_id, tool_name)
                db.commit()
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to record tool {tool_name} for session {session.id}: {e}")
                raise
            if created:
                session.attach(checkpoint_id)
        return checkpoint_id

    @contextmanager
    def scoped(
        self,
        db: Session,
        description: str,
        scope: Scope,
        source: str = CheckpointSource.LLM.value,
        user_command: Optional[str] = None,
    ):
        """Run a block as one undoable unit: commit on success, abort on error."""
        session = self.begin(description, scope, source, user_command)
        try:
            yield session
        except Exception:
            logger.warning(f"Session {session.id} failed, rolling back")
            if session.is_open:
                self.abort(db, session)
            raise
        else:
            if session.is_open:
                self.commit(db, session)

    def get(self, session_id: str) -> CheckpointSession:
        """Open session by id.

        Raises:
            NotFound: If no open session has that id.
        """
        session = self._by_id.get(session_id)
        if session is None:
            raise NotFound("session", session_id)
        return session

    def active_for(self, scope: Scope) -> Optional[CheckpointSession]:
        return self._by_scope.get(scope)

    def active_sessions(self) -> List[CheckpointSession]:
        with self._guard:
            return list(self._by_id.values())

    def _close(self, session: CheckpointSession, state: SessionState) -> None:
        with self._guard:
            session.state = state
            self._by_scope.pop(session.scope, None)
            self._by_id.pop(session.id, None)
