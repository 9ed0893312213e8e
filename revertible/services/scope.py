"""Checkpoint scopes and the per-scope write locks."""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import and_

from revertible.config import settings
from revertible.services.errors import ScopeBusy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Scope:
    """Application and/or object boundary that owns checkpoints."""

    application_id: Optional[int] = None
    object_id: Optional[int] = None

    def __post_init__(self):
        if self.application_id is None and self.object_id is None:
            raise ValueError("A scope needs an application_id or an object_id")

    @classmethod
    def of(cls, row) -> "Scope":
        """Scope of a checkpoint or undo log row."""
        return cls(application_id=row.application_id, object_id=row.object_id)

    def clause(self, model):
        """SQL condition matching rows of `model` in exactly this scope."""
        return and_(
            model.application_id == self.application_id
            if self.application_id is not None else model.application_id.is_(None),
            model.object_id == self.object_id
            if self.object_id is not None else model.object_id.is_(None),
        )

    def __str__(self) -> str:
        parts = []
        if self.application_id is not None:
            parts.append(f"application {self.application_id}")
        if self.object_id is not None:
            parts.append(f"object {self.object_id}")
        return " / ".join(parts)


class ScopeLocks:
    """Re-entrant write lock per scope.

    Held by every interceptor call, restore, rollback and delete-all on the
    scope, so a live edit can never interleave with a reversal.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = settings.scope_lock_timeout_seconds if timeout is None else timeout
        self._locks: Dict[Scope, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, scope: Scope) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(scope)
            if lock is None:
                lock = threading.RLock()
                self._locks[scope] = lock
            return lock

    @contextmanager
    def hold(self, scope: Scope):
        """Hold the write lock for `scope`.

        Raises:
            ScopeBusy: If the lock is not acquired within the timeout.
        """
        lock = self._lock_for(scope)
        if not lock.acquire(timeout=self.timeout):
            logger.warning(f"Timed out waiting for lock on {scope}")
            raise ScopeBusy(scope, self.timeout)
        try:
            yield
        finally:
            lock.release()
