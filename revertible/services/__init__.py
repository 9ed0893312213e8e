"""Services package."""

from revertible.services.checkpoint_service import CheckpointService, get_checkpoint_service
from revertible.services.errors import (
    CheckpointError,
    CheckpointStateError,
    NotFound,
    RestoreConflict,
    RestoreTimeout,
    ScopeBusy,
    SessionConflict,
    UndoLogWriteFailure,
)
from revertible.services.scope import Scope

__all__ = [
    "CheckpointService",
    "get_checkpoint_service",
    "Scope",
    "CheckpointError",
    "CheckpointStateError",
    "NotFound",
    "RestoreConflict",
    "RestoreTimeout",
    "ScopeBusy",
    "SessionConflict",
    "UndoLogWriteFailure",
]
