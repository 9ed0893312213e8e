"""Database models package."""

from revertible.models.checkpoint import Checkpoint, CheckpointStatus, CheckpointSource
from revertible.models.undo_log import UndoLogEntry, Operation
from revertible.models.workflow import Application, DataObject, Field, View, Theme

__all__ = [
    "Checkpoint",
    "CheckpointStatus",
    "CheckpointSource",
    "UndoLogEntry",
    "Operation",
    "Application",
    "DataObject",
    "Field",
    "View",
    "Theme",
]
