"""Revertible object store: checkpoints, undo log and restore."""

__version__ = "0.1.0"
