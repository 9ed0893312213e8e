"""Typed failures raised by the checkpoint subsystem."""

from typing import Any, Optional


class CheckpointError(Exception):
    """Base class for checkpoint and undo log failures."""


class NotFound(CheckpointError):
    """Target row, table, checkpoint or session does not exist."""

    def __init__(self, kind: str, identifier: Any):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class SessionConflict(CheckpointError):
    """A grouped session is already open for the scope."""

    def __init__(self, scope: Any, session_id: Optional[str] = None):
        self.scope = scope
        self.session_id = session_id
        message = f"A checkpoint session is already open for {scope}"
        if session_id:
            message += f" (session {session_id})"
        super().__init__(message)


class CheckpointStateError(CheckpointError):
    """Checkpoint is not in a status that allows the requested transition."""

    def __init__(self, checkpoint_id: str, status: str, expected: str):
        self.checkpoint_id = checkpoint_id
        self.status = status
        self.expected = expected
        super().__init__(
            f"Checkpoint {checkpoint_id} is {status}, expected {expected}"
        )


class RestoreConflict(CheckpointError):
    """A reversal step could not be applied because live data diverged."""

    def __init__(self, table_name: str, primary_key: Any, reason: str):
        self.table_name = table_name
        self.primary_key = primary_key
        self.reason = reason
        super().__init__(f"Cannot reverse change to {table_name} {primary_key}: {reason}")


class RestoreTimeout(RestoreConflict):
    """The reversal transaction hit the storage timeout; nothing was applied."""

    def __init__(self, table_name: str, primary_key: Any, reason: str = "restore timed out"):
        super().__init__(table_name, primary_key, reason)


class UndoLogWriteFailure(CheckpointError):
    """The undo entry for a mutation could not be written after retries."""

    def __init__(self, table_name: str, primary_key: Any, operation: str, cause: Optional[Exception] = None):
        self.table_name = table_name
        self.primary_key = primary_key
        self.operation = operation
        self.cause = cause
        super().__init__(
            f"Undo log write failed for {operation} on {table_name} {primary_key}: {cause}"
        )


class ScopeBusy(CheckpointError):
    """The scope lock could not be acquired in time."""

    def __init__(self, scope: Any, timeout: float):
        self.scope = scope
        self.timeout = timeout
        super().__init__(f"Scope {scope} is busy (waited {timeout}s)")
