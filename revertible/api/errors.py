"""Translation of checkpoint errors to HTTP responses."""

from fastapi import HTTPException

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


def to_http_exception(error: CheckpointError) -> HTTPException:
    """Map a checkpoint error to the HTTPException the routes raise."""
    if isinstance(error, NotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (RestoreTimeout, ScopeBusy)):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, (SessionConflict, RestoreConflict, CheckpointStateError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, UndoLogWriteFailure):
        return HTTPException(
            status_code=500,
            detail={
                "message": str(error),
                "table_name": error.table_name,
                "primary_key": error.primary_key,
                "operation": error.operation,
            },
        )
    return HTTPException(status_code=500, detail=str(error))
