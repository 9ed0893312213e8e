"""Checkpoint control API endpoints: sessions, restore, housekeeping and history."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from revertible.api.errors import to_http_exception
from revertible.database.database import get_db
from revertible.models.checkpoint import CheckpointSource
from revertible.services.checkpoint_service import CheckpointService, get_checkpoint_service
from revertible.services.checkpoint_session import CheckpointSession
from revertible.services.errors import CheckpointError
from revertible.services.scope import Scope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/checkpoints", tags=["checkpoints"])


class SessionBeginRequest(BaseModel):
    """Session begin request."""

    description: str
    application_id: Optional[int] = None
    object_id: Optional[int] = None
    source: CheckpointSource = CheckpointSource.LLM
    user_command: Optional[str] = None


class SessionResponse(BaseModel):
    """Session response."""

    id: str
    description: str
    source: str
    application_id: Optional[int] = None
    object_id: Optional[int] = None
    state: str
    started_at: str
    checkpoint_id: Optional[str] = None


class ToolRequest(BaseModel):
    """Tool execution record request."""

    tool_name: str


class RestoreResponse(BaseModel):
    """Restore response."""

    checkpoint_id: str
    rolled_back: List[str]
    reversed_entries: int


class DeleteResponse(BaseModel):
    """Checkpoint deletion response."""

    checkpoints_deleted: int
    entries_deleted: int


class ChangeResponse(BaseModel):
    """One change recorded by a checkpoint."""

    entity_type: str
    table_name: str
    primary_key: Dict[str, Any]
    name: Optional[str] = None
    operation: str
    sequence: int
    checkpoint_id: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[str] = None


class CheckpointResponse(BaseModel):
    """Checkpoint history item."""

    id: str
    application_id: Optional[int] = None
    object_id: Optional[int] = None
    description: Optional[str] = None
    user_command: Optional[str] = None
    source: str
    status: str
    created_at: str
    finished_at: Optional[str] = None
    rolled_back_at: Optional[str] = None
    tools_executed: List[str] = []
    changes_count: int
    changes: List[ChangeResponse] = []


class CheckoutCategoryResponse(BaseModel):
    """Changes of one entity category."""

    category: str
    changes: List[ChangeResponse]


class StatusResponse(BaseModel):
    """Checkpoint status of a scope."""

    application_id: Optional[int] = None
    object_id: Optional[int] = None
    active_session: Optional[Dict[str, Any]] = None
    pending_checkpoints: List[str]
    total: int
    by_source: Dict[str, int]
    by_status: Dict[str, int]


def _session_response(session: CheckpointSession) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        description=session.description,
        source=session.source,
        application_id=session.scope.application_id,
        object_id=session.scope.object_id,
        state=session.state.value,
        started_at=session.started_at.isoformat(),
        checkpoint_id=session.checkpoint_id,
    )


def _http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, CheckpointError):
        return to_http_exception(e)
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"Failed to {action}: {e}")
    return HTTPException(status_code=500, detail=f"Failed to {action}: {str(e)}")


@router.post("/sessions", response_model=SessionResponse, status_code=201)
def begin_session(
    request: SessionBeginRequest,
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Open a grouped session; later mutations passing its id share one checkpoint."""
    try:
        scope = Scope(request.application_id, request.object_id)
        session = service.begin_session(
            request.description, scope, request.source.value, request.user_command
        )
        return _session_response(session)
    except Exception as e:
        raise _http_error(e, "begin session")


@router.post("/sessions/{session_id}/commit", response_model=SessionResponse)
def commit_session(
    session_id: str,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Commit a session: its checkpoint becomes historical."""
    try:
        session = service.get_session(session_id)
        service.commit_session(db, session_id)
        return _session_response(session)
    except Exception as e:
        raise _http_error(e, "commit session")


@router.post("/sessions/{session_id}/abort", response_model=SessionResponse)
def abort_session(
    session_id: str,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Abort a session, reversing every change it made."""
    try:
        session = service.get_session(session_id)
        service.abort_session(db, session_id)
        return _session_response(session)
    except Exception as e:
        raise _http_error(e, "abort session")


@router.post("/sessions/{session_id}/tools", response_model=SessionResponse)
def record_tool(
    session_id: str,
    request: ToolRequest,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Record a tool invocation against the session checkpoint."""
    try:
        service.record_tool(db, session_id, request.tool_name)
        return _session_response(service.get_session(session_id))
    except Exception as e:
        raise _http_error(e, "record tool")


@router.get("/history", response_model=List[CheckpointResponse])
def get_history(
    application_id: Optional[int] = None,
    object_id: Optional[int] = None,
    limit: Optional[int] = None,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Checkpoints of a scope, newest first, with their changes."""
    try:
        return service.history(db, Scope(application_id, object_id), limit)
    except Exception as e:
        raise _http_error(e, "get checkpoint history")


@router.get("/checkout", response_model=List[CheckoutCategoryResponse])
def get_checkout(
    application_id: Optional[int] = None,
    object_id: Optional[int] = None,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Net changes of a scope grouped by entity category."""
    try:
        return service.checkout(db, Scope(application_id, object_id))
    except Exception as e:
        raise _http_error(e, "get checkout view")


@router.get("/status", response_model=StatusResponse)
def get_status(
    application_id: Optional[int] = None,
    object_id: Optional[int] = None,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Open session, pending checkpoints and checkpoint counts of a scope."""
    try:
        return service.status(db, Scope(application_id, object_id))
    except Exception as e:
        raise _http_error(e, "get checkpoint status")


@router.post("/{checkpoint_id}/restore", response_model=RestoreResponse)
def restore_checkpoint(
    checkpoint_id: str,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Restore the scope to the state right after the checkpoint."""
    try:
        result = service.restore(db, checkpoint_id)
        return RestoreResponse(
            checkpoint_id=result.checkpoint_id,
            rolled_back=result.rolled_back,
            reversed_entries=result.reversed_entries,
        )
    except Exception as e:
        raise _http_error(e, "restore checkpoint")


@router.delete("/{checkpoint_id}", response_model=DeleteResponse)
def delete_checkpoint(
    checkpoint_id: str,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Delete one checkpoint and its undo entries (irreversible)."""
    try:
        result = service.delete_checkpoint(db, checkpoint_id)
        return DeleteResponse(
            checkpoints_deleted=result.checkpoints_deleted,
            entries_deleted=result.entries_deleted,
        )
    except Exception as e:
        raise _http_error(e, "delete checkpoint")


@router.delete("", response_model=DeleteResponse)
def delete_all_checkpoints(
    application_id: Optional[int] = None,
    object_id: Optional[int] = None,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Delete every checkpoint of a scope. Live data is untouched."""
    try:
        result = service.delete_all(db, Scope(application_id, object_id))
        return DeleteResponse(
            checkpoints_deleted=result.checkpoints_deleted,
            entries_deleted=result.entries_deleted,
        )
    except Exception as e:
        raise _http_error(e, "delete checkpoints")
