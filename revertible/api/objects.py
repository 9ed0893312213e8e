"""Object store API endpoints: the mutation contract for entity tables."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from revertible.api.errors import to_http_exception
from revertible.database.database import get_db
from revertible.models.checkpoint import CheckpointSource
from revertible.services.checkpoint_service import CheckpointService, get_checkpoint_service
from revertible.services.errors import CheckpointError
from revertible.services.interceptor import InterceptResult
from revertible.services.scope import Scope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/objects", tags=["objects"])


class ObjectWriteRequest(BaseModel):
    """Create or update request."""

    data: Dict[str, Any]
    application_id: Optional[int] = None
    object_id: Optional[int] = None
    session_id: Optional[str] = None
    description: Optional[str] = None
    source: CheckpointSource = CheckpointSource.API
    user_command: Optional[str] = None


class MutationResponse(BaseModel):
    """Result of an accepted mutation."""

    checkpoint_id: str
    sequence: int
    operation: str
    table_name: str
    primary_key: Any
    row: Optional[Dict[str, Any]] = None


def _mutation_response(result: InterceptResult) -> MutationResponse:
    return MutationResponse(
        checkpoint_id=result.checkpoint_id,
        sequence=result.sequence,
        operation=result.operation.value,
        table_name=result.table_name,
        primary_key=result.primary_key,
        row=result.row,
    )


@router.post("/{table_name}", response_model=MutationResponse, status_code=201)
def create_object(
    table_name: str,
    request: ObjectWriteRequest,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Create a row and record its undo entry."""
    try:
        scope = Scope(request.application_id, request.object_id)
        result = service.create_object(
            db,
            table_name,
            request.data,
            scope,
            session_id=request.session_id,
            description=request.description,
            source=request.source.value,
            user_command=request.user_command,
        )
        return _mutation_response(result)
    except CheckpointError as e:
        raise to_http_exception(e)
    except IntegrityError as e:
        raise HTTPException(status_code=409, detail=f"Constraint violation: {e.orig}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Create on {table_name} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to create {table_name} row: {str(e)}")


@router.put("/{table_name}/{primary_key}", response_model=MutationResponse)
def update_object(
    table_name: str,
    primary_key: str,
    request: ObjectWriteRequest,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Update a row and record its undo entry."""
    try:
        scope = Scope(request.application_id, request.object_id)
        result = service.update_object(
            db,
            table_name,
            primary_key,
            request.data,
            scope,
            session_id=request.session_id,
            description=request.description,
            source=request.source.value,
            user_command=request.user_command,
        )
        return _mutation_response(result)
    except CheckpointError as e:
        raise to_http_exception(e)
    except IntegrityError as e:
        raise HTTPException(status_code=409, detail=f"Constraint violation: {e.orig}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Update on {table_name} {primary_key} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to update {table_name} row: {str(e)}")


@router.delete("/{table_name}/{primary_key}", response_model=MutationResponse)
def delete_object(
    table_name: str,
    primary_key: str,
    application_id: Optional[int] = None,
    object_id: Optional[int] = None,
    session_id: Optional[str] = None,
    source: CheckpointSource = CheckpointSource.API,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Delete a row and record its undo entry (with the full pre-image)."""
    try:
        scope = Scope(application_id, object_id)
        result = service.delete_object(
            db, table_name, primary_key, scope, session_id=session_id, source=source.value
        )
        return _mutation_response(result)
    except CheckpointError as e:
        raise to_http_exception(e)
    except IntegrityError as e:
        raise HTTPException(status_code=409, detail=f"Constraint violation: {e.orig}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Delete on {table_name} {primary_key} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to delete {table_name} row: {str(e)}")


@router.get("/{table_name}/{primary_key}")
def get_object(
    table_name: str,
    primary_key: str,
    db: Session = Depends(get_db),
    service: CheckpointService = Depends(get_checkpoint_service),
):
    """Read a row."""
    try:
        return service.get_object(db, table_name, primary_key)
    except CheckpointError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
