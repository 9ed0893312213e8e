"""Main FastAPI application entry point."""

import logging
from typing import Dict, Optional

from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.orm import Session

from revertible import __version__
from revertible.database.database import init_db, get_db
from revertible.api.checkpoints import router as checkpoints_router
from revertible.api.objects import router as objects_router
from revertible.models.checkpoint import Checkpoint
from revertible.models.undo_log import UndoLogEntry

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Revertible Object Store",
    description="Checkpoints and undo log for the workflow builder object store",
    version=__version__,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(objects_router)
app.include_router(checkpoints_router)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    message: Optional[str] = None


class StatsResponse(BaseModel):
    """Checkpoint statistics response."""

    checkpoints_count: int
    undo_entries_count: int
    checkpoints_by_status: Dict[str, int]


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup."""
    logging.basicConfig(level=logging.INFO)
    init_db()


@app.get("/")
async def root():
    return {"message": "Revertible Object Store API", "version": __version__}


@app.get("/api/health", response_model=HealthResponse)
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint.

    Checks database connectivity.
    """
    try:
        db.execute(text("SELECT 1"))
        return HealthResponse(status="healthy", database="connected")
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return HealthResponse(status="unhealthy", database="disconnected", message=str(e))


@app.get("/api/stats", response_model=StatsResponse)
async def get_stats(db: Session = Depends(get_db)):
    """Get checkpoint statistics.

    Returns checkpoint counts overall and per status, and the undo log size.
    """
    try:
        by_status = {
            status: count
            for status, count in db.execute(
                select(Checkpoint.status, func.count(Checkpoint.id)).group_by(Checkpoint.status)
            )
        }
        entries = db.execute(select(func.count(UndoLogEntry.id))).scalar()

        return StatsResponse(
            checkpoints_count=sum(by_status.values()),
            undo_entries_count=entries or 0,
            checkpoints_by_status=by_status,
        )

    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get stats: {str(e)}")


if __name__ == "__main__":
    import uvicorn

    from revertible.config import settings

    uvicorn.run(app, host=settings.app_host, port=settings.app_port)
