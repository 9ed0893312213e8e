"""Checkpoint database model."""

import enum
import uuid
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, CheckConstraint, Index
from revertible.database.database import Base, utcnow


class CheckpointStatus(str, enum.Enum):
    """Lifecycle states of a checkpoint."""

    PENDING = "pending"
    HISTORICAL = "historical"
    ROLLED_BACK = "rolled_back"


class CheckpointSource(str, enum.Enum):
    """Who produced the change."""

    UI = "UI"
    LLM = "LLM"
    MCP = "MCP"
    API = "API"


def new_checkpoint_id() -> str:
    """Generate an opaque checkpoint identifier."""
    return str(uuid.uuid4())


class Checkpoint(Base):
    """A named, restorable unit of change within one scope."""

    __tablename__ = "checkpoints"

    id = Column(String(36), primary_key=True, default=new_checkpoint_id)
    application_id = Column(Integer, nullable=True)
    object_id = Column(Integer, nullable=True)
    description = Column(Text, nullable=False)
    user_command = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=CheckpointStatus.PENDING.value)
    source = Column(String, nullable=False, default=CheckpointSource.API.value)
    tools_executed = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    rolled_back_at = Column(DateTime, nullable=True)

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'historical', 'rolled_back')", name='ck_checkpoint_status'
        ),
        CheckConstraint("source IN ('UI', 'LLM', 'MCP', 'API')", name='ck_checkpoint_source'),
        CheckConstraint(
            "application_id IS NOT NULL OR object_id IS NOT NULL", name='ck_checkpoint_scoped'
        ),
        Index('ix_checkpoints_scope_created_at', 'application_id', 'object_id', 'created_at'),
    )

    def __repr__(self) -> str:
        return f"<Checkpoint {self.id} {self.status} {self.description!r}>"
