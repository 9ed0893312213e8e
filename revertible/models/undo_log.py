"""Undo log database model."""

import enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, CheckConstraint, UniqueConstraint, Index
from sqlalchemy.orm import relationship, backref
from revertible.database.database import Base, utcnow


class Operation(str, enum.Enum):
    """What was done to the row (not what undoing it does)."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


class UndoLogEntry(Base):
    """Reversal record for one physical row mutation."""

    __tablename__ = "undo_log"

    id = Column(Integer, primary_key=True, index=True)
    checkpoint_id = Column(String(36), ForeignKey("checkpoints.id", ondelete="CASCADE"), nullable=False)
    application_id = Column(Integer, nullable=True)
    object_id = Column(Integer, nullable=True)
    sequence = Column(Integer, nullable=False)
    operation = Column(String, nullable=False)
    table_name = Column(String, nullable=False)
    primary_key = Column(JSON, nullable=False)
    previous_data = Column(JSON, nullable=True)
    new_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationship
    checkpoint = relationship(
        "Checkpoint",
        backref=backref("entries", order_by="UndoLogEntry.sequence", passive_deletes=True),
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("operation IN ('Create', 'Update', 'Delete')", name='ck_undo_operation'),
        CheckConstraint("sequence >= 1", name='ck_undo_sequence_positive'),
        UniqueConstraint('checkpoint_id', 'sequence', name='uq_undo_checkpoint_sequence'),
        Index('ix_undo_log_scope', 'application_id', 'object_id'),
    )

    def __repr__(self) -> str:
        return (
            f"<UndoLogEntry {self.checkpoint_id}#{self.sequence} "
            f"{self.operation} {self.table_name} {self.primary_key}>"
        )
