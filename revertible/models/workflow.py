"""Workflow builder entities managed through the revertible object store."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, ForeignKey, UniqueConstraint, Index
from revertible.database.database import Base, utcnow


class Application(Base):
    """Top-level application being built."""

    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class DataObject(Base):
    """Data object (case type) owned by an application, optionally with a workflow."""

    __tablename__ = "objects"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    has_workflow = Column(Boolean, nullable=False, default=False)
    model = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_objects_application_id', 'application_id'),
    )


class Field(Base):
    """Field of a data object."""

    __tablename__ = "fields"

    id = Column(Integer, primary_key=True, index=True)
    object_id = Column(Integer, ForeignKey("objects.id"), nullable=False)
    name = Column(String, nullable=False)
    label = Column(String, nullable=True)
    type = Column(String, nullable=False, default="Text")
    required = Column(Boolean, nullable=False, default=False)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('object_id', 'name', name='uq_field_object_name'),
        Index('ix_fields_object_id', 'object_id'),
    )


class View(Base):
    """Form/list view over a data object."""

    __tablename__ = "views"

    id = Column(Integer, primary_key=True, index=True)
    object_id = Column(Integer, ForeignKey("objects.id"), nullable=False)
    name = Column(String, nullable=False)
    model = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_views_object_id', 'object_id'),
    )


class Theme(Base):
    """Visual theme of an application."""

    __tablename__ = "themes"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False)
    name = Column(String, nullable=False)
    model = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)


# (model, category, label, display column)
WORKFLOW_ENTITIES = [
    (Application, "app", "Application", "name"),
    (DataObject, "workflow", "Object", "name"),
    (Field, "data", "Field", "name"),
    (View, "ui", "View", "name"),
    (Theme, "theme", "Theme", "name"),
]
