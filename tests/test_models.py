"""Test database models and schema."""

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from revertible.database.database import Base, create_db_engine
from revertible.models import Application, Checkpoint, DataObject, Field, UndoLogEntry


@pytest.fixture
def db_session():
    """Create a test database session."""
    engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine)()

    yield session

    session.close()
    engine.dispose()


class TestWorkflowModels:
    """Test workflow builder entities."""

    def test_create_object_with_fields(self, db_session):
        app = Application(name="CRM")
        db_session.add(app)
        db_session.commit()

        obj = DataObject(application_id=app.id, name="Case", model={"stages": []})
        db_session.add(obj)
        db_session.commit()
        db_session.add(Field(object_id=obj.id, name="age"))
        db_session.commit()

        field = db_session.query(Field).one()
        assert field.type == "Text"
        assert field.required is False
        assert obj.has_workflow is False
        assert obj.created_at is not None

    def test_field_name_unique_per_object(self, db_session):
        obj = DataObject(name="Case")
        db_session.add(obj)
        db_session.commit()

        db_session.add(Field(object_id=obj.id, name="age"))
        db_session.add(Field(object_id=obj.id, name="age"))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_foreign_keys_enforced(self, db_session):
        db_session.add(Field(object_id=999, name="orphan"))
        with pytest.raises(IntegrityError):
            db_session.commit()


class TestCheckpointModels:
    """Test checkpoint and undo log tables."""

    def test_status_constraint(self, db_session):
        db_session.add(Checkpoint(application_id=1, description="x", status="done"))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_entries_ordered_by_sequence(self, db_session):
        checkpoint = Checkpoint(application_id=1, description="x")
        db_session.add(checkpoint)
        db_session.commit()
        db_session.add(UndoLogEntry(
            checkpoint_id=checkpoint.id,
            application_id=1,
            sequence=1,
            operation="Create",
            table_name="objects",
            primary_key={"id": 1},
        ))
        db_session.commit()

        assert [e.sequence for e in checkpoint.entries] == [1]
        assert repr(checkpoint).startswith("<Checkpoint")

    def test_operation_constraint(self, db_session):
        checkpoint = Checkpoint(application_id=1, description="x")
        db_session.add(checkpoint)
        db_session.commit()
        db_session.add(UndoLogEntry(
            checkpoint_id=checkpoint.id,
            application_id=1,
            sequence=1,
            operation="Upsert",
            table_name="objects",
            primary_key={"id": 1},
        ))
        with pytest.raises(IntegrityError):
            db_session.commit()
