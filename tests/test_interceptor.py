"""Tests for the mutation interceptor and object store facade."""

import pytest
from unittest.mock import patch
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from revertible.database.database import Base, create_db_engine
from revertible.models import Application, Checkpoint, CheckpointStatus, DataObject, UndoLogEntry
from revertible.services.checkpoint_service import CheckpointService
from revertible.services.errors import NotFound, UndoLogWriteFailure
from revertible.services.scope import Scope, ScopeLocks


APP = Scope(application_id=1)


@pytest.fixture
def db_session():
    """Create a test database session with one application."""
    engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    session.add(Application(id=1, name="CRM"))
    session.commit()

    yield session

    session.close()
    engine.dispose()


@pytest.fixture
def service():
    """Checkpoint service without retry backoff."""
    return CheckpointService(locks=ScopeLocks(timeout=5), retry_attempts=3, retry_wait=0)


def count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar()


class TestSingleCallCheckpoints:
    """Mutations outside a session."""

    def test_each_call_gets_its_own_historical_checkpoint(self, db_session, service):
        """N calls without a session produce N historical checkpoints with one entry each."""
        results = [
            service.create_object(db_session, "objects", {"name": f"Object {i}", "application_id": 1}, APP)
            for i in range(4)
        ]

        checkpoints = db_session.execute(select(Checkpoint)).scalars().all()
        assert len(checkpoints) == 4
        assert {c.status for c in checkpoints} == {CheckpointStatus.HISTORICAL.value}
        assert all(c.finished_at is not None for c in checkpoints)
        assert len({r.checkpoint_id for r in results}) == 4
        assert all(r.sequence == 1 for r in results)
        assert count(db_session, UndoLogEntry) == 4

    def test_create_records_key_and_no_previous_data(self, db_session, service):
        result = service.create_object(db_session, "objects", {"id": 7, "name": "Case", "application_id": 1}, APP)

        entry = db_session.execute(select(UndoLogEntry)).scalar_one()
        assert result.primary_key == 7
        assert result.row["name"] == "Case"
        assert entry.operation == "Create"
        assert entry.table_name == "objects"
        assert entry.primary_key == {"id": 7}
        assert entry.previous_data is None
        assert entry.new_data["name"] == "Case"

    def test_generated_key_is_recorded(self, db_session, service):
        result = service.create_object(db_session, "objects", {"name": "Case"}, APP)

        entry = db_session.execute(select(UndoLogEntry)).scalar_one()
        assert result.primary_key is not None
        assert entry.primary_key == {"id": result.primary_key}

    def test_update_captures_pre_image(self, db_session, service):
        created = service.create_object(db_session, "objects", {"name": "Before", "application_id": 1}, APP)
        result = service.update_object(db_session, "objects", created.primary_key, {"name": "After"}, APP)

        entry = db_session.execute(
            select(UndoLogEntry).where(UndoLogEntry.checkpoint_id == result.checkpoint_id)
        ).scalar_one()
        assert entry.operation == "Update"
        assert entry.previous_data["name"] == "Before"
        assert entry.new_data["name"] == "After"
        # Snapshots are JSON: timestamps become ISO strings
        assert isinstance(entry.previous_data["created_at"], str)

    def test_delete_captures_full_row(self, db_session, service):
        created = service.create_object(db_session, "objects", {"name": "Doomed", "description": "x"}, APP)
        result = service.delete_object(db_session, "objects", str(created.primary_key), APP)

        entry = db_session.execute(
            select(UndoLogEntry).where(UndoLogEntry.checkpoint_id == result.checkpoint_id)
        ).scalar_one()
        assert entry.operation == "Delete"
        assert entry.previous_data["name"] == "Doomed"
        assert entry.previous_data["description"] == "x"
        assert entry.new_data is None
        assert db_session.get(DataObject, created.primary_key) is None

    def test_default_description_names_the_entity(self, db_session, service):
        created = service.create_object(db_session, "objects", {"name": "Case"}, APP)
        checkpoint = db_session.get(Checkpoint, created.checkpoint_id)
        assert checkpoint.description == "Added object: Case"

        deleted = service.delete_object(db_session, "objects", created.primary_key, APP)
        assert db_session.get(Checkpoint, deleted.checkpoint_id).description == "Deleted object: Case"

    def test_provenance_is_stored(self, db_session, service):
        result = service.create_object(
            db_session, "objects", {"name": "Case"}, APP,
            description="Build case type", source="MCP", user_command="make a case type",
        )
        checkpoint = db_session.get(Checkpoint, result.checkpoint_id)
        assert checkpoint.description == "Build case type"
        assert checkpoint.source == "MCP"
        assert checkpoint.user_command == "make a case type"


class TestRejectedMutations:
    """Mutations that must leave no trace."""

    def test_update_missing_row(self, db_session, service):
        with pytest.raises(NotFound):
            service.update_object(db_session, "objects", 404, {"name": "X"}, APP)
        assert count(db_session, Checkpoint) == 0

    def test_delete_missing_row(self, db_session, service):
        with pytest.raises(NotFound):
            service.delete_object(db_session, "objects", 404, APP)
        assert count(db_session, UndoLogEntry) == 0

    def test_unknown_table(self, db_session, service):
        with pytest.raises(NotFound):
            service.create_object(db_session, "spaceships", {"name": "X"}, APP)

    def test_unknown_column(self, db_session, service):
        with pytest.raises(ValueError):
            service.create_object(db_session, "objects", {"name": "X", "colour": "red"}, APP)

    def test_bad_primary_key(self, db_session, service):
        with pytest.raises(ValueError):
            service.update_object(db_session, "objects", "abc", {"name": "X"}, APP)

    def test_constraint_violation_rolls_back(self, db_session, service):
        """A failing write leaves neither the row nor a checkpoint behind."""
        with pytest.raises(IntegrityError):
            service.create_object(db_session, "fields", {"name": "age", "object_id": 999}, APP)
        assert count(db_session, Checkpoint) == 0
        assert count(db_session, UndoLogEntry) == 0


class TestUndoLogRetries:
    """Transient failures of the undo log append."""

    def test_transient_failure_is_retried(self, db_session, service):
        real_append = service.store.append_undo_entry
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("INSERT INTO undo_log", {}, Exception("database is locked"))
            return real_append(*args, **kwargs)

        with patch.object(service.store, "append_undo_entry", side_effect=flaky):
            result = service.create_object(db_session, "objects", {"name": "Case"}, APP)

        assert calls["n"] == 2
        assert result.sequence == 1
        assert count(db_session, UndoLogEntry) == 1

    def test_exhausted_retries_roll_back_the_mutation(self, db_session, service):
        """The mutation and its undo entry commit together or not at all."""
        failure = OperationalError("INSERT INTO undo_log", {}, Exception("disk I/O error"))

        with patch.object(service.store, "append_undo_entry", side_effect=failure) as append:
            with pytest.raises(UndoLogWriteFailure) as exc_info:
                service.create_object(db_session, "objects", {"id": 3, "name": "Case"}, APP)

        assert append.call_count == 3
        assert exc_info.value.table_name == "objects"
        assert exc_info.value.primary_key == {"id": 3}
        assert exc_info.value.operation == "Create"
        assert db_session.get(DataObject, 3) is None
        assert count(db_session, Checkpoint) == 0

    def test_explicit_attempt_count_is_not_replaced_by_default(self, db_session):
        """Zero attempts means a single try, not the configured default."""
        service = CheckpointService(locks=ScopeLocks(timeout=5), retry_attempts=0, retry_wait=0)
        failure = OperationalError("INSERT INTO undo_log", {}, Exception("database is locked"))

        with patch.object(service.store, "append_undo_entry", side_effect=failure) as append:
            with pytest.raises(UndoLogWriteFailure):
                service.create_object(db_session, "objects", {"name": "Case"}, APP)

        assert service.interceptor.retry_attempts == 0
        assert append.call_count == 1
        assert count(db_session, DataObject) == 0
