"""Tests for the history, checkout and status views."""

import pytest
from sqlalchemy.orm import sessionmaker

from revertible.database.database import Base, create_db_engine
from revertible.models import Application
from revertible.services.checkpoint_service import CheckpointService
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
    return CheckpointService(locks=ScopeLocks(timeout=5), retry_wait=0)


class TestHistory:
    """Checkpoint history."""

    def test_newest_first_with_changes(self, db_session, service):
        session = service.begin_session("Build case type", APP, user_command="make a case type")
        service.record_tool(db_session, session.id, "createObject")
        obj = service.create_object(db_session, "objects", {"name": "Case"}, APP, session.id)
        service.create_object(db_session, "fields", {"name": "age", "object_id": obj.primary_key}, APP, session.id)
        service.commit_session(db_session, session.id)
        service.update_object(db_session, "objects", obj.primary_key, {"name": "Claim"}, APP, source="UI")

        history = service.history(db_session, APP)

        assert [h["description"] for h in history] == ["Updated object: Case", "Build case type"]
        latest, grouped = history
        assert latest["source"] == "UI"
        assert latest["changes_count"] == 1
        assert latest["changes"][0]["operation"] == "Update"
        # Live name of the row
        assert latest["changes"][0]["name"] == "Claim"

        assert grouped["user_command"] == "make a case type"
        assert grouped["tools_executed"] == ["createObject"]
        assert grouped["changes_count"] == 2
        assert [(c["entity_type"], c["name"], c["operation"]) for c in grouped["changes"]] == [
            ("Object", "Claim", "Create"),
            ("Field", "age", "Create"),
        ]

    def test_deleted_rows_use_previous_data(self, db_session, service):
        obj = service.create_object(db_session, "objects", {"name": "Gone"}, APP)
        service.delete_object(db_session, "objects", obj.primary_key, APP)

        history = service.history(db_session, APP)

        assert history[0]["changes"][0]["name"] == "Gone"
        assert history[0]["changes"][0]["operation"] == "Delete"
        # The row no longer exists; the create falls back to its snapshot
        assert history[1]["changes"][0]["name"] == "Gone"

    def test_limit(self, db_session, service):
        for i in range(4):
            service.create_object(db_session, "objects", {"name": f"Object {i}"}, APP)

        assert len(service.history(db_session, APP, limit=2)) == 2

    def test_rolled_back_checkpoints_are_listed(self, db_session, service):
        c1 = service.create_object(db_session, "objects", {"name": "Case"}, APP)
        c2 = service.update_object(db_session, "objects", c1.primary_key, {"name": "X"}, APP)
        service.restore(db_session, c1.checkpoint_id)

        statuses = {h["id"]: h["status"] for h in service.history(db_session, APP)}
        assert statuses == {c1.checkpoint_id: "historical", c2.checkpoint_id: "rolled_back"}


class TestCheckout:
    """Net changes grouped by category."""

    def test_grouped_in_category_order(self, db_session, service):
        obj = service.create_object(db_session, "objects", {"name": "Case", "application_id": 1}, APP)
        service.create_object(db_session, "fields", {"name": "age", "object_id": obj.primary_key}, APP)
        service.create_object(db_session, "views", {"name": "Form", "object_id": obj.primary_key}, APP)
        service.create_object(db_session, "themes", {"name": "Dark", "application_id": 1}, APP)
        service.update_object(db_session, "applications", 1, {"name": "CRM 2"}, APP)
        service.update_object(db_session, "objects", obj.primary_key, {"name": "Claim"}, APP)

        checkout = service.checkout(db_session, APP)

        assert [group["category"] for group in checkout] == ["workflow", "ui", "data", "theme", "app"]
        workflow = checkout[0]["changes"]
        # One entry per row, the newest change wins
        assert len(workflow) == 1
        assert workflow[0]["operation"] == "Update"
        assert workflow[0]["name"] == "Claim"

    def test_rolled_back_changes_excluded(self, db_session, service):
        c1 = service.create_object(db_session, "objects", {"name": "Case"}, APP)
        service.create_object(db_session, "views", {"name": "Form", "object_id": c1.primary_key}, APP)
        service.restore(db_session, c1.checkpoint_id)

        checkout = service.checkout(db_session, APP)

        assert [group["category"] for group in checkout] == ["workflow"]

    def test_sorted_newest_first(self, db_session, service):
        first = service.create_object(db_session, "objects", {"name": "First"}, APP)
        second = service.create_object(db_session, "objects", {"name": "Second"}, APP)

        changes = service.checkout(db_session, APP)[0]["changes"]

        assert [c["primary_key"]["id"] for c in changes] == [second.primary_key, first.primary_key]


class TestStatus:
    """Scope status summary."""

    def test_status_reports_session_and_counts(self, db_session, service):
        service.create_object(db_session, "objects", {"name": "A"}, APP, source="UI")
        service.create_object(db_session, "objects", {"name": "B"}, APP, source="UI")
        session = service.begin_session("draft", APP, source="MCP")
        service.create_object(db_session, "objects", {"name": "C"}, APP, session.id)

        status = service.status(db_session, APP)

        assert status["active_session"]["id"] == session.id
        assert status["pending_checkpoints"] == [session.checkpoint_id]
        assert status["total"] == 3
        assert status["by_source"] == {"UI": 2, "MCP": 1}
        assert status["by_status"] == {"historical": 2, "pending": 1}

    def test_empty_scope(self, db_session, service):
        status = service.status(db_session, Scope(object_id=42))

        assert status["active_session"] is None
        assert status["total"] == 0
        assert status["pending_checkpoints"] == []
