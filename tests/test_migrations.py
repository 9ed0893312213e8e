"""Tests for database initialization and additive migrations."""

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.orm import sessionmaker

from revertible.database.database import create_db_engine, init_db, reset_db
from revertible.database.migrations import get_migration_status, migrate_database


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'migrations.db'}")
    yield engine
    engine.dispose()


def columns(engine, table_name):
    return [col["name"] for col in inspect(engine).get_columns(table_name)]


class TestInitDb:
    """Table creation."""

    def test_creates_all_tables(self, engine):
        init_db(engine)

        tables = set(inspect(engine).get_table_names())
        assert {"checkpoints", "undo_log", "applications", "objects", "fields", "views", "themes"} <= tables

    def test_is_idempotent(self, engine):
        init_db(engine)
        init_db(engine)

        assert "tools_executed" in columns(engine, "checkpoints")

    def test_reset_db(self, engine):
        init_db(engine)
        with engine.begin() as conn:
            conn.execute(text("INSERT INTO applications (id, name) VALUES (1, 'CRM')"))

        reset_db(engine)

        with engine.connect() as conn:
            assert conn.execute(text("SELECT COUNT(*) FROM applications")).scalar() == 0


class TestMigrations:
    """Nullable columns backfilled onto older tables."""

    @pytest.fixture
    def legacy_engine(self, engine):
        """Database created before tools_executed, rolled_back_at and new_data existed."""
        with engine.begin() as conn:
            conn.execute(text(
                "CREATE TABLE checkpoints ("
                "id VARCHAR(36) PRIMARY KEY, application_id INTEGER, object_id INTEGER, "
                "description TEXT NOT NULL, user_command TEXT, status VARCHAR NOT NULL, "
                "source VARCHAR NOT NULL, created_at DATETIME NOT NULL, finished_at DATETIME)"
            ))
            conn.execute(text(
                "CREATE TABLE undo_log ("
                "id INTEGER PRIMARY KEY, checkpoint_id VARCHAR(36) NOT NULL, application_id INTEGER, "
                "object_id INTEGER, sequence INTEGER NOT NULL, operation VARCHAR NOT NULL, "
                "table_name VARCHAR NOT NULL, primary_key JSON NOT NULL, previous_data JSON, "
                "created_at DATETIME NOT NULL)"
            ))
        return engine

    def test_adds_missing_columns(self, legacy_engine):
        db = sessionmaker(bind=legacy_engine)()
        try:
            assert get_migration_status(db)["migrations_applied"] == []

            migrate_database(db)

            assert "tools_executed" in columns(legacy_engine, "checkpoints")
            assert "rolled_back_at" in columns(legacy_engine, "checkpoints")
            assert "new_data" in columns(legacy_engine, "undo_log")
            assert sorted(get_migration_status(db)["migrations_applied"]) == [
                "checkpoints.rolled_back_at",
                "checkpoints.tools_executed",
                "undo_log.new_data",
            ]
        finally:
            db.close()

    def test_migration_is_repeatable(self, legacy_engine):
        db = sessionmaker(bind=legacy_engine)()
        try:
            migrate_database(db)
            migrate_database(db)
        finally:
            db.close()

        assert columns(legacy_engine, "checkpoints").count("tools_executed") == 1

    def test_init_db_migrates_existing_database(self, legacy_engine):
        init_db(legacy_engine)

        assert "rolled_back_at" in columns(legacy_engine, "checkpoints")
