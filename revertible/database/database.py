"""Database configuration and session management."""

import os
from datetime import datetime, timezone
import logging
from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from revertible.config import settings

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str) -> Engine:
    """Create an engine for the given URL.

    SQLite connections get foreign key enforcement and explicit BEGIN
    handling so that SAVEPOINTs (used by the undo log append) behave.
    In-memory SQLite shares a single connection across threads.

    Args:
        database_url: SQLAlchemy database URL.

    Returns:
        Configured engine.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        # Let SQLAlchemy emit BEGIN itself; pysqlite otherwise breaks SAVEPOINT
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


# Create data directory for the default SQLite file
if settings.database_url.startswith("sqlite:///./data/"):
    os.makedirs("data", exist_ok=True)

# Create SQLAlchemy engine
engine = create_db_engine(settings.database_url)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create declarative base for models
Base = declarative_base()


def get_db():
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None):
    """Initialize database tables.

    Creates the checkpoint tables and the registered workflow tables if they
    don't exist. This function is idempotent and safe to call multiple times.

    Args:
        bind: Engine to initialize (defaults to the application engine).
    """
    # Import all models to ensure they are registered with Base
    from revertible.models import Checkpoint, UndoLogEntry, Application  # noqa: F401

    bind = bind or engine
    logger.info("Initializing database...")

    inspector = inspect(bind)
    existing_tables = inspector.get_table_names()

    if not existing_tables:
        logger.info("No existing tables found. Creating all tables...")
    else:
        logger.info(f"Found existing tables: {existing_tables}")

    Base.metadata.create_all(bind=bind)

    # Run migrations for existing databases
    if existing_tables:
        logger.info("Running database migrations...")
        from revertible.database.migrations import migrate_database
        db = sessionmaker(bind=bind)()
        try:
            migrate_database(db)
        finally:
            db.close()

    inspector = inspect(bind)
    created_tables = inspector.get_table_names()
    logger.info(f"Database initialized with tables: {created_tables}")


def drop_all_tables(bind: Engine = None):
    """Drop all tables from the database.

    WARNING: This will delete all data, including checkpoint history.
    Use only for testing or development.
    """
    logger.warning("Dropping all tables from database...")
    Base.metadata.drop_all(bind=bind or engine)
    logger.info("All tables dropped successfully")


def reset_db(bind: Engine = None):
    """Reset the database by dropping and recreating all tables.

    WARNING: This will delete all data. Use only for testing or development.
    """
    logger.warning("Resetting database...")
    drop_all_tables(bind)
    init_db(bind)
    logger.info("Database reset complete")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
