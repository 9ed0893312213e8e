"""Database migration utilities."""

import logging
from sqlalchemy import inspect, text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# (table, column, DDL type) of nullable columns backfilled onto databases created without them
ADDITIVE_COLUMNS = [
    ("checkpoints", "tools_executed", "JSON"),
    ("checkpoints", "rolled_back_at", "DATETIME"),
    ("undo_log", "new_data", "JSON"),
]


def migrate_database(db: Session) -> None:
    """Apply database migrations.

    Checks the checkpoint tables for the nullable columns in ADDITIVE_COLUMNS
    and adds them if needed. It's safe to call multiple times.

    Args:
        db: Database session.
    """
    logger.info("Checking for database migrations...")

    engine = db.get_bind()
    inspector = inspect(engine)
    tables = inspector.get_table_names()

    for table_name, column_name, ddl_type in ADDITIVE_COLUMNS:
        if table_name not in tables:
            continue

        columns = [col['name'] for col in inspector.get_columns(table_name)]
        if column_name in columns:
            continue

        logger.info(f"Adding {column_name} column to {table_name} table")
        try:
            db.execute(text(
                f"ALTER TABLE {table_name} ADD COLUMN {column_name} {ddl_type}"
            ))
            db.commit()
            logger.info(f"Successfully added {column_name} column")
        except Exception as e:
            logger.error(f"Failed to add {column_name} column: {e}")
            db.rollback()
            raise

    logger.info("Database migrations complete")


def get_migration_status(db: Session) -> dict:
    """Get the status of database migrations.

    Args:
        db: Database session.

    Returns:
        Dictionary with migration status information.
    """
    engine = db.get_bind()
    inspector = inspect(engine)

    status = {
        'tables': inspector.get_table_names(),
        'migrations_applied': []
    }

    for table_name, column_name, _ in ADDITIVE_COLUMNS:
        if table_name not in status['tables']:
            continue
        columns = [col['name'] for col in inspector.get_columns(table_name)]
        if column_name in columns:
            status['migrations_applied'].append(f"{table_name}.{column_name}")

    return status
