"""Database migrations for execution lookups."""

from sqlalchemy import text
from .database import get_database_engine
from ..core.logging import get_logger

logger = get_logger(__name__)

INDEX_STATEMENTS = [
    # Active flow lookup by id and listing by module
    """
    CREATE INDEX IF NOT EXISTS idx_flows_module_active
    ON flows(module, is_active)
    """,
    # Executions of a flow, newest first
    """
    CREATE INDEX IF NOT EXISTS idx_flow_executions_flow_started
    ON flow_executions(flow_id, started_at)
    """,
    # Status polling and cleanup by status
    """
    CREATE INDEX IF NOT EXISTS idx_flow_executions_status
    ON flow_executions(status, completed_at)
    """,
    # Log stream retrieval in order
    """
    CREATE INDEX IF NOT EXISTS idx_flow_logs_execution_created
    ON flow_logs(execution_id, created_at)
    """,
]


def create_execution_indexes():
    """Create indexes used by the execution status and log endpoints."""
    engine = get_database_engine()
    try:
        with engine.connect() as connection:
            for statement in INDEX_STATEMENTS:
                connection.execute(text(statement))
            connection.commit()
            logger.info("Created database indexes for flow executions")
    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_sqlite():
    """Apply SQLite settings that help concurrent executions write logs."""
    engine = get_database_engine()
    if engine.url.get_backend_name() != "sqlite":
        return
    if engine.url.database in (None, "", ":memory:"):
        return

    try:
        with engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.execute(text("PRAGMA cache_size=10000"))
            connection.commit()
            logger.info("Applied SQLite optimizations")
    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations():
    """Run all migrations."""
    try:
        logger.info("Starting database migrations")
        create_execution_indexes()
        optimize_sqlite()
        logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error(f"Database migrations failed: {str(e)}")
        raise


if __name__ == "__main__":
    run_migrations()
