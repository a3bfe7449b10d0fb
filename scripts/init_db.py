#!/usr/bin/env python3
"""Database initialization script.

Usage: python scripts/init_db.py [FLOW_JSON ...]

Creates the tables and, for every JSON file given, stores the flow it holds.
"""

import json
import sys

from sqlalchemy.exc import SQLAlchemyError

from clinicflow.config import load_config
from clinicflow.core.flow_manager import FlowManager, parse_flow_definition
from clinicflow.core.exceptions import FlowEngineError
from clinicflow.storage.database import configure_database, create_tables
from clinicflow.storage.migrations import run_migrations
from clinicflow.core.logging import setup_logging


def load_flows(paths, logger):
    """Store the flows defined in ``paths``."""
    flow_manager = FlowManager()
    for path in paths:
        with open(path, "r", encoding="utf-8") as handle:
            definition = parse_flow_definition(json.load(handle))
        flow = flow_manager.create_flow(definition)
        logger.info(f"Loaded flow '{flow.name}' from {path} with ID: {flow.id}")


def main():
    """Initialize the database."""
    config = load_config()

    logger = setup_logging(level=config.log_level.value)

    try:
        logger.info("Initializing database...")

        configure_database(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )

        create_tables()
        logger.info("Database tables created successfully")

        run_migrations()
        logger.info("Database migrations completed successfully")

        load_flows(sys.argv[1:], logger)

        logger.info("Database initialization completed")

    except (FlowEngineError, SQLAlchemyError, OSError, ValueError) as e:
        logger.error(f"Database initialization failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
