"""Application startup script and CLI interface."""

import sys
import json
import argparse

from .config import (
    AppConfig,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="clinicflow",
        description="ClinicFlow - flow storage and execution service for clinic automations"
    )

    # Server configuration
    parser.add_argument(
        "--host",
        help="Host to bind the server to (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--port",
        type=int,
        help="Port to bind the server to (default: 8000)"
    )

    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development"
    )

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )

    parser.add_argument(
        "--config",
        help="Path to a .env configuration file"
    )

    # Database configuration
    parser.add_argument(
        "--database-url",
        help="Database connection URL"
    )

    # Logging configuration
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )

    parser.add_argument(
        "--log-file",
        help="Path to log file"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )

    # Execution engine configuration
    parser.add_argument(
        "--max-concurrent-executions",
        type=int,
        help="Maximum number of concurrent flow executions"
    )

    # Commands
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the flow service")
    run_parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1)"
    )

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")

    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("migrate", help="Run database migrations")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    health_parser = subparsers.add_parser("health", help="Run health checks")
    health_parser.add_argument(
        "--detailed",
        action="store_true",
        help="Run detailed health checks"
    )

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")

    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    flows_parser = subparsers.add_parser("flows", help="Flow definition tools")
    flows_subparsers = flows_parser.add_subparsers(dest="flows_command", help="Flow commands")

    validate_parser = flows_subparsers.add_parser("validate", help="Validate a flow definition JSON file")
    validate_parser.add_argument("file", help="Path to the flow JSON file")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    # Override with command line arguments
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.reload:
        config.reload = args.reload
    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = args.log_level
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = args.debug
    if args.max_concurrent_executions:
        config.max_concurrent_executions = args.max_concurrent_executions

    return config


def run_server(config: AppConfig, workers: int = 1):
    """Run the flow service."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server with {workers} worker(s)")

    uvicorn_config = config.get_uvicorn_config()

    if workers > 1:
        # each worker builds its app from the environment
        uvicorn.run(
            "clinicflow.factory:create_app",
            factory=True,
            workers=workers,
            **uvicorn_config
        )
    else:
        app = create_app(config)
        uvicorn.run(app, **uvicorn_config)


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import configure_database, create_tables, drop_tables
    from .storage.migrations import run_migrations

    logger = get_logger(__name__)
    configure_database(
        config.database_url,
        echo=config.database_echo,
        connect_args=config.get_database_connect_args()
    )

    if command == "init":
        logger.info("Initializing database tables...")
        create_tables()
        logger.info("Database tables created successfully")

    elif command == "migrate":
        logger.info("Running database migrations...")
        run_migrations()
        logger.info("Database migrations completed successfully")

    elif command == "reset":
        logger.info("Resetting database...")
        drop_tables()
        create_tables()
        run_migrations()
        logger.info("Database reset completed successfully")


async def run_health_check(config: AppConfig, detailed: bool = False):
    """Run health checks against the configured database and components."""
    from .core.error_recovery import health_checker
    from .factory import initialize_core_components, initialize_database, setup_health_checks

    logger = get_logger(__name__)

    if detailed:
        logger.info("Running detailed health checks...")
        initialize_database(config, logger)
        _, _, node_registry, services, execution_engine = initialize_core_components(config, logger)
        setup_health_checks(execution_engine, node_registry, services, logger)
        try:
            results = await health_checker.run_all_checks()
        finally:
            execution_engine.shutdown()

        print(f"Overall Status: {results['overall_status']}")
        print(f"Timestamp: {results['timestamp']}")

        for check_name, result in results.get('checks', {}).items():
            status = result.get('status', 'unknown')
            message = result.get('message', 'No message')
            print(f"  {check_name}: {status} - {message}")

        if results['overall_status'] != 'healthy':
            sys.exit(1)
    else:
        logger.info("Running basic health check...")
        print(f"Service: {config.app_name}")
        print("Status: Running")
        print(f"Version: {config.app_version}")


def show_configuration(config: AppConfig):
    """Show current configuration, secrets masked."""
    print("Current Configuration:")
    for key, value in config.safe_dump().items():
        print(f"  {key}: {value}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
        print("All configuration settings are valid.")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def validate_flow_file(path: str) -> bool:
    """Validate a flow JSON file and print errors and warnings.

    Returns:
        True if the flow is valid
    """
    from .core.flow_manager import FlowManager

    with open(path, "r", encoding="utf-8") as handle:
        payload = json.load(handle)

    result = FlowManager().validate_payload(payload)

    print(f"Flow validation: {'PASSED' if result.is_valid else 'FAILED'}")
    for error in result.errors:
        print(f"  error: {error}")
    for warning in result.warnings:
        print(f"  warning: {warning}")
    return result.is_valid


def main():
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        config = load_configuration(args)
        setup_logging(
            level=config.log_level.value if hasattr(config.log_level, "value") else str(config.log_level),
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging
        )

        if args.command in ("run", None):
            validate_config(config)
            workers = getattr(args, 'workers', 1)
            run_server(config, workers)

        elif args.command == "db":
            if args.db_command:
                run_database_command(args.db_command, config)
            else:
                print("Database command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "health":
            import asyncio
            asyncio.run(run_health_check(config, args.detailed))

        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "flows":
            if args.flows_command == "validate":
                if not validate_flow_file(args.file):
                    sys.exit(1)
            else:
                print("Flows command required. Use --help for options.")
                sys.exit(1)
        else:
            parser.print_help()

    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
