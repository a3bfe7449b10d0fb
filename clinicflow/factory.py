"""Application factory for creating FastAPI instances."""

from datetime import datetime
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import text

from .config import AppConfig, get_config, validate_config
from .core.logging import setup_logging
from .storage.database import configure_database, create_tables, get_db
from .core.flow_manager import FlowManager
from .core.execution_engine import ExecutionEngine
from .core.execution_tracker import ExecutionTracker
from .core.node_registry import NodeExecutorRegistry
from .integrations import HttpClient, OpenAITextGenerator, SqlDataStore
from .nodes.base import NodeServices
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.flow_manager: Optional[FlowManager] = None
        self.execution_tracker: Optional[ExecutionTracker] = None
        self.node_registry: Optional[NodeExecutorRegistry] = None
        self.services: Optional[NodeServices] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def setup_health_checks(execution_engine: ExecutionEngine, node_registry: NodeExecutorRegistry,
                        services: NodeServices, logger) -> None:
    """Set up health check functions."""
    from .core.error_recovery import health_checker

    def check_database():
        db = next(get_db())
        try:
            db.execute(text("SELECT 1"))
            return {"status": "healthy", "message": "Database connection successful"}
        finally:
            db.close()

    def check_execution_engine():
        return {
            "status": "healthy",
            "message": "Execution engine operational",
            **execution_engine.get_execution_queue_status()
        }

    def check_node_registry():
        return {
            "status": "healthy",
            "message": "Node executors registered",
            "node_types": sorted(node_registry.registered_types())
        }

    def check_text_generation():
        configured = bool(getattr(services.text_generator, "api_key", None))
        return {
            "status": "healthy",
            "message": "AI provider configured" if configured else "AI provider not configured; ai_analysis nodes will fail",
            "configured": configured
        }

    health_checker.register_check("database", check_database, timeout=5.0)
    health_checker.register_check("execution_engine", check_execution_engine, timeout=3.0)
    health_checker.register_check("node_registry", check_node_registry, timeout=2.0)
    health_checker.register_check("text_generation", check_text_generation, timeout=2.0)

    logger.info("Health checks registered")


def initialize_database(config: AppConfig, logger) -> None:
    """Bind the engine, create tables and run migrations."""
    try:
        configure_database(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        create_tables()
        logger.info("Database tables created")

        try:
            from .storage.migrations import run_migrations
            run_migrations()
        except Exception as e:
            # indexes only speed up lookups; serve without them
            logger.warning(f"Database migrations failed: {str(e)}")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def build_services(config: AppConfig) -> NodeServices:
    """Create the collaborators node executors call into."""
    return NodeServices(
        data_store=SqlDataStore(),
        http_client=HttpClient(timeout=config.http_timeout),
        text_generator=OpenAITextGenerator(
            api_key=config.ai_api_key,
            base_url=config.ai_base_url,
            default_model=config.ai_default_model,
            timeout=config.ai_timeout
        )
    )


def initialize_core_components(config: AppConfig, logger, services: Optional[NodeServices] = None) -> tuple:
    """Initialize core application components."""
    try:
        flow_manager = FlowManager()
        execution_tracker = ExecutionTracker()
        node_registry = NodeExecutorRegistry()
        services = services or build_services(config)
        execution_engine = ExecutionEngine(
            flow_manager=flow_manager,
            tracker=execution_tracker,
            registry=node_registry,
            services=services,
            max_concurrent_executions=config.max_concurrent_executions,
            max_node_visits=config.max_node_visits
        )

        logger.info("Core components initialized")

        return flow_manager, execution_tracker, node_registry, services, execution_engine

    except Exception as e:
        logger.error(f"Core components initialization failed: {e}")
        raise


def graceful_shutdown(execution_engine: ExecutionEngine, services: NodeServices, logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info("Shutting down ClinicFlow")

    try:
        execution_engine.shutdown()
    except Exception as e:
        logger.error(f"Error during execution engine shutdown: {str(e)}")

    if hasattr(services.http_client, "close"):
        services.http_client.close()


def create_lifespan_handler(config: AppConfig, services: Optional[NodeServices] = None):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )

        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            initialize_database(config, logger)

            components = initialize_core_components(config, logger, services)
            flow_manager, execution_tracker, node_registry, node_services, execution_engine = components

            app_state.config = config
            app_state.flow_manager = flow_manager
            app_state.execution_tracker = execution_tracker
            app_state.node_registry = node_registry
            app_state.services = node_services
            app_state.execution_engine = execution_engine
            app_state.logger = logger

            init_dependencies(
                flow_manager=flow_manager,
                execution_engine=execution_engine,
                execution_tracker=execution_tracker
            )

            setup_health_checks(execution_engine, node_registry, node_services, logger)

            logger.info("Application startup completed successfully")

        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        try:
            graceful_shutdown(execution_engine, node_services, logger)
        except Exception as e:
            logger.error(f"Error during graceful shutdown: {e}")

    return lifespan


def create_app(config: Optional[AppConfig] = None, services: Optional[NodeServices] = None) -> FastAPI:
    """Create and configure FastAPI application instance.

    Args:
        config: Settings; loaded from the environment when omitted
        services: Node collaborators; built from ``config`` when omitted
    """
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Stores clinic automation flows and executes them as background graph walks",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, services)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware

    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
    app.add_middleware(ErrorHandlingMiddleware)

    add_exception_handlers(app)
    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_exception_handlers(app: FastAPI) -> None:
    """Report malformed request bodies with the failure envelope."""

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            errors.append(f"{location}: {error['msg']}" if location else error["msg"])
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Invalid request: " + "; ".join(errors),
                "details": {"validation_errors": errors}
            }
        )


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": service_name,
            "version": config.app_version
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        from .core.error_recovery import health_checker

        results = await health_checker.run_all_checks()
        status_code = 200 if results["overall_status"] == "healthy" else 503

        return JSONResponse(
            status_code=status_code,
            content={
                "service": service_name,
                "version": config.app_version,
                **results
            }
        )

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check endpoint for container orchestration."""
        from .core.error_recovery import health_checker

        critical_checks = ["database", "execution_engine"]
        results = {}
        for check_name in critical_checks:
            if check_name in health_checker.checks:
                results[check_name] = await health_checker.run_check(check_name)

        ready = bool(results) and all(
            result.get("status") == "healthy"
            for result in results.values()
        )

        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "ready": ready,
                "checks": results,
                "timestamp": datetime.utcnow().isoformat()
            }
        )

    @app.get("/health/live")
    async def liveness_check():
        """Liveness check endpoint for container orchestration."""
        return {
            "alive": True,
            "timestamp": datetime.utcnow().isoformat()
        }


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
