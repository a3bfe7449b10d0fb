"""Configuration management for the ClinicFlow service."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum

ENV_PREFIX = "CLINICFLOW_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="ClinicFlow", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./clinicflow.db",
        description="Database connection URL for flows, executions and clinic tables"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Execution engine settings
    max_concurrent_executions: int = Field(
        default=10,
        description="Number of flow executions that run at the same time"
    )
    max_node_visits: int = Field(
        default=1000,
        description="How often one node may run within a single execution"
    )

    # Integrations
    http_timeout: float = Field(default=30.0, description="Timeout of api_call and webhook requests in seconds")
    ai_api_key: Optional[str] = Field(default=None, description="API key of the text-generation provider")
    ai_base_url: Optional[str] = Field(default=None, description="Base URL of an OpenAI-compatible provider")
    ai_default_model: str = Field(default="gpt-4o-mini", description="Model used when a flow sets none")
    ai_timeout: float = Field(default=60.0, description="Timeout of text-generation requests in seconds")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    structured_logging: bool = Field(default=False, description="Write log records as JSON")

    # Health check settings
    health_check_timeout: float = Field(
        default=5.0,
        description="Health check timeout in seconds"
    )

    # Performance monitoring settings
    slow_request_threshold: float = Field(
        default=5.0,
        description="Slow request threshold in seconds"
    )
    enable_performance_monitoring: bool = Field(
        default=True,
        description="Enable performance monitoring middleware"
    )

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    cors_methods: list = Field(
        default=["GET", "POST", "PUT", "DELETE"],
        description="CORS allowed methods"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].split('+')[0].lower()

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_executions', 'max_node_visits')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('http_timeout', 'ai_timeout')
    @classmethod
    def validate_timeouts(cls, v):
        """Validate timeout values."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        scheme = self.database_url.split('://')[0].lower()
        if scheme == 'sqlite':
            return DatabaseType.SQLITE
        elif scheme.startswith('postgresql'):
            return DatabaseType.POSTGRESQL
        elif scheme.startswith('mysql'):
            return DatabaseType.MYSQL
        else:
            raise ValueError(f"Unknown database type: {scheme}")

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_type == DatabaseType.SQLITE

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.lower(),
            "access_log": self.debug
        }

    def safe_dump(self) -> Dict[str, Any]:
        """Settings with secrets masked, for display."""
        data = self.model_dump(mode="json")
        if data.get("ai_api_key"):
            data["ai_api_key"] = "***"
        return data

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from CLINICFLOW_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "ClinicFlow"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./clinicflow.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            max_concurrent_executions=get_env("MAX_CONCURRENT_EXECUTIONS", 10, int),
            max_node_visits=get_env("MAX_NODE_VISITS", 1000, int),
            http_timeout=get_env("HTTP_TIMEOUT", 30.0, float),
            ai_api_key=get_env("AI_API_KEY", None),
            ai_base_url=get_env("AI_BASE_URL", None),
            ai_default_model=get_env("AI_DEFAULT_MODEL", "gpt-4o-mini"),
            ai_timeout=get_env("AI_TIMEOUT", 60.0, float),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            structured_logging=get_env("STRUCTURED_LOGGING", False, bool),
            health_check_timeout=get_env("HEALTH_CHECK_TIMEOUT", 5.0, float),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list)
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and environment variables."""
    global _config

    if config_file and os.path.exists(config_file):
        from dotenv import load_dotenv
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        from dotenv import load_dotenv
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


# Configuration validation
def validate_config(config: AppConfig) -> None:
    """Validate configuration settings."""
    errors = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.max_concurrent_executions > 100:
        errors.append("Warning: High concurrent execution limit may impact performance")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
        enable_performance_monitoring=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        database_echo=False,
        structured_logging=True,
        enable_performance_monitoring=True,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_executions=2,
        max_node_visits=50,
        http_timeout=5.0
    )
