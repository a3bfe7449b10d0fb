"""HTTP API for flows and executions."""

from .endpoints import router, init_dependencies

__all__ = ["router", "init_dependencies"]
