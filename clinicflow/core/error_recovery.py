"""Retry and health-check helpers.

Retries are only applied to the engine's own bookkeeping writes. Calls that
flow nodes make to external collaborators are never retried.
"""

import asyncio
import time
import random
from typing import Callable, Any, Optional, Dict, List, Type
from functools import wraps
from datetime import datetime

from .exceptions import FlowEngineError, TransientError, StorageError
from .logging import get_logger


logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.2,
        max_delay: float = 5.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientError, StorageError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False

        if isinstance(exception, FlowEngineError):
            return exception.recoverable

        return any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator to add retry logic to functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return _execute_with_retry(func, config, *args, **kwargs)
        return wrapper

    return decorator


def _execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Execute function with retry logic."""
    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e, attempt):
                if attempt > 1:
                    logger.error(f"{func.__name__} failed after {attempt} attempts: {str(e)}")
                raise

            logger.warning(
                f"{func.__name__} failed (attempt {attempt}/{config.max_attempts}), retrying: {str(e)}",
                extra={"extra_fields": {"operation": func.__name__, "attempt": attempt}}
            )
            time.sleep(config.get_delay(attempt))
            attempt += 1


class HealthChecker:
    """Health checker for system components."""

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger("health_checker")

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        """Register a health check function."""
        self.checks[name] = {
            "func": check_func,
            "timeout": timeout
        }
        self.logger.info(f"Registered health check: {name}")

    async def run_check(self, name: str) -> Dict[str, Any]:
        """Run a specific health check."""
        if name not in self.checks:
            return {
                "status": "error",
                "message": f"Health check '{name}' not found",
                "timestamp": datetime.utcnow().isoformat()
            }

        check_info = self.checks[name]
        start_time = time.time()

        try:
            if asyncio.iscoroutinefunction(check_info["func"]):
                result = await asyncio.wait_for(
                    check_info["func"](),
                    timeout=check_info["timeout"]
                )
            else:
                result = check_info["func"]()

            duration = time.time() - start_time

            check_result = {
                "status": "healthy",
                "message": result if isinstance(result, str) else "Check passed",
                "duration_ms": round(duration * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }

            if isinstance(result, dict):
                check_result.update(result)

            self.last_results[name] = check_result
            return check_result

        except asyncio.TimeoutError:
            duration = time.time() - start_time
            result = {
                "status": "timeout",
                "message": f"Health check timed out after {check_info['timeout']}s",
                "duration_ms": round(duration * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }
            self.last_results[name] = result
            return result

        except Exception as e:
            duration = time.time() - start_time
            result = {
                "status": "unhealthy",
                "message": str(e),
                "error_type": type(e).__name__,
                "duration_ms": round(duration * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }
            self.last_results[name] = result
            return result

    async def run_all_checks(self) -> Dict[str, Any]:
        """Run all registered health checks."""
        results = {}
        overall_status = "healthy"

        for name in self.checks:
            result = await self.run_check(name)
            results[name] = result

            if result["status"] != "healthy":
                overall_status = "unhealthy"

        return {
            "overall_status": overall_status,
            "checks": results,
            "timestamp": datetime.utcnow().isoformat()
        }


# Global health checker instance
health_checker = HealthChecker()
